"""Data models for opensprint."""

from dataclasses import asdict, dataclass, field
from datetime import datetime

TASK_STATUSES = ("open", "in_progress", "blocked", "closed")
ISSUE_TYPES = ("task", "epic", "bug", "chore")
HIL_MODES = ("automated", "notify_and_proceed", "requires_approval")


@dataclass
class AgentConfig:
    type: str = "claude"
    model: str | None = None
    cli_command: str | None = None


@dataclass
class ProjectSettings:
    max_concurrent_coders: int = 1
    git_working_mode: str = "worktree"
    unknown_scope_strategy: str = "conservative"
    test_command: str | None = None
    test_timeout: float = 600.0
    review_mode: str = "always"
    review_angles: list[str] = field(default_factory=list)
    agent: AgentConfig = field(default_factory=AgentConfig)
    hil_config: dict[str, str] = field(default_factory=dict)
    slack_channel: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> "ProjectSettings":
        data = dict(data or {})
        agent = AgentConfig(**data.pop("agent", None) or {})
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        settings = cls(**known)
        settings.agent = agent
        settings.max_concurrent_coders = max(1, int(settings.max_concurrent_coders))
        return settings


@dataclass
class Project:
    id: str
    name: str
    repo_path: str
    default_branch: str = "main"
    settings: ProjectSettings = field(default_factory=ProjectSettings)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    description: str = ""
    status: str = "open"
    priority: int = 2
    issue_type: str = "task"
    parent_id: str | None = None
    assignee: str = ""
    labels: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    block_reason: str | None = None
    close_reason: str | None = None
    extra: dict = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    closed_at: datetime | None = None


@dataclass
class TaskComment:
    id: int | None = None
    task_id: str = ""
    body: str = ""
    created_at: datetime | None = None


@dataclass
class Event:
    id: int | None = None
    project_id: str = ""
    task_id: str | None = None
    event: str = ""
    data: dict = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass
class AgentSession:
    task_id: str
    attempt: int
    status: str
    project_id: str = ""
    agent_type: str = ""
    agent_model: str = ""
    git_branch: str = ""
    output_log: str = ""
    git_diff: str | None = None
    summary: str | None = None
    failure_reason: str | None = None
    test_results: dict | None = None
    archive_path: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    id: int | None = None


@dataclass
class Notification:
    id: int | None = None
    project_id: str = ""
    kind: str = "hil_approval"
    source_id: str | None = None
    category: str | None = None
    message: str = ""
    error_code: str | None = None
    status: str = "open"
    approved: bool | None = None
    notes: str | None = None
    created_at: datetime | None = None
    resolved_at: datetime | None = None
