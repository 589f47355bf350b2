"""Live execution state for one task attempt and per-project slot state."""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from opensprint.core.file_scope import FileScope
from opensprint.core.phase_coordinator import TaskPhaseCoordinator

logger = logging.getLogger(__name__)


class TimerRegistry:
    """Named cancellable timers owned by a single slot."""

    def __init__(self):
        self._timers: dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    def schedule(self, name: str, delay: float, fn: Callable[[], None], repeat: bool = False):
        """Run ``fn`` after ``delay`` seconds; with ``repeat`` it reschedules itself."""

        def fire():
            with self._lock:
                if self._timers.get(name) is not timer:
                    return
                if not repeat:
                    self._timers.pop(name, None)
            try:
                fn()
            except Exception:
                logger.exception("Timer %s failed", name)
            if repeat:
                with self._lock:
                    if self._timers.get(name) is not timer:
                        return
                self.schedule(name, delay, fn, repeat=True)

        timer = threading.Timer(delay, fire)
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(name, None)
            self._timers[name] = timer
        if previous:
            previous.cancel()
        timer.start()

    def cancel(self, name: str):
        with self._lock:
            timer = self._timers.pop(name, None)
        if timer:
            timer.cancel()

    def cancel_all(self):
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def __len__(self) -> int:
        with self._lock:
            return len(self._timers)


@dataclass
class PhaseResult:
    coding_diff: str = ""
    coding_summary: str = ""
    test_results: dict | None = None
    test_output: str = ""


@dataclass
class AgentState:
    output_log: list[str] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    started_monotonic: float = field(default_factory=time.monotonic)
    last_output_at: float = field(default_factory=time.monotonic)
    killed_due_to_timeout: bool = False
    handle: Any = None

    def append_output(self, chunk: str):
        self.output_log.append(chunk)
        self.last_output_at = time.monotonic()

    def reset(self):
        self.output_log = []
        self.started_at = datetime.now(timezone.utc).isoformat()
        self.started_monotonic = time.monotonic()
        self.last_output_at = time.monotonic()
        self.killed_due_to_timeout = False
        self.handle = None


@dataclass
class AgentSlot:
    task_id: str
    task_title: str
    branch_name: str
    worktree_path: str | None
    attempt: int = 1
    phase: str = "coding"
    phase_result: PhaseResult = field(default_factory=PhaseResult)
    infra_retries: int = 0
    generation: int = 0
    agent: AgentState = field(default_factory=AgentState)
    timers: TimerRegistry = field(default_factory=TimerRegistry)
    file_scope: FileScope | None = None
    coordinator: TaskPhaseCoordinator | None = None
    review_handles: list = field(default_factory=list)


@dataclass
class ProjectStatus:
    total_done: int = 0
    total_failed: int = 0
    queue_depth: int = 0


@dataclass
class ProjectState:
    project_id: str
    slots: dict[str, AgentSlot] = field(default_factory=dict)
    status: ProjectStatus = field(default_factory=ProjectStatus)
    lock: threading.RLock = field(default_factory=threading.RLock)
