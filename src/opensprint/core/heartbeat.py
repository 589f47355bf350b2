"""Per-task liveness files written by the owning slot while its agent runs."""

import json
import os
import time
from dataclasses import dataclass
from pathlib import Path

ACTIVE_DIR = Path(".opensprint") / "active"
HEARTBEAT_FILE = "heartbeat.json"
HEARTBEAT_STALE_MS = 2 * 60 * 1000


@dataclass
class Heartbeat:
    pid: int
    last_output_timestamp: int
    heartbeat_timestamp: int


@dataclass
class StaleHeartbeat:
    task_id: str
    worktree_path: Path
    heartbeat: Heartbeat


def now_ms() -> int:
    return int(time.time() * 1000)


def active_task_dir(worktree_path: str | Path, task_id: str) -> Path:
    return Path(worktree_path) / ACTIVE_DIR / task_id


def heartbeat_path(worktree_path: str | Path, task_id: str) -> Path:
    return active_task_dir(worktree_path, task_id) / HEARTBEAT_FILE


def write_heartbeat(worktree_path: str | Path, task_id: str, heartbeat: Heartbeat):
    """Atomically replace the heartbeat file (temp file then rename)."""
    path = heartbeat_path(worktree_path, task_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    payload = {
        "pid": heartbeat.pid,
        "lastOutputTimestamp": heartbeat.last_output_timestamp,
        "heartbeatTimestamp": heartbeat.heartbeat_timestamp,
    }
    tmp.write_text(json.dumps(payload))
    os.replace(tmp, path)


def read_heartbeat(worktree_path: str | Path, task_id: str) -> Heartbeat | None:
    """Return the heartbeat, or None when missing or malformed."""
    path = heartbeat_path(worktree_path, task_id)
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    fields = ("pid", "lastOutputTimestamp", "heartbeatTimestamp")
    if not all(isinstance(data.get(f), (int, float)) and not isinstance(data.get(f), bool) for f in fields):
        return None
    return Heartbeat(
        pid=int(data["pid"]),
        last_output_timestamp=int(data["lastOutputTimestamp"]),
        heartbeat_timestamp=int(data["heartbeatTimestamp"]),
    )


def delete_heartbeat(worktree_path: str | Path, task_id: str):
    heartbeat_path(worktree_path, task_id).unlink(missing_ok=True)


def is_stale(
    heartbeat: Heartbeat,
    max_age_ms: int = HEARTBEAT_STALE_MS,
    now: int | None = None,
) -> bool:
    now = now_ms() if now is None else now
    return now - heartbeat.heartbeat_timestamp > max_age_ms


def find_stale_heartbeats(
    worktree_base: str | Path,
    max_age_ms: int = HEARTBEAT_STALE_MS,
    now: int | None = None,
) -> list[StaleHeartbeat]:
    """Scan ``<base>/<taskId>`` worktrees and return those with a stale heartbeat.

    Worktrees without a heartbeat file are not reported; orphan recovery
    covers tasks that never got as far as writing one.
    """
    base = Path(worktree_base)
    if not base.is_dir():
        return []
    stale = []
    for entry in sorted(base.iterdir()):
        if not entry.is_dir():
            continue
        task_id = entry.name
        hb = read_heartbeat(entry, task_id)
        if hb is not None and is_stale(hb, max_age_ms, now):
            stale.append(StaleHeartbeat(task_id=task_id, worktree_path=entry, heartbeat=hb))
    return stale
