"""Background reaper for worker and agent CLI processes orphaned by a dead parent."""

import logging
import os
import re
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)

WORKER_SIGNATURES = ("vitest", "xdist", "bd daemon --start", "bd daemon start")
AGENT_CLI_SIGNATURES = ("claude", "--print")

_PS_LINE = re.compile(r"^(\d+)\s+(\d+)\s+(.+)$")


@dataclass
class OrphanProcess:
    pid: int
    command: str


def parse_orphaned_processes(ps_output: str, own_pid: int) -> list[OrphanProcess]:
    """Parse ``ps -eo pid,ppid,command`` and keep processes re-parented to init."""
    results = []
    for line in ps_output.splitlines():
        match = _PS_LINE.match(line.strip())
        if not match:
            continue
        pid, ppid, command = int(match.group(1)), int(match.group(2)), match.group(3)
        if ppid != 1 or pid == own_pid:
            continue
        results.append(OrphanProcess(pid=pid, command=command))
    return results


def is_reapable(command: str) -> bool:
    if any(sig in command for sig in WORKER_SIGNATURES):
        return True
    return all(sig in command for sig in AGENT_CLI_SIGNATURES)


def reap_once(own_pid: int | None = None) -> list[int]:
    """Kill every matching orphan once. Returns the pids that were signalled."""
    if sys.platform == "win32":
        return []
    try:
        result = subprocess.run(
            ["ps", "-eo", "pid,ppid,command"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("ps unavailable, skipping reap: %s", e)
        return []
    if result.returncode != 0:
        return []

    own_pid = os.getpid() if own_pid is None else own_pid
    killed = []
    for proc in parse_orphaned_processes(result.stdout, own_pid):
        if not is_reapable(proc.command):
            continue
        try:
            os.kill(proc.pid, signal.SIGKILL)
            killed.append(proc.pid)
        except (ProcessLookupError, PermissionError):
            continue
    if killed:
        logger.info("Killed %d orphaned process(es): %s", len(killed), killed)
    return killed


class ProcessReaper:
    """Background thread that periodically reaps orphaned processes."""

    def __init__(self, interval: float = 60.0):
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="process-reaper", daemon=True)
        self._thread.start()
        logger.info("Process reaper started")

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
            self._thread = None
        logger.info("Process reaper stopped")

    def _run(self):
        while not self._stop_event.is_set():
            try:
                reap_once()
            except Exception:
                logger.exception("Error in process reaper loop")
            self._stop_event.wait(self.interval)
