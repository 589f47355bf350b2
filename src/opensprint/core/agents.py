"""Agent CLI process launching, output streaming and the process registry."""

import json
import logging
import os
import shlex
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from opensprint.db.models import AgentConfig

logger = logging.getLogger(__name__)

CODER = "coder"
REVIEWER = "reviewer"
FINAL_REVIEWER = "final_reviewer"

RESULT_FILE = "result.json"


class AgentSpawnError(Exception):
    """The agent CLI could not be started."""


# ── Process registry ──────────────────────────────────────────────────────────


class ProcessRegistry:
    """Tracks spawned agent processes so they can be killed on shutdown."""

    def __init__(self):
        self._pids: set[int] = set()
        self._groups: set[int] = set()
        self._lock = threading.Lock()

    def register(self, pid: int, process_group: bool = False):
        with self._lock:
            (self._groups if process_group else self._pids).add(pid)

    def unregister(self, pid: int, process_group: bool = False):
        with self._lock:
            (self._groups if process_group else self._pids).discard(pid)

    def tracked(self) -> list[int]:
        with self._lock:
            return sorted(self._pids | self._groups)

    def kill_all(self, sig: int = signal.SIGTERM) -> int:
        """Signal every tracked process (group). Returns how many were signalled."""
        with self._lock:
            groups, pids = list(self._groups), list(self._pids)
            self._groups.clear()
            self._pids.clear()
        signalled = 0
        for pgid in groups:
            try:
                os.killpg(pgid, sig)
                signalled += 1
            except (ProcessLookupError, PermissionError):
                continue
        for pid in pids:
            try:
                os.kill(pid, sig)
                signalled += 1
            except (ProcessLookupError, PermissionError):
                continue
        if signalled:
            logger.info("Killed %d tracked agent process(es)", signalled)
        return signalled


# ── Handles ───────────────────────────────────────────────────────────────────


@dataclass
class AgentHandle:
    pid: int
    role: str
    angle: str | None = None
    process: subprocess.Popen | None = field(default=None, repr=False)

    def kill(self, sig: int = signal.SIGTERM):
        """Signal the agent's whole process group."""
        try:
            os.killpg(self.pid, sig)
        except (ProcessLookupError, PermissionError):
            return
        logger.info("Sent signal %d to %s agent (pid %d)", sig, self.role, self.pid)

    def is_running(self) -> bool:
        return self.process is not None and self.process.poll() is None


def build_command(config: AgentConfig, prompt_path: Path) -> list[str]:
    """Command line for the configured agent CLI."""
    if config.type == "custom":
        if not config.cli_command:
            raise AgentSpawnError("Custom agent requires agent.cli_command")
        return shlex.split(config.cli_command) + [str(prompt_path)]

    prompt = Path(prompt_path).read_text()
    if config.type == "cursor":
        cmd = ["agent", "--print", "--force", "--output-format", "text"]
        if config.model:
            cmd += ["--model", config.model]
        return cmd + [prompt]

    cmd = ["claude", "--print", prompt, "--permission-mode", "acceptEdits"]
    if config.model:
        cmd += ["--model", config.model]
    return cmd


class AgentRunner:
    def __init__(self, registry: ProcessRegistry | None = None):
        self.registry = registry or ProcessRegistry()

    def spawn_with_task_file(
        self,
        config: AgentConfig,
        prompt_path: str | Path,
        cwd: str | Path,
        on_output: Callable[[str], None],
        on_exit: Callable[[int], None],
        role: str = CODER,
        angle: str | None = None,
    ) -> AgentHandle:
        """Start the agent in its own process group and stream its output.

        ``on_output`` receives each line of combined stdout/stderr and
        ``on_exit`` the exit code, both from a reader thread.
        """
        cmd = build_command(config, Path(prompt_path))
        env = dict(os.environ)
        env["OPENSPRINT_ROLE"] = role
        env["OPENSPRINT_PROMPT"] = str(prompt_path)
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=env,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise AgentSpawnError(f"{cmd[0]}: command not found") from e
        except OSError as e:
            raise AgentSpawnError(f"Failed to start {cmd[0]}: {e}") from e

        self.registry.register(proc.pid, process_group=True)
        handle = AgentHandle(pid=proc.pid, role=role, angle=angle, process=proc)
        logger.info(
            "Spawned %s agent%s (pid %d) in %s",
            role, f" [{angle}]" if angle else "", proc.pid, cwd,
        )

        def pump():
            try:
                for line in proc.stdout:
                    try:
                        on_output(line)
                    except Exception:
                        logger.exception("Output callback failed for pid %d", proc.pid)
            except (OSError, ValueError):
                logger.debug("Output stream closed for pid %d", proc.pid)
            finally:
                code = proc.wait()
                self.registry.unregister(proc.pid, process_group=True)
                try:
                    on_exit(code)
                except Exception:
                    logger.exception("Exit callback failed for pid %d", proc.pid)

        threading.Thread(target=pump, name=f"agent-{role}-{proc.pid}", daemon=True).start()
        return handle


def read_result_file(result_dir: str | Path) -> dict | None:
    """Parse ``result.json`` written by the agent; None when missing or malformed."""
    path = Path(result_dir) / RESULT_FILE
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Unreadable result file %s: %s", path, e)
        return None
    return data if isinstance(data, dict) else None
