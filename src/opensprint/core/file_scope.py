"""Predict which files a task will touch, for conflict-aware scheduling."""

import logging
import posixpath
import re
from dataclasses import dataclass, field
from typing import Callable

from opensprint.core import labels as labels_mod
from opensprint.db.models import Task

logger = logging.getLogger(__name__)

EXPLICIT = "explicit"
INFERRED = "inferred"
HEURISTIC = "heuristic"

_DIRECTORY_PATTERN = re.compile(
    r"(?:^|[\s`'\"(])"
    r"((?:src|lib|packages|app|components|services|utils|pages|routes|api|tests?|__tests__)"
    r"(?![\w-])(?:/[A-Za-z0-9_.-]+)*)"
)


@dataclass
class FileScope:
    task_id: str
    files: set[str] = field(default_factory=set)
    directories: set[str] = field(default_factory=set)
    confidence: str = HEURISTIC


def _scope_from_files(task_id: str, files: list[str], confidence: str) -> FileScope:
    scope = FileScope(task_id=task_id, confidence=confidence)
    for f in files:
        f = f.strip()
        if f.startswith("./"):
            f = f[2:]
        if not f:
            continue
        scope.files.add(f)
        parent = posixpath.dirname(f)
        if parent:
            scope.directories.add(parent)
    return scope


def _is_dir_prefix(a: str, b: str) -> bool:
    """True when directory ``a`` equals ``b`` or contains it."""
    a = a.rstrip("/")
    b = b.rstrip("/")
    return a == b or b.startswith(a + "/")


def overlaps(a: FileScope, b: FileScope) -> bool:
    """Whether two scopes may touch the same code.

    Files are compared exactly. Directories are only compared when at least
    one side is a heuristic guess, since explicit scopes already list files.
    """
    if a.files & b.files:
        return True
    if a.confidence == HEURISTIC or b.confidence == HEURISTIC:
        for dir_a in a.directories:
            for dir_b in b.directories:
                if _is_dir_prefix(dir_a, dir_b) or _is_dir_prefix(dir_b, dir_a):
                    return True
    return False


def extract_directories(text: str) -> set[str]:
    """Conventional top-level source directories mentioned in free text."""
    found = set()
    for match in _DIRECTORY_PATTERN.finditer(text or ""):
        path = match.group(1).rstrip("/.")
        # A trailing segment with an extension is a file; keep its directory.
        last = path.rsplit("/", 1)[-1]
        if "/" in path and "." in last:
            path = path.rsplit("/", 1)[0]
        if path:
            found.add(path)
    return found


class FileScopeAnalyzer:
    def __init__(self, task_store=None):
        self.task_store = task_store

    def predict(
        self,
        task: Task,
        dependency_lookup: Callable[[str], Task | None] | None = None,
    ) -> FileScope:
        """Layered prediction; the first layer that yields files wins."""
        for prefix in (labels_mod.CONFLICT_FILES, labels_mod.ACTUAL_FILES):
            files = labels_mod.decode_file_list(task.labels, prefix)
            if files:
                return _scope_from_files(task.id, files, EXPLICIT)

        planned = labels_mod.decode_planned_files(task.labels)
        if planned:
            return _scope_from_files(task.id, planned, EXPLICIT)

        lookup = dependency_lookup or self.lookup_task
        inferred: list[str] = []
        for dep_id in task.depends_on:
            dep = lookup(dep_id) if lookup else None
            if dep is None:
                continue
            for f in labels_mod.decode_file_list(dep.labels, labels_mod.ACTUAL_FILES) or []:
                if f not in inferred:
                    inferred.append(f)
        if inferred:
            return _scope_from_files(task.id, inferred, INFERRED)

        directories = extract_directories(f"{task.title}\n{task.description}")
        return FileScope(task_id=task.id, directories=directories, confidence=HEURISTIC)

    def record_actual(self, task_id: str, changed_files: list[str]):
        """Persist the files an attempt really changed, for future inference."""
        if not changed_files or self.task_store is None:
            return
        try:
            self.task_store.set_actual_files(task_id, changed_files)
        except Exception:
            logger.warning("Failed to record actual files for %s", task_id, exc_info=True)

    def lookup_task(self, task_id: str) -> Task | None:
        if self.task_store is None:
            return None
        return self.task_store.get(task_id)
