"""Tests for task selection."""

from types import SimpleNamespace

from opensprint.core.file_scope import EXPLICIT, HEURISTIC, INFERRED, FileScope, FileScopeAnalyzer
from opensprint.core.scheduler import OPTIMISTIC, TaskScheduler
from opensprint.db.models import Task


def _task(task_id, priority=2, files=None, depends_on=None, status="open", issue_type="task", description=""):
    labels = []
    if files:
        labels.append('actual_files:["' + '", "'.join(files) + '"]')
    return Task(
        id=task_id,
        project_id="demo",
        title=task_id,
        description=description,
        priority=priority,
        labels=labels,
        depends_on=depends_on or [],
        status=status,
        issue_type=issue_type,
    )


def _slot(scope):
    return SimpleNamespace(file_scope=scope)


def _ids(selected):
    return [s.task.id for s in selected]


class TestSelectTasks:
    def setup_method(self):
        self.scheduler = TaskScheduler(FileScopeAnalyzer())

    def test_no_capacity(self):
        ready = [_task("a")]
        active = {"x": _slot(None)}
        assert self.scheduler.select_tasks(ready, active, max_slots=1) == []

    def test_priority_order_is_stable(self):
        ready = [
            _task("low", priority=3, files=["a.py"]),
            _task("first", priority=1, files=["b.py"]),
            _task("second", priority=1, files=["c.py"]),
        ]
        selected = self.scheduler.select_tasks(ready, {}, max_slots=3)
        assert _ids(selected) == ["first", "second", "low"]

    def test_single_slot_takes_first_eligible(self):
        ready = [_task("a", priority=2), _task("b", priority=0)]
        selected = self.scheduler.select_tasks(ready, {}, max_slots=1)
        assert _ids(selected) == ["b"]

    def test_skips_epics_blocked_and_active(self):
        ready = [
            _task("epic", issue_type="epic"),
            _task("stuck", status="blocked"),
            _task("running", files=["r.py"]),
            _task("ok", files=["ok.py"]),
        ]
        active = {"running": _slot(FileScope("running", {"r.py"}, set(), EXPLICIT))}
        selected = self.scheduler.select_tasks(ready, active, max_slots=3)
        assert _ids(selected) == ["ok"]

    def test_unclosed_blocker_excludes_task(self):
        blocker = _task("blocker", status="in_progress")
        ready = [_task("dependent", depends_on=["blocker"])]
        selected = self.scheduler.select_tasks(ready, {}, max_slots=2, all_tasks=ready + [blocker])
        assert selected == []

    def test_closed_blocker_allows_task(self):
        blocker = _task("blocker", status="closed")
        ready = [_task("dependent", depends_on=["blocker"])]
        selected = self.scheduler.select_tasks(ready, {}, max_slots=2, all_tasks=ready + [blocker])
        assert _ids(selected) == ["dependent"]

    def test_unknown_blocker_excludes_task(self):
        ready = [_task("dependent", depends_on=["ghost"])]
        assert self.scheduler.select_tasks(ready, {}, max_slots=2) == []

    def test_overlapping_explicit_scopes_deferred(self):
        ready = [_task("a", files=["src/x.py"]), _task("b", files=["src/x.py", "src/y.py"])]
        selected = self.scheduler.select_tasks(ready, {}, max_slots=2)
        assert _ids(selected) == ["a"]

    def test_overlap_with_running_slot(self):
        ready = [_task("b", files=["src/x.py"])]
        active = {"a": _slot(FileScope("a", {"src/x.py"}, {"src"}, EXPLICIT))}
        assert self.scheduler.select_tasks(ready, active, max_slots=3) == []

    def test_conservative_heuristic_waits_for_empty_slots(self):
        ready = [_task("a", files=["lib/a.py"]), _task("guess", description="somewhere")]
        selected = self.scheduler.select_tasks(ready, {}, max_slots=2)
        assert _ids(selected) == ["a"]

    def test_conservative_heuristic_runs_alone(self):
        ready = [_task("guess", description="somewhere")]
        selected = self.scheduler.select_tasks(ready, {}, max_slots=2)
        assert _ids(selected) == ["guess"]
        assert selected[0].file_scope.confidence == HEURISTIC

    def test_optimistic_heuristic_parallel_when_disjoint(self):
        ready = [_task("a", files=["lib/a.py"]), _task("guess", description="work in src/ui")]
        selected = self.scheduler.select_tasks(ready, {}, max_slots=2, strategy=OPTIMISTIC)
        assert _ids(selected) == ["a", "guess"]

    def test_optimistic_heuristic_directory_overlap(self):
        ready = [_task("a", files=["src/ui/a.py"]), _task("guess", description="work in src/ui")]
        selected = self.scheduler.select_tasks(ready, {}, max_slots=2, strategy=OPTIMISTIC)
        assert _ids(selected) == ["a"]

    def test_deterministic(self):
        ready = [_task(f"t{i}", priority=i % 3, files=[f"f{i}.py"]) for i in range(6)]
        first = _ids(self.scheduler.select_tasks(ready, {}, max_slots=4))
        second = _ids(self.scheduler.select_tasks(list(ready), {}, max_slots=4))
        assert first == second
        assert len(first) == 4

    def test_scope_inferred_from_closed_dependency(self):
        done = _task("users-api", files=["src/api/users.py"], status="closed")
        child = _task("users-ui", depends_on=["users-api"])
        running = {"x": _slot(FileScope("x", {"lib/other.py"}, {"lib"}, EXPLICIT))}

        selected = self.scheduler.select_tasks([child], running, max_slots=2, all_tasks=[done, child])

        assert _ids(selected) == ["users-ui"]
        assert selected[0].file_scope.confidence == INFERRED
        assert selected[0].file_scope.files == {"src/api/users.py"}

    def test_inferred_scope_defers_overlapping_child(self):
        done = _task("users-api", files=["src/api/users.py"], status="closed")
        child = _task("users-ui", depends_on=["users-api"])
        running = {"x": _slot(FileScope("x", {"src/api/users.py"}, {"src/api"}, EXPLICIT))}

        selected = self.scheduler.select_tasks([child], running, max_slots=2, all_tasks=[done, child])

        assert selected == []
