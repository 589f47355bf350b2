"""Join the concurrent test run and review agent(s) of one task attempt."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)

GENERAL_REVIEW_ANGLE = "__general_review__"


@dataclass
class TestOutcome:
    __test__ = False

    status: str  # passed | failed | error
    results: dict | None = None
    raw_output: str = ""
    error_message: str | None = None


@dataclass
class ReviewResult:
    status: str
    summary: str = ""
    issues: list[str] = field(default_factory=list)
    notes: str = ""


@dataclass
class ReviewOutcome:
    status: str  # approved | rejected | no_result | error
    result: ReviewResult | None = None
    exit_code: int | None = None


def aggregate_review_outcomes(outcomes: list[ReviewOutcome]) -> ReviewOutcome:
    """Merge per-angle outcomes: no_result beats rejected beats approved."""
    for outcome in outcomes:
        if outcome.status in ("no_result", "error"):
            return ReviewOutcome(status="no_result", result=outcome.result, exit_code=outcome.exit_code)

    rejected = [o for o in outcomes if o.status == "rejected"]
    if not rejected:
        first = outcomes[0] if outcomes else None
        return ReviewOutcome(
            status="approved",
            result=first.result if first else None,
            exit_code=first.exit_code if first else None,
        )

    issues: list[str] = []
    summaries: list[str] = []
    notes: list[str] = []
    for outcome in rejected:
        if outcome.result is None:
            continue
        for issue in outcome.result.issues:
            issue = issue.strip()
            if issue and issue not in issues:
                issues.append(issue)
        if outcome.result.summary.strip():
            summaries.append(outcome.result.summary.strip())
        if outcome.result.notes.strip():
            notes.append(outcome.result.notes.strip())

    return ReviewOutcome(
        status="rejected",
        result=ReviewResult(
            status="rejected",
            summary=" | ".join(summaries) or "Review rejected",
            issues=issues,
            notes="\n\n".join(notes),
        ),
        exit_code=rejected[0].exit_code,
    )


class TaskPhaseCoordinator:
    """Collects one test outcome and one review outcome per expected angle.

    ``resolve(test_outcome, review_outcome)`` is called exactly once, from
    whichever thread delivers the last missing piece. Outcomes arriving after
    resolution are ignored.
    """

    def __init__(
        self,
        task_id: str,
        resolve: Callable[[TestOutcome, ReviewOutcome], None],
        review_angles: list[str] | None = None,
    ):
        self.task_id = task_id
        self._resolve = resolve
        self.expected_angles = list(dict.fromkeys(review_angles or [])) or [GENERAL_REVIEW_ANGLE]
        self._lock = threading.Lock()
        self._test_outcome: TestOutcome | None = None
        self._review_outcomes: dict[str, ReviewOutcome] = {}
        self._resolved = False

    @property
    def resolved(self) -> bool:
        with self._lock:
            return self._resolved

    def set_test_outcome(self, outcome: TestOutcome):
        with self._lock:
            if self._resolved:
                logger.debug("Ignoring late test outcome for %s", self.task_id)
                return
            self._test_outcome = outcome
        self._try_resolve()

    def set_review_outcome(self, outcome: ReviewOutcome, angle: str | None = None):
        key = self._angle_key(angle)
        with self._lock:
            if self._resolved:
                logger.debug("Ignoring late review outcome for %s", self.task_id)
                return
            self._review_outcomes[key] = outcome
        self._try_resolve()

    def _angle_key(self, angle: str | None) -> str:
        if angle and angle in self.expected_angles:
            return angle
        if angle is None and len(self.expected_angles) == 1:
            return self.expected_angles[0]
        if angle is None:
            return GENERAL_REVIEW_ANGLE
        logger.warning("Review outcome for unexpected angle %r on %s", angle, self.task_id)
        return angle

    def _try_resolve(self):
        with self._lock:
            if self._resolved or self._test_outcome is None:
                return
            if any(a not in self._review_outcomes for a in self.expected_angles):
                return
            self._resolved = True
            test_outcome = self._test_outcome
            merged = aggregate_review_outcomes(
                [self._review_outcomes[a] for a in self.expected_angles]
            )
        try:
            self._resolve(test_outcome, merged)
        except Exception:
            logger.exception("Phase resolution failed for %s", self.task_id)
