"""
Adaptive step resolution.

Adaptive steps ("until doubled", "until ready") have no fixed end: they stay
active until the baker confirms readiness, and get periodic readiness checks
while they run.

The canonical contract is the explicit ``is_adaptive`` flag on a step. The
keyword detector below exists only to migrate legacy step data that predates
the flag, and is applied only when the caller opts in.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import List, Optional

from proofline.errors import InvalidTransitionError, StepNotFoundError
from proofline.models.schemas import Step, StepStatus, StepTransition, Timeline
from proofline.engine.state_machine import StepStateMachine
from proofline.utils.timeutils import add_minutes

logger = logging.getLogger(__name__)


# Words in a legacy step's name or instructions that mark an open-ended step
LEGACY_ADAPTIVE_KEYWORDS = ("until", "doubled", "ready")

_LEGACY_PATTERN = re.compile(
    r"\b(" + "|".join(LEGACY_ADAPTIVE_KEYWORDS) + r")\b",
    re.IGNORECASE,
)


def detect_legacy_adaptive(step: Step) -> bool:
    """
    Keyword heuristic for legacy steps that lack the explicit flag.

    Args:
        step: Step to inspect

    Returns:
        True if the name or instructions mention an open-ended cue
    """
    text = f"{step.name} {step.instructions}"
    return bool(_LEGACY_PATTERN.search(text))


class AdaptiveStepResolver:
    """
    Resolves open-ended steps.

    Decides which steps are adaptive, computes their readiness check times,
    and handles the confirm-ready command.
    """

    def __init__(
        self,
        state_machine: Optional[StepStateMachine] = None,
        legacy_detection: bool = False,
    ):
        """
        Initialize the resolver.

        Args:
            state_machine: State machine used to complete confirmed steps
            legacy_detection: Also treat unflagged steps matching the keyword heuristic as adaptive
        """
        self.state_machine = state_machine or StepStateMachine()
        self.legacy_detection = legacy_detection

    def is_adaptive(self, step: Step) -> bool:
        if step.is_adaptive:
            return True
        return self.legacy_detection and detect_legacy_adaptive(step)

    def migrate_legacy_steps(self, timeline: Timeline) -> Timeline:
        """
        Set the explicit flag on unflagged steps that match the legacy heuristic.

        Terminal steps are left alone. Returns a new timeline.
        """
        new_timeline = timeline.model_copy(deep=True)
        migrated = 0
        for step in new_timeline.steps:
            if step.is_adaptive or step.is_terminal:
                continue
            if detect_legacy_adaptive(step):
                step.is_adaptive = True
                migrated += 1

        if migrated:
            logger.info(f"Bake {timeline.bake_id}: flagged {migrated} legacy steps as adaptive")
        return new_timeline

    def check_times(
        self,
        step: Step,
        max_checks: int,
        after: Optional[datetime] = None
    ) -> List[datetime]:
        """
        Readiness check times for an active adaptive step.

        Checks fall every ``adaptive_check_interval_minutes`` after the step's
        start. At most ``max_checks`` are returned, starting with the first
        check strictly after ``after`` (or the first check at all), so
        re-deriving later tops the window up until the step is confirmed.
        """
        if step.status != StepStatus.ACTIVE or not self.is_adaptive(step):
            return []

        interval = step.adaptive_check_interval_minutes
        first = 1
        if after is not None and after > step.scheduled_start:
            first = (after - step.scheduled_start) // timedelta(minutes=interval) + 1
        return [
            add_minutes(step.scheduled_start, interval * k)
            for k in range(first, first + max_checks)
        ]

    def confirm_ready(self, timeline: Timeline, step_id: str, now: datetime) -> StepTransition:
        """
        Confirm an adaptive step is physically ready.

        Equivalent to mark done. Its readiness checks disappear on the next
        alarm re-derivation because the step is no longer active.

        Raises:
            StepNotFoundError: Unknown step id
            InvalidTransitionError: Step is not adaptive or not active
        """
        step = timeline.find_step(step_id)
        if step is None:
            raise StepNotFoundError(step_id, timeline.bake_id)
        if not self.is_adaptive(step):
            raise InvalidTransitionError(
                step_id, step.status.value, "confirm ready",
                reason="step is not adaptive",
            )
        return self.state_machine.mark_done(timeline, step_id, now)
