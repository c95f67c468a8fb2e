"""
Step state machine.
Legal status transitions and the single-active-step rule.
"""
import logging
from datetime import datetime
from typing import List, Optional

from proofline.errors import (
    ClockSkewError, ErrorResponse, InvalidTransitionError, StepNotFoundError
)
from proofline.models.schemas import Step, StepStatus, StepTransition, Timeline
from proofline.engine.recalibration import RecalibrationEngine
from proofline.utils.timeutils import add_minutes, minutes_between

logger = logging.getLogger(__name__)


class StepStateMachine:
    """
    Applies step transitions: pending -> active -> {completed, skipped}.

    Each operation works on a copy of the timeline and moves at most one step
    out of its state plus, at most, one successor into ``active``. At most one
    step is active at a time, except inside a declared overlap group.
    """

    def __init__(self, recalibration_engine: Optional[RecalibrationEngine] = None):
        """
        Initialize the state machine.

        Args:
            recalibration_engine: Used for the skip pull-forward cascade
        """
        self.recalibration_engine = recalibration_engine or RecalibrationEngine()

    def can_activate(self, timeline: Timeline, step: Step) -> bool:
        """
        Check the single-active-step rule for activating ``step``.

        Activation is allowed when no other step is active, or when every
        other active step shares an overlap group with it.
        """
        others = [s for s in timeline.get_active_steps() if s.id != step.id]
        return all(timeline.share_overlap_group(step, other) for other in others)

    def _activate(self, step: Step, now: datetime) -> None:
        step.status = StepStatus.ACTIVE
        step.scheduled_start = now
        step.scheduled_end = add_minutes(now, step.estimated_duration_minutes)

    def _require_step(self, timeline: Timeline, step_id: str) -> Step:
        step = timeline.find_step(step_id)
        if step is None:
            raise StepNotFoundError(step_id, timeline.bake_id)
        return step

    def _elapsed_minutes(
        self,
        step: Step,
        now: datetime,
        warnings: List[ErrorResponse]
    ) -> int:
        """Minutes the step has run; clamped to zero on clock skew."""
        if now < step.scheduled_start:
            skew = ClockSkewError(
                step_id=step.id,
                reference=step.scheduled_start.isoformat(),
                observed=now.isoformat(),
            )
            logger.warning(f"{skew.message}; clamping to now")
            warnings.append(skew.to_response())
            return 0
        return minutes_between(step.scheduled_start, now)

    def _activate_successor(self, timeline: Timeline, step: Step, now: datetime) -> Optional[Step]:
        """Activate the step right after ``step`` if it is pending and the rule allows."""
        successor = timeline.get_step_by_index(step.step_index + 1)
        if successor is None or successor.status != StepStatus.PENDING:
            return None
        if not self.can_activate(timeline, successor):
            logger.info(
                f"Bake {timeline.bake_id}: step '{successor.id}' left pending, "
                f"another step is still active"
            )
            return None
        self._activate(successor, now)
        return successor

    def activate_next(self, timeline: Timeline, now: datetime) -> StepTransition:
        """
        Activate the first pending step when no step is active.

        A no-op when a step is already active or nothing is pending.
        """
        new_timeline = timeline.model_copy(deep=True)
        if new_timeline.get_active_steps():
            return StepTransition(timeline=new_timeline)

        step = new_timeline.first_pending()
        if step is None:
            return StepTransition(timeline=new_timeline)

        self._activate(step, now)
        return StepTransition(timeline=new_timeline, activated_step_id=step.id)

    def mark_done(self, timeline: Timeline, step_id: str, now: datetime) -> StepTransition:
        """
        Complete an active step and activate its immediate successor.

        Args:
            timeline: Current timeline (not modified)
            step_id: Id of the active step
            now: Completion time

        Returns:
            StepTransition with the new timeline and the activated successor, if any

        Raises:
            StepNotFoundError: Unknown step id
            InvalidTransitionError: Step is not active
        """
        new_timeline = timeline.model_copy(deep=True)
        step = self._require_step(new_timeline, step_id)

        if step.status != StepStatus.ACTIVE:
            raise InvalidTransitionError(step_id, step.status.value, "complete")

        warnings: List[ErrorResponse] = []
        step.actual_duration_minutes = self._elapsed_minutes(step, now, warnings)
        step.status = StepStatus.COMPLETED
        step.ended_at = now

        successor = self._activate_successor(new_timeline, step, now)
        return StepTransition(
            timeline=new_timeline,
            step_id=step.id,
            activated_step_id=successor.id if successor else None,
            warnings=warnings,
        )

    def skip(
        self,
        timeline: Timeline,
        step_id: str,
        now: datetime,
        pull_forward: bool = False
    ) -> StepTransition:
        """
        Skip a pending or active step and activate its immediate successor.

        With ``pull_forward`` the later pending steps move earlier by the
        skipped step's unused planned minutes.

        Raises:
            StepNotFoundError: Unknown step id
            InvalidTransitionError: Step is already completed or skipped
        """
        new_timeline = timeline.model_copy(deep=True)
        step = self._require_step(new_timeline, step_id)

        if step.is_terminal:
            raise InvalidTransitionError(step_id, step.status.value, "skip")

        unused = max(0, minutes_between(max(now, step.scheduled_start), step.scheduled_end))

        step.status = StepStatus.SKIPPED
        step.actual_duration_minutes = None
        step.ended_at = now

        successor = self._activate_successor(new_timeline, step, now)

        if pull_forward and unused:
            after_index = successor.step_index if successor else step.step_index
            moved = self.recalibration_engine.pull_forward_after(new_timeline, after_index, unused)
            logger.info(
                f"Bake {timeline.bake_id}: pulled {len(moved)} steps forward by {unused} min"
            )

        return StepTransition(
            timeline=new_timeline,
            step_id=step.id,
            activated_step_id=successor.id if successor else None,
        )
