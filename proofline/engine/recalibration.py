"""
Recalibration engine.
Recomputes the remaining schedule on explicit user request.
"""
import logging
from datetime import datetime
from typing import Dict, List

from proofline.errors import InvalidRecalibrationError
from proofline.models.schemas import (
    OverlapConflict, RecalibrationMode, RecalibrationRequest,
    Step, StepStatus, Timeline, OPEN_STATUSES, TERMINAL_STATUSES
)
from proofline.utils.timeutils import add_minutes

logger = logging.getLogger(__name__)


def shift_step(step: Step, delta_minutes: int) -> None:
    """Move a step's start and end by the same amount, preserving its duration."""
    step.scheduled_start = add_minutes(step.scheduled_start, delta_minutes)
    step.scheduled_end = add_minutes(step.scheduled_end, delta_minutes)


class RecalibrationEngine:
    """
    Pure recalibration of a timeline.

    Every strategy works on a deep copy and returns a new Timeline so the
    caller can diff before committing. The engine never schedules
    notifications; callers re-derive alarms after committing.

    Strategies:
    1. shift_all - move every open step by the same delta
    2. compress_to_finish - pull pending steps earlier, spread over the pending run
    3. edit_single - change one step's duration and nothing else
    """

    def recalibrate(
        self,
        timeline: Timeline,
        request: RecalibrationRequest
    ) -> Timeline:
        """
        Apply a recalibration request.

        Args:
            timeline: Current timeline (not modified)
            request: Recalibration mode, delta and optional target

        Returns:
            New timeline, or the input timeline itself when delta is zero

        Raises:
            InvalidRecalibrationError: If edit_single has no usable target
        """
        if request.delta_minutes == 0:
            return timeline

        if request.mode == RecalibrationMode.SHIFT_ALL:
            return self.shift_all(timeline, request.delta_minutes)
        if request.mode == RecalibrationMode.COMPRESS_TO_FINISH:
            return self.compress_to_finish(timeline, request.delta_minutes)
        if request.mode == RecalibrationMode.EDIT_SINGLE:
            return self.edit_single(timeline, request.target_step_id, request.delta_minutes)

        raise InvalidRecalibrationError(
            f"unsupported mode '{request.mode}'",
            details={"mode": str(request.mode)},
        )

    def shift_all(self, timeline: Timeline, delta_minutes: int) -> Timeline:
        """Shift every pending or active step by delta; terminal steps are untouched."""
        new_timeline = timeline.model_copy(deep=True)
        for step in new_timeline.steps:
            if step.status in OPEN_STATUSES:
                shift_step(step, delta_minutes)
        return new_timeline

    def compression_plan(self, timeline: Timeline, delta_minutes: int) -> Dict[str, int]:
        """
        Cumulative compression per pending step for compress_to_finish.

        Each pending step in order adds ``floor(delta / pending_count)`` to a
        running total and is pulled earlier by that total. The division
        remainder is not redistributed, so the sum of per-step increments
        lies within ``pending_count`` minutes of delta.

        Args:
            timeline: Current timeline
            delta_minutes: Total compression requested

        Returns:
            Dict mapping pending step id to the cumulative minutes it moves earlier
        """
        pending = timeline.get_pending_steps()
        if not pending:
            return {}

        per_step = delta_minutes // len(pending)
        plan: Dict[str, int] = {}
        compression = 0
        for step in pending:
            compression += per_step
            plan[step.id] = compression
        return plan

    def compress_to_finish(self, timeline: Timeline, delta_minutes: int) -> Timeline:
        """
        Tighten the pending steps so the bake finishes close to its planned time.

        Active and terminal steps are untouched, so when the active step has
        already drifted from plan the finish time is only approximately held.
        """
        plan = self.compression_plan(timeline, delta_minutes)
        new_timeline = timeline.model_copy(deep=True)

        for step in new_timeline.steps:
            if step.id in plan:
                shift_step(step, -plan[step.id])

        if not plan:
            logger.debug(f"compress_to_finish on bake {timeline.bake_id}: no pending steps")
        return new_timeline

    def edit_single(
        self,
        timeline: Timeline,
        target_step_id: str,
        delta_minutes: int
    ) -> Timeline:
        """
        Change one step's estimated duration and end; every other step is left as is.

        Raises:
            InvalidRecalibrationError: If the target is missing, unknown or terminal
        """
        if not target_step_id:
            raise InvalidRecalibrationError("edit_single requires target_step_id")

        new_timeline = timeline.model_copy(deep=True)
        target = new_timeline.find_step(target_step_id)

        if target is None:
            raise InvalidRecalibrationError(
                f"target step '{target_step_id}' is not in the timeline",
                details={"target_step_id": target_step_id, "bake_id": timeline.bake_id},
            )
        if target.status in TERMINAL_STATUSES:
            raise InvalidRecalibrationError(
                f"target step '{target_step_id}' is already {target.status.value}",
                details={"target_step_id": target_step_id, "status": target.status.value},
            )

        new_duration = max(1, target.estimated_duration_minutes + delta_minutes)
        target.estimated_duration_minutes = new_duration
        target.scheduled_end = add_minutes(target.scheduled_start, new_duration)
        return new_timeline

    def pull_forward_after(
        self,
        timeline: Timeline,
        after_index: int,
        minutes: int
    ) -> List[str]:
        """
        Move every pending step after ``after_index`` earlier by ``minutes``, in place.

        Returns:
            Ids of the steps that moved
        """
        if minutes <= 0:
            return []

        moved = []
        for step in timeline.steps:
            if step.step_index > after_index and step.status == StepStatus.PENDING:
                shift_step(step, -minutes)
                moved.append(step.id)
        return moved

    def find_ordering_violations(self, timeline: Timeline) -> List[List[str]]:
        """
        Pairs of consecutive open steps where the earlier ends after the later starts.

        Pairs inside the same overlap group are allowed to intersect.
        """
        violations = []
        open_steps = timeline.get_open_steps()
        for earlier, later in zip(open_steps, open_steps[1:]):
            if earlier.scheduled_end <= later.scheduled_start:
                continue
            if timeline.share_overlap_group(earlier, later):
                continue
            violations.append([earlier.id, later.id])
        return violations

    def needs_recalibration(self, timeline: Timeline, now: datetime) -> bool:
        """
        True when the schedule has drifted from reality.

        Drift means an active step is running past its planned end, a pending
        step's planned start has already passed, or two non-overlapping open
        steps are out of order.
        """
        for step in timeline.get_open_steps():
            if step.status == StepStatus.ACTIVE and not step.is_adaptive and step.scheduled_end < now:
                return True
            if step.status == StepStatus.PENDING and step.scheduled_start < now:
                return True
        return bool(self.find_ordering_violations(timeline))

    def find_conflicts(self, timeline: Timeline) -> List[OverlapConflict]:
        """
        Report open steps of the same overlap group that run concurrently.

        Conflicts are reported only; resolving them is left to the user.
        """
        conflicts = []
        for group in timeline.overlap_groups():
            open_members = [step for step in group if step.status in OPEN_STATUSES]
            for i, first in enumerate(open_members):
                for second in open_members[i + 1:]:
                    if not first.overlaps(second):
                        continue
                    conflicts.append(OverlapConflict(
                        step_ids=[first.id, second.id],
                        step_names=[first.name, second.name],
                        overlap_start=max(first.scheduled_start, second.scheduled_start),
                        overlap_end=min(first.scheduled_end, second.scheduled_end),
                        reason=f"'{first.name}' and '{second.name}' are scheduled at the same time",
                    ))
        return conflicts
