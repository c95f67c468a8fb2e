"""
Per-bake user activity tracking for missed-alarm detection.
"""
import logging
from datetime import datetime
from typing import Callable, List, Set

from proofline.models.schemas import Alarm, AlarmKind, BakeStatus, Timeline
from proofline.utils.timeutils import minutes_between, utc_now

logger = logging.getLogger(__name__)


class ActivityTracker:
    """
    Remembers when the baker last interacted with one bake.

    The clock is injectable so tests can move time without sleeping.
    Missed-alarm detection is best effort: it only notices inactivity,
    it cannot know whether a notification was actually seen.
    """

    def __init__(self, bake_id: str, clock: Callable[[], datetime] = utc_now):
        """
        Initialize activity tracker.

        Args:
            bake_id: Bake this tracker is scoped to
            clock: Returns the current aware UTC time
        """
        self.bake_id = bake_id
        self.clock = clock
        self.last_activity: datetime = clock()
        # Steps already reported missed since the last interaction
        self.reported_step_ids: Set[str] = set()

    def record_interaction(self) -> datetime:
        """Mark the baker as active now."""
        self.last_activity = self.clock()
        self.reported_step_ids.clear()
        return self.last_activity

    def minutes_inactive(self) -> int:
        return max(0, minutes_between(self.last_activity, self.clock()))

    def is_inactive(self, threshold_minutes: int) -> bool:
        return self.minutes_inactive() > threshold_minutes

    def detect_missed(self, timeline: Timeline, threshold_minutes: int) -> List[Alarm]:
        """
        Missed alarms for the active steps of an inactive baker.

        Args:
            timeline: Current timeline of this tracker's bake
            threshold_minutes: Inactivity beyond which alarms count as missed

        Returns:
            One ``missed`` alarm per active step not yet reported in this
            inactivity window, stamped now; empty otherwise
        """
        if timeline.status != BakeStatus.ACTIVE or not self.is_inactive(threshold_minutes):
            return []

        now = self.clock()
        missed = [
            Alarm(step_id=step.id, bake_id=self.bake_id, kind=AlarmKind.MISSED, scheduled_time=now)
            for step in timeline.get_active_steps()
            if step.id not in self.reported_step_ids
        ]
        self.reported_step_ids.update(alarm.step_id for alarm in missed)
        if missed:
            logger.info(
                f"Potential missed notifications for bake {self.bake_id}: "
                f"{self.minutes_inactive()}m inactive"
            )
        return missed
