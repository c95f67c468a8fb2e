"""
Notification scheduler.
Derives the alarm set for a bake from its current timeline.
"""
import logging
from datetime import datetime
from typing import List, Optional

from proofline.config import Settings, settings as default_settings
from proofline.features.flags import Feature, FeatureFlags, feature_flags as default_flags
from proofline.models.schemas import (
    Alarm, AlarmKind, BakeStatus, StepStatus, Timeline, TimelineMutation
)
from proofline.engine.adaptive import AdaptiveStepResolver
from proofline.engine.notification_backend import NotificationBackend
from proofline.utils.timeutils import local_wall_time

logger = logging.getLogger(__name__)


class NotificationScheduler:
    """
    Keeps a bake's alarms in step with its timeline.

    Alarms are never patched incrementally: every reschedule cancels all of
    the bake's alarms and rebuilds them from the timeline, so no stale or
    duplicate alarm survives a schedule change. Rescheduling is safe to call
    any number of times.

    Missed alarms are not derived here; they come from the inactivity
    heuristic in ``ActivityTracker``.
    """

    def __init__(
        self,
        backend: NotificationBackend,
        adaptive_resolver: Optional[AdaptiveStepResolver] = None,
        config: Optional[Settings] = None,
        flags: Optional[FeatureFlags] = None,
    ):
        """
        Initialize notification scheduler.

        Args:
            backend: Delivery backend that owns the scheduled alarms
            adaptive_resolver: Decides which active steps get readiness checks
            config: Settings for bedtime/wakeup hours, timezone and check limits
            flags: Feature flags gating overnight and adaptive alarms
        """
        self.backend = backend
        self.config = config or default_settings
        self.flags = flags or default_flags
        self.adaptive_resolver = adaptive_resolver or AdaptiveStepResolver(
            legacy_detection=self.flags.get_flag(Feature.LEGACY_ADAPTIVE_DETECTION)
        )

    def derive_alarms(self, timeline: Timeline, now: Optional[datetime] = None) -> List[Alarm]:
        """
        Compute the full alarm set for a timeline.

        Args:
            timeline: Current timeline
            now: If given, alarms at or before this instant are dropped

        Returns:
            Alarms ordered by scheduled time, without duplicates
        """
        if timeline.status != BakeStatus.ACTIVE:
            return []

        alarms: List[Alarm] = []
        split_overnight = self.flags.get_flag(Feature.OVERNIGHT_SPLIT_ALARMS)
        adaptive_checks = self.flags.get_flag(Feature.ADAPTIVE_CHECK_ALARMS)

        for step in timeline.steps:
            if step.status == StepStatus.PENDING:
                alarms.append(self._alarm(timeline, step.id, AlarmKind.T0, step.scheduled_start))

                if split_overnight and step.runs_overnight:
                    bedtime = local_wall_time(
                        step.scheduled_start, self.config.bedtime_hour, self.config.timezone
                    )
                    wakeup = local_wall_time(
                        step.scheduled_start, self.config.wakeup_hour, self.config.timezone, day_offset=1
                    )
                    alarms.append(self._alarm(timeline, step.id, AlarmKind.BEDTIME, bedtime))
                    alarms.append(self._alarm(timeline, step.id, AlarmKind.WAKEUP, wakeup))

            elif step.status == StepStatus.ACTIVE and adaptive_checks:
                for check_time in self.adaptive_resolver.check_times(
                    step, self.config.adaptive_check_max_alarms, after=now
                ):
                    alarms.append(self._alarm(timeline, step.id, AlarmKind.ADAPTIVE_CHECK, check_time))

        if now is not None:
            alarms = [alarm for alarm in alarms if alarm.scheduled_time > now]

        unique = {alarm.job_id: alarm for alarm in alarms}
        return sorted(unique.values(), key=lambda a: (a.scheduled_time, a.step_id, a.kind.value))

    def reschedule(self, timeline: Timeline, now: Optional[datetime] = None) -> List[Alarm]:
        """
        Clear all of the bake's alarms, then schedule the freshly derived set.

        Returns:
            The alarms that were scheduled
        """
        alarms = self.derive_alarms(timeline, now)

        self.backend.cancel_alarms(timeline.bake_id)
        for alarm in alarms:
            self.backend.schedule_alarm(alarm)

        logger.info(f"Rescheduled {len(alarms)} alarms for bake {timeline.bake_id}")
        return alarms

    def on_mutation(self, mutation: TimelineMutation) -> List[Alarm]:
        """Rebuild alarms from a committed mutation's resulting timeline."""
        return self.reschedule(mutation.after, mutation.occurred_at)

    def cancel(self, bake_id: str) -> None:
        """Cancel every alarm of a bake as a unit."""
        self.backend.cancel_alarms(bake_id)
        logger.info(f"Cancelled all alarms for bake {bake_id}")

    def _alarm(self, timeline: Timeline, step_id: str, kind: AlarmKind, when: datetime) -> Alarm:
        return Alarm(step_id=step_id, bake_id=timeline.bake_id, kind=kind, scheduled_time=when)
