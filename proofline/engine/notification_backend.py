"""
Protocol definition for notification backends.

Defines the interface the notification scheduler drives. The APScheduler
implementation lives in ``proofline.jobs.alarm_jobs``.
"""

import logging
from collections import defaultdict
from typing import Dict, List, Protocol

from proofline.models.schemas import Alarm

logger = logging.getLogger(__name__)


class NotificationBackend(Protocol):
    """
    Protocol for alarm delivery implementations.

    Alarms are cancelled per bake as a unit; there is no per-alarm cancel.
    """

    def schedule_alarm(self, alarm: Alarm) -> None:
        """
        Schedule a single alarm for delivery at ``alarm.scheduled_time``.

        Args:
            alarm: The alarm to schedule
        """
        ...

    def cancel_alarms(self, bake_id: str) -> None:
        """
        Cancel every scheduled alarm belonging to a bake.

        Args:
            bake_id: Bake whose alarms are cancelled
        """
        ...

    def list_alarms(self, bake_id: str) -> List[Alarm]:
        """
        List the alarms currently scheduled for a bake, ordered by time.
        """
        ...


class InMemoryNotificationBackend:
    """Keeps alarms in a dict. Used by the CLI and in tests."""

    def __init__(self):
        self.alarms: Dict[str, Dict[str, Alarm]] = defaultdict(dict)

    def schedule_alarm(self, alarm: Alarm) -> None:
        self.alarms[alarm.bake_id][alarm.job_id] = alarm

    def cancel_alarms(self, bake_id: str) -> None:
        cancelled = len(self.alarms.pop(bake_id, {}))
        logger.debug(f"Cancelled {cancelled} alarms for bake {bake_id}")

    def list_alarms(self, bake_id: str) -> List[Alarm]:
        return sorted(self.alarms.get(bake_id, {}).values(), key=lambda a: a.scheduled_time)
