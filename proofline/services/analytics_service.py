"""
Activity/analytics tap for recording timeline events.

The tap is a passive observer of committed timeline mutations: sink
failures are logged and never reach the command that produced the events.
"""
import logging
from collections import Counter, defaultdict, deque
from typing import Callable, Deque, Dict, List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from proofline.config import settings
from proofline.db.database import SessionLocal
from proofline.db.models import AnalyticsEventRecord
from proofline.models.schemas import (
    AnalyticsEvent, AnalyticsEventType, BakeAnalytics, TimelineMutation
)
from proofline.utils.timeutils import ensure_utc

logger = logging.getLogger(__name__)


class AnalyticsSink(Protocol):
    """Destination for analytics events."""

    def record(self, event: AnalyticsEvent) -> None:
        """
        Store a single event.

        Args:
            event: The event to store
        """
        ...


class SqlAnalyticsSink:
    """Writes analytics events to the ``analytics_events`` table."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def record(self, event: AnalyticsEvent) -> None:
        db = self.session_factory()
        try:
            db.add(AnalyticsEventRecord(
                bake_id=event.bake_id,
                step_id=event.step_id,
                event_type=event.event_type,
                timestamp=event.timestamp,
                properties=event.properties,
            ))
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def list_events(self, bake_id: str) -> List[AnalyticsEvent]:
        """Stored events of a bake, oldest first."""
        db = self.session_factory()
        try:
            rows = (
                db.query(AnalyticsEventRecord)
                .filter(AnalyticsEventRecord.bake_id == bake_id)
                .order_by(AnalyticsEventRecord.timestamp, AnalyticsEventRecord.id)
                .all()
            )
            return [
                AnalyticsEvent(
                    event_type=row.event_type,
                    bake_id=row.bake_id,
                    step_id=row.step_id,
                    timestamp=ensure_utc(row.timestamp),
                    properties=row.properties or {},
                )
                for row in rows
            ]
        finally:
            db.close()


class AnalyticsTap:
    """
    Collects the events attached to timeline mutations.

    Events are kept per bake in a bounded in-memory buffer for summaries and
    forwarded to every configured sink.
    """

    def __init__(
        self,
        sinks: Optional[List[AnalyticsSink]] = None,
        max_events_per_bake: Optional[int] = None,
    ):
        """
        Initialize the tap.

        Args:
            sinks: Destinations each event is forwarded to
            max_events_per_bake: Buffer bound per bake; oldest events are dropped first
        """
        self.sinks = sinks if sinks is not None else []
        self.max_events_per_bake = max_events_per_bake or settings.analytics_max_events_per_bake
        self._events: Dict[str, Deque[AnalyticsEvent]] = defaultdict(
            lambda: deque(maxlen=self.max_events_per_bake)
        )

    def observe(self, mutation: TimelineMutation) -> None:
        """Record every event carried by a committed mutation."""
        for event in mutation.events:
            self.track(event)

    def track(self, event: AnalyticsEvent) -> None:
        """Buffer one event and hand it to the sinks; sink errors are logged only."""
        self._events[event.bake_id].append(event)

        for sink in self.sinks:
            try:
                sink.record(event)
            except Exception as e:
                logger.warning(
                    f"Analytics sink {type(sink).__name__} failed for "
                    f"{event.event_type.value} on bake {event.bake_id}: {str(e)}"
                )

    def get_events(self, bake_id: str) -> List[AnalyticsEvent]:
        return list(self._events.get(bake_id, ()))

    def get_bake_analytics(self, bake_id: str) -> BakeAnalytics:
        """
        Summarize the buffered events of a bake.

        Step drift is the mean of actual minus estimated minutes over steps
        completed with a recorded duration.
        """
        events = self.get_events(bake_id)
        counts = Counter(event.event_type for event in events)

        drifts = [
            event.properties["actual_duration_minutes"] - event.properties["estimated_duration_minutes"]
            for event in events
            if event.event_type == AnalyticsEventType.STEP_COMPLETED
            and event.properties.get("actual_duration_minutes") is not None
            and event.properties.get("estimated_duration_minutes") is not None
        ]

        return BakeAnalytics(
            bake_id=bake_id,
            total_events=len(events),
            steps_completed=counts[AnalyticsEventType.STEP_COMPLETED],
            steps_skipped=counts[AnalyticsEventType.STEP_SKIPPED],
            times_recalibrated=counts[AnalyticsEventType.RECALIBRATION_APPLIED],
            times_paused=counts[AnalyticsEventType.BAKE_PAUSED],
            average_step_drift_minutes=round(sum(drifts) / len(drifts), 2) if drifts else 0.0,
            event_types={event_type.value: count for event_type, count in counts.items()},
        )

    def clear(self, bake_id: str) -> None:
        self._events.pop(bake_id, None)
