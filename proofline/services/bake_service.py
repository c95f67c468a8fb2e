"""
Bake command bus.

Validates and applies commands to a bake's timeline, then, in this order,
re-derives the bake's alarms, writes the changed steps through to storage
and hands the mutation to the analytics tap.
"""
import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from proofline.config import Settings, settings as default_settings
from proofline.errors import AlarmSchedulingError, BakeStateError, ErrorResponse, ProoflineError
from proofline.features.flags import Feature, FeatureFlags, feature_flags as default_flags
from proofline.models.schemas import (
    ActivateNextCommand, Alarm, AnalyticsEvent, AnalyticsEventType, BakeAnalytics,
    BakeCommand, BakeStatus, CommandResult, ConfirmReadyCommand, MarkDoneCommand,
    OverlapConflict, PauseBakeCommand, RecalibrateCommand, RecalibrationMode,
    RecalibrationPreview, RecalibrationRequest, ResumeBakeCommand, SkipStepCommand,
    StartBakeRequest, Step, StepStatus, StepTransition, Timeline, TimelineMutation,
    TimelineView,
)
from proofline.engine.activity_tracker import ActivityTracker
from proofline.engine.adaptive import AdaptiveStepResolver
from proofline.engine.notification_scheduler import NotificationScheduler
from proofline.engine.recalibration import RecalibrationEngine
from proofline.engine.state_machine import StepStateMachine
from proofline.jobs.alarm_jobs import APSchedulerNotificationBackend
from proofline.services.analytics_service import AnalyticsTap, SqlAnalyticsSink
from proofline.services.timeline_store import SqlTimelineStore, TimelineStore
from proofline.utils.timeutils import add_minutes, ensure_utc, minutes_between, utc_now

logger = logging.getLogger(__name__)


def changed_step_ids(before: Timeline, after: Timeline) -> List[str]:
    """Ids of steps whose stored fields differ between two timelines."""
    previous = {step.id: step for step in before.steps}
    changed = []
    for step in after.steps:
        old = previous.get(step.id)
        if old is None or old.model_dump() != step.model_dump():
            changed.append(step.id)
    return changed


class BakeSession:
    """In-memory state of one bake: its current timeline and activity tracker."""

    def __init__(self, timeline: Timeline, activity: ActivityTracker):
        self.timeline = timeline
        self.activity = activity
        # Commands for one bake are processed one at a time
        self.lock = threading.RLock()


class BakeService:
    """
    Single entry point for bake commands and queries.

    The in-memory timeline is the source of truth. Each command is applied
    by the pure engine components, committed in memory, rescheduled, and
    then written through to the store. If the write fails the session rolls
    back to the pre-command snapshot and its alarms are re-derived from it.

    Engine errors never escape ``dispatch``: they come back as a failed
    ``CommandResult``.
    """

    def __init__(
        self,
        store: TimelineStore,
        notification_scheduler: NotificationScheduler,
        analytics: Optional[AnalyticsTap] = None,
        clock: Callable[[], datetime] = utc_now,
        state_machine: Optional[StepStateMachine] = None,
        recalibration_engine: Optional[RecalibrationEngine] = None,
        adaptive_resolver: Optional[AdaptiveStepResolver] = None,
        config: Optional[Settings] = None,
        flags: Optional[FeatureFlags] = None,
    ):
        """
        Initialize the bake service.

        Args:
            store: Persistence collaborator for timelines
            notification_scheduler: Re-derives alarms after every mutation
            analytics: Passive observer of committed mutations
            clock: Returns the current aware UTC time
            state_machine: Applies step transitions
            recalibration_engine: Applies recalibration requests
            adaptive_resolver: Handles confirm-ready for adaptive steps
            config: Settings for defaults and thresholds
            flags: Feature flags
        """
        self.store = store
        self.notification_scheduler = notification_scheduler
        self.analytics = analytics or AnalyticsTap()
        self.clock = clock
        self.config = config or default_settings
        self.flags = flags or default_flags
        self.recalibration_engine = recalibration_engine or RecalibrationEngine()
        self.state_machine = state_machine or StepStateMachine(self.recalibration_engine)
        self.adaptive_resolver = adaptive_resolver or AdaptiveStepResolver(
            state_machine=self.state_machine,
            legacy_detection=self.flags.get_flag(Feature.LEGACY_ADAPTIVE_DETECTION),
        )

        self._sessions: Dict[str, BakeSession] = {}
        self._sessions_lock = threading.Lock()

    # Session management

    def _get_session(self, bake_id: str) -> BakeSession:
        """
        Get the in-memory session, loading the timeline from the store on first use.

        Raises:
            TimelineNotFoundError: No such bake
        """
        with self._sessions_lock:
            session = self._sessions.get(bake_id)
            if session is not None:
                return session

            timeline = self.store.load_timeline(bake_id)
            if self.adaptive_resolver.legacy_detection:
                timeline = self.adaptive_resolver.migrate_legacy_steps(timeline)

            session = BakeSession(timeline, ActivityTracker(bake_id, clock=self.clock))
            self._sessions[bake_id] = session

        self.notification_scheduler.reschedule(session.timeline, self.clock())
        logger.info(f"Loaded bake {bake_id} with {len(timeline.steps)} steps")
        return session

    def restore_active_bakes(self) -> int:
        """
        Load every active bake and re-derive its alarms.

        Scheduled alarms live only in memory, so this runs at startup.

        Returns:
            Number of bakes restored
        """
        restored = 0
        for bake_id in self.store.list_bake_ids(status=BakeStatus.ACTIVE):
            self._get_session(bake_id)
            restored += 1
        logger.info(f"Restored {restored} active bakes")
        return restored

    # Commands

    def start_bake(self, request: StartBakeRequest) -> CommandResult:
        """
        Lay out a new timeline from step templates and start it.

        Steps are placed back to back from the start time. When the start time
        is not in the future the first step is activated right away; otherwise
        every step stays pending until ``activate_next``.
        """
        now = self.clock()
        start = ensure_utc(request.start_time) if request.start_time else now

        steps = []
        cursor = start
        for index, template in enumerate(request.steps):
            end = add_minutes(cursor, template.estimated_duration_minutes)
            steps.append(Step(
                step_index=index,
                name=template.name,
                instructions=template.instructions,
                scheduled_start=cursor,
                scheduled_end=end,
                estimated_duration_minutes=template.estimated_duration_minutes,
                is_adaptive=template.is_adaptive,
                is_overnight=template.is_overnight,
                can_overlap=template.can_overlap,
                adaptive_check_interval_minutes=(
                    template.adaptive_check_interval_minutes
                    or self.config.adaptive_check_default_interval_minutes
                ),
            ))
            cursor = end

        timeline = Timeline(name=request.name, steps=steps, created_at=now)
        if self.adaptive_resolver.legacy_detection:
            timeline = self.adaptive_resolver.migrate_legacy_steps(timeline)
        if start <= now:
            timeline = self.state_machine.activate_next(timeline, now).timeline

        try:
            self.store.create_timeline(timeline)
        except ProoflineError as e:
            logger.error(f"Could not start bake '{request.name}': {e.message}")
            return self._failure(timeline.bake_id, "start", e)

        session = BakeSession(timeline, ActivityTracker(timeline.bake_id, clock=self.clock))
        with self._sessions_lock:
            self._sessions[timeline.bake_id] = session

        alarms = self.notification_scheduler.reschedule(timeline, now)
        self.analytics.track(AnalyticsEvent(
            event_type=AnalyticsEventType.BAKE_STARTED,
            bake_id=timeline.bake_id,
            timestamp=now,
            properties={"name": timeline.name, "step_count": len(steps)},
        ))

        logger.info(f"Started bake {timeline.bake_id} '{timeline.name}' with {len(steps)} steps")
        return CommandResult(
            ok=True,
            bake_id=timeline.bake_id,
            command="start",
            timeline=timeline,
            changed_step_ids=[step.id for step in steps],
            alarms=alarms,
        )

    def dispatch(self, bake_id: str, command: BakeCommand) -> CommandResult:
        """
        Apply one command to a bake.

        Args:
            bake_id: Target bake
            command: Any of the bake commands

        Returns:
            CommandResult; on failure ``ok`` is False, ``error`` is set and
            ``timeline`` is the unchanged current timeline when one exists
        """
        try:
            session = self._get_session(bake_id)
        except ProoflineError as e:
            logger.warning(f"Rejected {command.command} for bake {bake_id}: {e.message}")
            return self._failure(bake_id, command.command, e)

        with session.lock:
            before = session.timeline
            now = self.clock()

            try:
                self._check_lifecycle(before, command)
                after, warnings, events = self._apply(before, command, now)
            except ProoflineError as e:
                logger.warning(f"Rejected {command.command} for bake {bake_id}: {e.message}")
                return self._failure(bake_id, command.command, e, timeline=before)

            if after.status == BakeStatus.ACTIVE and after.is_finished:
                after = after.model_copy(update={"status": BakeStatus.COMPLETED})
                events.append(self._completion_event(after, now))
                logger.info(f"Bake {bake_id} completed")

            mutation = TimelineMutation(
                bake_id=bake_id,
                command=command.command,
                before=before,
                after=after,
                changed_step_ids=changed_step_ids(before, after),
                events=events,
                occurred_at=now,
            )
            return self._commit(session, mutation, warnings)

    def _commit(
        self,
        session: BakeSession,
        mutation: TimelineMutation,
        warnings: List[ErrorResponse]
    ) -> CommandResult:
        """Commit in memory, reschedule, write through; roll back if either step fails."""
        before, after = mutation.before, mutation.after

        session.timeline = after
        try:
            alarms = self.notification_scheduler.on_mutation(mutation)
        except Exception as e:
            logger.exception(
                f"Rescheduling alarms after {mutation.command} for bake {mutation.bake_id} "
                f"failed, rolling back"
            )
            session.timeline = before
            self._restore_alarms(before, mutation.occurred_at)
            error = AlarmSchedulingError(mutation.bake_id, str(e))
            return self._failure(mutation.bake_id, mutation.command, error, timeline=before)

        try:
            self._persist(mutation)
        except ProoflineError as e:
            logger.error(
                f"Persisting {mutation.command} for bake {mutation.bake_id} failed, "
                f"rolling back: {e.message}"
            )
            session.timeline = before
            self._restore_alarms(before, mutation.occurred_at)
            return self._failure(mutation.bake_id, mutation.command, e, timeline=before)

        self.analytics.observe(mutation)
        session.activity.record_interaction()
        if after.status == BakeStatus.COMPLETED:
            # Reloaded from the store if queried again
            with self._sessions_lock:
                self._sessions.pop(mutation.bake_id, None)

        logger.info(
            f"Applied {mutation.command} to bake {mutation.bake_id}: "
            f"{len(mutation.changed_step_ids)} steps changed"
        )
        return CommandResult(
            ok=True,
            bake_id=mutation.bake_id,
            command=mutation.command,
            timeline=after,
            changed_step_ids=mutation.changed_step_ids,
            alarms=alarms,
            warnings=warnings,
            needs_recalibration=self.recalibration_engine.needs_recalibration(
                after, mutation.occurred_at
            ),
        )

    def _restore_alarms(self, timeline: Timeline, now: datetime) -> None:
        """Re-derive alarms for a rolled-back timeline; failures are logged, not raised."""
        try:
            self.notification_scheduler.reschedule(timeline, now)
        except Exception:
            logger.exception(f"Could not restore alarms for bake {timeline.bake_id}")

    def _persist(self, mutation: TimelineMutation) -> None:
        before, after = mutation.before, mutation.after
        lifecycle_changed = (
            before.status != after.status or before.paused_at != after.paused_at
        )
        if not mutation.changed_step_ids and not lifecycle_changed:
            return

        changed = set(mutation.changed_step_ids)
        self.store.save_step_mutations(
            mutation.bake_id,
            [step for step in after.steps if step.id in changed],
            bake_status=after.status if lifecycle_changed else None,
            paused_at=after.paused_at,
        )

    def _check_lifecycle(self, timeline: Timeline, command: BakeCommand) -> None:
        """Completed bakes accept no commands; paused bakes accept only resume."""
        if timeline.status == BakeStatus.COMPLETED:
            raise BakeStateError(timeline.bake_id, timeline.status.value, command.command)
        if timeline.status == BakeStatus.PAUSED and not isinstance(command, ResumeBakeCommand):
            raise BakeStateError(timeline.bake_id, timeline.status.value, command.command)
        if timeline.status == BakeStatus.ACTIVE and isinstance(command, ResumeBakeCommand):
            raise BakeStateError(timeline.bake_id, timeline.status.value, command.command)

    def _apply(
        self,
        timeline: Timeline,
        command: BakeCommand,
        now: datetime
    ) -> Tuple[Timeline, List[ErrorResponse], List[AnalyticsEvent]]:
        """
        Run a command through the engine.

        Returns:
            The new timeline, warnings, and the analytics events it produced
        """
        if isinstance(command, MarkDoneCommand):
            transition = self.state_machine.mark_done(timeline, command.step_id, now)
            return self._transition_result(transition, AnalyticsEventType.STEP_COMPLETED, now)

        if isinstance(command, ConfirmReadyCommand):
            transition = self.adaptive_resolver.confirm_ready(timeline, command.step_id, now)
            return self._transition_result(transition, AnalyticsEventType.STEP_COMPLETED, now)

        if isinstance(command, SkipStepCommand):
            transition = self.state_machine.skip(
                timeline, command.step_id, now, pull_forward=command.pull_forward
            )
            return self._transition_result(transition, AnalyticsEventType.STEP_SKIPPED, now)

        if isinstance(command, ActivateNextCommand):
            transition = self.state_machine.activate_next(timeline, now)
            return transition.timeline, transition.warnings, []

        if isinstance(command, RecalibrateCommand):
            return self._recalibrate(timeline, command.request, now)

        if isinstance(command, PauseBakeCommand):
            paused = timeline.model_copy(update={"status": BakeStatus.PAUSED, "paused_at": now})
            event = AnalyticsEvent(
                event_type=AnalyticsEventType.BAKE_PAUSED,
                bake_id=timeline.bake_id,
                timestamp=now,
                properties={"active_step_ids": [s.id for s in timeline.get_active_steps()]},
            )
            return paused, [], [event]

        if isinstance(command, ResumeBakeCommand):
            paused_minutes = (
                max(0, minutes_between(timeline.paused_at, now)) if timeline.paused_at else 0
            )
            resumed = timeline.model_copy(update={"status": BakeStatus.ACTIVE, "paused_at": None})
            event = AnalyticsEvent(
                event_type=AnalyticsEventType.BAKE_RESUMED,
                bake_id=timeline.bake_id,
                timestamp=now,
                properties={"paused_minutes": paused_minutes},
            )
            return resumed, [], [event]

        raise ProoflineError(f"Unknown command '{command.command}'")

    def _transition_result(
        self,
        transition: StepTransition,
        event_type: AnalyticsEventType,
        now: datetime
    ) -> Tuple[Timeline, List[ErrorResponse], List[AnalyticsEvent]]:
        step = transition.timeline.find_step(transition.step_id)
        event = AnalyticsEvent(
            event_type=event_type,
            bake_id=transition.timeline.bake_id,
            step_id=step.id,
            timestamp=now,
            properties={
                "step_index": step.step_index,
                "name": step.name,
                "is_adaptive": step.is_adaptive,
                "estimated_duration_minutes": step.estimated_duration_minutes,
                "actual_duration_minutes": step.actual_duration_minutes,
                "activated_step_id": transition.activated_step_id,
            },
        )
        return transition.timeline, transition.warnings, [event]

    def _recalibrate(
        self,
        timeline: Timeline,
        request: RecalibrationRequest,
        now: datetime
    ) -> Tuple[Timeline, List[ErrorResponse], List[AnalyticsEvent]]:
        after = self.recalibration_engine.recalibrate(timeline, request)
        changed = changed_step_ids(timeline, after)
        if not changed:
            return after, [], []

        event = AnalyticsEvent(
            event_type=AnalyticsEventType.RECALIBRATION_APPLIED,
            bake_id=timeline.bake_id,
            step_id=request.target_step_id,
            timestamp=now,
            properties={
                "mode": request.mode.value,
                "delta_minutes": request.delta_minutes,
                "changed_step_ids": changed,
            },
        )
        return after, [], [event]

    def _completion_event(self, timeline: Timeline, now: datetime) -> AnalyticsEvent:
        summary = self.analytics.get_bake_analytics(timeline.bake_id)
        return AnalyticsEvent(
            event_type=AnalyticsEventType.BAKE_COMPLETED,
            bake_id=timeline.bake_id,
            timestamp=now,
            properties={
                "steps_completed": sum(1 for s in timeline.steps if s.status == StepStatus.COMPLETED),
                "steps_skipped": sum(1 for s in timeline.steps if s.status == StepStatus.SKIPPED),
                "times_recalibrated": summary.times_recalibrated,
                "times_paused": summary.times_paused,
                "duration_minutes": max(0, minutes_between(timeline.steps[0].scheduled_start, now)),
            },
        )

    def _failure(
        self,
        bake_id: str,
        command: str,
        error: ProoflineError,
        timeline: Optional[Timeline] = None
    ) -> CommandResult:
        return CommandResult(
            ok=False,
            bake_id=bake_id,
            command=command,
            timeline=timeline,
            error=error.to_response(),
        )

    # Queries

    def get_timeline(self, bake_id: str) -> Timeline:
        """
        Raises:
            TimelineNotFoundError: No such bake
        """
        return self._get_session(bake_id).timeline

    def get_timeline_view(self, bake_id: str) -> TimelineView:
        """Current timeline with its drift flag and overlap conflicts."""
        timeline = self.get_timeline(bake_id)
        return TimelineView(
            timeline=timeline,
            needs_recalibration=self.recalibration_engine.needs_recalibration(timeline, self.clock()),
            conflicts=self.recalibration_engine.find_conflicts(timeline),
        )

    def preview_recalibration(self, bake_id: str, request: RecalibrationRequest) -> RecalibrationPreview:
        """
        Dry-run a recalibration without committing it.

        Raises:
            TimelineNotFoundError: No such bake
            InvalidRecalibrationError: Bad request shape or target
        """
        before = self.get_timeline(bake_id)
        after = self.recalibration_engine.recalibrate(before, request)

        applied = {}
        if request.mode == RecalibrationMode.COMPRESS_TO_FINISH and request.delta_minutes:
            applied = self.recalibration_engine.compression_plan(before, request.delta_minutes)

        return RecalibrationPreview(
            bake_id=bake_id,
            request=request,
            before=before,
            after=after,
            changed_step_ids=changed_step_ids(before, after),
            applied_compression=applied,
        )

    def get_conflicts(self, bake_id: str) -> List[OverlapConflict]:
        return self.recalibration_engine.find_conflicts(self.get_timeline(bake_id))

    def get_alarms(self, bake_id: str) -> List[Alarm]:
        self._get_session(bake_id)
        return self.notification_scheduler.backend.list_alarms(bake_id)

    def get_analytics(self, bake_id: str) -> BakeAnalytics:
        self._get_session(bake_id)
        return self.analytics.get_bake_analytics(bake_id)

    # Activity

    def record_activity(self, bake_id: str) -> datetime:
        """Note a user interaction with the bake; returns its time."""
        return self._get_session(bake_id).activity.record_interaction()

    def check_missed(self, bake_id: str, threshold_minutes: Optional[int] = None) -> List[Alarm]:
        """Missed alarms for one bake according to the inactivity heuristic."""
        session = self._get_session(bake_id)
        threshold = (
            threshold_minutes if threshold_minutes is not None
            else self.config.missed_inactivity_threshold_minutes
        )
        return session.activity.detect_missed(session.timeline, threshold)

    def sweep_missed(self, threshold_minutes: Optional[int] = None) -> List[Alarm]:
        """Missed alarms across all loaded active bakes."""
        with self._sessions_lock:
            bake_ids = [
                bake_id for bake_id, session in self._sessions.items()
                if session.timeline.status == BakeStatus.ACTIVE
            ]
        missed = []
        for bake_id in bake_ids:
            missed.extend(self.check_missed(bake_id, threshold_minutes))
        return missed

    def refresh_adaptive_checks(self) -> int:
        """
        Re-derive alarms for active bakes that have a running adaptive step.

        Readiness checks are scheduled a bounded window at a time; calling
        this periodically keeps the window ahead of the clock until the
        baker confirms the step.

        Returns:
            Number of bakes rescheduled
        """
        with self._sessions_lock:
            sessions = list(self._sessions.values())

        refreshed = 0
        for session in sessions:
            with session.lock:
                timeline = session.timeline
                if timeline.status != BakeStatus.ACTIVE:
                    continue
                if not any(self.adaptive_resolver.is_adaptive(step) for step in timeline.get_active_steps()):
                    continue
                self.notification_scheduler.reschedule(timeline, self.clock())
                refreshed += 1
        return refreshed

    def delete_bake(self, bake_id: str) -> bool:
        """
        Cancel all of a bake's alarms and delete it.

        Returns:
            True if the bake existed
        """
        self.notification_scheduler.cancel(bake_id)
        with self._sessions_lock:
            self._sessions.pop(bake_id, None)
        self.analytics.clear(bake_id)

        deleted = self.store.delete_timeline(bake_id)
        if deleted:
            logger.info(f"Deleted bake {bake_id}")
        return deleted


# Global service instance
_bake_service: Optional[BakeService] = None


def get_bake_service() -> BakeService:
    """
    Get or create the global bake service instance.

    This is used as a FastAPI dependency for injecting the service
    into route handlers.

    Returns:
        The global BakeService instance
    """
    global _bake_service
    if _bake_service is None:
        _bake_service = BakeService(
            store=SqlTimelineStore(),
            notification_scheduler=NotificationScheduler(APSchedulerNotificationBackend()),
            analytics=AnalyticsTap(sinks=[SqlAnalyticsSink()]),
        )
    return _bake_service
