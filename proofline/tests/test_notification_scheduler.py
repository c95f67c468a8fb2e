"""
Tests for alarm derivation and rescheduling.

Tests cover:
- t0 alarms for pending steps
- Overnight bedtime/wakeup split, including non-UTC timezones
- Adaptive check alarms for active adaptive steps
- Clear-then-rebuild freshness and idempotency
- Feature flag gating
"""
from datetime import datetime, timezone

import pytest

from proofline.config import get_settings
from proofline.engine.notification_backend import InMemoryNotificationBackend
from proofline.engine.notification_scheduler import NotificationScheduler
from proofline.engine.recalibration import RecalibrationEngine
from proofline.features.flags import get_feature_flags
from proofline.models.schemas import AlarmKind, BakeStatus, StepStatus, Timeline, TimelineMutation
from proofline.utils.timeutils import add_minutes

from proofline.tests.conftest import T0


@pytest.fixture
def scheduler(backend, test_settings, flags) -> NotificationScheduler:
    return NotificationScheduler(backend, config=test_settings, flags=flags)


def _kinds(alarms, step_id):
    return [alarm.kind for alarm in alarms if alarm.step_id == step_id]


class TestDeriveAlarms:
    """Tests for the alarm set derived from a timeline."""

    def test_t0_for_each_pending_step(self, scheduler, make_timeline):
        timeline = make_timeline([30, 60, 45], statuses=["active"])

        alarms = scheduler.derive_alarms(timeline, T0)

        t0_alarms = [a for a in alarms if a.kind == AlarmKind.T0]
        assert [a.step_id for a in t0_alarms] == ["step-1", "step-2"]
        assert t0_alarms[0].scheduled_time == add_minutes(T0, 30)
        assert t0_alarms[1].scheduled_time == add_minutes(T0, 90)

    def test_no_alarms_for_terminal_or_fixed_active_steps(self, scheduler, make_timeline):
        timeline = make_timeline([30, 30], statuses=["completed", "active"])

        assert scheduler.derive_alarms(timeline, T0) == []

    def test_overnight_step_gets_bedtime_and_wakeup(self, scheduler, make_timeline):
        timeline = make_timeline([30, 600], statuses=["active"])

        alarms = scheduler.derive_alarms(timeline, T0)

        by_kind = {a.kind: a for a in alarms if a.step_id == "step-1"}
        assert set(by_kind) == {AlarmKind.T0, AlarmKind.BEDTIME, AlarmKind.WAKEUP}
        assert by_kind[AlarmKind.BEDTIME].scheduled_time == datetime(2025, 3, 1, 22, 0, tzinfo=timezone.utc)
        assert by_kind[AlarmKind.WAKEUP].scheduled_time == datetime(2025, 3, 2, 7, 0, tzinfo=timezone.utc)

    def test_explicit_overnight_flag_on_short_step(self, scheduler, make_step):
        steps = [
            make_step(0, 30, T0, StepStatus.ACTIVE),
            make_step(1, 60, add_minutes(T0, 30), is_overnight=True),
        ]
        timeline = Timeline(bake_id="bake-1", steps=steps)

        alarms = scheduler.derive_alarms(timeline, T0)

        assert AlarmKind.BEDTIME in _kinds(alarms, "step-1")

    def test_bedtime_uses_configured_timezone(self, backend, flags, make_timeline):
        config = get_settings(timezone="America/New_York", adaptive_check_max_alarms=4)
        scheduler = NotificationScheduler(backend, config=config, flags=flags)
        timeline = make_timeline([30, 600], statuses=["active"])

        alarms = scheduler.derive_alarms(timeline, T0)

        bedtime = next(a for a in alarms if a.kind == AlarmKind.BEDTIME)
        # 22:00 EST on 2025-03-01 is 03:00 UTC the next day
        assert bedtime.scheduled_time == datetime(2025, 3, 2, 3, 0, tzinfo=timezone.utc)

    def test_overnight_split_can_be_disabled(self, backend, test_settings, make_timeline):
        flags = get_feature_flags(feature_overnight_split_alarms=False)
        scheduler = NotificationScheduler(backend, config=test_settings, flags=flags)
        timeline = make_timeline([30, 600], statuses=["active"])

        alarms = scheduler.derive_alarms(timeline, T0)

        assert _kinds(alarms, "step-1") == [AlarmKind.T0]

    def test_adaptive_checks_for_active_adaptive_step(self, scheduler, make_timeline):
        timeline = make_timeline([240, 30], statuses=["active"], is_adaptive=True)

        alarms = scheduler.derive_alarms(timeline, T0)

        checks = [a for a in alarms if a.kind == AlarmKind.ADAPTIVE_CHECK]
        # adaptive_check_max_alarms=4 in test settings
        assert [a.scheduled_time for a in checks] == [add_minutes(T0, 30 * k) for k in range(1, 5)]
        assert all(a.step_id == "step-0" for a in checks)

    def test_adaptive_checks_follow_the_clock(self, scheduler, make_timeline):
        timeline = make_timeline([240, 30], statuses=["active"], is_adaptive=True)

        alarms = scheduler.derive_alarms(timeline, add_minutes(T0, 200))

        checks = [a.scheduled_time for a in alarms if a.kind == AlarmKind.ADAPTIVE_CHECK]
        assert checks == [add_minutes(T0, 30 * k) for k in range(7, 11)]

    def test_adaptive_checks_can_be_disabled(self, backend, test_settings, make_timeline):
        flags = get_feature_flags(feature_adaptive_check_alarms=False)
        scheduler = NotificationScheduler(backend, config=test_settings, flags=flags)
        timeline = make_timeline([240, 30], statuses=["active"], is_adaptive=True)

        alarms = scheduler.derive_alarms(timeline, T0)

        assert AlarmKind.ADAPTIVE_CHECK not in [a.kind for a in alarms]

    def test_past_alarms_dropped(self, scheduler, make_timeline):
        timeline = make_timeline([30, 60, 45], statuses=["active"])

        alarms = scheduler.derive_alarms(timeline, add_minutes(T0, 30))

        assert [a.step_id for a in alarms] == ["step-2"]

    def test_paused_bake_has_no_alarms(self, scheduler, make_timeline):
        timeline = make_timeline([30, 60], statuses=["active"])
        timeline.status = BakeStatus.PAUSED

        assert scheduler.derive_alarms(timeline, T0) == []

    def test_alarms_sorted_by_time(self, scheduler, make_timeline):
        timeline = make_timeline([30, 600, 30], statuses=["active"])

        alarms = scheduler.derive_alarms(timeline, T0)

        times = [a.scheduled_time for a in alarms]
        assert times == sorted(times)


class TestReschedule:
    """Tests for clear-then-rebuild rescheduling."""

    def test_reschedule_is_idempotent(self, scheduler, backend, make_timeline):
        timeline = make_timeline([30, 600, 30], statuses=["active"])

        first = scheduler.reschedule(timeline, T0)
        second = scheduler.reschedule(timeline, T0)

        assert first == second
        assert backend.list_alarms("bake-1") == second

    def test_no_stale_alarms_after_mutation(self, scheduler, backend, make_timeline):
        """After shift_all no alarm keeps a pre-mutation time."""
        before = make_timeline([30, 60, 45], statuses=["active"])
        scheduler.reschedule(before, T0)
        stale_times = {a.scheduled_time for a in backend.list_alarms("bake-1")}

        after = RecalibrationEngine().shift_all(before, 20)
        scheduler.on_mutation(TimelineMutation(
            bake_id="bake-1", command="recalibrate", before=before, after=after, occurred_at=T0,
        ))

        current = backend.list_alarms("bake-1")
        assert current
        assert not stale_times & {a.scheduled_time for a in current}

    def test_cancel_removes_all_alarms_for_bake(self, scheduler, backend, make_timeline):
        scheduler.reschedule(make_timeline([30, 60], statuses=["active"]), T0)
        scheduler.reschedule(make_timeline([30, 60], statuses=["active"], bake_id="bake-2"), T0)

        scheduler.cancel("bake-1")

        assert backend.list_alarms("bake-1") == []
        assert backend.list_alarms("bake-2") != []


class TestInMemoryBackend:
    """Tests for the in-memory notification backend."""

    def test_schedule_same_alarm_twice_keeps_one(self, make_timeline):
        backend = InMemoryNotificationBackend()
        scheduler = NotificationScheduler(backend)
        alarm = scheduler.derive_alarms(make_timeline([30, 60], statuses=["active"]), T0)[0]

        backend.schedule_alarm(alarm)
        backend.schedule_alarm(alarm)

        assert backend.list_alarms("bake-1") == [alarm]
