"""
Tests for adaptive step resolution.
"""
import pytest

from proofline.engine.adaptive import AdaptiveStepResolver, detect_legacy_adaptive
from proofline.errors import InvalidTransitionError, StepNotFoundError
from proofline.models.schemas import StepStatus, Timeline
from proofline.utils.timeutils import add_minutes

from proofline.tests.conftest import T0


class TestLegacyDetection:
    """Tests for the keyword heuristic used on legacy steps."""

    @pytest.mark.parametrize("name", [
        "Bulk ferment until doubled",
        "Proof until READY",
        "Let starter rise: doubled?",
    ])
    def test_keywords_detected(self, make_step, name):
        assert detect_legacy_adaptive(make_step(0, name=name)) is True

    def test_keyword_in_instructions(self, make_step):
        step = make_step(0, name="Final proof", instructions="Wait until it springs back slowly")
        assert detect_legacy_adaptive(step) is True

    def test_partial_words_do_not_match(self, make_step):
        assert detect_legacy_adaptive(make_step(0, name="Already shaped")) is False

    def test_heuristic_is_opt_in(self, make_step):
        step = make_step(0, name="Rise until doubled")

        assert AdaptiveStepResolver().is_adaptive(step) is False
        assert AdaptiveStepResolver(legacy_detection=True).is_adaptive(step) is True

    def test_explicit_flag_always_wins(self, make_step):
        step = make_step(0, name="Bulk", is_adaptive=True)
        assert AdaptiveStepResolver().is_adaptive(step) is True

    def test_migrate_sets_flag_on_open_steps_only(self, make_step):
        steps = [
            make_step(0, name="Levain until ready", status=StepStatus.COMPLETED),
            make_step(1, start=add_minutes(T0, 30), name="Bulk until doubled"),
            make_step(2, start=add_minutes(T0, 60), name="Shape"),
        ]
        timeline = Timeline(bake_id="bake-1", steps=steps)

        migrated = AdaptiveStepResolver().migrate_legacy_steps(timeline)

        assert [s.is_adaptive for s in migrated.steps] == [False, True, False]
        assert timeline.steps[1].is_adaptive is False


class TestCheckTimes:
    """Tests for readiness check scheduling."""

    def test_checks_every_interval_after_start(self, make_step):
        step = make_step(0, 240, status=StepStatus.ACTIVE, is_adaptive=True,
                         adaptive_check_interval_minutes=45)

        times = AdaptiveStepResolver().check_times(step, max_checks=3)

        assert times == [add_minutes(T0, 45), add_minutes(T0, 90), add_minutes(T0, 135)]

    def test_window_starts_after_given_time(self, make_step):
        step = make_step(0, 480, status=StepStatus.ACTIVE, is_adaptive=True,
                         adaptive_check_interval_minutes=5)

        times = AdaptiveStepResolver().check_times(step, max_checks=3, after=add_minutes(T0, 300))

        assert times == [add_minutes(T0, 305), add_minutes(T0, 310), add_minutes(T0, 315)]

    def test_window_skips_check_at_exact_time(self, make_step):
        step = make_step(0, 240, status=StepStatus.ACTIVE, is_adaptive=True,
                         adaptive_check_interval_minutes=30)

        times = AdaptiveStepResolver().check_times(step, max_checks=2, after=add_minutes(T0, 60))

        assert times == [add_minutes(T0, 90), add_minutes(T0, 120)]

    def test_checks_continue_past_estimated_duration(self, make_step):
        """An unconfirmed step keeps getting checks however long it runs."""
        step = make_step(0, 60, status=StepStatus.ACTIVE, is_adaptive=True,
                         adaptive_check_interval_minutes=30)

        times = AdaptiveStepResolver().check_times(step, max_checks=1, after=add_minutes(T0, 600))

        assert times == [add_minutes(T0, 630)]

    def test_no_checks_for_pending_step(self, make_step):
        step = make_step(0, is_adaptive=True)
        assert AdaptiveStepResolver().check_times(step, max_checks=3) == []

    def test_no_checks_for_fixed_step(self, make_step):
        step = make_step(0, status=StepStatus.ACTIVE)
        assert AdaptiveStepResolver().check_times(step, max_checks=3) == []


class TestConfirmReady:
    """Tests for the confirm-ready command."""

    def test_confirm_completes_and_activates_next(self, make_step):
        steps = [
            make_step(0, 240, status=StepStatus.ACTIVE, is_adaptive=True),
            make_step(1, 30, add_minutes(T0, 240)),
        ]
        timeline = Timeline(bake_id="bake-1", steps=steps)
        now = add_minutes(T0, 300)

        transition = AdaptiveStepResolver().confirm_ready(timeline, "step-0", now)

        bulk, shape = transition.timeline.steps
        assert bulk.status == StepStatus.COMPLETED
        assert bulk.actual_duration_minutes == 300
        assert shape.status == StepStatus.ACTIVE
        assert shape.scheduled_start == now

    def test_confirm_on_fixed_step_rejected(self, make_timeline):
        timeline = make_timeline([30, 30], statuses=["active"])

        with pytest.raises(InvalidTransitionError) as exc_info:
            AdaptiveStepResolver().confirm_ready(timeline, "step-0", T0)

        assert "not adaptive" in exc_info.value.message

    def test_confirm_on_pending_adaptive_step_rejected(self, make_step):
        timeline = Timeline(bake_id="bake-1", steps=[make_step(0, is_adaptive=True)])

        with pytest.raises(InvalidTransitionError):
            AdaptiveStepResolver().confirm_ready(timeline, "step-0", T0)

    def test_confirm_unknown_step(self, make_timeline):
        with pytest.raises(StepNotFoundError):
            AdaptiveStepResolver().confirm_ready(make_timeline([30]), "missing", T0)
