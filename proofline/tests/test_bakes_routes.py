"""
Tests for bake API routes.

Tests cover:
- Starting a bake and reading its timeline view
- Step commands and error status mapping
- Recalibration, including the feature-gated preview
- Pause/resume, alarms, activity, analytics and deletion
"""
import pytest

from proofline.features import FeatureFlagService, get_feature_flags, get_feature_service
from proofline.main import app


@pytest.fixture
def bake(client, start_payload) -> dict:
    response = client.post("/api/bakes", json=start_payload)
    assert response.status_code == 201
    return response.json()


def _step_ids(bake: dict) -> list:
    return [step["id"] for step in bake["timeline"]["steps"]]


@pytest.fixture
def disabled_features():
    """Override the feature service with the given flags switched off."""

    def _disable(*names):
        overrides = {f"feature_{name}": False for name in names}
        service = FeatureFlagService(get_feature_flags(**overrides))
        app.dependency_overrides[get_feature_service] = lambda: service

    return _disable


class TestStartBake:
    """Tests for POST /api/bakes."""

    def test_start_bake(self, bake):
        assert bake["ok"] is True
        steps = bake["timeline"]["steps"]
        assert [s["name"] for s in steps] == ["Mix", "Bulk Fermentation", "Cold Retard"]
        assert [s["status"] for s in steps] == ["active", "pending", "pending"]
        assert {a["kind"] for a in bake["alarms"]} >= {"t0", "bedtime", "wakeup"}

    def test_start_bake_requires_steps(self, client):
        response = client.post("/api/bakes", json={"name": "Empty", "steps": []})

        assert response.status_code == 422

    def test_future_start_leaves_steps_pending(self, client, start_payload):
        start_payload["start_time"] = "2025-03-02T09:00:00Z"

        response = client.post("/api/bakes", json=start_payload)

        statuses = [s["status"] for s in response.json()["timeline"]["steps"]]
        assert statuses == ["pending", "pending", "pending"]


class TestTimelineView:
    """Tests for GET /api/bakes/{bake_id}."""

    def test_get_timeline(self, client, bake):
        response = client.get(f"/api/bakes/{bake['bake_id']}")

        assert response.status_code == 200
        data = response.json()
        assert data["timeline"]["bake_id"] == bake["bake_id"]
        assert data["needs_recalibration"] is False
        assert data["conflicts"] == []

    def test_drift_is_flagged(self, client, bake, clock):
        clock.advance(45)

        data = client.get(f"/api/bakes/{bake['bake_id']}").json()

        assert data["needs_recalibration"] is True

    def test_unknown_bake(self, client):
        response = client.get("/api/bakes/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "TIMELINE_NOT_FOUND"


class TestStepCommands:
    """Tests for done/skip/confirm-ready/activate-next."""

    def test_mark_done_activates_next(self, client, bake, clock):
        mix, bulk, _ = _step_ids(bake)
        clock.advance(35)

        response = client.post(f"/api/bakes/{bake['bake_id']}/steps/{mix}/done")

        assert response.status_code == 200
        steps = response.json()["timeline"]["steps"]
        assert steps[0]["status"] == "completed"
        assert steps[0]["actual_duration_minutes"] == 35
        assert steps[1]["id"] == bulk
        assert steps[1]["status"] == "active"

    def test_mark_pending_step_done_conflicts(self, client, bake):
        _, _, retard = _step_ids(bake)

        response = client.post(f"/api/bakes/{bake['bake_id']}/steps/{retard}/done")

        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "STEP_INVALID_TRANSITION"

    def test_unknown_step(self, client, bake):
        response = client.post(f"/api/bakes/{bake['bake_id']}/steps/nope/done")

        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "STEP_NOT_FOUND"

    def test_command_on_unknown_bake(self, client):
        response = client.post("/api/bakes/missing/activate-next")

        assert response.status_code == 404

    def test_skip_without_body(self, client, bake):
        _, _, retard = _step_ids(bake)

        response = client.post(f"/api/bakes/{bake['bake_id']}/steps/{retard}/skip")

        assert response.status_code == 200
        assert response.json()["timeline"]["steps"][2]["status"] == "skipped"

    def test_skip_with_pull_forward(self, client, bake):
        mix, bulk, _ = _step_ids(bake)

        response = client.post(
            f"/api/bakes/{bake['bake_id']}/steps/{mix}/skip",
            json={"pull_forward": True},
        )

        assert response.status_code == 200
        steps = response.json()["timeline"]["steps"]
        assert steps[1]["id"] == bulk
        assert steps[1]["status"] == "active"
        assert steps[1]["scheduled_start"] == bake["timeline"]["steps"][0]["scheduled_start"]

    def test_confirm_ready_on_non_adaptive_step(self, client, bake):
        mix, _, _ = _step_ids(bake)

        response = client.post(f"/api/bakes/{bake['bake_id']}/steps/{mix}/confirm-ready")

        assert response.status_code == 409

    def test_activate_next_with_active_step_is_noop(self, client, bake):
        response = client.post(f"/api/bakes/{bake['bake_id']}/activate-next")

        assert response.status_code == 200
        assert response.json()["changed_step_ids"] == []


class TestRecalibrate:
    """Tests for recalibration endpoints."""

    def test_shift_all(self, client, bake):
        response = client.post(
            f"/api/bakes/{bake['bake_id']}/recalibrate",
            json={"mode": "shift_all", "delta_minutes": 30},
        )

        assert response.status_code == 200
        assert len(response.json()["changed_step_ids"]) == 3

    def test_edit_single_requires_target(self, client, bake):
        response = client.post(
            f"/api/bakes/{bake['bake_id']}/recalibrate",
            json={"mode": "edit_single", "delta_minutes": 30},
        )

        assert response.status_code == 422

    def test_invalid_mode_rejected(self, client, bake):
        response = client.post(
            f"/api/bakes/{bake['bake_id']}/recalibrate",
            json={"mode": "stretch", "delta_minutes": 30},
        )

        assert response.status_code == 422

    def test_preview_does_not_mutate(self, client, bake):
        bake_id = bake["bake_id"]

        response = client.post(
            f"/api/bakes/{bake_id}/recalibrate/preview",
            json={"mode": "shift_all", "delta_minutes": 30},
        )

        assert response.status_code == 200
        preview = response.json()
        assert preview["before"] == bake["timeline"]
        assert preview["after"] != preview["before"]
        assert client.get(f"/api/bakes/{bake_id}").json()["timeline"] == bake["timeline"]

    def test_preview_disabled(self, client, bake, disabled_features):
        disabled_features("recalibration_preview")

        response = client.post(
            f"/api/bakes/{bake['bake_id']}/recalibrate/preview",
            json={"mode": "shift_all", "delta_minutes": 30},
        )

        assert response.status_code == 503
        assert response.json()["detail"]["error_code"] == "FEATURE_DISABLED"


class TestLifecycle:
    """Tests for pause/resume and deletion."""

    def test_pause_clears_alarms(self, client, bake):
        bake_id = bake["bake_id"]

        response = client.post(f"/api/bakes/{bake_id}/pause")

        assert response.status_code == 200
        assert response.json()["timeline"]["status"] == "paused"
        assert client.get(f"/api/bakes/{bake_id}/alarms").json() == []

    def test_commands_rejected_while_paused(self, client, bake):
        bake_id = bake["bake_id"]
        client.post(f"/api/bakes/{bake_id}/pause")

        response = client.post(f"/api/bakes/{bake_id}/activate-next")

        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "BAKE_INVALID_STATE"

    def test_resume_restores_alarms(self, client, bake, clock):
        bake_id = bake["bake_id"]
        client.post(f"/api/bakes/{bake_id}/pause")
        clock.advance(20)

        response = client.post(f"/api/bakes/{bake_id}/resume")

        assert response.status_code == 200
        assert response.json()["timeline"]["status"] == "active"
        assert client.get(f"/api/bakes/{bake_id}/alarms").json() != []

    def test_resume_active_bake_conflicts(self, client, bake):
        response = client.post(f"/api/bakes/{bake['bake_id']}/resume")

        assert response.status_code == 409

    def test_delete_bake(self, client, bake):
        bake_id = bake["bake_id"]

        response = client.delete(f"/api/bakes/{bake_id}")

        assert response.status_code == 204
        assert client.get(f"/api/bakes/{bake_id}").status_code == 404

    def test_delete_unknown_bake(self, client):
        response = client.delete("/api/bakes/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "TIMELINE_NOT_FOUND"


class TestAlarmsAndActivity:
    """Tests for alarms, activity, conflicts and analytics."""

    def test_list_alarms_sorted(self, client, bake):
        alarms = client.get(f"/api/bakes/{bake['bake_id']}/alarms").json()

        times = [a["scheduled_time"] for a in alarms]
        assert times == sorted(times)

    def test_record_activity(self, client, bake, clock):
        clock.advance(10)

        response = client.post(f"/api/bakes/{bake['bake_id']}/activity")

        assert response.status_code == 200
        assert response.json()["bake_id"] == bake["bake_id"]

    def test_conflicts_empty_for_sequential_bake(self, client, bake):
        response = client.get(f"/api/bakes/{bake['bake_id']}/conflicts")

        assert response.status_code == 200
        assert response.json() == []

    def test_analytics(self, client, bake, clock):
        mix, _, _ = _step_ids(bake)
        clock.advance(40)
        client.post(f"/api/bakes/{bake['bake_id']}/steps/{mix}/done")

        response = client.get(f"/api/bakes/{bake['bake_id']}/analytics")

        assert response.status_code == 200
        data = response.json()
        assert data["steps_completed"] == 1
        assert data["average_step_drift_minutes"] == 10.0

    def test_analytics_disabled(self, client, bake, disabled_features):
        disabled_features("bake_analytics")

        response = client.get(f"/api/bakes/{bake['bake_id']}/analytics")

        assert response.status_code == 503
