"""
Tests for the service-level endpoints: /, /health and the OpenAPI docs.
"""
from unittest.mock import patch, MagicMock

import pytest


@pytest.fixture
def broken_database():
    """Make the health check's session fail on execute."""
    with patch("proofline.main.SessionLocal") as session_factory:
        session = MagicMock()
        session.execute.side_effect = Exception("Connection timeout")
        session_factory.return_value = session
        yield session


class TestRoot:
    def test_describes_api(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json() == {
            "name": "Proofline API",
            "version": "0.1.0",
            "status": "running",
            "docs": "/docs",
        }


class TestHealth:
    """Database check and alarm scheduler reporting."""

    def test_in_memory_database_is_healthy(self, client):
        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert "database_error" not in data

    def test_scheduler_stopped_when_jobs_disabled(self, client):
        assert client.get("/health").json()["alarm_scheduler"] == "stopped"

    def test_database_failure_reported_in_body(self, client, broken_database):
        data = client.get("/health").json()

        assert data["status"] == "unhealthy"
        assert data["database"] == "unhealthy"
        assert "Connection timeout" in data["database_error"]

    def test_database_failure_still_answers_200(self, client, broken_database):
        """Load balancers read the body, not the status code."""
        assert client.get("/health").status_code == 200

    def test_check_session_closed_after_failure(self, client, broken_database):
        client.get("/health")

        broken_database.close.assert_called_once()


class TestDocs:
    def test_openapi_lists_bake_routes(self, client):
        paths = client.get("/openapi.json").json()["paths"]

        assert "/api/bakes" in paths
        assert "/api/bakes/{bake_id}/recalibrate" in paths
        assert "/api/features" in paths

    def test_swagger_ui_served(self, client):
        assert client.get("/docs").status_code in (200, 307)
