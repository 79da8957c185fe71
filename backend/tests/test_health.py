"""Tests for the healthcheck endpoint."""

from __future__ import annotations

from automation import Config, create_app


class TestConfig(Config):
    """Configuration used during testing."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    ENABLE_SCHEDULER = False
    EXECUTE_INLINE = True


def create_test_app():
    """Create an application instance configured for tests."""

    return create_app(TestConfig)


def test_health_endpoint_returns_ok():
    """The healthcheck endpoint should report the service and its database as ok."""

    app = create_test_app()
    client = app.test_client()

    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.get_json() == {"status": "ok", "database": "ok"}


def test_health_endpoint_reports_unreachable_database(client, monkeypatch):
    """A failing database turns the healthcheck into a 503."""

    from sqlalchemy.exc import OperationalError

    from backend.automation.extensions import db

    def _unreachable(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(db.session, "execute", _unreachable)

    response = client.get("/api/health")

    assert response.status_code == 503
    assert response.get_json() == {"status": "degraded", "database": "unavailable"}
