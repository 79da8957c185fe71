from __future__ import annotations

import pathlib
import sys
from collections.abc import Callable
from typing import Any

import pytest
from sqlalchemy.pool import StaticPool

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_dependencies():
    from automation import Config, create_app
    from backend.automation.extensions import db

    return Config, create_app, db


ConfigBase, create_app, db = _load_dependencies()


class TestConfig(ConfigBase):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite+pysqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {
        "poolclass": StaticPool,
        "connect_args": {"check_same_thread": False},
    }
    CORS_ALLOWED_ORIGINS = "http://localhost"
    DB_INIT_MAX_RETRIES = 1
    RATELIMIT_ENABLED = False
    ENABLE_SCHEDULER = False
    EXECUTE_INLINE = True
    ENGINE_MAX_STEPS = 50


@pytest.fixture(scope="module")
def app():
    app = create_app(TestConfig)
    ctx = app.app_context()
    ctx.push()
    yield app
    db.session.remove()
    ctx.pop()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def cleanup_rows(app):
    from backend.automation.models import Execution, ExecutionLog, PendingInput, Workflow

    yield

    db.session.rollback()
    db.session.query(ExecutionLog).delete()
    db.session.query(PendingInput).delete()
    db.session.query(Execution).delete()
    db.session.query(Workflow).delete()
    db.session.commit()
    app.extensions.pop("automation_adapters", None)


class FakeMessageSender:
    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []

    def send(self, channel: str, recipient: str, content: str) -> str:
        self.sent.append({"channel": channel, "recipient": recipient, "content": content})
        return f"msg-{len(self.sent)}"


class FakeCRM:
    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []

    def create_lead(self, fields: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("create_lead", fields))
        return {"id": f"lead-{len(self.calls)}", **fields}

    def update_stage(self, lead_id: str, stage: str) -> None:
        self.calls.append(("update_stage", (lead_id, stage)))

    def add_tag(self, lead_id: str, tag: str) -> None:
        self.calls.append(("add_tag", (lead_id, tag)))


class FakeHTTPCaller:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.status = 200
        self.body: Any = {"ok": True}
        self.error: Exception | None = None

    def call(self, method: str, url: str, headers: dict[str, str], body: Any):
        from backend.automation.workflow.adapters import HTTPResponse

        self.calls.append((method, url))
        if self.error is not None:
            raise self.error
        return HTTPResponse(status=self.status, body=self.body)


class FakeEmailSender:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send(self, to: str, subject: str, html: str) -> None:
        self.sent.append((to, subject, html))


class FakeSMSSender:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send(self, to: str, body: str) -> None:
        self.sent.append((to, body))


@pytest.fixture()
def fake_adapters(app):
    from backend.automation.workflow.adapters import Adapters, configure_adapters

    adapters = Adapters(
        messages=FakeMessageSender(),
        crm=FakeCRM(),
        http=FakeHTTPCaller(),
        email=FakeEmailSender(),
        sms=FakeSMSSender(),
    )
    configure_adapters(app, adapters)
    return adapters


@pytest.fixture()
def workflow_factory(app) -> Callable[..., Any]:
    from backend.automation.models import Workflow

    def factory(
        graph: dict[str, Any],
        *,
        name: str = "Workflow",
        organization_id: str = "org-1",
        trigger_type: str = "keyword",
        trigger_config: dict[str, Any] | None = None,
        is_active: bool = True,
    ) -> Workflow:
        workflow = Workflow(
            organization_id=organization_id,
            name=name,
            trigger_type=trigger_type,
            is_active=is_active,
        )
        workflow.graph = graph
        workflow.trigger_config = trigger_config or {}
        db.session.add(workflow)
        db.session.commit()
        return workflow

    return factory


@pytest.fixture()
def message_event() -> Callable[..., Any]:
    from backend.automation.workflow.triggers import NormalizedEvent

    def factory(message: str, **overrides: Any) -> NormalizedEvent:
        data: dict[str, Any] = {
            "organization_id": "org-1",
            "trigger_type": "message_received",
            "conversation_id": "conv-1",
            "channel": "whatsapp",
            "sender": "+34600000000",
            "lead_id": "lead-42",
            "message": message,
        }
        data.update(overrides)
        return NormalizedEvent.from_dict(data)

    return factory
