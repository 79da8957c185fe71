"""Action adapter contracts invoked by the engine, with default implementations."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Protocol

import requests
from flask import Flask, current_app

from .errors import NetworkError

_EXTENSION_KEY = "automation_adapters"


@dataclass(frozen=True)
class HTTPResponse:
    status: int
    body: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "body": self.body}


class MessageSender(Protocol):
    def send(self, channel: str, recipient: str, content: str) -> str: ...


class CRMAdapter(Protocol):
    def create_lead(self, fields: dict[str, Any]) -> dict[str, Any]: ...

    def update_stage(self, lead_id: str, stage: str) -> None: ...

    def add_tag(self, lead_id: str, tag: str) -> None: ...


class HTTPCaller(Protocol):
    def call(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: Any,
    ) -> HTTPResponse: ...


class EmailSender(Protocol):
    def send(self, to: str, subject: str, html: str) -> None: ...


class SMSSender(Protocol):
    def send(self, to: str, body: str) -> None: ...


@dataclass
class Adapters:
    """Bundle of the capabilities a workflow can invoke."""

    messages: MessageSender
    crm: CRMAdapter
    http: HTTPCaller
    email: EmailSender
    sms: SMSSender


class RequestsHTTPCaller:
    """HTTP caller backed by :mod:`requests`."""

    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout

    def call(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: Any,
    ) -> HTTPResponse:
        kwargs: dict[str, Any] = {"headers": headers or {}, "timeout": self.timeout}
        if body not in (None, ""):
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["data"] = body
        try:
            response = requests.request(method.upper(), url, **kwargs)
        except requests.Timeout as exc:
            raise NetworkError(f"request to {url} timed out", kind="timeout") from exc
        except requests.RequestException as exc:
            raise NetworkError(f"request to {url} failed: {exc}") from exc

        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text
        return HTTPResponse(status=response.status_code, body=payload)


class LoggingMessageSender:
    """Records outbound messages in the application log until a channel is wired in."""

    def send(self, channel: str, recipient: str, content: str) -> str:
        message_id = f"msg-{uuid.uuid4().hex[:12]}"
        current_app.logger.info(
            "outbound message %s via %s to %s: %s", message_id, channel, recipient, content
        )
        return message_id


class LoggingCRMAdapter:
    def create_lead(self, fields: dict[str, Any]) -> dict[str, Any]:
        lead_id = f"lead-{uuid.uuid4().hex[:12]}"
        current_app.logger.info("crm create_lead %s: %s", lead_id, fields)
        return {"id": lead_id, **fields}

    def update_stage(self, lead_id: str, stage: str) -> None:
        current_app.logger.info("crm update_stage %s -> %s", lead_id, stage)

    def add_tag(self, lead_id: str, tag: str) -> None:
        current_app.logger.info("crm add_tag %s: %s", lead_id, tag)


class LoggingEmailSender:
    def send(self, to: str, subject: str, html: str) -> None:
        current_app.logger.info("outbound email to %s: %s", to, subject)


class LoggingSMSSender:
    def send(self, to: str, body: str) -> None:
        current_app.logger.info("outbound sms to %s: %s", to, body)


def default_adapters(app: Flask) -> Adapters:
    return Adapters(
        messages=LoggingMessageSender(),
        crm=LoggingCRMAdapter(),
        http=RequestsHTTPCaller(timeout=float(app.config.get("HTTP_NODE_TIMEOUT", 10))),
        email=LoggingEmailSender(),
        sms=LoggingSMSSender(),
    )


def configure_adapters(app: Flask, adapters: Adapters) -> None:
    """Install the adapters the engine uses for ``app``."""

    app.extensions[_EXTENSION_KEY] = adapters


def get_adapters(app: Flask | None = None) -> Adapters:
    app = app or current_app._get_current_object()  # type: ignore[attr-defined]
    adapters = app.extensions.get(_EXTENSION_KEY)
    if adapters is None:
        adapters = default_adapters(app)
        app.extensions[_EXTENSION_KEY] = adapters
    return adapters
