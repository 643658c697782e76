from __future__ import annotations

import json
from typing import Callable

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.services.gateway import build_gateway_factory

GATEWAY_URL = "http://gateway.test"


class FakeGateway:
    """In-process WhatsApp gateway answering through httpx.MockTransport."""

    def __init__(self) -> None:
        self.connected = True
        self.reachable = True
        self.phone_number = "5511999990000"
        self.failing_phones: set[str] = set()
        self.send_failures_before_success = 0
        self.sent: list[dict] = []
        self.requests: list[httpx.Request] = []
        self._counter = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.reachable:
            raise httpx.ConnectError("gateway offline", request=request)
        path = request.url.path
        if path == "/status":
            return httpx.Response(200, json={"ok": True})
        if path.endswith("/status"):
            return httpx.Response(
                200, json={"connected": self.connected, "phone_number": self.phone_number}
            )
        if path.endswith("/qr"):
            return httpx.Response(200, json={"qr_code": "data:image/png;base64,QR"})
        if path.endswith("/send"):
            body = json.loads(request.content)
            if self.send_failures_before_success > 0:
                self.send_failures_before_success -= 1
                return httpx.Response(503, json={"message": "gateway busy"})
            if body["phone"] in self.failing_phones:
                return httpx.Response(500, json={"message": "number not on whatsapp"})
            self._counter += 1
            self.sent.append(body)
            return httpx.Response(200, json={"id": f"wamid.out.{self._counter}"})
        if path.endswith("/logout") or path.endswith("/restart"):
            return httpx.Response(200, json={"success": True})
        return httpx.Response(404, json={"message": "not found"})


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def app(monkeypatch: pytest.MonkeyPatch, tmp_path, gateway: FakeGateway) -> FastAPI:
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{(tmp_path / 'inbox.sqlite3').as_posix()}")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("WHATSAPP_WEBHOOK_SECRET", "")
    monkeypatch.setenv("WEBHOOK_VERIFY_SECRET", "verify-secret")
    monkeypatch.setenv("QUEUE_CRON_SECRET", "cron-secret")
    monkeypatch.setenv("CAMPAIGN_SEND_DELAY_SECONDS", "0")
    monkeypatch.setenv("SEND_RETRY_INITIAL_DELAY_SECONDS", "0")
    monkeypatch.setenv("INBOX_DEFAULT_PRIORITY", "3")
    factory = build_gateway_factory(5.0, transport=httpx.MockTransport(gateway.handler))
    return create_app(gateway_factory=factory)


@pytest.fixture()
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def instance(client: TestClient) -> dict:
    response = client.post(
        "/instances",
        json={
            "instance_name": "Main line",
            "instance_id": "inst-main",
            "api_url": GATEWAY_URL,
            "api_key": "gw-key",
        },
    )
    assert response.status_code == 201
    return response.json()


@pytest.fixture()
def inbound_payload() -> Callable[..., dict]:
    def build(
        message_id: str,
        phone: str = "5511988887777",
        body: str = "Oi, tudo bem?",
        instance_id: str = "inst-main",
        **data: object,
    ) -> dict:
        payload_data = {
            "from": f"{phone}@c.us",
            "to": "5511999990000@c.us",
            "body": body,
            "type": "chat",
            "timestamp": 1717000000,
            "id": message_id,
            "sender": {"pushname": "Maria"},
        }
        payload_data.update(data)
        return {"event": "message.received", "instanceId": instance_id, "data": payload_data}

    return build
