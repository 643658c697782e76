from __future__ import annotations

import json
from datetime import datetime, timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.models import JobType, MessageDirection, MessageStatus, WebhookOutcome, utc_now
from backend.app.services.gateway import build_gateway_factory
from backend.app.services.webhooks import sign_payload

CRON = {"Authorization": "Bearer cron-secret"}


def _logs(app) -> list:
    return app.state.store.list_webhook_logs()


def test_subscription_handshake_checks_secret(client) -> None:
    assert client.get("/webhooks/whatsapp", params={"secret": "verify-secret"}).status_code == 200
    assert client.get("/webhooks/whatsapp", params={"secret": "wrong"}).status_code == 403
    assert client.get("/webhooks/whatsapp").status_code == 403


def test_inbound_message_creates_contact_message_and_inbox_item(
    client, app, instance, inbound_payload
) -> None:
    response = client.post("/webhooks/whatsapp", json=inbound_payload("wamid.in.1"))
    assert response.status_code == 200
    assert response.json()["success"] is True

    store = app.state.store.scoped("dev-local")
    contacts = store.list_contacts()
    assert [(item.name, item.phone) for item in contacts] == [("Maria", "5511988887777")]
    assert contacts[0].last_message_at is not None

    messages = store.list_messages(contacts[0].id)
    assert len(messages) == 1
    assert messages[0].direction == MessageDirection.inbound
    assert messages[0].status == MessageStatus.delivered
    assert messages[0].whatsapp_message_id == "wamid.in.1"
    assert messages[0].sent_at == datetime(2024, 5, 29, 16, 26, 40)

    inbox = client.get("/inbox").json()
    assert [item["contact_id"] for item in inbox] == [contacts[0].id]
    assert inbox[0]["message_id"] == messages[0].id
    assert inbox[0]["priority"] == 3

    logs = _logs(app)
    assert logs[0].outcome == WebhookOutcome.processed
    assert logs[0].event_type == "message.received"
    assert logs[0].instance_id == "inst-main"


def test_redelivered_message_is_ignored(client, app, instance, inbound_payload) -> None:
    client.post("/webhooks/whatsapp", json=inbound_payload("wamid.in.1"))
    again = client.post("/webhooks/whatsapp", json=inbound_payload("wamid.in.1"))

    assert again.status_code == 200
    assert again.json()["detail"] == "duplicate message"
    store = app.state.store.scoped("dev-local")
    contact = store.list_contacts()[0]
    assert len(store.list_messages(contact.id)) == 1
    assert len(client.get("/inbox").json()) == 1
    assert _logs(app)[0].outcome == WebhookOutcome.ignored


def test_follow_up_message_joins_open_conversation(client, app, instance, inbound_payload) -> None:
    client.post("/webhooks/whatsapp", json=inbound_payload("wamid.in.1"))
    item = client.get("/inbox").json()[0]
    conversation = client.post(f"/inbox/{item['id']}/assign").json()
    assert conversation["owner_id"] == "dev-local"

    client.post("/webhooks/whatsapp", json=inbound_payload("wamid.in.2", body="mais uma coisa"))

    assert client.get("/inbox").json() == []
    listed = client.get("/conversations").json()
    assert [entry["id"] for entry in listed] == [conversation["id"]]
    assert listed[0]["last_message_at"] is not None
    assert listed[0]["contact"]["phone"] == "5511988887777"


def test_media_message_and_millisecond_timestamp(client, app, instance, inbound_payload) -> None:
    payload = inbound_payload(
        "wamid.in.img",
        body=None,
        type="image",
        caption="foto do pedido",
        media_url="https://cdn.test/pedido.jpg",
        timestamp=1717000000000,
    )
    assert client.post("/webhooks/whatsapp", json=payload).status_code == 200

    store = app.state.store.scoped("dev-local")
    message = store.list_messages(store.list_contacts()[0].id)[0]
    assert message.has_media is True
    assert message.media_type == "image"
    assert message.body == "foto do pedido"
    assert message.sent_at == datetime(2024, 5, 29, 16, 26, 40)


def test_invalid_payload_is_rejected_and_logged(client, app) -> None:
    response = client.post(
        "/webhooks/whatsapp",
        json={"event": "message.received", "instanceId": "inst-main", "data": {"from": "123"}},
    )
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["message"] == "payload failed validation"
    assert detail["errors"]

    logs = _logs(app)
    assert len(logs) == 1
    assert logs[0].outcome == WebhookOutcome.rejected
    assert logs[0].event_type == "message.received"


def test_malformed_json_is_rejected(client, app) -> None:
    response = client.post(
        "/webhooks/whatsapp",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    assert response.status_code == 400
    assert _logs(app)[0].outcome == WebhookOutcome.rejected


def test_unknown_instance_returns_404(client, app, inbound_payload) -> None:
    response = client.post(
        "/webhooks/whatsapp", json=inbound_payload("wamid.in.1", instance_id="inst-ghost")
    )
    assert response.status_code == 404
    assert _logs(app)[0].outcome == WebhookOutcome.rejected


def test_other_events_are_acknowledged_and_ignored(client, app) -> None:
    response = client.post(
        "/webhooks/whatsapp", json={"event": "presence.update", "instanceId": "inst-main"}
    )
    assert response.status_code == 200
    assert _logs(app)[0].outcome == WebhookOutcome.ignored


def test_status_event_updates_outbound_message(client, app, instance) -> None:
    contact = client.post("/contacts", json={"name": "Joao", "phone": "5511977776666"}).json()
    sent = client.post("/messages/send", json={"contact_id": contact["id"], "body": "Ola"})
    assert sent.status_code == 201
    whatsapp_id = sent.json()["whatsapp_message_id"]

    response = client.post(
        "/webhooks/whatsapp",
        json={
            "event": "message.status",
            "instanceId": "inst-main",
            "data": {"id": whatsapp_id, "status": "read"},
        },
    )
    assert response.status_code == 200

    store = app.state.store.scoped("dev-local")
    message = store.list_messages(contact["id"])[0]
    assert message.status == MessageStatus.read
    assert message.read_at is not None


def test_auto_reply_answers_matching_message(client, app, gateway, instance, inbound_payload) -> None:
    client.post("/auto-replies", json={"trigger": "preço", "reply": "Nosso preço é R$10"})
    client.post("/auto-replies", json={"trigger": "horário", "reply": "Abrimos às 9h"})

    client.post("/webhooks/whatsapp", json=inbound_payload("wamid.in.1", body="Qual o PREÇO?"))

    assert gateway.sent == [{"phone": "5511988887777", "message": "Nosso preço é R$10"}]
    rules = {rule["trigger"]: rule for rule in client.get("/auto-replies").json()}
    assert rules["preço"]["usage_count"] == 1
    assert rules["horário"]["usage_count"] == 0


def test_no_auto_reply_without_match(client, gateway, instance, inbound_payload) -> None:
    client.post("/auto-replies", json={"trigger": "preço", "reply": "Nosso preço é R$10"})

    response = client.post("/webhooks/whatsapp", json=inbound_payload("wamid.in.1", body="bom dia"))

    assert response.status_code == 200
    assert gateway.sent == []


def test_unexpected_failure_is_queued_for_retry(
    client, app, instance, inbound_payload, monkeypatch
) -> None:
    ingestor = app.state.ingestor
    original = ingestor.handle_message
    calls = {"count": 0}

    def flaky(event):
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("database hiccup")
        return original(event)

    monkeypatch.setattr(ingestor, "handle_message", flaky)

    response = client.post("/webhooks/whatsapp", json=inbound_payload("wamid.in.1"))
    assert response.status_code == 500
    assert _logs(app)[0].outcome == WebhookOutcome.failed
    jobs = app.state.store.list_due_jobs(utc_now() + timedelta(days=1), 10)
    assert [job.job_type for job in jobs] == [JobType.process_webhook]

    run = client.post("/queue/process", headers=CRON)
    assert run.json()["summary"]["done"] == 1
    assert len(client.get("/inbox").json()) == 1


def test_routing_failure_rolls_back_message_so_retry_routes_contact(
    client, app, instance, inbound_payload, monkeypatch
) -> None:
    router = app.state.ingestor.router
    original = router.route_inbound_contact
    calls = {"count": 0}

    def flaky(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("inbox insert failed")
        return original(*args, **kwargs)

    monkeypatch.setattr(router, "route_inbound_contact", flaky)

    response = client.post("/webhooks/whatsapp", json=inbound_payload("wamid.in.1"))
    assert response.status_code == 500
    store = app.state.store.scoped("dev-local")
    contact = store.list_contacts()[0]
    assert store.list_messages(contact.id) == []

    run = client.post("/queue/process", headers=CRON)
    assert run.json()["summary"]["done"] == 1
    assert calls["count"] == 2
    assert len(store.list_messages(contact.id)) == 1
    inbox = client.get("/inbox").json()
    assert [item["contact_id"] for item in inbox] == [contact.id]


@pytest.fixture()
def signed_client(monkeypatch, tmp_path, gateway) -> TestClient:
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{(tmp_path / 'signed.sqlite3').as_posix()}")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("WHATSAPP_WEBHOOK_SECRET", "topsecret")
    factory = build_gateway_factory(5.0, transport=httpx.MockTransport(gateway.handler))
    return TestClient(create_app(gateway_factory=factory))


def test_signature_required_when_secret_set(signed_client, inbound_payload) -> None:
    body = json.dumps(inbound_payload("wamid.in.1")).encode("utf-8")

    missing = signed_client.post(
        "/webhooks/whatsapp", content=body, headers={"content-type": "application/json"}
    )
    forged = signed_client.post(
        "/webhooks/whatsapp",
        content=body,
        headers={"content-type": "application/json", "x-hub-signature-256": "sha256=deadbeef"},
    )

    assert missing.status_code == 403
    assert forged.status_code == 403
    logs = signed_client.app.state.store.list_webhook_logs()
    assert [log.outcome for log in logs] == [WebhookOutcome.rejected, WebhookOutcome.rejected]


def test_valid_signature_is_processed(signed_client, inbound_payload) -> None:
    created = signed_client.post(
        "/instances",
        json={
            "instance_name": "Main line",
            "instance_id": "inst-main",
            "api_url": "http://gateway.test",
            "api_key": "gw-key",
        },
    )
    assert created.status_code == 201
    body = json.dumps(inbound_payload("wamid.in.1")).encode("utf-8")

    response = signed_client.post(
        "/webhooks/whatsapp",
        content=body,
        headers={
            "content-type": "application/json",
            "x-hub-signature-256": sign_payload(body, "topsecret"),
        },
    )

    assert response.status_code == 200
    assert response.json()["detail"] == "message stored"
