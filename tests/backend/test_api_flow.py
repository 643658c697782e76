from __future__ import annotations

from datetime import timedelta

from backend.app.models import MessageDirection, MessageStatus, utc_now

CRON = {"Authorization": "Bearer cron-secret"}


def _contact(client, phone: str = "5511977776666") -> dict:
    response = client.post("/contacts", json={"name": "Joao", "phone": phone})
    assert response.status_code == 201
    return response.json()


def test_contact_phone_is_sanitized_and_unique(client) -> None:
    created = client.post(
        "/contacts",
        json={"name": "<b>Ana</b>", "phone": "+55 (11) 97777-6666", "email": " Ana@Loja.COM "},
    )
    assert created.status_code == 201
    data = created.json()
    assert data["name"] == "Ana"
    assert data["phone"] == "5511977776666"
    assert data["email"] == "ana@loja.com"

    duplicate = client.post("/contacts", json={"name": "Ana 2", "phone": "5511977776666"})
    assert duplicate.status_code == 409

    short = client.post("/contacts", json={"name": "Curto", "phone": "(11) 9-abc-def"})
    assert short.status_code == 422
    assert len(client.get("/contacts").json()) == 1


def test_conversation_lifecycle(client) -> None:
    contact = _contact(client)

    created = client.post("/conversations", json={"contact_id": contact["id"]})
    assert created.status_code == 201
    conversation = created.json()
    assert conversation["owner_id"] == "dev-local"
    assert conversation["status"] == "active"

    again = client.post("/conversations", json={"contact_id": contact["id"]})
    assert again.status_code == 409

    added = client.post(
        f"/conversations/{conversation['id']}/participants",
        json={"user_id": "agent-2", "type": "observer"},
    )
    assert added.status_code == 201
    duplicate = client.post(
        f"/conversations/{conversation['id']}/participants", json={"user_id": "agent-2"}
    )
    assert duplicate.status_code == 409
    as_owner = client.post(
        f"/conversations/{conversation['id']}/participants",
        json={"user_id": "agent-3", "type": "owner"},
    )
    assert as_owner.status_code == 422

    transfer = client.post(
        f"/conversations/{conversation['id']}/transfer",
        json={"to_user_id": "agent-2", "reason": "cliente VIP"},
    )
    assert transfer.status_code == 200
    assert transfer.json()["from_user_id"] == "dev-local"

    participants = client.get(f"/conversations/{conversation['id']}/participants").json()
    assert [(item["user_id"], item["type"]) for item in participants] == [("agent-2", "owner")]
    history = client.get(f"/conversations/{conversation['id']}/transfers").json()
    assert [item["reason"] for item in history] == ["cliente VIP"]

    # the previous owner no longer holds the conversation
    second = client.post(
        f"/conversations/{conversation['id']}/transfer", json={"to_user_id": "agent-4"}
    )
    assert second.status_code == 409

    removed_owner = client.delete(f"/conversations/{conversation['id']}/participants/agent-2")
    assert removed_owner.status_code == 409

    archived = client.post(f"/conversations/{conversation['id']}/archive")
    assert archived.status_code == 200
    assert archived.json()["status"] == "archived"
    assert client.post(f"/conversations/{conversation['id']}/archive").status_code == 409


def test_remove_participant_twice_is_harmless(client) -> None:
    contact = _contact(client)
    conversation = client.post("/conversations", json={"contact_id": contact["id"]}).json()
    client.post(f"/conversations/{conversation['id']}/participants", json={"user_id": "agent-2"})

    first = client.delete(f"/conversations/{conversation['id']}/participants/agent-2")
    second = client.delete(f"/conversations/{conversation['id']}/participants/agent-2")

    assert first.json()["removed"] == 1
    assert second.status_code == 200
    assert second.json()["removed"] == 0


def test_conversation_routes_return_404_for_unknown_ids(client) -> None:
    assert client.post("/conversations", json={"contact_id": "ct_missing"}).status_code == 404
    assert client.get("/conversations/conv_missing/participants").status_code == 404
    assert client.get("/conversations/conv_missing/transfers").status_code == 404
    assert (
        client.post("/conversations/conv_missing/transfer", json={"to_user_id": "x"}).status_code
        == 404
    )
    assert client.post("/inbox/999/assign").status_code == 404


def test_inbox_assignment_conflicts_once_claimed(client, app) -> None:
    contact = _contact(client)
    store = app.state.store
    item = store.create_inbox_item(contact_id=contact["id"], priority=2)

    first = client.post(f"/inbox/{item.id}/assign", json={"user_id": "agent-7"})
    assert first.status_code == 200
    assert first.json()["owner_id"] == "agent-7"

    second = client.post(f"/inbox/{item.id}/assign")
    assert second.status_code == 409
    assert second.json()["detail"]["code"] == "already_claimed"
    assert client.get("/inbox").json() == []


def test_send_message_records_outbound_message(client, app, gateway, instance) -> None:
    contact = _contact(client)
    conversation = client.post("/conversations", json={"contact_id": contact["id"]}).json()

    response = client.post(
        "/messages/send",
        json={"contact_id": contact["id"], "body": "Seu pedido <script>x()</script>saiu"},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "sent"
    assert data["remaining"] == 9
    assert gateway.sent == [{"phone": "5511977776666", "message": "Seu pedido saiu"}]
    store = app.state.store.scoped("dev-local")
    message = store.list_messages(contact["id"])[0]
    assert message.direction == MessageDirection.outbound
    assert message.status == MessageStatus.sent
    assert message.whatsapp_message_id == data["whatsapp_message_id"]
    assert store.get_conversation(conversation["id"]).last_message_at is not None


def test_send_message_retries_transient_gateway_errors(client, gateway, instance) -> None:
    contact = _contact(client)
    gateway.send_failures_before_success = 2

    response = client.post("/messages/send", json={"contact_id": contact["id"], "body": "Oi"})

    assert response.status_code == 201
    assert len(gateway.sent) == 1


def test_send_message_gateway_failure_returns_502(client, gateway, instance) -> None:
    contact = _contact(client)
    gateway.failing_phones = {contact["phone"]}

    response = client.post("/messages/send", json={"contact_id": contact["id"], "body": "Oi"})

    assert response.status_code == 502


def test_send_message_without_instance_returns_400(client) -> None:
    contact = _contact(client)

    response = client.post("/messages/send", json={"contact_id": contact["id"], "body": "Oi"})

    assert response.status_code == 400


def test_send_message_is_rate_limited(client, instance) -> None:
    contact = _contact(client)
    statuses = [
        client.post(
            "/messages/send", json={"contact_id": contact["id"], "body": f"msg {index}"}
        ).status_code
        for index in range(11)
    ]

    assert statuses[:10] == [201] * 10
    assert statuses[10] == 429


def test_scheduled_message_is_queued_then_sent(client, app, gateway, instance) -> None:
    contact = _contact(client)
    scheduled_for = (utc_now() + timedelta(minutes=30)).isoformat() + "Z"

    response = client.post(
        "/messages/send",
        json={"contact_id": contact["id"], "body": "Lembrete", "scheduled_for": scheduled_for},
    )

    assert response.status_code == 202
    assert response.json()["status"] == "scheduled"
    job = app.state.store.get_job(response.json()["job_id"])
    assert job.payload["body"] == "Lembrete"
    assert job.next_eligible_at > utc_now()

    assert client.post("/queue/process", headers=CRON).json()["summary"]["picked"] == 0
    summary = app.state.queue.process_queue(now=utc_now() + timedelta(hours=1))
    assert summary.done == 1
    assert gateway.sent == [{"phone": "5511977776666", "message": "Lembrete"}]


def test_queue_trigger_requires_cron_secret(client) -> None:
    assert client.post("/queue/process").status_code == 401
    assert (
        client.post("/queue/process", headers={"Authorization": "Bearer wrong"}).status_code == 401
    )
    response = client.post("/queue/process", headers=CRON)
    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "summary": {"picked": 0, "done": 0, "retried": 0, "failed": 0, "skipped": 0},
    }
