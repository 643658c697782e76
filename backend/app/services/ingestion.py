from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import ValidationError

from backend.app.models import (
    IgnoredEvent,
    InboundMessageEvent,
    MessageDirection,
    MessageStatus,
    MessageStatusEvent,
    WebhookEvent,
    WebhookOutcome,
    parse_webhook_event,
    utc_now,
)
from backend.app.services.auto_responder import AutoResponder
from backend.app.services.gateway import GatewayFactory
from backend.app.services.routing import ConversationRouter
from backend.app.services.sanitize import canonicalize_whatsapp_phone
from backend.app.store import DataStore, StoreNotFoundError

logger = logging.getLogger("whatsapp_inbox.ingestion")

TEXT_MESSAGE_TYPES = {"chat", "text"}
STATUS_MAP = {
    "delivered": MessageStatus.delivered,
    "read": MessageStatus.read,
    "failed": MessageStatus.failed,
}
# gateways sometimes report epoch milliseconds
_MILLISECOND_EPOCH_THRESHOLD = 1e11


class WebhookPayloadError(Exception):
    def __init__(self, message: str, errors: Optional[list[dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.errors = errors or []


@dataclass(frozen=True)
class IngestionResult:
    outcome: WebhookOutcome
    detail: str
    event_type: Optional[str] = None
    contact_id: Optional[str] = None
    message_id: Optional[str] = None
    conversation_id: Optional[str] = None
    inbox_item_id: Optional[int] = None


def _received_at(timestamp: float) -> datetime:
    if timestamp > _MILLISECOND_EPOCH_THRESHOLD:
        timestamp = timestamp / 1000.0
    try:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError):
        return utc_now()


class WebhookIngestor:
    """Turns gateway webhook deliveries into contacts, messages and routing decisions.

    Every delivery passed through :meth:`receive` leaves one webhook log row with the
    raw payload and its outcome.
    """

    def __init__(
        self,
        store: DataStore,
        gateway_factory: GatewayFactory,
        *,
        default_priority: int = 0,
    ) -> None:
        self.store = store
        self.gateway_factory = gateway_factory
        self.router = ConversationRouter(store, default_priority=default_priority)

    def receive(self, raw_payload: Union[str, bytes]) -> IngestionResult:
        if isinstance(raw_payload, bytes):
            raw = raw_payload.decode("utf-8", errors="replace")
        else:
            raw = raw_payload
        try:
            data = json.loads(raw)
        except ValueError as exc:
            self.reject(raw, "invalid json body")
            raise WebhookPayloadError("invalid json body") from exc

        event_type = data.get("event") if isinstance(data, dict) else None
        instance_id = data.get("instanceId") if isinstance(data, dict) else None
        try:
            event = parse_webhook_event(data)
        except ValidationError as exc:
            self.reject(raw, "payload failed validation", event_type=event_type)
            raise WebhookPayloadError(
                "payload failed validation",
                errors=exc.errors(include_url=False, include_context=False),
            ) from exc

        try:
            result = self.ingest(event)
        except StoreNotFoundError as exc:
            self._log(raw, WebhookOutcome.rejected, event_type, instance_id, str(exc))
            raise
        except Exception as exc:
            self._log(raw, WebhookOutcome.failed, event_type, instance_id, str(exc))
            raise
        self._log(raw, result.outcome, event_type, instance_id, None)
        return result

    def reject(
        self, raw_payload: str, reason: str, *, event_type: Optional[str] = None
    ) -> None:
        self._log(raw_payload, WebhookOutcome.rejected, event_type, None, reason)

    def ingest(self, event: WebhookEvent) -> IngestionResult:
        if isinstance(event, InboundMessageEvent):
            return self.handle_message(event)
        if isinstance(event, MessageStatusEvent):
            return self.handle_status(event)
        if isinstance(event, IgnoredEvent):
            logger.info("webhook_event_ignored event=%s", event.event)
            return IngestionResult(
                outcome=WebhookOutcome.ignored, detail="event ignored", event_type=event.event
            )
        raise TypeError(f"unsupported webhook event: {type(event).__name__}")

    def handle_message(self, event: InboundMessageEvent) -> IngestionResult:
        instance = self.store.find_instance_by_gateway_id(event.instance_id)
        tenant = self.store.scoped(instance.user_id)
        data = event.data

        phone = canonicalize_whatsapp_phone(data.from_number)
        if not phone:
            return IngestionResult(
                outcome=WebhookOutcome.ignored,
                detail="sender has no phone number",
                event_type=event.event,
            )
        if tenant.find_message_by_whatsapp_id(data.id):
            logger.info("webhook_duplicate_message whatsapp_message_id=%s", data.id)
            return IngestionResult(
                outcome=WebhookOutcome.ignored,
                detail="duplicate message",
                event_type=event.event,
            )

        sender_name = None
        if data.sender:
            sender_name = data.sender.name or data.sender.pushname
        contact, created = tenant.get_or_create_contact(phone=phone, name=sender_name or phone)
        text = data.body or data.caption or ""
        now = utc_now()
        # message, contact touch and routing commit together so a queued retry starts clean
        with tenant.transaction() as conn:
            message = tenant.insert_message(
                contact_id=contact.id,
                direction=MessageDirection.inbound,
                body=text,
                status=MessageStatus.delivered,
                has_media=data.type not in TEXT_MESSAGE_TYPES,
                media_url=data.media_url,
                media_type=data.media_type or data.type,
                whatsapp_message_id=data.id,
                sent_at=_received_at(data.timestamp),
                conn=conn,
            )
            tenant.touch_contact(contact.id, now, conn=conn)
            route = self.router.route_inbound_contact(contact.id, message.id, at=now, conn=conn)

        AutoResponder(tenant, self.gateway_factory).respond(contact, text)
        logger.info(
            "webhook_message_ingested contact_id=%s message_id=%s new_contact=%s routed_to=%s "
            "new_inbox_item=%s",
            contact.id,
            message.id,
            created,
            "conversation" if route.conversation else "inbox",
            route.created_inbox_item,
        )
        return IngestionResult(
            outcome=WebhookOutcome.processed,
            detail="message stored",
            event_type=event.event,
            contact_id=contact.id,
            message_id=message.id,
            conversation_id=route.conversation.id if route.conversation else None,
            inbox_item_id=route.inbox_item.id if route.inbox_item else None,
        )

    def handle_status(self, event: MessageStatusEvent) -> IngestionResult:
        instance = self.store.find_instance_by_gateway_id(event.instance_id)
        tenant = self.store.scoped(instance.user_id)
        data = event.data

        status = STATUS_MAP.get(data.status.strip().lower())
        if status is None:
            return IngestionResult(
                outcome=WebhookOutcome.ignored,
                detail=f"unknown status: {data.status}",
                event_type=event.event,
            )
        message = tenant.find_message_by_whatsapp_id(data.id)
        if message is None:
            return IngestionResult(
                outcome=WebhookOutcome.ignored,
                detail="unknown message",
                event_type=event.event,
            )
        with tenant.transaction() as conn:
            tenant.update_message_status(
                message.id,
                status,
                at=utc_now(),
                error=(data.error or "unknown error") if status == MessageStatus.failed else None,
                conn=conn,
            )
            if message.campaign_id and status in (MessageStatus.delivered, MessageStatus.read):
                tenant.increment_campaign_counter(message.campaign_id, status.value, conn=conn)
        logger.info("webhook_status_applied message_id=%s status=%s", message.id, status.value)
        return IngestionResult(
            outcome=WebhookOutcome.processed,
            detail=f"status {status.value}",
            event_type=event.event,
            message_id=message.id,
        )

    def _log(
        self,
        raw_payload: str,
        outcome: WebhookOutcome,
        event_type: Optional[str],
        instance_id: Optional[str],
        error: Optional[str],
    ) -> None:
        self.store.log_webhook(
            payload=raw_payload,
            outcome=outcome,
            event_type=event_type if isinstance(event_type, str) else None,
            instance_id=instance_id if isinstance(instance_id, str) else None,
            error=error,
        )


def process_webhook_job(ingestor: WebhookIngestor):
    def handle(payload: dict[str, Any]) -> None:
        ingestor.receive(payload["raw"])

    return handle
