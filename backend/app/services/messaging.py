from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from backend.app.models import (
    ContactRecord,
    MessageDirection,
    MessageRecord,
    MessageStatus,
    WhatsAppInstanceRecord,
    utc_now,
)
from backend.app.services.gateway import GatewayError, GatewayFactory, OutboundMedia, client_for
from backend.app.services.retry import retry_with_backoff
from backend.app.store import DataStore

logger = logging.getLogger("whatsapp_inbox.messaging")


class InstanceUnavailableError(Exception):
    pass


class MessageSender:
    """Sends one outbound message through the tenant's gateway instance and records it."""

    def __init__(
        self,
        store: DataStore,
        gateway_factory: GatewayFactory,
        *,
        retry_attempts: int = 1,
        retry_initial_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.gateway_factory = gateway_factory
        self.retry_attempts = retry_attempts
        self.retry_initial_delay = retry_initial_delay
        self.sleep = sleep

    def resolve_instance(self, instance_id: Optional[str] = None) -> WhatsAppInstanceRecord:
        if instance_id:
            instance = self.store.get_instance(instance_id)
            if not instance.is_active:
                raise InstanceUnavailableError(f"instance is inactive: {instance_id}")
            return instance
        instance = self.store.get_connected_instance()
        if instance is None:
            raise InstanceUnavailableError("no connected whatsapp instance")
        return instance

    def send(
        self,
        *,
        contact_id: str,
        body: str,
        has_media: bool = False,
        media_url: Optional[str] = None,
        media_type: Optional[str] = None,
        instance_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        contact: Optional[ContactRecord] = None,
        instance: Optional[WhatsAppInstanceRecord] = None,
    ) -> MessageRecord:
        target = contact or self.store.get_contact(contact_id)
        sender = instance or self.resolve_instance(instance_id)
        media = OutboundMedia(url=media_url, type=media_type) if has_media and media_url else None

        def attempt() -> str:
            with client_for(self.gateway_factory, sender) as client:
                return client.send_message(target.phone, body, media)

        whatsapp_message_id = retry_with_backoff(
            attempt,
            max_attempts=self.retry_attempts,
            initial_delay=self.retry_initial_delay,
            retry_on=(GatewayError,),
            sleep=self.sleep,
        )
        now = utc_now()
        with self.store.transaction() as conn:
            message = self.store.insert_message(
                contact_id=target.id,
                direction=MessageDirection.outbound,
                body=body,
                status=MessageStatus.sent,
                campaign_id=campaign_id,
                has_media=media is not None,
                media_url=media_url if media else None,
                media_type=media_type if media else None,
                whatsapp_message_id=whatsapp_message_id,
                sent_at=now,
                conn=conn,
            )
            self.store.touch_contact(target.id, now, conn=conn)
            conversation = self.store.find_open_conversation(target.id, conn=conn)
            if conversation:
                self.store.touch_conversation(conversation.id, now, conn=conn)
        logger.info(
            "message_sent message_id=%s contact_id=%s instance_id=%s",
            message.id,
            target.id,
            sender.instance_id,
        )
        return message

    def record_failure(
        self,
        *,
        contact_id: str,
        body: str,
        error: str,
        campaign_id: Optional[str] = None,
    ) -> MessageRecord:
        return self.store.insert_message(
            contact_id=contact_id,
            direction=MessageDirection.outbound,
            body=body,
            status=MessageStatus.failed,
            campaign_id=campaign_id,
            error_message=error,
        )


def send_message_job(
    store: DataStore, gateway_factory: GatewayFactory
) -> Callable[[dict[str, Any]], None]:
    """Queue handler for scheduled sends; the queue owns retries."""

    def handle(payload: dict[str, Any]) -> None:
        sender = MessageSender(store.scoped(payload["user_id"]), gateway_factory)
        sender.send(
            contact_id=payload["contact_id"],
            body=payload["body"],
            has_media=bool(payload.get("has_media")),
            media_url=payload.get("media_url"),
            media_type=payload.get("media_type"),
            instance_id=payload.get("instance_id"),
        )

    return handle
