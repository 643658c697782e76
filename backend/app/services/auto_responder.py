from __future__ import annotations

import logging
from typing import Iterable, Optional

from backend.app.models import AutoReplyRuleRecord, ContactRecord, MessageRecord
from backend.app.services.gateway import GatewayError, GatewayFactory
from backend.app.services.messaging import MessageSender
from backend.app.services.sanitize import normalize
from backend.app.store import DataStore

logger = logging.getLogger("whatsapp_inbox.auto_responder")


def find_matching_rule(
    rules: Iterable[AutoReplyRuleRecord], body: Optional[str]
) -> Optional[AutoReplyRuleRecord]:
    text = normalize(body)
    for rule in sorted(rules, key=lambda item: (item.created_at, item.id)):
        trigger = normalize(rule.trigger)
        if rule.is_active and trigger and trigger in text:
            return rule
    return None


class AutoResponder:
    def __init__(self, store: DataStore, gateway_factory: GatewayFactory) -> None:
        self.store = store
        self.gateway_factory = gateway_factory

    def respond(self, contact: ContactRecord, body: Optional[str]) -> Optional[MessageRecord]:
        rule = find_matching_rule(self.store.list_auto_reply_rules(active_only=True), body)
        if rule is None:
            return None
        instance = self.store.get_connected_instance()
        if instance is None:
            logger.info("auto_reply_skipped rule_id=%s reason=no_connected_instance", rule.id)
            return None
        sender = MessageSender(self.store, self.gateway_factory)
        try:
            message = sender.send(
                contact_id=contact.id, body=rule.reply, contact=contact, instance=instance
            )
        except GatewayError as exc:
            logger.warning(
                "auto_reply_failed rule_id=%s contact_id=%s error=%s", rule.id, contact.id, exc
            )
            return None
        self.store.increment_rule_usage(rule.id)
        logger.info("auto_reply_sent rule_id=%s contact_id=%s", rule.id, contact.id)
        return message
