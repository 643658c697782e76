from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.engine import Connection

from backend.app.models import (
    ConversationDetails,
    ConversationRecord,
    ConversationStatus,
    InboxItemRecord,
    ParticipantRecord,
    ParticipantType,
    TransferRecord,
    utc_now,
)
from backend.app.store import (
    DataStore,
    InboxItemAlreadyClaimedError,
    StoreConflictError,
)

logger = logging.getLogger("whatsapp_inbox.routing")


@dataclass(frozen=True)
class InboundRoute:
    conversation: Optional[ConversationRecord] = None
    inbox_item: Optional[InboxItemRecord] = None
    created_inbox_item: bool = False


class ConversationRouter:
    """Ownership and handoff of customer conversations between agents.

    Each public operation runs in a single store transaction. A contact has at most
    one open (active or transferred) conversation, and the conversation owner always
    holds an active owner participant row.
    """

    def __init__(self, store: DataStore, *, default_priority: int = 0) -> None:
        self.store = store
        self.default_priority = default_priority

    def create_conversation(
        self, contact_id: str, owner_id: str, notes: Optional[str] = None
    ) -> ConversationRecord:
        with self.store.transaction() as conn:
            conversation = self._create_conversation(conn, contact_id, owner_id, notes)
        logger.info(
            "conversation_created conversation_id=%s contact_id=%s owner_id=%s",
            conversation.id,
            contact_id,
            owner_id,
        )
        return conversation

    def _create_conversation(
        self,
        conn: Connection,
        contact_id: str,
        owner_id: str,
        notes: Optional[str] = None,
    ) -> ConversationRecord:
        self.store.lookup_contact(contact_id, conn=conn)
        existing = self.store.find_open_conversation(contact_id, conn=conn)
        if existing:
            raise StoreConflictError(
                f"contact already has an open conversation: {existing.id}"
            )
        conversation = self.store.insert_conversation(
            contact_id=contact_id, owner_id=owner_id, notes=notes, conn=conn
        )
        self.store.insert_participant(
            conversation_id=conversation.id,
            user_id=owner_id,
            type=ParticipantType.owner,
            added_by=owner_id,
            conn=conn,
        )
        return conversation

    def transfer_conversation(
        self,
        conversation_id: str,
        from_user_id: str,
        to_user_id: str,
        reason: Optional[str] = None,
    ) -> TransferRecord:
        if from_user_id == to_user_id:
            raise StoreConflictError("conversation is already owned by the target user")
        with self.store.transaction() as conn:
            changed = self.store.reassign_conversation_owner(
                conversation_id, from_user_id=from_user_id, to_user_id=to_user_id, conn=conn
            )
            if changed == 0:
                current = self.store.get_conversation(conversation_id, conn=conn)
                if current.status == ConversationStatus.archived:
                    raise StoreConflictError(f"conversation is archived: {conversation_id}")
                raise StoreConflictError(
                    f"conversation owner is {current.owner_id}, not {from_user_id}"
                )
            transfer = self.store.insert_transfer(
                conversation_id=conversation_id,
                from_user_id=from_user_id,
                to_user_id=to_user_id,
                reason=reason,
                conn=conn,
            )
            self.store.deactivate_participants(
                conversation_id, [from_user_id, to_user_id], conn=conn
            )
            self.store.insert_participant(
                conversation_id=conversation_id,
                user_id=to_user_id,
                type=ParticipantType.owner,
                added_by=from_user_id,
                conn=conn,
            )
        logger.info(
            "conversation_transferred conversation_id=%s from_user_id=%s to_user_id=%s",
            conversation_id,
            from_user_id,
            to_user_id,
        )
        return transfer

    def add_participant(
        self,
        conversation_id: str,
        user_id: str,
        type: ParticipantType,
        added_by: Optional[str],
    ) -> ParticipantRecord:
        if type == ParticipantType.owner:
            raise ValueError("owner participants are created through transfer")
        with self.store.transaction() as conn:
            conversation = self.store.get_conversation(conversation_id, conn=conn)
            if conversation.status == ConversationStatus.archived:
                raise StoreConflictError(f"conversation is archived: {conversation_id}")
            return self.store.insert_participant(
                conversation_id=conversation_id,
                user_id=user_id,
                type=type,
                added_by=added_by,
                conn=conn,
            )

    def remove_participant(self, conversation_id: str, user_id: str) -> int:
        with self.store.transaction() as conn:
            return self.store.deactivate_participants(conversation_id, [user_id], conn=conn)

    def get_user_conversations(self, user_id: str) -> list[ConversationDetails]:
        with self.store.transaction() as conn:
            conversations = self.store.list_open_conversations_for_user(user_id, conn=conn)
            contacts = self.store.contact_summaries(
                [item.contact_id for item in conversations], conn=conn
            )
            participants = self.store.list_participants(
                [item.id for item in conversations], conn=conn
            )
        by_conversation: dict[str, list[ParticipantRecord]] = {}
        for participant in participants:
            by_conversation.setdefault(participant.conversation_id, []).append(participant)
        return [
            ConversationDetails(
                **conversation.model_dump(),
                contact=contacts.get(conversation.contact_id),
                participants=by_conversation.get(conversation.id, []),
            )
            for conversation in conversations
        ]

    def get_inbox_items(self) -> list[InboxItemRecord]:
        return self.store.list_pending_inbox_items()

    def assign_inbox_item(self, item_id: int, user_id: str) -> ConversationRecord:
        with self.store.transaction() as conn:
            claimed = self.store.claim_inbox_item(item_id, user_id, conn=conn)
            if claimed == 0:
                item = self.store.get_inbox_item(item_id, conn=conn)
                raise InboxItemAlreadyClaimedError(
                    f"inbox item {item_id} is {item.status.value}"
                    + (f" to {item.assigned_to}" if item.assigned_to else "")
                )
            item = self.store.get_inbox_item(item_id, conn=conn)
            conversation = self._create_conversation(conn, item.contact_id, user_id)
        logger.info(
            "inbox_item_assigned item_id=%s user_id=%s conversation_id=%s",
            item_id,
            user_id,
            conversation.id,
        )
        return conversation

    def archive_conversation(self, conversation_id: str) -> ConversationRecord:
        with self.store.transaction() as conn:
            changed = self.store.archive_conversation(conversation_id, conn=conn)
            conversation = self.store.get_conversation(conversation_id, conn=conn)
            if changed == 0:
                raise StoreConflictError(f"conversation is already archived: {conversation_id}")
        return conversation

    def route_inbound_contact(
        self,
        contact_id: str,
        message_id: Optional[str] = None,
        at: Optional[datetime] = None,
        conn: Optional[Connection] = None,
    ) -> InboundRoute:
        received_at = at or utc_now()
        if conn is not None:
            return self._route_inbound(conn, contact_id, message_id, received_at)
        with self.store.transaction() as own:
            return self._route_inbound(own, contact_id, message_id, received_at)

    def _route_inbound(
        self,
        conn: Connection,
        contact_id: str,
        message_id: Optional[str],
        received_at: datetime,
    ) -> InboundRoute:
        conversation = self.store.find_open_conversation(contact_id, conn=conn)
        if conversation:
            self.store.touch_conversation(conversation.id, received_at, conn=conn)
            return InboundRoute(conversation=conversation)
        pending = self.store.find_pending_inbox_item(contact_id, conn=conn)
        if pending:
            return InboundRoute(inbox_item=pending)
        item = self.store.create_inbox_item(
            contact_id=contact_id,
            message_id=message_id,
            priority=self.default_priority,
            conn=conn,
        )
        logger.info("inbox_item_created item_id=%s contact_id=%s", item.id, contact_id)
        return InboundRoute(inbox_item=item, created_inbox_item=True)

    def list_participants(
        self, conversation_id: str, include_inactive: bool = False
    ) -> list[ParticipantRecord]:
        with self.store.transaction() as conn:
            self.store.get_conversation(conversation_id, conn=conn)
            return self.store.list_participants(
                [conversation_id], include_inactive=include_inactive, conn=conn
            )

    def list_transfers(self, conversation_id: str) -> list[TransferRecord]:
        with self.store.transaction() as conn:
            self.store.get_conversation(conversation_id, conn=conn)
            return self.store.list_transfers(conversation_id, conn=conn)
