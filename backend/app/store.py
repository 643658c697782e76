from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, Iterator, Optional
from uuid import uuid4

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from backend.app.models import (
    OPEN_CONVERSATION_STATUSES,
    AutoReplyRuleRecord,
    CampaignRecord,
    CampaignStatus,
    ContactListRecord,
    ContactRecord,
    ContactSummary,
    ConversationRecord,
    ConversationStatus,
    InboxItemRecord,
    InboxStatus,
    InstanceStatus,
    JobStatus,
    JobType,
    MessageDirection,
    MessageRecord,
    MessageStatus,
    ParticipantRecord,
    ParticipantType,
    QueueJobRecord,
    TransferRecord,
    WebhookLogRecord,
    WebhookOutcome,
    WhatsAppInstanceRecord,
    utc_now,
)
from backend.app.persistence import Database

OPEN_STATUS_VALUES = [status.value for status in OPEN_CONVERSATION_STATUSES]


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class InboxItemAlreadyClaimedError(StoreConflictError):
    pass


class StoreScopeError(Exception):
    pass


def _contact(row: Any) -> ContactRecord:
    data = dict(row._mapping)
    data["tags"] = json.loads(data.pop("tags_json", None) or "[]")
    return ContactRecord.model_validate(data)


def _job(row: Any) -> QueueJobRecord:
    data = dict(row._mapping)
    data["payload"] = json.loads(data.pop("payload_json", None) or "{}")
    return QueueJobRecord.model_validate(data)


def _record(model: Any, row: Any) -> Any:
    return model.model_validate(dict(row._mapping))


class DataStore:
    """Query handle over the relational store.

    A handle created with a tenant id filters every tenant-owned table (contacts,
    messages, campaigns, contact lists, auto-reply rules, instances) by ``user_id``.
    Conversations, inbox items, queue jobs and the webhook log are process-wide.
    Methods accept ``conn`` to join a transaction opened with :meth:`transaction`.
    """

    def __init__(self, database: Database, tenant_id: Optional[str] = None) -> None:
        self.database = database
        self.tenant_id = tenant_id

    def scoped(self, tenant_id: str) -> "DataStore":
        if not tenant_id:
            raise StoreScopeError("tenant id is required")
        return DataStore(self.database, tenant_id=tenant_id)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        with self.database.transaction() as conn:
            yield conn

    @contextmanager
    def _connection(self, conn: Optional[Connection]) -> Iterator[Connection]:
        if conn is not None:
            yield conn
            return
        with self.database.transaction() as own:
            yield own

    def _tenant(self) -> str:
        if not self.tenant_id:
            raise StoreScopeError("tenant-owned query on an unscoped store handle")
        return self.tenant_id

    def ping(self) -> bool:
        return self.database.ping()

    # contacts

    def create_contact(
        self,
        *,
        name: str,
        phone: str,
        email: Optional[str] = None,
        company: Optional[str] = None,
        notes: Optional[str] = None,
        tags: Optional[list[str]] = None,
        conn: Optional[Connection] = None,
    ) -> ContactRecord:
        now = utc_now()
        contact = ContactRecord(
            id=new_id("ct"),
            user_id=self._tenant(),
            name=name.strip(),
            phone=phone,
            email=email,
            company=company,
            notes=notes,
            tags=tags or [],
            created_at=now,
            updated_at=now,
        )
        table = self.database.contacts
        with self._connection(conn) as active:
            try:
                active.execute(
                    insert(table).values(
                        **contact.model_dump(exclude={"tags"}),
                        tags_json=json.dumps(contact.tags),
                    )
                )
            except IntegrityError as exc:
                raise StoreConflictError(f"contact already exists for phone: {phone}") from exc
        return contact

    def get_contact(self, contact_id: str, conn: Optional[Connection] = None) -> ContactRecord:
        table = self.database.contacts
        with self._connection(conn) as active:
            row = active.execute(
                select(table).where(table.c.id == contact_id, table.c.user_id == self._tenant())
            ).first()
        if row is None:
            raise StoreNotFoundError(f"contact not found: {contact_id}")
        return _contact(row)

    def lookup_contact(self, contact_id: str, conn: Optional[Connection] = None) -> ContactRecord:
        """Fetch a contact regardless of tenant; used by process-wide routing."""
        table = self.database.contacts
        with self._connection(conn) as active:
            row = active.execute(select(table).where(table.c.id == contact_id)).first()
        if row is None:
            raise StoreNotFoundError(f"contact not found: {contact_id}")
        return _contact(row)

    def find_contact_by_phone(
        self, phone: str, conn: Optional[Connection] = None
    ) -> Optional[ContactRecord]:
        table = self.database.contacts
        with self._connection(conn) as active:
            row = active.execute(
                select(table).where(table.c.user_id == self._tenant(), table.c.phone == phone)
            ).first()
        return _contact(row) if row is not None else None

    def get_or_create_contact(self, *, phone: str, name: str) -> tuple[ContactRecord, bool]:
        existing = self.find_contact_by_phone(phone)
        if existing:
            return existing, False
        try:
            return self.create_contact(name=name, phone=phone), True
        except StoreConflictError:
            # lost the insert race to a concurrent delivery for the same phone
            existing = self.find_contact_by_phone(phone)
            if existing is None:
                raise
            return existing, False

    def list_contacts(self, conn: Optional[Connection] = None) -> list[ContactRecord]:
        table = self.database.contacts
        with self._connection(conn) as active:
            rows = active.execute(
                select(table)
                .where(table.c.user_id == self._tenant())
                .order_by(table.c.created_at, table.c.id)
            ).all()
        return [_contact(row) for row in rows]

    def touch_contact(
        self, contact_id: str, at: datetime, conn: Optional[Connection] = None
    ) -> None:
        table = self.database.contacts
        with self._connection(conn) as active:
            active.execute(
                update(table)
                .where(table.c.id == contact_id, table.c.user_id == self._tenant())
                .values(last_message_at=at, updated_at=utc_now())
            )

    def contact_summaries(
        self, contact_ids: Iterable[str], conn: Optional[Connection] = None
    ) -> dict[str, ContactSummary]:
        ids = list(set(contact_ids))
        if not ids:
            return {}
        table = self.database.contacts
        with self._connection(conn) as active:
            rows = active.execute(
                select(table.c.id, table.c.name, table.c.phone, table.c.email).where(
                    table.c.id.in_(ids)
                )
            ).all()
        return {row.id: _record(ContactSummary, row) for row in rows}

    # contact lists

    def create_contact_list(
        self, name: str, contact_ids: Iterable[str], conn: Optional[Connection] = None
    ) -> ContactListRecord:
        now = utc_now()
        record = ContactListRecord(
            id=new_id("lst"), user_id=self._tenant(), name=name.strip(), created_at=now
        )
        with self._connection(conn) as active:
            active.execute(insert(self.database.contact_lists).values(**record.model_dump()))
            for contact_id in contact_ids:
                self.get_contact(contact_id, conn=active)
                active.execute(
                    insert(self.database.contact_list_members).values(
                        list_id=record.id, contact_id=contact_id, added_at=utc_now()
                    )
                )
        return record

    def list_active_list_contacts(
        self, list_id: str, conn: Optional[Connection] = None
    ) -> list[ContactRecord]:
        lists = self.database.contact_lists
        members = self.database.contact_list_members
        contacts = self.database.contacts
        with self._connection(conn) as active:
            owner = active.execute(
                select(lists.c.id).where(lists.c.id == list_id, lists.c.user_id == self._tenant())
            ).first()
            if owner is None:
                raise StoreNotFoundError(f"contact list not found: {list_id}")
            rows = active.execute(
                select(contacts)
                .join(members, members.c.contact_id == contacts.c.id)
                .where(
                    members.c.list_id == list_id,
                    contacts.c.user_id == self._tenant(),
                    contacts.c.is_active.is_(True),
                )
                .order_by(members.c.added_at, contacts.c.id)
            ).all()
        return [_contact(row) for row in rows]

    # conversations

    def get_conversation(
        self, conversation_id: str, conn: Optional[Connection] = None
    ) -> ConversationRecord:
        table = self.database.conversations
        with self._connection(conn) as active:
            row = active.execute(select(table).where(table.c.id == conversation_id)).first()
        if row is None:
            raise StoreNotFoundError(f"conversation not found: {conversation_id}")
        return _record(ConversationRecord, row)

    def find_open_conversation(
        self, contact_id: str, conn: Optional[Connection] = None
    ) -> Optional[ConversationRecord]:
        table = self.database.conversations
        with self._connection(conn) as active:
            row = active.execute(
                select(table).where(
                    table.c.contact_id == contact_id, table.c.status.in_(OPEN_STATUS_VALUES)
                )
            ).first()
        return _record(ConversationRecord, row) if row is not None else None

    def insert_conversation(
        self,
        *,
        contact_id: str,
        owner_id: str,
        notes: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> ConversationRecord:
        now = utc_now()
        record = ConversationRecord(
            id=new_id("conv"),
            contact_id=contact_id,
            owner_id=owner_id,
            status=ConversationStatus.active,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        with self._connection(conn) as active:
            try:
                active.execute(
                    insert(self.database.conversations).values(
                        **record.model_dump(exclude={"status"}), status=record.status.value
                    )
                )
            except IntegrityError as exc:
                raise StoreConflictError(
                    f"contact already has an open conversation: {contact_id}"
                ) from exc
        return record

    def reassign_conversation_owner(
        self,
        conversation_id: str,
        *,
        from_user_id: str,
        to_user_id: str,
        conn: Optional[Connection] = None,
    ) -> int:
        table = self.database.conversations
        with self._connection(conn) as active:
            result = active.execute(
                update(table)
                .where(
                    table.c.id == conversation_id,
                    table.c.owner_id == from_user_id,
                    table.c.status != ConversationStatus.archived.value,
                )
                .values(
                    owner_id=to_user_id,
                    status=ConversationStatus.transferred.value,
                    updated_at=utc_now(),
                )
            )
        return result.rowcount

    def archive_conversation(self, conversation_id: str, conn: Optional[Connection] = None) -> int:
        table = self.database.conversations
        with self._connection(conn) as active:
            result = active.execute(
                update(table)
                .where(
                    table.c.id == conversation_id,
                    table.c.status != ConversationStatus.archived.value,
                )
                .values(status=ConversationStatus.archived.value, updated_at=utc_now())
            )
        return result.rowcount

    def touch_conversation(
        self, conversation_id: str, at: datetime, conn: Optional[Connection] = None
    ) -> None:
        table = self.database.conversations
        with self._connection(conn) as active:
            active.execute(
                update(table)
                .where(table.c.id == conversation_id)
                .values(last_message_at=at, updated_at=utc_now())
            )

    def list_open_conversations_for_user(
        self, user_id: str, conn: Optional[Connection] = None
    ) -> list[ConversationRecord]:
        conversations = self.database.conversations
        participants = self.database.participants
        member_of = select(participants.c.conversation_id).where(
            participants.c.user_id == user_id, participants.c.is_active.is_(True)
        )
        with self._connection(conn) as active:
            rows = active.execute(
                select(conversations)
                .where(
                    conversations.c.status.in_(OPEN_STATUS_VALUES),
                    or_(conversations.c.owner_id == user_id, conversations.c.id.in_(member_of)),
                )
                .order_by(
                    conversations.c.last_message_at.is_(None),
                    conversations.c.last_message_at.desc(),
                    conversations.c.created_at.desc(),
                )
            ).all()
        return [_record(ConversationRecord, row) for row in rows]

    # participants and transfers

    def insert_participant(
        self,
        *,
        conversation_id: str,
        user_id: str,
        type: ParticipantType,
        added_by: Optional[str],
        conn: Optional[Connection] = None,
    ) -> ParticipantRecord:
        record = ParticipantRecord(
            id=new_id("part"),
            conversation_id=conversation_id,
            user_id=user_id,
            type=type,
            added_by=added_by,
            added_at=utc_now(),
        )
        with self._connection(conn) as active:
            active.execute(
                insert(self.database.participants).values(
                    **record.model_dump(exclude={"type"}), type=record.type.value
                )
            )
        return record

    def deactivate_participants(
        self,
        conversation_id: str,
        user_ids: Iterable[str],
        conn: Optional[Connection] = None,
    ) -> int:
        table = self.database.participants
        with self._connection(conn) as active:
            result = active.execute(
                update(table)
                .where(
                    table.c.conversation_id == conversation_id,
                    table.c.user_id.in_(list(user_ids)),
                    table.c.is_active.is_(True),
                )
                .values(is_active=False, removed_at=utc_now())
            )
        return result.rowcount

    def list_participants(
        self,
        conversation_ids: Iterable[str],
        *,
        include_inactive: bool = False,
        conn: Optional[Connection] = None,
    ) -> list[ParticipantRecord]:
        ids = list(conversation_ids)
        if not ids:
            return []
        table = self.database.participants
        query = select(table).where(table.c.conversation_id.in_(ids))
        if not include_inactive:
            query = query.where(table.c.is_active.is_(True))
        with self._connection(conn) as active:
            rows = active.execute(query.order_by(table.c.added_at, table.c.id)).all()
        return [_record(ParticipantRecord, row) for row in rows]

    def insert_transfer(
        self,
        *,
        conversation_id: str,
        from_user_id: str,
        to_user_id: str,
        reason: Optional[str],
        conn: Optional[Connection] = None,
    ) -> TransferRecord:
        record = TransferRecord(
            id=new_id("xfer"),
            conversation_id=conversation_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            reason=reason,
            transferred_at=utc_now(),
        )
        with self._connection(conn) as active:
            active.execute(insert(self.database.transfers).values(**record.model_dump()))
        return record

    def list_transfers(
        self, conversation_id: str, conn: Optional[Connection] = None
    ) -> list[TransferRecord]:
        table = self.database.transfers
        with self._connection(conn) as active:
            rows = active.execute(
                select(table)
                .where(table.c.conversation_id == conversation_id)
                .order_by(table.c.transferred_at, table.c.id)
            ).all()
        return [_record(TransferRecord, row) for row in rows]

    # inbox

    def create_inbox_item(
        self,
        *,
        contact_id: str,
        message_id: Optional[str] = None,
        priority: int = 0,
        conn: Optional[Connection] = None,
    ) -> InboxItemRecord:
        now = utc_now()
        with self._connection(conn) as active:
            result = active.execute(
                insert(self.database.inbox_items).values(
                    contact_id=contact_id,
                    message_id=message_id,
                    status=InboxStatus.pending.value,
                    priority=priority,
                    created_at=now,
                )
            )
            item_id = result.inserted_primary_key[0]
        return InboxItemRecord(
            id=item_id,
            contact_id=contact_id,
            message_id=message_id,
            status=InboxStatus.pending,
            priority=priority,
            created_at=now,
        )

    def get_inbox_item(self, item_id: int, conn: Optional[Connection] = None) -> InboxItemRecord:
        table = self.database.inbox_items
        with self._connection(conn) as active:
            row = active.execute(select(table).where(table.c.id == item_id)).first()
        if row is None:
            raise StoreNotFoundError(f"inbox item not found: {item_id}")
        return _record(InboxItemRecord, row)

    def find_pending_inbox_item(
        self, contact_id: str, conn: Optional[Connection] = None
    ) -> Optional[InboxItemRecord]:
        table = self.database.inbox_items
        with self._connection(conn) as active:
            row = active.execute(
                select(table).where(
                    table.c.contact_id == contact_id,
                    table.c.status == InboxStatus.pending.value,
                )
            ).first()
        return _record(InboxItemRecord, row) if row is not None else None

    def list_pending_inbox_items(self, conn: Optional[Connection] = None) -> list[InboxItemRecord]:
        table = self.database.inbox_items
        with self._connection(conn) as active:
            rows = active.execute(
                select(table)
                .where(table.c.status == InboxStatus.pending.value)
                .order_by(table.c.priority.desc(), table.c.created_at, table.c.id)
            ).all()
        return [_record(InboxItemRecord, row) for row in rows]

    def claim_inbox_item(
        self, item_id: int, user_id: str, conn: Optional[Connection] = None
    ) -> int:
        table = self.database.inbox_items
        with self._connection(conn) as active:
            result = active.execute(
                update(table)
                .where(table.c.id == item_id, table.c.status == InboxStatus.pending.value)
                .values(
                    status=InboxStatus.assigned.value,
                    assigned_to=user_id,
                    assigned_at=utc_now(),
                )
            )
        return result.rowcount

    # queue jobs

    def insert_job(
        self,
        *,
        job_type: JobType,
        payload: dict[str, Any],
        max_attempts: int,
        next_eligible_at: Optional[datetime] = None,
        conn: Optional[Connection] = None,
    ) -> QueueJobRecord:
        now = utc_now()
        eligible = next_eligible_at or now
        with self._connection(conn) as active:
            result = active.execute(
                insert(self.database.queue_jobs).values(
                    job_type=job_type.value,
                    payload_json=json.dumps(payload, default=str),
                    status=JobStatus.pending.value,
                    attempts=0,
                    max_attempts=max_attempts,
                    next_eligible_at=eligible,
                    created_at=now,
                )
            )
            job_id = result.inserted_primary_key[0]
        return QueueJobRecord(
            id=job_id,
            job_type=job_type,
            payload=payload,
            status=JobStatus.pending,
            attempts=0,
            max_attempts=max_attempts,
            next_eligible_at=eligible,
            created_at=now,
        )

    def get_job(self, job_id: int, conn: Optional[Connection] = None) -> QueueJobRecord:
        table = self.database.queue_jobs
        with self._connection(conn) as active:
            row = active.execute(select(table).where(table.c.id == job_id)).first()
        if row is None:
            raise StoreNotFoundError(f"queue job not found: {job_id}")
        return _job(row)

    def list_due_jobs(
        self,
        now: datetime,
        limit: int,
        stale_before: Optional[datetime] = None,
        conn: Optional[Connection] = None,
    ) -> list[QueueJobRecord]:
        """Pending jobs that are eligible at ``now``, plus processing jobs claimed
        before ``stale_before`` whose worker never recorded an outcome."""
        table = self.database.queue_jobs
        with self._connection(conn) as active:
            rows = active.execute(
                select(table)
                .where(
                    table.c.attempts < table.c.max_attempts,
                    self._claimable(stale_before),
                    or_(table.c.next_eligible_at.is_(None), table.c.next_eligible_at <= now),
                )
                .order_by(table.c.created_at, table.c.id)
                .limit(limit)
            ).all()
        return [_job(row) for row in rows]

    def claim_job(
        self,
        job_id: int,
        at: Optional[datetime] = None,
        stale_before: Optional[datetime] = None,
        conn: Optional[Connection] = None,
    ) -> bool:
        table = self.database.queue_jobs
        with self._connection(conn) as active:
            result = active.execute(
                update(table)
                .where(table.c.id == job_id, self._claimable(stale_before))
                .values(status=JobStatus.processing.value, claimed_at=at or utc_now())
            )
        return result.rowcount == 1

    def _claimable(self, stale_before: Optional[datetime]) -> Any:
        table = self.database.queue_jobs
        pending = table.c.status == JobStatus.pending.value
        if stale_before is None:
            return pending
        return or_(
            pending,
            and_(
                table.c.status == JobStatus.processing.value,
                table.c.claimed_at <= stale_before,
            ),
        )

    def complete_job(self, job_id: int, at: datetime, conn: Optional[Connection] = None) -> None:
        table = self.database.queue_jobs
        with self._connection(conn) as active:
            active.execute(
                update(table)
                .where(table.c.id == job_id)
                .values(status=JobStatus.done.value, processed_at=at, last_error=None)
            )

    def record_job_failure(
        self,
        job_id: int,
        *,
        attempts: int,
        error: str,
        status: JobStatus,
        next_eligible_at: Optional[datetime],
        conn: Optional[Connection] = None,
    ) -> None:
        table = self.database.queue_jobs
        values: dict[str, Any] = {
            "attempts": attempts,
            "last_error": error,
            "status": status.value,
            "next_eligible_at": next_eligible_at,
        }
        if status == JobStatus.failed:
            values["processed_at"] = utc_now()
        with self._connection(conn) as active:
            active.execute(update(table).where(table.c.id == job_id).values(**values))

    def count_jobs_by_status(self, conn: Optional[Connection] = None) -> dict[str, int]:
        table = self.database.queue_jobs
        with self._connection(conn) as active:
            rows = active.execute(
                select(table.c.status, func.count()).group_by(table.c.status)
            ).all()
        return {row[0]: int(row[1]) for row in rows}

    # campaigns

    def create_campaign(
        self,
        *,
        name: str,
        message: str,
        contact_list_id: str,
        instance_id: Optional[str] = None,
        scheduled_for: Optional[datetime] = None,
        media_url: Optional[str] = None,
        media_type: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> CampaignRecord:
        now = utc_now()
        record = CampaignRecord(
            id=new_id("cmp"),
            user_id=self._tenant(),
            name=name.strip(),
            message=message,
            contact_list_id=contact_list_id,
            instance_id=instance_id,
            scheduled_for=scheduled_for,
            status=CampaignStatus.draft,
            media_url=media_url,
            media_type=media_type,
            created_at=now,
            updated_at=now,
        )
        with self._connection(conn) as active:
            active.execute(
                insert(self.database.campaigns).values(
                    **record.model_dump(exclude={"status"}), status=record.status.value
                )
            )
        return record

    def get_campaign(self, campaign_id: str, conn: Optional[Connection] = None) -> CampaignRecord:
        table = self.database.campaigns
        with self._connection(conn) as active:
            row = active.execute(
                select(table).where(table.c.id == campaign_id, table.c.user_id == self._tenant())
            ).first()
        if row is None:
            raise StoreNotFoundError(f"campaign not found: {campaign_id}")
        return _record(CampaignRecord, row)

    def update_campaign(
        self, campaign_id: str, conn: Optional[Connection] = None, **values: Any
    ) -> CampaignRecord:
        table = self.database.campaigns
        if isinstance(values.get("status"), CampaignStatus):
            values["status"] = values["status"].value
        values["updated_at"] = utc_now()
        with self._connection(conn) as active:
            result = active.execute(
                update(table)
                .where(table.c.id == campaign_id, table.c.user_id == self._tenant())
                .values(**values)
            )
            if result.rowcount == 0:
                raise StoreNotFoundError(f"campaign not found: {campaign_id}")
            return self.get_campaign(campaign_id, conn=active)

    def increment_campaign_counter(
        self, campaign_id: str, counter: str, conn: Optional[Connection] = None
    ) -> None:
        if counter not in {"delivered", "read"}:
            raise ValueError(f"unsupported campaign counter: {counter}")
        table = self.database.campaigns
        column = table.c[counter]
        with self._connection(conn) as active:
            active.execute(
                update(table)
                .where(table.c.id == campaign_id, table.c.user_id == self._tenant())
                .values({column: column + 1, table.c.updated_at: utc_now()})
            )

    # messages

    def insert_message(
        self,
        *,
        contact_id: str,
        direction: MessageDirection,
        body: str,
        status: MessageStatus,
        campaign_id: Optional[str] = None,
        has_media: bool = False,
        media_url: Optional[str] = None,
        media_type: Optional[str] = None,
        whatsapp_message_id: Optional[str] = None,
        sent_at: Optional[datetime] = None,
        error_message: Optional[str] = None,
        created_at: Optional[datetime] = None,
        conn: Optional[Connection] = None,
    ) -> MessageRecord:
        record = MessageRecord(
            id=new_id("msg"),
            user_id=self._tenant(),
            contact_id=contact_id,
            campaign_id=campaign_id,
            direction=direction,
            body=body,
            status=status,
            has_media=has_media,
            media_url=media_url,
            media_type=media_type,
            whatsapp_message_id=whatsapp_message_id,
            sent_at=sent_at,
            error_message=error_message,
            created_at=created_at or utc_now(),
        )
        with self._connection(conn) as active:
            active.execute(
                insert(self.database.messages).values(
                    **record.model_dump(exclude={"direction", "status"}),
                    direction=record.direction.value,
                    status=record.status.value,
                )
            )
        return record

    def find_message_by_whatsapp_id(
        self, whatsapp_message_id: str, conn: Optional[Connection] = None
    ) -> Optional[MessageRecord]:
        table = self.database.messages
        with self._connection(conn) as active:
            row = active.execute(
                select(table).where(
                    table.c.user_id == self._tenant(),
                    table.c.whatsapp_message_id == whatsapp_message_id,
                )
            ).first()
        return _record(MessageRecord, row) if row is not None else None

    def update_message_status(
        self,
        message_id: str,
        status: MessageStatus,
        *,
        at: datetime,
        error: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> None:
        table = self.database.messages
        values: dict[str, Any] = {"status": status.value}
        if status == MessageStatus.delivered:
            values["delivered_at"] = at
        elif status == MessageStatus.read:
            values["read_at"] = at
        elif status == MessageStatus.failed:
            values["error_message"] = error
        with self._connection(conn) as active:
            active.execute(
                update(table)
                .where(table.c.id == message_id, table.c.user_id == self._tenant())
                .values(**values)
            )

    def list_messages(
        self, contact_id: str, conn: Optional[Connection] = None
    ) -> list[MessageRecord]:
        table = self.database.messages
        with self._connection(conn) as active:
            rows = active.execute(
                select(table)
                .where(table.c.user_id == self._tenant(), table.c.contact_id == contact_id)
                .order_by(table.c.created_at, table.c.id)
            ).all()
        return [_record(MessageRecord, row) for row in rows]

    # auto-reply rules

    def create_auto_reply_rule(
        self,
        *,
        trigger: str,
        reply: str,
        is_active: bool = True,
        conn: Optional[Connection] = None,
    ) -> AutoReplyRuleRecord:
        record = AutoReplyRuleRecord(
            id=new_id("rule"),
            user_id=self._tenant(),
            trigger=trigger,
            reply=reply,
            is_active=is_active,
            created_at=utc_now(),
        )
        with self._connection(conn) as active:
            active.execute(insert(self.database.auto_reply_rules).values(**record.model_dump()))
        return record

    def list_auto_reply_rules(
        self, *, active_only: bool = False, conn: Optional[Connection] = None
    ) -> list[AutoReplyRuleRecord]:
        table = self.database.auto_reply_rules
        query = select(table).where(table.c.user_id == self._tenant())
        if active_only:
            query = query.where(table.c.is_active.is_(True))
        with self._connection(conn) as active:
            rows = active.execute(query.order_by(table.c.created_at, table.c.id)).all()
        return [_record(AutoReplyRuleRecord, row) for row in rows]

    def increment_rule_usage(self, rule_id: str, conn: Optional[Connection] = None) -> None:
        table = self.database.auto_reply_rules
        with self._connection(conn) as active:
            active.execute(
                update(table)
                .where(table.c.id == rule_id, table.c.user_id == self._tenant())
                .values(usage_count=table.c.usage_count + 1)
            )

    # whatsapp instances

    def create_instance(
        self,
        *,
        instance_name: str,
        instance_id: str,
        api_url: str,
        api_key: str,
        webhook_url: Optional[str] = None,
        status: InstanceStatus = InstanceStatus.pending,
        phone_number: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> WhatsAppInstanceRecord:
        now = utc_now()
        record = WhatsAppInstanceRecord(
            id=new_id("inst"),
            user_id=self._tenant(),
            instance_name=instance_name.strip(),
            instance_id=instance_id.strip(),
            api_url=api_url.rstrip("/"),
            api_key=api_key,
            webhook_url=webhook_url,
            phone_number=phone_number,
            status=status,
            last_connected_at=now if status == InstanceStatus.connected else None,
            created_at=now,
        )
        with self._connection(conn) as active:
            active.execute(
                insert(self.database.instances).values(
                    **record.model_dump(exclude={"status"}), status=record.status.value
                )
            )
        return record

    def get_instance(
        self, record_id: str, conn: Optional[Connection] = None
    ) -> WhatsAppInstanceRecord:
        table = self.database.instances
        with self._connection(conn) as active:
            row = active.execute(
                select(table).where(table.c.id == record_id, table.c.user_id == self._tenant())
            ).first()
        if row is None:
            raise StoreNotFoundError(f"instance not found: {record_id}")
        return _record(WhatsAppInstanceRecord, row)

    def list_instances(self, conn: Optional[Connection] = None) -> list[WhatsAppInstanceRecord]:
        table = self.database.instances
        with self._connection(conn) as active:
            rows = active.execute(
                select(table)
                .where(table.c.user_id == self._tenant())
                .order_by(table.c.created_at, table.c.id)
            ).all()
        return [_record(WhatsAppInstanceRecord, row) for row in rows]

    def get_connected_instance(
        self, conn: Optional[Connection] = None
    ) -> Optional[WhatsAppInstanceRecord]:
        table = self.database.instances
        with self._connection(conn) as active:
            row = active.execute(
                select(table)
                .where(
                    table.c.user_id == self._tenant(),
                    table.c.is_active.is_(True),
                    table.c.status == InstanceStatus.connected.value,
                )
                .order_by(table.c.created_at, table.c.id)
            ).first()
        return _record(WhatsAppInstanceRecord, row) if row is not None else None

    def find_instance_by_gateway_id(
        self, instance_id: str, conn: Optional[Connection] = None
    ) -> WhatsAppInstanceRecord:
        """Resolve the owning tenant of an inbound webhook; not tenant-filtered."""
        table = self.database.instances
        with self._connection(conn) as active:
            row = active.execute(
                select(table)
                .where(table.c.instance_id == instance_id, table.c.is_active.is_(True))
                .order_by(table.c.created_at, table.c.id)
            ).first()
        if row is None:
            raise StoreNotFoundError(f"instance not found: {instance_id}")
        return _record(WhatsAppInstanceRecord, row)

    def update_instance(
        self, record_id: str, conn: Optional[Connection] = None, **values: Any
    ) -> WhatsAppInstanceRecord:
        table = self.database.instances
        if isinstance(values.get("status"), InstanceStatus):
            values["status"] = values["status"].value
        with self._connection(conn) as active:
            result = active.execute(
                update(table)
                .where(table.c.id == record_id, table.c.user_id == self._tenant())
                .values(**values)
            )
            if result.rowcount == 0:
                raise StoreNotFoundError(f"instance not found: {record_id}")
            return self.get_instance(record_id, conn=active)

    # webhook log

    def log_webhook(
        self,
        *,
        payload: str,
        outcome: WebhookOutcome,
        event_type: Optional[str] = None,
        instance_id: Optional[str] = None,
        error: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> int:
        with self._connection(conn) as active:
            result = active.execute(
                insert(self.database.webhook_log).values(
                    event_type=event_type,
                    instance_id=instance_id,
                    payload=payload,
                    outcome=outcome.value,
                    error=error,
                    created_at=utc_now(),
                )
            )
            return result.inserted_primary_key[0]

    def list_webhook_logs(
        self, *, limit: int = 50, conn: Optional[Connection] = None
    ) -> list[WebhookLogRecord]:
        table = self.database.webhook_log
        safe_limit = max(1, min(limit, 500))
        with self._connection(conn) as active:
            rows = active.execute(
                select(table).order_by(table.c.id.desc()).limit(safe_limit)
            ).all()
        return [_record(WebhookLogRecord, row) for row in rows]