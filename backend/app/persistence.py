from __future__ import annotations

from contextlib import contextmanager, nullcontext
from pathlib import Path
from threading import RLock
from typing import Iterator

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    or_,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from backend.app.models import OPEN_CONVERSATION_STATUSES


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


def _is_memory_sqlite(database_url: str) -> bool:
    return database_url in {"sqlite://", "sqlite:///:memory:"}


class Database:
    """
    Relational backing store. Uses SQLAlchemy and supports both SQLite and PostgreSQL URLs.

    SQLite allows a single writer, so transactions are serialized in-process there;
    PostgreSQL relies on the conditional updates issued by the store instead.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self.is_sqlite = self.database_url.startswith("sqlite")
        self._lock = RLock() if self.is_sqlite else None
        engine_kwargs: dict = {"future": True, "pool_pre_ping": True}
        if self.is_sqlite:
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        if _is_memory_sqlite(self.database_url):
            engine_kwargs["poolclass"] = StaticPool
        self.engine: Engine = create_engine(self.database_url, **engine_kwargs)
        self.metadata = MetaData()

        self.contacts = Table(
            "contacts",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("user_id", String(120), nullable=False, index=True),
            Column("name", String(255), nullable=False),
            Column("phone", String(32), nullable=False),
            Column("email", String(255), nullable=True),
            Column("company", String(255), nullable=True),
            Column("notes", Text, nullable=True),
            Column("is_active", Boolean, nullable=False, default=True),
            Column("last_message_at", DateTime, nullable=True),
            Column("tags_json", Text, nullable=False, default="[]"),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
            UniqueConstraint("user_id", "phone", name="uq_contacts_user_phone"),
        )
        self.conversations = Table(
            "conversations",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("contact_id", String(40), ForeignKey("contacts.id"), nullable=False),
            Column("owner_id", String(120), nullable=False, index=True),
            Column("status", String(20), nullable=False),
            Column("last_message_at", DateTime, nullable=True),
            Column("notes", Text, nullable=True),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
        )
        open_clause = or_(
            *[self.conversations.c.status == status.value for status in OPEN_CONVERSATION_STATUSES]
        )
        Index(
            "uq_conversations_open_contact",
            self.conversations.c.contact_id,
            unique=True,
            sqlite_where=open_clause,
            postgresql_where=open_clause,
        )
        self.participants = Table(
            "conversation_participants",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column(
                "conversation_id", String(40), ForeignKey("conversations.id"), nullable=False
            ),
            Column("user_id", String(120), nullable=False),
            Column("type", String(20), nullable=False),
            Column("added_by", String(120), nullable=True),
            Column("added_at", DateTime, nullable=False),
            Column("removed_at", DateTime, nullable=True),
            Column("is_active", Boolean, nullable=False, default=True),
            Index("ix_participants_conversation_user", "conversation_id", "user_id"),
        )
        self.transfers = Table(
            "conversation_transfers",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column(
                "conversation_id", String(40), ForeignKey("conversations.id"), nullable=False
            ),
            Column("from_user_id", String(120), nullable=False),
            Column("to_user_id", String(120), nullable=False),
            Column("reason", Text, nullable=True),
            Column("transferred_at", DateTime, nullable=False),
        )
        self.inbox_items = Table(
            "inbox_items",
            self.metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("contact_id", String(40), ForeignKey("contacts.id"), nullable=False),
            Column("message_id", String(40), nullable=True),
            Column("status", String(20), nullable=False),
            Column("assigned_to", String(120), nullable=True),
            Column("assigned_at", DateTime, nullable=True),
            Column("priority", Integer, nullable=False, default=0),
            Column("created_at", DateTime, nullable=False),
            Index("ix_inbox_items_status_priority", "status", "priority"),
        )
        self.queue_jobs = Table(
            "queue_jobs",
            self.metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("job_type", String(40), nullable=False),
            Column("payload_json", Text, nullable=False),
            Column("status", String(20), nullable=False),
            Column("attempts", Integer, nullable=False, default=0),
            Column("max_attempts", Integer, nullable=False, default=3),
            Column("last_error", Text, nullable=True),
            Column("next_eligible_at", DateTime, nullable=True),
            Column("claimed_at", DateTime, nullable=True),
            Column("created_at", DateTime, nullable=False),
            Column("processed_at", DateTime, nullable=True),
            Index("ix_queue_jobs_due", "status", "next_eligible_at"),
        )
        self.contact_lists = Table(
            "contact_lists",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("user_id", String(120), nullable=False, index=True),
            Column("name", String(255), nullable=False),
            Column("created_at", DateTime, nullable=False),
        )
        self.contact_list_members = Table(
            "contact_list_members",
            self.metadata,
            Column("list_id", String(40), ForeignKey("contact_lists.id"), primary_key=True),
            Column("contact_id", String(40), ForeignKey("contacts.id"), primary_key=True),
            Column("added_at", DateTime, nullable=False),
        )
        self.campaigns = Table(
            "campaigns",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("user_id", String(120), nullable=False, index=True),
            Column("name", String(255), nullable=False),
            Column("message", Text, nullable=False),
            Column("contact_list_id", String(40), nullable=False),
            Column("instance_id", String(40), nullable=True),
            Column("scheduled_for", DateTime, nullable=True),
            Column("total", Integer, nullable=False, default=0),
            Column("sent", Integer, nullable=False, default=0),
            Column("delivered", Integer, nullable=False, default=0),
            Column("read", Integer, nullable=False, default=0),
            Column("failed", Integer, nullable=False, default=0),
            Column("progress", Float, nullable=False, default=0.0),
            Column("status", String(30), nullable=False),
            Column("media_url", String(500), nullable=True),
            Column("media_type", String(20), nullable=True),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
        )
        self.messages = Table(
            "messages",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("user_id", String(120), nullable=False, index=True),
            Column("contact_id", String(40), nullable=False, index=True),
            Column("campaign_id", String(40), nullable=True),
            Column("direction", String(20), nullable=False),
            Column("body", Text, nullable=False),
            Column("status", String(20), nullable=False),
            Column("has_media", Boolean, nullable=False, default=False),
            Column("media_url", String(500), nullable=True),
            Column("media_type", String(60), nullable=True),
            Column("whatsapp_message_id", String(255), nullable=True, index=True),
            Column("sent_at", DateTime, nullable=True),
            Column("delivered_at", DateTime, nullable=True),
            Column("read_at", DateTime, nullable=True),
            Column("error_message", Text, nullable=True),
            Column("created_at", DateTime, nullable=False),
        )
        self.auto_reply_rules = Table(
            "auto_reply_rules",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("user_id", String(120), nullable=False, index=True),
            Column("trigger", String(120), nullable=False),
            Column("reply", Text, nullable=False),
            Column("is_active", Boolean, nullable=False, default=True),
            Column("usage_count", Integer, nullable=False, default=0),
            Column("created_at", DateTime, nullable=False),
        )
        self.webhook_log = Table(
            "webhook_log",
            self.metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("event_type", String(60), nullable=True),
            Column("instance_id", String(120), nullable=True),
            Column("payload", Text, nullable=False),
            Column("outcome", String(20), nullable=False),
            Column("error", Text, nullable=True),
            Column("created_at", DateTime, nullable=False),
        )
        self.instances = Table(
            "whatsapp_instances",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("user_id", String(120), nullable=False, index=True),
            Column("instance_name", String(120), nullable=False),
            Column("instance_id", String(120), nullable=False, index=True),
            Column("api_url", String(500), nullable=False),
            Column("api_key", String(500), nullable=False),
            Column("webhook_url", String(500), nullable=True),
            Column("phone_number", String(32), nullable=True),
            Column("status", String(20), nullable=False),
            Column("qr_code", Text, nullable=True),
            Column("is_active", Boolean, nullable=False, default=True),
            Column("last_connected_at", DateTime, nullable=True),
            Column("created_at", DateTime, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        with self._lock if self._lock is not None else nullcontext():
            with self.engine.begin() as conn:
                yield conn

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def dispose(self) -> None:
        self.engine.dispose()
