from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Protocol
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    exists,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column, sessionmaker

from .errors import ForbiddenError, MessageNotFoundError, ValidationError
from .models import MessageType
from .threads import MessagingBase, ThreadRecord

logger = logging.getLogger(__name__)

DEFAULT_MAX_LENGTH = 2000
_MARK_READ_ATTEMPTS = 3


@dataclass(frozen=True)
class ReadReceipt:
    user_id: str
    read_at: datetime


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    thread_id: str
    sequence: int
    sender_id: str
    receiver_id: str | None
    content: str
    message_type: MessageType
    read_by: tuple[ReadReceipt, ...]
    is_deleted: bool
    deleted_at: datetime | None
    deleted_by: str | None
    created_at: datetime

    def is_read_by(self, user_id: str) -> bool:
        return any(receipt.user_id == user_id for receipt in self.read_by)


class MessageRepository(Protocol):
    def reset(self) -> None: ...

    def append(
        self,
        thread: ThreadRecord,
        *,
        sender_id: str,
        text: str,
        receiver_id: str | None = None,
        message_type: MessageType = "text",
    ) -> MessageRecord: ...

    def get_message(self, message_id: str) -> MessageRecord: ...

    def list_by_thread(self, thread_id: str, *, include_deleted: bool = False) -> list[MessageRecord]: ...

    def mark_read(self, message_id: str, user_id: str) -> MessageRecord: ...

    def mark_thread_read(self, thread_id: str, user_id: str, *, up_to_sequence: int | None = None) -> int: ...

    def soft_delete(self, message_id: str, *, actor_id: str, actor_is_admin: bool = False) -> MessageRecord: ...

    def discard(self, message_id: str) -> None: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def clean_message_text(text: str | None, *, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    cleaned = (text or "").strip()
    if not cleaned:
        raise ValidationError("Message text is required")
    if len(cleaned) > max_length:
        raise ValidationError(f"Message text must be at most {max_length} characters")
    return cleaned


def _check_append(thread: ThreadRecord, *, sender_id: str, receiver_id: str | None) -> None:
    if not thread.is_participant(sender_id):
        raise ValidationError("Sender is not a participant of this thread")
    if receiver_id is not None and (receiver_id == sender_id or not thread.is_participant(receiver_id)):
        raise ValidationError("Receiver must be the other participant of this thread")


def _check_delete(message: MessageRecord, *, actor_id: str, actor_is_admin: bool) -> None:
    if message.sender_id != actor_id and not actor_is_admin:
        raise ForbiddenError("Only the sender or an admin can delete a message")


class InMemoryMessageRepository:
    def __init__(self, *, max_length: int = DEFAULT_MAX_LENGTH) -> None:
        self._lock = Lock()
        self._max_length = max_length
        self._sequence = count(1)
        self._messages: dict[str, MessageRecord] = {}
        self._thread_messages: dict[str, list[str]] = {}

    def reset(self) -> None:
        with self._lock:
            self._sequence = count(1)
            self._messages.clear()
            self._thread_messages.clear()

    def _require(self, message_id: str) -> MessageRecord:
        message = self._messages.get(message_id)
        if message is None or message.is_deleted:
            raise MessageNotFoundError(f"message not found: {message_id}")
        return message

    def append(
        self,
        thread: ThreadRecord,
        *,
        sender_id: str,
        text: str,
        receiver_id: str | None = None,
        message_type: MessageType = "text",
    ) -> MessageRecord:
        content = clean_message_text(text, max_length=self._max_length)
        _check_append(thread, sender_id=sender_id, receiver_id=receiver_id)
        with self._lock:
            sequence = next(self._sequence)
            message = MessageRecord(
                message_id=f"msg_{sequence:06d}",
                thread_id=thread.thread_id,
                sequence=sequence,
                sender_id=sender_id,
                receiver_id=receiver_id,
                content=content,
                message_type=message_type,
                read_by=(),
                is_deleted=False,
                deleted_at=None,
                deleted_by=None,
                created_at=_now_utc(),
            )
            self._messages[message.message_id] = message
            self._thread_messages.setdefault(thread.thread_id, []).append(message.message_id)
            return message

    def get_message(self, message_id: str) -> MessageRecord:
        with self._lock:
            return self._require(message_id)

    def list_by_thread(self, thread_id: str, *, include_deleted: bool = False) -> list[MessageRecord]:
        with self._lock:
            messages = [self._messages[message_id] for message_id in self._thread_messages.get(thread_id, [])]
        ordered = sorted(messages, key=lambda value: value.sequence)
        if include_deleted:
            return ordered
        return [value for value in ordered if not value.is_deleted]

    def mark_read(self, message_id: str, user_id: str) -> MessageRecord:
        with self._lock:
            message = self._require(message_id)
            if message.is_read_by(user_id):
                return message
            updated = replace(message, read_by=message.read_by + (ReadReceipt(user_id=user_id, read_at=_now_utc()),))
            self._messages[message_id] = updated
            return updated

    def mark_thread_read(self, thread_id: str, user_id: str, *, up_to_sequence: int | None = None) -> int:
        with self._lock:
            now = _now_utc()
            marked = 0
            for message_id in self._thread_messages.get(thread_id, []):
                message = self._messages[message_id]
                if up_to_sequence is not None and message.sequence > up_to_sequence:
                    continue
                if message.is_deleted or message.is_read_by(user_id):
                    continue
                self._messages[message_id] = replace(
                    message,
                    read_by=message.read_by + (ReadReceipt(user_id=user_id, read_at=now),),
                )
                marked += 1
            return marked

    def soft_delete(self, message_id: str, *, actor_id: str, actor_is_admin: bool = False) -> MessageRecord:
        with self._lock:
            message = self._require(message_id)
            _check_delete(message, actor_id=actor_id, actor_is_admin=actor_is_admin)
            updated = replace(message, is_deleted=True, deleted_at=_now_utc(), deleted_by=actor_id)
            self._messages[message_id] = updated
            return updated

    def discard(self, message_id: str) -> None:
        with self._lock:
            message = self._messages.pop(message_id, None)
            if message is None:
                return
            thread_messages = self._thread_messages.get(message.thread_id, [])
            if message_id in thread_messages:
                thread_messages.remove(message_id)


class _MessageRow(MessagingBase):
    __tablename__ = "thread_messages"

    sequence: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    message_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    thread_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("message_threads.thread_id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    receiver_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[str] = mapped_column(String(16), nullable=False, default="text")
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ReadReceiptRow(MessagingBase):
    __tablename__ = "message_read_receipts"
    __table_args__ = (UniqueConstraint("message_id", "user_id", name="uq_message_read_receipts_message_user"),)

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    message_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("thread_messages.message_id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    read_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyMessageRepository:
    def __init__(self, database_url: str, *, max_length: int = DEFAULT_MAX_LENGTH) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for MESSAGING_STORE_BACKEND=postgres")
        self._max_length = max_length
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            MessagingBase.metadata.create_all(self._engine)

    def _session(self) -> Session:
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_ReadReceiptRow))
                session.execute(delete(_MessageRow))

    def append(
        self,
        thread: ThreadRecord,
        *,
        sender_id: str,
        text: str,
        receiver_id: str | None = None,
        message_type: MessageType = "text",
    ) -> MessageRecord:
        content = clean_message_text(text, max_length=self._max_length)
        _check_append(thread, sender_id=sender_id, receiver_id=receiver_id)
        row = _MessageRow(
            message_id=f"msg_{uuid4().hex}",
            thread_id=thread.thread_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            message_type=message_type,
            is_deleted=False,
            created_at=_now_utc(),
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
                session.flush()
            return self._message_record(row, [])

    def get_message(self, message_id: str) -> MessageRecord:
        with self._session() as session:
            row = session.scalar(select(_MessageRow).where(_MessageRow.message_id == message_id))
            if row is None or row.is_deleted:
                raise MessageNotFoundError(f"message not found: {message_id}")
            return self._message_record(row, self._receipts(session, [message_id])[message_id])

    def list_by_thread(self, thread_id: str, *, include_deleted: bool = False) -> list[MessageRecord]:
        query = select(_MessageRow).where(_MessageRow.thread_id == thread_id)
        if not include_deleted:
            query = query.where(_MessageRow.is_deleted.is_(False))
        with self._session() as session:
            rows = session.scalars(query.order_by(_MessageRow.sequence.asc())).all()
            receipts = self._receipts(session, [row.message_id for row in rows])
            return [self._message_record(row, receipts[row.message_id]) for row in rows]

    def mark_read(self, message_id: str, user_id: str) -> MessageRecord:
        try:
            with self._session() as session:
                with session.begin():
                    row = session.scalar(select(_MessageRow).where(_MessageRow.message_id == message_id))
                    if row is None or row.is_deleted:
                        raise MessageNotFoundError(f"message not found: {message_id}")
                    already = session.scalar(
                        select(_ReadReceiptRow.id)
                        .where(_ReadReceiptRow.message_id == message_id)
                        .where(_ReadReceiptRow.user_id == user_id)
                    )
                    if already is None:
                        session.add(_ReadReceiptRow(message_id=message_id, user_id=user_id, read_at=_now_utc()))
        except IntegrityError:
            logger.debug("read receipt for %s by %s already recorded concurrently", message_id, user_id)
        return self.get_message(message_id)

    def mark_thread_read(self, thread_id: str, user_id: str, *, up_to_sequence: int | None = None) -> int:
        for attempt in range(1, _MARK_READ_ATTEMPTS + 1):
            try:
                return self._mark_thread_read_once(thread_id, user_id, up_to_sequence)
            except IntegrityError:
                if attempt == _MARK_READ_ATTEMPTS:
                    raise
        return 0

    def _mark_thread_read_once(self, thread_id: str, user_id: str, up_to_sequence: int | None) -> int:
        already_read = exists().where(
            _ReadReceiptRow.message_id == _MessageRow.message_id,
            _ReadReceiptRow.user_id == user_id,
        )
        with self._session() as session:
            with session.begin():
                query = (
                    select(_MessageRow.message_id)
                    .where(_MessageRow.thread_id == thread_id)
                    .where(_MessageRow.is_deleted.is_(False))
                    .where(~already_read)
                )
                if up_to_sequence is not None:
                    query = query.where(_MessageRow.sequence <= up_to_sequence)
                message_ids = session.scalars(query.order_by(_MessageRow.sequence.asc())).all()
                now = _now_utc()
                session.add_all(
                    [_ReadReceiptRow(message_id=message_id, user_id=user_id, read_at=now) for message_id in message_ids]
                )
                session.flush()
                return len(message_ids)

    def soft_delete(self, message_id: str, *, actor_id: str, actor_is_admin: bool = False) -> MessageRecord:
        with self._session() as session:
            with session.begin():
                row = session.scalar(select(_MessageRow).where(_MessageRow.message_id == message_id))
                if row is None or row.is_deleted:
                    raise MessageNotFoundError(f"message not found: {message_id}")
                _check_delete(self._message_record(row, []), actor_id=actor_id, actor_is_admin=actor_is_admin)
                row.is_deleted = True
                row.deleted_at = _now_utc()
                row.deleted_by = actor_id
                session.flush()
                return self._message_record(row, self._receipts(session, [message_id])[message_id])

    def discard(self, message_id: str) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_ReadReceiptRow).where(_ReadReceiptRow.message_id == message_id))
                session.execute(delete(_MessageRow).where(_MessageRow.message_id == message_id))

    @staticmethod
    def _receipts(session: Session, message_ids: list[str]) -> dict[str, list[_ReadReceiptRow]]:
        grouped: dict[str, list[_ReadReceiptRow]] = {message_id: [] for message_id in message_ids}
        if not message_ids:
            return grouped
        rows = session.scalars(
            select(_ReadReceiptRow)
            .where(_ReadReceiptRow.message_id.in_(message_ids))
            .order_by(_ReadReceiptRow.id.asc())
        ).all()
        for row in rows:
            grouped[row.message_id].append(row)
        return grouped

    @staticmethod
    def _message_record(row: _MessageRow, receipts: list[_ReadReceiptRow]) -> MessageRecord:
        return MessageRecord(
            message_id=row.message_id,
            thread_id=row.thread_id,
            sequence=row.sequence,
            sender_id=row.sender_id,
            receiver_id=row.receiver_id,
            content=row.content,
            message_type=row.message_type,  # type: ignore[arg-type]
            read_by=tuple(
                ReadReceipt(user_id=receipt.user_id, read_at=_coerce_utc(receipt.read_at))  # type: ignore[arg-type]
                for receipt in receipts
            ),
            is_deleted=row.is_deleted,
            deleted_at=_coerce_utc(row.deleted_at),
            deleted_by=row.deleted_by,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )


def create_message_repository(
    *,
    backend: str,
    database_url: str,
    max_length: int = DEFAULT_MAX_LENGTH,
) -> MessageRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyMessageRepository(database_url, max_length=max_length)
    if normalized == "inmemory":
        return InMemoryMessageRepository(max_length=max_length)
    raise RuntimeError(f"unsupported MESSAGING_STORE_BACKEND: {backend}")
