from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Protocol, Sequence
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
    func,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .errors import ConcurrencyConflictError, ForbiddenError, InvalidParticipantsError, ThreadNotFoundError
from .models import MessageType, Role, ThreadContextType, ThreadStatus
from .routing_policy import evaluate_role_pair

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThreadParticipant:
    user_id: str
    role: Role
    unread_count: int = 0
    last_read_at: datetime | None = None


@dataclass(frozen=True)
class LastMessageSnapshot:
    content: str
    sender_id: str
    sent_at: datetime
    message_type: MessageType
    sequence: int


@dataclass(frozen=True)
class ThreadRecord:
    thread_id: str
    participants: tuple[ThreadParticipant, ...]
    property_id: str | None
    context_type: ThreadContextType
    status: ThreadStatus
    last_message: LastMessageSnapshot | None
    message_count: int
    is_deleted: bool
    deleted_at: datetime | None
    deleted_by: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def participant_ids(self) -> tuple[str, ...]:
        return tuple(participant.user_id for participant in self.participants)

    @property
    def roles(self) -> tuple[str, ...]:
        return tuple(participant.role for participant in self.participants)

    def is_participant(self, user_id: str) -> bool:
        return user_id in self.participant_ids

    def participant(self, user_id: str) -> ThreadParticipant | None:
        for participant in self.participants:
            if participant.user_id == user_id:
                return participant
        return None

    def other_participant_id(self, user_id: str) -> str | None:
        for participant in self.participants:
            if participant.user_id != user_id:
                return participant.user_id
        return None

    def unread_count_for(self, user_id: str) -> int:
        participant = self.participant(user_id)
        return participant.unread_count if participant is not None else 0


class ThreadRepository(Protocol):
    def reset(self) -> None: ...

    def find_active_thread(self, user_a: str, user_b: str, property_id: str | None = None) -> ThreadRecord | None: ...

    def create_thread(
        self,
        participants: Sequence[ThreadParticipant],
        *,
        property_id: str | None = None,
        context_type: ThreadContextType = "general",
    ) -> ThreadRecord: ...

    def get_thread(self, thread_id: str) -> ThreadRecord: ...

    def record_incoming_message(
        self,
        thread_id: str,
        *,
        sender_id: str,
        preview: str,
        sent_at: datetime,
        sequence: int,
        message_type: MessageType = "text",
    ) -> ThreadRecord: ...

    def mark_read(self, thread_id: str, user_id: str) -> ThreadRecord: ...

    def list_for_user(self, user_id: str, *, offset: int, limit: int) -> tuple[list[ThreadRecord], int]: ...

    def set_status(self, thread_id: str, status: ThreadStatus) -> ThreadRecord: ...

    def soft_delete(self, thread_id: str, *, actor_id: str) -> ThreadRecord: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _digest(parts: list[str | None]) -> str:
    encoded = json.dumps(parts, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def thread_pair_key(user_a: str, user_b: str) -> str:
    return _digest(sorted([user_a, user_b]))


def thread_active_key(user_a: str, user_b: str, property_id: str | None) -> str:
    return _digest([*sorted([user_a, user_b]), property_id])


def _matches_context(thread: ThreadRecord, user_a: str, user_b: str, property_id: str | None) -> bool:
    return set(thread.participant_ids) == {user_a, user_b} and thread.property_id == property_id


def _validate_participants(participants: Sequence[ThreadParticipant]) -> tuple[ThreadParticipant, ThreadParticipant]:
    if len(participants) != 2:
        raise InvalidParticipantsError(f"a thread needs exactly 2 participants, got {len(participants)}")
    first, second = participants
    if first.user_id == second.user_id:
        raise InvalidParticipantsError("a thread needs two distinct participants")
    decision = evaluate_role_pair(first.role, second.role)
    if not decision.allowed:
        raise InvalidParticipantsError(decision.message, reason=decision.reason)
    return first, second


def _active_thread_for(
    repository: ThreadRepository, user_a: str, user_b: str, property_id: str | None
) -> ThreadRecord | None:
    thread = repository.find_active_thread(user_a, user_b, property_id)
    if thread is not None and not _matches_context(thread, user_a, user_b, property_id):
        logger.warning(
            "active thread %s does not belong to %s and %s (property=%s)",
            thread.thread_id,
            user_a,
            user_b,
            property_id,
        )
        return None
    return thread


def find_or_create_thread(
    repository: ThreadRepository,
    participants: Sequence[ThreadParticipant],
    *,
    property_id: str | None = None,
    context_type: ThreadContextType = "general",
) -> tuple[ThreadRecord, bool]:
    """Return the active thread for the pair + context, creating it when missing.

    The boolean is True when this call created the thread. A lost creation race
    resolves to the thread the other writer persisted.
    """
    first, second = _validate_participants(participants)
    existing = _active_thread_for(repository, first.user_id, second.user_id, property_id)
    if existing is not None:
        return existing, False
    try:
        created = repository.create_thread(participants, property_id=property_id, context_type=context_type)
    except ConcurrencyConflictError as exc:
        winner = _active_thread_for(repository, first.user_id, second.user_id, property_id)
        if winner is None:
            raise
        logger.info("thread creation race on %s resolved to %s", exc.active_key, winner.thread_id)
        return winner, False
    logger.info(
        "created thread %s between %s and %s (property=%s)",
        created.thread_id,
        first.user_id,
        second.user_id,
        property_id,
    )
    return created, True


class InMemoryThreadRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._thread_counter = count(1)
        self._threads: dict[str, ThreadRecord] = {}
        self._active_index: dict[str, str] = {}

    def reset(self) -> None:
        with self._lock:
            self._thread_counter = count(1)
            self._threads.clear()
            self._active_index.clear()

    def _require(self, thread_id: str) -> ThreadRecord:
        thread = self._threads.get(thread_id)
        if thread is None or thread.is_deleted:
            raise ThreadNotFoundError(f"message thread not found: {thread_id}")
        return thread

    def find_active_thread(self, user_a: str, user_b: str, property_id: str | None = None) -> ThreadRecord | None:
        with self._lock:
            thread_id = self._active_index.get(thread_active_key(user_a, user_b, property_id))
            thread = self._threads.get(thread_id) if thread_id is not None else None
        if thread is None or not _matches_context(thread, user_a, user_b, property_id):
            return None
        return thread

    def create_thread(
        self,
        participants: Sequence[ThreadParticipant],
        *,
        property_id: str | None = None,
        context_type: ThreadContextType = "general",
    ) -> ThreadRecord:
        first, second = _validate_participants(participants)
        key = thread_active_key(first.user_id, second.user_id, property_id)
        with self._lock:
            if key in self._active_index:
                raise ConcurrencyConflictError(key)
            now = _now_utc()
            created = ThreadRecord(
                thread_id=f"thread_{next(self._thread_counter):06d}",
                participants=(
                    ThreadParticipant(user_id=first.user_id, role=first.role),
                    ThreadParticipant(user_id=second.user_id, role=second.role),
                ),
                property_id=property_id,
                context_type=context_type,
                status="active",
                last_message=None,
                message_count=0,
                is_deleted=False,
                deleted_at=None,
                deleted_by=None,
                created_at=now,
                updated_at=now,
            )
            self._threads[created.thread_id] = created
            self._active_index[key] = created.thread_id
            return created

    def get_thread(self, thread_id: str) -> ThreadRecord:
        with self._lock:
            return self._require(thread_id)

    def record_incoming_message(
        self,
        thread_id: str,
        *,
        sender_id: str,
        preview: str,
        sent_at: datetime,
        sequence: int,
        message_type: MessageType = "text",
    ) -> ThreadRecord:
        with self._lock:
            thread = self._require(thread_id)
            participants = tuple(
                participant
                if participant.user_id == sender_id
                else replace(participant, unread_count=participant.unread_count + 1)
                for participant in thread.participants
            )
            last_message = thread.last_message
            updated_at = thread.updated_at
            if last_message is None or sequence > last_message.sequence:
                last_message = LastMessageSnapshot(
                    content=preview,
                    sender_id=sender_id,
                    sent_at=sent_at,
                    message_type=message_type,
                    sequence=sequence,
                )
                updated_at = max(updated_at, sent_at)
            updated = replace(
                thread,
                participants=participants,
                last_message=last_message,
                message_count=thread.message_count + 1,
                updated_at=updated_at,
            )
            self._threads[thread_id] = updated
            return updated

    def mark_read(self, thread_id: str, user_id: str) -> ThreadRecord:
        with self._lock:
            thread = self._require(thread_id)
            if not thread.is_participant(user_id):
                raise ForbiddenError("Not authorized for this thread")
            now = _now_utc()
            participants = tuple(
                replace(participant, unread_count=0, last_read_at=now)
                if participant.user_id == user_id
                else participant
                for participant in thread.participants
            )
            updated = replace(thread, participants=participants)
            self._threads[thread_id] = updated
            return updated

    def list_for_user(self, user_id: str, *, offset: int, limit: int) -> tuple[list[ThreadRecord], int]:
        with self._lock:
            matching = [
                thread
                for thread in self._threads.values()
                if thread.status == "active" and not thread.is_deleted and thread.is_participant(user_id)
            ]
        ordered = sorted(matching, key=lambda value: (value.updated_at, value.thread_id), reverse=True)
        return ordered[offset : offset + limit], len(ordered)

    def set_status(self, thread_id: str, status: ThreadStatus) -> ThreadRecord:
        with self._lock:
            thread = self._require(thread_id)
            first, second = thread.participant_ids
            key = thread_active_key(first, second, thread.property_id)
            if status == "active":
                owner = self._active_index.get(key)
                if owner is not None and owner != thread_id:
                    raise ConcurrencyConflictError(key)
                self._active_index[key] = thread_id
            elif self._active_index.get(key) == thread_id:
                del self._active_index[key]
            updated = replace(thread, status=status, updated_at=_now_utc())
            self._threads[thread_id] = updated
            return updated

    def soft_delete(self, thread_id: str, *, actor_id: str) -> ThreadRecord:
        with self._lock:
            thread = self._require(thread_id)
            first, second = thread.participant_ids
            key = thread_active_key(first, second, thread.property_id)
            if self._active_index.get(key) == thread_id:
                del self._active_index[key]
            now = _now_utc()
            updated = replace(
                thread,
                status="archived",
                is_deleted=True,
                deleted_at=now,
                deleted_by=actor_id,
                updated_at=now,
            )
            self._threads[thread_id] = updated
            return updated


class MessagingBase(DeclarativeBase):
    pass


class _ThreadRow(MessagingBase):
    __tablename__ = "message_threads"

    thread_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    pair_key: Mapped[str] = mapped_column(String(300), nullable=False, index=True)
    property_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    context_type: Mapped[str] = mapped_column(String(16), nullable=False, default="general")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", index=True)
    # Set only while the thread is active and not deleted; NULLs never collide.
    active_key: Mapped[str | None] = mapped_column(String(448), nullable=True, unique=True)
    last_message_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_message_sender_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_message_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_message_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    last_message_sequence: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class _ThreadParticipantRow(MessagingBase):
    __tablename__ = "thread_participants"
    __table_args__ = (UniqueConstraint("thread_id", "user_id", name="uq_thread_participants_thread_user"),)

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    thread_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("message_threads.thread_id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SqlAlchemyThreadRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for MESSAGING_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            MessagingBase.metadata.create_all(self._engine)

    def _session(self) -> Session:
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ThreadParticipantRow).delete()
                session.query(_ThreadRow).delete()

    def find_active_thread(self, user_a: str, user_b: str, property_id: str | None = None) -> ThreadRecord | None:
        key = thread_active_key(user_a, user_b, property_id)
        with self._session() as session:
            row = session.scalar(select(_ThreadRow).where(_ThreadRow.active_key == key))
            if row is None:
                return None
            thread = self._thread_record(row, self._participant_rows(session, [row.thread_id])[row.thread_id])
        if not _matches_context(thread, user_a, user_b, property_id):
            return None
        return thread

    def create_thread(
        self,
        participants: Sequence[ThreadParticipant],
        *,
        property_id: str | None = None,
        context_type: ThreadContextType = "general",
    ) -> ThreadRecord:
        first, second = _validate_participants(participants)
        key = thread_active_key(first.user_id, second.user_id, property_id)
        now = _now_utc()
        row = _ThreadRow(
            thread_id=f"thread_{uuid4().hex}",
            pair_key=thread_pair_key(first.user_id, second.user_id),
            property_id=property_id,
            context_type=context_type,
            status="active",
            active_key=key,
            message_count=0,
            is_deleted=False,
            created_at=now,
            updated_at=now,
        )
        participant_rows = [
            _ThreadParticipantRow(
                thread_id=row.thread_id,
                user_id=participant.user_id,
                role=participant.role,
                position=position,
                unread_count=0,
            )
            for position, participant in enumerate((first, second))
        ]
        with self._session() as session:
            try:
                with session.begin():
                    session.add(row)
                    session.flush()
                    session.add_all(participant_rows)
                    session.flush()
            except IntegrityError as exc:
                raise ConcurrencyConflictError(key) from exc
            return self._thread_record(row, participant_rows)

    def get_thread(self, thread_id: str) -> ThreadRecord:
        with self._session() as session:
            return self._load_record(session, thread_id)

    def record_incoming_message(
        self,
        thread_id: str,
        *,
        sender_id: str,
        preview: str,
        sent_at: datetime,
        sequence: int,
        message_type: MessageType = "text",
    ) -> ThreadRecord:
        with self._session() as session:
            with session.begin():
                counted = session.execute(
                    update(_ThreadRow)
                    .where(_ThreadRow.thread_id == thread_id)
                    .where(_ThreadRow.is_deleted.is_(False))
                    .values(message_count=_ThreadRow.message_count + 1)
                    .execution_options(synchronize_session=False)
                )
                if counted.rowcount == 0:
                    raise ThreadNotFoundError(f"message thread not found: {thread_id}")
                session.execute(
                    update(_ThreadRow)
                    .where(_ThreadRow.thread_id == thread_id)
                    .where(
                        or_(
                            _ThreadRow.last_message_sequence.is_(None),
                            _ThreadRow.last_message_sequence < sequence,
                        )
                    )
                    .values(
                        last_message_content=preview,
                        last_message_sender_id=sender_id,
                        last_message_sent_at=sent_at,
                        last_message_type=message_type,
                        last_message_sequence=sequence,
                        updated_at=sent_at,
                    )
                    .execution_options(synchronize_session=False)
                )
                session.execute(
                    update(_ThreadParticipantRow)
                    .where(_ThreadParticipantRow.thread_id == thread_id)
                    .where(_ThreadParticipantRow.user_id != sender_id)
                    .values(unread_count=_ThreadParticipantRow.unread_count + 1)
                    .execution_options(synchronize_session=False)
                )
                return self._load_record(session, thread_id)

    def mark_read(self, thread_id: str, user_id: str) -> ThreadRecord:
        with self._session() as session:
            with session.begin():
                self._load_record(session, thread_id)
                result = session.execute(
                    update(_ThreadParticipantRow)
                    .where(_ThreadParticipantRow.thread_id == thread_id)
                    .where(_ThreadParticipantRow.user_id == user_id)
                    .values(unread_count=0, last_read_at=_now_utc())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise ForbiddenError("Not authorized for this thread")
                return self._load_record(session, thread_id)

    def list_for_user(self, user_id: str, *, offset: int, limit: int) -> tuple[list[ThreadRecord], int]:
        base = (
            select(_ThreadRow)
            .join(_ThreadParticipantRow, _ThreadParticipantRow.thread_id == _ThreadRow.thread_id)
            .where(_ThreadParticipantRow.user_id == user_id)
            .where(_ThreadRow.status == "active")
            .where(_ThreadRow.is_deleted.is_(False))
        )
        with self._session() as session:
            total = session.scalar(select(func.count()).select_from(base.subquery())) or 0
            rows = session.scalars(
                base.order_by(_ThreadRow.updated_at.desc(), _ThreadRow.thread_id.desc()).offset(offset).limit(limit)
            ).all()
            participants = self._participant_rows(session, [row.thread_id for row in rows])
            return [self._thread_record(row, participants[row.thread_id]) for row in rows], int(total)

    def set_status(self, thread_id: str, status: ThreadStatus) -> ThreadRecord:
        with self._session() as session:
            try:
                with session.begin():
                    current = self._load_record(session, thread_id)
                    first, second = current.participant_ids
                    key = thread_active_key(first, second, current.property_id)
                    session.execute(
                        update(_ThreadRow)
                        .where(_ThreadRow.thread_id == thread_id)
                        .values(
                            status=status,
                            active_key=key if status == "active" else None,
                            updated_at=_now_utc(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    return self._load_record(session, thread_id)
            except IntegrityError as exc:
                raise ConcurrencyConflictError(key) from exc

    def soft_delete(self, thread_id: str, *, actor_id: str) -> ThreadRecord:
        with self._session() as session:
            with session.begin():
                self._load_record(session, thread_id)
                now = _now_utc()
                session.execute(
                    update(_ThreadRow)
                    .where(_ThreadRow.thread_id == thread_id)
                    .values(
                        status="archived",
                        active_key=None,
                        is_deleted=True,
                        deleted_at=now,
                        deleted_by=actor_id,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                row = session.scalar(
                    select(_ThreadRow)
                    .where(_ThreadRow.thread_id == thread_id)
                    .execution_options(populate_existing=True)
                )
                return self._thread_record(row, self._participant_rows(session, [thread_id])[thread_id])

    def _load_record(self, session: Session, thread_id: str) -> ThreadRecord:
        row = session.scalar(
            select(_ThreadRow)
            .where(_ThreadRow.thread_id == thread_id)
            .execution_options(populate_existing=True)
        )
        if row is None or row.is_deleted:
            raise ThreadNotFoundError(f"message thread not found: {thread_id}")
        return self._thread_record(row, self._participant_rows(session, [thread_id])[thread_id])

    @staticmethod
    def _participant_rows(session: Session, thread_ids: list[str]) -> dict[str, list[_ThreadParticipantRow]]:
        grouped: dict[str, list[_ThreadParticipantRow]] = {thread_id: [] for thread_id in thread_ids}
        if not thread_ids:
            return grouped
        rows = session.scalars(
            select(_ThreadParticipantRow)
            .where(_ThreadParticipantRow.thread_id.in_(thread_ids))
            .order_by(_ThreadParticipantRow.thread_id, _ThreadParticipantRow.position)
            .execution_options(populate_existing=True)
        ).all()
        for row in rows:
            grouped[row.thread_id].append(row)
        return grouped

    @staticmethod
    def _thread_record(row: _ThreadRow, participant_rows: list[_ThreadParticipantRow]) -> ThreadRecord:
        last_message = None
        if row.last_message_sequence is not None and row.last_message_sender_id is not None:
            last_message = LastMessageSnapshot(
                content=row.last_message_content or "",
                sender_id=row.last_message_sender_id,
                sent_at=_coerce_utc(row.last_message_sent_at) or _coerce_utc(row.updated_at),  # type: ignore[arg-type]
                message_type=row.last_message_type or "text",  # type: ignore[arg-type]
                sequence=row.last_message_sequence,
            )
        return ThreadRecord(
            thread_id=row.thread_id,
            participants=tuple(
                ThreadParticipant(
                    user_id=participant.user_id,
                    role=participant.role,  # type: ignore[arg-type]
                    unread_count=participant.unread_count,
                    last_read_at=_coerce_utc(participant.last_read_at),
                )
                for participant in sorted(participant_rows, key=lambda value: value.position)
            ),
            property_id=row.property_id,
            context_type=row.context_type,  # type: ignore[arg-type]
            status=row.status,  # type: ignore[arg-type]
            last_message=last_message,
            message_count=row.message_count,
            is_deleted=row.is_deleted,
            deleted_at=_coerce_utc(row.deleted_at),
            deleted_by=row.deleted_by,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
            updated_at=_coerce_utc(row.updated_at),  # type: ignore[arg-type]
        )


def create_thread_repository(*, backend: str, database_url: str) -> ThreadRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyThreadRepository(database_url)
    if normalized == "inmemory":
        return InMemoryThreadRepository()
    raise RuntimeError(f"unsupported MESSAGING_STORE_BACKEND: {backend}")
