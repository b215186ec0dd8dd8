from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterator

import pytest

from marketplace_messaging.config import Settings
from marketplace_messaging.conversations import ConversationService
from marketplace_messaging.directory import InMemoryDirectory
from marketplace_messaging.errors import (
    ForbiddenError,
    PropertyNotFoundError,
    RoutingBlockedError,
    ThreadNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from marketplace_messaging.messages import MessageRepository, create_message_repository
from marketplace_messaging.models import SendMessageRequest
from marketplace_messaging.notifier import RealtimeDispatcher, StubRealtimeNotifier
from marketplace_messaging.threads import InMemoryThreadRepository, ThreadRepository, create_thread_repository

USERS = {
    "seller-1": ("Seller One", "seller"),
    "seller-2": ("Seller Two", "seller"),
    "agent-1": ("Agent One", "agent"),
    "agent-2": ("Agent Two", "agent"),
    "buyer-1": ("Buyer One", "buyer"),
    "buyer-2": ("Buyer Two", "buyer"),
    "admin-1": ("Admin One", "admin"),
    "admin-2": ("Admin Two", "admin"),
}


@dataclass
class _Harness:
    service: ConversationService
    threads: ThreadRepository
    messages: MessageRepository
    notifier: StubRealtimeNotifier
    dispatcher: RealtimeDispatcher


def _directory() -> InMemoryDirectory:
    directory = InMemoryDirectory()
    for user_id, (name, role) in USERS.items():
        directory.upsert_user(user_id, name=name, role=role)
    directory.upsert_property("property-1", title="3 bed family home")
    directory.upsert_property("property-2", title="Harbour view apartment")
    directory.upsert_property("property-3", title="Corner lot")
    return directory


def _build(
    *,
    settings: Settings | None = None,
    notifier: StubRealtimeNotifier | None = None,
    threads: ThreadRepository | None = None,
    directory: InMemoryDirectory | None = None,
) -> _Harness:
    settings = settings or Settings()
    notifier = notifier or StubRealtimeNotifier()
    threads = threads or create_thread_repository(
        backend=settings.messaging_store_backend,
        database_url=settings.database_url,
    )
    messages = create_message_repository(
        backend=settings.messaging_store_backend,
        database_url=settings.database_url,
        max_length=settings.message_max_length,
    )
    directory = directory or _directory()
    dispatcher = RealtimeDispatcher(notifier, event_names=settings.realtime_event_names, max_workers=2)
    service = ConversationService(
        thread_repository=threads,
        message_repository=messages,
        directory=directory,
        properties=directory,
        dispatcher=dispatcher,
        settings=settings,
    )
    return _Harness(service=service, threads=threads, messages=messages, notifier=notifier, dispatcher=dispatcher)


@pytest.fixture
def harness() -> Iterator[_Harness]:
    built = _build()
    yield built
    built.dispatcher.shutdown()


def _send(harness: _Harness, sender_id: str, **fields: str):
    return harness.service.send_message(sender_id, SendMessageRequest(**fields))


def test_seller_to_agent_creates_thread_and_notifies_both(harness: _Harness) -> None:
    sent = _send(harness, "seller-1", recipient_id="agent-1", property_id="property-1", text="Hello")
    harness.dispatcher.drain()

    assert sent.conversation_id
    assert sent.message_text == "Hello"
    assert sent.read is False
    assert sent.sender_id == "seller-1"
    assert sent.receiver_id == "agent-1"
    assert sent.sender_name == "Seller One"
    assert sent.sender_role == "seller"

    agent_view = harness.service.list_threads("agent-1").items[0]
    seller_view = harness.service.list_threads("seller-1").items[0]
    assert agent_view.id == sent.conversation_id
    assert agent_view.unread_count == 1
    assert seller_view.unread_count == 0
    assert agent_view.property_title == "3 bed family home"
    assert agent_view.message_count == 1
    assert agent_view.last_message is not None
    assert agent_view.last_message.content == "Hello"

    delivered = {(event.channel, event.event_name) for event in harness.notifier.events}
    assert delivered == {
        ("seller-1", "receive_message"),
        ("seller-1", "receive-message"),
        ("agent-1", "receive_message"),
        ("agent-1", "receive-message"),
    }
    payload = harness.notifier.events[0].payload
    assert payload["conversationId"] == sent.conversation_id
    assert payload["messageText"] == "Hello"


def test_buyer_to_seller_is_blocked_without_side_effects(harness: _Harness) -> None:
    with pytest.raises(RoutingBlockedError) as exc_info:
        _send(harness, "buyer-1", recipient_id="seller-1", text="Hi")
    harness.dispatcher.drain()

    assert exc_info.value.reason == "ROUTING_BLOCKED"
    assert harness.service.list_threads("buyer-1").meta.total == 0
    assert harness.service.list_threads("seller-1").meta.total == 0
    assert harness.notifier.events == []


def test_mark_read_clears_reader_counter_and_flags_messages(harness: _Harness) -> None:
    sent = _send(harness, "seller-1", recipient_id="agent-1", property_id="property-1", text="Hello")

    result = harness.service.mark_thread_read(sent.conversation_id, "agent-1")

    assert result.thread_id == sent.conversation_id
    assert result.marked_count == 1
    assert harness.service.list_threads("agent-1").items[0].unread_count == 0
    assert harness.service.list_threads("seller-1").items[0].unread_count == 0
    assert [value.read for value in harness.service.get_conversation(sent.conversation_id, "agent-1")] == [True]
    assert [value.read for value in harness.service.get_conversation(sent.conversation_id, "seller-1")] == [False]


def test_mark_read_leaves_other_participant_counter(harness: _Harness) -> None:
    first = _send(harness, "seller-1", recipient_id="agent-1", text="one")
    _send(harness, "agent-1", thread_id=first.conversation_id, text="two")
    _send(harness, "agent-1", thread_id=first.conversation_id, text="three")

    harness.service.mark_thread_read(first.conversation_id, "agent-1")

    assert harness.service.list_threads("agent-1").items[0].unread_count == 0
    assert harness.service.list_threads("seller-1").items[0].unread_count == 2


def test_message_arriving_during_mark_read_stays_unread_and_counted() -> None:
    class _InterleavingThreadRepository(InMemoryThreadRepository):
        after_mark_read: Callable[[], None] | None = None

        def mark_read(self, thread_id: str, user_id: str):  # type: ignore[override]
            cleared = super().mark_read(thread_id, user_id)
            if self.after_mark_read is not None:
                callback, self.after_mark_read = self.after_mark_read, None
                callback()
            return cleared

    threads = _InterleavingThreadRepository()
    built = _build(threads=threads)
    try:
        first = _send(built, "seller-1", recipient_id="agent-1", text="one")
        threads.after_mark_read = lambda: _send(built, "seller-1", thread_id=first.conversation_id, text="two")

        result = built.service.mark_thread_read(first.conversation_id, "agent-1")

        conversation = built.service.get_conversation(first.conversation_id, "agent-1")
        listed = built.service.list_threads("agent-1").items[0]
    finally:
        built.dispatcher.shutdown()

    assert result.marked_count == 1
    assert [(value.message_text, value.read) for value in conversation] == [("one", True), ("two", False)]
    assert listed.unread_count == 1
    assert listed.message_count == 2


def test_get_conversation_does_not_change_read_state(harness: _Harness) -> None:
    sent = _send(harness, "seller-1", recipient_id="agent-1", text="Hello")

    harness.service.get_conversation(sent.conversation_id, "agent-1")

    assert harness.service.list_threads("agent-1").items[0].unread_count == 1
    assert harness.service.get_conversation(sent.conversation_id, "agent-1")[0].read is False


@pytest.mark.parametrize(
    ("user_id", "other_id"),
    [
        ("seller-1", "agent-1"),
        ("buyer-1", "agent-1"),
        ("admin-1", "buyer-1"),
        ("admin-1", "seller-1"),
        ("agent-1", "admin-1"),
    ],
)
def test_ensure_thread_is_idempotent_for_permitted_pairs(harness: _Harness, user_id: str, other_id: str) -> None:
    first = harness.service.ensure_thread(user_id, other_id, "property-1")
    second = harness.service.ensure_thread(other_id, user_id, "property-1")

    assert first.id == second.id
    assert {value.user_id for value in first.participants} == {user_id, other_id}
    assert first.unread_count == 0
    assert first.last_message is None


@pytest.mark.parametrize(
    ("user_id", "other_id", "reason"),
    [
        ("buyer-1", "seller-1", "ROUTING_BLOCKED"),
        ("seller-1", "buyer-1", "ROUTING_BLOCKED"),
        ("agent-1", "agent-2", "INVALID_PAIR"),
        ("admin-1", "admin-2", "INVALID_PAIR"),
        ("buyer-1", "buyer-2", "INVALID_PAIR"),
        ("seller-1", "seller-2", "INVALID_PAIR"),
    ],
)
def test_disallowed_pairs_never_create_threads(harness: _Harness, user_id: str, other_id: str, reason: str) -> None:
    with pytest.raises(RoutingBlockedError) as ensure_error:
        harness.service.ensure_thread(user_id, other_id)
    with pytest.raises(RoutingBlockedError):
        _send(harness, user_id, recipient_id=other_id, text="hello")

    assert ensure_error.value.reason == reason
    assert harness.service.list_threads(user_id).meta.total == 0
    assert harness.service.list_threads(other_id).meta.total == 0


def test_messages_are_returned_in_append_order(harness: _Harness) -> None:
    first = _send(harness, "seller-1", recipient_id="agent-1", text="message 0")
    for index in range(1, 10):
        sender = "agent-1" if index % 2 else "seller-1"
        _send(harness, sender, thread_id=first.conversation_id, text=f"message {index}")

    conversation = harness.service.get_conversation(first.conversation_id, "seller-1")

    assert [value.message_text for value in conversation] == [f"message {index}" for index in range(10)]
    thread = harness.service.list_threads("seller-1").items[0]
    assert thread.message_count == 10
    assert thread.last_message is not None
    assert thread.last_message.content == "message 9"


def test_non_participant_is_forbidden_whether_or_not_thread_exists(harness: _Harness) -> None:
    sent = _send(harness, "seller-1", recipient_id="agent-1", text="Hello")

    with pytest.raises(ForbiddenError):
        harness.service.get_conversation(sent.conversation_id, "buyer-1")
    with pytest.raises(ForbiddenError):
        _send(harness, "buyer-1", thread_id=sent.conversation_id, text="let me in")
    with pytest.raises(ForbiddenError):
        harness.service.mark_thread_read(sent.conversation_id, "buyer-1")
    with pytest.raises(ForbiddenError):
        harness.service.get_conversation("thread_missing", "buyer-1")
    with pytest.raises(ForbiddenError):
        _send(harness, "buyer-1", thread_id="thread_missing", text="hello")


def test_missing_thread_is_reported_when_concealment_is_off() -> None:
    built = _build(settings=Settings(conceal_missing_threads=False))
    try:
        with pytest.raises(ThreadNotFoundError):
            built.service.get_conversation("thread_missing", "seller-1")
        with pytest.raises(ThreadNotFoundError):
            built.service.send_message("seller-1", SendMessageRequest(thread_id="thread_missing", text="hi"))
    finally:
        built.dispatcher.shutdown()


def test_send_requires_text_and_a_target(harness: _Harness) -> None:
    with pytest.raises(ValidationError):
        _send(harness, "seller-1", text="hello")
    with pytest.raises(ValidationError):
        _send(harness, "seller-1", recipient_id="agent-1", text="   ")
    with pytest.raises(ValidationError):
        _send(harness, "seller-1", recipient_id="agent-1", text="x" * 2001)
    with pytest.raises(ValidationError):
        _send(harness, "seller-1", recipient_id="seller-1", text="note to self")

    assert harness.service.list_threads("seller-1").meta.total == 0


def test_unknown_recipient_and_property_are_not_found(harness: _Harness) -> None:
    with pytest.raises(UserNotFoundError):
        _send(harness, "seller-1", recipient_id="ghost", text="hello")
    with pytest.raises(PropertyNotFoundError):
        _send(harness, "seller-1", recipient_id="agent-1", property_id="property-404", text="hello")
    with pytest.raises(UserNotFoundError):
        harness.service.ensure_thread("ghost", "agent-1")


def test_explicit_recipient_must_be_the_other_participant(harness: _Harness) -> None:
    first = _send(harness, "seller-1", recipient_id="agent-1", text="Hello")

    reply = _send(harness, "agent-1", thread_id=first.conversation_id, recipient_id="seller-1", text="Hi back")
    assert reply.receiver_id == "seller-1"

    with pytest.raises(ValidationError):
        _send(harness, "agent-1", thread_id=first.conversation_id, recipient_id="buyer-1", text="wrong")


def test_thread_id_reply_derives_receiver(harness: _Harness) -> None:
    first = _send(harness, "seller-1", recipient_id="agent-1", text="Hello")

    reply = _send(harness, "agent-1", thread_id=first.conversation_id, text="Hi back")

    assert reply.conversation_id == first.conversation_id
    assert reply.receiver_id == "seller-1"
    assert reply.sender_role == "agent"


def test_archived_thread_rejects_new_messages(harness: _Harness) -> None:
    first = _send(harness, "seller-1", recipient_id="agent-1", text="Hello")
    harness.threads.set_status(first.conversation_id, "archived")

    with pytest.raises(ForbiddenError):
        _send(harness, "seller-1", thread_id=first.conversation_id, text="anyone?")

    fresh = _send(harness, "seller-1", recipient_id="agent-1", text="new thread")
    assert fresh.conversation_id != first.conversation_id


def test_notifier_failure_never_fails_send() -> None:
    built = _build(notifier=StubRealtimeNotifier(raise_on_emit=True))
    try:
        sent = built.service.send_message(
            "seller-1",
            SendMessageRequest(recipient_id="agent-1", text="Hello"),
        )
        built.dispatcher.drain()
    finally:
        built.dispatcher.shutdown()

    assert sent.message_text == "Hello"
    assert len(built.messages.list_by_thread(sent.conversation_id)) == 1


def test_message_is_discarded_when_thread_cache_update_fails() -> None:
    class _FailingThreadRepository(InMemoryThreadRepository):
        def record_incoming_message(self, thread_id: str, **kwargs):  # type: ignore[override]
            raise RuntimeError("cache write failed")

    threads = _FailingThreadRepository()
    built = _build(threads=threads)
    try:
        with pytest.raises(RuntimeError, match="cache write failed"):
            built.service.send_message("seller-1", SendMessageRequest(recipient_id="agent-1", text="Hello"))
        built.dispatcher.drain()
    finally:
        built.dispatcher.shutdown()

    thread = threads.find_active_thread("seller-1", "agent-1")
    assert thread is not None
    assert built.messages.list_by_thread(thread.thread_id, include_deleted=True) == []
    assert built.notifier.events == []


def test_list_threads_paginates_with_meta(harness: _Harness) -> None:
    for property_id in ("property-1", "property-2", "property-3"):
        _send(harness, "seller-1", recipient_id="agent-1", property_id=property_id, text=f"about {property_id}")

    first_page = harness.service.list_threads("agent-1", page=1, limit=2)
    last_page = harness.service.list_threads("agent-1", page=2, limit=2)

    assert len(first_page.items) == 2
    assert first_page.meta.total == 3
    assert first_page.meta.total_pages == 2
    assert first_page.meta.has_next_page is True
    assert first_page.meta.has_prev_page is False
    assert len(last_page.items) == 1
    assert last_page.meta.has_next_page is False
    assert last_page.meta.has_prev_page is True
    assert first_page.items[0].property_id == "property-3"


def test_list_threads_clamps_limit_to_configured_maximum() -> None:
    built = _build(settings=Settings(thread_page_limit_max=5))
    try:
        meta = built.service.list_threads("agent-1", page=0, limit=500).meta
    finally:
        built.dispatcher.shutdown()

    assert meta.limit == 5
    assert meta.page == 1
    assert meta.total == 0
    assert meta.total_pages == 0


def test_delete_message_by_sender_other_participant_and_admin(harness: _Harness) -> None:
    first = _send(harness, "seller-1", recipient_id="agent-1", text="keep")
    second = _send(harness, "seller-1", thread_id=first.conversation_id, text="remove me")
    third = _send(harness, "seller-1", thread_id=first.conversation_id, text="admin removes me")

    with pytest.raises(ForbiddenError):
        harness.service.delete_message(second.id, "agent-1")
    with pytest.raises(ForbiddenError):
        harness.service.delete_message(second.id, "buyer-1")

    assert harness.service.delete_message(second.id, "seller-1").deleted is True
    assert harness.service.delete_message(third.id, "admin-1").deleted is True

    remaining = harness.service.get_conversation(first.conversation_id, "agent-1")
    assert [value.message_text for value in remaining] == ["keep"]
    assert harness.service.list_threads("agent-1").items[0].message_count == 3


@pytest.mark.parametrize("backend", ["inmemory", "sqlite"])
def test_concurrent_ensure_thread_resolves_to_single_thread(backend: str, tmp_path) -> None:
    if backend == "sqlite":
        settings = Settings(
            messaging_store_backend="postgres",
            database_url=f"sqlite:///{tmp_path / 'race.db'}",
        )
    else:
        settings = Settings()
    built = _build(settings=settings)

    def _ensure(index: int) -> str:
        if index % 2:
            return built.service.ensure_thread("seller-1", "agent-1", "property-1").id
        return built.service.ensure_thread("agent-1", "seller-1", "property-1").id

    try:
        with ThreadPoolExecutor(max_workers=8) as pool:
            thread_ids = set(pool.map(_ensure, range(16)))
    finally:
        built.dispatcher.shutdown()

    assert len(thread_ids) == 1
    assert built.service.list_threads("seller-1").meta.total == 1


def test_ensure_thread_never_returns_another_pairs_thread() -> None:
    directory = _directory()
    directory.upsert_user("a:b", name="Agent AB", role="agent")
    directory.upsert_user("c", name="Seller C", role="seller")
    directory.upsert_user("a", name="Seller A", role="seller")
    directory.upsert_user("b:c", name="Agent BC", role="agent")
    built = _build(directory=directory)
    try:
        _send(built, "c", recipient_id="a:b", text="private to a:b")
        item = built.service.ensure_thread("a", "b:c")
    finally:
        built.dispatcher.shutdown()

    assert {participant.user_id for participant in item.participants} == {"a", "b:c"}
    assert item.last_message is None
    assert item.message_count == 0
