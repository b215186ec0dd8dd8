from __future__ import annotations

import logging
import math

from .config import Settings
from .directory import PropertyCatalog, UserDirectory, UserProfile
from .errors import (
    ForbiddenError,
    PropertyNotFoundError,
    RoutingBlockedError,
    ThreadNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from .messages import MessageRecord, MessageRepository, clean_message_text
from .models import (
    LastMessageItem,
    MarkReadResponse,
    MessageDeleteResponse,
    MessageItem,
    PaginationMeta,
    SendMessageRequest,
    ThreadItem,
    ThreadListResponse,
    ThreadParticipantItem,
)
from .notifier import RealtimeDispatcher
from .routing_policy import evaluate_role_pair, evaluate_thread_roles
from .threads import ThreadParticipant, ThreadRecord, ThreadRepository, find_or_create_thread

logger = logging.getLogger(__name__)


class ConversationService:
    def __init__(
        self,
        *,
        thread_repository: ThreadRepository,
        message_repository: MessageRepository,
        directory: UserDirectory,
        properties: PropertyCatalog,
        dispatcher: RealtimeDispatcher,
        settings: Settings,
    ) -> None:
        self._threads = thread_repository
        self._messages = message_repository
        self._directory = directory
        self._properties = properties
        self._dispatcher = dispatcher
        self._settings = settings

    def reset(self) -> None:
        self._messages.reset()
        self._threads.reset()

    def send_message(self, sender_id: str, request: SendMessageRequest) -> MessageItem:
        text = clean_message_text(request.text, max_length=self._settings.message_max_length)
        sender = self._require_user(sender_id)

        if request.thread_id:
            thread = self._participant_thread(request.thread_id, sender_id)
            decision = evaluate_thread_roles(thread.roles)
            if not decision.allowed:
                raise RoutingBlockedError(decision.message, reason=decision.reason)
            if thread.status != "active":
                raise ForbiddenError(f"Thread is {thread.status} and does not accept new messages")
        elif request.recipient_id:
            thread, _ = self._resolve_thread(sender, request.recipient_id, request.property_id)
        else:
            raise ValidationError("Either threadId or recipientId is required")

        receiver_id = self._receiver_for(thread, sender_id, request.recipient_id)
        message = self._messages.append(thread, sender_id=sender_id, text=text, receiver_id=receiver_id)
        try:
            thread = self._threads.record_incoming_message(
                thread.thread_id,
                sender_id=sender_id,
                preview=message.content,
                sent_at=message.created_at,
                sequence=message.sequence,
                message_type=message.message_type,
            )
        except Exception:
            logger.warning("thread cache update failed for %s; discarding %s", thread.thread_id, message.message_id)
            self._messages.discard(message.message_id)
            raise

        item = self._to_message_item(message, thread=thread, names={sender_id: sender.name}, viewer_id=sender_id)
        self._dispatcher.dispatch(thread.participant_ids, item.model_dump(mode="json", by_alias=True))
        return item

    def ensure_thread(self, user_id: str, other_user_id: str, property_id: str | None = None) -> ThreadItem:
        user = self._require_user(user_id)
        thread, _ = self._resolve_thread(user, other_user_id, property_id)
        return self._to_thread_item(thread, viewer_id=user_id)

    def get_conversation(self, thread_id: str, requester_id: str) -> list[MessageItem]:
        thread = self._participant_thread(thread_id, requester_id)
        messages = self._messages.list_by_thread(thread.thread_id)
        names = self._display_names({message.sender_id for message in messages})
        return [self._to_message_item(value, thread=thread, names=names, viewer_id=requester_id) for value in messages]

    def mark_thread_read(self, thread_id: str, requester_id: str) -> MarkReadResponse:
        thread = self._participant_thread(thread_id, requester_id)
        # Receipts stop at the newest message the cleared counter had seen; later arrivals stay unread.
        cleared = self._threads.mark_read(thread.thread_id, requester_id)
        seen = cleared.last_message.sequence if cleared.last_message is not None else 0
        marked = self._messages.mark_thread_read(thread.thread_id, requester_id, up_to_sequence=seen)
        return MarkReadResponse(thread_id=thread.thread_id, marked_count=marked)

    def list_threads(self, user_id: str, *, page: int = 1, limit: int = 20) -> ThreadListResponse:
        page = max(1, page)
        limit = min(max(1, limit), self._settings.thread_page_limit_max)
        threads, total = self._threads.list_for_user(user_id, offset=(page - 1) * limit, limit=limit)
        total_pages = math.ceil(total / limit) if total else 0
        return ThreadListResponse(
            items=[self._to_thread_item(value, viewer_id=user_id) for value in threads],
            meta=PaginationMeta(
                page=page,
                limit=limit,
                total=total,
                total_pages=total_pages,
                has_next_page=page < total_pages,
                has_prev_page=page > 1,
            ),
        )

    def delete_message(self, message_id: str, actor_id: str) -> MessageDeleteResponse:
        actor = self._require_user(actor_id)
        message = self._messages.get_message(message_id)
        is_admin = actor.role == "admin"
        if not is_admin:
            self._participant_thread(message.thread_id, actor_id)
        deleted = self._messages.soft_delete(message_id, actor_id=actor_id, actor_is_admin=is_admin)
        logger.info("message %s deleted by %s", message_id, actor_id)
        return MessageDeleteResponse(message_id=deleted.message_id, deleted=deleted.is_deleted)

    def _require_user(self, user_id: str) -> UserProfile:
        profile = self._directory.get_user(user_id)
        if profile is None:
            raise UserNotFoundError(f"User not found: {user_id}")
        return profile

    def _participant_thread(self, thread_id: str, user_id: str) -> ThreadRecord:
        try:
            thread = self._threads.get_thread(thread_id)
        except ThreadNotFoundError:
            if self._settings.conceal_missing_threads:
                raise ForbiddenError("Not authorized for this thread") from None
            raise
        if not thread.is_participant(user_id):
            raise ForbiddenError("Not authorized for this thread")
        return thread

    def _resolve_thread(
        self,
        user: UserProfile,
        other_user_id: str,
        property_id: str | None,
    ) -> tuple[ThreadRecord, bool]:
        if other_user_id == user.user_id:
            raise ValidationError("You cannot message yourself")
        other = self._require_user(other_user_id)
        if property_id and not self._properties.exists(property_id):
            raise PropertyNotFoundError(f"Property not found: {property_id}")

        decision = evaluate_role_pair(user.role, other.role)
        if not decision.allowed:
            raise RoutingBlockedError(decision.message, reason=decision.reason)

        return find_or_create_thread(
            self._threads,
            [
                ThreadParticipant(user_id=user.user_id, role=user.role),
                ThreadParticipant(user_id=other.user_id, role=other.role),
            ],
            property_id=property_id,
            context_type="general",
        )

    @staticmethod
    def _receiver_for(thread: ThreadRecord, sender_id: str, recipient_id: str | None) -> str | None:
        other = thread.other_participant_id(sender_id)
        if recipient_id is not None and recipient_id != other:
            raise ValidationError("Recipient is not the other participant of this thread")
        return other

    def _display_names(self, user_ids: set[str]) -> dict[str, str]:
        names: dict[str, str] = {}
        for user_id in user_ids:
            profile = self._directory.get_user(user_id)
            names[user_id] = profile.name if profile is not None else user_id
        return names

    def _to_thread_item(self, record: ThreadRecord, *, viewer_id: str) -> ThreadItem:
        names = self._display_names(set(record.participant_ids))
        last_message = None
        if record.last_message is not None:
            last_message = LastMessageItem(
                sender_id=record.last_message.sender_id,
                content=record.last_message.content,
                sent_at=record.last_message.sent_at,
            )
        return ThreadItem(
            id=record.thread_id,
            participants=[
                ThreadParticipantItem(user_id=value.user_id, name=names[value.user_id], role=value.role)
                for value in record.participants
            ],
            property_id=record.property_id,
            property_title=self._properties.get_title(record.property_id) if record.property_id else None,
            context_type=record.context_type,
            status=record.status,
            last_message=last_message,
            message_count=record.message_count,
            unread_count=record.unread_count_for(viewer_id),
            updated_at=record.updated_at,
        )

    @staticmethod
    def _to_message_item(
        record: MessageRecord,
        *,
        thread: ThreadRecord,
        names: dict[str, str],
        viewer_id: str,
    ) -> MessageItem:
        participant = thread.participant(record.sender_id)
        return MessageItem(
            id=record.message_id,
            conversation_id=record.thread_id,
            sender_id=record.sender_id,
            receiver_id=record.receiver_id,
            sender_name=names.get(record.sender_id, record.sender_id),
            sender_role=participant.role if participant is not None else "admin",
            message_text=record.content,
            message_type=record.message_type,
            timestamp=record.created_at,
            read=record.is_read_by(viewer_id),
        )
