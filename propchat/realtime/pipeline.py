from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from propchat.core.logging import get_logger
from propchat.db.enums import MessageType, UserType
from propchat.db.models import ConversationMessage, PropertyConversation
from propchat.realtime.badges import BadgeReconciler, BadgeReport
from propchat.realtime.conversations import (
    ConversationAccessError,
    ConversationResolver,
    LookupStatus,
    effective_sender_id,
)
from propchat.realtime.events import MAX_CONTENT_LENGTH, MessageView, ServerEvent
from propchat.realtime.hub import (
    ConnectionHub,
    RealtimeConnection,
    agent_group,
    client_group,
    conversation_group,
    property_group,
)
from propchat.realtime.identity import Identity
from propchat.realtime.store import DataStore

logger = get_logger("propchat.realtime.pipeline")


class MessageValidationError(ValueError):
    """Message content or type is not acceptable."""


class MessageNotFoundError(LookupError):
    """No message with the requested id exists in the conversation."""


class ConversationUnavailableError(Exception):
    """No conversation could be resolved for the requested property."""

    def __init__(self, status: LookupStatus) -> None:
        self.status = status
        super().__init__(f"conversation unavailable: {status.value}")


@dataclass(frozen=True, slots=True)
class SendResult:
    message: ConversationMessage
    conversation: PropertyConversation
    badges: BadgeReport


@dataclass(frozen=True, slots=True)
class ReadResult:
    conversation: PropertyConversation
    marked: int
    badges: BadgeReport


def dedupe(messages: Iterable[ConversationMessage]) -> list[ConversationMessage]:
    """Chronological history with each message id kept once, at its earliest created_at."""
    ordered = sorted(messages, key=lambda message: message.created_at)
    seen: set[str] = set()
    unique: list[ConversationMessage] = []
    for message in ordered:
        if message.id in seen:
            continue
        seen.add(message.id)
        unique.append(message)
    return unique


INBOUND_MESSAGE_TYPES = frozenset({MessageType.TEXT, MessageType.IMAGE, MessageType.FILE})
NOTIFICATION_PREVIEW_LENGTH = 100


def validate_content(content: str, message_type: MessageType | str) -> tuple[str, MessageType]:
    text = content.strip() if isinstance(content, str) else ""
    if not text:
        raise MessageValidationError("Message content must not be empty")
    if len(text) > MAX_CONTENT_LENGTH:
        raise MessageValidationError(
            f"Message content exceeds {MAX_CONTENT_LENGTH} characters"
        )
    try:
        kind = MessageType(message_type)
    except ValueError as exc:
        raise MessageValidationError(f"Unsupported message type: {message_type}") from exc
    if kind not in INBOUND_MESSAGE_TYPES:
        raise MessageValidationError(f"Unsupported message type: {kind.value}")
    return text, kind


def message_view(
    message: ConversationMessage,
    *,
    property_id: str | None = None,
) -> MessageView:
    return MessageView(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        sender_type=str(message.sender_type),
        content=message.content,
        type=str(message.message_type),
        is_read=message.is_read,
        created_at=message.created_at,
        property_id=property_id,
    )


class MessagePipeline:
    def __init__(
        self,
        *,
        store: DataStore,
        hub: ConnectionHub,
        resolver: ConversationResolver,
        badges: BadgeReconciler,
        history_limit: int = 50,
    ) -> None:
        self._store = store
        self._hub = hub
        self._resolver = resolver
        self._badges = badges
        self.history_limit = history_limit

    async def history(self, conversation_id: str) -> list[ConversationMessage]:
        raw = await self._store.list_recent_messages(conversation_id, limit=self.history_limit)
        unique = dedupe(raw)
        if len(unique) != len(raw):
            logger.info(
                "realtime.pipeline.history_deduplicated",
                conversation_id=conversation_id,
                raw=len(raw),
                kept=len(unique),
            )
        return unique

    async def send_to_property(
        self,
        identity: Identity,
        property_id: str,
        content: str,
        message_type: MessageType | str = MessageType.TEXT,
    ) -> SendResult:
        text, kind = validate_content(content, message_type)
        lookup = await self._resolver.get_or_create(property_id, identity)
        if lookup.status == LookupStatus.ACCESS_DENIED:
            raise ConversationAccessError("Access denied to conversation")
        if not lookup.ok or lookup.conversation is None:
            raise ConversationUnavailableError(lookup.status)
        return await self._deliver(
            identity,
            lookup.conversation,
            text,
            kind,
            group=property_group(property_id),
        )

    async def send_to_conversation(
        self,
        identity: Identity,
        conversation_id: str,
        content: str,
        message_type: MessageType | str = MessageType.TEXT,
    ) -> SendResult:
        text, kind = validate_content(content, message_type)
        conversation = await self._resolver.get_for_access(conversation_id, identity)
        result = await self._deliver(
            identity,
            conversation,
            text,
            kind,
            group=conversation_group(conversation.id),
        )
        await self._notify_recipient(identity, conversation, text)
        return result

    async def mark_read(
        self,
        identity: Identity,
        conversation_id: str,
        *,
        origin: RealtimeConnection | None = None,
    ) -> ReadResult:
        conversation = await self._resolver.get_for_access(conversation_id, identity)
        return await self._mark_all(identity, conversation, origin=origin)

    async def mark_property_read(
        self,
        identity: Identity,
        property_id: str,
        *,
        origin: RealtimeConnection | None = None,
    ) -> ReadResult:
        """Mark a property's conversation read; never creates the conversation."""
        conversation = await self._resolver.get_for_property_access(property_id, identity)
        return await self._mark_all(identity, conversation, origin=origin)

    async def mark_message_read(
        self,
        identity: Identity,
        conversation_id: str,
        message_id: str,
        *,
        origin: RealtimeConnection | None = None,
    ) -> ReadResult:
        conversation = await self._resolver.get_for_access(conversation_id, identity)
        message = await self._store.get_message(message_id)
        if message is None or message.conversation_id != conversation.id:
            raise MessageNotFoundError(f"message {message_id} not found")
        changed = await self._store.mark_message_read(message.id, reader=identity.role)
        marked = 1 if changed else 0
        await self._announce_read(
            identity, conversation, marked, origin=origin, message_id=message.id
        )
        badges = await self._reconcile(conversation)
        logger.info(
            "realtime.pipeline.message_marked_read",
            conversation_id=conversation.id,
            message_id=message.id,
            reader=identity.role.value,
            changed=changed,
        )
        return ReadResult(conversation=conversation, marked=marked, badges=badges)

    async def _mark_all(
        self,
        identity: Identity,
        conversation: PropertyConversation,
        *,
        origin: RealtimeConnection | None,
    ) -> ReadResult:
        marked = await self._store.mark_all_read(conversation.id, reader=identity.role)
        await self._announce_read(identity, conversation, marked, origin=origin)
        badges = await self._reconcile(conversation)
        logger.info(
            "realtime.pipeline.marked_read",
            conversation_id=conversation.id,
            reader=identity.role.value,
            marked=marked,
        )
        return ReadResult(conversation=conversation, marked=marked, badges=badges)

    async def _announce_read(
        self,
        identity: Identity,
        conversation: PropertyConversation,
        marked: int,
        *,
        origin: RealtimeConnection | None,
        message_id: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "conversationId": conversation.id,
            "propertyId": conversation.property_id,
            "userId": identity.user_id,
            "userType": identity.role.value,
            "count": marked,
        }
        if message_id is not None:
            payload["messageId"] = message_id
        await self._hub.emit_to(
            conversation_group(conversation.id),
            ServerEvent.MESSAGE_READ,
            payload,
            exclude=origin,
        )

    async def _notify_recipient(
        self,
        identity: Identity,
        conversation: PropertyConversation,
        text: str,
    ) -> None:
        """Preview for the other party's personal channel. A failed lookup drops only the preview."""
        recipient = (
            client_group(conversation.client_id)
            if identity.role == UserType.AGENT
            else agent_group(conversation.agent_id)
        )
        try:
            context = await self._store.get_property_context(conversation.property_id)
        except Exception:
            logger.exception(
                "realtime.pipeline.notification_failed",
                conversation_id=conversation.id,
            )
            return
        await self._hub.emit_to(
            recipient,
            ServerEvent.MESSAGE_NOTIFICATION,
            {
                "conversationId": conversation.id,
                "propertyId": conversation.property_id,
                "propertyAddress": context.property.address if context is not None else None,
                "senderType": identity.role.value,
                "preview": text[:NOTIFICATION_PREVIEW_LENGTH],
            },
        )

    async def _deliver(
        self,
        identity: Identity,
        conversation: PropertyConversation,
        text: str,
        kind: MessageType,
        *,
        group: str,
    ) -> SendResult:
        sender_id = effective_sender_id(identity, conversation)
        if sender_id != identity.user_id:
            logger.info(
                "realtime.pipeline.sender_remapped",
                from_user_id=identity.user_id,
                to_user_id=sender_id,
                conversation_id=conversation.id,
            )
        message = await self._store.append_message(
            conversation_id=conversation.id,
            sender_id=sender_id,
            sender_type=identity.role,
            content=text,
            message_type=kind,
        )
        view = message_view(message, property_id=conversation.property_id)
        await self._hub.emit_to(group, ServerEvent.NEW_MESSAGE, view.to_wire())
        badges = await self._reconcile(conversation)
        logger.info(
            "realtime.pipeline.message_sent",
            conversation_id=conversation.id,
            message_id=message.id,
            sender_type=identity.role.value,
        )
        return SendResult(message=message, conversation=conversation, badges=badges)

    async def _reconcile(self, conversation: PropertyConversation) -> BadgeReport:
        return await self._badges.reconcile(
            conversation_id=conversation.id,
            property_id=conversation.property_id,
            agent_id=conversation.agent_id,
            client_id=conversation.client_id,
        )
