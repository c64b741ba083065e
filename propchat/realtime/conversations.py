from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from propchat.core.logging import get_logger
from propchat.db.models import PropertyConversation
from propchat.db.repositories import PropertyContext
from propchat.realtime.identity import (
    AnonymousIdentity,
    Identity,
    LinkedIdentity,
    SyntheticIdentity,
    SyntheticSource,
    VerifiedIdentity,
)
from propchat.realtime.store import DataStore

logger = get_logger("propchat.realtime.conversations")


class ConversationAccessError(Exception):
    """The caller's identity may not act on this conversation."""


class ConversationNotFoundError(LookupError):
    """No conversation exists with the requested id."""


class LookupStatus(StrEnum):
    SUCCESS = "success"
    PROPERTY_NOT_FOUND = "property_not_found"
    TIMELINE_NOT_FOUND = "timeline_not_found"
    NO_AGENTS_AVAILABLE = "no_agents_available"
    ACCESS_DENIED = "access_denied"
    CREATION_FAILED = "creation_failed"


@dataclass(frozen=True, slots=True)
class ConversationLookup:
    status: LookupStatus
    conversation: PropertyConversation | None = None

    @property
    def ok(self) -> bool:
        return self.status == LookupStatus.SUCCESS and self.conversation is not None


@dataclass(frozen=True, slots=True)
class AccessPolicy:
    allow_anonymous_messaging: bool = True
    allow_fallback_agent: bool = True


def can_access(identity: Identity, conversation: PropertyConversation, policy: AccessPolicy) -> bool:
    match identity:
        case VerifiedIdentity(user_id=user_id):
            return conversation.agent_id == user_id
        case LinkedIdentity(user_id=user_id):
            return conversation.client_id == user_id
        case SyntheticIdentity(derived_from=SyntheticSource.REJECTED_CREDENTIAL):
            return policy.allow_fallback_agent
        case SyntheticIdentity(derived_from=SyntheticSource.TIMELINE, timeline_id=timeline_id):
            return timeline_id is not None and conversation.timeline_id == timeline_id
        case AnonymousIdentity():
            return policy.allow_anonymous_messaging
        case _:
            return False


def effective_sender_id(identity: Identity, conversation: PropertyConversation) -> str:
    """The id stored on a message: derived identities speak as the conversation's real party."""
    if isinstance(identity, SyntheticIdentity):
        if identity.is_fallback_agent:
            return conversation.agent_id
        if identity.derived_from == SyntheticSource.TIMELINE:
            return conversation.client_id
    return identity.user_id


def _may_create(identity: Identity, context: PropertyContext, policy: AccessPolicy) -> bool:
    timeline = context.timeline
    if timeline is None:
        return False
    match identity:
        case VerifiedIdentity():
            return True
        case LinkedIdentity(user_id=user_id):
            return timeline.client_id == user_id
        case SyntheticIdentity(derived_from=SyntheticSource.REJECTED_CREDENTIAL):
            return policy.allow_fallback_agent
        case SyntheticIdentity(derived_from=SyntheticSource.TIMELINE, timeline_id=timeline_id):
            return timeline.id == timeline_id
        case AnonymousIdentity():
            return policy.allow_anonymous_messaging
        case _:
            return False


class ConversationResolver:
    def __init__(self, store: DataStore, policy: AccessPolicy | None = None) -> None:
        self._store = store
        self.policy = policy or AccessPolicy()

    async def get_or_create(self, property_id: str, identity: Identity) -> ConversationLookup:
        existing = await self._store.find_conversation_by_property(property_id)
        if existing is not None:
            return self._checked(existing, identity)

        context = await self._store.get_property_context(property_id)
        if context is None:
            logger.warning("realtime.conversation.property_not_found", property_id=property_id)
            return ConversationLookup(LookupStatus.PROPERTY_NOT_FOUND)
        if context.timeline is None:
            logger.warning("realtime.conversation.timeline_not_found", property_id=property_id)
            return ConversationLookup(LookupStatus.TIMELINE_NOT_FOUND)
        if not _may_create(identity, context, self.policy):
            logger.warning(
                "realtime.conversation.create_denied",
                property_id=property_id,
                user_key=identity.user_key,
            )
            return ConversationLookup(LookupStatus.ACCESS_DENIED)

        agent_id = await self._determine_agent_id(identity, context)
        if agent_id is None:
            logger.error("realtime.conversation.no_agents_available", property_id=property_id)
            return ConversationLookup(LookupStatus.NO_AGENTS_AVAILABLE)

        client_id = context.timeline.client_id
        if client_id is None:
            logger.error(
                "realtime.conversation.timeline_without_client",
                property_id=property_id,
                timeline_id=context.timeline.id,
            )
            return ConversationLookup(LookupStatus.CREATION_FAILED)

        try:
            conversation = await self._store.create_conversation_if_absent(
                property_id=property_id,
                timeline_id=context.timeline.id,
                agent_id=agent_id,
                client_id=client_id,
            )
        except Exception:
            logger.exception("realtime.conversation.create_failed", property_id=property_id)
            return ConversationLookup(LookupStatus.CREATION_FAILED)

        logger.info(
            "realtime.conversation.resolved",
            property_id=property_id,
            conversation_id=conversation.id,
            agent_id=conversation.agent_id,
        )
        # a concurrent creator may have won with a different agent
        return self._checked(conversation, identity)

    async def get_for_access(self, conversation_id: str, identity: Identity) -> PropertyConversation:
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"conversation {conversation_id} not found")
        if not can_access(identity, conversation, self.policy):
            raise ConversationAccessError("Access denied to conversation")
        return conversation

    async def get_for_property_access(
        self, property_id: str, identity: Identity
    ) -> PropertyConversation:
        conversation = await self._store.find_conversation_by_property(property_id)
        if conversation is None:
            raise ConversationNotFoundError(f"no conversation for property {property_id}")
        if not can_access(identity, conversation, self.policy):
            raise ConversationAccessError("Access denied to conversation")
        return conversation

    def _checked(
        self,
        conversation: PropertyConversation,
        identity: Identity,
    ) -> ConversationLookup:
        if not can_access(identity, conversation, self.policy):
            logger.warning(
                "realtime.conversation.access_denied",
                conversation_id=conversation.id,
                user_key=identity.user_key,
            )
            return ConversationLookup(LookupStatus.ACCESS_DENIED)
        return ConversationLookup(LookupStatus.SUCCESS, conversation=conversation)

    async def _determine_agent_id(self, identity: Identity, context: PropertyContext) -> str | None:
        if isinstance(identity, VerifiedIdentity):
            return identity.user_id
        if isinstance(identity, SyntheticIdentity) and identity.is_fallback_agent:
            if context.timeline is not None:
                return context.timeline.agent_id
        if context.client is not None and context.client.agent_id:
            return context.client.agent_id
        fallback = await self._store.first_active_agent()
        if fallback is None:
            return None
        logger.info(
            "realtime.conversation.fallback_agent",
            property_id=context.property.id,
            agent_id=fallback.id,
        )
        return fallback.id

