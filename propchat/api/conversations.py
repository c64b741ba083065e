from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Annotated, cast

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict
from sqlmodel import Session

from propchat.api.errors import ApiException, ErrorCode, error_response_docs
from propchat.core.auth import CredentialRejected, VerifierNotConfigured, extract_bearer_token
from propchat.db.models import PropertyConversation
from propchat.db.repositories import MessageFilters, MessageRepository, Pagination
from propchat.db.session import get_session
from propchat.realtime.conversations import (
    ConversationAccessError,
    ConversationNotFoundError,
    LookupStatus,
)
from propchat.realtime.events import HierarchicalUnreadCounts, MessageView
from propchat.realtime.gateway import RealtimeGateway
from propchat.realtime.identity import VerifiedIdentity
from propchat.realtime.pipeline import MessageNotFoundError, ReadResult, message_view

router = APIRouter(prefix="/conversations", tags=["conversations"])

ReadResultFactory = Callable[[], Awaitable[ReadResult]]


# ============================================================================
# Request/Response Schemas
# ============================================================================


class ConversationRead(BaseModel):
    id: str
    property_id: str
    timeline_id: str
    agent_id: str
    client_id: str
    status: str
    last_message_at: datetime | None
    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)


class PropertyConversationResponse(BaseModel):
    conversation: ConversationRead
    messages: list[MessageView]


class MessageListResponse(BaseModel):
    items: list[MessageView]
    total: int
    page: int
    page_size: int


class ReadAllResponse(BaseModel):
    conversation_id: str
    marked: int
    badges_updated: list[str]
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "conversation_id": "6f1c0a8e2b7d4c21a0f3e9b8d7c6a5b4",
                "marked": 3,
                "badges_updated": ["property", "agent", "client"],
            }
        }
    )


class MessageReadResponse(BaseModel):
    conversation_id: str
    message_id: str
    marked: bool
    badges_updated: list[str]


class UnreadCountResponse(BaseModel):
    agent_id: str
    total_unread: int


# ============================================================================
# Dependencies
# ============================================================================

DbSession = Annotated[Session, Depends(get_session)]


def get_gateway(request: Request) -> RealtimeGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise ApiException(ErrorCode.GATEWAY_UNAVAILABLE, "Realtime gateway is not running.")
    return cast(RealtimeGateway, gateway)


async def get_current_agent(request: Request) -> VerifiedIdentity:
    verifier = getattr(request.app.state, "credential_verifier", None)
    if verifier is None:
        raise ApiException(
            ErrorCode.AUTH_UNAVAILABLE, "Credential verification is not configured."
        )
    token = extract_bearer_token(request)
    if token is None:
        raise ApiException(ErrorCode.UNAUTHORIZED, "Missing bearer token.")
    try:
        verified = await verifier.verify(token)
    except CredentialRejected as exc:
        raise ApiException(ErrorCode.UNAUTHORIZED, "Invalid or expired token.") from exc
    except VerifierNotConfigured as exc:
        raise ApiException(
            ErrorCode.AUTH_UNAVAILABLE, "Credential verification is not configured."
        ) from exc
    return VerifiedIdentity(
        user_id=verified.subject, subject=verified.subject, claims=verified.claims
    )


Gateway = Annotated[RealtimeGateway, Depends(get_gateway)]
CurrentAgent = Annotated[VerifiedIdentity, Depends(get_current_agent)]


def _require_owned_conversation(
    session: Session, conversation_id: str, agent: VerifiedIdentity
) -> PropertyConversation:
    conversation = session.get(PropertyConversation, conversation_id)
    if conversation is None:
        raise ApiException(
            ErrorCode.CONVERSATION_NOT_FOUND,
            f"Conversation {conversation_id} does not exist.",
        )
    if conversation.agent_id != agent.user_id:
        raise ApiException(
            ErrorCode.CONVERSATION_FORBIDDEN,
            "Agent does not have access to this conversation.",
        )
    return conversation


_LOOKUP_ERRORS: dict[LookupStatus, tuple[ErrorCode, str]] = {
    LookupStatus.PROPERTY_NOT_FOUND: (ErrorCode.PROPERTY_NOT_FOUND, "Property does not exist."),
    LookupStatus.TIMELINE_NOT_FOUND: (
        ErrorCode.TIMELINE_NOT_FOUND,
        "Property has no associated timeline.",
    ),
    LookupStatus.NO_AGENTS_AVAILABLE: (
        ErrorCode.NO_AGENTS_AVAILABLE,
        "No agent is available for this conversation.",
    ),
    LookupStatus.ACCESS_DENIED: (
        ErrorCode.CONVERSATION_FORBIDDEN,
        "Agent does not have access to this conversation.",
    ),
    LookupStatus.CREATION_FAILED: (
        ErrorCode.CONVERSATION_CREATE_FAILED,
        "Conversation could not be created.",
    ),
}


async def _run_read(conversation_id: str, read: ReadResultFactory) -> ReadResult:
    try:
        return await read()
    except ConversationNotFoundError as exc:
        raise ApiException(
            ErrorCode.CONVERSATION_NOT_FOUND,
            f"Conversation {conversation_id} does not exist.",
        ) from exc
    except ConversationAccessError as exc:
        raise ApiException(
            ErrorCode.CONVERSATION_FORBIDDEN,
            "Agent does not have access to this conversation.",
        ) from exc
    except MessageNotFoundError as exc:
        raise ApiException(
            ErrorCode.MESSAGE_NOT_FOUND,
            "Message does not exist in this conversation.",
        ) from exc


# ============================================================================
# Conversation Endpoints
# ============================================================================

_AUTH_ERRORS = (ErrorCode.UNAUTHORIZED, ErrorCode.AUTH_UNAVAILABLE)
_OWNED_ERRORS = (
    *_AUTH_ERRORS,
    ErrorCode.CONVERSATION_FORBIDDEN,
    ErrorCode.CONVERSATION_NOT_FOUND,
)


@router.get(
    "/property/{property_id}",
    response_model=PropertyConversationResponse,
    responses=error_response_docs(
        *_AUTH_ERRORS,
        ErrorCode.CONVERSATION_FORBIDDEN,
        ErrorCode.PROPERTY_NOT_FOUND,
        ErrorCode.TIMELINE_NOT_FOUND,
        ErrorCode.NO_AGENTS_AVAILABLE,
        ErrorCode.CONVERSATION_CREATE_FAILED,
    ),
)
async def get_property_conversation(
    property_id: str,
    agent: CurrentAgent,
    gateway: Gateway,
) -> PropertyConversationResponse:
    lookup = await gateway.resolver.get_or_create(property_id, agent)
    if not lookup.ok or lookup.conversation is None:
        code, message = _LOOKUP_ERRORS[lookup.status]
        raise ApiException(code, message)
    history = await gateway.pipeline.history(lookup.conversation.id)
    return PropertyConversationResponse(
        conversation=ConversationRead.model_validate(lookup.conversation),
        messages=[message_view(message, property_id=property_id) for message in history],
    )


@router.get(
    "/unread/count",
    response_model=UnreadCountResponse,
    responses=error_response_docs(*_AUTH_ERRORS),
)
async def get_unread_count(agent: CurrentAgent, gateway: Gateway) -> UnreadCountResponse:
    hierarchy = await gateway.badges.agent_hierarchy(agent.user_id)
    return UnreadCountResponse(agent_id=agent.user_id, total_unread=hierarchy.total_unread)


@router.get(
    "/unread/hierarchical",
    responses=error_response_docs(*_AUTH_ERRORS),
)
async def get_hierarchical_unread(agent: CurrentAgent, gateway: Gateway) -> dict[str, object]:
    hierarchy: HierarchicalUnreadCounts = await gateway.badges.agent_hierarchy(agent.user_id)
    return hierarchy.to_wire()


@router.get(
    "/{conversation_id}/messages",
    response_model=MessageListResponse,
    responses=error_response_docs(*_OWNED_ERRORS),
)
def list_conversation_messages(
    conversation_id: str,
    session: DbSession,
    agent: CurrentAgent,
    unread_only: Annotated[bool, Query()] = False,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=200)] = 50,
) -> MessageListResponse:
    conversation = _require_owned_conversation(session, conversation_id, agent)
    result = MessageRepository(session).list_messages(
        pagination=Pagination(page=page, page_size=page_size),
        filters=MessageFilters(conversation_id=conversation.id, unread_only=unread_only),
    )
    return MessageListResponse(
        items=[message_view(m, property_id=conversation.property_id) for m in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
    )


@router.put(
    "/{conversation_id}/read-all",
    response_model=ReadAllResponse,
    responses=error_response_docs(*_OWNED_ERRORS),
)
async def mark_conversation_read(
    conversation_id: str,
    agent: CurrentAgent,
    gateway: Gateway,
) -> ReadAllResponse:
    result = await _run_read(
        conversation_id, lambda: gateway.pipeline.mark_read(agent, conversation_id)
    )
    return ReadAllResponse(
        conversation_id=result.conversation.id,
        marked=result.marked,
        badges_updated=list(result.badges.succeeded),
    )


@router.put(
    "/{conversation_id}/messages/{message_id}/read",
    response_model=MessageReadResponse,
    responses=error_response_docs(*_OWNED_ERRORS, ErrorCode.MESSAGE_NOT_FOUND),
)
async def mark_message_read(
    conversation_id: str,
    message_id: str,
    agent: CurrentAgent,
    gateway: Gateway,
) -> MessageReadResponse:
    result = await _run_read(
        conversation_id,
        lambda: gateway.pipeline.mark_message_read(agent, conversation_id, message_id),
    )
    return MessageReadResponse(
        conversation_id=result.conversation.id,
        message_id=message_id,
        marked=result.marked > 0,
        badges_updated=list(result.badges.succeeded),
    )
