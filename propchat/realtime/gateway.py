"""Connection lifecycle and inbound event dispatch for the messaging socket.

Every inbound event is routed through one table. Handlers return at most one
reply for the requesting connection; ``respond_once`` sends it, or sends the
route's terminal error event when the handler raises, so a request never goes
unanswered.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from propchat.core.auth import CredentialVerifier
from propchat.core.config import Settings
from propchat.core.logging import bind_log_context, get_logger
from propchat.db.enums import UserType
from propchat.realtime.badges import BadgeReconciler
from propchat.realtime.conversations import (
    AccessPolicy,
    ConversationAccessError,
    ConversationNotFoundError,
    ConversationResolver,
)
from propchat.realtime.events import (
    ClientEvent,
    ConversationRef,
    PropertyRef,
    ReadTarget,
    SendConversationMessage,
    SendPropertyMessage,
    ServerEvent,
)
from propchat.realtime.hub import (
    ConnectionHub,
    ConnectionState,
    RealtimeConnection,
    Transport,
    agent_group,
    client_group,
    conversation_group,
    property_group,
    timeline_group,
)
from propchat.realtime.identity import (
    Identity,
    IdentityResolutionError,
    IdentityResolver,
    guard_identity,
)
from propchat.realtime.membership import RoomMembershipTracker
from propchat.realtime.pipeline import (
    ConversationUnavailableError,
    MessageNotFoundError,
    MessagePipeline,
    MessageValidationError,
    message_view,
)
from propchat.realtime.store import DataStore, StoreUnavailableError

logger = get_logger("propchat.realtime.gateway")

Reply = tuple[str, dict[str, Any]]
Handler = Callable[[RealtimeConnection, dict[str, Any]], Awaitable[Reply | None]]
ErrorReply = Callable[[dict[str, Any], Exception], Reply]

CONNECTED_MESSAGE = "Successfully connected"


@dataclass(frozen=True, slots=True)
class Route:
    handler: Handler
    on_error: ErrorReply
    requires_ready: bool = True


@dataclass(frozen=True, slots=True)
class GatewayConfig:
    ready_delay_ms: int = 50
    membership_ttl_s: int = 300
    ping_ttl_s: int = 300
    history_limit: int = 50
    allow_anonymous_messaging: bool = True
    allow_fallback_agent: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> GatewayConfig:
        return cls(
            ready_delay_ms=settings.ready_delay_ms,
            membership_ttl_s=settings.membership_ttl_s,
            ping_ttl_s=settings.ping_ttl_s,
            history_limit=settings.history_limit,
            allow_anonymous_messaging=settings.allow_anonymous_messaging,
            allow_fallback_agent=settings.allow_fallback_agent,
        )


def describe_failure(exc: Exception, default: str) -> str:
    """User-facing text for a failed request; internals never leak."""
    if isinstance(exc, MessageValidationError):
        return str(exc)
    if isinstance(exc, ConversationAccessError):
        return "Access denied to conversation"
    if isinstance(exc, ValidationError):
        return "Invalid payload"
    if isinstance(exc, ConversationUnavailableError):
        return f"Conversation unavailable ({exc.status.value})"
    if isinstance(exc, ConversationNotFoundError):
        return "Conversation not found"
    if isinstance(exc, MessageNotFoundError):
        return "Message not found"
    if isinstance(exc, StoreUnavailableError):
        return "Service temporarily unavailable"
    return default


def _error(message: str) -> ErrorReply:
    def _reply(_: dict[str, Any], exc: Exception) -> Reply:
        return ServerEvent.ERROR.value, {"message": describe_failure(exc, message)}

    return _reply


def _join_failed(payload: dict[str, Any], exc: Exception) -> Reply:
    if isinstance(exc, ValidationError):
        return ServerEvent.ERROR.value, {"message": "Invalid payload"}
    return ServerEvent.PROPERTY_CONVERSATION_JOINED.value, {
        "propertyId": payload.get("propertyId"),
        "conversationId": None,
        "messages": [],
        "status": "error",
    }


def _property_message_failed(payload: dict[str, Any], exc: Exception) -> Reply:
    return ServerEvent.MESSAGE_ERROR.value, {
        "propertyId": payload.get("propertyId"),
        "error": describe_failure(exc, "Failed to send message"),
    }


def _conversation_message_failed(payload: dict[str, Any], exc: Exception) -> Reply:
    return ServerEvent.MESSAGE_ERROR.value, {
        "conversationId": payload.get("conversationId"),
        "error": describe_failure(exc, "Failed to send message"),
    }


def _parse(model: type[BaseModel], payload: dict[str, Any]) -> Any:
    return model.model_validate(payload)


class RealtimeGateway:
    def __init__(
        self,
        *,
        store: DataStore,
        verifier: CredentialVerifier,
        config: GatewayConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or GatewayConfig()
        self._clock = clock
        self.hub = ConnectionHub()
        self.identities = IdentityResolver(verifier=verifier, store=store)
        self.resolver = ConversationResolver(
            store,
            AccessPolicy(
                allow_anonymous_messaging=self.config.allow_anonymous_messaging,
                allow_fallback_agent=self.config.allow_fallback_agent,
            ),
        )
        self.memberships = RoomMembershipTracker(ttl_s=self.config.membership_ttl_s, clock=clock)
        self.badges = BadgeReconciler(store, self.hub)
        self.pipeline = MessagePipeline(
            store=store,
            hub=self.hub,
            resolver=self.resolver,
            badges=self.badges,
            history_limit=self.config.history_limit,
        )
        self._last_ping: dict[str, float] = {}
        self.routes: dict[str, Route] = {
            ClientEvent.JOIN_PROPERTY_CONVERSATION: Route(self._on_join, _join_failed),
            ClientEvent.LEAVE_PROPERTY_CONVERSATION: Route(
                self._on_leave, _error("Failed to leave property conversation")
            ),
            ClientEvent.SEND_PROPERTY_MESSAGE: Route(
                self._on_send_property_message, _property_message_failed
            ),
            ClientEvent.SEND_MESSAGE: Route(
                self._on_send_message, _conversation_message_failed
            ),
            ClientEvent.MARK_MESSAGES_READ: Route(
                self._on_mark_read, _error("Failed to mark messages as read")
            ),
            ClientEvent.MARK_READ: Route(
                self._on_mark_single_read, _error("Failed to mark messages as read")
            ),
            ClientEvent.JOIN_CONVERSATION: Route(
                self._on_join_conversation, _error("Failed to join conversation")
            ),
            ClientEvent.LEAVE_CONVERSATION: Route(
                self._on_leave_conversation, _error("Failed to leave conversation")
            ),
            ClientEvent.TYPING_START: Route(
                self._on_typing_start, _error("Failed to update typing state")
            ),
            ClientEvent.TYPING_STOP: Route(
                self._on_typing_stop, _error("Failed to update typing state")
            ),
            ClientEvent.PING: Route(self._on_ping, _error("Ping failed"), requires_ready=False),
        }

    # -- lifecycle -----------------------------------------------------------

    def open(self, transport: Transport, *, timeline_id: str | None = None) -> RealtimeConnection:
        connection = RealtimeConnection(transport=transport, timeline_id=timeline_id or None)
        self.hub.register(connection)
        bind_log_context(trace_id=connection.trace_id, connection_id=connection.connection_id)
        logger.info("realtime.connection.opened", has_timeline=timeline_id is not None)
        return connection

    async def authenticate(
        self,
        connection: RealtimeConnection,
        *,
        user_type: str | None,
        token: str | None,
    ) -> bool:
        """Run the handshake up to READY. False means the connection was refused and closed."""
        try:
            resolved = await self.identities.resolve(user_type, token, connection.timeline_id)
        except IdentityResolutionError:
            logger.exception("realtime.connection.authentication_failed")
            await connection.send(ServerEvent.ERROR, {"message": "Authentication failed"})
            await self.close(connection, code=4401, reason="authentication failed")
            return False

        identity = guard_identity(resolved)
        connection.authenticate(identity)
        bind_log_context(user_id=identity.user_id, user_type=identity.role.value)
        for group in self._home_groups(connection, identity):
            self.hub.join_group(connection, group)

        await connection.send(
            ServerEvent.CONNECTED,
            {
                "userId": identity.user_id,
                "userType": identity.role.value,
                "socketId": connection.connection_id,
                "message": CONNECTED_MESSAGE,
            },
        )
        connection.confirmed = True
        await asyncio.sleep(self.config.ready_delay_ms / 1000)
        if connection.state != ConnectionState.AUTHENTICATED:
            return False
        connection.mark_ready()
        logger.info("realtime.connection.ready", identity_kind=type(identity).__name__)

        presence = self._presence_group(connection, identity)
        already_online = self.hub.user_connections(
            identity.user_key, exclude=connection, ready_only=True
        )
        if presence is not None and not already_online:
            await self.hub.emit_to(
                presence,
                ServerEvent.USER_ONLINE,
                {"userId": identity.user_id, "userType": identity.role.value},
                exclude=connection,
            )
        return True

    async def handle_disconnect(self, connection: RealtimeConnection) -> None:
        if connection.state == ConnectionState.CLOSED:
            return
        identity = connection.identity
        released: list[str] = []
        last_socket = True
        if identity is not None:
            others = self.hub.user_connections(identity.user_key, exclude=connection)
            last_socket = not others
            # rooms another tab of the same user still sits in stay held
            held = {
                property_id
                for property_id in self.memberships.rooms_for(identity.user_key)
                if any(property_group(property_id) in other.groups for other in others)
            }
            released = self.memberships.drop_user(identity.user_key, keep=held)
        self._last_ping.pop(connection.connection_id, None)
        connection.mark_closed()
        self.hub.unregister(connection)
        if identity is not None and last_socket:
            presence = self._presence_group(connection, identity)
            if presence is not None:
                await self.hub.emit_to(
                    presence,
                    ServerEvent.USER_OFFLINE,
                    {"userId": identity.user_id, "userType": identity.role.value},
                )
        logger.info(
            "realtime.connection.closed",
            released_rooms=len(released),
            last_socket=last_socket,
        )

    async def close(self, connection: RealtimeConnection, *, code: int, reason: str) -> None:
        await self.handle_disconnect(connection)
        try:
            await connection.transport.close(code=code, reason=reason)
        except Exception as exc:  # pragma: no cover - socket already gone
            logger.debug("realtime.connection.close_failed", error=str(exc))

    @staticmethod
    def _home_groups(connection: RealtimeConnection, identity: Identity) -> list[str]:
        groups = [
            agent_group(identity.user_id)
            if identity.role == UserType.AGENT
            else client_group(identity.user_id)
        ]
        if connection.timeline_id is not None:
            groups.append(timeline_group(connection.timeline_id))
        return groups

    @staticmethod
    def _presence_group(connection: RealtimeConnection, identity: Identity) -> str | None:
        if identity.role == UserType.AGENT:
            return agent_group(identity.user_id)
        if connection.timeline_id is not None:
            return timeline_group(connection.timeline_id)
        return None

    # -- dispatch ------------------------------------------------------------

    async def dispatch(
        self,
        connection: RealtimeConnection,
        event: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        body = payload or {}
        route = self.routes.get(event)
        if route is None:
            await connection.send(ServerEvent.ERROR, {"message": f"Unknown event: {event}"})
            return
        if route.requires_ready and not await self._ready_for(connection):
            logger.warning("realtime.dispatch.not_ready", event_name=event, state=connection.state)
            await connection.send(
                ServerEvent.ERROR,
                {"message": "Connection not ready", "event": event},
            )
            return
        await self.respond_once(route, connection, event, body)

    async def respond_once(
        self,
        route: Route,
        connection: RealtimeConnection,
        event: str,
        payload: dict[str, Any],
    ) -> None:
        try:
            reply = await route.handler(connection, payload)
        except Exception as exc:
            if isinstance(
                exc,
                MessageValidationError
                | ConversationAccessError
                | ValidationError
                | ConversationUnavailableError
                | ConversationNotFoundError
                | MessageNotFoundError,
            ):
                logger.warning("realtime.dispatch.rejected", event_name=event, reason=str(exc))
            else:
                logger.exception("realtime.dispatch.failed", event_name=event)
            reply = route.on_error(payload, exc)
        if reply is not None:
            name, body = reply
            await connection.send(name, body)

    async def _ready_for(self, connection: RealtimeConnection) -> bool:
        if connection.is_ready:
            return True
        # the connected signal is out; hold for the rest of the ordering delay
        if connection.confirmed and connection.state == ConnectionState.AUTHENTICATED:
            return await connection.wait_ready(self.config.ready_delay_ms / 1000 + 1.0)
        return False

    def _identity(self, connection: RealtimeConnection) -> Identity:
        if connection.identity is None:
            raise RuntimeError("connection has no identity")
        return connection.identity

    # -- handlers ------------------------------------------------------------

    async def _on_join(self, connection: RealtimeConnection, payload: dict[str, Any]) -> Reply:
        request: PropertyRef = _parse(PropertyRef, payload)
        identity = self._identity(connection)
        outcome = await self.memberships.join(
            request.property_id,
            identity,
            resolver=self.resolver,
            load_history=self.pipeline.history,
        )
        if outcome.status == "access_denied":
            return ServerEvent.ERROR.value, {
                "message": "Access denied to conversation",
                "propertyId": request.property_id,
            }
        # a repeat join from another tab still needs this socket in the rooms
        if outcome.joined or outcome.status == "already_joined":
            self.hub.join_group(connection, property_group(request.property_id))
            if outcome.conversation_id is not None:
                self.hub.join_group(connection, conversation_group(outcome.conversation_id))
        return ServerEvent.PROPERTY_CONVERSATION_JOINED.value, {
            "propertyId": request.property_id,
            "conversationId": outcome.conversation_id,
            "messages": [
                message_view(message, property_id=request.property_id).to_wire()
                for message in outcome.messages
            ],
            "status": outcome.status,
        }

    async def _on_leave(self, connection: RealtimeConnection, payload: dict[str, Any]) -> None:
        request: PropertyRef = _parse(PropertyRef, payload)
        identity = self._identity(connection)
        group = property_group(request.property_id)
        self.hub.leave_group(connection, group)
        still_present = any(
            other.identity is not None and other.identity.user_key == identity.user_key
            for other in self.hub.members(group)
        )
        if not still_present:
            self.memberships.release(request.property_id, identity.user_key)
        logger.info("realtime.membership.left", property_id=request.property_id)
        return None

    async def _on_join_conversation(
        self, connection: RealtimeConnection, payload: dict[str, Any]
    ) -> Reply:
        request: ConversationRef = _parse(ConversationRef, payload)
        conversation = await self.resolver.get_for_access(
            request.conversation_id, self._identity(connection)
        )
        self.hub.join_group(connection, conversation_group(conversation.id))
        logger.info("realtime.conversation.joined", conversation_id=conversation.id)
        return ServerEvent.JOINED_CONVERSATION.value, {"conversationId": conversation.id}

    async def _on_leave_conversation(
        self, connection: RealtimeConnection, payload: dict[str, Any]
    ) -> None:
        request: ConversationRef = _parse(ConversationRef, payload)
        self.hub.leave_group(connection, conversation_group(request.conversation_id))
        logger.info("realtime.conversation.left", conversation_id=request.conversation_id)
        return None

    async def _on_send_property_message(
        self, connection: RealtimeConnection, payload: dict[str, Any]
    ) -> Reply:
        request: SendPropertyMessage = _parse(SendPropertyMessage, payload)
        result = await self.pipeline.send_to_property(
            self._identity(connection),
            request.property_id,
            request.content,
            request.type,
        )
        return ServerEvent.MESSAGE_SENT.value, {
            "messageId": result.message.id,
            "propertyId": request.property_id,
            "conversationId": result.conversation.id,
            "success": True,
        }

    async def _on_send_message(
        self, connection: RealtimeConnection, payload: dict[str, Any]
    ) -> Reply:
        request: SendConversationMessage = _parse(SendConversationMessage, payload)
        result = await self.pipeline.send_to_conversation(
            self._identity(connection),
            request.conversation_id,
            request.content,
            request.type,
        )
        return ServerEvent.MESSAGE_SENT.value, {
            "messageId": result.message.id,
            "propertyId": result.conversation.property_id,
            "conversationId": result.conversation.id,
            "success": True,
        }

    async def _on_mark_read(self, connection: RealtimeConnection, payload: dict[str, Any]) -> Reply:
        request: ConversationRef = _parse(ConversationRef, payload)
        result = await self.pipeline.mark_read(
            self._identity(connection),
            request.conversation_id,
            origin=connection,
        )
        return ServerEvent.MESSAGES_MARKED_READ.value, {
            "conversationId": result.conversation.id,
            "success": True,
        }

    async def _on_mark_single_read(
        self, connection: RealtimeConnection, payload: dict[str, Any]
    ) -> Reply:
        request: ReadTarget = _parse(ReadTarget, payload)
        identity = self._identity(connection)
        confirmed: dict[str, Any] = {"success": True}
        if request.conversation_id is not None and request.message_id is not None:
            await self.pipeline.mark_message_read(
                identity, request.conversation_id, request.message_id, origin=connection
            )
            confirmed.update(conversationId=request.conversation_id, messageId=request.message_id)
        elif request.conversation_id is not None:
            await self.pipeline.mark_read(identity, request.conversation_id, origin=connection)
            confirmed.update(conversationId=request.conversation_id)
        elif request.property_id is not None:
            await self.pipeline.mark_property_read(
                identity, request.property_id, origin=connection
            )
            confirmed.update(propertyId=request.property_id)
        else:
            raise ValueError("propertyId or conversationId is required")
        return ServerEvent.READ_CONFIRMED.value, confirmed

    async def _typing(
        self, connection: RealtimeConnection, payload: dict[str, Any], *, is_typing: bool
    ) -> None:
        request: PropertyRef = _parse(PropertyRef, payload)
        await self.hub.emit_to(
            property_group(request.property_id),
            ServerEvent.USER_TYPING,
            {
                "propertyId": request.property_id,
                "userId": self._identity(connection).user_id,
                "isTyping": is_typing,
            },
            exclude=connection,
        )

    async def _on_typing_start(
        self, connection: RealtimeConnection, payload: dict[str, Any]
    ) -> None:
        await self._typing(connection, payload, is_typing=True)

    async def _on_typing_stop(
        self, connection: RealtimeConnection, payload: dict[str, Any]
    ) -> None:
        await self._typing(connection, payload, is_typing=False)

    async def _on_ping(self, connection: RealtimeConnection, _: dict[str, Any]) -> Reply:
        now = self._clock()
        previous = self._last_ping.get(connection.connection_id)
        self._last_ping[connection.connection_id] = now
        logger.debug(
            "realtime.ping.received",
            since_last_s=round(now - previous, 3) if previous is not None else None,
        )
        return ServerEvent.PONG.value, {}

    # -- maintenance ---------------------------------------------------------

    def sweep_memberships(self) -> int:
        return len(self.memberships.sweep())

    def sweep_pings(self) -> int:
        """Forget ping records older than the TTL. Connections are never closed here."""
        now = self._clock()
        stale = [
            connection_id
            for connection_id, pinged_at in self._last_ping.items()
            if now - pinged_at > self.config.ping_ttl_s
        ]
        for connection_id in stale:
            del self._last_ping[connection_id]
        if stale:
            logger.info("realtime.ping.records_discarded", count=len(stale))
        return len(stale)

    def last_ping(self, connection_id: str) -> float | None:
        return self._last_ping.get(connection_id)

    def stats(self) -> dict[str, int]:
        return {
            **self.hub.stats(),
            "memberships": len(self.memberships),
            "tracked_pings": len(self._last_ping),
        }


async def run_periodic(
    name: str,
    task: Callable[[], int],
    *,
    interval_seconds: float,
) -> None:
    """Run a sweep forever; a failing pass is logged and the loop continues."""
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be greater than 0")
    while True:
        try:
            affected = task()
            if affected:
                logger.info("realtime.sweep.completed", sweep=name, affected=affected)
        except Exception:
            logger.exception("realtime.sweep.failed", sweep=name)
        await asyncio.sleep(interval_seconds)
