from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol
from uuid import uuid4

from propchat.core.logging import get_logger, new_connection_trace_id
from propchat.realtime.identity import Identity

logger = get_logger("propchat.realtime.hub")


class Transport(Protocol):
    async def send_json(self, data: Any, mode: str = "text") -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class ConnectionState(StrEnum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    CLOSED = "closed"


def agent_group(agent_id: str) -> str:
    return f"agent:{agent_id}"


def client_group(client_id: str) -> str:
    return f"client:{client_id}"


def timeline_group(timeline_id: str) -> str:
    return f"timeline:{timeline_id}"


def property_group(property_id: str) -> str:
    return f"property:{property_id}"


def conversation_group(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def _now_ts() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


@dataclass(eq=False)
class RealtimeConnection:
    transport: Transport
    timeline_id: str | None = None
    connection_id: str = field(default_factory=lambda: uuid4().hex)
    trace_id: str = field(default_factory=new_connection_trace_id)
    identity: Identity | None = None
    state: ConnectionState = ConnectionState.CONNECTING
    confirmed: bool = False
    groups: set[str] = field(default_factory=set)
    _ready: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def user_id(self) -> str | None:
        return self.identity.user_id if self.identity is not None else None

    @property
    def is_ready(self) -> bool:
        return self.state == ConnectionState.READY

    def authenticate(self, identity: Identity) -> None:
        if self.state != ConnectionState.CONNECTING:
            raise RuntimeError(f"cannot authenticate connection in state {self.state}")
        self.identity = identity
        self.state = ConnectionState.AUTHENTICATED

    def mark_ready(self) -> None:
        if self.state != ConnectionState.AUTHENTICATED:
            raise RuntimeError(f"cannot mark connection ready in state {self.state}")
        self.state = ConnectionState.READY
        self._ready.set()

    def mark_closed(self) -> None:
        self.state = ConnectionState.CLOSED
        # release anyone waiting on readiness; they re-check state
        self._ready.set()

    async def wait_ready(self, timeout_s: float) -> bool:
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout_s)
        except TimeoutError:
            return False
        return self.is_ready

    async def send(self, event: str, payload: dict[str, Any] | None = None) -> bool:
        if self.state == ConnectionState.CLOSED:
            return False
        frame = {"type": event, "payload": payload or {}, "timestamp": _now_ts()}
        try:
            await self.transport.send_json(frame)
            return True
        except Exception as exc:  # pragma: no cover - socket close race
            logger.warning(
                "realtime.connection.send_failed",
                connection_id=self.connection_id,
                event_name=event,
                error=str(exc),
            )
            return False


class ConnectionHub:
    """Live connections and the broadcast groups they belong to."""

    def __init__(self) -> None:
        self._connections: dict[str, RealtimeConnection] = {}
        self._groups: dict[str, set[str]] = {}

    def register(self, connection: RealtimeConnection) -> None:
        self._connections[connection.connection_id] = connection

    def unregister(self, connection: RealtimeConnection) -> None:
        self.leave_all(connection)
        self._connections.pop(connection.connection_id, None)

    def get(self, connection_id: str) -> RealtimeConnection | None:
        return self._connections.get(connection_id)

    def join_group(self, connection: RealtimeConnection, group: str) -> None:
        self._groups.setdefault(group, set()).add(connection.connection_id)
        connection.groups.add(group)

    def leave_group(self, connection: RealtimeConnection, group: str) -> None:
        members = self._groups.get(group)
        if members is not None:
            members.discard(connection.connection_id)
            if not members:
                del self._groups[group]
        connection.groups.discard(group)

    def leave_all(self, connection: RealtimeConnection) -> None:
        for group in list(connection.groups):
            self.leave_group(connection, group)

    def members(self, group: str) -> list[RealtimeConnection]:
        return [
            self._connections[connection_id]
            for connection_id in sorted(self._groups.get(group, ()))
            if connection_id in self._connections
        ]

    def user_connections(
        self,
        user_key: str,
        *,
        exclude: RealtimeConnection | None = None,
        ready_only: bool = False,
    ) -> list[RealtimeConnection]:
        """Other open sockets of the same user, e.g. a second browser tab."""
        return [
            connection
            for connection in self._connections.values()
            if connection.identity is not None
            and connection.identity.user_key == user_key
            and connection.state != ConnectionState.CLOSED
            and (exclude is None or connection.connection_id != exclude.connection_id)
            and (not ready_only or connection.is_ready)
        ]

    async def emit_to(
        self,
        groups: str | Iterable[str],
        event: str,
        payload: dict[str, Any],
        *,
        exclude: RealtimeConnection | None = None,
    ) -> int:
        """Send to every connection in any of the groups, once per connection."""
        targets = [groups] if isinstance(groups, str) else list(groups)
        seen: set[str] = set()
        delivered = 0
        for group in targets:
            for connection in self.members(group):
                if connection.connection_id in seen:
                    continue
                seen.add(connection.connection_id)
                if exclude is not None and connection.connection_id == exclude.connection_id:
                    continue
                if await connection.send(event, payload):
                    delivered += 1
        return delivered

    def stats(self) -> dict[str, int]:
        return {
            "connections": len(self._connections),
            "ready_connections": sum(1 for c in self._connections.values() if c.is_ready),
            "groups": len(self._groups),
        }
