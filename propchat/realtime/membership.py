"""Per-property room membership for one gateway process.

Entries are keyed ``(property_id, user_key)`` and carry the monotonic time they
were created plus the conversation the join resolved to. Membership is advisory:
it is not shared across processes and the TTL sweep removes entries whose socket
vanished without a disconnect.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Collection
from dataclasses import dataclass, field
from typing import Literal

from propchat.core.logging import get_logger
from propchat.db.models import ConversationMessage
from propchat.realtime.conversations import ConversationResolver, LookupStatus
from propchat.realtime.identity import Identity

logger = get_logger("propchat.realtime.membership")

JoinStatus = Literal[
    "success",
    "already_joined",
    "property_not_found",
    "timeline_not_found",
    "no_agents_available",
    "access_denied",
    "creation_failed",
]

HistoryLoader = Callable[[str], Awaitable[list[ConversationMessage]]]


@dataclass(frozen=True, slots=True)
class JoinOutcome:
    property_id: str
    status: JoinStatus
    conversation_id: str | None = None
    messages: list[ConversationMessage] = field(default_factory=list)

    @property
    def joined(self) -> bool:
        return self.status == "success" and self.conversation_id is not None


@dataclass(slots=True)
class _Membership:
    joined_at: float
    # None while the first join is still resolving
    conversation_id: str | None = None


class RoomMembershipTracker:
    def __init__(
        self,
        *,
        ttl_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_s = ttl_s
        self._clock = clock
        self._rooms: dict[str, dict[str, _Membership]] = {}

    def __len__(self) -> int:
        return sum(len(members) for members in self._rooms.values())

    def contains(self, property_id: str, user_key: str) -> bool:
        return user_key in self._rooms.get(property_id, {})

    def members(self, property_id: str) -> set[str]:
        return set(self._rooms.get(property_id, {}))

    def conversation_for(self, property_id: str, user_key: str) -> str | None:
        entry = self._rooms.get(property_id, {}).get(user_key)
        return entry.conversation_id if entry is not None else None

    def try_join(self, property_id: str, user_key: str) -> bool:
        """Record a membership; False when one already exists."""
        room = self._rooms.setdefault(property_id, {})
        if user_key in room:
            return False
        room[user_key] = _Membership(joined_at=self._clock())
        return True

    def release(self, property_id: str, user_key: str) -> bool:
        room = self._rooms.get(property_id)
        if room is None or user_key not in room:
            return False
        del room[user_key]
        if not room:
            del self._rooms[property_id]
        return True

    def rooms_for(self, user_key: str) -> list[str]:
        return [pid for pid, room in self._rooms.items() if user_key in room]

    def drop_user(self, user_key: str, *, keep: Collection[str] = ()) -> list[str]:
        """Remove the user from every room not in `keep`; returns the affected property ids."""
        released = [pid for pid in self.rooms_for(user_key) if pid not in keep]
        for property_id in released:
            self.release(property_id, user_key)
        return released

    def sweep(self) -> list[tuple[str, str]]:
        now = self._clock()
        stale = [
            (property_id, user_key)
            for property_id, room in self._rooms.items()
            for user_key, entry in room.items()
            if now - entry.joined_at > self.ttl_s
        ]
        for property_id, user_key in stale:
            self.release(property_id, user_key)
        if stale:
            logger.info("realtime.membership.evicted", count=len(stale))
        return stale

    async def join(
        self,
        property_id: str,
        identity: Identity,
        *,
        resolver: ConversationResolver,
        load_history: HistoryLoader,
    ) -> JoinOutcome:
        user_key = identity.user_key
        if not self.try_join(property_id, user_key):
            logger.info(
                "realtime.membership.duplicate_join",
                property_id=property_id,
                user_key=user_key,
            )
            return JoinOutcome(
                property_id=property_id,
                status="already_joined",
                conversation_id=self.conversation_for(property_id, user_key),
            )

        try:
            lookup = await resolver.get_or_create(property_id, identity)
            if not lookup.ok or lookup.conversation is None:
                self.release(property_id, user_key)
                return JoinOutcome(property_id=property_id, status=_join_status(lookup.status))
            entry = self._rooms.get(property_id, {}).get(user_key)
            if entry is not None:
                entry.conversation_id = lookup.conversation.id
            messages = await load_history(lookup.conversation.id)
        except BaseException:
            self.release(property_id, user_key)
            raise

        logger.info(
            "realtime.membership.joined",
            property_id=property_id,
            user_key=user_key,
            conversation_id=lookup.conversation.id,
            history_size=len(messages),
        )
        return JoinOutcome(
            property_id=property_id,
            status="success",
            conversation_id=lookup.conversation.id,
            messages=messages,
        )


def _join_status(status: LookupStatus) -> JoinStatus:
    mapping: dict[LookupStatus, JoinStatus] = {
        LookupStatus.SUCCESS: "success",
        LookupStatus.PROPERTY_NOT_FOUND: "property_not_found",
        LookupStatus.TIMELINE_NOT_FOUND: "timeline_not_found",
        LookupStatus.NO_AGENTS_AVAILABLE: "no_agents_available",
        LookupStatus.ACCESS_DENIED: "access_denied",
        LookupStatus.CREATION_FAILED: "creation_failed",
    }
    return mapping[status]
