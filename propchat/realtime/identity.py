"""Who is on the other end of a socket.

Identities are a closed set of variants so that authorization code has to say
which kinds it trusts:

- ``VerifiedIdentity``: an agent whose bearer credential verified.
- ``LinkedIdentity``: a client whose share-link timeline maps to a durable client record.
- ``SyntheticIdentity``: an id derived from something other than a verified account
  (``client_<timelineId>``, the ``agent_fallback`` sentinel, or an emergency id).
- ``AnonymousIdentity``: a time-based id with no address stability across reconnects.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from propchat.core.auth import CredentialRejected, CredentialVerifier
from propchat.core.logging import get_logger
from propchat.db.enums import UserType

if TYPE_CHECKING:
    from propchat.realtime.store import DataStore

logger = get_logger("propchat.realtime.identity")

FALLBACK_AGENT_ID = "agent_fallback"
SYNTHETIC_CLIENT_PREFIX = "client_"
ANONYMOUS_PREFIX = "anonymous_"
EMERGENCY_PREFIX = "emergency_fallback_"

_UNUSABLE_IDS = frozenset({"", "undefined", "null", "none"})


class IdentityResolutionError(Exception):
    """The verifier or directory failed unexpectedly; the connection cannot be identified."""


class SyntheticSource(StrEnum):
    TIMELINE = "timeline"
    REJECTED_CREDENTIAL = "rejected_credential"
    EMERGENCY = "emergency"


def _user_key(user_id: str, role: UserType) -> str:
    return f"{user_id}-{role.value}"


@dataclass(frozen=True, slots=True)
class VerifiedIdentity:
    user_id: str
    subject: str
    claims: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)
    role: UserType = UserType.AGENT

    @property
    def user_key(self) -> str:
        return _user_key(self.user_id, self.role)


@dataclass(frozen=True, slots=True)
class LinkedIdentity:
    user_id: str
    timeline_id: str
    role: UserType = UserType.CLIENT

    @property
    def user_key(self) -> str:
        return _user_key(self.user_id, self.role)


@dataclass(frozen=True, slots=True)
class SyntheticIdentity:
    user_id: str
    role: UserType
    derived_from: SyntheticSource
    timeline_id: str | None = None

    @property
    def user_key(self) -> str:
        return _user_key(self.user_id, self.role)

    @property
    def is_fallback_agent(self) -> bool:
        return self.role == UserType.AGENT and self.derived_from == SyntheticSource.REJECTED_CREDENTIAL


@dataclass(frozen=True, slots=True)
class AnonymousIdentity:
    user_id: str
    issued_at_ms: int
    role: UserType = UserType.CLIENT

    @property
    def user_key(self) -> str:
        return _user_key(self.user_id, self.role)


Identity = VerifiedIdentity | LinkedIdentity | SyntheticIdentity | AnonymousIdentity


def epoch_ms() -> int:
    return int(time.time() * 1000)


def normalize_role(value: str | None) -> UserType | None:
    if value is None:
        return None
    try:
        return UserType(value.strip().upper())
    except ValueError:
        return None


def _normalize_optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized if normalized else None


def synthetic_client(timeline_id: str) -> SyntheticIdentity:
    return SyntheticIdentity(
        user_id=f"{SYNTHETIC_CLIENT_PREFIX}{timeline_id}",
        role=UserType.CLIENT,
        derived_from=SyntheticSource.TIMELINE,
        timeline_id=timeline_id,
    )


def guard_identity(identity: Identity | None, *, clock_ms: Callable[[], int] = epoch_ms) -> Identity:
    """Replace an unusable identity with an emergency one instead of failing the connection."""
    if identity is not None and identity.user_id.strip().lower() not in _UNUSABLE_IDS:
        return identity
    role = identity.role if identity is not None else UserType.CLIENT
    replacement = SyntheticIdentity(
        user_id=f"{EMERGENCY_PREFIX}{clock_ms()}",
        role=role,
        derived_from=SyntheticSource.EMERGENCY,
    )
    logger.error(
        "realtime.identity.emergency_fallback",
        rejected_user_id=identity.user_id if identity is not None else None,
        replacement_user_id=replacement.user_id,
    )
    return replacement


class IdentityResolver:
    def __init__(
        self,
        *,
        verifier: CredentialVerifier,
        store: DataStore,
        clock_ms: Callable[[], int] = epoch_ms,
    ) -> None:
        self._verifier = verifier
        self._store = store
        self._clock_ms = clock_ms

    async def resolve(
        self,
        role: str | None,
        credential: str | None,
        timeline_id: str | None,
    ) -> Identity:
        claimed_role = normalize_role(role)
        token = _normalize_optional_text(credential)
        timeline = _normalize_optional_text(timeline_id)

        if claimed_role == UserType.AGENT and token is not None:
            return await self._resolve_agent(token)
        if claimed_role == UserType.CLIENT and timeline is not None:
            return await self._resolve_client(timeline)
        return self._anonymous()

    async def _resolve_agent(self, token: str) -> Identity:
        try:
            verified = await self._verifier.verify(token)
        except CredentialRejected as exc:
            logger.warning("realtime.identity.credential_rejected", reason=str(exc))
            return SyntheticIdentity(
                user_id=FALLBACK_AGENT_ID,
                role=UserType.AGENT,
                derived_from=SyntheticSource.REJECTED_CREDENTIAL,
            )
        except Exception as exc:
            raise IdentityResolutionError("credential verification failed") from exc
        return VerifiedIdentity(
            user_id=verified.subject,
            subject=verified.subject,
            claims=verified.claims,
        )

    async def _resolve_client(self, timeline_id: str) -> Identity:
        try:
            client = await self._store.get_timeline_client(timeline_id)
        except Exception as exc:
            logger.warning(
                "realtime.identity.timeline_lookup_failed",
                timeline_id=timeline_id,
                error=str(exc),
            )
            return synthetic_client(timeline_id)
        if client is None:
            return synthetic_client(timeline_id)
        return LinkedIdentity(user_id=client.id, timeline_id=timeline_id)

    def _anonymous(self) -> AnonymousIdentity:
        issued_at = self._clock_ms()
        return AnonymousIdentity(user_id=f"{ANONYMOUS_PREFIX}{issued_at}", issued_at_ms=issued_at)
