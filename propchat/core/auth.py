from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import jwt
from starlette.requests import HTTPConnection

from propchat.core.config import Settings

SUBJECT_CLAIMS: tuple[str, ...] = ("sub", "userId", "id")


class CredentialRejected(Exception):
    """The credential was checked and is not acceptable (bad signature, expired, no subject)."""


class VerifierNotConfigured(Exception):
    """No verification key is configured, so no credential can be checked."""


@dataclass(frozen=True, slots=True)
class VerifiedClaims:
    subject: str
    claims: dict[str, Any] = field(default_factory=dict)


class CredentialVerifier(Protocol):
    async def verify(self, token: str) -> VerifiedClaims: ...


def _subject_from_claims(claims: dict[str, Any]) -> str | None:
    for key in SUBJECT_CLAIMS:
        value = claims.get(key)
        if value is None:
            continue
        normalized = str(value).strip()
        if normalized:
            return normalized
    return None


class JwtCredentialVerifier:
    def __init__(
        self,
        *,
        secret: str | None,
        algorithm: str = "HS256",
        audience: str | None = None,
        issuer: str | None = None,
        leeway_s: int = 0,
    ) -> None:
        normalized = secret.strip() if secret is not None else ""
        self._secret = normalized or None
        self._algorithm = algorithm
        self._audience = audience
        self._issuer = issuer
        self._leeway_s = leeway_s

    @classmethod
    def from_settings(cls, settings: Settings) -> JwtCredentialVerifier:
        return cls(
            secret=settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            leeway_s=settings.jwt_leeway_s,
        )

    async def verify(self, token: str) -> VerifiedClaims:
        if self._secret is None:
            raise VerifierNotConfigured("JWT_SECRET is not set")
        decode_kwargs: dict[str, Any] = {
            "algorithms": [self._algorithm],
            "leeway": self._leeway_s,
        }
        if self._audience:
            decode_kwargs["audience"] = self._audience
        if self._issuer:
            decode_kwargs["issuer"] = self._issuer
        try:
            claims = jwt.decode(token, self._secret, **decode_kwargs)
        except jwt.InvalidTokenError as exc:
            raise CredentialRejected(str(exc)) from exc

        subject = _subject_from_claims(claims)
        if subject is None:
            raise CredentialRejected("token has no subject claim")
        return VerifiedClaims(subject=subject, claims=dict(claims))


def extract_bearer_token(connection: HTTPConnection) -> str | None:
    authorization = connection.headers.get("Authorization")
    if authorization is None:
        return None
    prefix = "bearer "
    lowered = authorization.lower()
    if not lowered.startswith(prefix):
        return None
    token = authorization[len(prefix) :].strip()
    return token if token else None

