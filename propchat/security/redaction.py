from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_REPLACEMENT = "***REDACTED***"

_SENSITIVE_QUERY_KEYS: frozenset[str] = frozenset({"token", "access_token", "api_key"})

# Keep the key name visible, hide the value.
_ASSIGNMENT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)\b(token)\s*[:=]\s*([^\s,;&]+)"),
    re.compile(r"(?i)\b(access[_-]?token)\s*[:=]\s*([^\s,;&]+)"),
    re.compile(r"(?i)\b(refresh[_-]?token)\s*[:=]\s*([^\s,;&]+)"),
    re.compile(r"(?i)\b(api[_-]?key)\s*[:=]\s*([^\s,;&]+)"),
    re.compile(r"(?i)\b(secret(?:[_-]?key)?)\s*[:=]\s*([^\s,;&]+)"),
    re.compile(r"(?i)\b(password)\s*[:=]\s*([^\s,;&]+)"),
)

_BEARER_PATTERN = re.compile(r"(?i)\b(bearer)\s+([A-Za-z0-9\-_\.=]+)")

# header.payload.signature, each part base64url
_JWT_PATTERN = re.compile(r"\beyJ[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+")


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern in _ASSIGNMENT_PATTERNS:
        redacted = pattern.sub(lambda match: f"{match.group(1)}={_REPLACEMENT}", redacted)
    redacted = _BEARER_PATTERN.sub(lambda match: f"{match.group(1)} {_REPLACEMENT}", redacted)
    redacted = _JWT_PATTERN.sub(_REPLACEMENT, redacted)
    return redacted


def redact_url_query(url: str) -> str:
    """Return the url with credential-bearing query values masked."""
    parts = urlsplit(url)
    if not parts.query:
        return url
    pairs = [
        (key, _REPLACEMENT if key.lower() in _SENSITIVE_QUERY_KEYS else value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
    ]
    return urlunsplit(parts._replace(query=urlencode(pairs, safe="*")))
