from propchat.security.redaction import redact_sensitive_text, redact_url_query

__all__ = [
    "redact_sensitive_text",
    "redact_url_query",
]
