from __future__ import annotations

from enum import StrEnum
from http import HTTPStatus
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException

from propchat.core.logging import get_logger
from propchat.security import redact_sensitive_text

logger = get_logger("propchat.api.errors")


class ErrorCode(StrEnum):
    UNAUTHORIZED = "UNAUTHORIZED"
    AUTH_UNAVAILABLE = "AUTH_UNAVAILABLE"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    CONVERSATION_NOT_FOUND = "CONVERSATION_NOT_FOUND"
    CONVERSATION_FORBIDDEN = "CONVERSATION_FORBIDDEN"
    CONVERSATION_CREATE_FAILED = "CONVERSATION_CREATE_FAILED"
    MESSAGE_NOT_FOUND = "MESSAGE_NOT_FOUND"
    PROPERTY_NOT_FOUND = "PROPERTY_NOT_FOUND"
    TIMELINE_NOT_FOUND = "TIMELINE_NOT_FOUND"
    NO_AGENTS_AVAILABLE = "NO_AGENTS_AVAILABLE"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    ROUTE_NOT_FOUND = "ROUTE_NOT_FOUND"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_STATUS: dict[ErrorCode, int] = {
    ErrorCode.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.AUTH_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.GATEWAY_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.CONVERSATION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.CONVERSATION_FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorCode.CONVERSATION_CREATE_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.MESSAGE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.PROPERTY_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.TIMELINE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.NO_AGENTS_AVAILABLE: status.HTTP_409_CONFLICT,
    ErrorCode.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_CONTENT,
    ErrorCode.ROUTE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.METHOD_NOT_ALLOWED: status.HTTP_405_METHOD_NOT_ALLOWED,
    ErrorCode.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class ValidationIssue(BaseModel):
    field: str
    message: str


class ErrorPayload(BaseModel):
    code: ErrorCode
    message: str
    issues: list[ValidationIssue] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: ErrorPayload
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed.",
                    "issues": [
                        {
                            "field": "query.page_size",
                            "message": "Input should be less than or equal to 200",
                        }
                    ],
                }
            }
        }
    )


class ApiException(Exception):
    """An error with a stable code; the HTTP status follows from the code."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        issues: list[ValidationIssue] | None = None,
    ) -> None:
        self.code = code
        self.status_code = ERROR_STATUS[code]
        self.message = message
        self.issues = issues or []
        super().__init__(message)


def _code_for_http_status(status_code: int) -> ErrorCode:
    if status_code == status.HTTP_401_UNAUTHORIZED:
        return ErrorCode.UNAUTHORIZED
    if status_code == status.HTTP_404_NOT_FOUND:
        return ErrorCode.ROUTE_NOT_FOUND
    if status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
        return ErrorCode.METHOD_NOT_ALLOWED
    return ErrorCode.INTERNAL_ERROR


def build_error_response(
    status_code: int,
    code: ErrorCode,
    message: str,
    *,
    issues: list[ValidationIssue] | None = None,
) -> JSONResponse:
    payload = ErrorResponse(
        error=ErrorPayload(
            code=code,
            message=redact_sensitive_text(message),
            issues=issues or [],
        )
    )
    return JSONResponse(status_code=status_code, content=payload.model_dump(mode="json"))


def _extract_validation_issues(exc: RequestValidationError) -> list[ValidationIssue]:
    return [
        ValidationIssue(
            field=".".join(str(part) for part in error.get("loc", ())),
            message=str(error.get("msg", "Invalid value")),
        )
        for error in exc.errors()
    ]


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiException)
    async def handle_api_exception(_: Request, exc: ApiException) -> JSONResponse:
        return build_error_response(exc.status_code, exc.code, exc.message, issues=exc.issues)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        return build_error_response(
            ERROR_STATUS[ErrorCode.VALIDATION_ERROR],
            ErrorCode.VALIDATION_ERROR,
            "Request validation failed.",
            issues=_extract_validation_issues(exc),
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(_: Request, exc: HTTPException) -> JSONResponse:
        message = exc.detail if isinstance(exc.detail, str) else HTTPStatus(exc.status_code).phrase
        return build_error_response(
            exc.status_code, _code_for_http_status(exc.status_code), message
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "api.unhandled_exception",
            path=request.url.path,
            error_type=type(exc).__name__,
        )
        return build_error_response(
            ERROR_STATUS[ErrorCode.INTERNAL_ERROR],
            ErrorCode.INTERNAL_ERROR,
            "Unexpected server error.",
        )


def error_response_docs(*codes: ErrorCode) -> dict[int | str, dict[str, Any]]:
    """OpenAPI ``responses`` entries, one per status, listing each code a route can return."""
    responses: dict[int | str, dict[str, Any]] = {}
    for code in codes:
        status_code = ERROR_STATUS[code]
        entry = responses.setdefault(
            status_code,
            {
                "model": ErrorResponse,
                "description": HTTPStatus(status_code).phrase,
                "content": {"application/json": {"examples": {}}},
            },
        )
        entry["content"]["application/json"]["examples"][code.value] = {
            "value": {
                "error": {
                    "code": code.value,
                    "message": HTTPStatus(status_code).phrase,
                    "issues": [],
                }
            }
        }
    return responses
