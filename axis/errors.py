"""Error types and helpers for the governance service."""

from __future__ import annotations

import re
from typing import Any

import click


class SchemaNotInitializedError(click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


class AxisError(Exception):
    """Base class for errors surfaced to callers with an HTTP-style status."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "code": self.code}
        payload.update(self.details)
        return payload


class InvalidRequestError(AxisError):
    """Bad input: missing ids, invalid enum values, malformed payloads."""

    status_code = 400
    code = "invalid_request"


class TaskStateError(InvalidRequestError):
    """The task is in a state that does not allow the operation."""

    code = "invalid_task_state"


class MaxAttemptsReachedError(TaskStateError):
    code = "max_attempts_reached"


class AlreadyProcessedError(InvalidRequestError):
    """The request/entry was already resolved; callers should re-sync and continue."""

    code = "already_processed"

    def __init__(self, message: str = "Request has already been processed", **details: Any) -> None:
        super().__init__(message, **details)


class StaleAttemptError(AxisError):
    """Another execution claimed this attempt first."""

    status_code = 409
    code = "stale_attempt"


class AuthenticationError(AxisError):
    status_code = 401
    code = "unauthorized"


class PermissionDeniedError(AxisError):
    status_code = 403
    code = "forbidden"


class NotFoundError(AxisError):
    status_code = 404
    code = "not_found"


class GatewayError(AxisError):
    """The AI inference gateway failed or returned an unusable response."""

    status_code = 502
    code = "gateway_error"


class GatewayRateLimitError(GatewayError):
    status_code = 429
    code = "rate_limited"


class GatewayQuotaError(GatewayError):
    status_code = 402
    code = "quota_exhausted"


class ExecutionBackendError(AxisError):
    """The task execution backend was unreachable or reported an error."""

    status_code = 502
    code = "execution_backend_error"


class InternalError(AxisError):
    status_code = 500
    code = "internal_error"


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        message = str(e)
        match = _PG_MISSING_RELATION_RE.search(message) or _SQLITE_MISSING_TABLE_RE.search(message)
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table / missing-schema error."""
    if missing_table_name(exc):
        return True

    # Fallback for drivers that don't format errors consistently.
    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
        if "does not exist" in message and "relation" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Database schema is not initialized{table_hint}.",
        "Run: `alembic upgrade head`",
        "Or validate with: `axis schema-check`",
    ]
    return "\n".join(lines)
