"""Shared request validation helpers for task escrow routers."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.services.task_ledger import SQLITE_MAX_INTEGER


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


def extract_token(data: dict[str, Any], field_name: str) -> str:
    """Extract and validate a token field from parsed JSON body."""
    if field_name not in data:
        raise ServiceError(
            "INVALID_JWS",
            f"Missing required field: {field_name}",
            400,
            {},
        )

    value = data[field_name]

    if value is None:
        raise ServiceError(
            "INVALID_JWS",
            f"Field '{field_name}' must not be null",
            400,
            {},
        )

    if not isinstance(value, str):
        raise ServiceError(
            "INVALID_JWS",
            f"Field '{field_name}' must be a string",
            400,
            {},
        )

    if not value:
        raise ServiceError(
            "INVALID_JWS",
            f"Field '{field_name}' must not be empty",
            400,
            {},
        )

    return value


def _decimal_id(raw: str) -> int | None:
    """Parse an ASCII decimal id that fits an SQLite INTEGER, or return None."""
    if (
        not raw.isascii()
        or not raw.isdigit()
        or len(raw) > len(str(SQLITE_MAX_INTEGER))
        or int(raw) > SQLITE_MAX_INTEGER
    ):
        return None
    return int(raw)


def parse_task_id(raw: str) -> int:
    """Convert a URL task id to an int. Anything but an in-range decimal id names no task."""
    task_id = _decimal_id(raw)
    if task_id is None:
        raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": raw})
    return task_id


def require_matching_task_id(payload: dict[str, Any], task_id: int) -> None:
    """Check that the signed payload targets the task named in the URL."""
    if "task_id" not in payload:
        raise ServiceError(
            "INVALID_PAYLOAD",
            "JWS payload must include a 'task_id' field",
            400,
            {},
        )

    signed_task_id = payload["task_id"]
    matches = False
    if isinstance(signed_task_id, int) and not isinstance(signed_task_id, bool):
        matches = signed_task_id == task_id
    elif isinstance(signed_task_id, str):
        matches = _decimal_id(signed_task_id) == task_id

    if not matches:
        raise ServiceError(
            "INVALID_PAYLOAD",
            "Payload task_id does not match URL",
            400,
            {},
        )


def require_field(payload: dict[str, Any], field_name: str) -> Any:
    """Return a required payload field, raising INVALID_PAYLOAD if missing."""
    if field_name not in payload:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Missing required field: {field_name}",
            400,
            {},
        )
    return payload[field_name]


def parse_deadline(value: Any) -> datetime:
    """
    Parse a deadline given as an ISO 8601 string or as Unix seconds.

    A string without a UTC offset is returned naive so the ledger can
    reject it.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=UTC)
        except (OverflowError, OSError, ValueError) as exc:
            raise ServiceError(
                "INVALID_DEADLINE",
                "Deadline is out of range",
                400,
                {},
            ) from exc

    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError as exc:
            raise ServiceError(
                "INVALID_DEADLINE",
                "Deadline must be an ISO 8601 timestamp",
                400,
                {},
            ) from exc

    raise ServiceError(
        "INVALID_DEADLINE",
        "Deadline must be an ISO 8601 string or Unix seconds",
        400,
        {},
    )


def parse_non_negative_int(raw: str | None, name: str) -> int | None:
    """Parse an optional non-negative integer query parameter."""
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise ServiceError("INVALID_PAYLOAD", f"{name} must be an integer", 400, {}) from exc
    if value < 0:
        raise ServiceError("INVALID_PAYLOAD", f"{name} must be >= 0", 400, {})
    if value > SQLITE_MAX_INTEGER:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"{name} must be <= {SQLITE_MAX_INTEGER}",
            400,
            {},
        )
    return value
