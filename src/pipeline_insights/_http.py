"""Response checking helpers shared by the HTTP-speaking adapters."""

from __future__ import annotations

from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from pipeline_insights.errors import BackendRequestError, DeserializationError

ModelT = TypeVar("ModelT", bound=BaseModel)


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, single-line error description from *response*."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("error_description")
        error_payload = payload.get("error")
        if not message and isinstance(error_payload, dict):
            message = error_payload.get("message")
        if isinstance(message, str) and message.strip():
            return " ".join(message.split())[:200]

    text = response.text.strip()
    if text:
        return " ".join(text.split())[:200]
    return response.reason_phrase or "unknown error"


def ensure_success(response: httpx.Response, *, operation: str, target: str) -> None:
    """Raise :class:`BackendRequestError` unless *response* has a 2xx status."""
    if response.status_code < 200 or response.status_code >= 300:
        raise BackendRequestError(
            status_code=response.status_code,
            operation=operation,
            target=target,
            message=safe_error_message(response),
        )


def decode_json(response: httpx.Response, *, operation: str) -> Any:
    """Return the decoded JSON body, or raise :class:`DeserializationError`."""
    if not response.content:
        raise DeserializationError(operation=operation, message="empty response body")
    try:
        return response.json()
    except ValueError as exc:
        raise DeserializationError(operation=operation, message="invalid JSON payload") from exc


def parse_model(model: type[ModelT], payload: Any, *, operation: str) -> ModelT:
    """Validate *payload* into *model*, mapping validation failures to deserialization errors."""
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or "<root>"
        raise DeserializationError(
            operation=operation,
            message=f"{location}: {first['msg']}",
        ) from exc
