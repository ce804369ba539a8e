"""
Request context for log correlation.

Each evaluation request can carry a request ID plus a few extra fields
(subject, tenant, ...). They live in contextvars, so concurrent asyncio tasks
and threads keep their own values, and the structlog processor below stamps
them onto every log line. The same request ID is forwarded to the remote
decision authority via get_correlation_headers().

USAGE:
    from montage.logger.context import with_request_context, set_extra_context

    async def handle(request_id: str, subject_id: str):
        async with with_request_context(request_id):
            set_extra_context(subject_id=subject_id)
            result = await service.evaluate_flag("dark_mode", ctx)

HEADERS USED:
    - X-Request-ID: Primary correlation ID
    - X-Correlation-ID: Alias for X-Request-ID
"""

from __future__ import annotations

import contextvars
import uuid
from typing import Any

_request_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id",
    default=None,
)

_extra_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "extra_context",
    default={},
)


def get_request_id() -> str | None:
    return _request_id.get()


def set_request_id(request_id: str) -> None:
    _request_id.set(request_id)


def generate_request_id() -> str:
    """Return a fresh UUID4 string."""
    return str(uuid.uuid4())


def get_extra_context() -> dict[str, Any]:
    return _extra_context.get().copy()


def set_extra_context(**kwargs: Any) -> None:
    """
    Add fields that every log line in the current context should carry.

    Example:
        set_extra_context(subject_id="user-123", environment="production")
    """
    current = _extra_context.get().copy()
    current.update(kwargs)
    _extra_context.set(current)


def clear_context() -> None:
    _request_id.set(None)
    _extra_context.set({})


def get_correlation_headers() -> dict[str, str]:
    """
    Headers to send to downstream services so their logs join ours.

    Returns an empty dict outside of a request context.
    """
    headers: dict[str, str] = {}
    request_id = get_request_id()
    if request_id:
        headers["X-Request-ID"] = request_id
        headers["X-Correlation-ID"] = request_id
    return headers


def inject_request_context(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """
    Structlog processor adding request_id and extra context to each event.

    Fields passed explicitly to the log call win over context fields.
    """
    request_id = get_request_id()
    if request_id:
        event_dict["request_id"] = request_id

    for key, value in get_extra_context().items():
        if key not in event_dict:
            event_dict[key] = value

    return event_dict


class _RequestContextManager:
    def __init__(self, request_id: str | None) -> None:
        self.request_id = request_id or generate_request_id()

    def __enter__(self) -> str:
        set_request_id(self.request_id)
        return self.request_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        clear_context()
        return False

    async def __aenter__(self) -> str:
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        return self.__exit__(exc_type, exc_val, exc_tb)


def with_request_context(request_id: str | None = None) -> _RequestContextManager:
    """
    Sync or async context manager binding a request ID (generated if None).

    Context is cleared on exit.
    """
    return _RequestContextManager(request_id)
