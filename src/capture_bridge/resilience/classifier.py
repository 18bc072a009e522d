"""Map raw failures onto the ErrorKind taxonomy.

Rules are evaluated in a fixed order and the first match wins, so the same
error and context always classify the same way.
"""

from __future__ import annotations

import errno
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import requests

from ..errors import ClassifiedError
from ..models.ledger import ProcessingStage
from ..models.resilience import Classification, ErrorKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ErrorContext:
    """Where an operation runs: its stage, dependency (breaker key) and capture."""

    stage: ProcessingStage
    dependency: str
    capture_id: Optional[str] = None
    channel: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

_ERRNO_KINDS: dict[int, ErrorKind] = {
    errno.ENOSPC: ErrorKind.STORAGE_FULL,
    errno.EDQUOT: ErrorKind.STORAGE_FULL,
    errno.EACCES: ErrorKind.PERMISSION_DENIED,
    errno.EPERM: ErrorKind.PERMISSION_DENIED,
    errno.EROFS: ErrorKind.PERMISSION_DENIED,
    errno.ENOENT: ErrorKind.RESOURCE_TEMPORARILY_UNAVAILABLE,
    errno.EAGAIN: ErrorKind.RESOURCE_TEMPORARILY_UNAVAILABLE,
    errno.EBUSY: ErrorKind.RESOURCE_TEMPORARILY_UNAVAILABLE,
    errno.ECONNRESET: ErrorKind.NETWORK_TRANSIENT,
    errno.ECONNREFUSED: ErrorKind.NETWORK_TRANSIENT,
    errno.ECONNABORTED: ErrorKind.NETWORK_TRANSIENT,
    errno.ETIMEDOUT: ErrorKind.NETWORK_TRANSIENT,
    errno.ENETDOWN: ErrorKind.NETWORK_TRANSIENT,
    errno.ENETUNREACH: ErrorKind.NETWORK_TRANSIENT,
    errno.EHOSTUNREACH: ErrorKind.NETWORK_TRANSIENT,
    errno.EPIPE: ErrorKind.NETWORK_TRANSIENT,
    errno.ENOMEM: ErrorKind.OUT_OF_MEMORY_OR_CAPACITY,
}

# (needles, kind) checked in order against the lowercased message.
_MESSAGE_RULES: list[tuple[tuple[str, ...], ErrorKind]] = [
    (("invalid_grant", "token expired", "unauthorized"), ErrorKind.AUTH_EXPIRED),
    (("rate limit", "quota exceeded", "too many requests"), ErrorKind.RATE_LIMITED),
    (("corrupt", "invalid audio", "invalid data found"), ErrorKind.RESOURCE_CORRUPT),
    (("out of memory", "heap"), ErrorKind.OUT_OF_MEMORY_OR_CAPACITY),
    (("dataless", "not yet downloaded"), ErrorKind.RESOURCE_TEMPORARILY_UNAVAILABLE),
    (("permission denied",), ErrorKind.PERMISSION_DENIED),
    (("no space left",), ErrorKind.STORAGE_FULL),
    (("econnrefused", "etimedout"), ErrorKind.NETWORK_TRANSIENT),
]

_RATE_LIMIT_HINTS = ("rate limit", "ratelimit", "quota", "too many requests")
_CURSOR_HINTS = ("historyid", "cursor")


def status_code_of(error: BaseException) -> Optional[int]:
    """Best-effort HTTP status extraction from client exceptions."""
    candidates: list[Any] = [
        getattr(error, "status_code", None),
        getattr(getattr(error, "response", None), "status_code", None),
        getattr(getattr(error, "resp", None), "status", None),
        getattr(error, "code", None),
    ]
    for value in candidates:
        if isinstance(value, bool):
            continue
        if isinstance(value, int) and 100 <= value <= 599:
            return value
        if isinstance(value, str) and value.isdigit() and 100 <= int(value) <= 599:
            return int(value)
    return None


def _message(error: BaseException) -> str:
    return str(error).lower()


def _by_explicit_kind(error: BaseException) -> Optional[ErrorKind]:
    if isinstance(error, ClassifiedError):
        return error.kind
    return None


def _by_memory(error: BaseException) -> Optional[ErrorKind]:
    if isinstance(error, MemoryError):
        return ErrorKind.OUT_OF_MEMORY_OR_CAPACITY
    return None


def _by_http_status(error: BaseException) -> Optional[ErrorKind]:
    status = status_code_of(error)
    if status is None:
        return None
    message = _message(error)
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status == 401:
        return ErrorKind.AUTH_EXPIRED
    if status == 403:
        if any(hint in message for hint in _RATE_LIMIT_HINTS):
            return ErrorKind.RATE_LIMITED
        return ErrorKind.PERMISSION_DENIED
    if status in (404, 410) and any(hint in message for hint in _CURSOR_HINTS):
        return ErrorKind.CURSOR_INVALID
    if status == 507:
        return ErrorKind.STORAGE_FULL
    if status == 408 or 500 <= status <= 599:
        return ErrorKind.NETWORK_TRANSIENT
    return None


def _by_errno(error: BaseException) -> Optional[ErrorKind]:
    code = getattr(error, "errno", None)
    if isinstance(code, int):
        return _ERRNO_KINDS.get(code)
    return None


def _by_exception_type(error: BaseException) -> Optional[ErrorKind]:
    if isinstance(error, (requests.ConnectionError, requests.Timeout)):
        return ErrorKind.NETWORK_TRANSIENT
    if isinstance(error, (TimeoutError, ConnectionError)):
        return ErrorKind.NETWORK_TRANSIENT
    return None


def _by_message(error: BaseException) -> Optional[ErrorKind]:
    message = _message(error)
    for needles, kind in _MESSAGE_RULES:
        if any(needle in message for needle in needles):
            return kind
    return None


RULES: list[tuple[str, Callable[[BaseException], Optional[ErrorKind]]]] = [
    ("explicit_kind", _by_explicit_kind),
    ("memory_error", _by_memory),
    ("http_status", _by_http_status),
    ("os_errno", _by_errno),
    ("exception_type", _by_exception_type),
    ("message", _by_message),
]


def classify(error: BaseException, context: Optional[ErrorContext] = None) -> Classification:
    """Classify a raw failure.

    Args:
        error: The exception raised by an operation
        context: Optional ErrorContext, used only for diagnostics

    Returns:
        Classification with the matched kind, its retriability and rule name
    """
    for name, rule in RULES:
        kind = rule(error)
        if kind is not None:
            return Classification(kind=kind, retriable=kind.retriable, rule=name)

    logger.warning(
        "unclassified error at stage=%s dependency=%s: %s: %s",
        context.stage.value if context else None,
        context.dependency if context else None,
        type(error).__name__,
        error,
    )
    return Classification(kind=ErrorKind.UNKNOWN, retriable=ErrorKind.UNKNOWN.retriable, rule="fallback")
