"""Exception hierarchy for Capture Bridge."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from .models.resilience import ErrorKind

if TYPE_CHECKING:
    from .models.resilience import Classification, EscalationAction


class CaptureBridgeError(Exception):
    """Base class for all Capture Bridge errors."""


class ClassifiedError(CaptureBridgeError):
    """Error that already knows its ErrorKind.

    Collaborators (pollers, workers, fetchers) may raise this to bypass
    rule-based classification.
    """

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ConfigError(CaptureBridgeError):
    """Invalid or unreadable configuration."""


class LedgerError(CaptureBridgeError):
    """Staging ledger failure."""


class CaptureNotFoundError(LedgerError):
    def __init__(self, capture_id: str):
        super().__init__(f"Capture not found: {capture_id}")
        self.capture_id = capture_id


class InvalidTransitionError(LedgerError):
    """Requested status change is not in the transition table."""

    def __init__(self, current: Any, target: Any):
        super().__init__(f"Invalid status transition: {_value(current)} -> {_value(target)}")
        self.current = current
        self.target = target


class ExportError(CaptureBridgeError):
    """Atomic export failed."""


class IdentityCollisionError(ExportError, ClassifiedError):
    """Final export path is occupied by an artifact that is not ours."""

    kind = ErrorKind.IDENTITY_COLLISION

    def __init__(self, message: str, path: Optional[str] = None):
        ClassifiedError.__init__(self, message)
        self.path = path


class CircuitOpenError(CaptureBridgeError):
    """Call rejected because the dependency's breaker is open."""

    def __init__(self, key: str, retry_after: float = 0.0):
        super().__init__(f"Circuit open for dependency '{key}' (retry after {retry_after:.1f}s)")
        self.key = key
        self.retry_after = retry_after


class TerminalFailureError(CaptureBridgeError):
    """Operation failed for good; its escalation action has already run."""

    def __init__(
        self,
        classification: "Classification",
        escalation: "EscalationAction",
        attempts: int,
        cause: BaseException,
    ):
        super().__init__(
            f"{classification.kind.value} after {attempts} attempt(s), "
            f"escalated to {escalation.value}: {cause}"
        )
        self.classification = classification
        self.escalation = escalation
        self.attempts = attempts
        self.cause = cause


class ShutdownRequested(CaptureBridgeError):
    """Shutdown was signalled while waiting between atomic units."""


def _value(status: Any) -> str:
    return getattr(status, "value", str(status))
