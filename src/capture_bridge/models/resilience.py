"""Pydantic models for error classification and retry policy."""

from enum import Enum

from pydantic import BaseModel, Field, model_validator


class ErrorKind(str, Enum):
    """Stable taxonomy every raw failure is mapped onto."""

    NETWORK_TRANSIENT = "NetworkTransient"
    RATE_LIMITED = "RateLimited"
    AUTH_EXPIRED = "AuthExpired"
    RESOURCE_TEMPORARILY_UNAVAILABLE = "ResourceTemporarilyUnavailable"
    RESOURCE_CORRUPT = "ResourceCorrupt"
    OUT_OF_MEMORY_OR_CAPACITY = "OutOfMemoryOrCapacity"
    PERMISSION_DENIED = "PermissionDenied"
    STORAGE_FULL = "StorageFull"
    IDENTITY_COLLISION = "IdentityCollision"
    CURSOR_INVALID = "CursorInvalid"
    UNKNOWN = "Unknown"

    @property
    def retriable(self) -> bool:
        return self in RETRIABLE_KINDS


RETRIABLE_KINDS = frozenset(
    {
        ErrorKind.NETWORK_TRANSIENT,
        ErrorKind.RATE_LIMITED,
        ErrorKind.RESOURCE_TEMPORARILY_UNAVAILABLE,
        ErrorKind.UNKNOWN,
    }
)


class EscalationAction(str, Enum):
    """What the retry orchestrator does once an operation fails for good."""

    LOG_ONLY = "log_only"
    EXPORT_PLACEHOLDER = "export_placeholder"
    RESET_UPSTREAM_CURSOR = "reset_upstream_cursor"
    REQUIRE_MANUAL_ACTION = "require_manual_action"
    OPEN_CIRCUIT = "open_circuit"

    @property
    def dead_letters(self) -> bool:
        """Whether the item lands in the dead-letter queue."""
        return self in (EscalationAction.EXPORT_PLACEHOLDER, EscalationAction.REQUIRE_MANUAL_ACTION)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class Classification(BaseModel):
    """Result of classifying a raw failure."""

    kind: ErrorKind
    retriable: bool
    rule: str = Field(description="Name of the rule that matched, for diagnostics")

    model_config = {"frozen": True}


class RetryPolicy(BaseModel):
    """Retry configuration for one ErrorKind.

    Delays are in seconds. `circuit_breaker_threshold` of None means failures
    of this kind are not counted by dependency breakers.
    """

    retriable: bool = True
    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=60.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter_fraction: float = Field(default=0.3, ge=0, le=1)
    circuit_breaker_threshold: int | None = Field(default=5, ge=1)
    escalation_action: EscalationAction = EscalationAction.EXPORT_PLACEHOLDER

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_delays(self) -> "RetryPolicy":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self
