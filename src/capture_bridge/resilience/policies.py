"""Default retry policies per ErrorKind, and config overrides."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from ..errors import ConfigError
from ..models.resilience import ErrorKind, EscalationAction, RetryPolicy


def _permanent(
    escalation: EscalationAction, circuit_breaker_threshold: Optional[int] = None
) -> RetryPolicy:
    return RetryPolicy(
        retriable=False,
        max_attempts=1,
        base_delay=0.0,
        max_delay=0.0,
        circuit_breaker_threshold=circuit_breaker_threshold,
        escalation_action=escalation,
    )


DEFAULT_POLICIES: dict[ErrorKind, RetryPolicy] = {
    ErrorKind.NETWORK_TRANSIENT: RetryPolicy(
        max_attempts=5,
        base_delay=1.0,
        max_delay=60.0,
        circuit_breaker_threshold=5,
        escalation_action=EscalationAction.EXPORT_PLACEHOLDER,
    ),
    ErrorKind.RATE_LIMITED: RetryPolicy(
        max_attempts=6,
        base_delay=30.0,
        max_delay=1800.0,
        circuit_breaker_threshold=None,
        escalation_action=EscalationAction.OPEN_CIRCUIT,
    ),
    ErrorKind.AUTH_EXPIRED: _permanent(EscalationAction.OPEN_CIRCUIT, circuit_breaker_threshold=1),
    ErrorKind.RESOURCE_TEMPORARILY_UNAVAILABLE: RetryPolicy(
        max_attempts=5,
        base_delay=2.0,
        max_delay=300.0,
        circuit_breaker_threshold=10,
        escalation_action=EscalationAction.EXPORT_PLACEHOLDER,
    ),
    ErrorKind.RESOURCE_CORRUPT: _permanent(EscalationAction.EXPORT_PLACEHOLDER),
    ErrorKind.OUT_OF_MEMORY_OR_CAPACITY: _permanent(EscalationAction.EXPORT_PLACEHOLDER),
    ErrorKind.PERMISSION_DENIED: _permanent(EscalationAction.REQUIRE_MANUAL_ACTION),
    ErrorKind.STORAGE_FULL: _permanent(EscalationAction.OPEN_CIRCUIT, circuit_breaker_threshold=1),
    ErrorKind.IDENTITY_COLLISION: _permanent(EscalationAction.REQUIRE_MANUAL_ACTION),
    ErrorKind.CURSOR_INVALID: _permanent(EscalationAction.RESET_UPSTREAM_CURSOR),
    ErrorKind.UNKNOWN: RetryPolicy(
        max_attempts=3,
        base_delay=1.0,
        max_delay=30.0,
        circuit_breaker_threshold=5,
        escalation_action=EscalationAction.EXPORT_PLACEHOLDER,
    ),
}

# Escalations that configuration may not change.
FORCED_ESCALATIONS: dict[ErrorKind, EscalationAction] = {
    ErrorKind.IDENTITY_COLLISION: EscalationAction.REQUIRE_MANUAL_ACTION,
}


class PolicyTable:
    """Lookup of RetryPolicy by ErrorKind with overrides applied."""

    def __init__(self, overrides: Optional[Mapping[ErrorKind, RetryPolicy]] = None):
        self._policies = dict(DEFAULT_POLICIES)
        for kind, policy in (overrides or {}).items():
            forced = FORCED_ESCALATIONS.get(kind)
            if forced is not None and policy.escalation_action != forced:
                policy = policy.model_copy(update={"escalation_action": forced})
            self._policies[kind] = policy

    def for_kind(self, kind: ErrorKind) -> RetryPolicy:
        return self._policies[kind]

    def escalation_for(self, kind: ErrorKind) -> EscalationAction:
        return FORCED_ESCALATIONS.get(kind, self._policies[kind].escalation_action)

    def as_dict(self) -> dict[ErrorKind, RetryPolicy]:
        return dict(self._policies)


def parse_policy_overrides(raw: Mapping[str, Any]) -> dict[ErrorKind, RetryPolicy]:
    """Build policies from `[retry.<ErrorKind>]` config tables.

    Each table only lists the fields it changes; the rest come from the
    default policy for that kind.

    Raises:
        ConfigError: Unknown kind or invalid field values
    """
    overrides: dict[ErrorKind, RetryPolicy] = {}
    for name, fields in raw.items():
        try:
            kind = ErrorKind(name)
        except ValueError:
            raise ConfigError(f"Unknown error kind in retry config: {name}") from None
        if not isinstance(fields, Mapping):
            raise ConfigError(f"retry.{name} must be a table")
        merged = DEFAULT_POLICIES[kind].model_dump()
        merged.update(fields)
        # TOML has no null; 0 or "none" means "not counted by breakers"
        if merged.get("circuit_breaker_threshold") in (0, "none"):
            merged["circuit_breaker_threshold"] = None
        try:
            overrides[kind] = RetryPolicy(**merged)
        except ValueError as e:
            raise ConfigError(f"Invalid retry policy for {name}: {e}") from e
    return overrides
