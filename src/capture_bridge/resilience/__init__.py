"""Error classification, backoff, circuit breakers and retry orchestration."""

from .backoff import base_delay_for, compute_delay
from .circuit_breaker import BreakerSnapshot, CircuitBreaker, CircuitBreakerRegistry
from .classifier import ErrorContext, classify
from .escalation import EscalationHandler
from .policies import DEFAULT_POLICIES, PolicyTable, parse_policy_overrides
from .retry import ExecutionResult, RetryOrchestrator

__all__ = [
    "base_delay_for",
    "compute_delay",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "ErrorContext",
    "classify",
    "EscalationHandler",
    "DEFAULT_POLICIES",
    "PolicyTable",
    "parse_policy_overrides",
    "ExecutionResult",
    "RetryOrchestrator",
]
