"""Retry orchestration: classify, back off, trip breakers, escalate."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from ..errors import ShutdownRequested, TerminalFailureError
from ..events import EventWriter
from ..ledger import StagingLedger
from ..models.resilience import Classification
from ..shutdown import ShutdownSignal
from .backoff import UniformSource, compute_delay
from .circuit_breaker import CircuitBreakerRegistry
from .classifier import ErrorContext, classify
from .escalation import EscalationHandler
from .policies import PolicyTable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ExecutionResult(Generic[T]):
    """Outcome of a successful execute().

    `skipped` is True when the capture was already terminal and the
    operation was not invoked.
    """

    value: Optional[T]
    attempts: int
    skipped: bool = False


class RetryOrchestrator:
    """Runs one operation under the retry, breaker and escalation rules.

    Attempt numbers are read back from the ledger's error events, so a
    crash in the middle of a retry loop resumes the same attempt budget.
    """

    def __init__(
        self,
        ledger: StagingLedger,
        breakers: CircuitBreakerRegistry,
        escalation: EscalationHandler,
        policies: Optional[PolicyTable] = None,
        events: Optional[EventWriter] = None,
        shutdown: Optional[ShutdownSignal] = None,
        rng: Optional[UniformSource] = None,
    ):
        self.ledger = ledger
        self.breakers = breakers
        self.escalation = escalation
        self.policies = policies or PolicyTable()
        self.events = events
        self.shutdown = shutdown or ShutdownSignal()
        self.rng = rng or random.Random()

    def execute(self, operation: Callable[[], T], context: ErrorContext) -> ExecutionResult[T]:
        """Run `operation` until it succeeds or fails terminally.

        Raises:
            CircuitOpenError: The dependency's breaker rejected the call
            TerminalFailureError: Non-retriable failure or attempts exhausted;
                the escalation action has already been carried out
            ShutdownRequested: Shutdown was signalled during a backoff wait
        """
        capture_id = context.capture_id
        breaker = self.breakers.get(context.dependency)
        local_failures = 0
        invocations = 0

        self._escalate_exhausted_budget(context)

        while True:
            if capture_id is not None and self.ledger.is_terminal(capture_id):
                logger.debug("Capture %s already terminal; skipping %s", capture_id, context.stage.value)
                return ExecutionResult(value=None, attempts=invocations, skipped=True)

            breaker.allow()
            invocations += 1
            try:
                value = operation()
            except Exception as error:
                classification = classify(error, context)
                policy = self.policies.for_kind(classification.kind)
                if capture_id is not None:
                    attempt = self.ledger.count_attempts(capture_id, context.stage) + 1
                else:
                    attempt = local_failures + 1
                local_failures += 1

                if policy.circuit_breaker_threshold is not None:
                    breaker.record_failure(threshold=policy.circuit_breaker_threshold)
                else:
                    breaker.release_probe()

                retriable = classification.retriable and policy.retriable
                if not retriable or attempt >= policy.max_attempts:
                    self._fail(classification, context, error, attempt)

                self.ledger.record_error_event(
                    capture_id,
                    context.stage,
                    classification.kind,
                    str(error),
                    attempt_number=attempt,
                )
                delay = compute_delay(policy, attempt - 1, self.rng)
                logger.info(
                    "Retrying %s/%s capture=%s after %s (attempt %d/%d) in %.2fs",
                    context.stage.value,
                    context.dependency,
                    capture_id,
                    classification.kind.value,
                    attempt,
                    policy.max_attempts,
                    delay,
                )
                if self.events is not None:
                    self.events.emit(
                        "retry_attempt",
                        {
                            "stage": context.stage.value,
                            "dependency": context.dependency,
                            "error_kind": classification.kind.value,
                            "attempt": attempt,
                            "max_attempts": policy.max_attempts,
                            "delay_seconds": round(delay, 3),
                        },
                        capture_id=capture_id,
                    )
                if self.shutdown.wait(delay):
                    raise ShutdownRequested(
                        f"Shutdown requested while backing off {context.stage.value}"
                    ) from error
                continue

            breaker.record_success()
            return ExecutionResult(value=value, attempts=invocations)

    def _fail(
        self,
        classification: Classification,
        context: ErrorContext,
        error: BaseException,
        attempt: int,
    ) -> None:
        action = self.policies.escalation_for(classification.kind)
        self.ledger.record_error_event(
            context.capture_id,
            context.stage,
            classification.kind,
            str(error),
            attempt_number=attempt,
            escalation_action=action,
        )
        self.escalation.escalate(action, classification, context, error, attempt)
        raise TerminalFailureError(classification, action, attempt, error) from error


    def _escalate_exhausted_budget(self, context: ErrorContext) -> None:
        """Finish an escalation a crash interrupted.

        Two states mean the budget for this (capture, stage) is already spent:
        the latest event carries a dead-lettering escalation but the capture
        never reached a terminal status, or a full budget of failures sits in
        the ledger with no escalation recorded. Either way escalate now instead
        of invoking the operation again. Only an operator reset opens a fresh
        budget.
        """
        if context.capture_id is None or self.ledger.is_terminal(context.capture_id):
            return
        last = self.ledger.latest_error_event(context.capture_id, context.stage)
        if last is None:
            return
        classification = Classification(
            kind=last.error_kind, retriable=last.error_kind.retriable, rule="ledger_replay"
        )
        error = RuntimeError(last.message)

        if last.escalation_action is not None:
            # Breaker and cursor escalations leave the capture pending on purpose
            if not last.escalation_action.dead_letters:
                return
            logger.warning(
                "Capture %s was escalated to %s at %s but is still pending; finishing escalation",
                context.capture_id,
                last.escalation_action.value,
                context.stage.value,
            )
            self.escalation.escalate(
                last.escalation_action, classification, context, error, last.attempt_number
            )
            raise TerminalFailureError(
                classification, last.escalation_action, last.attempt_number, error
            )

        prior = self.ledger.count_attempts(context.capture_id, context.stage)
        policy = self.policies.for_kind(last.error_kind)
        if prior < policy.max_attempts:
            return
        logger.warning(
            "Capture %s exhausted %d attempt(s) at %s before restart; escalating",
            context.capture_id,
            prior,
            context.stage.value,
        )
        self._fail(classification, context, error, prior)
