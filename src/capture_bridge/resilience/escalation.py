"""Escalation actions run once an operation has failed for good."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from ..models.ledger import ProcessingStage
from ..models.resilience import Classification, ErrorKind, EscalationAction
from .classifier import ErrorContext, classify

if TYPE_CHECKING:
    from ..events import EventWriter
    from ..export.writer import AtomicExportWriter
    from ..ledger import StagingLedger
    from .circuit_breaker import CircuitBreakerRegistry

logger = logging.getLogger(__name__)


class EscalationHandler:
    """Carries out an EscalationAction against the ledger, writer and breakers."""

    def __init__(
        self,
        ledger: "StagingLedger",
        breakers: "CircuitBreakerRegistry",
        writer: Optional["AtomicExportWriter"] = None,
        events: Optional["EventWriter"] = None,
    ):
        self.ledger = ledger
        self.breakers = breakers
        self.writer = writer
        self.events = events

    def escalate(
        self,
        action: EscalationAction,
        classification: Classification,
        context: ErrorContext,
        error: BaseException,
        attempts: int,
    ) -> None:
        reason = f"{classification.kind.value}: {error}"
        logger.warning(
            "Escalating %s at stage=%s dependency=%s capture=%s after %d attempt(s): %s",
            action.value,
            context.stage.value,
            context.dependency,
            context.capture_id,
            attempts,
            reason,
        )

        if action == EscalationAction.LOG_ONLY:
            return
        if action == EscalationAction.EXPORT_PLACEHOLDER:
            self._export_placeholder(classification.kind, context, reason, attempts)
        elif action == EscalationAction.REQUIRE_MANUAL_ACTION:
            self._quarantine(context, reason)
        elif action == EscalationAction.OPEN_CIRCUIT:
            self.breakers.get(context.dependency).force_open(reason)
        elif action == EscalationAction.RESET_UPSTREAM_CURSOR:
            self._reset_cursor(context)

    def _export_placeholder(
        self, kind: ErrorKind, context: ErrorContext, reason: str, attempts: int
    ) -> None:
        if context.capture_id is None or self.writer is None:
            logger.warning("No capture to export a placeholder for at stage=%s", context.stage.value)
            return
        capture = self.ledger.get(context.capture_id)
        if capture is None or self.ledger.is_terminal(capture.id):
            return
        try:
            self.writer.export_placeholder(capture, kind, reason, attempts)
        except Exception as e:
            failure = classify(e, context)
            self.ledger.record_error_event(
                capture.id,
                ProcessingStage.EXPORT,
                failure.kind,
                f"placeholder export failed: {e}",
                attempt_number=1,
                escalation_action=EscalationAction.LOG_ONLY,
            )
            if failure.kind == ErrorKind.IDENTITY_COLLISION:
                self._quarantine(context, f"{failure.kind.value}: {e}")
            else:
                logger.error("Placeholder export failed for %s: %s", capture.id, e)

    def _quarantine(self, context: ErrorContext, reason: str) -> None:
        if context.capture_id is None:
            logger.error("Manual action required at stage=%s: %s", context.stage.value, reason)
            return
        if self.ledger.is_terminal(context.capture_id):
            return
        self.ledger.quarantine(context.capture_id, reason)
        if self.events is not None:
            self.events.emit(
                "item_quarantined",
                {"stage": context.stage.value, "reason": reason},
                capture_id=context.capture_id,
            )

    def _reset_cursor(self, context: ErrorContext) -> None:
        channel = context.channel or context.dependency
        cleared = self.ledger.reset_cursor(channel)
        if self.events is not None:
            self.events.emit("cursor_reset", {"channel": channel, "cleared": cleared})
