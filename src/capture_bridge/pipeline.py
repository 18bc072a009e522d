"""Pipeline coordinator: ingest, process and export captures one at a time.

Per capture the flow is

    voice:  download -> bind audio fingerprint -> transcribe -> export
    email:  normalize -> bind body identity -> export

Each step runs under the retry orchestrator and is keyed by the capture id,
so re-running the pipeline after a crash resumes from the ledger state and
never redoes a completed step.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

from .config import CaptureBridgeConfig
from .errors import CircuitOpenError, ShutdownRequested, TerminalFailureError
from .events import EventWriter
from .export.store import LocalVaultStore
from .export.writer import AtomicExportWriter
from .hashing import audio_fingerprint, sha256_hex, text_identity
from .interfaces import ContentWorker, EmailBodyNormalizer, LocalFileFetcher, PayloadFetcher, SourcePoller
from .ledger import StagingLedger
from .models.capture import CaptureSource, CaptureStatus, RawItem
from .models.ledger import ProcessingStage
from .paths import BridgePaths
from .resilience.backoff import UniformSource
from .resilience.circuit_breaker import CircuitBreakerRegistry
from .resilience.classifier import ErrorContext
from .resilience.escalation import EscalationHandler
from .resilience.retry import RetryOrchestrator
from .shutdown import ShutdownSignal
from .state_machine import is_terminal

logger = logging.getLogger(__name__)

VAULT_DEPENDENCY = "vault"


@dataclass
class PipelineSummary:
    staged: int = 0
    duplicates_skipped: int = 0
    exported: int = 0
    exported_duplicate: int = 0
    placeholders: int = 0
    quarantined: int = 0
    deferred: int = 0
    interrupted: bool = False
    deferred_ids: list[str] = field(default_factory=list)

    def record(self, capture_id: str, status: Optional[CaptureStatus]) -> None:
        if status == CaptureStatus.EXPORTED:
            self.exported += 1
        elif status == CaptureStatus.EXPORTED_DUPLICATE:
            self.exported_duplicate += 1
        elif status == CaptureStatus.EXPORTED_PLACEHOLDER:
            self.placeholders += 1
        elif status == CaptureStatus.QUARANTINED:
            self.quarantined += 1
        else:
            self.deferred += 1
            self.deferred_ids.append(capture_id)


class CapturePipeline:
    """Strictly sequential coordinator over ledger, workers and writer."""

    def __init__(
        self,
        ledger: StagingLedger,
        writer: AtomicExportWriter,
        orchestrator: RetryOrchestrator,
        workers: Optional[dict[CaptureSource, ContentWorker]] = None,
        fetcher: Optional[PayloadFetcher] = None,
        events: Optional[EventWriter] = None,
        shutdown: Optional[ShutdownSignal] = None,
    ):
        self.ledger = ledger
        self.writer = writer
        self.orchestrator = orchestrator
        self.workers: dict[CaptureSource, ContentWorker] = {CaptureSource.EMAIL: EmailBodyNormalizer()}
        self.workers.update(workers or {})
        self.fetcher = fetcher or LocalFileFetcher()
        self.events = events
        self.shutdown = shutdown or orchestrator.shutdown

    @classmethod
    def from_paths(
        cls,
        paths: BridgePaths,
        config: Optional[CaptureBridgeConfig] = None,
        workers: Optional[dict[CaptureSource, ContentWorker]] = None,
        fetcher: Optional[PayloadFetcher] = None,
        shutdown: Optional[ShutdownSignal] = None,
        rng: Optional[UniformSource] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "CapturePipeline":
        """Wire ledger, event log, breakers, writer and orchestrator for a vault."""
        config = config or CaptureBridgeConfig(vault_path=paths.root)
        paths.ensure()
        shutdown = shutdown or ShutdownSignal()
        ledger = StagingLedger(paths.ledger_db)
        events = EventWriter(paths.events_file)
        breakers = CircuitBreakerRegistry(
            failure_threshold=config.breaker_failure_threshold,
            cooldown_seconds=config.breaker_cooldown_seconds,
            clock=clock,
            events=events,
        )
        writer = AtomicExportWriter(
            LocalVaultStore(paths.root), ledger, events, inbox_dir=paths.inbox.relative_to(paths.root)
        )
        escalation = EscalationHandler(ledger, breakers, writer=writer, events=events)
        orchestrator = RetryOrchestrator(
            ledger,
            breakers,
            escalation,
            policies=config.policy_table(),
            events=events,
            shutdown=shutdown,
            rng=rng or random.Random(),
        )
        return cls(ledger, writer, orchestrator, workers=workers, fetcher=fetcher, events=events, shutdown=shutdown)

    def close(self) -> None:
        self.ledger.close()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest(self, item: RawItem) -> str:
        """Stage a discovered item.

        Returns:
            "staged" for a new capture, "duplicate_skipped" when the same
            (source, external_id) was already staged
        """
        result = self.ledger.stage(item)
        if result.duplicate:
            self._emit(
                "duplicate_skipped",
                {"reason": "external_id", "external_id": item.external_id, "source": item.source.value},
                result.capture.id,
            )
            return "duplicate_skipped"
        self._emit(
            "item_staged",
            {"source": item.source.value, "external_id": item.external_id},
            result.capture.id,
        )
        return "staged"

    def poll(self, poller: SourcePoller) -> PipelineSummary:
        """Poll one channel from its stored cursor and stage what it finds.

        The cursor only advances after every item in the batch is staged;
        re-polling an already staged item is a cheap duplicate skip.
        """
        summary = PipelineSummary()
        cursor = self.ledger.get_cursor(poller.name)
        context = ErrorContext(stage=ProcessingStage.POLL, dependency=poller.name, channel=poller.name)
        try:
            batch = self.orchestrator.execute(lambda: poller.poll(cursor), context).value
        except TerminalFailureError as e:
            logger.error("Polling %s failed: %s", poller.name, e)
            return summary
        except CircuitOpenError as e:
            logger.info("Skipping poll of %s: %s", poller.name, e)
            return summary
        except ShutdownRequested:
            summary.interrupted = True
            return summary

        for item in batch.items:
            if self.ingest(item) == "staged":
                summary.staged += 1
            else:
                summary.duplicates_skipped += 1
        if batch.next_cursor is not None:
            self.ledger.set_cursor(poller.name, batch.next_cursor)
        return summary

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def run(self, items: Iterable[RawItem]) -> PipelineSummary:
        """Ingest `items`, then drive every pending capture to completion."""
        staged = 0
        duplicates = 0
        for item in items:
            if self.shutdown.is_set():
                break
            if self.ingest(item) == "staged":
                staged += 1
            else:
                duplicates += 1
        summary = self.run_pending()
        summary.staged = staged
        summary.duplicates_skipped = duplicates
        return summary

    def run_pending(self) -> PipelineSummary:
        """Process every non-terminal capture, oldest first."""
        summary = PipelineSummary()
        for capture in self.ledger.list_pending():
            if self.shutdown.is_set():
                summary.interrupted = True
                break
            try:
                status = self.process_capture(capture.id)
            except ShutdownRequested:
                logger.warning("Shutdown requested; capture %s left at %s", capture.id, self.ledger.status_of(capture.id))
                summary.interrupted = True
                break
            summary.record(capture.id, status)
        return summary

    def process_capture(self, capture_id: str) -> Optional[CaptureStatus]:
        """Advance one capture as far as it can go.

        Terminal failures have already been escalated by the orchestrator;
        an open circuit leaves the capture where it is for a later run.

        Raises:
            ShutdownRequested: Shutdown interrupted a backoff wait
        """
        try:
            self._advance(capture_id)
        except TerminalFailureError as e:
            logger.warning("Capture %s failed terminally: %s", capture_id, e)
        except CircuitOpenError as e:
            logger.info("Deferring capture %s: %s", capture_id, e)
        return self.ledger.status_of(capture_id)

    def _advance(self, capture_id: str) -> None:
        capture = self.ledger.require(capture_id)
        if is_terminal(capture.status):
            return

        if capture.status == CaptureStatus.STAGED:
            if capture.source == CaptureSource.VOICE:
                done = self._process_voice(capture_id)
            else:
                done = self._process_email(capture_id)
            if done:
                return

        capture = self.ledger.require(capture_id)
        if capture.status != CaptureStatus.PROCESSED:
            return
        if capture.content_identity is None:
            # Processed before an identity was bound (e.g. reset after a crash)
            if not self._bind(capture_id, text_identity(capture.raw_content)):
                return

        self.orchestrator.execute(
            lambda: self.writer.export(self.ledger.require(capture_id)),
            ErrorContext(stage=ProcessingStage.EXPORT, dependency=VAULT_DEPENDENCY, capture_id=capture_id),
        )

    def _process_voice(self, capture_id: str) -> bool:
        """Download, fingerprint and transcribe. Returns True when the capture is finished."""
        capture = self.ledger.require(capture_id)

        if capture.content_identity is None:
            payload_ref = capture.payload_ref or capture.external_id

            def fetch_and_fingerprint() -> tuple[Path, str]:
                path = self.fetcher.fetch(payload_ref)
                return path, audio_fingerprint(path)

            result = self.orchestrator.execute(
                fetch_and_fingerprint,
                ErrorContext(stage=ProcessingStage.DOWNLOAD, dependency=self.fetcher.name, capture_id=capture_id),
            )
            if result.skipped:
                return True
            local_path, fingerprint = result.value
            self.ledger.update_metadata(capture_id, local_path=str(local_path), audio_fingerprint=fingerprint)
            if not self._bind(capture_id, fingerprint):
                return True

        worker = self.workers.get(CaptureSource.VOICE)
        if worker is None:
            logger.warning("No transcriber configured; capture %s stays staged", capture_id)
            return True

        result = self.orchestrator.execute(
            lambda: worker.process(self.ledger.require(capture_id)),
            ErrorContext(stage=ProcessingStage.TRANSCRIBE, dependency=worker.name, capture_id=capture_id),
        )
        if result.skipped:
            return True
        self.ledger.mark_processed(capture_id, result.value)
        return False

    def _process_email(self, capture_id: str) -> bool:
        """Normalize and bind the body identity. Returns True when the capture is finished."""
        worker = self.workers[CaptureSource.EMAIL]
        result = self.orchestrator.execute(
            lambda: worker.process(self.ledger.require(capture_id)),
            ErrorContext(stage=ProcessingStage.NORMALIZE, dependency=worker.name, capture_id=capture_id),
        )
        if result.skipped:
            return True
        normalized = result.value
        if not self._bind(capture_id, sha256_hex(normalized)):
            return True
        self.ledger.mark_processed(capture_id, normalized)
        return False

    def _bind(self, capture_id: str, identity: str) -> bool:
        """Bind an identity; False when the capture turned out to be a duplicate."""
        bind = self.ledger.bind_identity(capture_id, identity)
        if bind.bound:
            return True
        self._emit(
            "duplicate_skipped",
            {"reason": "content_identity", "duplicate_of": bind.duplicate_of, "content_identity": identity},
            capture_id,
        )
        return False

    def _emit(self, event_type, payload: dict, capture_id: Optional[str] = None) -> None:
        if self.events is not None:
            self.events.emit(event_type, payload, capture_id=capture_id)
