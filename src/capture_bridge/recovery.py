"""Startup crash recovery.

Runs before any new polling:

1. delete temp files left by interrupted exports
2. reconcile notes that reached the vault before the ledger recorded them
3. quarantine voice captures whose audio file has vanished
4. flag captures that have not moved for a while
5. resume every pending capture, oldest first
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from .events import EventWriter
from .export.writer import AtomicExportWriter
from .ledger import StagingLedger
from .models.capture import Capture, CaptureSource, CaptureStatus
from .models.ledger import ProcessingStage
from .resilience.classifier import ErrorContext, classify

if TYPE_CHECKING:
    from .pipeline import CapturePipeline, PipelineSummary

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(minutes=10)
MISSING_FILE_REASON = "missing_file"


@dataclass
class RecoveryResult:
    temp_files_removed: int = 0
    pending_found: int = 0
    reconciled: int = 0
    quarantined_missing: int = 0
    stale: int = 0
    reconcile_errors: int = 0
    resumed: Optional["PipelineSummary"] = None


def recover(
    ledger: StagingLedger,
    writer: AtomicExportWriter,
    pipeline: Optional["CapturePipeline"] = None,
    events: Optional[EventWriter] = None,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
    now: Optional[Callable[[], datetime]] = None,
) -> RecoveryResult:
    """Bring the ledger and vault back in sync after an unclean stop.

    Args:
        ledger: Staging ledger
        writer: Export writer for the vault being recovered
        pipeline: When given, pending captures are resumed after reconciliation
        events: Optional event log for the recovery_completed event
        stale_after: Captures untouched for longer are logged as stale
        now: Clock override for tests

    Returns:
        RecoveryResult with counts for each step
    """
    now_fn = now or (lambda: datetime.now(timezone.utc))
    result = RecoveryResult()

    result.temp_files_removed = writer.cleanup_temp_files()

    pending = ledger.list_pending()
    result.pending_found = len(pending)
    cutoff = now_fn() - stale_after

    for capture in pending:
        try:
            record = writer.reconcile_orphan(capture)
        except Exception as e:
            result.reconcile_errors += 1
            context = ErrorContext(stage=ProcessingStage.RECOVERY, dependency="vault", capture_id=capture.id)
            ledger.record_error_event(
                capture.id,
                ProcessingStage.RECOVERY,
                classify(e, context).kind,
                str(e),
                attempt_number=1,
            )
            logger.error("Could not reconcile capture %s: %s", capture.id, e)
            continue
        if record is not None:
            result.reconciled += 1
            continue
        if _audio_missing(capture):
            _quarantine_missing(ledger, capture, events)
            result.quarantined_missing += 1
            continue
        if capture.updated_at < cutoff:
            result.stale += 1
            logger.warning(
                "Capture %s stuck in %s since %s; resuming",
                capture.id,
                capture.status.value,
                capture.updated_at.isoformat(),
            )

    if pipeline is not None:
        result.resumed = pipeline.run_pending()

    logger.info(
        "Recovery complete: %d temp file(s) removed, %d pending, %d reconciled, %d missing, %d stale",
        result.temp_files_removed,
        result.pending_found,
        result.reconciled,
        result.quarantined_missing,
        result.stale,
    )
    if events is not None:
        payload = {
            "temp_files_removed": result.temp_files_removed,
            "pending_found": result.pending_found,
            "reconciled": result.reconciled,
            "quarantined_missing": result.quarantined_missing,
            "stale": result.stale,
            "reconcile_errors": result.reconcile_errors,
        }
        if result.resumed is not None:
            payload["resumed_exported"] = result.resumed.exported
            payload["resumed_deferred"] = result.resumed.deferred
        events.emit("recovery_completed", payload)
    return result


def _audio_missing(capture: Capture) -> bool:
    """True for a staged voice capture whose local audio file is gone.

    Refs that are not absolute local paths belong to a remote fetcher and
    are left to the download stage.
    """
    if capture.source != CaptureSource.VOICE or capture.status != CaptureStatus.STAGED:
        return False
    ref = capture.source_metadata.get("local_path") or capture.payload_ref
    if not ref:
        return False
    path = Path(ref).expanduser()
    return path.is_absolute() and not path.exists()


def _quarantine_missing(ledger: StagingLedger, capture: Capture, events: Optional[EventWriter]) -> None:
    logger.warning("Audio for capture %s is missing; quarantining", capture.id)
    ledger.quarantine(capture.id, MISSING_FILE_REASON)
    if events is not None:
        events.emit(
            "item_quarantined",
            {"stage": ProcessingStage.RECOVERY.value, "reason": MISSING_FILE_REASON},
            capture_id=capture.id,
        )
