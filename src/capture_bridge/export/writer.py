"""Atomic, idempotent export of captures into the vault inbox.

Write protocol for every note:

1. write the rendered note to a hidden, uniquely named temp file in inbox/
2. fsync the temp file
3. rename it onto inbox/<capture id>.md
4. fsync inbox/ so the rename itself is durable
5. record the export in the ledger

A crash before step 3 leaves only a temp file, removed at the next start.
A crash between steps 3 and 5 leaves an orphan note whose frontmatter id
matches its capture; recovery reconciles it without rewriting.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ..errors import IdentityCollisionError
from ..events import EventWriter
from ..ledger import StagingLedger
from ..models.capture import Capture, CaptureStatus
from ..models.ledger import ExportMode, ExportRecord
from ..models.resilience import ErrorKind
from ..state_machine import EXPORTED_STATUSES
from .markdown import parse_frontmatter, placeholder_body, render_capture
from .store import DestinationStore

logger = logging.getLogger(__name__)

INBOX_DIR = Path("inbox")


class AtomicExportWriter:
    """Writes each capture exactly once to `inbox/<capture id>.md`."""

    def __init__(
        self,
        store: DestinationStore,
        ledger: StagingLedger,
        events: Optional[EventWriter] = None,
        inbox_dir: Path = INBOX_DIR,
    ):
        self.store = store
        self.ledger = ledger
        self.events = events
        self.inbox_dir = inbox_dir

    def path_for(self, capture_id: str) -> Path:
        return self.inbox_dir / f"{capture_id}.md"

    def export(self, capture: Capture) -> ExportRecord:
        """Export a processed capture.

        Raises:
            IdentityCollisionError: The final path holds another capture's note
        """
        existing = self._already_exported(capture.id)
        if existing is not None:
            return existing

        final = self.path_for(capture.id)
        if self.store.exists(final):
            record = self._reconcile_existing(capture, final)
            if record is not None:
                return record
            raise IdentityCollisionError(
                f"{final} exists but does not belong to capture {capture.id}", path=str(final)
            )

        content = render_capture(capture, capture.raw_content, ExportMode.INITIAL)
        self._write_atomically(capture.id, final, content)
        record = self.ledger.record_export(capture.id, str(final), ExportMode.INITIAL)

        logger.info("Exported capture %s to %s", capture.id, final)
        if self.events is not None:
            self.events.emit(
                "export_completed",
                {"path": str(final), "mode": record.mode.value, "content_identity": capture.content_identity},
                capture_id=capture.id,
            )
        return record

    def export_placeholder(
        self, capture: Capture, error_kind: ErrorKind, reason: str, attempts: int
    ) -> ExportRecord:
        """Export the placeholder note for a capture whose content is unrecoverable."""
        existing = self._already_exported(capture.id)
        if existing is not None:
            return existing

        final = self.path_for(capture.id)
        body = placeholder_body(capture, error_kind, reason, attempts)
        if self.store.exists(final):
            record = self._reconcile_existing(capture, final)
            if record is not None:
                return record
            raise IdentityCollisionError(
                f"{final} exists but does not belong to capture {capture.id}", path=str(final)
            )

        content = render_capture(capture, body, ExportMode.PLACEHOLDER)
        self._write_atomically(capture.id, final, content)
        record = self.ledger.record_export(
            capture.id, str(final), ExportMode.PLACEHOLDER, raw_content=body
        )

        logger.warning("Exported placeholder for capture %s (%s)", capture.id, error_kind.value)
        if self.events is not None:
            self.events.emit(
                "placeholder_exported",
                {"path": str(final), "error_kind": error_kind.value, "attempts": attempts},
                capture_id=capture.id,
            )
        return record

    def reconcile_orphan(self, capture: Capture) -> Optional[ExportRecord]:
        """Record an export whose note reached disk before the ledger was updated.

        Returns None when there is no note for this capture at its final path.
        """
        final = self.path_for(capture.id)
        if not self.store.exists(final):
            return None
        record = self._reconcile_existing(capture, final)
        if record is None:
            logger.warning("Note at %s does not belong to capture %s; leaving it alone", final, capture.id)
        return record

    def cleanup_temp_files(self) -> int:
        """Remove temp files left behind by interrupted writes."""
        removed = 0
        for tmp in self.store.list_temp_files(self.inbox_dir):
            self.store.remove(tmp)
            removed += 1
            logger.info("Removed stale temp file %s", tmp)
        return removed

    def _already_exported(self, capture_id: str) -> Optional[ExportRecord]:
        capture = self.ledger.require(capture_id)
        if capture.status not in EXPORTED_STATUSES:
            return None
        return self.ledger.export_record_for(capture_id)

    def _reconcile_existing(self, capture: Capture, final: Path) -> Optional[ExportRecord]:
        content = self.store.read_text(final)
        frontmatter = parse_frontmatter(content)
        if frontmatter.get("id") != capture.id:
            return None

        if frontmatter.get("export_mode") == ExportMode.PLACEHOLDER.value:
            terminal = CaptureStatus.EXPORTED_PLACEHOLDER
            raw_content: Optional[str] = _body_of(content)
        else:
            terminal = CaptureStatus.EXPORTED
            raw_content = None

        record = self.ledger.record_export(
            capture.id,
            str(final),
            ExportMode.RECOVERY,
            raw_content=raw_content,
            terminal_status=terminal,
        )
        logger.warning("Reconciled existing note %s for capture %s", final, capture.id)
        if self.events is not None:
            self.events.emit(
                "export_completed",
                {"path": str(final), "mode": record.mode.value, "terminal_status": terminal.value},
                capture_id=capture.id,
            )
        return record

    def _write_atomically(self, capture_id: str, final: Path, content: str) -> None:
        tmp = self.store.write_temp(self.inbox_dir, content.encode("utf-8"), name_hint=capture_id)
        try:
            self.store.fsync(tmp)
            self.store.rename(tmp, final)
        except BaseException:
            self.store.remove(tmp)
            raise
        self.store.fsync(self.inbox_dir)


def _body_of(content: str) -> str:
    """Note body after the frontmatter block."""
    parts = content.split("\n---\n", 1)
    return parts[1].lstrip("\n").rstrip("\n") if len(parts) == 2 else content
