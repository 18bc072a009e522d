"""SQLite staging ledger: the durable source of truth for every capture.

Four relations live in one database file:

- captures        one row per ingested item, carrying its lifecycle status
- export_records  append-only, at most one row per capture
- error_events    append-only, one row per failed attempt
- sync_state      upstream cursors keyed by channel

Every transition is a single transaction that combines the status update
with any audit-row insert, so a crash leaves either the old state or the
new one, never a mix.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from ulid import ULID

from .errors import CaptureNotFoundError, InvalidTransitionError, LedgerError
from .models.capture import Capture, CaptureStatus, RawItem
from .models.ledger import ErrorEvent, ExportMode, ExportRecord, ProcessingStage
from .models.resilience import ErrorKind, EscalationAction
from .state_machine import (
    EXPORTED_STATUSES,
    TERMINAL_STATUSES,
    assert_transition,
    transition_path,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS captures(
  id TEXT PRIMARY KEY,
  source TEXT NOT NULL CHECK (source IN ('voice', 'email')),
  external_id TEXT NOT NULL,
  content_identity TEXT,
  raw_content TEXT NOT NULL DEFAULT '',
  status TEXT NOT NULL CHECK (status IN (
    'staged', 'processed', 'exported', 'exported_duplicate',
    'exported_placeholder', 'quarantined'
  )),
  attempt_count INTEGER NOT NULL DEFAULT 0,
  last_attempt_at TEXT,
  last_reset_at TEXT,
  source_metadata_json TEXT NOT NULL DEFAULT '{}',
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  UNIQUE(source, external_id)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_captures_content_identity
  ON captures(content_identity) WHERE content_identity IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_captures_status ON captures(status, created_at);

CREATE TRIGGER IF NOT EXISTS trg_captures_identity_immutable
BEFORE UPDATE OF content_identity ON captures
WHEN OLD.content_identity IS NOT NULL
  AND (NEW.content_identity IS NULL OR NEW.content_identity != OLD.content_identity)
BEGIN
  SELECT RAISE(ABORT, 'content_identity is immutable once bound');
END;

CREATE TABLE IF NOT EXISTS export_records(
  id TEXT PRIMARY KEY,
  capture_id TEXT NOT NULL UNIQUE,
  destination_path TEXT,
  identity_at_export TEXT,
  mode TEXT NOT NULL CHECK (mode IN ('initial', 'duplicate_skip', 'placeholder', 'recovery')),
  exported_at TEXT NOT NULL,
  FOREIGN KEY(capture_id) REFERENCES captures(id)
);

CREATE TRIGGER IF NOT EXISTS trg_export_records_no_update
BEFORE UPDATE ON export_records
BEGIN
  SELECT RAISE(ABORT, 'export_records is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_export_records_no_delete
BEFORE DELETE ON export_records
BEGIN
  SELECT RAISE(ABORT, 'export_records is append-only');
END;

CREATE TABLE IF NOT EXISTS error_events(
  id TEXT PRIMARY KEY,
  capture_id TEXT,
  stage TEXT NOT NULL,
  error_kind TEXT NOT NULL,
  message TEXT NOT NULL,
  attempt_number INTEGER NOT NULL,
  escalation_action TEXT,
  dead_lettered INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL,
  FOREIGN KEY(capture_id) REFERENCES captures(id)
);

CREATE INDEX IF NOT EXISTS idx_error_events_capture_stage ON error_events(capture_id, stage);

CREATE TRIGGER IF NOT EXISTS trg_error_events_no_update
BEFORE UPDATE ON error_events
BEGIN
  SELECT RAISE(ABORT, 'error_events is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_error_events_no_delete
BEFORE DELETE ON error_events
BEGIN
  SELECT RAISE(ABORT, 'error_events is append-only');
END;

CREATE TABLE IF NOT EXISTS sync_state(
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
"""

# Default terminal status for each export mode; recovery must say which.
_MODE_TERMINAL = {
    ExportMode.INITIAL: CaptureStatus.EXPORTED,
    ExportMode.DUPLICATE_SKIP: CaptureStatus.EXPORTED_DUPLICATE,
    ExportMode.PLACEHOLDER: CaptureStatus.EXPORTED_PLACEHOLDER,
    ExportMode.RECOVERY: CaptureStatus.EXPORTED,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, default=str)


@dataclass(frozen=True)
class StageResult:
    capture: Capture
    duplicate: bool


@dataclass(frozen=True)
class BindResult:
    """Outcome of binding a content identity.

    `bound` is False when another capture already owned the identity; the
    capture has then been moved to exported_duplicate and `duplicate_of`
    names the owner.
    """

    bound: bool
    duplicate_of: Optional[str] = None


@dataclass(frozen=True)
class DeadLetter:
    capture: Capture
    event: ErrorEvent


class StagingLedger:
    """Durable capture state machine backed by SQLite.

    Holds a single connection; every mutation runs under one re-entrant lock
    so the ledger has exactly one writer.
    """

    def __init__(self, db_path: Path, now: Optional[Callable[[], datetime]] = None):
        self.db_path = db_path
        self._now = now or _utc_now
        self._lock = threading.RLock()
        self._last_id = 0
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = self._connect()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = FULL")
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_schema(self) -> None:
        with self._lock:
            version = self._conn.execute("PRAGMA user_version").fetchone()[0]
            if version >= SCHEMA_VERSION:
                return
            self._conn.executescript(_SCHEMA)
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            self._conn.commit()
            logger.debug("Initialized ledger schema v%d at %s", SCHEMA_VERSION, self.db_path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "StagingLedger":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _timestamp(self) -> str:
        return self._now().astimezone(timezone.utc).isoformat(timespec="microseconds")

    def _new_id(self) -> str:
        """ULID that sorts after every id this ledger handed out before.

        Two ULIDs minted in the same millisecond order randomly; an id that
        would not sort after the previous one is bumped by one instead.
        """
        with self._lock:
            value = int(ULID())
            if value <= self._last_id:
                value = self._last_id + 1
            self._last_id = value
            return str(ULID.from_int(value))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, capture_id: str) -> Optional[Capture]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM captures WHERE id = ?", (capture_id,)).fetchone()
        return Capture.from_row(row) if row is not None else None

    def require(self, capture_id: str) -> Capture:
        capture = self.get(capture_id)
        if capture is None:
            raise CaptureNotFoundError(capture_id)
        return capture

    def status_of(self, capture_id: str) -> Optional[CaptureStatus]:
        capture = self.get(capture_id)
        return capture.status if capture is not None else None

    def is_terminal(self, capture_id: str) -> bool:
        status = self.status_of(capture_id)
        return status is not None and status in TERMINAL_STATUSES

    def list_pending(self) -> list[Capture]:
        """Non-terminal captures, oldest first."""
        return self._select_captures(
            "SELECT * FROM captures WHERE status IN ('staged', 'processed') ORDER BY created_at, id"
        )

    def list_by_status(self, status: CaptureStatus) -> list[Capture]:
        return self._select_captures(
            "SELECT * FROM captures WHERE status = ? ORDER BY created_at, id", (status.value,)
        )

    def list_all(self) -> list[Capture]:
        return self._select_captures("SELECT * FROM captures ORDER BY created_at, id")

    def list_quarantined(self) -> list[Capture]:
        return self.list_by_status(CaptureStatus.QUARANTINED)

    def list_dead_lettered(self) -> list[DeadLetter]:
        """Captures whose latest dead-lettered event postdates any operator reset."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT c.id AS capture_id, e.id AS event_id
                FROM captures c
                JOIN error_events e ON e.capture_id = c.id
                WHERE e.dead_lettered = 1
                  AND (c.last_reset_at IS NULL OR e.created_at > c.last_reset_at)
                ORDER BY c.created_at, c.id, e.rowid
                """
            ).fetchall()
            latest: dict[str, str] = {}
            for row in rows:
                latest[row["capture_id"]] = row["event_id"]
            entries = []
            for capture_id, event_id in latest.items():
                capture = self.require(capture_id)
                event_row = self._conn.execute(
                    "SELECT * FROM error_events WHERE id = ?", (event_id,)
                ).fetchone()
                entries.append(DeadLetter(capture=capture, event=ErrorEvent.from_row(event_row)))
        return entries

    def count_by_status(self) -> dict[CaptureStatus, int]:
        with self._lock:
            rows = self._conn.execute("SELECT status, COUNT(1) AS n FROM captures GROUP BY status").fetchall()
        counts = {status: 0 for status in CaptureStatus}
        for row in rows:
            counts[CaptureStatus(row["status"])] = int(row["n"])
        return counts

    def export_records_for(self, capture_id: str) -> list[ExportRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM export_records WHERE capture_id = ? ORDER BY rowid", (capture_id,)
            ).fetchall()
        return [ExportRecord.from_row(r) for r in rows]

    def export_record_for(self, capture_id: str) -> Optional[ExportRecord]:
        records = self.export_records_for(capture_id)
        return records[0] if records else None

    def error_events_for(
        self, capture_id: str, stage: Optional[ProcessingStage] = None
    ) -> list[ErrorEvent]:
        sql = "SELECT * FROM error_events WHERE capture_id = ?"
        params: list[Any] = [capture_id]
        if stage is not None:
            sql += " AND stage = ?"
            params.append(stage.value)
        sql += " ORDER BY rowid"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [ErrorEvent.from_row(r) for r in rows]

    def find_identity_owner(self, identity: str) -> Optional[Capture]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM captures WHERE content_identity = ?", (identity,)
            ).fetchone()
        return Capture.from_row(row) if row is not None else None

    def count_attempts(self, capture_id: str, stage: ProcessingStage) -> int:
        """Failed attempts for (capture, stage) since the last escalation or reset.

        An escalation closes an attempt budget; an operator reset opens a
        fresh one. Events recorded before either no longer count.
        """
        with self._lock:
            capture_row = self._conn.execute(
                "SELECT last_reset_at FROM captures WHERE id = ?", (capture_id,)
            ).fetchone()
            if capture_row is None:
                raise CaptureNotFoundError(capture_id)
            boundary = self._conn.execute(
                """
                SELECT COALESCE(MAX(rowid), 0) FROM error_events
                WHERE capture_id = ? AND stage = ? AND escalation_action IS NOT NULL
                """,
                (capture_id, stage.value),
            ).fetchone()[0]
            sql = "SELECT COUNT(1) FROM error_events WHERE capture_id = ? AND stage = ? AND rowid > ?"
            params: list[Any] = [capture_id, stage.value, boundary]
            if capture_row["last_reset_at"] is not None:
                sql += " AND created_at > ?"
                params.append(capture_row["last_reset_at"])
            return int(self._conn.execute(sql, params).fetchone()[0])

    def latest_error_event(self, capture_id: str, stage: ProcessingStage) -> Optional[ErrorEvent]:
        """Most recent error event for (capture, stage) since the last operator reset."""
        with self._lock:
            capture_row = self._conn.execute(
                "SELECT last_reset_at FROM captures WHERE id = ?", (capture_id,)
            ).fetchone()
            if capture_row is None:
                raise CaptureNotFoundError(capture_id)
            sql = "SELECT * FROM error_events WHERE capture_id = ? AND stage = ?"
            params: list[Any] = [capture_id, stage.value]
            if capture_row["last_reset_at"] is not None:
                sql += " AND created_at > ?"
                params.append(capture_row["last_reset_at"])
            row = self._conn.execute(sql + " ORDER BY rowid DESC LIMIT 1", params).fetchone()
        return ErrorEvent.from_row(row) if row is not None else None

    def _select_captures(self, sql: str, params: tuple = ()) -> list[Capture]:
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [Capture.from_row(r) for r in rows]

    def _fetch(self, capture_id: str) -> Capture:
        row = self._conn.execute("SELECT * FROM captures WHERE id = ?", (capture_id,)).fetchone()
        if row is None:
            raise CaptureNotFoundError(capture_id)
        return Capture.from_row(row)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def stage(self, item: RawItem) -> StageResult:
        """Insert a new capture in `staged`.

        The (source, external_id) pair is unique: re-staging the same item
        returns the existing capture with `duplicate=True`.
        """
        now = self._timestamp()
        metadata = dict(item.metadata)
        metadata["payload_ref"] = item.payload_ref
        metadata["discovered_at"] = item.discovered_at.isoformat()
        capture_id = self._new_id()

        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        """
                        INSERT INTO captures(
                          id, source, external_id, content_identity, raw_content, status,
                          attempt_count, source_metadata_json, created_at, updated_at
                        )
                        VALUES(?, ?, ?, NULL, ?, 'staged', 0, ?, ?, ?)
                        """,
                        (
                            capture_id,
                            item.source.value,
                            item.external_id,
                            item.body or "",
                            _json_dumps(metadata),
                            now,
                            now,
                        ),
                    )
            except sqlite3.IntegrityError:
                row = self._conn.execute(
                    "SELECT * FROM captures WHERE source = ? AND external_id = ?",
                    (item.source.value, item.external_id),
                ).fetchone()
                if row is None:
                    raise
                logger.debug("Already staged: %s %s", item.source.value, item.external_id)
                return StageResult(capture=Capture.from_row(row), duplicate=True)
            capture = self._fetch(capture_id)

        logger.debug("Staged %s capture %s (%s)", item.source.value, capture_id, item.external_id)
        return StageResult(capture=capture, duplicate=False)

    def bind_identity(self, capture_id: str, identity: str) -> BindResult:
        """Bind a content identity, or resolve the capture as a duplicate.

        Runs as one transaction. When another capture already owns the
        identity (including losing a race on the unique index) the capture
        walks staged -> processed -> exported_duplicate and receives a
        duplicate_skip export record pointing at the owner's artifact.
        """
        with self._lock, self._conn:
            capture = self._fetch(capture_id)
            if capture.content_identity == identity:
                return BindResult(bound=True)
            if capture.content_identity is not None:
                raise LedgerError(
                    f"Capture {capture_id} already bound to a different identity"
                )
            if capture.status in TERMINAL_STATUSES:
                raise InvalidTransitionError(capture.status, capture.status)

            owner = self._owner_of(identity, exclude=capture_id)
            if owner is None:
                try:
                    self._conn.execute(
                        "UPDATE captures SET content_identity = ?, updated_at = ? WHERE id = ?",
                        (identity, self._timestamp(), capture_id),
                    )
                    return BindResult(bound=True)
                except sqlite3.IntegrityError:
                    owner = self._owner_of(identity, exclude=capture_id)
                    if owner is None:
                        raise

            owner_record = self._conn.execute(
                "SELECT destination_path FROM export_records WHERE capture_id = ?", (owner.id,)
            ).fetchone()
            self._walk(
                capture,
                CaptureStatus.EXPORTED_DUPLICATE,
                metadata_updates={"duplicate_of": owner.id},
            )
            self._insert_export_record(
                capture_id,
                destination_path=owner_record["destination_path"] if owner_record else None,
                identity=identity,
                mode=ExportMode.DUPLICATE_SKIP,
            )

        logger.info("Capture %s duplicates %s; skipping export", capture_id, owner.id)
        return BindResult(bound=False, duplicate_of=owner.id)

    def mark_processed(self, capture_id: str, raw_content: str) -> Capture:
        with self._lock, self._conn:
            capture = self._fetch(capture_id)
            assert_transition(capture.status, CaptureStatus.PROCESSED)
            self._walk(capture, CaptureStatus.PROCESSED, raw_content=raw_content)
            return self._fetch(capture_id)

    def record_export(
        self,
        capture_id: str,
        destination_path: Optional[str],
        mode: ExportMode,
        raw_content: Optional[str] = None,
        terminal_status: Optional[CaptureStatus] = None,
    ) -> ExportRecord:
        """Append the export record and move the capture to its exported state.

        Idempotent: when the capture already has its export record the
        existing row is returned unchanged.
        """
        target = terminal_status or _MODE_TERMINAL[mode]
        if target not in EXPORTED_STATUSES:
            raise InvalidTransitionError(mode, target)

        with self._lock, self._conn:
            capture = self._fetch(capture_id)
            existing = self._conn.execute(
                "SELECT * FROM export_records WHERE capture_id = ?", (capture_id,)
            ).fetchone()
            if existing is not None:
                if capture.status in EXPORTED_STATUSES:
                    return ExportRecord.from_row(existing)
                raise LedgerError(f"Capture {capture_id} has an export record but status {capture.status.value}")
            if mode == ExportMode.INITIAL:
                # Normal exports never skip the processed step
                assert_transition(capture.status, target)

            self._walk(capture, target, raw_content=raw_content)
            return self._insert_export_record(
                capture_id,
                destination_path=destination_path,
                identity=capture.content_identity,
                mode=mode,
            )

    def quarantine(self, capture_id: str, reason: str) -> Capture:
        """Park a capture until an operator resets it."""
        with self._lock, self._conn:
            capture = self._fetch(capture_id)
            if capture.status == CaptureStatus.QUARANTINED:
                return capture
            self._walk(
                capture,
                CaptureStatus.QUARANTINED,
                metadata_updates={"quarantine_reason": reason, "quarantined_at": self._timestamp()},
            )
            capture = self._fetch(capture_id)
        logger.warning("Quarantined capture %s: %s", capture_id, reason)
        return capture

    def reset_to_pending(self, capture_id: str) -> Capture:
        """Operator reset: quarantined -> staged with a fresh attempt budget."""
        with self._lock, self._conn:
            capture = self._fetch(capture_id)
            assert_transition(capture.status, CaptureStatus.STAGED, operator=True)
            now = self._timestamp()
            metadata = dict(capture.source_metadata)
            reason = metadata.pop("quarantine_reason", None)
            metadata.pop("quarantined_at", None)
            if reason is not None:
                metadata["last_quarantine_reason"] = reason
            self._conn.execute(
                """
                UPDATE captures
                SET status = 'staged', attempt_count = 0, last_attempt_at = NULL,
                    last_reset_at = ?, source_metadata_json = ?, updated_at = ?
                WHERE id = ?
                """,
                (now, _json_dumps(metadata), now, capture_id),
            )
            capture = self._fetch(capture_id)
        logger.info("Reset capture %s to staged", capture_id)
        return capture

    def update_metadata(self, capture_id: str, **updates: Any) -> Capture:
        """Merge fields into source_metadata without changing status."""
        with self._lock, self._conn:
            capture = self._fetch(capture_id)
            metadata = dict(capture.source_metadata)
            metadata.update(updates)
            self._conn.execute(
                "UPDATE captures SET source_metadata_json = ?, updated_at = ? WHERE id = ?",
                (_json_dumps(metadata), self._timestamp(), capture_id),
            )
            return self._fetch(capture_id)

    def record_error_event(
        self,
        capture_id: Optional[str],
        stage: ProcessingStage,
        error_kind: ErrorKind,
        message: str,
        attempt_number: int,
        escalation_action: Optional[EscalationAction] = None,
        dead_lettered: Optional[bool] = None,
    ) -> ErrorEvent:
        """Append one failed attempt; also bumps the capture's attempt bookkeeping."""
        if dead_lettered is None:
            dead_lettered = escalation_action is not None and escalation_action.dead_letters
        now = self._timestamp()
        event_id = self._new_id()

        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO error_events(
                  id, capture_id, stage, error_kind, message, attempt_number,
                  escalation_action, dead_lettered, created_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event_id,
                    capture_id,
                    stage.value,
                    error_kind.value,
                    message,
                    attempt_number,
                    escalation_action.value if escalation_action else None,
                    1 if dead_lettered else 0,
                    now,
                ),
            )
            if capture_id is not None:
                self._conn.execute(
                    "UPDATE captures SET attempt_count = ?, last_attempt_at = ?, updated_at = ? WHERE id = ?",
                    (attempt_number, now, now, capture_id),
                )
            row = self._conn.execute("SELECT * FROM error_events WHERE id = ?", (event_id,)).fetchone()
        return ErrorEvent.from_row(row)

    # ------------------------------------------------------------------
    # Sync cursors
    # ------------------------------------------------------------------

    def get_cursor(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute("SELECT value FROM sync_state WHERE key = ?", (key,)).fetchone()
        return str(row["value"]) if row is not None else None

    def set_cursor(self, key: str, value: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO sync_state(key, value, updated_at) VALUES(?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
                (key, value, self._timestamp()),
            )

    def reset_cursor(self, key: str) -> bool:
        """Forget a channel's cursor so the next poll starts from scratch."""
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM sync_state WHERE key = ?", (key,))
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    def backup(self, dest: Path) -> Path:
        """Copy a consistent snapshot of the ledger to `dest`.

        Uses SQLite's online backup API into a temp file beside `dest`, then
        renames it into place so a reader never sees a half-written copy.
        """
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(f".{dest.name}.{os.getpid()}.tmp")
        target = sqlite3.connect(str(tmp))
        try:
            with self._lock:
                self._conn.backup(target)
            # Standalone copy: no -wal or -shm files to carry around
            target.execute("PRAGMA journal_mode = DELETE")
        finally:
            target.close()
        try:
            os.replace(tmp, dest)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise
        logger.debug("Backed up ledger to %s", dest)
        return dest

    # ------------------------------------------------------------------
    # Internals (caller holds the lock and an open transaction)
    # ------------------------------------------------------------------

    def _owner_of(self, identity: str, exclude: str) -> Optional[Capture]:
        row = self._conn.execute(
            "SELECT * FROM captures WHERE content_identity = ? AND id != ?", (identity, exclude)
        ).fetchone()
        return Capture.from_row(row) if row is not None else None

    def _walk(
        self,
        capture: Capture,
        target: CaptureStatus,
        raw_content: Optional[str] = None,
        metadata_updates: Optional[dict[str, Any]] = None,
    ) -> None:
        """Step through every intermediate status on the way to `target`."""
        for step in transition_path(capture.status, target):
            self._conn.execute(
                "UPDATE captures SET status = ?, attempt_count = 0, updated_at = ? WHERE id = ?",
                (step.value, self._timestamp(), capture.id),
            )
        if raw_content is not None:
            self._conn.execute(
                "UPDATE captures SET raw_content = ? WHERE id = ?", (raw_content, capture.id)
            )
        if metadata_updates:
            metadata = dict(capture.source_metadata)
            metadata.update(metadata_updates)
            self._conn.execute(
                "UPDATE captures SET source_metadata_json = ? WHERE id = ?",
                (_json_dumps(metadata), capture.id),
            )

    def _insert_export_record(
        self,
        capture_id: str,
        destination_path: Optional[str],
        identity: Optional[str],
        mode: ExportMode,
    ) -> ExportRecord:
        record_id = self._new_id()
        self._conn.execute(
            """
            INSERT INTO export_records(id, capture_id, destination_path, identity_at_export, mode, exported_at)
            VALUES(?, ?, ?, ?, ?, ?)
            """,
            (record_id, capture_id, destination_path, identity, mode.value, self._timestamp()),
        )
        row = self._conn.execute("SELECT * FROM export_records WHERE id = ?", (record_id,)).fetchone()
        return ExportRecord.from_row(row)
