"""Ledger backups: hourly snapshots, integrity verification, daily promotion.

Layout under the state directory:

    .backups/hourly/ledger-YYYYMMDD-HH.sqlite
    .backups/daily/ledger-YYYYMMDD.sqlite

Each snapshot is checked with `PRAGMA integrity_check`. Consecutive
verification failures are tracked in the ledger's sync_state; pruning stops
once they pile up so the last good copies are never rotated away.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .events import EventWriter
from .ledger import StagingLedger

logger = logging.getLogger(__name__)

VERIFICATION_STATE_KEY = "backup_verification_state"
DEFAULT_KEEP_HOURLY = 24
DEFAULT_KEEP_DAILY = 7

_HOURLY_RE = re.compile(r"^ledger-(\d{8})-(\d{2})\.sqlite$")
_DAILY_RE = re.compile(r"^ledger-(\d{8})\.sqlite$")


class VerificationStatus(str, Enum):
    """Backup health derived from consecutive verification failures."""

    HEALTHY = "healthy"
    WARN = "warn"
    DEGRADED = "degraded_backup"
    HALT_PRUNING = "halt_pruning"

    @classmethod
    def from_failures(cls, consecutive_failures: int) -> "VerificationStatus":
        if consecutive_failures <= 0:
            return cls.HEALTHY
        if consecutive_failures == 1:
            return cls.WARN
        if consecutive_failures == 2:
            return cls.DEGRADED
        return cls.HALT_PRUNING


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    problems: list[str] = field(default_factory=list)


@dataclass
class BackupResult:
    path: Path
    size_bytes: int
    verification: VerificationResult
    status: VerificationStatus
    consecutive_failures: int
    pruned: list[Path] = field(default_factory=list)


def hourly_backup_name(when: datetime) -> str:
    return f"ledger-{when.astimezone(timezone.utc):%Y%m%d-%H}.sqlite"


def verify_backup(path: Path) -> VerificationResult:
    """Open a backup read-only and run SQLite's integrity check."""
    if not path.exists():
        return VerificationResult(ok=False, problems=[f"backup not found: {path}"])
    try:
        conn = sqlite3.connect(f"{path.resolve().as_uri()}?mode=ro", uri=True)
        try:
            rows = [row[0] for row in conn.execute("PRAGMA integrity_check").fetchall()]
        finally:
            conn.close()
    except sqlite3.DatabaseError as e:
        return VerificationResult(ok=False, problems=[str(e)])
    if rows == ["ok"]:
        return VerificationResult(ok=True)
    return VerificationResult(ok=False, problems=rows)


def prune_backups(directory: Path, keep: int, pattern: re.Pattern = _HOURLY_RE) -> list[Path]:
    """Delete all but the newest `keep` backups matching `pattern`.

    Names sort chronologically, so the oldest are the first in sorted order.
    """
    if not directory.exists():
        return []
    backups = sorted(p for p in directory.iterdir() if pattern.match(p.name))
    doomed = backups[: max(0, len(backups) - max(0, keep))]
    for path in doomed:
        path.unlink()
        logger.debug("Pruned backup %s", path)
    return doomed


def load_verification_failures(ledger: StagingLedger) -> int:
    # sync_state doubles as a small key/value store
    raw = ledger.get_cursor(VERIFICATION_STATE_KEY)
    if raw is None:
        return 0
    try:
        return int(json.loads(raw).get("consecutive_failures", 0))
    except (ValueError, AttributeError):
        logger.warning("Ignoring unreadable backup verification state: %r", raw)
        return 0


def _save_verification_state(ledger: StagingLedger, failures: int, when: datetime, ok: bool) -> None:
    state = {
        "consecutive_failures": failures,
        "status": VerificationStatus.from_failures(failures).value,
    }
    state["last_success_at" if ok else "last_failure_at"] = when.isoformat()
    previous = ledger.get_cursor(VERIFICATION_STATE_KEY)
    if previous:
        try:
            merged = json.loads(previous)
        except ValueError:
            merged = {}
        if isinstance(merged, dict):
            merged.update(state)
            state = merged
    ledger.set_cursor(VERIFICATION_STATE_KEY, json.dumps(state, sort_keys=True))


def run_backup(
    ledger: StagingLedger,
    backups_dir: Path,
    keep: int = DEFAULT_KEEP_HOURLY,
    events: Optional[EventWriter] = None,
    now: Optional[Callable[[], datetime]] = None,
) -> BackupResult:
    """Take an hourly snapshot, verify it, record the outcome, then prune.

    Args:
        ledger: Live ledger to snapshot
        backups_dir: Root of the backup tree (<state_dir>/.backups)
        keep: Hourly snapshots to retain
        events: Optional event log for the backup_completed event
        now: Clock override for tests

    Returns:
        BackupResult describing the snapshot and the verification state
    """
    when = (now or (lambda: datetime.now(timezone.utc)))()
    dest = ledger.backup(backups_dir / "hourly" / hourly_backup_name(when))
    verification = verify_backup(dest)

    failures = 0 if verification.ok else load_verification_failures(ledger) + 1
    _save_verification_state(ledger, failures, when, verification.ok)
    status = VerificationStatus.from_failures(failures)

    pruned: list[Path] = []
    if verification.ok:
        pruned = prune_backups(dest.parent, keep)
    elif status == VerificationStatus.WARN:
        logger.warning("Backup %s failed verification: %s", dest, "; ".join(verification.problems))
    else:
        logger.error(
            "Backup %s failed verification (%d in a row, %s); pruning suspended",
            dest,
            failures,
            status.value,
        )

    result = BackupResult(
        path=dest,
        size_bytes=dest.stat().st_size,
        verification=verification,
        status=status,
        consecutive_failures=failures,
        pruned=pruned,
    )
    if events is not None:
        events.emit(
            "backup_completed",
            {
                "path": str(dest),
                "size_bytes": result.size_bytes,
                "verified": verification.ok,
                "status": status.value,
                "pruned": len(pruned),
            },
        )
    return result


def promote_daily(backups_dir: Path, day: datetime, keep: int = DEFAULT_KEEP_DAILY) -> Optional[Path]:
    """Copy one verified hourly snapshot of `day` into the daily set.

    The noon snapshot is preferred, otherwise the earliest of the day. Returns
    the daily path, or None when the day has no usable snapshot.
    """
    stamp = f"{day.astimezone(timezone.utc):%Y%m%d}"
    hourly_dir = backups_dir / "hourly"
    daily_dir = backups_dir / "daily"
    daily_path = daily_dir / f"ledger-{stamp}.sqlite"
    if daily_path.exists():
        return daily_path

    candidates: list[tuple[int, Path]] = []
    if hourly_dir.exists():
        for path in hourly_dir.iterdir():
            match = _HOURLY_RE.match(path.name)
            if match and match.group(1) == stamp:
                candidates.append((int(match.group(2)), path))
    if not candidates:
        logger.info("No hourly backups for %s to promote", stamp)
        return None

    candidates.sort(key=lambda c: (c[0] != 12, c[0]))
    for _, path in candidates:
        if not verify_backup(path).ok:
            logger.warning("Skipping corrupt hourly backup %s", path)
            continue
        daily_dir.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, daily_path)
        logger.info("Promoted %s to daily backup %s", path.name, daily_path.name)
        prune_backups(daily_dir, keep, pattern=_DAILY_RE)
        return daily_path
    return None
