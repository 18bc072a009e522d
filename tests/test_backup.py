"""Tests for ledger snapshots, verification and retention."""

import json
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from capture_bridge import backup
from capture_bridge.backup import (
    VERIFICATION_STATE_KEY,
    VerificationResult,
    VerificationStatus,
    hourly_backup_name,
    promote_daily,
    prune_backups,
    run_backup,
    verify_backup,
)

START = datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)


def hours_from_start(n):
    return lambda: START + timedelta(hours=n)


@pytest.fixture
def backups_dir(bridge_paths):
    return bridge_paths.backups_dir


def test_snapshot_contains_ledger_rows(ledger, make_item, backups_dir):
    capture = ledger.stage(make_item(body="keep me safe")).capture

    result = run_backup(ledger, backups_dir, now=hours_from_start(0))

    assert result.path == backups_dir / "hourly" / "ledger-20260314-09.sqlite"
    assert result.verification.ok
    assert result.status == VerificationStatus.HEALTHY
    conn = sqlite3.connect(result.path)
    try:
        ids = [row[0] for row in conn.execute("SELECT id FROM captures")]
    finally:
        conn.close()
    assert ids == [capture.id]
    assert list(result.path.parent.glob(".*.tmp")) == []


def test_same_hour_overwrites_snapshot(ledger, backups_dir):
    run_backup(ledger, backups_dir, now=hours_from_start(0))
    run_backup(ledger, backups_dir, now=lambda: START + timedelta(minutes=40))

    assert len(list((backups_dir / "hourly").glob("ledger-*.sqlite"))) == 1


def test_old_snapshots_are_pruned(ledger, backups_dir):
    for hour in range(5):
        result = run_backup(ledger, backups_dir, keep=3, now=hours_from_start(hour))

    names = sorted(p.name for p in (backups_dir / "hourly").iterdir())
    assert names == [hourly_backup_name(START + timedelta(hours=h)) for h in (2, 3, 4)]
    assert [p.name for p in result.pruned] == [hourly_backup_name(START + timedelta(hours=1))]


def test_verify_rejects_garbage(tmp_path):
    bogus = tmp_path / "ledger-20260314-09.sqlite"
    bogus.write_bytes(b"this is not a database" * 100)

    result = verify_backup(bogus)

    assert not result.ok
    assert result.problems
    assert not verify_backup(tmp_path / "missing.sqlite").ok


def test_failed_verifications_escalate_and_halt_pruning(ledger, backups_dir, events, monkeypatch, bridge_paths):
    for hour in range(3):
        run_backup(ledger, backups_dir, keep=1, now=hours_from_start(hour))
    monkeypatch.setattr(backup, "verify_backup", lambda path: VerificationResult(ok=False, problems=["page 3 corrupt"]))

    statuses = [
        run_backup(ledger, backups_dir, keep=1, events=events, now=hours_from_start(hour)).status
        for hour in (3, 4, 5)
    ]

    assert statuses == [VerificationStatus.WARN, VerificationStatus.DEGRADED, VerificationStatus.HALT_PRUNING]
    assert len(list((backups_dir / "hourly").glob("ledger-*.sqlite"))) == 4
    state = json.loads(ledger.get_cursor(VERIFICATION_STATE_KEY))
    assert state["consecutive_failures"] == 3
    assert "last_success_at" in state

    last = json.loads(bridge_paths.events_file.read_text().strip().splitlines()[-1])
    assert last["event_type"] == "backup_completed"
    assert last["payload"]["status"] == "halt_pruning"


def test_success_resets_failure_count(ledger, backups_dir, monkeypatch):
    real_verify = backup.verify_backup
    monkeypatch.setattr(backup, "verify_backup", lambda path: VerificationResult(ok=False, problems=["bad"]))
    run_backup(ledger, backups_dir, now=hours_from_start(0))
    monkeypatch.setattr(backup, "verify_backup", real_verify)

    result = run_backup(ledger, backups_dir, now=hours_from_start(1))

    assert result.consecutive_failures == 0
    assert result.status == VerificationStatus.HEALTHY


def test_promote_daily_prefers_noon(ledger, backups_dir):
    for hour in (9, 12, 15):
        run_backup(ledger, backups_dir, now=lambda h=hour: START.replace(hour=h))

    daily = promote_daily(backups_dir, START)

    assert daily == backups_dir / "daily" / "ledger-20260314.sqlite"
    assert daily.read_bytes() == (backups_dir / "hourly" / "ledger-20260314-12.sqlite").read_bytes()
    assert promote_daily(backups_dir, START) == daily


def test_promote_daily_without_snapshots(backups_dir):
    assert promote_daily(backups_dir, START) is None


def test_daily_retention(tmp_path):
    daily_dir = tmp_path / "daily"
    daily_dir.mkdir()
    for day in range(1, 10):
        (daily_dir / f"ledger-202603{day:02d}.sqlite").write_bytes(b"")
    (daily_dir / "notes.txt").write_text("untouched")

    pruned = prune_backups(daily_dir, keep=7, pattern=backup._DAILY_RE)

    assert [p.name for p in pruned] == ["ledger-20260301.sqlite", "ledger-20260302.sqlite"]
    assert (daily_dir / "notes.txt").exists()
