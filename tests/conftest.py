"""Pytest fixtures for Capture Bridge tests."""

from pathlib import Path
from typing import Optional

import pytest

from capture_bridge.config import CaptureBridgeConfig
from capture_bridge.events import EventWriter
from capture_bridge.ledger import StagingLedger
from capture_bridge.models.capture import CaptureSource, RawItem
from capture_bridge.paths import BridgePaths
from capture_bridge.pipeline import CapturePipeline
from capture_bridge.shutdown import ShutdownSignal


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FixedRng:
    """uniform() always returns the same point of the range (0.0 = midpoint)."""

    def __init__(self, position: float = 0.0):
        self.position = position

    def uniform(self, a: float, b: float) -> float:
        mid = (a + b) / 2
        return mid + self.position * (b - a) / 2


class RecordingShutdown(ShutdownSignal):
    """Never actually sleeps; records requested backoff delays.

    `request_after` triggers shutdown on the N-th wait.
    """

    def __init__(self, request_after: Optional[int] = None):
        super().__init__()
        self.waits: list[float] = []
        self.request_after = request_after

    def wait(self, timeout):
        self.waits.append(timeout)
        if self.request_after is not None and len(self.waits) >= self.request_after:
            self.request()
        return self.is_set()


class ScriptedWorker:
    """ContentWorker/PayloadFetcher double that plays back scripted outcomes.

    Each outcome is either a value to return or an exception to raise; the
    last outcome repeats once the script runs out.
    """

    def __init__(self, name: str, outcomes: list):
        self.name = name
        self.outcomes = list(outcomes)
        self.calls = 0

    def _next(self):
        index = min(self.calls, len(self.outcomes) - 1)
        self.calls += 1
        outcome = self.outcomes[index]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def process(self, capture):
        return self._next()

    def fetch(self, payload_ref):
        return self._next()


@pytest.fixture
def temp_vault(tmp_path):
    """Create a temporary vault root."""
    vault_root = tmp_path / "test_vault"
    vault_root.mkdir()
    return vault_root


@pytest.fixture
def bridge_paths(temp_vault):
    """BridgePaths for the temporary vault, with directories created."""
    paths = BridgePaths(temp_vault)
    paths.ensure()
    return paths


@pytest.fixture
def ledger(bridge_paths):
    ledger = StagingLedger(bridge_paths.ledger_db)
    yield ledger
    ledger.close()


@pytest.fixture
def events(bridge_paths):
    return EventWriter(bridge_paths.events_file, run_id="test-run")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def shutdown():
    return RecordingShutdown()


@pytest.fixture
def make_item(tmp_path):
    """Factory for RawItems; voice items get a real audio file on disk."""
    counter = {"n": 0}

    def _make(
        source: CaptureSource = CaptureSource.EMAIL,
        external_id: Optional[str] = None,
        body: Optional[str] = None,
        audio: Optional[bytes] = None,
    ) -> RawItem:
        counter["n"] += 1
        if source == CaptureSource.VOICE:
            audio_path = tmp_path / "memos" / f"memo-{counter['n']}.m4a"
            audio_path.parent.mkdir(parents=True, exist_ok=True)
            audio_path.write_bytes(audio if audio is not None else f"audio-{counter['n']}".encode())
            return RawItem(
                source=source,
                external_id=external_id or str(audio_path),
                payload_ref=str(audio_path),
            )
        message_id = external_id or f"<msg-{counter['n']}@example.com>"
        return RawItem(
            source=source,
            external_id=message_id,
            payload_ref=message_id,
            body=body if body is not None else f"Email body number {counter['n']}",
        )

    return _make


@pytest.fixture
def make_pipeline(bridge_paths, shutdown, clock):
    """Factory for fully wired pipelines over the temporary vault."""
    created: list[CapturePipeline] = []

    def _make(workers=None, fetcher=None, config: Optional[CaptureBridgeConfig] = None) -> CapturePipeline:
        pipeline = CapturePipeline.from_paths(
            bridge_paths,
            config or CaptureBridgeConfig(vault_path=bridge_paths.root, breaker_cooldown_seconds=30.0),
            workers=workers,
            fetcher=fetcher,
            shutdown=shutdown,
            rng=FixedRng(0.0),
            clock=clock,
        )
        created.append(pipeline)
        return pipeline

    yield _make
    for pipeline in created:
        pipeline.close()


@pytest.fixture
def scripted():
    """Expose ScriptedWorker to tests."""
    return ScriptedWorker


@pytest.fixture
def inbox_files(bridge_paths):
    """Callable listing the .md notes currently in the inbox."""

    def _list() -> list[Path]:
        return sorted(p for p in bridge_paths.inbox.iterdir() if p.suffix == ".md")

    return _list


@pytest.fixture
def fixed_rng():
    """Expose FixedRng to tests."""
    return FixedRng
