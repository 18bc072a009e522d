"""Tests for the retry orchestrator and escalation actions."""

import pytest
import requests

from capture_bridge.errors import (
    CircuitOpenError,
    ClassifiedError,
    ShutdownRequested,
    TerminalFailureError,
)
from capture_bridge.export import AtomicExportWriter, LocalVaultStore
from capture_bridge.models.capture import CaptureSource, CaptureStatus
from capture_bridge.models.ledger import ProcessingStage
from capture_bridge.models.resilience import CircuitState, ErrorKind, EscalationAction
from capture_bridge.resilience import (
    CircuitBreakerRegistry,
    ErrorContext,
    EscalationHandler,
    RetryOrchestrator,
)


class RateLimited(Exception):
    status_code = 429


@pytest.fixture
def breakers(clock, events):
    return CircuitBreakerRegistry(failure_threshold=5, cooldown_seconds=30.0, clock=clock, events=events)


@pytest.fixture
def orchestrator(ledger, breakers, events, shutdown, bridge_paths, fixed_rng):
    writer = AtomicExportWriter(LocalVaultStore(bridge_paths.root), ledger, events)
    escalation = EscalationHandler(ledger, breakers, writer=writer, events=events)
    return RetryOrchestrator(ledger, breakers, escalation, events=events, shutdown=shutdown, rng=fixed_rng(0.0))


@pytest.fixture
def voice_capture(ledger, make_item):
    return ledger.stage(make_item(source=CaptureSource.VOICE)).capture


def transcribe_context(capture_id, dependency="whisper"):
    return ErrorContext(stage=ProcessingStage.TRANSCRIBE, dependency=dependency, capture_id=capture_id)


def test_success_first_try(orchestrator, voice_capture, scripted, breakers):
    worker = scripted("whisper", ["hello"])

    result = orchestrator.execute(lambda: worker.process(None), transcribe_context(voice_capture.id))

    assert result.value == "hello"
    assert result.attempts == 1
    assert not result.skipped
    assert breakers.get("whisper").state == CircuitState.CLOSED


def test_transient_failures_then_success(orchestrator, voice_capture, scripted, shutdown, ledger):
    worker = scripted("whisper", [requests.ConnectionError("reset"), requests.Timeout("slow"), "hello"])

    result = orchestrator.execute(lambda: worker.process(None), transcribe_context(voice_capture.id))

    assert result.value == "hello"
    assert result.attempts == 3
    assert shutdown.waits == pytest.approx([1.0, 2.0])
    events = ledger.error_events_for(voice_capture.id, ProcessingStage.TRANSCRIBE)
    assert [e.attempt_number for e in events] == [1, 2]
    assert all(e.error_kind == ErrorKind.NETWORK_TRANSIENT for e in events)
    assert all(e.escalation_action is None for e in events)


def test_exhausted_retries_export_placeholder(orchestrator, voice_capture, scripted, shutdown, ledger, inbox_files):
    worker = scripted("whisper", [requests.ConnectionError("reset")])

    with pytest.raises(TerminalFailureError) as exc_info:
        orchestrator.execute(lambda: worker.process(None), transcribe_context(voice_capture.id))

    assert exc_info.value.attempts == 5
    assert exc_info.value.escalation == EscalationAction.EXPORT_PLACEHOLDER
    assert worker.calls == 5
    assert shutdown.waits == pytest.approx([1.0, 2.0, 4.0, 8.0])

    capture = ledger.require(voice_capture.id)
    assert capture.status == CaptureStatus.EXPORTED_PLACEHOLDER
    assert capture.raw_content.startswith("[TRANSCRIPTION_FAILED: NetworkTransient]")
    assert len(inbox_files()) == 1

    last = ledger.error_events_for(voice_capture.id)[-1]
    assert last.escalation_action == EscalationAction.EXPORT_PLACEHOLDER
    assert last.dead_lettered
    assert [d.capture.id for d in ledger.list_dead_lettered()] == [voice_capture.id]


def test_permanent_error_is_not_retried(orchestrator, voice_capture, scripted, shutdown, ledger):
    worker = scripted("whisper", [ClassifiedError("bad header", kind=ErrorKind.RESOURCE_CORRUPT)])

    with pytest.raises(TerminalFailureError):
        orchestrator.execute(lambda: worker.process(None), transcribe_context(voice_capture.id))

    assert worker.calls == 1
    assert shutdown.waits == []
    assert ledger.status_of(voice_capture.id) == CaptureStatus.EXPORTED_PLACEHOLDER


def test_permission_denied_quarantines(orchestrator, voice_capture, ledger):
    def denied():
        raise PermissionError(13, "Permission denied", "/memos/a.m4a")

    with pytest.raises(TerminalFailureError) as exc_info:
        orchestrator.execute(denied, transcribe_context(voice_capture.id))

    assert exc_info.value.escalation == EscalationAction.REQUIRE_MANUAL_ACTION
    capture = ledger.require(voice_capture.id)
    assert capture.status == CaptureStatus.QUARANTINED
    assert capture.source_metadata["quarantine_reason"].startswith("PermissionDenied")


def test_rate_limit_exhaustion_opens_circuit(orchestrator, voice_capture, scripted, shutdown, breakers, ledger):
    worker = scripted("gmail", [RateLimited("Too Many Requests")])

    with pytest.raises(TerminalFailureError):
        orchestrator.execute(lambda: worker.process(None), transcribe_context(voice_capture.id, "gmail"))

    assert worker.calls == 6
    assert shutdown.waits == pytest.approx([30.0, 60.0, 120.0, 240.0, 480.0])
    assert breakers.get("gmail").state == CircuitState.OPEN
    assert ledger.status_of(voice_capture.id) == CaptureStatus.STAGED


def test_open_circuit_rejects_without_calling(orchestrator, voice_capture, scripted, breakers, ledger):
    breakers.get("whisper").force_open("test")
    worker = scripted("whisper", ["hello"])

    with pytest.raises(CircuitOpenError):
        orchestrator.execute(lambda: worker.process(None), transcribe_context(voice_capture.id))

    assert worker.calls == 0
    assert ledger.error_events_for(voice_capture.id) == []


def test_half_open_probe_after_cooldown(orchestrator, voice_capture, scripted, breakers, clock):
    breakers.get("whisper").force_open("test")
    clock.advance(30)
    worker = scripted("whisper", ["hello"])

    result = orchestrator.execute(lambda: worker.process(None), transcribe_context(voice_capture.id))

    assert result.value == "hello"
    assert breakers.get("whisper").state == CircuitState.CLOSED


def test_shutdown_interrupts_backoff(orchestrator, voice_capture, scripted, shutdown, ledger):
    shutdown.request_after = 1
    worker = scripted("whisper", [requests.ConnectionError("reset")])

    with pytest.raises(ShutdownRequested):
        orchestrator.execute(lambda: worker.process(None), transcribe_context(voice_capture.id))

    assert worker.calls == 1
    assert ledger.count_attempts(voice_capture.id, ProcessingStage.TRANSCRIBE) == 1
    assert ledger.status_of(voice_capture.id) == CaptureStatus.STAGED


def test_attempt_budget_survives_restart(orchestrator, voice_capture, scripted, ledger):
    for attempt in (1, 2):
        ledger.record_error_event(
            voice_capture.id, ProcessingStage.TRANSCRIBE, ErrorKind.NETWORK_TRANSIENT, "reset", attempt
        )
    worker = scripted("whisper", [requests.ConnectionError("reset")])

    with pytest.raises(TerminalFailureError) as exc_info:
        orchestrator.execute(lambda: worker.process(None), transcribe_context(voice_capture.id))

    assert worker.calls == 3
    assert exc_info.value.attempts == 5


def test_exhausted_budget_escalates_without_invoking(orchestrator, voice_capture, scripted, ledger):
    for attempt in range(1, 6):
        ledger.record_error_event(
            voice_capture.id, ProcessingStage.TRANSCRIBE, ErrorKind.NETWORK_TRANSIENT, "reset", attempt
        )
    worker = scripted("whisper", ["hello"])

    with pytest.raises(TerminalFailureError):
        orchestrator.execute(lambda: worker.process(None), transcribe_context(voice_capture.id))

    assert worker.calls == 0
    assert ledger.status_of(voice_capture.id) == CaptureStatus.EXPORTED_PLACEHOLDER


def test_interrupted_escalation_is_finished_without_invoking(orchestrator, voice_capture, scripted, ledger):
    for attempt in range(1, 5):
        ledger.record_error_event(
            voice_capture.id, ProcessingStage.TRANSCRIBE, ErrorKind.NETWORK_TRANSIENT, "reset", attempt
        )
    ledger.record_error_event(
        voice_capture.id,
        ProcessingStage.TRANSCRIBE,
        ErrorKind.NETWORK_TRANSIENT,
        "reset",
        5,
        escalation_action=EscalationAction.EXPORT_PLACEHOLDER,
    )
    worker = scripted("whisper", ["hello"])

    with pytest.raises(TerminalFailureError) as exc_info:
        orchestrator.execute(lambda: worker.process(None), transcribe_context(voice_capture.id))

    assert worker.calls == 0
    assert exc_info.value.attempts == 5
    assert ledger.status_of(voice_capture.id) == CaptureStatus.EXPORTED_PLACEHOLDER
    assert len(ledger.error_events_for(voice_capture.id, ProcessingStage.TRANSCRIBE)) == 5


def test_open_circuit_escalation_starts_a_fresh_budget(orchestrator, voice_capture, scripted, ledger):
    ledger.record_error_event(
        voice_capture.id,
        ProcessingStage.TRANSCRIBE,
        ErrorKind.RATE_LIMITED,
        "slow down",
        6,
        escalation_action=EscalationAction.OPEN_CIRCUIT,
    )
    worker = scripted("whisper", ["hello"])

    result = orchestrator.execute(lambda: worker.process(None), transcribe_context(voice_capture.id))

    assert result.value == "hello"
    assert worker.calls == 1


def test_operator_reset_reopens_the_budget(orchestrator, voice_capture, scripted, ledger):
    ledger.record_error_event(
        voice_capture.id,
        ProcessingStage.TRANSCRIBE,
        ErrorKind.PERMISSION_DENIED,
        "read-only",
        1,
        escalation_action=EscalationAction.REQUIRE_MANUAL_ACTION,
    )
    ledger.quarantine(voice_capture.id, "PermissionDenied: read-only")
    ledger.reset_to_pending(voice_capture.id)
    worker = scripted("whisper", ["hello"])

    result = orchestrator.execute(lambda: worker.process(None), transcribe_context(voice_capture.id))

    assert result.value == "hello"
    assert worker.calls == 1


def test_terminal_capture_is_skipped(orchestrator, voice_capture, scripted, ledger):
    ledger.quarantine(voice_capture.id, "parked")
    worker = scripted("whisper", ["hello"])

    result = orchestrator.execute(lambda: worker.process(None), transcribe_context(voice_capture.id))

    assert result.skipped
    assert worker.calls == 0


def test_cursor_invalid_resets_channel_cursor(orchestrator, ledger, scripted):
    ledger.set_cursor("gmail", "12345")
    poller = scripted("gmail", [ClassifiedError("historyId too old", kind=ErrorKind.CURSOR_INVALID)])
    context = ErrorContext(stage=ProcessingStage.POLL, dependency="gmail", channel="gmail")

    with pytest.raises(TerminalFailureError) as exc_info:
        orchestrator.execute(lambda: poller.process(None), context)

    assert exc_info.value.escalation == EscalationAction.RESET_UPSTREAM_CURSOR
    assert ledger.get_cursor("gmail") is None


def test_unknown_errors_get_three_attempts(orchestrator, voice_capture, scripted, ledger):
    worker = scripted("whisper", [ValueError("weird")])

    with pytest.raises(TerminalFailureError):
        orchestrator.execute(lambda: worker.process(None), transcribe_context(voice_capture.id))

    assert worker.calls == 3
    assert ledger.status_of(voice_capture.id) == CaptureStatus.EXPORTED_PLACEHOLDER


def test_identity_collision_on_placeholder_quarantines(orchestrator, voice_capture, ledger, bridge_paths):
    (bridge_paths.inbox / f"{voice_capture.id}.md").write_text("---\nid: 01OTHER\n---\n\nsomeone else\n")

    def corrupt():
        raise ClassifiedError("bad header", kind=ErrorKind.RESOURCE_CORRUPT)

    with pytest.raises(TerminalFailureError):
        orchestrator.execute(corrupt, transcribe_context(voice_capture.id))

    assert ledger.status_of(voice_capture.id) == CaptureStatus.QUARANTINED
    export_events = ledger.error_events_for(voice_capture.id, ProcessingStage.EXPORT)
    assert export_events[-1].error_kind == ErrorKind.IDENTITY_COLLISION
