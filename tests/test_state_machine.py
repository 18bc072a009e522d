"""Tests for the capture status transition table."""

import pytest

from capture_bridge.errors import InvalidTransitionError
from capture_bridge.models.capture import CaptureStatus as S
from capture_bridge.state_machine import (
    TERMINAL_STATUSES,
    assert_transition,
    is_terminal,
    is_valid_transition,
    transition_path,
)


@pytest.mark.parametrize(
    "current,target",
    [
        (S.STAGED, S.PROCESSED),
        (S.STAGED, S.QUARANTINED),
        (S.PROCESSED, S.EXPORTED),
        (S.PROCESSED, S.EXPORTED_DUPLICATE),
        (S.PROCESSED, S.EXPORTED_PLACEHOLDER),
        (S.PROCESSED, S.QUARANTINED),
    ],
)
def test_allowed_transitions(current, target):
    assert is_valid_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (S.STAGED, S.EXPORTED),
        (S.PROCESSED, S.STAGED),
        (S.EXPORTED, S.PROCESSED),
        (S.EXPORTED_DUPLICATE, S.EXPORTED),
        (S.EXPORTED_PLACEHOLDER, S.EXPORTED),
        (S.QUARANTINED, S.PROCESSED),
    ],
)
def test_rejected_transitions(current, target):
    assert not is_valid_transition(current, target)
    with pytest.raises(InvalidTransitionError):
        assert_transition(current, target)


def test_quarantine_release_is_operator_only():
    assert not is_valid_transition(S.QUARANTINED, S.STAGED)
    assert is_valid_transition(S.QUARANTINED, S.STAGED, operator=True)


def test_terminal_statuses():
    assert TERMINAL_STATUSES == {S.EXPORTED, S.EXPORTED_DUPLICATE, S.EXPORTED_PLACEHOLDER, S.QUARANTINED}
    assert not is_terminal(S.STAGED)
    assert not is_terminal(S.PROCESSED)
    for status in TERMINAL_STATUSES:
        assert is_terminal(status)


def test_transition_path_walks_through_processed():
    assert transition_path(S.STAGED, S.EXPORTED_DUPLICATE) == [S.PROCESSED, S.EXPORTED_DUPLICATE]
    assert transition_path(S.STAGED, S.EXPORTED_PLACEHOLDER) == [S.PROCESSED, S.EXPORTED_PLACEHOLDER]
    assert transition_path(S.PROCESSED, S.EXPORTED) == [S.EXPORTED]


def test_transition_path_from_terminal_is_rejected():
    with pytest.raises(InvalidTransitionError):
        transition_path(S.EXPORTED, S.EXPORTED_DUPLICATE)
    with pytest.raises(InvalidTransitionError):
        transition_path(S.STAGED, S.STAGED)
