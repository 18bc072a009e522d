"""Capture status transition table.

    staged ──> processed ──> exported
       │           ├──────> exported_duplicate
       │           └──────> exported_placeholder
       └─────┬─────┘
             v
        quarantined ──(operator reset)──> staged
"""

from __future__ import annotations

from collections import deque
from typing import Optional

from .errors import InvalidTransitionError
from .models.capture import CaptureStatus

TRANSITIONS: dict[CaptureStatus, frozenset[CaptureStatus]] = {
    CaptureStatus.STAGED: frozenset({CaptureStatus.PROCESSED, CaptureStatus.QUARANTINED}),
    CaptureStatus.PROCESSED: frozenset(
        {
            CaptureStatus.EXPORTED,
            CaptureStatus.EXPORTED_DUPLICATE,
            CaptureStatus.EXPORTED_PLACEHOLDER,
            CaptureStatus.QUARANTINED,
        }
    ),
    CaptureStatus.EXPORTED: frozenset(),
    CaptureStatus.EXPORTED_DUPLICATE: frozenset(),
    CaptureStatus.EXPORTED_PLACEHOLDER: frozenset(),
    CaptureStatus.QUARANTINED: frozenset(),
}

# Only reachable through an explicit operator reset.
OPERATOR_TRANSITIONS: dict[CaptureStatus, frozenset[CaptureStatus]] = {
    CaptureStatus.QUARANTINED: frozenset({CaptureStatus.STAGED}),
}

TERMINAL_STATUSES = frozenset(
    {
        CaptureStatus.EXPORTED,
        CaptureStatus.EXPORTED_DUPLICATE,
        CaptureStatus.EXPORTED_PLACEHOLDER,
        CaptureStatus.QUARANTINED,
    }
)

EXPORTED_STATUSES = TERMINAL_STATUSES - {CaptureStatus.QUARANTINED}


def is_terminal(status: CaptureStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_valid_transition(current: CaptureStatus, target: CaptureStatus, operator: bool = False) -> bool:
    if target in TRANSITIONS.get(current, frozenset()):
        return True
    return operator and target in OPERATOR_TRANSITIONS.get(current, frozenset())


def assert_transition(current: CaptureStatus, target: CaptureStatus, operator: bool = False) -> None:
    if not is_valid_transition(current, target, operator=operator):
        raise InvalidTransitionError(current, target)


def transition_path(current: CaptureStatus, target: CaptureStatus) -> list[CaptureStatus]:
    """Shortest chain of automatic transitions from `current` to `target`.

    Returns the states to step through, excluding `current`. Raises
    InvalidTransitionError when `target` is unreachable.
    """
    if current == target:
        raise InvalidTransitionError(current, target)

    previous: dict[CaptureStatus, Optional[CaptureStatus]] = {current: None}
    queue = deque([current])
    while queue:
        state = queue.popleft()
        if state == target:
            break
        for nxt in sorted(TRANSITIONS[state], key=lambda s: s.value):
            if nxt not in previous:
                previous[nxt] = state
                queue.append(nxt)

    if target not in previous:
        raise InvalidTransitionError(current, target)

    path: list[CaptureStatus] = []
    step: Optional[CaptureStatus] = target
    while step is not None and step != current:
        path.append(step)
        step = previous[step]
    path.reverse()
    return path
