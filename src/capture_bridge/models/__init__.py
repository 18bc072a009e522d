"""Pydantic models for Capture Bridge."""

from .capture import Capture, CaptureSource, CaptureStatus, RawItem
from .events import BridgeEvent
from .ledger import ErrorEvent, ExportMode, ExportRecord, ProcessingStage
from .resilience import (
    CircuitState,
    Classification,
    ErrorKind,
    EscalationAction,
    RetryPolicy,
)

__all__ = [
    "Capture",
    "CaptureSource",
    "CaptureStatus",
    "RawItem",
    "BridgeEvent",
    # Ledger relations
    "ErrorEvent",
    "ExportMode",
    "ExportRecord",
    "ProcessingStage",
    # Resilience
    "CircuitState",
    "Classification",
    "ErrorKind",
    "EscalationAction",
    "RetryPolicy",
]
