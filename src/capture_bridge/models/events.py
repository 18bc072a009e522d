"""Pydantic models for structured pipeline events."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

EventType = Literal[
    "item_staged",
    "duplicate_skipped",
    "retry_attempt",
    "circuit_state_change",
    "export_completed",
    "placeholder_exported",
    "item_quarantined",
    "item_reset",
    "cursor_reset",
    "recovery_completed",
    "backup_completed",
]


class BridgeEvent(BaseModel):
    """Append-only structured event record.

    Written as JSONL to <state_dir>/events.jsonl for metrics and health
    collaborators. Never mutate or delete; only append.
    """

    event_id: str = Field(description="Unique event identifier (ULID)")
    run_id: str = Field(description="Run/session identifier (uuid4)")
    ts: datetime = Field(description="Event timestamp (ISO8601 UTC)")
    event_type: EventType = Field(description="Event type")
    capture_id: str | None = Field(default=None, description="Related capture ID if applicable")
    payload: dict = Field(default_factory=dict, description="Event-specific data")

    model_config = {"frozen": True}
