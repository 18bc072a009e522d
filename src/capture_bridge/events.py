"""Append-only structured event log for Capture Bridge."""

import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError
from ulid import ULID

from .models.events import BridgeEvent, EventType

logger = logging.getLogger(__name__)


class EventWriter:
    """Append-only event writer.

    Writes events to <state_dir>/events.jsonl so that metrics and health
    collaborators can reconstruct every capture's state-machine history.
    Never truncates or rewrites; only appends.
    """

    def __init__(self, events_path: Path, run_id: str | None = None):
        """Initialize event writer.

        Args:
            events_path: Path to events.jsonl file
            run_id: Optional run ID; if None, generates a new uuid4
        """
        self.events_path = events_path
        self.run_id = run_id or str(uuid.uuid4())

    def emit(
        self,
        event_type: EventType,
        payload: dict,
        capture_id: str | None = None,
    ) -> BridgeEvent:
        """Append an event to the log.

        Args:
            event_type: Type of event
            payload: Event-specific data
            capture_id: Optional capture ID reference

        Returns:
            The created BridgeEvent
        """
        self.events_path.parent.mkdir(parents=True, exist_ok=True)

        event = BridgeEvent(
            event_id=str(ULID()),
            run_id=self.run_id,
            ts=datetime.now(timezone.utc),
            event_type=event_type,
            capture_id=capture_id,
            payload=payload,
        )

        # JSONL: one JSON object per line
        with open(self.events_path, "a", encoding="utf-8") as f:
            f.write(event.model_dump_json() + "\n")

        logger.debug("event %s capture=%s %s", event_type, capture_id, payload)
        return event


def read_events_tail(events_path: Path, n: int = 20) -> list[BridgeEvent]:
    """Parse the last `n` non-blank lines of the event log.

    The file is streamed so only `n` lines are held at a time. Lines that
    fail validation are skipped with a warning.
    """
    if n <= 0 or not events_path.exists():
        return []

    with open(events_path, "r", encoding="utf-8") as f:
        window = deque((line for line in f if line.strip()), maxlen=n)

    events: list[BridgeEvent] = []
    for line in window:
        try:
            events.append(BridgeEvent.model_validate_json(line))
        except ValidationError as e:
            logger.warning("Skipping malformed event line: %s", e.errors()[0]["msg"])

    skipped = len(window) - len(events)
    if skipped:
        logger.warning("Skipped %d malformed event line(s) in %s", skipped, events_path)
    return events
