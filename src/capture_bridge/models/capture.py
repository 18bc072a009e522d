"""Pydantic models for captures flowing through the staging ledger."""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class CaptureSource(str, Enum):
    """Channel a capture was ingested from."""

    VOICE = "voice"
    EMAIL = "email"


class CaptureStatus(str, Enum):
    """Lifecycle states of a capture in the staging ledger."""

    STAGED = "staged"
    PROCESSED = "processed"
    EXPORTED = "exported"
    EXPORTED_DUPLICATE = "exported_duplicate"
    EXPORTED_PLACEHOLDER = "exported_placeholder"
    QUARANTINED = "quarantined"


class RawItem(BaseModel):
    """An item discovered by a source poller, not yet staged.

    `payload_ref` points at the payload (audio file path, message id);
    `body` carries inline content when the poller already has it (email body).
    """

    source: CaptureSource = Field(description="Source channel")
    external_id: str = Field(min_length=1, description="Poller-native identifier (path, Message-ID)")
    payload_ref: str = Field(description="Reference used to fetch or read the payload")
    discovered_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the poller first saw the item",
    )
    body: str | None = Field(default=None, description="Inline payload text, if available")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Channel-specific fields")

    model_config = {"frozen": True}


class Capture(BaseModel):
    """One row of the `captures` table."""

    id: str = Field(description="ULID assigned at staging")
    source: CaptureSource
    external_id: str
    content_identity: str | None = Field(default=None, description="SHA-256 identity, immutable once bound")
    raw_content: str = Field(default="", description="Normalized text, transcript or placeholder body")
    status: CaptureStatus
    attempt_count: int = Field(default=0, ge=0)
    last_attempt_at: datetime | None = None
    last_reset_at: datetime | None = None
    source_metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    model_config = {"frozen": True}

    @property
    def payload_ref(self) -> str | None:
        return self.source_metadata.get("payload_ref")

    @classmethod
    def from_row(cls, row) -> "Capture":
        """Build a Capture from a sqlite3.Row."""
        return cls(
            id=row["id"],
            source=CaptureSource(row["source"]),
            external_id=row["external_id"],
            content_identity=row["content_identity"],
            raw_content=row["raw_content"],
            status=CaptureStatus(row["status"]),
            attempt_count=row["attempt_count"],
            last_attempt_at=row["last_attempt_at"],
            last_reset_at=row["last_reset_at"],
            source_metadata=json.loads(row["source_metadata_json"] or "{}"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
