"""Pydantic models for the append-only ledger relations."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from .resilience import ErrorKind, EscalationAction


class ExportMode(str, Enum):
    """How an export record came to exist."""

    INITIAL = "initial"
    DUPLICATE_SKIP = "duplicate_skip"
    PLACEHOLDER = "placeholder"
    RECOVERY = "recovery"


class ProcessingStage(str, Enum):
    """Pipeline stage an error event is attributed to."""

    POLL = "poll"
    DOWNLOAD = "download"
    TRANSCRIBE = "transcribe"
    NORMALIZE = "normalize"
    EXPORT = "export"
    RECOVERY = "recovery"


class ExportRecord(BaseModel):
    """Audit row written once per capture when it reaches an exported* state.

    Never updated or deleted.
    """

    id: str = Field(description="ULID of the audit row")
    capture_id: str
    destination_path: str | None = Field(
        default=None, description="Vault-relative path of the artifact (None for duplicate skips without a file)"
    )
    identity_at_export: str | None = None
    mode: ExportMode
    exported_at: datetime

    model_config = {"frozen": True}

    @classmethod
    def from_row(cls, row) -> "ExportRecord":
        return cls(
            id=row["id"],
            capture_id=row["capture_id"],
            destination_path=row["destination_path"],
            identity_at_export=row["identity_at_export"],
            mode=ExportMode(row["mode"]),
            exported_at=row["exported_at"],
        )


class ErrorEvent(BaseModel):
    """Append-only record of one failed attempt."""

    id: str
    capture_id: str | None = None
    stage: ProcessingStage
    error_kind: ErrorKind
    message: str
    attempt_number: int = Field(ge=1)
    escalation_action: EscalationAction | None = None
    dead_lettered: bool = False
    created_at: datetime

    model_config = {"frozen": True}

    @classmethod
    def from_row(cls, row) -> "ErrorEvent":
        return cls(
            id=row["id"],
            capture_id=row["capture_id"],
            stage=ProcessingStage(row["stage"]),
            error_kind=ErrorKind(row["error_kind"]),
            message=row["message"],
            attempt_number=row["attempt_number"],
            escalation_action=(
                EscalationAction(row["escalation_action"]) if row["escalation_action"] else None
            ),
            dead_lettered=bool(row["dead_lettered"]),
            created_at=row["created_at"],
        )
