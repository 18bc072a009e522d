"""Collaborator protocols and the small local implementations shipped in-repo.

Source pollers, transcription workers and cloud downloaders live outside
this package; the pipeline only depends on the shapes below.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from .errors import ClassifiedError
from .hashing import normalize_email_body
from .models.capture import Capture, RawItem
from .models.resilience import ErrorKind


@dataclass
class PollBatch:
    """Items discovered by one poll, plus the cursor to resume from."""

    items: list[RawItem] = field(default_factory=list)
    next_cursor: Optional[str] = None


@runtime_checkable
class SourcePoller(Protocol):
    """Discovers new items on one channel (e.g. Gmail, Voice Memos folder)."""

    name: str

    def poll(self, cursor: Optional[str]) -> PollBatch: ...


@runtime_checkable
class ContentWorker(Protocol):
    """Produces the text content of a capture (transcriber, normalizer).

    `name` is the dependency key its circuit breaker is registered under.
    """

    name: str

    def process(self, capture: Capture) -> str: ...


@runtime_checkable
class PayloadFetcher(Protocol):
    """Makes a payload available locally (e.g. downloads a dataless iCloud file)."""

    name: str

    def fetch(self, payload_ref: str) -> Path: ...


class LocalFileFetcher:
    """PayloadFetcher for payloads that are already plain local files."""

    name = "local_fs"

    def fetch(self, payload_ref: str) -> Path:
        path = Path(payload_ref).expanduser()
        # open() raises FileNotFoundError/PermissionError with errno set for the classifier
        with open(path, "rb"):
            pass
        return path


class EmailBodyNormalizer:
    """ContentWorker for email: the staged body, HTML-stripped and whitespace-normalized."""

    name = "email_normalizer"

    def process(self, capture: Capture) -> str:
        if not capture.raw_content.strip():
            raise ClassifiedError(
                f"Email capture {capture.id} has no body", kind=ErrorKind.RESOURCE_CORRUPT
            )
        return normalize_email_body(capture.raw_content)
