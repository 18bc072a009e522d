"""Markdown rendering for exported captures."""

from ..models.capture import Capture, CaptureSource
from ..models.ledger import ExportMode
from ..models.resilience import ErrorKind


def render_capture(capture: Capture, body: str, export_mode: ExportMode = ExportMode.INITIAL) -> str:
    """Render a capture as a vault note with frontmatter.

    The frontmatter `id` is what ties a file on disk back to its capture
    during collision checks and crash recovery.
    """
    frontmatter_lines = [
        "---",
        f"id: {capture.id}",
        f"source: {capture.source.value}",
        f"captured_at: {capture.created_at.isoformat()}",
        f"content_identity: {capture.content_identity or ''}",
        f"export_mode: {export_mode.value}",
        f"external_id: {capture.external_id}",
        "---",
        "",
    ]
    return "\n".join(frontmatter_lines) + body.rstrip("\n") + "\n"


def placeholder_body(capture: Capture, error_kind: ErrorKind, reason: str, attempts: int) -> str:
    """Deterministic body recorded when content could not be produced."""
    if capture.source == CaptureSource.VOICE:
        source_ref = f"Audio file: {capture.payload_ref or capture.external_id}"
    else:
        source_ref = f"Message-ID: {capture.external_id}"

    lines = [
        f"[TRANSCRIPTION_FAILED: {error_kind.value}]",
        "",
        "---",
        source_ref,
        f"Captured at: {capture.created_at.isoformat()}",
        f"Error: {reason}",
        f"Retry count: {attempts}",
        "---",
        "",
        "This placeholder is permanent and will not be retried automatically.",
        "Original content unavailable due to processing failure.",
    ]
    return "\n".join(lines)


def parse_frontmatter(content: str) -> dict[str, str]:
    """Read `key: value` pairs from a leading `---` block.

    Returns an empty dict when the content has no frontmatter.
    """
    lines = content.split("\n")
    if not lines or lines[0].strip() != "---":
        return {}

    fields: dict[str, str] = {}
    for line in lines[1:]:
        if line.strip() == "---":
            return fields
        if ":" in line:
            key, value = line.split(":", 1)
            fields[key.strip()] = value.strip()
    # Unterminated block is not frontmatter
    return {}