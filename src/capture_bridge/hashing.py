"""Content identity: deterministic SHA-256 fingerprints for captures.

Identity is a pure function of content. Same input always yields the same
64-char lowercase hex digest, so it can serve as the deduplication key.
"""

import hashlib
import html
import re
from pathlib import Path

# Audio fingerprints hash only the head of the file.
AUDIO_FINGERPRINT_BYTES = 4 * 1024 * 1024

_SCRIPT_RE = re.compile(r"<script\b[\s\S]*?</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style\b[\s\S]*?</style>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")
_BLANK_LINES_RE = re.compile(r"\n{3,}")
_INLINE_WS_RE = re.compile(r"\s+")


def sha256_hex(data: bytes | str) -> str:
    """SHA-256 hex digest of bytes, or of a string encoded as UTF-8."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def normalize_text(text: str) -> str:
    """Canonical form for plain text: LF line endings, outer whitespace trimmed."""
    return text.replace("\r\n", "\n").replace("\r", "\n").strip()


def text_identity(text: str) -> str:
    return sha256_hex(normalize_text(text))


def strip_html(content: str) -> str:
    """Drop script/style blocks and tags, then decode HTML entities."""
    if not content:
        return ""
    text = _SCRIPT_RE.sub("", content)
    text = _STYLE_RE.sub("", text)
    text = _TAG_RE.sub("", text)
    # &nbsp; decodes to U+00A0; whitespace normalization folds it into a space
    return html.unescape(text)


def normalize_whitespace(text: str) -> str:
    """Collapse whitespace so cosmetic formatting does not change identity.

    Line endings become LF, runs of blank lines collapse to one blank line,
    whitespace inside each line collapses to a single space, and the result
    is trimmed.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _BLANK_LINES_RE.sub("\n\n", text)
    lines = [_INLINE_WS_RE.sub(" ", line).strip() for line in text.split("\n")]
    return "\n".join(lines).strip()


def normalize_email_body(body: str) -> str:
    return normalize_whitespace(strip_html(body))


def email_content_identity(body: str) -> str:
    """Identity of an email: hash of the HTML-stripped, whitespace-normalized body."""
    return sha256_hex(normalize_email_body(body))


def audio_fingerprint(path: Path, limit: int = AUDIO_FINGERPRINT_BYTES) -> str:
    """Hash the first `limit` bytes of an audio file.

    Reads in chunks so a large memo is never loaded whole.
    """
    digest = hashlib.sha256()
    remaining = limit
    with open(path, "rb") as f:
        while remaining > 0:
            chunk = f.read(min(65536, remaining))
            if not chunk:
                break
            digest.update(chunk)
            remaining -= len(chunk)
    return digest.hexdigest()
