"""Atomic export of captures into the Markdown vault."""

from .markdown import parse_frontmatter, placeholder_body, render_capture
from .store import DestinationStore, LocalVaultStore
from .writer import AtomicExportWriter

__all__ = [
    "AtomicExportWriter",
    "DestinationStore",
    "LocalVaultStore",
    "parse_frontmatter",
    "placeholder_body",
    "render_capture",
]
