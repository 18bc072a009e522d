"""Capture Bridge - crash-safe capture pipeline into a Markdown vault."""

__version__ = "0.1.0"
