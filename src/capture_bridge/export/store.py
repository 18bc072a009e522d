"""Destination stores: where exported notes are written."""

from __future__ import annotations

import logging
import os
import secrets
from pathlib import Path
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"


@runtime_checkable
class DestinationStore(Protocol):
    """Filesystem operations the atomic writer needs.

    Paths are relative to the store root.
    """

    def write_temp(self, directory: Path, data: bytes, name_hint: str = "export") -> Path: ...

    def fsync(self, path: Path) -> None: ...

    def rename(self, tmp: Path, final: Path) -> None: ...

    def exists(self, path: Path) -> bool: ...

    def read_text(self, path: Path) -> str: ...

    def remove(self, path: Path) -> None: ...

    def list_temp_files(self, directory: Path) -> list[Path]: ...


class LocalVaultStore:
    """DestinationStore backed by a local vault directory."""

    def __init__(self, root: Path):
        self.root = root

    def _abs(self, path: Path) -> Path:
        return self.root / path

    def write_temp(self, directory: Path, data: bytes, name_hint: str = "export") -> Path:
        """Write `data` to a uniquely named hidden temp file in `directory`.

        A partially written file is removed before the error propagates.
        """
        target_dir = self._abs(directory)
        target_dir.mkdir(parents=True, exist_ok=True)
        rel = directory / f".{name_hint}.{secrets.token_hex(6)}{TEMP_SUFFIX}"
        try:
            with open(self._abs(rel), "xb") as f:
                f.write(data)
                f.flush()
        except BaseException:
            self.remove(rel)
            raise
        return rel

    def fsync(self, path: Path) -> None:
        """fsync a file or directory."""
        target = self._abs(path)
        flags = os.O_RDONLY
        if target.is_dir() and hasattr(os, "O_DIRECTORY"):
            flags |= os.O_DIRECTORY
        fd = os.open(target, flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    def rename(self, tmp: Path, final: Path) -> None:
        os.replace(self._abs(tmp), self._abs(final))

    def exists(self, path: Path) -> bool:
        return self._abs(path).exists()

    def read_text(self, path: Path) -> str:
        return self._abs(path).read_text(encoding="utf-8")

    def remove(self, path: Path) -> None:
        self._abs(path).unlink(missing_ok=True)

    def list_temp_files(self, directory: Path) -> list[Path]:
        target_dir = self._abs(directory)
        if not target_dir.is_dir():
            return []
        return sorted(
            directory / p.name
            for p in target_dir.iterdir()
            if p.is_file() and p.name.startswith(".") and p.name.endswith(TEMP_SUFFIX)
        )
