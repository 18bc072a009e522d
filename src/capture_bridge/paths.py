"""Path layout for the vault and the pipeline's state directory."""

from pathlib import Path
from typing import Optional

from .config import CaptureBridgeConfig


class BridgePaths:
    """Manages paths within the vault and state directory."""

    def __init__(self, vault_root: Path, state_dir: Optional[Path] = None):
        """Initialize paths.

        Args:
            vault_root: Root directory of the Markdown vault
            state_dir: Where ledger and events live; defaults to <vault>/.capture-bridge
        """
        self.root = vault_root
        self.inbox = vault_root / "inbox"
        self.state_dir = state_dir or vault_root / ".capture-bridge"

        self.ledger_db = self.state_dir / "ledger.sqlite"
        self.events_file = self.state_dir / "events.jsonl"
        self.backups_dir = self.state_dir / ".backups"

    @classmethod
    def from_config(cls, config: CaptureBridgeConfig) -> "BridgePaths":
        return cls(config.vault_path, config.state_dir)

    def get_all_directories(self) -> list[Path]:
        return [self.root, self.inbox, self.state_dir]

    def ensure(self) -> None:
        for directory in self.get_all_directories():
            directory.mkdir(parents=True, exist_ok=True)
