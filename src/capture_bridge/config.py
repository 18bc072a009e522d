"""Configuration management for Capture Bridge."""

import logging
import os
import tomllib
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from .errors import ConfigError
from .models.resilience import ErrorKind, RetryPolicy
from .resilience.policies import PolicyTable, parse_policy_overrides

logger = logging.getLogger(__name__)

REPO_CONFIG_RELPATH = Path(".capture-bridge") / "config.toml"
DEFAULT_VAULT_DIRNAME = "capture_vault"


def _find_repo_root(start_dir: Path) -> Path:
    """Find repository root by walking upward looking for .git or pyproject.toml."""
    current_dir = start_dir

    while True:
        if (current_dir / ".git").exists() or (current_dir / "pyproject.toml").exists():
            return current_dir

        parent_dir = current_dir.parent
        if parent_dir == current_dir:
            # No repo found, return original directory
            return start_dir

        current_dir = parent_dir


def _load_repo_config_data(repo_root: Path) -> Optional[dict]:
    """Load repo config data from .capture-bridge/config.toml if it exists.

    A malformed file is logged and ignored.
    """
    config_file = repo_root / REPO_CONFIG_RELPATH

    if not config_file.exists():
        return None

    try:
        with open(config_file, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning("Ignoring unreadable config %s: %s", config_file, e)
        return None


def _get_repo_config_value(data: Optional[dict], keys: list[str]):
    """Safely get a nested repo config value."""
    if not data:
        return None
    current = data
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return None
        current = current[key]
    return current


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}") from None


def resolve_vault_root(cli_vault_path: Optional[str] = None, repo_config: Optional[dict] = None) -> Path:
    """Resolve vault root path with the following precedence:

    1. CLI --vault option (if provided)
    2. repo-local .capture-bridge/config.toml `vault_root`
    3. CAPTURE_BRIDGE_VAULT environment variable
    4. ./capture_vault

    The vault does not need to exist yet; `capture-bridge init` creates it.
    """
    if cli_vault_path:
        return Path(cli_vault_path).expanduser().resolve()

    repo_vault = _get_repo_config_value(repo_config, ["vault_root"])
    if isinstance(repo_vault, str) and repo_vault:
        return Path(repo_vault).expanduser().resolve()

    env_vault = os.environ.get("CAPTURE_BRIDGE_VAULT")
    if env_vault:
        return Path(env_vault).expanduser().resolve()

    return (Path.cwd() / DEFAULT_VAULT_DIRNAME).resolve()


class CaptureBridgeConfig(BaseModel):
    """Runtime configuration for the capture pipeline."""

    vault_path: Path = Field(default_factory=lambda: Path.cwd() / DEFAULT_VAULT_DIRNAME)
    state_dir: Optional[Path] = Field(
        default=None, description="Ledger and event log location; defaults to <vault>/.capture-bridge"
    )
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_cooldown_seconds: float = Field(default=60.0, ge=0)
    stale_after_minutes: float = Field(default=10.0, gt=0)
    backup_keep_hourly: int = Field(default=24, ge=1, description="Hourly ledger snapshots to retain")
    backup_keep_daily: int = Field(default=7, ge=1, description="Daily ledger snapshots to retain")
    retry_policies: dict[ErrorKind, RetryPolicy] = Field(
        default_factory=dict, description="Per-kind overrides of the default retry policies"
    )

    model_config = {"frozen": False}

    def policy_table(self) -> PolicyTable:
        return PolicyTable(self.retry_policies)

    @classmethod
    def from_env(cls, cli_vault_path: Optional[str] = None) -> "CaptureBridgeConfig":
        """Load configuration from CLI, repo config, environment, then defaults.

        Raises:
            ConfigError: Invalid values in the repo config or environment
        """
        repo_config = _load_repo_config_data(_find_repo_root(Path.cwd()))
        vault_path = resolve_vault_root(cli_vault_path, repo_config)

        state_dir_value = os.environ.get("CAPTURE_BRIDGE_STATE_DIR") or _get_repo_config_value(
            repo_config, ["state_dir"]
        )
        state_dir = Path(state_dir_value).expanduser().resolve() if state_dir_value else None

        breaker = _get_repo_config_value(repo_config, ["breaker"]) or {}
        retry_tables = _get_repo_config_value(repo_config, ["retry"]) or {}
        backup = _get_repo_config_value(repo_config, ["backup"]) or {}
        if not all(isinstance(t, dict) for t in (breaker, retry_tables, backup)):
            raise ConfigError(f"[breaker], [retry] and [backup] in {REPO_CONFIG_RELPATH} must be tables")

        try:
            return cls(
                vault_path=vault_path,
                state_dir=state_dir,
                breaker_failure_threshold=int(breaker.get("failure_threshold", 5)),
                breaker_cooldown_seconds=_env_float(
                    "CAPTURE_BRIDGE_BREAKER_COOLDOWN", float(breaker.get("cooldown_seconds", 60.0))
                ),
                stale_after_minutes=float(
                    _get_repo_config_value(repo_config, ["recovery", "stale_after_minutes"]) or 10.0
                ),
                backup_keep_hourly=int(backup.get("keep_hourly", 24)),
                backup_keep_daily=int(backup.get("keep_daily", 7)),
                retry_policies=parse_policy_overrides(retry_tables),
            )
        except ValueError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e
