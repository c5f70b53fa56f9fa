"""Configuration management for lorehub."""

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_BASE_PATH = "~/.lorehub"
BASE_PATH_ENV = "LOREHUB_HOME"


def resolve_base_path(base_path: str | Path | None = None) -> Path:
    """Resolve the per-user base directory.

    Args:
        base_path: Explicit path. Falls back to $LOREHUB_HOME, then ~/.lorehub.

    Returns:
        Expanded base directory path.
    """
    if base_path is None:
        base_path = os.environ.get(BASE_PATH_ENV) or DEFAULT_BASE_PATH
    return Path(base_path).expanduser()


class ConfigManager:
    """Manages configuration for lorehub.

    This service handles loading and saving the config file, default
    settings, well-known paths under the base directory, and the
    device-local sync state of each workspace.
    """

    DEFAULTS: dict[str, Any] = {
        "network_timeout": 60.0,
        "network_retries": 3,
        "lock_timeout": 30.0,
        "export_batch_size": 100,
        "export_memory_threshold_mb": 500,
    }

    def __init__(self, base_path: str | Path | None = None) -> None:
        """Initialize the configuration manager.

        Args:
            base_path: Base directory for lorehub storage.
        """
        self.base_path = resolve_base_path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.config_path = self.base_path / "config.json"

    @property
    def db_path(self) -> Path:
        return self.base_path / "lorehub.db"

    @property
    def device_id_path(self) -> Path:
        return self.base_path / "device-id"

    @property
    def sync_root(self) -> Path:
        return self.base_path / "sync" / "repos"

    @property
    def lock_root(self) -> Path:
        return self.base_path / "sync" / "locks"

    def load_config(self) -> dict[str, Any]:
        """Load configuration from config.json.

        Returns:
            Configuration dictionary.
        """
        if self.config_path.exists():
            try:
                with open(self.config_path) as f:
                    return json.load(f)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Failed to load %s, using defaults: %s", self.config_path, e)
                return {}
        return {}

    def save_config(self, config: dict[str, Any]) -> None:
        """Save configuration to config.json.

        Args:
            config: Configuration dictionary to save.
        """
        with open(self.config_path, "w") as f:
            json.dump(config, f, indent=2)

    def get(self, key: str) -> Any:
        """Get a setting, falling back to its default.

        Raises:
            KeyError: If the key is not a known setting.
        """
        if key not in self.DEFAULTS:
            raise KeyError(f"Unknown setting: {key}")
        settings = self.load_config().get("settings", {})
        return settings.get(key, self.DEFAULTS[key])

    def set(self, key: str, value: Any) -> None:
        """Persist a setting.

        Raises:
            KeyError: If the key is not a known setting.
        """
        if key not in self.DEFAULTS:
            raise KeyError(f"Unknown setting: {key}")
        config = self.load_config()
        config.setdefault("settings", {})[key] = value
        self.save_config(config)

    def get_local_sync_state(self, workspace_id: str) -> dict[str, Any]:
        """Get this device's record of a workspace's sync progress.

        Args:
            workspace_id: Workspace ID.

        Returns:
            Dictionary with optional 'last_applied_commit' and 'last_sync_at'.
        """
        config = self.load_config()
        return config.get("sync_state", {}).get(workspace_id, {})

    def set_local_sync_state(self, workspace_id: str, **updates: Any) -> None:
        """Update this device's record of a workspace's sync progress.

        Args:
            workspace_id: Workspace ID.
            **updates: Fields to set.
        """
        config = self.load_config()
        state = config.setdefault("sync_state", {}).setdefault(workspace_id, {})
        state.update(updates)
        self.save_config(config)
