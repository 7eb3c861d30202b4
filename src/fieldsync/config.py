"""Configuration management for fieldsync.

This module handles loading and saving configuration to/from a JSON file.
The config directory can be customized via CLI argument; the default is
~/.config/fieldsync/.
"""

from __future__ import annotations

import copy
import json
import logging
import socket
from pathlib import Path
from typing import Any, Dict, Optional

from uuid6 import uuid7

from .validation import ValidationError

logger = logging.getLogger(__name__)

__all__ = ["Config", "DEFAULT_SYNC_CONFIG"]

DEFAULT_SYNC_CONFIG: Dict[str, Any] = {
    "server_port": 8384,
    "base_retry_delay": 1.0,
    "max_retry_delay": 60.0,
    "max_attempts": {"high": 10, "medium": 5, "low": 3},
    "flush_batch_size": 25,
    "flush_retry_ceiling": 3,
    "drain_budget": 50,
    "save_data_budget": 5,
    "feed_limit": 100,
    "retention_days": 30,
    "low_storage_threshold": 0.8,
    "storage_quota_bytes": 50 * 1024 * 1024,
    "periodic_interval": 300,
    "request_timeout": 30,
}


class Config:
    """Manages configuration stored in JSON format.

    Attributes:
        config_dir: Path to the configuration directory
        config_file: Path to config.json inside config_dir
    """

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_dir: Custom config directory path. If None, uses ~/.config/fieldsync/
        """
        self.config_dir = Path(config_dir) if config_dir else Path.home() / ".config" / "fieldsync"
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file = self.config_dir / "config.json"
        self.config_data = self.load_config()

    def _defaults(self) -> Dict[str, Any]:
        return {
            "database_file": str(self.config_dir / "client.db"),
            "server_database_file": str(self.config_dir / "events.db"),
            "server_url": "http://127.0.0.1:8384",
            "owner_id": "",
            "device_id": uuid7().hex,
            "device_name": socket.gethostname(),
            "sync": copy.deepcopy(DEFAULT_SYNC_CONFIG),
        }

    def load_config(self) -> Dict[str, Any]:
        """Load configuration from file, filling in missing defaults.

        A missing or unreadable file is replaced by a fresh default config.
        """
        defaults = self._defaults()
        stored: Dict[str, Any] = {}
        if self.config_file.exists():
            try:
                with open(self.config_file, "r", encoding="utf-8") as f:
                    stored = json.load(f)
                if not isinstance(stored, dict):
                    raise ValueError("top level must be an object")
            except (OSError, ValueError) as e:
                logger.warning(f"Could not read {self.config_file}: {e}. Using defaults.")
                stored = {}

        merged = dict(defaults)
        merged.update({k: v for k, v in stored.items() if k != "sync"})
        sync_section = dict(defaults["sync"])
        sync_section.update(stored.get("sync") or {})
        merged["sync"] = sync_section

        if merged != stored:
            self.save_config(merged)
        return merged

    def save_config(self, config: Dict[str, Any]) -> None:
        """Write configuration to file."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        value = self.config_data.get(key)
        return value if value is not None else default

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value and save to file."""
        if key == "sync":
            raise ValidationError("key", "use set_sync_value() for sync settings")
        self.config_data[key] = value
        self.save_config(self.config_data)

    def get_config_dir(self) -> Path:
        """Get the configuration directory path."""
        return self.config_dir

    # ===== Identity =====

    def get_device_id_hex(self) -> str:
        """Get the device ID as hex string."""
        return self.config_data["device_id"]

    def get_device_name(self) -> str:
        """Get the human-readable device name."""
        return self.config_data["device_name"]

    def get_owner_id(self) -> str:
        """Get the owner (worker) ID this client syncs for."""
        return self.config_data.get("owner_id") or ""

    def get_server_url(self) -> str:
        """Get the sync server base URL without trailing slash."""
        return str(self.config_data["server_url"]).rstrip("/")

    # ===== Sync Configuration =====

    def get_sync_config(self) -> Dict[str, Any]:
        """Get a copy of the sync configuration section."""
        return copy.deepcopy(self.config_data["sync"])

    def get_sync_value(self, key: str) -> Any:
        """Get one sync setting, falling back to the built-in default."""
        value = self.config_data["sync"].get(key)
        if value is None:
            value = DEFAULT_SYNC_CONFIG.get(key)
        return value

    def set_sync_value(self, key: str, value: Any) -> None:
        """Set one sync setting and save to file."""
        if key not in DEFAULT_SYNC_CONFIG:
            raise ValidationError("key", f"unknown sync setting '{key}'")
        self.config_data["sync"][key] = value
        self.save_config(self.config_data)

    def get_sync_server_port(self) -> int:
        """Get the sync server port."""
        return int(self.get_sync_value("server_port"))

    def get_max_attempts(self) -> Dict[str, int]:
        """Get the per-priority retry ceilings keyed by priority name."""
        configured = self.get_sync_value("max_attempts") or {}
        merged = dict(DEFAULT_SYNC_CONFIG["max_attempts"])
        merged.update({str(k).lower(): int(v) for k, v in configured.items()})
        return merged

    def get_retry_policy(self) -> "RetryPolicy":
        """Build the queue's retry policy from the sync settings."""
        from .sync_queue import RetryPolicy

        return RetryPolicy.from_config(self)

    def get_database_file(self) -> Path:
        """Get the client database path."""
        return Path(self.config_data["database_file"])

    def get_server_database_file(self) -> Path:
        """Get the server event store path."""
        return Path(self.config_data["server_database_file"])
