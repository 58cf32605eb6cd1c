#!/usr/bin/env python3
"""Configuration management for odsync.

config.json contains:

{
  "sync_directory": "/home/user/OneDrive",  // Local sync root
  "remote_root": "",                       // Remote folder mirrored ("" = drive root)
  "sync_interval": 300,                    // Seconds between automatic cycles
  "max_workers": 4,                        // Parallel transfers per cycle
  "request_timeout": 60,                   // Seconds per network call
  "hash_algorithm": "sha256",              // sha256 | sha1 | quickxor
  "log_level": "INFO",
  "client_id": ""                          // Optional Azure app client ID
}

Engine state (sync items, upload sessions, history) lives in state.db
next to this file; see odsync.state_store.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, Any

from .validators import validate_config_value, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncSettings:
    """Immutable view of the settings one cycle runs with."""

    sync_root: Path
    remote_root: str = ''
    sync_interval: int = 300
    max_workers: int = 4
    request_timeout: int = 60
    hash_algorithm: str = 'sha256'


class Config:
    """Manages odsync configuration."""

    DEFAULT_CONFIG_DIR = Path.home() / ".config" / "odsync"
    DEFAULT_SYNC_DIR = Path.home() / "OneDrive"
    CONFIG_FILE = "config.json"
    TOKEN_FILE = ".onedrive_token"
    STATE_DB_FILE = "state.db"
    LOG_FILE = "odsync.log"
    FORCE_SYNC_FILE = ".force_sync"

    DEFAULTS: Dict[str, Any] = {
        'sync_interval': 300,
        'remote_root': '',
        'max_workers': 4,
        'request_timeout': 60,
        'hash_algorithm': 'sha256',
        'log_level': 'INFO',
    }

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_dir: Custom configuration directory path
        """
        self.config_dir = config_dir or self.DEFAULT_CONFIG_DIR
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.config_path = self.config_dir / self.CONFIG_FILE
        self.token_path = self.config_dir / self.TOKEN_FILE
        self.state_db_path = self.config_dir / self.STATE_DB_FILE
        self.log_path = self.config_dir / self.LOG_FILE
        self.force_sync_path = self.config_dir / self.FORCE_SYNC_FILE

        self._config: Dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        """Load configuration from file."""
        if self.config_path.exists():
            with open(self.config_path, 'r') as f:
                self._config = json.load(f)
            logger.debug(f"Loaded config from {self.config_path}")
        else:
            self._config = dict(self.DEFAULTS)
            self._config['sync_directory'] = str(self.DEFAULT_SYNC_DIR)
            self.save()
            logger.debug(f"Created default config at {self.config_path}")

    def save(self) -> None:
        """Save configuration to file."""
        with open(self.config_path, 'w') as f:
            json.dump(self._config, f, indent=2)
        # Owner read/write only
        self.config_path.chmod(0o600)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value
        """
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value with validation.

        Args:
            key: Configuration key
            value: Configuration value

        Raises:
            ValueError: If value is invalid for the given key
        """
        try:
            validated_value = validate_config_value(key, value)
        except ValidationError as e:
            raise ValueError(str(e))
        self._config[key] = validated_value
        self.save()

    @property
    def sync_directory(self) -> Path:
        """Get sync directory path."""
        return Path(self._config.get('sync_directory', str(self.DEFAULT_SYNC_DIR))).expanduser()

    @property
    def remote_root(self) -> str:
        return self._config.get('remote_root', '')

    @property
    def sync_interval(self) -> int:
        """Get sync interval in seconds."""
        return self._config.get('sync_interval', self.DEFAULTS['sync_interval'])

    @property
    def max_workers(self) -> int:
        return self._config.get('max_workers', self.DEFAULTS['max_workers'])

    @property
    def request_timeout(self) -> int:
        return self._config.get('request_timeout', self.DEFAULTS['request_timeout'])

    @property
    def hash_algorithm(self) -> str:
        return self._config.get('hash_algorithm', self.DEFAULTS['hash_algorithm'])

    @property
    def client_id(self) -> str:
        """Get OneDrive client ID."""
        return self._config.get('client_id', '')

    @property
    def log_level(self) -> str:
        """Get log level."""
        return self._config.get('log_level', 'INFO').upper()

    def snapshot(self) -> SyncSettings:
        """Capture the settings for one cycle."""
        return SyncSettings(
            sync_root=self.sync_directory,
            remote_root=self.remote_root,
            sync_interval=self.sync_interval,
            max_workers=self.max_workers,
            request_timeout=self.request_timeout,
            hash_algorithm=self.hash_algorithm,
        )
