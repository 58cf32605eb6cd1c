"""Configuration validators for odsync."""

import logging
import uuid
from pathlib import Path
from typing import Any

from .fingerprint import SUPPORTED_ALGORITHMS
from .path_utils import SecurityError, normalize_relative_path

logger = logging.getLogger(__name__)


class ValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


class ConfigValidator:
    """Base class for configuration validators."""

    def validate(self, value: Any) -> Any:
        """Validate and normalize a configuration value.

        Args:
            value: Raw configuration value

        Returns:
            Validated and normalized value

        Raises:
            ValidationError: If validation fails
        """
        raise NotImplementedError


class IntegerValidator(ConfigValidator):
    """Validates integer values with optional min/max bounds."""

    def __init__(self, min_value: int = None, max_value: int = None, label: str = "Value"):
        self.min_value = min_value
        self.max_value = max_value
        self.label = label

    def validate(self, value: Any) -> int:
        if isinstance(value, bool):
            raise ValidationError(f"{self.label} must be an integer, got: {value}")
        try:
            int_value = int(value)
        except (ValueError, TypeError):
            raise ValidationError(f"{self.label} must be an integer, got: {value}")

        if self.min_value is not None and int_value < self.min_value:
            raise ValidationError(
                f"{self.label} must be at least {self.min_value}, got: {int_value}"
            )

        if self.max_value is not None and int_value > self.max_value:
            raise ValidationError(
                f"{self.label} must be at most {self.max_value}, got: {int_value}"
            )

        return int_value


class SyncDirectoryValidator(ConfigValidator):
    """Validates sync directory path."""

    def validate(self, value: Any) -> str:
        if not isinstance(value, (str, Path)):
            raise ValidationError(f"Sync directory must be a string or Path, got: {type(value)}")

        path = Path(value).expanduser().resolve()

        if not path.parent.exists():
            raise ValidationError(
                f"Parent directory does not exist: {path.parent}"
            )

        if not path.exists():
            try:
                path.mkdir(parents=True, exist_ok=True)
                logger.info(f"Created sync directory: {path}")
            except OSError as e:
                raise ValidationError(
                    f"Failed to create sync directory {path}: {e}"
                )

        if not path.is_dir():
            raise ValidationError(
                f"Sync directory path exists but is not a directory: {path}"
            )

        return str(path)


class RemoteRootValidator(ConfigValidator):
    """Validates the remote folder the sync root mirrors."""

    def validate(self, value: Any) -> str:
        if not isinstance(value, str):
            raise ValidationError(f"Remote root must be a string, got: {type(value)}")
        try:
            return normalize_relative_path(value)
        except SecurityError as e:
            raise ValidationError(f"Invalid remote root: {e}")


class LogLevelValidator(ConfigValidator):
    """Validates log level."""

    VALID_LEVELS = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}

    def validate(self, value: Any) -> str:
        if not isinstance(value, str):
            raise ValidationError(f"Log level must be a string, got: {type(value)}")

        level = value.upper()

        if level not in self.VALID_LEVELS:
            raise ValidationError(
                f"Invalid log level: {value}. Must be one of: {', '.join(sorted(self.VALID_LEVELS))}"
            )

        return level


class HashAlgorithmValidator(ConfigValidator):
    """Validates the content hash used for fingerprints."""

    def validate(self, value: Any) -> str:
        if not isinstance(value, str) or value.lower() not in SUPPORTED_ALGORITHMS:
            raise ValidationError(
                f"Hash algorithm must be one of: {', '.join(SUPPORTED_ALGORITHMS)}, got: {value}"
            )
        return value.lower()


class ClientIdValidator(ConfigValidator):
    """Validates OneDrive client ID (must be valid UUID format)."""

    def validate(self, value: Any) -> str:
        if not isinstance(value, str):
            raise ValidationError(f"Client ID must be a string, got: {type(value)}")

        client_id = value.strip()

        if not client_id:
            raise ValidationError("Client ID cannot be empty")

        try:
            uuid.UUID(client_id)
        except ValueError:
            raise ValidationError(
                f"Client ID must be a valid UUID format, got: {client_id}"
            )

        return client_id


# Registry of validators for known config keys
VALIDATORS = {
    'sync_interval': IntegerValidator(60, 86400, "Sync interval"),
    'max_workers': IntegerValidator(1, 16, "Max workers"),
    'request_timeout': IntegerValidator(5, 600, "Request timeout"),
    'sync_directory': SyncDirectoryValidator(),
    'remote_root': RemoteRootValidator(),
    'hash_algorithm': HashAlgorithmValidator(),
    'log_level': LogLevelValidator(),
    'client_id': ClientIdValidator(),
}


def validate_config_value(key: str, value: Any) -> Any:
    """Validate a configuration value using registered validators.

    Args:
        key: Configuration key
        value: Value to validate

    Returns:
        Validated and normalized value

    Raises:
        ValidationError: If validation fails
    """
    if key in VALIDATORS:
        return VALIDATORS[key].validate(value)

    # Unknown keys pass through unchanged
    return value
