"""Configuration management for the Shade gateway."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any


class ConfigFormat(Enum):
    """Supported configuration formats."""

    JSON = "json"
    YAML = "yaml"
    TOML = "toml"


class ConfigSection(Enum):
    """Configuration sections."""

    GENERAL = "general"
    PROVIDERS = "providers"
    SESSIONS = "sessions"
    MODELS = "models"


class ConfigValidator(ABC):
    """Base class for configuration validators."""

    @abstractmethod
    def validate(self, value: Any) -> tuple[bool, str | None]:
        """Validate a configuration value.

        Returns:
            Tuple of (is_valid, error_message)
        """
        pass


class ConfigObserver(ABC):
    """Observer for configuration changes."""

    @abstractmethod
    async def on_config_changed(self, section: str, key: str, old_value: Any, new_value: Any):
        """Called when configuration changes."""
        pass
