"""Configuration management with validation, persistence and change observers."""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import appdirs
import toml
import yaml
from pydantic import ValidationError

from shade.config import ConfigFormat, ConfigObserver, ConfigSection
from shade.config.schema import ProviderConfig, ShadeConfig
from shade.config.validators import ConfigValidatorRegistry
from shade.utils.logger import setup_logger, update_log_level

if TYPE_CHECKING:
    from shade.providers.registry import ProviderRegistry

logger = setup_logger(__name__)

APP_NAME = "Shade"

_SUFFIX_FORMATS = {
    ".json": ConfigFormat.JSON,
    ".yaml": ConfigFormat.YAML,
    ".yml": ConfigFormat.YAML,
    ".toml": ConfigFormat.TOML,
}


class ConfigManager:
    """Configuration store for the gateway.

    Owns the per-provider credentials and settings; the gateway components
    read them through ``get_provider_config`` and never write keys themselves.
    """

    def __init__(
        self,
        config_dir: Path | str | None = None,
        data_dir: Path | str | None = None,
        app_name: str = APP_NAME,
    ):
        """Initialize configuration manager.

        Args:
            config_dir: Directory holding ``config.json`` (platform config dir when None)
            data_dir: Sessions and registry directory; overrides ``general.data_dir``
            app_name: Name used for the platform directories
        """
        self.app_name = app_name
        self.config: ShadeConfig = ShadeConfig()
        self.observers: set[ConfigObserver] = set()
        self.validator_registry = ConfigValidatorRegistry()

        # Paths
        self.config_dir = Path(config_dir) if config_dir else Path(appdirs.user_config_dir(app_name))
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file = self.config_dir / "config.json"
        self._data_dir_override = Path(data_dir) if data_dir else None

        # History
        self.history: list[dict[str, Any]] = []
        self.max_history = 50

        self.load()

    @property
    def data_dir(self) -> Path:
        if self._data_dir_override is not None:
            return self._data_dir_override
        if self.config.general.data_dir:
            return Path(self.config.general.data_dir)
        return Path(appdirs.user_data_dir(self.app_name))

    def add_observer(self, observer: ConfigObserver):
        """Add a configuration change observer."""
        self.observers.add(observer)

    def remove_observer(self, observer: ConfigObserver):
        """Remove a configuration change observer."""
        self.observers.discard(observer)

    async def _notify_observers(self, section: str, key: str, old_value: Any, new_value: Any):
        """Notify all observers of configuration changes."""
        tasks = [
            asyncio.create_task(observer.on_config_changed(section, key, old_value, new_value))
            for observer in self.observers
        ]

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Config observer failed for {section}.{key}: {result}")

    def get(self, path: str, default: Any = None) -> Any:
        """Get configuration value by dot-separated path.

        Example: config.get("providers.entries.openai.model")
        """
        value = self.config.model_dump()

        for part in path.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default

        return value

    def _apply(self, path: str, value: Any) -> Any:
        """Write ``value`` at ``path`` and rebuild the validated model.

        Returns the previous value. Raises ``ValidationError`` on a schema
        violation, leaving the current configuration untouched.
        """
        parts = path.split(".")
        old_value = self.get(path)

        config_dict = self.config.model_dump()
        current = config_dict
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]
        current[parts[-1]] = value

        self.config = ShadeConfig(**config_dict)
        return old_value

    def _check(self, path: str, value: Any) -> bool:
        validator = self.validator_registry.get_validator(path)
        if validator is None:
            return True
        is_valid, error = validator.validate(value)
        if not is_valid:
            logger.error(f"Validation failed for {path}: {error}")
        return is_valid

    def set_sync(self, path: str, value: Any, validate: bool = True, save: bool = True) -> bool:
        """Set configuration value synchronously (no observer notification)."""
        if not path or (validate and not self._check(path, value)):
            return False

        try:
            old_value = self._apply(path, value)
        except ValidationError as e:
            logger.error(f"Failed to set {path}: {e}")
            return False

        self._after_change(path, old_value, value)
        if save:
            self.save()
        return True

    async def set(self, path: str, value: Any, validate: bool = True, save: bool = True) -> bool:
        """Set configuration value by dot-separated path.

        Returns True if successful.
        """
        if not path or (validate and not self._check(path, value)):
            return False

        try:
            old_value = self._apply(path, value)
        except ValidationError as e:
            logger.error(f"Failed to set {path}: {e}")
            return False

        self._after_change(path, old_value, value)

        parts = path.split(".")
        section = parts[0]
        key = ".".join(parts[1:]) if len(parts) > 1 else parts[0]
        await self._notify_observers(section, key, old_value, value)

        if save:
            self.save()
        return True

    def _after_change(self, path: str, old_value: Any, new_value: Any):
        self._add_to_history(
            {
                "timestamp": datetime.now().isoformat(),
                "path": path,
                "old_value": "***" if path.endswith("api_key") else old_value,
                "new_value": "***" if path.endswith("api_key") else new_value,
            }
        )

        if path == "general.log_level":
            update_log_level(new_value)

        if not path.endswith("api_key"):
            logger.debug(f"Updated config {path}: {old_value} -> {new_value}")

    def save(self, path: Path | None = None, format: ConfigFormat | None = None):
        """Save configuration to file."""
        path = Path(path) if path else self.config_file
        format = format or _SUFFIX_FORMATS.get(path.suffix.lower(), ConfigFormat.JSON)

        data = self.config.model_dump(mode="json")
        path.parent.mkdir(parents=True, exist_ok=True)

        if format == ConfigFormat.JSON:
            path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        elif format == ConfigFormat.YAML:
            path.write_text(yaml.safe_dump(data, default_flow_style=False), encoding="utf-8")
        elif format == ConfigFormat.TOML:
            path.write_text(toml.dumps(_strip_none(data)), encoding="utf-8")

        logger.info(f"Saved configuration to {path}")

    def load(self, path: Path | None = None) -> bool:
        """Load configuration from file."""
        path = Path(path) if path else self.config_file

        if not path.exists():
            logger.info("No configuration file found, using defaults")
            return False

        format = _SUFFIX_FORMATS.get(path.suffix.lower())
        if format is None:
            logger.error(f"Unknown configuration format: {path.suffix}")
            return False

        try:
            text = path.read_text(encoding="utf-8")
            if format == ConfigFormat.JSON:
                data = json.loads(text)
            elif format == ConfigFormat.YAML:
                data = yaml.safe_load(text)
            else:
                data = toml.loads(text)

            self.config = ShadeConfig(**(data or {}))
        except (OSError, ValueError, yaml.YAMLError) as e:
            # ValidationError and JSONDecodeError are ValueErrors
            logger.error(f"Failed to load configuration: {e}")
            return False

        update_log_level(self.config.general.log_level)
        logger.info(f"Loaded configuration from {path}")
        return True

    async def reload(self):
        """Reload configuration from file and notify observers of changes."""
        old_config = self.config.model_dump()

        if self.load():
            new_config = self.config.model_dump()
            for section, key, old_val, new_val in self._diff(old_config, new_config):
                await self._notify_observers(section, key, old_val, new_val)

    def _diff(self, old_dict: dict, new_dict: dict, path: str = "") -> list[tuple[str, str, Any, Any]]:
        """Recursively find configuration changes."""
        changes = []

        for key in set(old_dict.keys()) | set(new_dict.keys()):
            current_path = f"{path}.{key}" if path else key
            old_val = old_dict.get(key)
            new_val = new_dict.get(key)

            if old_val == new_val:
                continue
            if isinstance(old_val, dict) and isinstance(new_val, dict):
                changes.extend(self._diff(old_val, new_val, current_path))
            else:
                parts = current_path.split(".")
                changes.append((parts[0], ".".join(parts[1:]), old_val, new_val))

        return changes

    def export_config(
        self, path: Path, format: ConfigFormat = ConfigFormat.JSON, include_sensitive: bool = False
    ):
        """Export configuration to file, without API keys unless asked."""
        data = self.config.model_dump(mode="json")

        if not include_sensitive:
            for entry in data["providers"]["entries"].values():
                entry["api_key"] = ""

        if format == ConfigFormat.JSON:
            path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        elif format == ConfigFormat.YAML:
            path.write_text(yaml.safe_dump(data, default_flow_style=False), encoding="utf-8")
        elif format == ConfigFormat.TOML:
            path.write_text(toml.dumps(_strip_none(data)), encoding="utf-8")

        logger.info(f"Exported configuration to {path}")

    def reset_section(self, section: ConfigSection):
        """Reset a configuration section to defaults."""
        section_name = section.value
        section_class = type(getattr(self.config, section_name))
        setattr(self.config, section_name, section_class())
        logger.info(f"Reset configuration section: {section_name}")
        self.save()

    def validate(self) -> list[str]:
        """Validate entire configuration.

        Returns list of validation errors.
        """
        errors = []

        try:
            self.config = ShadeConfig(**self.config.model_dump())
        except ValidationError as e:
            errors.append(str(e))

        paths = list(_leaf_paths(self.config.model_dump()))
        for path, error in self.validator_registry.validate_all(self.get, paths):
            errors.append(f"{path}: {error}")

        return errors

    # -- provider settings ------------------------------------------------

    def get_provider_config(self, provider_id: str) -> ProviderConfig:
        """Settings for one provider (defaults when none are stored)."""
        entry = self.config.providers.entries.get(provider_id)
        return entry.model_copy() if entry else ProviderConfig()

    def get_api_key(self, provider_id: str) -> str:
        return self.get_provider_config(provider_id).api_key

    def seed_providers(self, registry: "ProviderRegistry", save: bool = True) -> list[str]:
        """Add template settings for registry providers missing from the config.

        Returns the ids that were added.
        """
        entries = self.config.providers.entries
        added = []
        for provider_id, template in registry.default_config_template().items():
            if provider_id not in entries:
                entries[provider_id] = template
                added.append(provider_id)

        if added:
            logger.info(f"Seeded configuration for providers: {', '.join(added)}")
            if save:
                self.save()
        return added

    # -- history ----------------------------------------------------------

    def _add_to_history(self, entry: dict[str, Any]):
        """Add entry to configuration history."""
        self.history.append(entry)

        if len(self.history) > self.max_history:
            self.history = self.history[-self.max_history :]

    def get_history(self) -> list[dict[str, Any]]:
        """Get configuration change history."""
        return self.history.copy()


def _strip_none(data: Any) -> Any:
    """TOML has no null; drop keys whose value is None."""
    if isinstance(data, dict):
        return {k: _strip_none(v) for k, v in data.items() if v is not None}
    return data


def _leaf_paths(data: dict, prefix: str = ""):
    for key, value in data.items():
        path = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict) and value:
            yield from _leaf_paths(value, path)
        else:
            yield path
