"""Configuration validators for runtime validation."""

import fnmatch
import re
from typing import Any
from urllib.parse import urlparse

from shade.config import ConfigValidator


class URLValidator(ConfigValidator):
    """Validate URL format."""

    def __init__(self, schemes: list[str] | None = None, allow_empty: bool = False):
        self.schemes = schemes or ["http", "https"]
        self.allow_empty = allow_empty

    def validate(self, value: Any) -> tuple[bool, str | None]:
        if value in (None, "") and self.allow_empty:
            return True, None

        if not isinstance(value, str):
            return False, "Value must be a string"

        try:
            result = urlparse(value)
        except ValueError as e:
            return False, str(e)

        if not result.scheme:
            return False, "URL must have a scheme"
        if self.schemes and result.scheme not in self.schemes:
            return False, f"URL scheme must be one of: {', '.join(self.schemes)}"
        if not result.netloc:
            return False, "URL must have a network location"
        return True, None


class RangeValidator(ConfigValidator):
    """Validate numeric ranges."""

    def __init__(self, min_value: float | None = None, max_value: float | None = None):
        self.min_value = min_value
        self.max_value = max_value

    def validate(self, value: Any) -> tuple[bool, str | None]:
        if isinstance(value, bool) or not isinstance(value, int | float):
            return False, "Value must be numeric"

        if self.min_value is not None and value < self.min_value:
            return False, f"Value must be >= {self.min_value}"

        if self.max_value is not None and value > self.max_value:
            return False, f"Value must be <= {self.max_value}"

        return True, None


class RegexValidator(ConfigValidator):
    """Validate against regex pattern."""

    def __init__(self, pattern: str, message: str | None = None):
        self.pattern = re.compile(pattern)
        self.message = message or f"Value must match pattern: {pattern}"

    def validate(self, value: Any) -> tuple[bool, str | None]:
        if not isinstance(value, str):
            return False, "Value must be a string"

        if not self.pattern.match(value):
            return False, self.message

        return True, None


class APIKeyValidator(ConfigValidator):
    """Validate API key format."""

    def __init__(self, prefix: str | None = None, min_length: int | None = None):
        self.prefix = prefix
        self.min_length = min_length

    def validate(self, value: Any) -> tuple[bool, str | None]:
        if not value:
            return True, None  # Empty is OK (local providers)

        if not isinstance(value, str):
            return False, "API key must be a string"

        if value != value.strip():
            return False, "API key must not contain surrounding whitespace"

        if self.prefix and not value.startswith(self.prefix):
            return False, f"API key must start with: {self.prefix}"

        if self.min_length and len(value) < self.min_length:
            return False, f"API key must be at least {self.min_length} characters"

        return True, None


class ModelNameValidator(ConfigValidator):
    """Validate model names."""

    def __init__(self, allow_empty: bool = True):
        self.allow_empty = allow_empty

    def validate(self, value: Any) -> tuple[bool, str | None]:
        if not isinstance(value, str):
            return False, "Model name must be a string"

        if not value:
            if self.allow_empty:
                return True, None
            return False, "Model name cannot be empty"

        if any(c.isspace() for c in value):
            return False, "Model name cannot contain whitespace"

        return True, None


class ConfigValidatorRegistry:
    """Registry for configuration validators.

    Paths may contain ``*`` wildcards to cover every entry of a mapping, for
    example ``providers.entries.*.base_url``.
    """

    def __init__(self):
        self.validators: dict[str, ConfigValidator] = {}
        self._register_default_validators()

    def _register_default_validators(self):
        """Register default validators."""
        # Providers
        self.register("providers.entries.*.base_url", URLValidator(allow_empty=True))
        self.register("providers.entries.*.api_key", APIKeyValidator())
        self.register("providers.entries.*.model", ModelNameValidator())
        self.register(
            "providers.active_provider",
            RegexValidator(r"^[A-Za-z0-9_.-]+$", "Provider id may only contain letters, digits, '.', '_' and '-'"),
        )
        self.register("providers.max_tokens", RangeValidator(1, 1_000_000))

        # Sessions
        self.register("sessions.retention_days", RangeValidator(1, 36500))
        self.register("sessions.history_limit", RangeValidator(0, 1000))

        # Model cache
        self.register("models.cache_ttl_seconds", RangeValidator(0))

    def register(self, path: str, validator: ConfigValidator):
        """Register a validator for a configuration path."""
        self.validators[path] = validator

    def unregister(self, path: str):
        """Unregister a validator."""
        self.validators.pop(path, None)

    def get_validator(self, path: str) -> ConfigValidator | None:
        """Get validator for a path, falling back to wildcard patterns."""
        validator = self.validators.get(path)
        if validator is not None:
            return validator

        depth = path.count(".")
        for pattern, candidate in self.validators.items():
            if "*" in pattern and pattern.count(".") == depth and fnmatch.fnmatchcase(path, pattern):
                return candidate
        return None

    def validate_all(self, config_getter, paths: list[str]) -> list[tuple[str, str]]:
        """Validate every concrete path that has a validator.

        Returns list of (path, error) tuples.
        """
        errors = []

        for path in paths:
            validator = self.get_validator(path)
            if validator is None:
                continue
            value = config_getter(path)
            if value is not None:
                is_valid, error = validator.validate(value)
                if not is_valid:
                    errors.append((path, error))

        return errors
