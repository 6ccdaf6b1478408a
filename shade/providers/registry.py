"""
Provider Registry - Declarative Provider Metadata

The registry holds the metadata of every known provider: display name,
protocol family, base URL, default model, whether a key is required and the
models it is known to serve. It never contacts the network.

Lifecycle:
==========

1. ``ProviderRegistry(override_path)`` starts with the built-in catalogue.
2. ``load()`` reads the override file (``providers.json`` in the data
   directory). Entries there replace or extend the built-ins field by field;
   unknown ids add new providers. If the file does not exist, the built-in
   catalogue is written out so the user has something to extend. If it cannot
   be parsed, the built-ins are used and the condition is logged.
3. ``watch()`` reloads the override file whenever it changes on disk.

The registry is an ordinary object passed to its collaborators (factory,
model cache, chat manager); there is no process-wide instance.

Override File Format:
=====================

```json
{
  "my-server": {
    "displayName": "My Server",
    "protocol": "openai-compatible",
    "baseUrl": "http://192.168.1.20:8080/v1",
    "defaultModel": "qwen2.5",
    "requiresApiKey": false,
    "models": {"qwen2.5": {"displayName": "Qwen 2.5"}}
  }
}
```
"""

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from shade.config.schema import ProviderConfig
from shade.core.models import ModelInfo
from shade.utils.fileio import atomic_write_json, read_json
from shade.utils.logger import setup_logger

logger = setup_logger(__name__)

PROTOCOL_OPENAI = "openai"
PROTOCOL_ANTHROPIC = "anthropic"
PROTOCOL_GEMINI = "gemini"
PROTOCOL_COMPATIBLE = "openai-compatible"

OVERRIDE_FILENAME = "providers.json"


@dataclass(frozen=True)
class ProviderDescriptor:
    """Metadata describing one provider."""

    id: str
    display_name: str = ""
    protocol: str = PROTOCOL_COMPATIBLE
    description: str = ""
    website: str = ""
    base_url: str | None = None
    default_model: str = ""
    requires_api_key: bool = True
    models: dict[str, ModelInfo] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "displayName": self.display_name or self.id,
            "protocol": self.protocol,
            "description": self.description,
            "website": self.website,
            "defaultModel": self.default_model,
            "requiresApiKey": self.requires_api_key,
            "models": {
                model_id: _model_to_dict(model) for model_id, model in self.models.items()
            },
        }
        if self.base_url:
            data["baseUrl"] = self.base_url
        return data

    @classmethod
    def from_dict(cls, provider_id: str, data: dict[str, Any]) -> "ProviderDescriptor":
        if not isinstance(data, dict):
            raise ValueError(f"Provider entry '{provider_id}' must be an object")

        models_raw = data.get("models") or {}
        if not isinstance(models_raw, dict):
            raise ValueError(f"Provider entry '{provider_id}' has invalid models")

        models = {}
        for model_id, meta in models_raw.items():
            meta = meta or {}
            models[model_id] = ModelInfo(
                id=model_id,
                display_name=str(meta.get("displayName") or model_id),
                options=dict(meta.get("options") or {}),
            )

        default_model = str(data.get("defaultModel") or next(iter(models), ""))
        requires_key = data.get("requiresApiKey")
        return cls(
            id=provider_id,
            display_name=str(data.get("displayName") or provider_id),
            protocol=str(data.get("protocol") or PROTOCOL_COMPATIBLE),
            description=str(data.get("description") or ""),
            website=str(data.get("website") or ""),
            base_url=data.get("baseUrl") or None,
            default_model=default_model,
            requires_api_key=True if requires_key is None else bool(requires_key),
            models=models,
        )


def _model_to_dict(model: ModelInfo) -> dict[str, Any]:
    data: dict[str, Any] = {"displayName": model.display_name}
    if model.options:
        data["options"] = dict(model.options)
    return data


def _models(*entries: tuple[str, str] | tuple[str, str, dict[str, Any]]) -> dict[str, ModelInfo]:
    models = {}
    for entry in entries:
        model_id, display_name = entry[0], entry[1]
        options = entry[2] if len(entry) > 2 else {}
        models[model_id] = ModelInfo(id=model_id, display_name=display_name, options=options)
    return models


BUILTIN_PROVIDERS: tuple[ProviderDescriptor, ...] = (
    ProviderDescriptor(
        id="gemini",
        display_name="Google Gemini",
        protocol=PROTOCOL_GEMINI,
        description="Google's multimodal Gemini models",
        website="https://ai.google.dev",
        default_model="gemini-2.0-flash",
        models=_models(
            ("gemini-2.0-flash", "Gemini 2.0 Flash"),
            ("gemini-1.5-pro", "Gemini 1.5 Pro"),
            ("gemini-1.5-flash", "Gemini 1.5 Flash"),
        ),
    ),
    ProviderDescriptor(
        id="openai",
        display_name="OpenAI",
        protocol=PROTOCOL_OPENAI,
        description="GPT models from OpenAI",
        website="https://platform.openai.com",
        default_model="gpt-4o",
        models=_models(
            ("gpt-4o", "GPT-4o"),
            ("gpt-4o-mini", "GPT-4o mini"),
            ("o1", "o1", {"reasoning_effort": "high"}),
        ),
    ),
    ProviderDescriptor(
        id="anthropic",
        display_name="Anthropic Claude",
        protocol=PROTOCOL_ANTHROPIC,
        description="Claude models from Anthropic",
        website="https://console.anthropic.com",
        default_model="claude-sonnet-4-20250514",
        models=_models(
            ("claude-sonnet-4-20250514", "Claude Sonnet 4"),
            ("claude-3-5-haiku-20241022", "Claude 3.5 Haiku"),
        ),
    ),
    ProviderDescriptor(
        id="grok",
        display_name="xAI Grok",
        protocol=PROTOCOL_COMPATIBLE,
        description="Grok models from xAI",
        website="https://x.ai",
        base_url="https://api.x.ai/v1",
        default_model="grok-2-vision-1212",
        models=_models(("grok-2-vision-1212", "Grok 2 Vision")),
    ),
    ProviderDescriptor(
        id="openrouter",
        display_name="OpenRouter",
        protocol=PROTOCOL_COMPATIBLE,
        description="Many hosted models behind one API",
        website="https://openrouter.ai",
        base_url="https://openrouter.ai/api/v1",
        default_model="openai/gpt-4o",
        models=_models(
            ("openai/gpt-4o", "GPT-4o (OpenRouter)"),
            ("anthropic/claude-sonnet-4", "Claude Sonnet 4 (OpenRouter)"),
        ),
    ),
    ProviderDescriptor(
        id="ollama",
        display_name="Ollama",
        protocol=PROTOCOL_COMPATIBLE,
        description="Local models served by Ollama",
        website="https://ollama.com",
        base_url="http://localhost:11434/v1",
        default_model="llama3.2",
        requires_api_key=False,
        models=_models(("llama3.2", "Llama 3.2"), ("llava", "LLaVA")),
    ),
    ProviderDescriptor(
        id="lm-studio",
        display_name="LM Studio",
        protocol=PROTOCOL_COMPATIBLE,
        description="Local models served by LM Studio",
        website="https://lmstudio.ai",
        base_url="http://localhost:1234/v1",
        default_model="local-model",
        requires_api_key=False,
        models=_models(("local-model", "Loaded model")),
    ),
)


class RegistryFileWatcher(FileSystemEventHandler):
    """Reload the registry when its override file changes."""

    def __init__(self, registry: "ProviderRegistry"):
        self.registry = registry

    def _reload_if_target(self, path: str, action: str):
        if not path or Path(path).resolve() != self.registry.override_path.resolve():
            return
        logger.info(f"Provider registry file {action}: {path}")
        self.registry.reload()

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self._reload_if_target(event.src_path, "modified")

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self._reload_if_target(event.src_path, "created")

    def on_moved(self, event: FileSystemEvent):
        # Atomic saves write a temp file and rename it over the target
        if not event.is_directory:
            self._reload_if_target(event.dest_path, "replaced")


class ProviderRegistry:
    """In-memory provider catalogue with a user-writable override file."""

    def __init__(self, override_path: str | Path | None = None):
        self.override_path = Path(override_path) if override_path else None
        self._providers: dict[str, ProviderDescriptor] = self._builtin_map()
        self._lock = threading.RLock()
        self._observer = None

    @staticmethod
    def _builtin_map() -> dict[str, ProviderDescriptor]:
        return {descriptor.id: descriptor for descriptor in BUILTIN_PROVIDERS}

    # -- lifecycle --------------------------------------------------------

    def load(self, override_path: str | Path | None = None):
        """Load built-ins plus the override file.

        Args:
            override_path: Replaces the path given at construction time
        """
        if override_path is not None:
            self.override_path = Path(override_path)

        providers = self._builtin_map()
        path = self.override_path

        if path is None:
            logger.debug("No registry override path; using built-in providers")
        elif not path.exists():
            logger.info(f"Writing default provider registry to {path}")
            with self._lock:
                self._providers = providers
            try:
                self.save()
            except OSError as e:
                logger.warning(f"Could not write default provider registry: {e}")
            return
        else:
            try:
                providers = self._merge_overrides(providers, self._read_overrides(path))
            except (OSError, ValueError) as e:
                # json.JSONDecodeError is a ValueError
                logger.warning(f"Failed to parse provider registry {path}, using defaults: {e}")
                providers = self._builtin_map()

        with self._lock:
            self._providers = providers
        logger.info(f"Loaded {len(providers)} providers")

    def reload(self):
        self.load()

    @staticmethod
    def _read_overrides(path: Path) -> dict[str, Any]:
        data = read_json(path)
        if not isinstance(data, dict):
            raise ValueError("Provider registry must be a JSON object")
        return data

    @staticmethod
    def _merge_overrides(
        providers: dict[str, ProviderDescriptor], overrides: dict[str, Any]
    ) -> dict[str, ProviderDescriptor]:
        merged = dict(providers)
        for provider_id, entry in overrides.items():
            base = merged.get(provider_id)
            if base is not None and isinstance(entry, dict):
                entry = {**base.to_dict(), **entry}
            merged[provider_id] = ProviderDescriptor.from_dict(provider_id, entry)
        return merged

    def save(self):
        """Write the current catalogue to the override file atomically."""
        if self.override_path is None:
            return

        with self._lock:
            payload = {pid: d.to_dict() for pid, d in self._providers.items()}

        atomic_write_json(self.override_path, payload)

    def update(self, descriptor: ProviderDescriptor, persist: bool = True):
        """Add or replace a provider entry."""
        with self._lock:
            self._providers[descriptor.id] = descriptor
        logger.info(f"Updated provider '{descriptor.id}'")
        if persist:
            self.save()

    # -- queries ----------------------------------------------------------

    def get(self, provider_id: str) -> ProviderDescriptor | None:
        if not provider_id:
            return None
        with self._lock:
            descriptor = self._providers.get(provider_id)
            if descriptor is not None:
                return descriptor
            wanted = provider_id.casefold()
            for pid, candidate in self._providers.items():
                if pid.casefold() == wanted:
                    return candidate
        return None

    def has(self, provider_id: str) -> bool:
        return self.get(provider_id) is not None

    def models_for(self, provider_id: str) -> list[ModelInfo]:
        descriptor = self.get(provider_id)
        if descriptor is None:
            return []
        return list(descriptor.models.values())

    def default_config_template(self) -> dict[str, ProviderConfig]:
        """Blank per-provider config used to seed a first-run configuration."""
        return {
            descriptor.id: ProviderConfig(
                api_key="", model=descriptor.default_model, base_url=descriptor.base_url
            )
            for descriptor in self.list()
        }

    # Defined after the methods annotated with list[...]; the name shadows the
    # builtin inside the class body.
    def list(self) -> list[ProviderDescriptor]:
        with self._lock:
            return list(self._providers.values())

    # -- file watching ----------------------------------------------------

    def watch(self):
        """Reload whenever the override file changes."""
        if self.override_path is None or self._observer is not None:
            return
        self.override_path.parent.mkdir(parents=True, exist_ok=True)
        self._observer = Observer()
        self._observer.schedule(
            RegistryFileWatcher(self), str(self.override_path.parent), recursive=False
        )
        self._observer.start()
        logger.info(f"Watching provider registry at {self.override_path}")

    def stop_watching(self):
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None
        logger.info("Stopped provider registry watcher")

    def __contains__(self, provider_id: str) -> bool:
        return self.has(provider_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._providers)
