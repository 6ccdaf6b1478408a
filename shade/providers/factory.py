"""Provider factory: builds a configured adapter for a provider id.

Adapter classes are looked up by the descriptor's protocol family. New
families are added with ``register``; the dispatcher itself never changes.
"""

from shade.config.schema import ProviderConfig
from shade.core.errors import UnknownProvider
from shade.providers import DEFAULT_MAX_TOKENS, BaseProvider
from shade.providers.anthropic_provider import AnthropicProvider
from shade.providers.compatible_provider import OpenAICompatibleProvider
from shade.providers.gemini_provider import GeminiProvider
from shade.providers.openai_provider import OpenAIProvider
from shade.providers.registry import (
    PROTOCOL_ANTHROPIC,
    PROTOCOL_COMPATIBLE,
    PROTOCOL_GEMINI,
    PROTOCOL_OPENAI,
    ProviderDescriptor,
    ProviderRegistry,
)
from shade.utils.logger import setup_logger

logger = setup_logger(__name__)


class ProviderFactory:
    """Create adapters from registry metadata and per-provider config.

    Construction is optimistic: an empty credential never raises here. A
    provider that needs a key reports ``Unauthenticated`` on its first
    network call instead.
    """

    def __init__(self, registry: ProviderRegistry, max_tokens: int = DEFAULT_MAX_TOKENS):
        self.registry = registry
        self.max_tokens = max_tokens
        self._classes: dict[str, type[BaseProvider]] = {
            PROTOCOL_OPENAI: OpenAIProvider,
            PROTOCOL_ANTHROPIC: AnthropicProvider,
            PROTOCOL_GEMINI: GeminiProvider,
            PROTOCOL_COMPATIBLE: OpenAICompatibleProvider,
        }

    def register(self, protocol: str, provider_class: type[BaseProvider]):
        """Register (or replace) the adapter class for a protocol family."""
        self._classes[protocol] = provider_class
        logger.debug(f"Registered {provider_class.__name__} for protocol '{protocol}'")

    def resolve_class(self, descriptor: ProviderDescriptor) -> type[BaseProvider]:
        provider_class = self._classes.get(descriptor.protocol)
        if provider_class is not None:
            return provider_class

        # Unknown protocols that point at an endpoint are assumed to speak OpenAI
        if descriptor.base_url:
            logger.warning(
                f"Unknown protocol '{descriptor.protocol}' for {descriptor.id}; "
                "using the OpenAI-compatible adapter"
            )
            return OpenAICompatibleProvider

        raise UnknownProvider(descriptor.id)

    def create(
        self,
        provider_id: str,
        credential: str | None = None,
        config: ProviderConfig | None = None,
    ) -> BaseProvider:
        """Build an adapter.

        Args:
            provider_id: Registry id (matched case-insensitively)
            credential: API key; may be empty
            config: Per-provider settings (model, base URL, system prompt)

        Raises:
            UnknownProvider: The id is not in the registry
        """
        descriptor = self.registry.get(provider_id)
        if descriptor is None:
            raise UnknownProvider(provider_id)

        config = config or ProviderConfig()
        provider_class = self.resolve_class(descriptor)
        provider = provider_class(
            descriptor.id,
            api_key=credential if credential is not None else config.api_key,
            config=config,
            descriptor=descriptor,
            max_tokens=self.max_tokens,
        )
        logger.debug(f"Created {provider!r}")
        return provider
