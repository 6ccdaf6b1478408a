"""
OpenAI-Compatible Provider - Local and Third-Party Endpoints

One adapter serves every endpoint that speaks the OpenAI chat-completions
protocol: local runtimes (Ollama, LM Studio), hosted gateways (OpenRouter,
xAI Grok) and any user-declared entry in the registry override file.

Differences from the native OpenAI adapter:

- ``base_url`` is mandatory; it comes from the provider config override or the
  registry descriptor.
- Local runtimes do not check credentials. When no key is configured and the
  provider does not require one, the placeholder ``not-needed`` is sent so the
  SDK client can be built.
- ``max_tokens`` is used instead of ``max_completion_tokens``, which most
  compatible servers do not understand.
- Some servers do not implement ``/models``; key validation then falls back
  to a minimal chat request.
"""

from openai import AsyncOpenAI

from shade.core.errors import NetworkError, ProviderError
from shade.providers.openai_provider import OpenAIProvider
from shade.utils.logger import setup_logger

logger = setup_logger(__name__)

PLACEHOLDER_API_KEY = "not-needed"


class OpenAICompatibleProvider(OpenAIProvider):
    """Adapter for OpenAI-protocol endpoints at a configurable base URL."""

    max_tokens_param = "max_tokens"
    # Local models can take a while to load on first request
    timeout = 120.0

    def _create_client(self) -> AsyncOpenAI:
        if not self.base_url:
            raise ProviderError(
                self.provider_id, message=f"No base URL configured for {self.provider_id}"
            )

        logger.debug(f"Creating compatible client for {self.provider_id} at {self.base_url}")
        return AsyncOpenAI(
            api_key=self.api_key or PLACEHOLDER_API_KEY,
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=0,
        )

    def _map_error(self, exc: BaseException) -> ProviderError | None:
        mapped = super()._map_error(exc)
        if isinstance(mapped, NetworkError) and not self.requires_api_key:
            logger.warning(f"{self.provider_id} is not reachable at {self.base_url}; is it running?")
        return mapped
