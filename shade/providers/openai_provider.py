"""
OpenAI Provider - Native OpenAI Chat Completions

This module implements the adapter for OpenAI's hosted API using the official
``openai`` SDK (``AsyncOpenAI``). It is also the base class for the
OpenAI-compatible family (see ``compatible_provider``), which reuses the same
wire format against a different ``base_url``.

Wire Format:
============

Every request is a list of chat messages:

1. An optional leading ``system`` message carrying the configured system prompt
2. The mapped history, ``user`` / ``assistant`` in conversation order
3. The new user turn. With a screenshot attached the content becomes a two-part
   list: the text part first, then an ``image_url`` part holding a
   ``data:<mime>;base64,...`` URI

Streaming uses ``stream=True``; each chunk's ``choices[0].delta.content`` is a
text delta (``None`` for role-only and final chunks, which are dropped).

Error Mapping:
==============

- ``AuthenticationError`` / ``PermissionDeniedError`` -> ``Unauthenticated``
- ``RateLimitError`` -> ``RateLimited``
- ``NotFoundError`` -> ``UnsupportedModel``
- ``APIConnectionError`` (including ``APITimeoutError``) -> ``NetworkError``

The SDK client is created with ``max_retries=0``: retry policy belongs to the
caller, never to the adapter.
"""

from collections.abc import AsyncIterator
from typing import Any

from openai import (
    APIConnectionError,
    AsyncOpenAI,
    AuthenticationError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
)

from shade.core.errors import (
    NetworkError,
    ProviderError,
    RateLimited,
    Unauthenticated,
    UnsupportedModel,
)
from shade.core.models import GenericMessage, ModelInfo
from shade.providers import (
    VALIDATION_MAX_TOKENS,
    VALIDATION_PROMPT,
    BaseProvider,
    ImageAttachment,
)
from shade.utils.logger import setup_logger

logger = setup_logger(__name__)

DEFAULT_TIMEOUT = 60.0


class OpenAIProvider(BaseProvider):
    """Adapter for api.openai.com.

    Per-model options from the registry (for example ``reasoning_effort`` on
    the ``o1`` family) are forwarded as extra request parameters.
    """

    assistant_role = "assistant"
    # Newer OpenAI models reject max_tokens in favour of max_completion_tokens
    max_tokens_param = "max_completion_tokens"
    timeout = DEFAULT_TIMEOUT

    @property
    def base_url(self) -> str | None:
        if self.config.base_url:
            return self.config.base_url
        if self.descriptor and self.descriptor.base_url:
            return self.descriptor.base_url
        return None

    def _create_client(self) -> AsyncOpenAI:
        logger.debug(f"Creating OpenAI client for {self.provider_id}: base_url={self.base_url or 'default'}")
        return AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=0,
        )

    def _build_messages(
        self, text: str, image: ImageAttachment | None, history: list[GenericMessage]
    ) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})

        for role, content in self._history_turns(history):
            messages.append({"role": role, "content": content})

        if image is None:
            messages.append({"role": "user", "content": text})
        else:
            messages.append(
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": text},
                        {"type": "image_url", "image_url": {"url": image.as_data_url()}},
                    ],
                }
            )
        return messages

    def _request_params(self, messages: list[dict[str, Any]], **extra) -> dict[str, Any]:
        params = {
            "model": self.model,
            "messages": messages,
            self.max_tokens_param: self.max_tokens,
        }
        params.update(self._model_options())
        params.update(extra)
        return params

    async def _complete(self, text: str, image: ImageAttachment | None) -> str:
        response = await self.client.chat.completions.create(
            **self._request_params(self._build_messages(text, image, []))
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def _open_stream(
        self, text: str, image: ImageAttachment | None, history: list[GenericMessage]
    ):
        logger.debug(f"{self.provider_id} stream request: model={self.model}, history={len(history)}")
        return await self.client.chat.completions.create(
            **self._request_params(self._build_messages(text, image, history), stream=True)
        )

    async def _iter_deltas(self, stream) -> AsyncIterator[str]:
        async for chunk in stream:
            if chunk.choices:
                yield chunk.choices[0].delta.content or ""

    async def _list_remote_models(self) -> list[ModelInfo]:
        page = await self.client.models.list()
        return [ModelInfo(id=model.id) for model in page.data]

    async def _probe(self):
        await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": VALIDATION_PROMPT}],
            **{self.max_tokens_param: VALIDATION_MAX_TOKENS},
        )

    def _map_error(self, exc: BaseException) -> ProviderError | None:
        if isinstance(exc, AuthenticationError | PermissionDeniedError):
            return Unauthenticated(self.provider_id, exc)
        if isinstance(exc, RateLimitError):
            return RateLimited(self.provider_id, exc)
        if isinstance(exc, NotFoundError):
            return UnsupportedModel(self.provider_id, exc)
        if isinstance(exc, APIConnectionError):
            return NetworkError(self.provider_id, exc)
        return None
