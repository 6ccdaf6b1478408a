"""
Anthropic Provider - Claude Messages API

Adapter for Anthropic's Messages API through the official ``anthropic`` SDK.

Wire format notes:

- The system prompt travels in the top-level ``system`` parameter, never as
  a message.
- ``max_tokens`` is required on every request.
- With a screenshot attached, the new user turn is a two-part list with the
  image block first (base64 source tagged with its media type) and the text
  block second, which is the order Anthropic documents for vision prompts.
- Streaming yields typed events; only ``content_block_delta`` events whose
  delta is a ``text_delta`` carry text.
"""

from collections.abc import AsyncIterator
from typing import Any

from anthropic import (
    APIConnectionError,
    AsyncAnthropic,
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


class AnthropicProvider(BaseProvider):
    """Adapter for Claude models."""

    assistant_role = "assistant"

    def _create_client(self) -> AsyncAnthropic:
        return AsyncAnthropic(api_key=self.api_key, timeout=60.0, max_retries=0)

    def _build_messages(
        self, text: str, image: ImageAttachment | None, history: list[GenericMessage]
    ) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = [
            {"role": role, "content": content} for role, content in self._history_turns(history)
        ]

        if image is None:
            messages.append({"role": "user", "content": text})
        else:
            messages.append(
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": image.mime_type,
                                "data": image.data,
                            },
                        },
                        {"type": "text", "text": text},
                    ],
                }
            )
        return messages

    def _request_params(self, messages: list[dict[str, Any]], **extra) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": messages,
        }
        if self.system_prompt:
            params["system"] = self.system_prompt
        params.update(extra)
        return params

    async def _complete(self, text: str, image: ImageAttachment | None) -> str:
        response = await self.client.messages.create(
            **self._request_params(self._build_messages(text, image, []))
        )
        return "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )

    async def _open_stream(
        self, text: str, image: ImageAttachment | None, history: list[GenericMessage]
    ):
        logger.debug(f"Anthropic stream request: model={self.model}, history={len(history)}")
        return await self.client.messages.create(
            **self._request_params(self._build_messages(text, image, history), stream=True)
        )

    async def _iter_deltas(self, stream) -> AsyncIterator[str]:
        async for event in stream:
            if event.type != "content_block_delta":
                continue
            delta = event.delta
            if getattr(delta, "type", None) == "text_delta":
                yield delta.text

    async def _list_remote_models(self) -> list[ModelInfo]:
        page = await self.client.models.list()
        return [
            ModelInfo(id=model.id, display_name=getattr(model, "display_name", "") or model.id)
            for model in page.data
        ]

    async def _probe(self):
        await self.client.messages.create(
            model=self.model,
            max_tokens=VALIDATION_MAX_TOKENS,
            messages=[{"role": "user", "content": VALIDATION_PROMPT}],
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
