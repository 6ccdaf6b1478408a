"""
Gemini Provider - Google GenAI

Adapter for Google's Gemini models through the ``google-genai`` SDK, using the
asynchronous surface (``client.aio``).

Gemini's vocabulary differs from the OpenAI families:

- The assistant role token is ``model``.
- Turns are ``types.Content`` objects holding a list of ``types.Part``.
- The system prompt is passed as ``system_instruction`` in the request config.
- A screenshot is an inline ``Part`` built from raw bytes; the text part
  comes first and the image part second.
- Model ids returned by the listing endpoint carry a ``models/`` prefix that
  is stripped before they reach the cache.

Errors surface as ``google.genai.errors.APIError`` with an HTTP ``code``.
Gemini reports a bad key as 400 ``API key not valid``, so that case is
treated as a rejected credential alongside 401/403.
"""

from collections.abc import AsyncIterator

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from shade.core.errors import ProviderError, RateLimited, Unauthenticated, UnsupportedModel
from shade.core.models import GenericMessage, ModelInfo
from shade.providers import (
    VALIDATION_MAX_TOKENS,
    VALIDATION_PROMPT,
    BaseProvider,
    ImageAttachment,
)
from shade.utils.logger import setup_logger

logger = setup_logger(__name__)

MODEL_PREFIX = "models/"


class GeminiProvider(BaseProvider):
    """Adapter for Gemini models."""

    assistant_role = "model"

    def _create_client(self) -> genai.Client:
        return genai.Client(api_key=self.api_key)

    def _build_contents(
        self, text: str, image: ImageAttachment | None, history: list[GenericMessage]
    ) -> list[types.Content]:
        contents = [
            types.Content(role=role, parts=[types.Part.from_text(text=content)])
            for role, content in self._history_turns(history)
        ]

        parts = [types.Part.from_text(text=text)]
        if image is not None:
            parts.append(types.Part.from_bytes(data=image.raw_bytes(), mime_type=image.mime_type))
        contents.append(types.Content(role="user", parts=parts))
        return contents

    def _generation_config(self, max_tokens: int | None = None) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            max_output_tokens=max_tokens or self.max_tokens,
            system_instruction=self.system_prompt or None,
        )

    async def _complete(self, text: str, image: ImageAttachment | None) -> str:
        response = await self.client.aio.models.generate_content(
            model=self.model,
            contents=self._build_contents(text, image, []),
            config=self._generation_config(),
        )
        return response.text or ""

    async def _open_stream(
        self, text: str, image: ImageAttachment | None, history: list[GenericMessage]
    ):
        logger.debug(f"Gemini stream request: model={self.model}, history={len(history)}")
        return await self.client.aio.models.generate_content_stream(
            model=self.model,
            contents=self._build_contents(text, image, history),
            config=self._generation_config(),
        )

    async def _iter_deltas(self, stream) -> AsyncIterator[str]:
        async for chunk in stream:
            yield chunk.text or ""

    async def _list_remote_models(self) -> list[ModelInfo]:
        pager = await self.client.aio.models.list()
        models = []
        async for model in pager:
            model_id = model.name.removeprefix(MODEL_PREFIX)
            models.append(ModelInfo(id=model_id, display_name=model.display_name or model_id))
        return models

    async def _probe(self):
        await self.client.aio.models.generate_content(
            model=self.model,
            contents=VALIDATION_PROMPT,
            config=self._generation_config(VALIDATION_MAX_TOKENS),
        )

    def _map_error(self, exc: BaseException) -> ProviderError | None:
        if not isinstance(exc, genai_errors.APIError):
            return None

        code = exc.code
        if code in (401, 403) or (code == 400 and "api key" in str(exc).lower()):
            return Unauthenticated(self.provider_id, exc)
        if code == 429:
            return RateLimited(self.provider_id, exc)
        if code == 404:
            return UnsupportedModel(self.provider_id, exc)
        return None
