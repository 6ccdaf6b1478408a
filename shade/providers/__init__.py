"""
LLM Provider System - Uniform Adapter Contract

This module defines the contract every vendor adapter implements and the
shared machinery the concrete adapters build on.

Architecture:
=============

``LLMProvider`` is a Protocol: the gateway (factory, orchestrator, model
cache) only depends on its structural shape, so tests can hand in an
``AsyncMock(spec=LLMProvider)`` and new vendors can be added without
touching the dispatcher.

``BaseProvider`` is the concrete superclass the shipped adapters extend. It
owns the parts that are identical across vendors:

- Optimistic construction: the SDK client is built lazily on first use, and a
  missing credential is reported as ``Unauthenticated`` on the first network
  operation rather than in the constructor.
- Streaming template: ``stream_response`` opens the vendor stream, converts
  vendor-native units into plain text deltas, drops empty deltas, checks the
  cancellation event between chunks and always closes the vendor stream.
- Error wrapping: every vendor or transport exception leaves the adapter as a
  ``ProviderError`` subclass carrying the provider id and the original cause.
- Key validation: list models first (no token usage), fall back to a minimal
  real request, never raise.

Adapters perform no retries; retry policy belongs to the caller.

Role Mapping:
=============

Generic history uses ``user`` and ``assistant``. Each adapter declares its
vendor token for the assistant role in ``assistant_role`` (``"assistant"`` for
OpenAI and Anthropic, ``"model"`` for Gemini) and ``_history_turns`` applies
the mapping to every historical message in order.
"""

import asyncio
import base64
import inspect
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from shade.config.schema import ProviderConfig
from shade.core.errors import NetworkError, ProviderError, Unauthenticated
from shade.core.models import GenericMessage, MessageRole, ModelInfo
from shade.utils.logger import setup_logger

if TYPE_CHECKING:
    from shade.providers.registry import ProviderDescriptor

logger = setup_logger(__name__)

DEFAULT_IMAGE_MIME_TYPE = "image/jpeg"
DEFAULT_MAX_TOKENS = 4096
VALIDATION_PROMPT = "Hi"
VALIDATION_MAX_TOKENS = 16


@dataclass(frozen=True)
class ImageAttachment:
    """A screenshot attached to the outgoing turn.

    Attributes:
        data: Base64-encoded image bytes, without a ``data:`` prefix
        mime_type: MIME type of the decoded bytes
    """

    data: str
    mime_type: str = DEFAULT_IMAGE_MIME_TYPE

    @classmethod
    def from_bytes(cls, raw: bytes, mime_type: str = DEFAULT_IMAGE_MIME_TYPE) -> "ImageAttachment":
        return cls(data=base64.b64encode(raw).decode("ascii"), mime_type=mime_type)

    @classmethod
    def coerce(cls, value: "ImageAttachment | bytes | str | None") -> "ImageAttachment | None":
        """Accept an attachment, raw bytes or a base64 string (optionally a data URL)."""
        if value is None or isinstance(value, ImageAttachment):
            return value
        if isinstance(value, bytes | bytearray):
            return cls.from_bytes(bytes(value))
        if value.startswith("data:") and "," in value:
            header, payload = value.split(",", 1)
            mime = header[5:].split(";", 1)[0] or DEFAULT_IMAGE_MIME_TYPE
            return cls(data=payload, mime_type=mime)
        return cls(data=value)

    def raw_bytes(self) -> bytes:
        return base64.b64decode(self.data)

    def as_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


class LLMProvider(Protocol):
    """Structural contract every provider adapter satisfies."""

    @abstractmethod
    async def send_message(self, text: str, image: ImageAttachment | None = None) -> str:
        """Single complete round trip, used by non-streaming callers."""
        ...

    @abstractmethod
    def stream_response(
        self,
        text: str,
        image: ImageAttachment | None = None,
        history: Sequence[GenericMessage] = (),
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """Yield non-empty text deltas in arrival order.

        Once ``cancel_event`` is set no further delta is yielded and the
        iterator finishes without raising.
        """
        ...

    @abstractmethod
    async def validate_api_key(self) -> bool:
        """Cheapest available credential check. Never raises."""
        ...

    @abstractmethod
    async def list_models(self) -> list[ModelInfo]:
        """Live model listing (network). Used by the model metadata cache."""
        ...

    @abstractmethod
    def get_models(self) -> list[ModelInfo]:
        """Static or previously known models. No network I/O."""
        ...

    @abstractmethod
    def get_name(self) -> str:
        """Stable provider identifier."""
        ...


async def close_stream(stream: Any):
    """Release a vendor stream handle, whichever closing API it exposes."""
    closer = getattr(stream, "aclose", None) or getattr(stream, "close", None)
    if closer is None:
        return
    try:
        result = closer()
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.debug(f"Ignoring error while closing stream: {e}")


class BaseProvider(ABC):
    """Shared implementation for the shipped adapters.

    Subclasses implement the vendor hooks (``_create_client``, ``_complete``,
    ``_open_stream``, ``_iter_deltas``, ``_list_remote_models``, ``_probe``,
    ``_map_error``); everything the gateway calls lives here.
    """

    assistant_role = "assistant"

    def __init__(
        self,
        provider_id: str,
        api_key: str | None = None,
        config: ProviderConfig | None = None,
        descriptor: "ProviderDescriptor | None" = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        self.provider_id = provider_id
        self.api_key = api_key or ""
        self.config = config or ProviderConfig()
        self.descriptor = descriptor
        self.max_tokens = max_tokens

        self.model = self.config.model or (descriptor.default_model if descriptor else "")
        self.system_prompt = self.config.system_prompt or ""
        self.requires_api_key = descriptor.requires_api_key if descriptor else True

        self._client = None

    # -- client lifecycle -------------------------------------------------

    @property
    def client(self):
        if self._client is None:
            self._client = self._create_client()
        return self._client

    @abstractmethod
    def _create_client(self):
        """Build the vendor SDK client."""

    def _ensure_credential(self):
        if self.requires_api_key and not self.api_key:
            raise Unauthenticated(
                self.provider_id, message=f"No API key configured for {self.provider_id}"
            )

    # -- request shaping --------------------------------------------------

    def _role_token(self, role: MessageRole) -> str:
        return "user" if role == MessageRole.USER else self.assistant_role

    def _history_turns(self, history: Iterable[GenericMessage]) -> list[tuple[str, str]]:
        """Map generic history to ``(vendor_role, text)`` pairs, preserving order."""
        return [(self._role_token(m.role), m.text) for m in history]

    def _model_options(self) -> dict[str, Any]:
        """Per-model option overrides declared in the registry."""
        if not self.descriptor:
            return {}
        model = self.descriptor.models.get(self.model)
        return dict(model.options) if model else {}

    # -- error handling ---------------------------------------------------

    def _map_error(self, exc: BaseException) -> ProviderError | None:
        """Vendor-specific exception mapping; ``None`` defers to the defaults."""
        return None

    def _wrap_error(self, exc: BaseException) -> ProviderError:
        if isinstance(exc, ProviderError):
            return exc
        mapped = self._map_error(exc)
        if mapped is not None:
            return mapped
        if isinstance(exc, httpx.TransportError | ConnectionError | TimeoutError):
            return NetworkError(self.provider_id, exc)
        return ProviderError(self.provider_id, exc)

    # -- gateway operations -----------------------------------------------

    async def send_message(self, text: str, image: ImageAttachment | None = None) -> str:
        self._ensure_credential()
        try:
            response = await self._complete(text, ImageAttachment.coerce(image))
        except Exception as e:
            error = self._wrap_error(e)
            logger.error(f"{self.provider_id} request failed: {error}")
            raise error from e

        logger.debug(f"{self.provider_id} completion: {len(response)} chars")
        return response

    async def stream_response(
        self,
        text: str,
        image: ImageAttachment | None = None,
        history: Sequence[GenericMessage] = (),
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        self._ensure_credential()

        def cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        if cancelled():
            return

        stream = None
        chunk_count = 0
        try:
            stream = await self._open_stream(text, ImageAttachment.coerce(image), list(history))
            async for delta in self._iter_deltas(stream):
                # Cooperative cancellation: checked between chunks only
                if cancelled():
                    logger.debug(f"{self.provider_id} stream cancelled after {chunk_count} chunks")
                    return
                if not delta:
                    continue
                chunk_count += 1
                yield delta
        except Exception as e:
            if cancelled():
                logger.debug(f"{self.provider_id} stream error after cancellation suppressed: {e}")
                return
            error = self._wrap_error(e)
            logger.error(f"{self.provider_id} stream failed after {chunk_count} chunks: {error}")
            raise error from e
        finally:
            if stream is not None:
                await close_stream(stream)

        logger.debug(f"{self.provider_id} stream completed: {chunk_count} chunks")

    async def list_models(self) -> list[ModelInfo]:
        self._ensure_credential()
        try:
            models = await self._list_remote_models()
        except Exception as e:
            raise self._wrap_error(e) from e

        logger.info(f"Fetched {len(models)} models from {self.provider_id}")
        return models

    async def validate_api_key(self) -> bool:
        try:
            await self.list_models()
            return True
        except Unauthenticated as e:
            logger.warning(f"{self.provider_id} rejected the API key: {e}")
            return False
        except ProviderError as e:
            logger.debug(f"{self.provider_id} model listing unavailable, probing instead: {e}")

        # Some endpoints do not implement model listing
        try:
            await self._probe()
            return True
        except Exception as e:
            logger.warning(f"{self.provider_id} key validation failed: {e}")
            return False

    def get_models(self) -> list[ModelInfo]:
        if self.descriptor and self.descriptor.models:
            return list(self.descriptor.models.values())
        if self.model:
            return [ModelInfo(id=self.model)]
        return []

    def get_name(self) -> str:
        return self.provider_id

    # -- vendor hooks -----------------------------------------------------

    @abstractmethod
    async def _complete(self, text: str, image: ImageAttachment | None) -> str:
        """Non-streaming completion returning the full text."""

    @abstractmethod
    async def _open_stream(
        self, text: str, image: ImageAttachment | None, history: list[GenericMessage]
    ) -> Any:
        """Start a streaming request and return the vendor stream handle."""

    @abstractmethod
    def _iter_deltas(self, stream: Any) -> AsyncIterator[str]:
        """Convert the vendor stream into text deltas (may yield empty strings)."""

    @abstractmethod
    async def _list_remote_models(self) -> list[ModelInfo]:
        """Query the vendor's model listing endpoint."""

    @abstractmethod
    async def _probe(self):
        """Minimal real request used when model listing is unavailable."""

    def __repr__(self):
        return f"<{type(self).__name__} {self.provider_id} model={self.model!r}>"
