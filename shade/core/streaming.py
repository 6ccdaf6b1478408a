"""Streaming orchestrator.

Drives one request/response exchange against an adapter and turns the
adapter's text deltas into a sequence of ``StreamEvent`` objects:

    chunk* (complete | error | cancelled)

Exactly one terminal event ends every exchange. Chunks are forwarded in the
order the adapter produced them, without buffering.

State machine:

    IDLE -> SENDING -> STREAMING -> COMPLETED | FAILED | CANCELLED

- ``start`` fails fast with ``MissingApiKey`` when the provider needs a key
  and none is configured; the adapter is never touched.
- ``cancel`` is cooperative and idempotent. It is checked before each chunk
  is forwarded and again before completion, so once it returns no further
  chunk reaches the consumer. Errors the adapter raises after cancellation
  are suppressed.
- Only one exchange is active per orchestrator. Starting a new one cancels
  the previous exchange, whose terminal event is then ``cancelled``.
- The orchestrator never retries.
"""

import asyncio
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from enum import Enum

from shade.core.errors import MissingApiKey, ProviderError, ShadeError, StreamCancelled
from shade.core.models import GenericMessage
from shade.providers import ImageAttachment, LLMProvider, close_stream
from shade.utils.logger import setup_logger

logger = setup_logger(__name__)


class ExchangeState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {ExchangeState.COMPLETED, ExchangeState.FAILED, ExchangeState.CANCELLED}
)


class EventKind(str, Enum):
    CHUNK = "chunk"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StreamEvent:
    """One item of an exchange's event stream.

    Attributes:
        kind: Event type
        text: The delta for ``chunk``; the accumulated response for
            ``complete`` and ``cancelled``
        error: The wrapped failure for ``error`` events; a ``StreamCancelled``
            marker on ``cancelled`` events so the UI can show its message
        session_id: Session the exchange was persisted to, set by the chat
            manager on ``complete``
    """

    kind: EventKind
    text: str = ""
    error: ShadeError | None = None
    session_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.kind != EventKind.CHUNK


class StreamExchange:
    """A single cancellable streaming exchange."""

    def __init__(
        self,
        provider: LLMProvider,
        provider_id: str,
        text: str,
        image: ImageAttachment | None = None,
        history: Sequence[GenericMessage] = (),
    ):
        self.provider = provider
        self.provider_id = provider_id
        self.request_text = text
        self.image = image
        self.history = list(history)

        self.state = ExchangeState.IDLE
        self.cancel_event = asyncio.Event()
        self._chunks: list[str] = []
        self._consumed = False

    @property
    def text(self) -> str:
        """Response text delivered so far."""
        return "".join(self._chunks)

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def cancel(self):
        """Request cancellation. A no-op once the exchange has ended."""
        if self.done:
            return
        self.cancel_event.set()
        self.state = ExchangeState.CANCELLED
        logger.debug(f"Exchange with {self.provider_id} cancelled after {len(self._chunks)} chunks")

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Run the exchange, yielding chunk events and one terminal event.

        Can be consumed once.
        """
        if self._consumed:
            raise RuntimeError("StreamExchange.events() can only be consumed once")
        self._consumed = True

        if self.cancelled:
            yield StreamEvent(EventKind.CANCELLED, text="", error=StreamCancelled())
            return

        self.state = ExchangeState.SENDING
        stream = None
        failure: ShadeError | None = None
        try:
            # Protocol adapters may raise while opening the stream
            stream = self.provider.stream_response(
                self.request_text,
                image=self.image,
                history=self.history,
                cancel_event=self.cancel_event,
            )
            if not self.cancelled:
                self.state = ExchangeState.STREAMING

            async for delta in stream:
                if self.cancelled:
                    break
                if not delta:
                    continue
                self._chunks.append(delta)
                yield StreamEvent(EventKind.CHUNK, text=delta)
        except asyncio.CancelledError:
            self.cancel()
            raise
        except GeneratorExit:
            # Consumer stopped iterating
            self.cancel()
            raise
        except Exception as e:
            if not self.cancelled:
                failure = e if isinstance(e, ShadeError) else ProviderError(self.provider_id, e)
                logger.error(f"Exchange with {self.provider_id} failed: {failure}")
            else:
                logger.debug(f"Suppressed error after cancellation: {e}")
        finally:
            await close_stream(stream)

        if self.cancelled:
            self.state = ExchangeState.CANCELLED
            yield StreamEvent(EventKind.CANCELLED, text=self.text, error=StreamCancelled())
        elif failure is not None:
            self.state = ExchangeState.FAILED
            yield StreamEvent(EventKind.ERROR, text=self.text, error=failure)
        else:
            self.state = ExchangeState.COMPLETED
            logger.debug(f"Exchange with {self.provider_id} completed: {len(self._chunks)} chunks")
            yield StreamEvent(EventKind.COMPLETE, text=self.text)


class StreamingOrchestrator:
    """Starts exchanges and tracks the single active one."""

    def __init__(self):
        self._active: StreamExchange | None = None

    @property
    def active(self) -> StreamExchange | None:
        return self._active

    def start(
        self,
        provider: LLMProvider,
        text: str,
        image: ImageAttachment | None = None,
        history: Sequence[GenericMessage] = (),
        *,
        provider_id: str | None = None,
        credential: str | None = None,
        requires_api_key: bool | None = None,
    ) -> StreamExchange:
        """Begin a new exchange, superseding any active one.

        Args:
            provider: Adapter to stream from
            text: Outgoing user text (already context-built)
            image: Optional screenshot
            history: Provider-ready history
            provider_id: Identifier used in errors and logs (``get_name()`` when omitted)
            credential: Credential the adapter was built with (adapter's own when omitted)
            requires_api_key: Whether the provider needs a credential (adapter's own when omitted)

        Raises:
            MissingApiKey: A credential is required but empty. Nothing is
                cancelled or sent in that case.
        """
        provider_id = provider_id or provider.get_name()
        if requires_api_key is None:
            requires_api_key = getattr(provider, "requires_api_key", True)
        if credential is None:
            credential = getattr(provider, "api_key", "")

        if requires_api_key and not credential:
            logger.warning(f"Refusing to stream from {provider_id}: no API key configured")
            raise MissingApiKey(provider_id)

        if self._active is not None and not self._active.done:
            logger.info(f"New request supersedes active exchange with {self._active.provider_id}")
            self._active.cancel()

        exchange = StreamExchange(provider, provider_id, text, image=image, history=history)
        self._active = exchange
        return exchange

    def cancel(self):
        """Cancel the active exchange, if any."""
        if self._active is not None:
            self._active.cancel()
