"""Tests for the streaming orchestrator."""

import asyncio

import pytest

from shade.core.errors import (
    MissingApiKey,
    ProviderError,
    RateLimited,
    StreamCancelled,
    Unauthenticated,
)
from shade.core.streaming import EventKind, ExchangeState, StreamingOrchestrator


async def _drain(exchange, cancel_after=None):
    events = []
    async for event in exchange.events():
        events.append(event)
        chunks = sum(1 for e in events if e.kind == EventKind.CHUNK)
        if cancel_after is not None and chunks == cancel_after:
            exchange.cancel()
    return events


def _terminal(events):
    return [e for e in events if e.is_terminal]


@pytest.mark.unit
class TestStreamingOrchestrator:
    """Test exchange lifecycle and the terminal-event guarantee."""

    @pytest.mark.asyncio
    async def test_chunks_then_complete(self, fake_provider):
        orchestrator = StreamingOrchestrator()

        exchange = orchestrator.start(fake_provider, "Hi")
        events = await _drain(exchange)

        assert [e.kind for e in events] == [EventKind.CHUNK] * 3 + [EventKind.COMPLETE]
        assert [e.text for e in events[:-1]] == ["Hello", " ", "world"]
        assert events[-1].text == "Hello world"
        assert exchange.state == ExchangeState.COMPLETED
        assert fake_provider.closed

    @pytest.mark.asyncio
    async def test_missing_key_fails_before_adapter_is_called(self, make_fake_provider):
        provider = make_fake_provider(api_key="")
        orchestrator = StreamingOrchestrator()

        with pytest.raises(MissingApiKey) as exc_info:
            orchestrator.start(provider, "Hi")

        assert exc_info.value.provider_id == "fake"
        assert provider.stream_calls == 0
        assert orchestrator.active is None

    @pytest.mark.asyncio
    async def test_missing_key_with_protocol_mock(self, mock_llm_provider):
        orchestrator = StreamingOrchestrator()

        with pytest.raises(MissingApiKey):
            orchestrator.start(mock_llm_provider, "Hi", provider_id="openai", credential="")

        mock_llm_provider.stream_response.assert_not_called()

    @pytest.mark.asyncio
    async def test_protocol_mock_streams_with_credential(self, mock_llm_provider):
        orchestrator = StreamingOrchestrator()

        exchange = orchestrator.start(mock_llm_provider, "Hi", credential="key")
        events = await _drain(exchange)

        assert events[-1].kind == EventKind.COMPLETE
        assert events[-1].text == "Test streaming response"
        kwargs = mock_llm_provider.stream_response.call_args.kwargs
        assert kwargs["cancel_event"] is exchange.cancel_event

    @pytest.mark.asyncio
    async def test_keyless_provider_streams_with_empty_credential(self, make_fake_provider):
        provider = make_fake_provider(api_key="", requires_api_key=False)

        events = await _drain(StreamingOrchestrator().start(provider, "Hi"))

        assert events[-1].kind == EventKind.COMPLETE

    @pytest.mark.asyncio
    async def test_cancel_after_first_chunk(self, make_fake_provider):
        provider = make_fake_provider(chunks=["a", "b", "c", "d"])
        orchestrator = StreamingOrchestrator()
        exchange = orchestrator.start(provider, "Hi")

        events = await _drain(exchange, cancel_after=1)

        assert [e.kind for e in events] == [EventKind.CHUNK, EventKind.CANCELLED]
        assert events[-1].text == "a"
        assert isinstance(events[-1].error, StreamCancelled)
        assert exchange.state == ExchangeState.CANCELLED
        assert provider.closed

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, fake_provider):
        orchestrator = StreamingOrchestrator()
        exchange = orchestrator.start(fake_provider, "Hi")

        exchange.cancel()
        exchange.cancel()
        orchestrator.cancel()
        events = await _drain(exchange)

        assert len(_terminal(events)) == 1
        assert len(events) == 1
        assert events[0].kind == EventKind.CANCELLED
        assert fake_provider.stream_calls == 0

    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_noop(self, fake_provider):
        exchange = StreamingOrchestrator().start(fake_provider, "Hi")
        await _drain(exchange)

        exchange.cancel()

        assert exchange.state == ExchangeState.COMPLETED
        assert not exchange.cancelled

    @pytest.mark.asyncio
    async def test_adapter_error_is_single_error_event(self, make_fake_provider):
        provider = make_fake_provider(chunks=["a", "b", "c"], fail_after=2)

        events = await _drain(StreamingOrchestrator().start(provider, "Hi"))

        assert [e.kind for e in events] == [EventKind.CHUNK, EventKind.CHUNK, EventKind.ERROR]
        error = events[-1].error
        assert isinstance(error, ProviderError)
        assert error.provider_id == "fake"
        assert isinstance(error.cause, RuntimeError)
        assert events[-1].text == "ab"

    @pytest.mark.asyncio
    async def test_gateway_errors_pass_through_unchanged(self, make_fake_provider):
        limited = RateLimited("fake")
        provider = make_fake_provider(fail_after=0, error=limited)

        events = await _drain(StreamingOrchestrator().start(provider, "Hi"))

        assert len(events) == 1
        assert events[0].error is limited

    @pytest.mark.asyncio
    async def test_error_opening_stream_is_single_error_event(self, mock_llm_provider):
        rejected = Unauthenticated("openai")
        # Plain function that checks the key before returning an iterator
        mock_llm_provider.stream_response.side_effect = rejected
        exchange = StreamingOrchestrator().start(mock_llm_provider, "Hi", credential="key")

        events = await _drain(exchange)

        assert [e.kind for e in events] == [EventKind.ERROR]
        assert events[0].error is rejected
        assert exchange.state == ExchangeState.FAILED

    @pytest.mark.asyncio
    async def test_unexpected_error_opening_stream_is_wrapped(self, make_fake_provider):
        provider = make_fake_provider()

        def broken_stream(*args, **kwargs):
            raise RuntimeError("socket refused")

        provider.stream_response = broken_stream
        exchange = StreamingOrchestrator().start(provider, "Hi")

        events = await _drain(exchange)

        assert [e.kind for e in events] == [EventKind.ERROR]
        assert isinstance(events[0].error, ProviderError)
        assert isinstance(events[0].error.cause, RuntimeError)
        assert exchange.state == ExchangeState.FAILED

    @pytest.mark.asyncio
    async def test_error_after_cancel_is_suppressed(self, make_fake_provider):
        provider = make_fake_provider(chunks=["a", "b"], fail_after=1)
        exchange = StreamingOrchestrator().start(provider, "Hi")

        events = []
        async for event in exchange.events():
            events.append(event)
            if event.kind == EventKind.CHUNK:
                # Cancellation lands while the adapter is about to fail
                exchange.cancel()

        assert [e.kind for e in events] == [EventKind.CHUNK, EventKind.CANCELLED]

    @pytest.mark.asyncio
    async def test_new_request_supersedes_active_exchange(self, make_fake_provider):
        orchestrator = StreamingOrchestrator()
        first_provider = make_fake_provider(chunks=["old", "old"])
        second_provider = make_fake_provider(chunks=["new"])

        first = orchestrator.start(first_provider, "one")
        first_events = first.events()
        assert (await first_events.__anext__()).text == "old"

        second = orchestrator.start(second_provider, "two")
        remaining = [event async for event in first_events]
        second_events = await _drain(second)

        assert [e.kind for e in remaining] == [EventKind.CANCELLED]
        assert first.state == ExchangeState.CANCELLED
        assert orchestrator.active is second
        assert second_events[-1].kind == EventKind.COMPLETE
        assert second_events[-1].text == "new"

    @pytest.mark.asyncio
    async def test_events_can_only_be_consumed_once(self, fake_provider):
        exchange = StreamingOrchestrator().start(fake_provider, "Hi")
        await _drain(exchange)

        with pytest.raises(RuntimeError):
            await _drain(exchange)

    @pytest.mark.asyncio
    async def test_task_cancellation_marks_exchange_cancelled(self, make_fake_provider):
        gate = asyncio.Event()

        class SlowProvider(make_fake_provider):
            async def stream_response(self, text, image=None, history=(), cancel_event=None):
                yield "first"
                await gate.wait()
                yield "never"

        exchange = StreamingOrchestrator().start(SlowProvider(), "Hi")
        received = []

        async def consume():
            async for event in exchange.events():
                received.append(event)

        task = asyncio.create_task(consume())
        while not received:
            await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert exchange.state == ExchangeState.CANCELLED
        assert [e.kind for e in received] == [EventKind.CHUNK]
