"""Tests for ChatManager core functionality."""

from unittest.mock import AsyncMock, patch

import pytest

from shade.config.schema import ProviderConfig
from shade.core.chat_manager import ChatManager, clean_title, fallback_title
from shade.core.errors import MissingApiKey, PersistenceIOError, UnknownProvider
from shade.core.models import GenericMessage, MessageRole
from shade.core.streaming import EventKind
from shade.providers.registry import ProviderRegistry


async def _collect(iterator):
    return [event async for event in iterator]


@pytest.mark.unit
class TestTitles:
    def test_fallback_title_keeps_whole_words(self):
        text = "Can you explain what this stack trace from the build server means for our release?"

        title = fallback_title(text)

        assert len(title) <= 50
        assert text.startswith(title)
        assert not title.endswith(" ")
        assert text[len(title)] == " "

    def test_fallback_title_edge_cases(self):
        assert fallback_title("") == "New Chat"
        assert fallback_title("   ") == "New Chat"
        assert fallback_title("x" * 80) == "x" * 50
        assert fallback_title("short question") == "short question"

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ('"Debugging a Flaky Test"', "Debugging a Flaky Test"),
            ("Title: Screen Review\nExtra line", "Screen Review"),
            ("\n\n", ""),
        ],
    )
    def test_clean_title(self, raw, expected):
        assert clean_title(raw) == expected


@pytest.mark.unit
class TestChatManager:
    """Test ChatManager functionality."""

    def test_initialization(self, chat_manager, config_manager):
        """Test ChatManager initialization."""
        assert chat_manager.config is config_manager
        assert chat_manager.registry.override_path == config_manager.data_dir / "providers.json"
        assert chat_manager.sessions.sessions_dir == config_manager.data_dir / "sessions"
        assert chat_manager.model_cache.cache_path == config_manager.data_dir / "models_cache.json"
        assert chat_manager.orchestrator.active is None

    def test_injected_collaborators_are_used(self, config_manager, temp_dir):
        registry = ProviderRegistry(temp_dir / "elsewhere.json")

        chat = ChatManager(config_manager, registry=registry)

        assert chat.registry is registry
        assert chat.factory.registry is registry

    def test_settings_flow_into_components(self, config_manager):
        config_manager.set_sync("providers.max_tokens", 1024, save=False)
        config_manager.set_sync("sessions.retention_days", 7, save=False)
        config_manager.set_sync("models.cache_ttl_seconds", 60, save=False)

        chat = ChatManager(config_manager)

        assert chat.factory.max_tokens == 1024
        assert chat.sessions.retention_days == 7
        assert chat.model_cache.ttl_seconds == 60

    def test_create_provider_uses_active_provider(self, chat_manager, config_manager):
        config_manager.set_sync("providers.active_provider", "ollama", save=False)

        provider = chat_manager.create_provider()

        assert provider.provider_id == "ollama"

    def test_create_provider_reads_key_from_config(self, chat_manager, config_manager):
        config_manager.set_sync("providers.entries.openai.api_key", "sk-config", save=False)

        assert chat_manager.create_provider("openai").api_key == "sk-config"
        assert chat_manager.create_provider("openai", "sk-explicit").api_key == "sk-explicit"

    def test_create_provider_unknown(self, chat_manager):
        with pytest.raises(UnknownProvider):
            chat_manager.create_provider("nope")

    @pytest.mark.asyncio
    async def test_missing_key_is_an_error_event(self, chat_manager, scripted_provider_class):
        events = await _collect(chat_manager.request_completion("openai", None, None, "Hi"))

        assert len(events) == 1
        assert events[0].kind == EventKind.ERROR
        assert isinstance(events[0].error, MissingApiKey)
        assert scripted_provider_class.instances == []

    @pytest.mark.asyncio
    async def test_explicit_config_wins_over_store(self, chat_manager, scripted_provider_class):
        config = ProviderConfig(api_key="sk-inline", model="gpt-4o-mini", system_prompt="Terse.")

        events = await _collect(chat_manager.request_completion("openai", None, config, "Hi"))

        assert events[-1].kind == EventKind.COMPLETE
        provider = scripted_provider_class.instances[0]
        assert provider.api_key == "sk-inline"
        assert provider.model == "gpt-4o-mini"
        assert provider.system_prompt == "Terse."

    @pytest.mark.asyncio
    async def test_history_limit_is_applied(self, chat_manager, config_manager, scripted_provider_class):
        config_manager.set_sync("sessions.history_limit", 2, save=False)
        history = [
            GenericMessage(role=MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT, text=f"t{i}")
            for i in range(6)
        ]

        await _collect(chat_manager.request_completion("ollama", None, None, "next", history=history))

        sent = scripted_provider_class.instances[0].streamed[0]["history"]
        assert [m.text for m in sent] == ["t4", "t5"]

    @pytest.mark.asyncio
    async def test_title_failure_falls_back_to_message(self, chat_manager, scripted_provider_class):
        scripted_provider_class.fail_title = True

        events = await _collect(
            chat_manager.request_completion("ollama", None, None, "How do I read this heap dump quickly?")
        )

        session = await chat_manager.load_session(events[-1].session_id)
        assert session.title == "How do I read this heap dump quickly?"

    @pytest.mark.asyncio
    async def test_auto_title_disabled(self, chat_manager, config_manager, scripted_provider_class):
        config_manager.set_sync("sessions.auto_title", False, save=False)

        events = await _collect(chat_manager.request_completion("ollama", None, None, "Hi"))

        session = await chat_manager.load_session(events[-1].session_id)
        assert session.title == "New Chat"
        assert scripted_provider_class.instances[0].sent == []

    @pytest.mark.asyncio
    async def test_persistence_failure_is_reported_on_complete(self, chat_manager):
        with patch.object(
            chat_manager.sessions,
            "create",
            new_callable=AsyncMock,
            side_effect=PersistenceIOError("disk full"),
        ):
            events = await _collect(chat_manager.request_completion("ollama", None, None, "Hi"))

        assert events[-1].kind == EventKind.COMPLETE
        assert events[-1].text == "Hello, world"
        assert isinstance(events[-1].error, PersistenceIOError)
        assert events[-1].session_id is None

    @pytest.mark.asyncio
    async def test_summarize(self, chat_manager, scripted_provider_class):
        scripted_provider_class.title_reply = "  They compared two charts.  "
        messages = [
            GenericMessage(role=MessageRole.USER, text="Compare these charts"),
            GenericMessage(role=MessageRole.ASSISTANT, text="The left one grows faster"),
        ]

        summary = await chat_manager.summarize("ollama", messages)

        assert summary == "They compared two charts."
        prompt = scripted_provider_class.instances[0].sent[0]
        assert "User: Compare these charts" in prompt
        assert "Assistant: The left one grows faster" in prompt
        assert await chat_manager.summarize("ollama", []) == ""

    @pytest.mark.asyncio
    async def test_summarize_requires_key(self, chat_manager):
        messages = [GenericMessage(role=MessageRole.USER, text="hello")]

        with pytest.raises(MissingApiKey):
            await chat_manager.summarize("openai", messages)

    @pytest.mark.asyncio
    async def test_validate_api_key_without_key_is_false(self, config_manager):
        chat = ChatManager(config_manager)

        assert await chat.validate_api_key("openai", "") is False

    @pytest.mark.asyncio
    async def test_validate_api_key_with_scripted_provider(self, chat_manager):
        assert await chat_manager.validate_api_key("ollama") is True

    @pytest.mark.asyncio
    async def test_stop_cancels_active_stream(self, chat_manager):
        await chat_manager.start()
        exchange_events = chat_manager.request_completion("ollama", None, None, "Hi")
        first = await exchange_events.__anext__()

        await chat_manager.stop()
        rest = [event async for event in exchange_events]

        assert first.kind == EventKind.CHUNK
        assert [e.kind for e in rest] == [EventKind.CANCELLED]
