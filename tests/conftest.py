"""Pytest configuration and shared fixtures."""

import os
import tempfile

# Keep log files out of the user's log directory
os.environ.setdefault("SHADE_LOG_DIR", tempfile.mkdtemp(prefix="shade-test-logs-"))

from pathlib import Path  # noqa: E402
from types import SimpleNamespace  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402

import pytest  # noqa: E402

from shade.config.manager import ConfigManager  # noqa: E402
from shade.core.chat_manager import ChatManager  # noqa: E402
from shade.core.models import ModelInfo  # noqa: E402
from shade.core.session_manager import SessionManager  # noqa: E402
from shade.providers import BaseProvider, LLMProvider  # noqa: E402
from shade.providers.factory import ProviderFactory  # noqa: E402
from shade.providers.registry import (  # noqa: E402
    PROTOCOL_COMPATIBLE,
    PROTOCOL_OPENAI,
    ProviderRegistry,
)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def registry(temp_dir):
    """Registry backed by an isolated override file."""
    registry = ProviderRegistry(temp_dir / "providers.json")
    registry.load()
    return registry


@pytest.fixture
def factory(registry):
    return ProviderFactory(registry)


@pytest.fixture
def session_manager(temp_dir):
    return SessionManager(temp_dir / "data")


@pytest.fixture
def config_manager(temp_dir):
    """Configuration manager writing only inside the temp directory."""
    return ConfigManager(config_dir=temp_dir / "config", data_dir=temp_dir / "data")


class FakeStreamProvider:
    """Protocol-shaped provider with a scripted stream.

    Honors the cancellation event between chunks and can fail after a given
    number of chunks.
    """

    def __init__(
        self,
        chunks=("Hello", " ", "world"),
        provider_id="fake",
        api_key="key",
        requires_api_key=True,
        fail_after=None,
        error=None,
    ):
        self.chunks = list(chunks)
        self.provider_id = provider_id
        self.api_key = api_key
        self.requires_api_key = requires_api_key
        self.fail_after = fail_after
        self.error = error or RuntimeError("stream broke")
        self.stream_calls = 0
        self.yielded = 0
        self.closed = False

    async def stream_response(self, text, image=None, history=(), cancel_event=None):
        self.stream_calls += 1
        try:
            for index, chunk in enumerate(self.chunks):
                if self.fail_after is not None and index == self.fail_after:
                    raise self.error
                if cancel_event is not None and cancel_event.is_set():
                    return
                self.yielded += 1
                yield chunk
            if self.fail_after is not None and self.fail_after >= len(self.chunks):
                raise self.error
        finally:
            self.closed = True

    async def send_message(self, text, image=None):
        return "reply"

    async def validate_api_key(self):
        return True

    async def list_models(self):
        return [ModelInfo(id="fake-model")]

    def get_models(self):
        return [ModelInfo(id="fake-model")]

    def get_name(self):
        return self.provider_id


@pytest.fixture
def fake_provider():
    return FakeStreamProvider()


@pytest.fixture
def make_fake_provider():
    """Build FakeStreamProvider instances with custom scripts."""
    return FakeStreamProvider


@pytest.fixture
def mock_llm_provider():
    """Mock LLM provider for testing."""
    mock = AsyncMock(spec=LLMProvider)
    mock.send_message = AsyncMock(return_value="Test response")
    mock.validate_api_key = AsyncMock(return_value=True)
    mock.list_models = AsyncMock(return_value=[ModelInfo(id="test-model")])

    async def mock_stream_response(*args, **kwargs):
        """Mock streaming response."""
        for chunk in ["Test ", "streaming ", "response"]:
            yield chunk

    mock.stream_response.side_effect = mock_stream_response
    mock.get_name.return_value = "mock"
    return mock


class ScriptedProvider(BaseProvider):
    """Real adapter subclass whose vendor hooks return canned data."""

    chunks = ["Hello", ", ", "world"]
    title_reply = "Friendly greeting"
    fail_title = False
    instances: list = []

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.sent = []
        self.streamed = []
        type(self).instances.append(self)

    def _create_client(self):
        return SimpleNamespace()

    async def _complete(self, text, image):
        self.sent.append(text)
        if self.fail_title:
            raise RuntimeError("title service down")
        return self.title_reply

    async def _open_stream(self, text, image, history):
        self.streamed.append({"text": text, "image": image, "history": history})
        return self._generate()

    async def _generate(self):
        for chunk in self.chunks:
            yield chunk

    async def _iter_deltas(self, stream):
        async for chunk in stream:
            yield chunk

    async def _list_remote_models(self):
        return [ModelInfo(id="scripted-1"), ModelInfo(id="scripted-2")]

    async def _probe(self):
        return None


@pytest.fixture
def scripted_provider_class():
    """Fresh ScriptedProvider subclass so class-level state never leaks."""

    class Scripted(ScriptedProvider):
        instances = []

    return Scripted


@pytest.fixture
def chat_manager(config_manager, scripted_provider_class):
    """ChatManager whose OpenAI-protocol providers are scripted."""
    chat = ChatManager(config_manager)
    chat.factory.register(PROTOCOL_COMPATIBLE, scripted_provider_class)
    chat.factory.register(PROTOCOL_OPENAI, scripted_provider_class)
    return chat
