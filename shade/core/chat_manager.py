"""Chat management facade for the overlay.

This module is the single inbound surface the UI/IPC layer talks to. It wires
the gateway components together and exposes the operations the overlay needs:

    - Completions: ``request_completion`` resolves the provider, builds the
      context, streams through the orchestrator and persists the finished
      exchange
    - Sessions: list, search, load, delete, rename, toggle/set saved
    - Providers: metadata, live model refresh, key validation
    - Summaries: ``summarize`` produces the rolling summary callers pass back
      on later requests

Architectural Design:
    The ChatManager follows a facade pattern. Every collaborator (config store,
    registry, factory, session store, model cache, orchestrator) is injected or
    built from the configuration, so tests can substitute isolated instances.

Example Usage:
    ```python
    chat = ChatManager(ConfigManager())
    await chat.start()

    async for event in chat.request_completion("openai", None, None, "What is on my screen?", image=shot):
        if event.kind == EventKind.CHUNK:
            print(event.text, end="")

    await chat.stop()
    ```
"""

import asyncio
from collections.abc import AsyncIterator, Sequence
from dataclasses import replace
from typing import Any

from shade.config.manager import ConfigManager
from shade.config.schema import ProviderConfig
from shade.core.context_builder import build_context
from shade.core.errors import MissingApiKey, SessionNotFound, ShadeError, UnknownProvider
from shade.core.model_cache import ModelMetadataCache
from shade.core.models import GenericMessage, MessageRole, ModelInfo, Session
from shade.core.session_manager import DEFAULT_TITLE, SessionManager
from shade.core.streaming import EventKind, StreamEvent, StreamingOrchestrator
from shade.providers import BaseProvider, ImageAttachment
from shade.providers.factory import ProviderFactory
from shade.providers.registry import OVERRIDE_FILENAME, ProviderDescriptor, ProviderRegistry
from shade.utils.logger import setup_logger

logger = setup_logger(__name__)

MODEL_CACHE_FILENAME = "models_cache.json"
MAX_TITLE_LENGTH = 50

TITLE_PROMPT = (
    "Write a short title (at most six words) for a conversation that starts with "
    "the message below. Reply with the title only, without quotes.\n\n{text}"
)
SUMMARY_PROMPT = (
    "Summarize the following conversation in a few sentences. Keep names, facts "
    "and decisions; drop pleasantries.\n\n{transcript}"
)


def fallback_title(text: str) -> str:
    """First words of the message, at most ``MAX_TITLE_LENGTH`` characters."""
    words = text.split()
    title = ""
    for word in words:
        candidate = f"{title} {word}" if title else word
        if len(candidate) > MAX_TITLE_LENGTH:
            break
        title = candidate

    if not title and words:
        title = words[0][:MAX_TITLE_LENGTH]
    return title or DEFAULT_TITLE


def clean_title(raw: str) -> str:
    lines = [line.strip() for line in raw.strip().splitlines() if line.strip()]
    if not lines:
        return ""
    title = lines[0].strip("\"'` ").removeprefix("Title:").strip()
    return title[:MAX_TITLE_LENGTH].rstrip()


class ChatManager:
    """Inbound facade over the provider gateway and session store.

    Attributes:
        config: Configuration store; owns API keys and per-provider settings
        registry: Provider metadata
        factory: Builds adapters for provider ids
        sessions: Durable session store
        model_cache: Live model lists with TTL
        orchestrator: Tracks the single active streaming exchange
    """

    def __init__(
        self,
        config: ConfigManager | None = None,
        registry: ProviderRegistry | None = None,
        factory: ProviderFactory | None = None,
        sessions: SessionManager | None = None,
        model_cache: ModelMetadataCache | None = None,
        orchestrator: StreamingOrchestrator | None = None,
    ):
        self.config = config or ConfigManager()
        settings = self.config.config
        data_dir = self.config.data_dir

        self.registry = registry or ProviderRegistry(data_dir / OVERRIDE_FILENAME)
        self.factory = factory or ProviderFactory(
            self.registry, max_tokens=settings.providers.max_tokens
        )
        self.sessions = sessions or SessionManager(
            data_dir, retention_days=settings.sessions.retention_days
        )
        self.model_cache = model_cache or ModelMetadataCache(
            self.registry,
            self.factory,
            ttl_seconds=settings.models.cache_ttl_seconds,
            ttl_overrides=settings.models.ttl_overrides,
            cache_path=data_dir / MODEL_CACHE_FILENAME,
        )
        self.orchestrator = orchestrator or StreamingOrchestrator()

        self._background_tasks: set[asyncio.Task] = set()

    # -- lifecycle --------------------------------------------------------

    async def start(self, watch_registry: bool = False):
        """Load the registry, seed configuration and kick off retention cleanup.

        Cleanup runs in the background; startup never waits for it.
        """
        await asyncio.to_thread(self.registry.load)
        self.config.seed_providers(self.registry)
        await self.model_cache.load()

        if self.config.config.sessions.cleanup_on_startup:
            self._spawn(self._cleanup_in_background())

        if watch_registry:
            self.registry.watch()

        logger.info(f"Chat manager started with {len(self.registry)} providers")

    async def stop(self):
        self.cancel_stream()
        self.registry.stop_watching()

        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Chat manager stopped")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _cleanup_in_background(self) -> int:
        try:
            return await self.sessions.cleanup_old(self.config.config.sessions.retention_days)
        except (ShadeError, OSError) as e:
            logger.error(f"Session cleanup failed: {e}")
        return 0

    # -- provider resolution ----------------------------------------------

    def _resolve(
        self,
        provider_id: str | None,
        credential: str | None,
        config: ProviderConfig | None,
    ) -> tuple[ProviderDescriptor, ProviderConfig, str]:
        provider_id = provider_id or self.config.config.providers.active_provider
        descriptor = self.registry.get(provider_id)
        if descriptor is None:
            raise UnknownProvider(provider_id)

        provider_config = config or self.config.get_provider_config(descriptor.id)
        if credential is None:
            credential = provider_config.api_key
        return descriptor, provider_config, credential or ""

    def create_provider(
        self,
        provider_id: str | None = None,
        credential: str | None = None,
        config: ProviderConfig | None = None,
    ) -> BaseProvider:
        descriptor, provider_config, credential = self._resolve(provider_id, credential, config)
        return self.factory.create(descriptor.id, credential, provider_config)

    # -- completions ------------------------------------------------------

    async def request_completion(
        self,
        provider_id: str | None,
        credential: str | None,
        config: ProviderConfig | None,
        text: str,
        image: ImageAttachment | bytes | str | None = None,
        history: Sequence[GenericMessage] = (),
        summary: str | None = None,
        session_id: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a completion as events: chunks, then one terminal event.

        ``credential`` and ``config`` fall back to the configuration store
        when None. Setup failures (unknown provider, missing key) become a
        single ``error`` event. On ``complete`` the exchange is appended to
        ``session_id`` (a new session is created when it is None) and the
        event carries the session id; a persistence failure is reported in
        the ``complete`` event's ``error`` without turning it into a failure.
        """
        try:
            descriptor, provider_config, credential = self._resolve(provider_id, credential, config)
            if descriptor.requires_api_key and not credential:
                raise MissingApiKey(descriptor.id)
            provider = self.factory.create(descriptor.id, credential, provider_config)
        except ShadeError as e:
            logger.warning(f"Completion request rejected: {e}")
            yield StreamEvent(EventKind.ERROR, error=e)
            return

        attachment = ImageAttachment.coerce(image)
        context = build_context(
            history, text, summary=summary, limit=self.config.config.sessions.history_limit
        )

        try:
            exchange = self.orchestrator.start(
                provider,
                context.text,
                image=attachment,
                history=context.history,
                provider_id=descriptor.id,
                credential=credential,
                requires_api_key=descriptor.requires_api_key,
            )
        except MissingApiKey as e:
            yield StreamEvent(EventKind.ERROR, error=e)
            return

        async for event in exchange.events():
            if event.kind == EventKind.COMPLETE:
                try:
                    session = await self._persist_exchange(
                        session_id, provider, descriptor.id, text, attachment, event.text
                    )
                except ShadeError as e:
                    logger.error(f"Failed to persist exchange: {e}")
                    event = replace(event, error=e, session_id=session_id)
                else:
                    event = replace(event, session_id=session.id)
            yield event

    def cancel_stream(self):
        """Cancel the active streaming exchange, if any."""
        self.orchestrator.cancel()

    async def _persist_exchange(
        self,
        session_id: str | None,
        provider: BaseProvider,
        provider_id: str,
        text: str,
        image: ImageAttachment | None,
        response: str,
    ) -> Session:
        settings = self.config.config.sessions
        keep_image = image is not None and not settings.exclude_screenshots

        user_message = GenericMessage(
            role=MessageRole.USER,
            text=text,
            has_attached_image=image is not None,
            image=image.data if keep_image else None,
            image_mime_type=image.mime_type if keep_image else None,
        )
        assistant_message = GenericMessage(role=MessageRole.ASSISTANT, text=response)

        if session_id is not None:
            try:
                return await self.sessions.append_messages(
                    session_id, [user_message, assistant_message]
                )
            except SessionNotFound:
                logger.warning(f"Session {session_id} no longer exists; starting a new one")

        title = await self._generate_title(provider, text) if settings.auto_title else DEFAULT_TITLE
        session = await self.sessions.create(provider_id, provider.model, title=title)
        return await self.sessions.append_messages(session.id, [user_message, assistant_message])

    async def _generate_title(self, provider: BaseProvider, text: str) -> str:
        try:
            title = clean_title(await provider.send_message(TITLE_PROMPT.format(text=text[:1000])))
        except ShadeError as e:
            logger.debug(f"Title generation failed, using message text: {e}")
            title = ""
        return title or fallback_title(text)

    async def summarize(
        self,
        provider_id: str | None,
        messages: Sequence[GenericMessage],
        credential: str | None = None,
        config: ProviderConfig | None = None,
    ) -> str:
        """Rolling summary of ``messages`` for use as ``summary`` on later requests."""
        if not messages:
            return ""

        descriptor, provider_config, credential = self._resolve(provider_id, credential, config)
        if descriptor.requires_api_key and not credential:
            raise MissingApiKey(descriptor.id)

        provider = self.factory.create(descriptor.id, credential, provider_config)
        transcript = "\n".join(
            f"{'User' if m.role == MessageRole.USER else 'Assistant'}: {m.text}" for m in messages
        )
        summary = await provider.send_message(SUMMARY_PROMPT.format(transcript=transcript))
        return summary.strip()

    # -- sessions ---------------------------------------------------------

    async def list_sessions(self) -> list[Session]:
        return await self.sessions.list_all()

    async def search_sessions(self, query: str) -> list[Session]:
        return await self.sessions.search(query)

    async def load_session(self, session_id: str) -> Session:
        return await self.sessions.load(session_id)

    async def delete_session(self, session_id: str):
        await self.sessions.delete(session_id)

    async def rename_session(self, session_id: str, title: str) -> Session:
        return await self.sessions.rename(session_id, title)

    async def toggle_session_saved(self, session_id: str) -> Session:
        return await self.sessions.toggle_saved(session_id)

    async def set_session_saved(self, session_id: str, saved: Any) -> Session:
        return await self.sessions.set_saved(session_id, saved)

    # -- providers --------------------------------------------------------

    def get_provider_meta(self) -> list[dict[str, Any]]:
        """Registry metadata merged with configuration state and cached models."""
        active = self.config.config.providers.active_provider
        meta = []
        for descriptor in self.registry.list():
            provider_config = self.config.get_provider_config(descriptor.id)
            meta.append(
                {
                    "id": descriptor.id,
                    "displayName": descriptor.display_name,
                    "protocol": descriptor.protocol,
                    "description": descriptor.description,
                    "website": descriptor.website,
                    "baseUrl": provider_config.base_url or descriptor.base_url,
                    "defaultModel": descriptor.default_model,
                    "model": provider_config.model or descriptor.default_model,
                    "requiresApiKey": descriptor.requires_api_key,
                    "hasApiKey": bool(provider_config.api_key),
                    "active": descriptor.id == active,
                    "modelsStale": self.model_cache.is_stale(descriptor.id),
                    "models": [m.to_dict() for m in self.model_cache.get(descriptor.id)],
                }
            )
        return meta

    async def refresh_models(
        self, provider_id: str, credential: str | None = None, config: ProviderConfig | None = None
    ) -> list[ModelInfo]:
        descriptor, provider_config, credential = self._resolve(provider_id, credential, config)
        return await self.model_cache.refresh(descriptor.id, credential, provider_config)

    async def validate_api_key(
        self, provider_id: str, credential: str | None = None, config: ProviderConfig | None = None
    ) -> bool:
        """Check a credential against the provider. Never raises for provider failures."""
        provider = self.create_provider(provider_id, credential, config)
        valid = await provider.validate_api_key()
        logger.info(f"API key for {provider.provider_id} is {'valid' if valid else 'invalid'}")
        return valid
