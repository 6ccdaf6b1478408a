"""File-backed session persistence.

Each conversation is one JSON record at ``<data_dir>/sessions/<id>.json``.
There is no database: listing is a directory scan and search is a linear
case-insensitive match over titles and message text.

Consistency rules:

- Writes never truncate in place. A record is written to a temporary file in
  the same directory, fsynced and renamed over the old one, so a reader (or a
  crash) sees either the previous record or the new one.
- Read-modify-write operations on the same id run under a per-id
  ``asyncio.Lock``; different ids proceed concurrently.
- Blocking file I/O runs in a worker thread so the event loop keeps serving
  streams while sessions are saved.
- ``is_saved`` is coerced to a strict bool and ``message_count`` recomputed
  here, at the persistence boundary, on every save and load.
"""

import asyncio
import re
from collections.abc import Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path

from shade.core.errors import PersistenceIOError, SessionNotFound
from shade.core.models import GenericMessage, Session, coerce_saved, parse_timestamp, utcnow
from shade.utils.fileio import atomic_write_json, read_json
from shade.utils.logger import setup_logger

logger = setup_logger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
RECORD_SUFFIX = ".json"
DEFAULT_TITLE = "New Chat"
DEFAULT_RETENTION_DAYS = 30


def _normalize(session: Session) -> Session:
    return replace(
        session,
        created_at=parse_timestamp(session.created_at),
        updated_at=parse_timestamp(session.updated_at) if session.updated_at is not None else None,
        is_saved=coerce_saved(session.is_saved),
        messages=list(session.messages),
        message_count=len(session.messages),
    )


class SessionManager:
    """Durable store for conversation sessions."""

    def __init__(
        self,
        data_dir: Path | str,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.data_dir = Path(data_dir)
        self.sessions_dir = self.data_dir / "sessions"
        self.retention_days = retention_days
        self.clock = clock

        # Per-id locks, dropped once no operation holds or awaits them
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    # -- helpers ----------------------------------------------------------

    def _path(self, session_id: str) -> Path:
        if not isinstance(session_id, str) or not SESSION_ID_PATTERN.match(session_id):
            raise SessionNotFound(str(session_id))
        return self.sessions_dir / f"{session_id}{RECORD_SUFFIX}"

    @asynccontextmanager
    async def _locked(self, session_id: str):
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
                del self._locks[session_id]

    def _read_record(self, path: Path, session_id: str) -> Session:
        try:
            data = read_json(path)
        except FileNotFoundError:
            raise SessionNotFound(session_id) from None
        except (OSError, ValueError) as e:
            raise PersistenceIOError(f"Could not read session {session_id}: {e}") from e

        if not isinstance(data, dict):
            raise PersistenceIOError(f"Session record {session_id} is not an object")

        try:
            session = Session.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise PersistenceIOError(f"Session record {session_id} is malformed: {e}") from e

        return _normalize(session)

    def _write_record(self, session: Session):
        try:
            atomic_write_json(self._path(session.id), session.to_dict())
        except OSError as e:
            raise PersistenceIOError(f"Could not write session {session.id}: {e}") from e

    def _scan(self) -> list[Session]:
        if not self.sessions_dir.exists():
            return []

        sessions = []
        for path in self.sessions_dir.glob(f"*{RECORD_SUFFIX}"):
            session_id = path.stem
            if not SESSION_ID_PATTERN.match(session_id):
                continue
            try:
                sessions.append(self._read_record(path, session_id))
            except SessionNotFound:
                # Deleted between glob and read
                continue
            except PersistenceIOError as e:
                logger.warning(f"Skipping unreadable session file {path.name}: {e}")
        return sessions

    def _now(self) -> datetime:
        return parse_timestamp(self.clock())

    def _stamp(self, session: Session) -> Session:
        return replace(session, updated_at=max(self._now(), session.created_at))

    # -- operations -------------------------------------------------------

    async def save(self, session: Session) -> Session:
        """Persist a session and return the stored form.

        A supplied ``updated_at`` is kept (never earlier than ``created_at``);
        a missing one is stamped with the current time.
        """
        self._path(session.id)
        stored = _normalize(session)
        if stored.updated_at is None:
            stored = self._stamp(stored)
        elif stored.updated_at < stored.created_at:
            stored = replace(stored, updated_at=stored.created_at)

        async with self._locked(stored.id):
            await asyncio.to_thread(self._write_record, stored)

        logger.debug(f"Saved session {stored.id} ({stored.message_count} messages)")
        return stored

    async def create(self, provider_id: str, model_id: str, title: str | None = None) -> Session:
        now = self._now()
        session = Session(
            title=title or DEFAULT_TITLE,
            created_at=now,
            updated_at=now,
            provider_id=provider_id,
            model_id=model_id,
        )
        stored = await self.save(session)
        logger.info(f"Created session {stored.id}")
        return stored

    async def load(self, session_id: str) -> Session:
        path = self._path(session_id)
        return await asyncio.to_thread(self._read_record, path, session_id)

    async def list_all(self) -> list[Session]:
        """All readable sessions, most recently updated first."""
        sessions = await asyncio.to_thread(self._scan)
        sessions.sort(key=lambda s: s.updated_at or s.created_at, reverse=True)
        return sessions

    async def search(self, query: str) -> list[Session]:
        """Case-insensitive substring search over titles and message text.

        A blank query returns the same sessions as ``list_all``.
        """
        sessions = await self.list_all()
        needle = query or ""
        if not needle.strip():
            return sessions
        return [s for s in sessions if s.matches(needle)]

    async def _update(self, session_id: str, mutate: Callable[[Session], Session]) -> Session:
        path = self._path(session_id)
        async with self._locked(session_id):
            current = await asyncio.to_thread(self._read_record, path, session_id)
            updated = _normalize(mutate(current))
            await asyncio.to_thread(self._write_record, updated)
        return updated

    async def append_messages(self, session_id: str, messages: Iterable[GenericMessage]) -> Session:
        new_messages = list(messages)

        def mutate(session: Session) -> Session:
            return self._stamp(replace(session, messages=session.messages + new_messages))

        session = await self._update(session_id, mutate)
        logger.debug(f"Appended {len(new_messages)} messages to session {session_id}")
        return session

    async def rename(self, session_id: str, title: str) -> Session:
        title = (title or "").strip() or DEFAULT_TITLE
        session = await self._update(
            session_id, lambda s: self._stamp(replace(s, title=title))
        )
        logger.info(f"Renamed session {session_id}")
        return session

    async def toggle_saved(self, session_id: str) -> Session:
        return await self._update(
            session_id, lambda s: replace(s, is_saved=not coerce_saved(s.is_saved))
        )

    async def set_saved(self, session_id: str, saved) -> Session:
        return await self._update(session_id, lambda s: replace(s, is_saved=coerce_saved(saved)))

    async def delete(self, session_id: str):
        path = self._path(session_id)
        async with self._locked(session_id):
            try:
                await asyncio.to_thread(path.unlink)
            except FileNotFoundError:
                raise SessionNotFound(session_id) from None
            except OSError as e:
                raise PersistenceIOError(f"Could not delete session {session_id}: {e}") from e
        logger.info(f"Deleted session {session_id}")

    async def cleanup_old(self, max_age_days: int | None = None, exclude_saved: bool = True) -> int:
        """Delete sessions not updated within the retention window.

        Saved sessions are kept regardless of age unless ``exclude_saved`` is
        False. Each candidate is re-read under its lock, so a session touched
        while cleanup runs survives.

        Returns:
            Number of sessions removed
        """
        days = self.retention_days if max_age_days is None else max_age_days
        cutoff = self._now() - timedelta(days=days)

        def expired(session: Session) -> bool:
            if exclude_saved and coerce_saved(session.is_saved):
                return False
            return (session.updated_at or session.created_at) < cutoff

        removed = 0
        for candidate in await self.list_all():
            if not expired(candidate):
                continue

            path = self._path(candidate.id)
            async with self._locked(candidate.id):
                try:
                    current = await asyncio.to_thread(self._read_record, path, candidate.id)
                except SessionNotFound:
                    continue
                if not expired(current):
                    continue
                try:
                    await asyncio.to_thread(path.unlink)
                except FileNotFoundError:
                    continue
            removed += 1

        logger.info(f"Retention cleanup removed {removed} sessions older than {days} days")
        return removed
