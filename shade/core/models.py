"""Data model for conversations, sessions and cached model metadata.

The on-disk representation uses camelCase keys so records stay readable by
the overlay UI; the Python side uses snake_case attributes. ``to_dict`` and
``from_dict`` are the only places that translate between the two.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (or pass through a datetime) as aware UTC."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, int | float):
        # Epoch milliseconds, as written by the original overlay
        dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str) and value:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        return utcnow()

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


class MessageRole(str, Enum):
    """Author of a conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def parse(cls, value: Any) -> "MessageRole":
        # Legacy records use type: 'ai' for assistant turns
        if isinstance(value, MessageRole):
            return value
        if str(value).lower() in ("assistant", "ai", "model"):
            return cls.ASSISTANT
        return cls.USER


@dataclass(frozen=True)
class GenericMessage:
    """One turn of a conversation, independent of any provider's wire format.

    Frozen: a message is immutable once appended to a session. Projections
    (such as prepending a summary) use ``dataclasses.replace``.
    """

    role: MessageRole
    text: str
    id: str = field(default_factory=new_id)
    has_attached_image: bool = False
    timestamp: datetime = field(default_factory=utcnow)
    image: str | None = None
    image_mime_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "id": self.id,
            "role": self.role.value,
            "text": self.text,
            "hasAttachedImage": self.has_attached_image,
            "timestamp": format_timestamp(self.timestamp),
        }
        if self.image:
            data["image"] = self.image
            data["imageMimeType"] = self.image_mime_type or "image/jpeg"
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GenericMessage":
        return cls(
            id=str(data.get("id") or new_id()),
            role=MessageRole.parse(data.get("role", data.get("type", "user"))),
            text=str(data.get("text", data.get("content", "")) or ""),
            has_attached_image=bool(
                data.get("hasAttachedImage", data.get("hasImage", False)) or data.get("image")
            ),
            timestamp=parse_timestamp(data.get("timestamp")),
            image=data.get("image") or None,
            image_mime_type=data.get("imageMimeType") or None,
        )


def coerce_saved(value: Any) -> bool:
    """Normalise an ``is_saved`` value to a strict boolean.

    Truthiness decides: ``True``, ``"true"`` and ``1`` become ``True``;
    ``None``, ``False``, ``0`` and ``""`` become ``False``.
    """
    return bool(value)


@dataclass
class Session:
    """One persisted conversation thread.

    ``is_saved`` may temporarily hold any value a caller assigned; the
    session manager normalises it with ``coerce_saved`` at the persistence
    boundary. ``message_count`` is derived and recomputed on every save and
    load.
    """

    id: str = field(default_factory=new_id)
    title: str = "New Chat"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None
    provider_id: str = ""
    model_id: str = ""
    is_saved: Any = False
    messages: list[GenericMessage] = field(default_factory=list)
    message_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at or self.created_at),
            "providerId": self.provider_id,
            "modelId": self.model_id,
            "isSaved": coerce_saved(self.is_saved),
            "messageCount": len(self.messages),
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        messages = [
            m if isinstance(m, GenericMessage) else GenericMessage.from_dict(m)
            for m in data.get("messages") or []
        ]
        created_at = parse_timestamp(data.get("createdAt", data.get("created_at")))
        updated_raw = data.get("updatedAt", data.get("updated_at"))
        return cls(
            id=str(data.get("id") or new_id()),
            title=str(data.get("title") or "New Chat"),
            created_at=created_at,
            updated_at=parse_timestamp(updated_raw) if updated_raw else None,
            provider_id=str(data.get("providerId", data.get("provider", "")) or ""),
            model_id=str(data.get("modelId", data.get("model", "")) or ""),
            # Raw value; coerced by the session manager
            is_saved=data.get("isSaved", data.get("is_saved", False)),
            messages=messages,
            message_count=len(messages),
        )

    def matches(self, query: str) -> bool:
        """Case-insensitive substring match over title and message text."""
        needle = query.casefold()
        if needle in self.title.casefold():
            return True
        return any(needle in m.text.casefold() for m in self.messages)


@dataclass(frozen=True)
class ModelInfo:
    """A model a provider can serve."""

    id: str
    display_name: str = ""
    options: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        if not self.display_name:
            object.__setattr__(self, "display_name", self.id)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "displayName": self.display_name}


@dataclass
class ModelCacheEntry:
    """Cached model list for one provider.

    ``fetched_at`` is ``None`` until the first successful refresh, which makes
    the entry maximally stale.
    """

    provider_id: str
    models: list[ModelInfo] = field(default_factory=list)
    fetched_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "providerId": self.provider_id,
            "models": [m.to_dict() for m in self.models],
            "fetchedAt": format_timestamp(self.fetched_at) if self.fetched_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModelCacheEntry":
        fetched = data.get("fetchedAt")
        return cls(
            provider_id=str(data["providerId"]),
            models=[
                ModelInfo(id=str(m["id"]), display_name=str(m.get("displayName") or m["id"]))
                for m in data.get("models") or []
            ],
            fetched_at=parse_timestamp(fetched) if fetched else None,
        )
