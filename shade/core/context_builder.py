"""Conversation context builder.

Projects the generic message history (plus an optional rolling summary) into
the shape the adapters receive: the historical turns and the outgoing text.

The summary is folded into existing text rather than added as its own turn:

- with history, it is prepended to the first remaining historical message;
- without history, it is prepended to the new message.

Providers that require strict user/assistant alternation, or that bill per
turn, then see the same number of turns they would without a summary.
"""

from collections.abc import Sequence
from dataclasses import dataclass, replace

from shade.core.models import GenericMessage

SUMMARY_TEMPLATE = "Previous conversation summary:\n{summary}\n\n{text}"


@dataclass(frozen=True)
class ProviderReadyHistory:
    """History and outgoing text after projection."""

    history: list[GenericMessage]
    text: str


def with_summary(summary: str, text: str) -> str:
    return SUMMARY_TEMPLATE.format(summary=summary, text=text)


def build_context(
    history: Sequence[GenericMessage],
    new_text: str,
    summary: str | None = None,
    limit: int | None = None,
) -> ProviderReadyHistory:
    """Build the provider-ready history for a new turn.

    Args:
        history: Prior turns in conversation order
        new_text: Text of the outgoing user turn
        summary: Rolling summary of earlier conversation, if any
        limit: Max number of historical turns kept; oldest turns go first.
            ``None`` keeps everything, ``0`` drops all history.

    Returns:
        ProviderReadyHistory with the truncated, summary-annotated history and
        the outgoing text. The input sequence is never mutated.
    """
    turns = list(history)

    if limit is not None:
        if limit < 0:
            raise ValueError("limit must be >= 0")
        # FIFO: keep the newest turns
        turns = turns[len(turns) - limit :] if len(turns) > limit else turns

    text = new_text
    if summary:
        if turns:
            first = turns[0]
            turns[0] = replace(first, text=with_summary(summary, first.text))
        else:
            text = with_summary(summary, new_text)

    return ProviderReadyHistory(history=turns, text=text)
