"""Thinking duration for assistant messages loaded from transcripts."""

from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple, Union

from .models.messages import NormalizedMessage

Timestamp = Union[str, datetime, None]
TranscriptEntry = Tuple[Timestamp, Optional[NormalizedMessage]]


def parse_timestamp(value: Timestamp) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (with optional trailing Z)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    # Naive stamps are UTC so they compare with aware ones
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def annotate_thinking_durations(entries: Iterable[TranscriptEntry]) -> List[NormalizedMessage]:
    """
    Return the messages of ``entries`` with ``thinking_duration_ms`` set.

    Every transcript line is an entry, including lines that do not produce a
    message (tool events, summaries); those still count as the "previous
    timestamp". An assistant message with a reasoning part gets the time
    elapsed since the nearest preceding timestamped entry. Without both
    timestamps the duration stays unset.
    """
    messages: List[NormalizedMessage] = []
    previous: Optional[datetime] = None

    for raw_ts, message in entries:
        ts = parse_timestamp(raw_ts)
        if message is not None:
            if (
                message.role == "assistant"
                and message.has_reasoning
                and ts is not None
                and previous is not None
            ):
                duration = int((ts - previous).total_seconds() * 1000)
                message = message.model_copy(
                    update={"thinking_duration_ms": max(duration, 0)}
                )
            messages.append(message)
        if ts is not None:
            previous = ts

    return messages
