"""Server-sent event helpers: formatting outgoing events and parsing incoming streams."""

import json
from typing import Any, AsyncIterator, Dict, Optional, Tuple


def format_sse_event(event_type: str, payload: Dict[str, Any], seq: Optional[int] = None) -> str:
    """Format a single SSE event string ready for streaming."""
    head = f"id: {seq}\n" if seq is not None else ""
    return f"{head}event: {event_type}\ndata: {json.dumps(payload, default=str)}\n\n"


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[Tuple[Optional[str], str]]:
    """
    Incrementally parse an SSE stream given line by line.

    Yields ``(event, data)`` for each dispatched event as soon as its
    terminating blank line arrives; multi-line ``data:`` fields are joined
    with newlines. Comment lines are ignored.
    """
    event: Optional[str] = None
    data: list = []
    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data:
                yield event, "\n".join(data)
            event, data = None, []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
    if data:
        yield event, "\n".join(data)
