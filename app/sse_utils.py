"""SSE helpers for the live conversation timeline.

Event format produced:
- "event: timeline" with "data: <MessageTimeline JSON>" on every change
"""

import json
from typing import Any, AsyncIterator, Optional

from pydantic import BaseModel


def format_sse(data: Any, event: Optional[str] = None) -> str:
    """Serialize ``data`` as one SSE frame.

    Models are dumped in JSON mode; multi-line payloads are split across
    ``data:`` lines as the SSE format requires.
    """
    if isinstance(data, BaseModel):
        payload = data.model_dump_json()
    elif isinstance(data, str):
        payload = data
    else:
        payload = json.dumps(data, default=str)
    lines = [f"event: {event}"] if event else []
    lines.extend(f"data: {line}" for line in payload.splitlines() or [""])
    return "\n".join(lines) + "\n\n"


async def sse_snapshots(
    snapshots: AsyncIterator[BaseModel], event: str = "timeline"
) -> AsyncIterator[str]:
    """Relay snapshots as SSE frames.

    The underlying iterator is closed when the client goes away so its
    subscription is released.
    """
    try:
        async for snapshot in snapshots:
            yield format_sse(snapshot, event=event)
    finally:
        aclose = getattr(snapshots, "aclose", None)
        if aclose is not None:
            await aclose()
