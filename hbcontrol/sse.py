"""Server-sent events view of the broadcaster."""
import itertools, json
from typing import Any, AsyncIterator, Dict

from sse_starlette.sse import EventSourceResponse

def encode_event(ev: Dict[str, Any], seq: int) -> Dict[str, str]:
    return {
        "id": str(seq),
        "event": ev.get("event", "message"),
        "data": json.dumps(ev["data"] if "data" in ev else ev, default=str),
    }

def sse_stream(events: AsyncIterator[Dict[str, Any]], ping: int = 15) -> EventSourceResponse:
    async def publisher():
        seq = itertools.count(1)
        async for ev in events:
            yield encode_event(ev, next(seq))
    return EventSourceResponse(publisher(), ping=ping)
