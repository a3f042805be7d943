# intake_agent/streaming.py
import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Iterable, Iterator, List, Optional, Union

from pydantic import BaseModel

from .config import STREAM_CHUNK_SIZE

logger = logging.getLogger(__name__)

EventLike = Union[BaseModel, Dict[str, Any]]

_END = object()


def event_dict(event: EventLike) -> Dict[str, Any]:
    return event.model_dump() if isinstance(event, BaseModel) else dict(event)


def encode_sse(event: EventLike) -> str:
    return f"data: {json.dumps(event_dict(event), ensure_ascii=False)}\n\n"


def decode_sse(frames: Union[str, Iterable[str]]) -> List[Dict[str, Any]]:
    """
    Parse `data: <json>` frames back into dicts. Unknown `type` values are kept
    as-is; frames that are not JSON objects are skipped.
    """
    text = frames if isinstance(frames, str) else "".join(frames)
    events = []
    for block in text.split("\n\n"):
        data = "\n".join(line[5:].lstrip() for line in block.splitlines() if line.startswith("data:"))
        if not data:
            continue
        try:
            obj = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("skipping malformed SSE frame: %r", data[:80])
            continue
        if isinstance(obj, dict) and "type" in obj:
            events.append(obj)
    return events


def chunk_text(text: str, size: int = STREAM_CHUNK_SIZE) -> Iterator[str]:
    """Fixed-width character slices; joining them yields the original text."""
    text = text or ""
    size = max(1, size)
    for i in range(0, len(text), size):
        yield text[i:i + size]


class EventChannel:
    """
    Single-producer event channel for one turn.

    send() is a no-op returning False once the channel is closed (client
    disconnected). end_stream() stops the consumer without closing, so a
    channel left open after a tool error can still be reported as open.
    """

    def __init__(self, maxsize: int = 0):
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._ended = False
        self.sent: List[Dict[str, Any]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def ended(self) -> bool:
        return self._ended

    async def send(self, event: EventLike) -> bool:
        if self._closed or self._ended:
            return False
        payload = event_dict(event)
        self.sent.append(payload)
        await self._queue.put(payload)
        return True

    def end_stream(self) -> None:
        if not self._ended:
            self._ended = True
            self._queue.put_nowait(_END)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._ended:
            self._ended = True
            self._queue.put_nowait(_END)

    async def get(self) -> Optional[Dict[str, Any]]:
        item = await self._queue.get()
        return None if item is _END else item

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            item = await self.get()
            if item is None:
                return
            yield item
