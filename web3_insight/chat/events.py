# =============================================================================
# Chat Events — Server-Sent Events Wire Protocol
# =============================================================================
#
# A streamed answer is a sequence of named events:
#
#   sources → start → chunk* → (done | error)
#
# Each event is one SSE frame:
#
#   event: chunk
#   data: {"content": "Ethereum is"}
#   <blank line>
#
# encode_sse() produces frames for the /api/chat/stream response;
# EventStreamParser is the consumer side (used by tests and any Python
# client) and tolerates frames split across network reads.
# =============================================================================

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Union

from web3_insight.services.context import Attribution


@dataclass(frozen=True)
class SourcesEvent:
    name: ClassVar[str] = "sources"
    sources: list[Attribution] = field(default_factory=list)

    def payload(self) -> dict[str, Any]:
        return {"sources": [source.to_dict() for source in self.sources]}


@dataclass(frozen=True)
class StartEvent:
    name: ClassVar[str] = "start"
    message: str = "Starting response..."

    def payload(self) -> dict[str, Any]:
        return {"message": self.message}


@dataclass(frozen=True)
class ChunkEvent:
    name: ClassVar[str] = "chunk"
    content: str = ""

    def payload(self) -> dict[str, Any]:
        return {"content": self.content}


@dataclass(frozen=True)
class DoneEvent:
    name: ClassVar[str] = "done"
    full_content: str = ""
    message: str = "Response complete"

    def payload(self) -> dict[str, Any]:
        return {"message": self.message, "fullContent": self.full_content}


@dataclass(frozen=True)
class ErrorEvent:
    name: ClassVar[str] = "error"
    error: str = ""

    def payload(self) -> dict[str, Any]:
        return {"error": self.error}


ChatEvent = Union[SourcesEvent, StartEvent, ChunkEvent, DoneEvent, ErrorEvent]


def encode_sse(event: ChatEvent) -> str:
    """One SSE frame: `event: <name>\\ndata: <json>\\n\\n`."""
    data = json.dumps(event.payload(), ensure_ascii=False)
    return f"event: {event.name}\ndata: {data}\n\n"


class EventStreamParser:
    """
    Incremental SSE consumer.

    feed() accepts any slice of the stream and returns the (name, data)
    pairs completed by it. A trailing partial line is kept for the next
    feed(). A `data:` line dispatches the event and resets the name; a
    blank line also resets it.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._event: str | None = None

    def feed(self, text: str) -> list[tuple[str | None, Any]]:
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")

        events: list[tuple[str | None, Any]] = []
        for line in lines:
            line = line.rstrip("\r")
            if line.startswith("event: "):
                self._event = line[len("event: "):].strip()
            elif line.startswith("data: "):
                events.append((self._event, json.loads(line[len("data: "):])))
                self._event = None
            elif not line:
                self._event = None
        return events
