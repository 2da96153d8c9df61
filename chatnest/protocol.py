"""Wire format shared by the relay server and the stream controller.

A stream is a sequence of frames::

    event: <type>
    data: <payload>
    <blank line>

``token`` payloads are JSON strings and ``error`` payloads are JSON objects
carrying ``message``; ``start``, ``ping`` and ``done`` have empty payloads.
JSON-encoding keeps newlines inside payloads from ever forming the frame
delimiter.
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

FRAME_DELIMITER = "\n\n"
EVENT_PREFIX = "event:"
DATA_PREFIX = "data:"
MEDIA_TYPE = "text/event-stream"


class EventType(str, Enum):
    START = "start"
    TOKEN = "token"
    DONE = "done"
    ERROR = "error"
    PING = "ping"

    @property
    def is_terminal(self) -> bool:
        return self in (EventType.DONE, EventType.ERROR)


@dataclass(frozen=True)
class StreamEvent:
    type: EventType
    data: str = ""


def encode_frame(event_type: EventType, payload: str = "") -> bytes:
    return f"{EVENT_PREFIX} {event_type.value}\n{DATA_PREFIX} {payload}{FRAME_DELIMITER}".encode(
        "utf-8"
    )


def encode_token(fragment: str) -> str:
    return json.dumps(fragment, ensure_ascii=False)


def encode_error(message: str) -> str:
    return json.dumps({"message": message}, ensure_ascii=False)


def decode_token(data: str) -> str:
    """Decode a token payload, passing undecodable payloads through verbatim."""

    try:
        value = json.loads(data)
    except ValueError:
        return data
    return value if isinstance(value, str) else data


def decode_error(data: str) -> str:
    try:
        value = json.loads(data)
    except ValueError:
        return data or "Stream error"
    if isinstance(value, dict):
        message = value.get("message")
        if isinstance(message, str) and message:
            return message
        return "Stream error"
    return data or "Stream error"


def parse_frame(text: str) -> Optional[StreamEvent]:
    """Parse one delimited frame; ``None`` for blank or unknown frames."""

    if not text.strip():
        return None
    event_name = ""
    data_parts: List[str] = []
    for line in text.split("\n"):
        if line.startswith(EVENT_PREFIX):
            event_name = line[len(EVENT_PREFIX):].strip()
        elif line.startswith(DATA_PREFIX):
            data_parts.append(line[len(DATA_PREFIX):].strip())
    try:
        event_type = EventType(event_name)
    except ValueError:
        return None
    return StreamEvent(type=event_type, data="\n".join(data_parts))


class FrameParser:
    """Incremental frame parser over an arbitrary split of the byte stream.

    Bytes are decoded with an incremental UTF-8 decoder so a multi-byte
    character split across chunks is reassembled; the trailing, possibly
    incomplete frame is kept as residue until its delimiter arrives.
    Invalid UTF-8 raises ``UnicodeDecodeError``.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._residue = ""

    @property
    def residue(self) -> str:
        return self._residue

    def feed(self, chunk: bytes) -> List[StreamEvent]:
        self._residue += self._decoder.decode(chunk)
        return self._drain()

    def close(self) -> List[StreamEvent]:
        """Flush the decoder at end of stream.

        An unterminated trailing frame is discarded, matching a peer that
        went away mid-frame.
        """

        self._residue += self._decoder.decode(b"", final=True)
        events = self._drain()
        self._residue = ""
        return events

    def _drain(self) -> List[StreamEvent]:
        pieces = self._residue.split(FRAME_DELIMITER)
        self._residue = pieces.pop()
        events = []
        for piece in pieces:
            event = parse_frame(piece)
            if event is not None:
                events.append(event)
        return events
