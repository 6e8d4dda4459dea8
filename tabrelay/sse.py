"""
Server-sent-event framing for the push channel.

Records look like:

    event: command
    data: {"id": "...", "action": "click", "ref": "5"}
    <blank line>

SSEDecoder is fed arbitrary byte chunks (a read can end mid-line, or even
mid UTF-8 sequence) and returns the records completed by each chunk.
"""

import codecs
import json
from dataclasses import dataclass
from typing import List


@dataclass
class SSEEvent:
    type: str
    data: str

    def json(self):
        return json.loads(self.data)


class SSEDecoder:
    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event = ""
        self._data: List[str] = []

    def feed(self, chunk: bytes) -> List[SSEEvent]:
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        # Last element is an incomplete line (or "" after a trailing newline)
        self._buffer = lines.pop()

        events = []
        for line in lines:
            event = self._process_line(line.rstrip("\r"))
            if event:
                events.append(event)
        return events

    def _process_line(self, line: str):
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None  # comment / keepalive
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value.strip()
        elif field == "data":
            self._data.append(value)
        return None

    def _dispatch(self):
        event, data = self._event, "\n".join(self._data)
        self._event = ""
        self._data = []
        if event and data:
            return SSEEvent(event, data)
        return None

    def reset(self):
        self.__init__()


def encode_event(event_type: str, data) -> str:
    """Frame one record. Non-string payloads are JSON-encoded."""
    if not isinstance(data, str):
        data = json.dumps(data, ensure_ascii=False)
    lines = "".join(f"data: {line}\n" for line in data.split("\n"))
    return f"event: {event_type}\n{lines}\n"
