"""JSON encoding of protocol events and Server-Sent Events framing."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from streamchat.core.errors import ProtocolViolation
from streamchat.protocol.events import EVENT_ADAPTER, Envelope, ProtocolEvent


def event_to_dict(event: ProtocolEvent) -> dict[str, Any]:
    return event.model_dump(mode="json", by_alias=True, exclude_none=True)


def encode_event(event: ProtocolEvent) -> str:
    """Serialize one event as a compact JSON object."""
    return json.dumps(event_to_dict(event), ensure_ascii=False, separators=(",", ":"))


def decode_event(data: str | bytes | dict[str, Any]) -> ProtocolEvent:
    """Parse one event. Raises :class:`ProtocolViolation` on anything malformed."""
    try:
        if isinstance(data, dict):
            return EVENT_ADAPTER.validate_python(data)
        return EVENT_ADAPTER.validate_json(data)
    except ValidationError as e:
        raise ProtocolViolation(f"invalid event: {e.error_count()} validation error(s)") from e


def envelope_payload(envelope: Envelope) -> str:
    """The ``data`` line of an envelope: the event plus the request it belongs to."""
    payload = event_to_dict(envelope.event)
    if envelope.request_id is not None:
        payload["requestId"] = envelope.request_id
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def envelope_to_sse(envelope: Envelope) -> dict[str, Any]:
    """Keyword arguments for an ``sse_starlette`` ``ServerSentEvent``."""
    frame: dict[str, Any] = {
        "event": envelope.event.type,
        "data": envelope_payload(envelope),
    }
    if envelope.seq is not None:
        frame["id"] = str(envelope.seq)
    return frame


def format_sse(envelope: Envelope) -> str:
    """Render an envelope as raw SSE text, terminated by a blank line."""
    frame = envelope_to_sse(envelope)
    lines = []
    if "id" in frame:
        lines.append(f"id: {frame['id']}")
    lines.append(f"event: {frame['event']}")
    lines.append(f"data: {frame['data']}")
    return "\n".join(lines) + "\n\n"


@dataclass(frozen=True, slots=True)
class SSEMessage:
    data: str
    event: str = "message"
    id: str | None = None
    retry: int | None = None


class SSEDecoder:
    """Incremental parser for a ``text/event-stream`` body, fed one line at a time."""

    def __init__(self) -> None:
        self._data: list[str] = []
        self._event = ""
        self._id: str | None = None
        self._retry: int | None = None
        self.last_event_id: str | None = None

    def feed(self, line: str) -> SSEMessage | None:
        """Consume a line (without its terminator). Returns a message on dispatch."""
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            if "\0" not in value:
                self._id = value
        elif name == "retry":
            if value.isdigit():
                self._retry = int(value)
        return None

    def _dispatch(self) -> SSEMessage | None:
        if self._id is not None:
            self.last_event_id = self._id
        if not self._data and not self._event:
            self._id = None
            self._retry = None
            return None
        message = SSEMessage(
            data="\n".join(self._data),
            event=self._event or "message",
            id=self._id,
            retry=self._retry,
        )
        self._data = []
        self._event = ""
        self._id = None
        self._retry = None
        return message


def decode_envelope(message: SSEMessage) -> Envelope:
    """Turn an SSE message produced by :func:`format_sse` back into an envelope."""
    try:
        payload = json.loads(message.data)
    except json.JSONDecodeError as e:
        raise ProtocolViolation(f"event data is not JSON: {message.data[:80]!r}") from e
    if not isinstance(payload, dict):
        raise ProtocolViolation("event data is not a JSON object")

    request_id = payload.pop("requestId", None)
    seq: int | None = None
    if message.id is not None:
        try:
            seq = int(message.id)
        except ValueError as e:
            raise ProtocolViolation(f"non-numeric event id: {message.id!r}") from e
    return Envelope(seq=seq, request_id=request_id, event=decode_event(payload))
