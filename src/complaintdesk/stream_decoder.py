"""Incremental decoder for newline-delimited ``data:`` event streams.

The assistant backend answers with a chunked body shaped like server-sent
events::

    : keep-alive
    data: {"choices": [{"delta": {"content": "Hel"}}]}
    data: {"choices": [{"delta": {"content": "lo"}}]}
    data: [DONE]

Network chunks rarely line up with frame boundaries, so the decoder keeps a
single text buffer and only ever consumes complete lines. A complete line whose
JSON payload does not parse is rolled back into the buffer and retried once the
next chunk arrives; if it still fails it is dropped with a warning.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Callable, Iterable, Iterator, Union

from .errors import MalformedFrame, TransportFailed

logger = logging.getLogger(__name__)

DEFAULT_DATA_PREFIX = "data: "
DEFAULT_COMMENT_MARKER = ":"
DEFAULT_TERMINATOR = "[DONE]"

FragmentExtractor = Callable[[Any], "str | None"]


class FrameKind(str, Enum):
    COMMENT = "comment"
    DATA = "data"
    TERMINATOR = "terminator"
    IGNORED = "ignored"


@dataclass(slots=True, frozen=True)
class StreamFrame:
    """One decoded line of the stream."""

    raw: str
    kind: FrameKind
    payload: Any = None


@dataclass(slots=True, frozen=True)
class StreamDelta:
    """Incremental text extracted from a data frame (may be empty)."""

    text: str
    payload: Any = None


@dataclass(slots=True, frozen=True)
class StreamDone:
    """End of stream; ``implicit`` when the connection closed without ``[DONE]``."""

    implicit: bool = False


StreamEvent = Union[StreamDelta, StreamDone]


def extract_chat_delta(payload: Any) -> str | None:
    """Pull ``choices[0].delta.content`` out of a chat-completions chunk."""

    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta") or {}
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return str(content) if content is not None else None


class StreamFrameDecoder:
    """Turn a sequence of byte chunks into :class:`StreamDelta`/:class:`StreamDone` events."""

    def __init__(
        self,
        *,
        data_prefix: str = DEFAULT_DATA_PREFIX,
        comment_marker: str = DEFAULT_COMMENT_MARKER,
        terminator: str = DEFAULT_TERMINATOR,
        extract_fragment: FragmentExtractor = extract_chat_delta,
        encoding: str = "utf-8",
    ) -> None:
        self._data_prefix = data_prefix
        self._comment_marker = comment_marker
        self._terminator = terminator
        self._extract_fragment = extract_fragment
        self._text_decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._rolled_back = False
        self._done = False
        self._payload_count = 0
        self._dropped_lines = 0

    @property
    def done(self) -> bool:
        return self._done

    @property
    def payload_count(self) -> int:
        return self._payload_count

    @property
    def dropped_lines(self) -> int:
        return self._dropped_lines

    @property
    def pending(self) -> str:
        """Text buffered while waiting for the rest of a line."""

        return self._buffer

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        """Append a chunk and return every event it completes."""

        if self._done:
            return []
        if isinstance(chunk, str):
            text = chunk
        else:
            text = self._text_decoder.decode(bytes(chunk))
        if not text:
            return []
        self._buffer += text
        return self._drain(final=False)

    def finish(self) -> list[StreamEvent]:
        """Signal that the connection closed and flush whatever is buffered.

        Raises :class:`TransportFailed` when the stream closed before a single
        payload arrived.
        """

        if self._done:
            return []
        self._buffer += self._text_decoder.decode(b"", final=True)
        if self._buffer and not self._buffer.endswith("\n"):
            self._buffer += "\n"
        events = self._drain(final=True)
        if self._done:
            return events
        if self._payload_count == 0:
            raise TransportFailed("Stream closed before any data was received")
        self._done = True
        events.append(StreamDone(implicit=True))
        logger.debug("stream.decoder.implicit_done payloads=%s", self._payload_count)
        return events

    def decode_line(self, line: str) -> StreamFrame:
        """Classify a single line; raises :class:`MalformedFrame` on bad JSON."""

        raw = line
        if line.endswith("\r"):
            line = line[:-1]
        if not line.strip() or line.startswith(self._comment_marker):
            return StreamFrame(raw=raw, kind=FrameKind.COMMENT)
        if not line.startswith(self._data_prefix):
            return StreamFrame(raw=raw, kind=FrameKind.IGNORED)
        body = line[len(self._data_prefix):].strip()
        if body == self._terminator:
            return StreamFrame(raw=raw, kind=FrameKind.TERMINATOR)
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            raise MalformedFrame(f"Unparseable stream payload: {body[:80]!r}") from exc
        return StreamFrame(raw=raw, kind=FrameKind.DATA, payload=payload)

    def _drain(self, *, final: bool) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        retrying = self._rolled_back
        self._rolled_back = False
        while not self._done:
            newline = self._buffer.find("\n")
            if newline == -1:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]
            try:
                frame = self.decode_line(line)
            except MalformedFrame as exc:
                if final or retrying:
                    self._dropped_lines += 1
                    logger.warning("stream.decoder.frame_dropped error=%s", exc)
                    retrying = False
                    continue
                self._buffer = line + "\n" + self._buffer
                self._rolled_back = True
                logger.debug("stream.decoder.rollback chars=%s", len(line))
                break
            retrying = False

            if frame.kind is FrameKind.TERMINATOR:
                self._done = True
                self._buffer = ""
                events.append(StreamDone())
                break
            if frame.kind is not FrameKind.DATA:
                continue
            self._payload_count += 1
            fragment = self._extract_fragment(frame.payload)
            events.append(StreamDelta(text=fragment or "", payload=frame.payload))
        return events


def iter_events(chunks: Iterable[bytes | str], **options: Any) -> Iterator[StreamEvent]:
    """Decode a synchronous chunk iterable, ending with exactly one :class:`StreamDone`."""

    decoder = StreamFrameDecoder(**options)
    for chunk in chunks:
        yield from decoder.feed(chunk)
        if decoder.done:
            return
    yield from decoder.finish()


async def aiter_events(chunks: AsyncIterable[bytes | str], **options: Any) -> AsyncIterator[StreamEvent]:
    """Asynchronous counterpart of :func:`iter_events`."""

    decoder = StreamFrameDecoder(**options)
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
        if decoder.done:
            return
    for event in decoder.finish():
        yield event


__all__ = [
    "FrameKind",
    "StreamDelta",
    "StreamDone",
    "StreamEvent",
    "StreamFrame",
    "StreamFrameDecoder",
    "aiter_events",
    "extract_chat_delta",
    "iter_events",
]
