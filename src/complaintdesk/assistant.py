"""Client-side drafting assistant: one streamed turn at a time over httpx."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable

import httpx

from .errors import AssistantBusy, TransportFailed, ValidationFailed
from .observability import MetricsRecorder
from .stream_decoder import StreamDelta, StreamDone, StreamFrameDecoder

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from .config import Settings

logger = logging.getLogger(__name__)

GREETING = "Hi! I'm here to help you draft your complaint. What seems to be the issue?"
FALLBACK_MESSAGE = "Sorry, I encountered an error. Please try again."

UpdateCallback = Callable[[str], None]


class AssistantState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


_BUSY_STATES = {AssistantState.SENDING, AssistantState.STREAMING}


@dataclass(slots=True)
class ChatTurn:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class AssistantStreamSession:
    """Conversation with the drafting assistant.

    Each :meth:`send` posts the whole history plus the new user turn and grows
    a single assistant turn as fragments arrive. Failures append one fallback
    message and are never retried automatically. :meth:`cancel` aborts the
    turn in flight and keeps whatever text already arrived.
    """

    def __init__(
        self,
        url: str,
        *,
        api_key: str | None = None,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
        metrics: MetricsRecorder | None = None,
        greeting: str = GREETING,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._metrics = metrics
        self._history: list[ChatTurn] = [ChatTurn("assistant", greeting)]
        self._state = AssistantState.IDLE
        self._task: asyncio.Future | None = None
        self._cancel_requested = False
        self.last_error: str | None = None

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        *,
        client: httpx.AsyncClient | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> "AssistantStreamSession":
        return cls(
            settings.assistant_url,
            api_key=settings.assistant_api_key,
            timeout=settings.assistant_timeout,
            client=client,
            metrics=metrics,
        )

    @property
    def state(self) -> AssistantState:
        return self._state

    @property
    def history(self) -> list[ChatTurn]:
        return [ChatTurn(turn.role, turn.content) for turn in self._history]

    @property
    def busy(self) -> bool:
        return self._state in _BUSY_STATES

    async def send(self, text: str, on_update: UpdateCallback | None = None) -> ChatTurn:
        """Send a user turn and stream the reply; returns the final assistant turn."""

        if self.busy:
            raise AssistantBusy("A reply is already being generated")
        content = (text or "").strip()
        if not content:
            raise ValidationFailed("Message cannot be empty")

        self._history.append(ChatTurn("user", content))
        payload = {"messages": [turn.to_dict() for turn in self._history]}
        reply = ChatTurn("assistant", "")
        self.last_error = None
        self._cancel_requested = False
        self._state = AssistantState.SENDING
        start = time.perf_counter()
        logger.info("assistant.turn.started turns=%s", len(payload["messages"]))

        task = asyncio.ensure_future(self._stream_reply(payload, reply, on_update))
        self._task = task
        try:
            fragments = await task
        except asyncio.CancelledError:
            self._state = AssistantState.CANCELLED
            if not reply.content and reply in self._history:
                self._history.remove(reply)
            logger.info("assistant.turn.cancelled chars=%s", len(reply.content))
            self._record("cancelled", start)
            if self._cancel_requested:
                return reply
            raise
        except (httpx.HTTPError, TransportFailed) as exc:
            return self._fail(reply, exc, start)
        except Exception as exc:
            logger.exception("assistant.turn.unexpected_error")
            return self._fail(reply, exc, start)
        finally:
            self._task = None
            self._cancel_requested = False

        if fragments == 0:
            return self._fail(reply, TransportFailed("Assistant reply contained no text"), start)
        self._state = AssistantState.DONE
        logger.info("assistant.turn.completed fragments=%s chars=%s", fragments, len(reply.content))
        self._record("done", start)
        return reply

    def cancel(self) -> bool:
        """Abort the turn in flight; returns ``False`` when nothing was running.

        Only the session's own streaming task is cancelled. The pending
        :meth:`send` returns the partial reply instead of raising.
        """

        task = self._task
        if not self.busy or task is None or task.done():
            return False
        self._cancel_requested = True
        task.cancel()
        return True

    async def aclose(self) -> None:
        self.cancel()
        if self._owns_client:
            await self._client.aclose()

    async def _stream_reply(
        self,
        payload: dict,
        reply: ChatTurn,
        on_update: UpdateCallback | None,
    ) -> int:
        headers = {"Accept": "text/event-stream"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        fragments = 0
        async with self._client.stream("POST", self._url, json=payload, headers=headers) as response:
            if not response.is_success:
                raise TransportFailed(f"Assistant backend returned HTTP {response.status_code}")
            self._history.append(reply)
            self._state = AssistantState.STREAMING
            decoder = StreamFrameDecoder()
            async for chunk in response.aiter_bytes():
                for event in decoder.feed(chunk):
                    fragments += self._apply(event, reply, on_update)
                if decoder.done:
                    break
            if not decoder.done:
                for event in decoder.finish():
                    fragments += self._apply(event, reply, on_update)
        return fragments

    def _apply(self, event: StreamDelta | StreamDone, reply: ChatTurn, on_update: UpdateCallback | None) -> int:
        if not isinstance(event, StreamDelta) or not event.text:
            return 0
        reply.content += event.text
        if on_update is not None:
            try:
                on_update(reply.content)
            except Exception:  # pragma: no cover - defensive guard
                logger.exception("assistant.on_update.failed")
        return 1

    def _fail(self, reply: ChatTurn, exc: Exception, start: float) -> ChatTurn:
        self._state = AssistantState.FAILED
        self.last_error = str(exc)
        if not reply.content and reply in self._history:
            self._history.remove(reply)
        fallback = ChatTurn("assistant", FALLBACK_MESSAGE)
        self._history.append(fallback)
        logger.warning("assistant.turn.failed error=%s", exc)
        self._record("failed", start)
        return fallback

    def _record(self, outcome: str, start: float) -> None:
        if self._metrics:
            self._metrics.record_timing("assistant.turn", time.perf_counter() - start, outcome=outcome)


__all__ = [
    "AssistantState",
    "AssistantStreamSession",
    "ChatTurn",
    "FALLBACK_MESSAGE",
    "GREETING",
]
