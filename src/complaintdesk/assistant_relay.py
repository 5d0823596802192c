"""Backend for the drafting assistant: relay OpenAI chat completions as ``data:`` lines."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Iterable, Iterator

from openai import OpenAI

from .errors import TransportFailed, ValidationFailed
from .observability import MetricsRecorder

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from .config import Settings

logger = logging.getLogger(__name__)

_ALLOWED_ROLES = {"user", "assistant"}
DONE_LINE = "data: [DONE]\n\n"


def encode_delta(content: str) -> str:
    """Serialise one text fragment the way the assistant stream decoder expects."""

    payload = {"choices": [{"delta": {"content": content}}]}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


class AssistantRelay:
    """Prepend the drafting prompt and stream the model's reply."""

    def __init__(
        self,
        settings: "Settings",
        *,
        client: Any | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._metrics = metrics

    def _get_client(self) -> Any:
        if self._client is None:
            if not self._settings.openai_api_key:
                raise TransportFailed("OPENAI_API_KEY must be set for the assistant relay")
            self._client = OpenAI(api_key=self._settings.openai_api_key)
        return self._client

    def build_messages(self, history: Iterable[dict[str, Any]]) -> list[dict[str, str]]:
        messages = [{"role": "system", "content": self._settings.assistant_system_prompt}]
        for item in history:
            role = str(item.get("role", "")).strip().lower()
            content = str(item.get("content") or "").strip()
            if role not in _ALLOWED_ROLES or not content:
                continue
            messages.append({"role": role, "content": content})
        if len(messages) == 1:
            raise ValidationFailed("At least one message is required")
        return messages

    def stream(self, history: Iterable[dict[str, Any]]) -> Iterator[str]:
        """Yield ``data:`` lines for each fragment, then the ``[DONE]`` terminator.

        The request is opened before the first line is yielded so that
        configuration and upstream errors surface to the caller immediately.
        """

        messages = self.build_messages(history)
        client = self._get_client()
        try:
            response = client.chat.completions.create(
                model=self._settings.openai_chat_model,
                messages=messages,
                stream=True,
            )
        except Exception as exc:
            logger.error("assistant.relay.request_failed model=%s error=%s", self._settings.openai_chat_model, exc)
            raise TransportFailed(f"Assistant model request failed: {exc}") from exc
        logger.info(
            "assistant.relay.started model=%s turns=%s",
            self._settings.openai_chat_model,
            len(messages) - 1,
        )
        return self._relay(response)

    def _relay(self, response: Iterable[Any]) -> Iterator[str]:
        fragments = 0
        try:
            for chunk in response:
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                delta = getattr(choices[0], "delta", None)
                content = getattr(delta, "content", None) if delta is not None else None
                if not content:
                    continue
                fragments += 1
                yield encode_delta(str(content))
        except Exception as exc:
            # Headers are already sent; the stream ends without the terminator.
            logger.error("assistant.relay.stream_failed fragments=%s error=%s", fragments, exc)
            if self._metrics:
                self._metrics.increment("assistant.relay.failures")
            return
        yield DONE_LINE
        logger.info("assistant.relay.completed fragments=%s", fragments)
        if self._metrics:
            self._metrics.increment("assistant.relay.completed")


__all__ = ["AssistantRelay", "DONE_LINE", "encode_delta"]
