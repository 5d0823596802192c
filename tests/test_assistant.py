from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from complaintdesk.assistant import (
    FALLBACK_MESSAGE,
    GREETING,
    AssistantState,
    AssistantStreamSession,
)
from complaintdesk.config import Settings
from complaintdesk.errors import AssistantBusy, ValidationFailed

URL = "http://assistant.test/chat"


def _sse(*fragments: str, done: bool = True) -> bytes:
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": fragment}}]}) + "\n\n"
        for fragment in fragments
    ]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def _session(handler, **kwargs) -> AssistantStreamSession:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AssistantStreamSession(URL, client=client, **kwargs)


@pytest.mark.asyncio
async def test_send_streams_reply_and_posts_history() -> None:
    seen = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, content=_sse("Could you ", "describe ", "the issue?"))

    session = _session(handler, api_key="secret")
    updates = []

    reply = await session.send("  The wifi is down  ", on_update=updates.append)

    assert reply.content == "Could you describe the issue?"
    assert updates == ["Could you ", "Could you describe ", "Could you describe the issue?"]
    assert session.state is AssistantState.DONE
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["messages"] == [
        {"role": "assistant", "content": GREETING},
        {"role": "user", "content": "The wifi is down"},
    ]
    assert [turn.role for turn in session.history] == ["assistant", "user", "assistant"]


@pytest.mark.asyncio
async def test_second_turn_carries_full_history() -> None:
    bodies = []

    async def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, content=_sse("ok"))

    session = _session(handler)
    await session.send("first")
    await session.send("second")

    assert [item["content"] for item in bodies[1]["messages"]] == [GREETING, "first", "ok", "second"]


@pytest.mark.asyncio
async def test_stream_without_terminator_still_completes() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_sse("Hello", done=False))

    session = _session(handler)
    reply = await session.send("hi")

    assert reply.content == "Hello"
    assert session.state is AssistantState.DONE


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, content=b"upstream failure"),
        httpx.Response(200, content=b""),
        httpx.Response(200, content=b": nothing but comments\n\n"),
        httpx.Response(200, content=_sse("")),
    ],
)
async def test_failures_append_single_fallback(response) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return response

    session = _session(handler)
    reply = await session.send("help")

    assert reply.content == FALLBACK_MESSAGE
    assert session.state is AssistantState.FAILED
    assert [turn.content for turn in session.history] == [GREETING, "help", FALLBACK_MESSAGE]


@pytest.mark.asyncio
async def test_transport_error_fails_without_retry() -> None:
    calls = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("refused", request=request)

    session = _session(handler)
    reply = await session.send("help")

    assert reply.content == FALLBACK_MESSAGE
    assert session.state is AssistantState.FAILED
    assert len(calls) == 1
    assert session.last_error


@pytest.mark.asyncio
async def test_blank_text_rejected() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - never called
        return httpx.Response(200, content=_sse("x"))

    session = _session(handler)
    with pytest.raises(ValidationFailed):
        await session.send("   ")
    assert session.state is AssistantState.IDLE
    assert len(session.history) == 1


@pytest.mark.asyncio
async def test_send_while_streaming_is_rejected_and_cancel_keeps_partial() -> None:
    release = asyncio.Event()
    first_chunk_seen = asyncio.Event()

    async def body():
        yield _sse("Partial ", done=False)
        await release.wait()
        yield _sse("never")

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body())

    session = _session(handler)
    task = asyncio.create_task(session.send("hello", on_update=lambda text: first_chunk_seen.set()))
    await asyncio.wait_for(first_chunk_seen.wait(), timeout=1.0)

    assert session.state is AssistantState.STREAMING
    with pytest.raises(AssistantBusy):
        await session.send("again")

    assert session.cancel() is True
    reply = await task

    assert not task.cancelled()
    assert reply.content == "Partial "
    assert session.state is AssistantState.CANCELLED
    assert session.history[-1].content == "Partial "
    assert session.cancel() is False
    release.set()


@pytest.mark.asyncio
async def test_cancelling_the_caller_cancels_the_turn() -> None:
    started = asyncio.Event()

    async def body():
        started.set()
        yield _sse("Partial ", done=False)
        await asyncio.Event().wait()

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body())

    session = _session(handler)
    task = asyncio.create_task(session.send("hello"))
    await asyncio.wait_for(started.wait(), timeout=1.0)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert session.state is AssistantState.CANCELLED
    assert session.busy is False


@pytest.mark.asyncio
async def test_unexpected_transport_error_fails_and_session_recovers() -> None:
    calls = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            raise RuntimeError("boom")
        return httpx.Response(200, content=_sse("Recovered"))

    session = _session(handler)

    failed = await session.send("help")
    assert failed.content == FALLBACK_MESSAGE
    assert session.state is AssistantState.FAILED
    assert session.last_error == "boom"

    reply = await session.send("try again")
    assert reply.content == "Recovered"
    assert session.state is AssistantState.DONE


@pytest.mark.asyncio
async def test_from_settings_uses_assistant_configuration() -> None:
    seen = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, content=_sse("ok"))

    settings = Settings(
        assistant_url="http://desk.test/assistant/chat",
        assistant_api_key="desk-key",
        assistant_timeout=5.0,
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    session = AssistantStreamSession.from_settings(settings, client=client)

    await session.send("hi")

    assert seen == {"url": "http://desk.test/assistant/chat", "auth": "Bearer desk-key"}
    assert session._timeout == 5.0
