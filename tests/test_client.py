import asyncio
import json
from typing import Any

import httpx
import pytest

from promptgate.client import chat_completion, iter_chat_completion, stream_chat_completion
from promptgate.config import Settings
from promptgate.errors import ErrorCode, GatewayError
from promptgate.server import create_app
from promptgate.types import CompletionResult, Usage

from tests.helpers import OWNER_ID, make_request, sse_body
from tests.test_orchestrator import HELLO_FRAMES, build, hello_handler

USER_HEADERS = {"x-user-id": OWNER_ID}


def gateway_client(handler=hello_handler, **kwargs: Any) -> tuple[httpx.AsyncClient, Any]:
    orchestrator, store, _ = build(handler, **kwargs)
    app = create_app(Settings(), orchestrator)
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://gateway")
    return client, store


def static_client(body: bytes, status_code: int = 200) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            status_code, content=body, headers={"content-type": "text/event-stream"}
        )

    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://gateway")


def test_stream_reports_chunks_and_final_usage() -> None:
    client, store = gateway_client()
    chunks: list[str] = []
    completed: list[Usage | None] = []

    async def invoke() -> Usage | None:
        async with client:
            return await stream_chat_completion(
                client,
                make_request(),
                lambda content, frame: chunks.append(content),
                on_complete=completed.append,
                headers=USER_HEADERS,
            )

    usage = asyncio.run(invoke())

    assert chunks == ["Hel", "lo"]
    assert usage is not None
    assert usage.total_tokens == 7
    assert completed == [usage]
    assert store.records[0].output == "Hello"


def test_stream_accepts_plain_payload_and_async_callbacks() -> None:
    client, _ = gateway_client()
    chunks: list[str] = []

    async def on_chunk(content: str, frame: dict[str, Any]) -> None:
        assert frame["object"] == "chat.completion.chunk"
        chunks.append(content)

    async def invoke() -> None:
        async with client:
            await stream_chat_completion(
                client,
                {
                    "modelId": str(make_request().model_id),
                    "messages": [{"role": "user", "content": "hi"}],
                },
                on_chunk,
                headers=USER_HEADERS,
            )

    asyncio.run(invoke())

    assert chunks == ["Hel", "lo"]


def test_embedded_error_frame_is_raised_and_reported() -> None:
    client, _ = gateway_client(
        lambda request: httpx.Response(429, json={"error": {"message": "rate limited"}})
    )
    errors: list[Exception] = []
    completed: list[Usage | None] = []

    async def invoke() -> None:
        async with client:
            await stream_chat_completion(
                client,
                make_request(),
                lambda content, frame: None,
                on_complete=completed.append,
                on_error=errors.append,
                headers=USER_HEADERS,
            )

    with pytest.raises(GatewayError) as excinfo:
        asyncio.run(invoke())

    assert excinfo.value.message == "rate limited"
    assert excinfo.value.status_code == 429
    assert excinfo.value.code is ErrorCode.PROVIDER_ERROR
    assert errors == [excinfo.value]
    assert completed == []


def test_missing_identity_raises_unauthorized() -> None:
    client, _ = gateway_client()

    async def invoke() -> None:
        async with client:
            await stream_chat_completion(client, make_request(), lambda content, frame: None)

    with pytest.raises(GatewayError) as excinfo:
        asyncio.run(invoke())

    assert excinfo.value.status_code == 401
    assert excinfo.value.code is ErrorCode.UNAUTHORIZED


def test_cancel_stops_quietly() -> None:
    client, store = gateway_client()
    cancel = asyncio.Event()
    chunks: list[str] = []
    completed: list[Usage | None] = []
    errors: list[Exception] = []

    def on_chunk(content: str, frame: dict[str, Any]) -> None:
        chunks.append(content)
        cancel.set()

    async def invoke() -> Usage | None:
        async with client:
            return await stream_chat_completion(
                client,
                make_request(),
                on_chunk,
                on_complete=completed.append,
                on_error=errors.append,
                cancel=cancel,
                headers=USER_HEADERS,
            )

    usage = asyncio.run(invoke())

    assert usage is None
    assert chunks == ["Hel"]
    assert completed == []
    assert errors == []


def test_comment_lines_and_unterminated_tail() -> None:
    body = sse_body(*HELLO_FRAMES[:-1])
    client = static_client(body + b": keep-alive\n\n" + f"data: {HELLO_FRAMES[0]}".encode())
    chunks: list[str] = []
    completed: list[Usage | None] = []

    async def invoke() -> None:
        async with client:
            await stream_chat_completion(
                client,
                make_request(),
                lambda content, frame: chunks.append(content),
                on_complete=completed.append,
            )

    asyncio.run(invoke())

    assert chunks == ["Hel", "lo", "Hel"]
    assert completed[0] is not None
    assert completed[0].prompt_tokens == 5


def test_malformed_frame_is_skipped() -> None:
    client = static_client(sse_body(HELLO_FRAMES[0], "{not json", HELLO_FRAMES[1], "[DONE]"))

    async def invoke() -> list[str]:
        async with client:
            return [content async for content in iter_chat_completion(client, make_request())]

    assert asyncio.run(invoke()) == ["Hel", "lo"]


def test_iter_raises_on_error_frame_after_content() -> None:
    error_frame = json.dumps(
        {"error": {"code": "PROVIDER_ERROR", "message": "connection reset", "status": 502}}
    )
    client = static_client(sse_body(HELLO_FRAMES[0], error_frame, "[DONE]"))
    received: list[str] = []

    async def invoke() -> None:
        async with client:
            async for content in iter_chat_completion(client, make_request()):
                received.append(content)

    with pytest.raises(GatewayError) as excinfo:
        asyncio.run(invoke())

    assert received == ["Hel"]
    assert excinfo.value.status_code == 502
    assert excinfo.value.message == "connection reset"


def test_chat_completion_returns_result() -> None:
    client, store = gateway_client()

    async def invoke() -> CompletionResult:
        async with client:
            return await chat_completion(client, make_request(), headers=USER_HEADERS)

    result = asyncio.run(invoke())

    assert result.content == "Hello"
    assert (result.usage.prompt_tokens, result.usage.completion_tokens) == (5, 2)
    assert result.latency_ms >= 0
    assert store.records[0].status == "success"


def test_chat_completion_error_without_json_body() -> None:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(502, text="bad gateway")),
        base_url="http://gateway",
    )

    async def invoke() -> None:
        async with client:
            await chat_completion(client, make_request())

    with pytest.raises(GatewayError) as excinfo:
        asyncio.run(invoke())

    assert excinfo.value.message == "HTTP 502"
    assert excinfo.value.status_code == 502
