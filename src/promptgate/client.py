"""Async consumer for ``POST /chat/completions``.

``stream_chat_completion`` reads the gateway's SSE stream and reports content
deltas through callbacks; ``iter_chat_completion`` exposes the same stream as
an async iterator of content strings. ``chat_completion`` covers the
non-streaming mode. Every error the gateway reports, either as a non-2xx JSON
body or as an ``error`` frame inside the stream, is raised as
:class:`GatewayError`.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import AsyncIterator, Callable, Mapping
from typing import Any

import httpx

from .errors import GatewayError
from .relay import DONE_SENTINEL, SSEDecoder
from .types import ChatCompletionRequest, CompletionResult, Usage

logger = logging.getLogger(__name__)

CHAT_PATH = "/chat/completions"

ChunkCallback = Callable[[str, dict[str, Any]], Any]
CompleteCallback = Callable[[Usage | None], Any]
ErrorCallback = Callable[[Exception], Any]

RequestPayload = ChatCompletionRequest | Mapping[str, Any]


def _request_body(payload: RequestPayload, *, stream: bool) -> dict[str, Any]:
    if isinstance(payload, ChatCompletionRequest):
        body = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
    else:
        body = dict(payload)
    body["stream"] = stream
    return body


def _error_from_response(response: httpx.Response) -> GatewayError:
    try:
        body = response.json()
    except ValueError:
        body = None
    error = body.get("error") if isinstance(body, dict) else None
    return GatewayError.from_payload(error, status_code=response.status_code)


async def _call(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


def _frame_content(frame: dict[str, Any]) -> str | None:
    choices = frame.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) and content else None


def _frame_usage(frame: dict[str, Any]) -> Usage | None:
    usage = frame.get("usage")
    if not isinstance(usage, dict):
        return None
    return Usage.model_validate(usage)


def _decode_frame(data: str) -> dict[str, Any] | None:
    try:
        frame = json.loads(data)
    except ValueError:
        logger.debug("client.frame_unparsable data=%r", data[:200])
        return None
    if not isinstance(frame, dict):
        return None
    if "error" in frame:
        raise GatewayError.from_payload(frame["error"])
    return frame


async def _iter_frames(
    client: httpx.AsyncClient,
    payload: RequestPayload,
    *,
    headers: Mapping[str, str] | None,
    path: str,
) -> AsyncIterator[dict[str, Any]]:
    body = _request_body(payload, stream=True)
    async with client.stream("POST", path, json=body, headers=headers) as response:
        if response.is_error:
            await response.aread()
            raise _error_from_response(response)
        decoder = SSEDecoder()
        async for text in response.aiter_text():
            for data in decoder.feed(text):
                if data == DONE_SENTINEL:
                    return
                frame = _decode_frame(data)
                if frame is not None:
                    yield frame
        for data in decoder.flush():
            if data == DONE_SENTINEL:
                return
            frame = _decode_frame(data)
            if frame is not None:
                yield frame


async def stream_chat_completion(
    client: httpx.AsyncClient,
    payload: RequestPayload,
    on_chunk: ChunkCallback,
    *,
    on_complete: CompleteCallback | None = None,
    on_error: ErrorCallback | None = None,
    cancel: asyncio.Event | None = None,
    headers: Mapping[str, str] | None = None,
    path: str = CHAT_PATH,
) -> Usage | None:
    """Stream one completion and return the last usage the gateway reported.

    ``on_chunk`` receives every non-empty content delta together with the
    decoded frame. ``on_complete`` runs once with the last usage when the
    stream ends, whether through ``data: [DONE]`` or the end of the body.
    Setting ``cancel`` stops reading quietly: neither ``on_complete`` nor
    ``on_error`` is called and ``None`` is returned. Any other failure is
    passed to ``on_error`` and re-raised.
    """
    if cancel is not None and cancel.is_set():
        return None
    last_usage: Usage | None = None
    frames = _iter_frames(client, payload, headers=headers, path=path)
    try:
        async for frame in frames:
            if cancel is not None and cancel.is_set():
                logger.debug("client.stream_cancelled")
                return None
            usage = _frame_usage(frame)
            if usage is not None:
                last_usage = usage
            content = _frame_content(frame)
            if content is not None:
                await _call(on_chunk, content, frame)
        if cancel is not None and cancel.is_set():
            return None
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        await _call(on_error, exc)
        raise
    finally:
        await frames.aclose()
    await _call(on_complete, last_usage)
    return last_usage


async def iter_chat_completion(
    client: httpx.AsyncClient,
    payload: RequestPayload,
    *,
    headers: Mapping[str, str] | None = None,
    path: str = CHAT_PATH,
) -> AsyncIterator[str]:
    """Yield content deltas of one streamed completion."""
    frames = _iter_frames(client, payload, headers=headers, path=path)
    try:
        async for frame in frames:
            content = _frame_content(frame)
            if content is not None:
                yield content
    finally:
        await frames.aclose()


async def chat_completion(
    client: httpx.AsyncClient,
    payload: RequestPayload,
    *,
    headers: Mapping[str, str] | None = None,
    path: str = CHAT_PATH,
) -> CompletionResult:
    response = await client.post(path, json=_request_body(payload, stream=False), headers=headers)
    if response.is_error:
        raise _error_from_response(response)
    try:
        body = response.json()
    except ValueError as exc:
        raise GatewayError(
            "Gateway returned a non-JSON response", status_code=response.status_code
        ) from exc
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict):
        raise GatewayError("Gateway response has no data", status_code=response.status_code)
    return CompletionResult.model_validate(data)


__all__ = [
    "CHAT_PATH",
    "stream_chat_completion",
    "iter_chat_completion",
    "chat_completion",
]
