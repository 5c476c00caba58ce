"""Upstream SSE relay.

``StreamRelay.run`` is the producer side of a request: it opens the upstream
stream, decodes ``data:`` frames, lets the provider adapter normalize each frame
and pushes the resulting chunks onto a bounded ``asyncio.Queue`` in the order
they were received. The consumer (the orchestrator) reads ``(kind, payload)``
tuples where ``kind`` is one of ``chunk``, ``error``, ``done`` or ``cancelled``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx

from .errors import UpstreamError
from .providers import BaseAdapter
from .types import ChatMessage, CompletionOptions, NormalizedChunk, ResolvedModel, Usage
from .upstream import (
    BAD_GATEWAY_STATUS,
    upstream_error_from_response,
    upstream_error_from_transport,
)

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"

RelayEvent = tuple[Literal["chunk", "error", "done", "cancelled"], Any]


class SSEDecoder:
    """Incremental ``data:`` line extractor.

    Upstream reads do not align with line boundaries, so the trailing partial
    line of every read is kept until the next one.
    """

    def __init__(self) -> None:
        self._buffer = ""

    @staticmethod
    def _payload(line: str) -> str | None:
        stripped = line.strip()
        if not stripped or stripped.startswith(":"):
            return None
        if stripped.startswith("data:"):
            return stripped[5:].lstrip()
        return None

    def feed(self, text: str) -> list[str]:
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        payloads: list[str] = []
        for line in lines:
            payload = self._payload(line)
            if payload is not None:
                payloads.append(payload)
        return payloads

    def flush(self) -> list[str]:
        remainder, self._buffer = self._buffer, ""
        payload = self._payload(remainder)
        return [payload] if payload is not None else []


@dataclass
class StreamTotals:
    content_parts: list[str] = field(default_factory=list)
    usage: Usage | None = None
    chunks: int = 0

    @property
    def content(self) -> str:
        return "".join(self.content_parts)

    def absorb(self, chunk: NormalizedChunk) -> None:
        self.chunks += 1
        content = chunk.delta_content
        if content:
            self.content_parts.append(content)
        # Last usage-bearing frame wins; vendors report cumulative totals.
        # A frame without a prompt count keeps the one reported earlier.
        usage = chunk.usage
        if usage is None:
            return
        if not usage.prompt_tokens and self.usage is not None and self.usage.prompt_tokens:
            usage = Usage.from_counts(self.usage.prompt_tokens, usage.completion_tokens)
        self.usage = usage


class StreamRelay:
    def __init__(
        self,
        client: httpx.AsyncClient,
        adapter: BaseAdapter,
        resolved: ResolvedModel,
        messages: Sequence[ChatMessage],
        options: CompletionOptions,
    ) -> None:
        self._client = client
        self._adapter = adapter
        self._provider = resolved.provider
        self.url = adapter.build_url(resolved.provider)
        self._headers = adapter.build_headers(resolved.provider, resolved.api_key)
        self.body = adapter.build_request_body(
            resolved.provider,
            resolved.model,
            messages,
            options.model_copy(update={"stream": True}),
        )

    async def run(self, queue: asyncio.Queue[RelayEvent], cancel: asyncio.Event) -> None:
        try:
            outcome = await self._relay(queue, cancel)
        except asyncio.CancelledError:
            raise
        except UpstreamError as exc:
            await queue.put(("error", exc))
        except httpx.HTTPError as exc:
            await queue.put(("error", upstream_error_from_transport(exc)))
        except Exception as exc:
            logger.exception("relay.failed provider=%s", self._provider.id)
            await queue.put(
                ("error", UpstreamError(str(exc) or "provider error", status_code=BAD_GATEWAY_STATUS))
            )
        else:
            await queue.put((outcome, None))

    async def _relay(
        self, queue: asyncio.Queue[RelayEvent], cancel: asyncio.Event
    ) -> Literal["done", "cancelled"]:
        async with self._client.stream(
            "POST", self.url, headers=self._headers, json=self.body
        ) as response:
            if response.is_error:
                await response.aread()
                raise upstream_error_from_response(response)
            decoder = SSEDecoder()
            async for text in response.aiter_text():
                if cancel.is_set():
                    return "cancelled"
                for payload in decoder.feed(text):
                    if payload == DONE_SENTINEL:
                        return "done"
                    if cancel.is_set():
                        return "cancelled"
                    await self._emit(payload, queue)
            if cancel.is_set():
                return "cancelled"
            for payload in decoder.flush():
                if payload == DONE_SENTINEL:
                    break
                await self._emit(payload, queue)
        return "done"

    async def _emit(self, payload: str, queue: asyncio.Queue[RelayEvent]) -> None:
        chunk = self._adapter.parse_frame(self._provider, payload)
        if chunk is None:
            logger.debug("relay.frame_dropped provider=%s", self._provider.id)
            return
        await queue.put(("chunk", chunk))
