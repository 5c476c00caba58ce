"""Chat completion lifecycle: resolve, relay or call once, finalize once."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

import anyio
import httpx

from .catalog import ModelCatalog
from .crypto import CredentialDecryptor
from .errors import (
    CredentialError,
    ForbiddenError,
    GatewayError,
    NotFoundError,
    ProviderDisabledError,
    UpstreamError,
)
from .metrics import MetricsRegistry
from .providers import AdapterRegistry
from .relay import RelayEvent, StreamRelay, StreamTotals
from .traces import TraceRecorder
from .types import (
    ChatCompletionRequest,
    ChatMessage,
    CompletionResult,
    ResolvedModel,
    TextPart,
    Usage,
)
from .upstream import BAD_GATEWAY_STATUS, post_json

logger = logging.getLogger(__name__)

DONE_FRAME = b"data: [DONE]\n\n"
IMAGE_PLACEHOLDER = "[image]"
CANCELLED_MESSAGE = "cancelled by client"
EMPTY_RESPONSE_MESSAGE = "Provider returned no content"

DisconnectCheck = Callable[[], Awaitable[bool]]


def encode_frame(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def summarize_input(messages: Sequence[ChatMessage]) -> str:
    rendered: list[str] = []
    for message in messages:
        if isinstance(message.content, str):
            rendered.append(message.content)
            continue
        parts = [
            part.text if isinstance(part, TextPart) else IMAGE_PLACEHOLDER
            for part in message.content
        ]
        rendered.append(" ".join(parts))
    return "\n".join(rendered)


def _log_request_event(
    level: int,
    *,
    event: str,
    req_id: str,
    provider: str | None,
    detail: str | None = None,
) -> None:
    provider_value = provider or "unknown"
    message = f"{event} req_id={req_id} provider={provider_value}"
    if detail:
        message = f"{message} {detail}"
    logger.log(level, message)


@dataclass
class _RequestState:
    req_id: str
    user_id: str
    request: ChatCompletionRequest
    resolved: ResolvedModel
    start: float
    finalized: bool = False

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.start) * 1000)


class CompletionOrchestrator:
    def __init__(
        self,
        catalog: ModelCatalog,
        decryptor: CredentialDecryptor,
        recorder: TraceRecorder,
        *,
        client: httpx.AsyncClient,
        adapters: AdapterRegistry | None = None,
        metrics: MetricsRegistry | None = None,
        queue_size: int = 64,
        trace_partial_on_cancel: bool = True,
    ) -> None:
        self.catalog = catalog
        self.decryptor = decryptor
        self.recorder = recorder
        self.client = client
        self.adapters = adapters or AdapterRegistry()
        self.metrics = metrics or MetricsRegistry()
        self.queue_size = max(int(queue_size), 1)
        self.trace_partial_on_cancel = trace_partial_on_cancel

    def resolve(self, user_id: str, model_id: str) -> ResolvedModel:
        model = self.catalog.get_model(model_id)
        provider = self.catalog.get_provider(model.provider_id) if model is not None else None
        if model is None or provider is None:
            raise NotFoundError("Model not found")
        if provider.user_id != user_id:
            raise ForbiddenError("Access denied to this model")
        if not provider.enabled:
            raise ProviderDisabledError("Provider is not enabled")
        self.adapters.for_provider(provider).build_url(provider)
        try:
            api_key = self.decryptor.decrypt(provider.api_key_encrypted)
        except CredentialError:
            raise
        except Exception as exc:
            raise CredentialError("Failed to decrypt provider credential") from exc
        return ResolvedModel(provider=provider, model=model, api_key=api_key)

    def _begin(
        self,
        user_id: str,
        request: ChatCompletionRequest,
        resolved: ResolvedModel,
        req_id: str | None,
    ) -> _RequestState:
        state = _RequestState(
            req_id=req_id or uuid.uuid4().hex,
            user_id=user_id,
            request=request,
            resolved=resolved,
            start=time.perf_counter(),
        )
        _log_request_event(
            logging.INFO,
            event="chat.start",
            req_id=state.req_id,
            provider=resolved.provider.type,
            detail=f"model={resolved.model.model_id} stream={request.stream}",
        )
        return state

    async def stream(
        self,
        user_id: str,
        request: ChatCompletionRequest,
        resolved: ResolvedModel,
        *,
        cancel: asyncio.Event | None = None,
        is_disconnected: DisconnectCheck | None = None,
        req_id: str | None = None,
    ) -> AsyncIterator[bytes]:
        """Relay one upstream stream as SSE frames.

        The generator ends with ``data: [DONE]`` unless the request was
        cancelled, either through ``cancel``, ``is_disconnected`` or by the
        consumer closing the generator early.
        """
        state = self._begin(user_id, request, resolved, req_id)
        cancel = cancel if cancel is not None else asyncio.Event()
        adapter = self.adapters.for_provider(resolved.provider)
        relay = StreamRelay(
            self.client,
            adapter,
            resolved,
            request.messages,
            request.options(stream=True),
        )
        queue: asyncio.Queue[RelayEvent] = asyncio.Queue(maxsize=self.queue_size)
        producer = asyncio.create_task(relay.run(queue, cancel))
        delivered = StreamTotals()
        error: GatewayError | None = None
        cancelled = False
        completed = False
        try:
            while True:
                kind, payload = await queue.get()
                if kind == "chunk":
                    delivered.absorb(payload)
                    yield encode_frame(payload.to_wire())
                    if is_disconnected is not None and await is_disconnected():
                        cancel.set()
                        cancelled = True
                        break
                elif kind == "error":
                    error = payload
                    break
                elif kind == "cancelled":
                    cancelled = True
                    break
                else:
                    break
            if not cancelled:
                if error is not None:
                    error_payload = error.to_payload()
                    error_payload["status"] = error.status_code
                    yield encode_frame({"error": error_payload})
                yield DONE_FRAME
                completed = True
        finally:
            if not completed:
                cancelled = True
                cancel.set()
            with anyio.CancelScope(shield=True):
                if not producer.done():
                    producer.cancel()
                try:
                    await producer
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.exception("relay.cleanup_failed req_id=%s", state.req_id)
                await self._finalize(
                    state,
                    content=delivered.content,
                    usage=delivered.usage,
                    error_message=error.message if error is not None else None,
                    cancelled=cancelled,
                )

    async def complete(
        self,
        user_id: str,
        request: ChatCompletionRequest,
        resolved: ResolvedModel,
        *,
        req_id: str | None = None,
    ) -> CompletionResult:
        state = self._begin(user_id, request, resolved, req_id)
        provider = resolved.provider
        adapter = self.adapters.for_provider(provider)
        try:
            data = await post_json(
                self.client,
                adapter.build_url(provider),
                headers=adapter.build_headers(provider, resolved.api_key),
                body=adapter.build_request_body(
                    provider, resolved.model, request.messages, request.options(stream=False)
                ),
            )
            content, usage = adapter.parse_response(provider, data)
        except asyncio.CancelledError:
            with anyio.CancelScope(shield=True):
                await self._finalize(state, content="", usage=None, error_message=None, cancelled=True)
            raise
        except GatewayError as exc:
            await self._finalize(state, content="", usage=None, error_message=exc.message, cancelled=False)
            raise
        except Exception as exc:
            await self._finalize(
                state, content="", usage=None, error_message=str(exc) or "provider error", cancelled=False
            )
            raise UpstreamError(str(exc) or "provider error", status_code=BAD_GATEWAY_STATUS) from exc
        latency_ms = state.elapsed_ms()
        await self._finalize(
            state,
            content=content,
            usage=usage,
            error_message=None,
            cancelled=False,
            latency_ms=latency_ms,
        )
        return CompletionResult(content=content, usage=usage, latency_ms=latency_ms)

    async def _finalize(
        self,
        state: _RequestState,
        *,
        content: str,
        usage: Usage | None,
        error_message: str | None,
        cancelled: bool,
        latency_ms: int | None = None,
    ) -> None:
        if state.finalized:
            return
        state.finalized = True
        latency = latency_ms if latency_ms is not None else state.elapsed_ms()
        provider = state.resolved.provider
        status = "success" if content else "error"
        if cancelled:
            self.metrics.record(provider=provider.type, status="cancelled", latency_ms=latency)
            _log_request_event(
                logging.INFO,
                event="chat.cancelled",
                req_id=state.req_id,
                provider=provider.type,
                detail=f"latency_ms={latency} content_chars={len(content)}",
            )
            if not content or not self.trace_partial_on_cancel:
                return
            error_message = CANCELLED_MESSAGE
        else:
            if status == "error" and error_message is None:
                error_message = EMPTY_RESPONSE_MESSAGE
            self.metrics.record(provider=provider.type, status=status, latency_ms=latency)
            _log_request_event(
                logging.INFO if status == "success" else logging.WARNING,
                event="chat.finish",
                req_id=state.req_id,
                provider=provider.type,
                detail=f"status={status} latency_ms={latency}"
                + (f" error={error_message}" if error_message else ""),
            )
        if not state.request.save_trace:
            return
        usage = usage or Usage()
        request = state.request
        await self.recorder.record(
            user_id=state.user_id,
            prompt_id=str(request.prompt_id) if request.prompt_id is not None else None,
            model_id=state.resolved.model.id,
            input=summarize_input(request.messages),
            output=content or None,
            tokens_input=usage.prompt_tokens,
            tokens_output=usage.completion_tokens,
            latency_ms=latency,
            status=status,
            error_message=error_message,
        )
