from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from pydantic import ValidationError

from ..errors import UpstreamError
from ..types import (
    ChatMessage,
    CompletionOptions,
    ModelRecord,
    NormalizedChunk,
    ProviderRecord,
    Usage,
)
from . import BaseAdapter, _decode_frame, _drop_none


class OpenAICompatAdapter(BaseAdapter):
    """Vendors speaking the OpenAI ``/chat/completions`` dialect."""

    def build_request_body(
        self,
        provider: ProviderRecord,
        model: ModelRecord,
        messages: Sequence[ChatMessage],
        options: CompletionOptions,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model.model_id,
            "messages": [message.to_wire() for message in messages],
            "temperature": options.temperature,
            "top_p": options.top_p,
            "max_tokens": options.max_tokens,
            "frequency_penalty": options.frequency_penalty,
            "presence_penalty": options.presence_penalty,
        }
        payload = _drop_none(payload)
        payload["stream"] = options.stream
        return payload

    def parse_frame(self, provider: ProviderRecord, data: str) -> NormalizedChunk | None:
        parsed = _decode_frame(data)
        if not isinstance(parsed, dict):
            return None
        try:
            return NormalizedChunk.model_validate(parsed)
        except ValidationError:
            return self._salvage_frame(parsed)

    @staticmethod
    def _salvage_frame(parsed: dict[str, Any]) -> NormalizedChunk | None:
        """Keep the text and finish reason of a frame with off-schema fields."""
        choices = parsed.get("choices")
        first = choices[0] if isinstance(choices, list) and choices else None
        if not isinstance(first, dict):
            return None
        delta = first.get("delta")
        content = delta.get("content") if isinstance(delta, dict) else None
        finish_reason = first.get("finish_reason")
        if not isinstance(content, str) and not isinstance(finish_reason, str):
            return None
        chunk_id = parsed.get("id")
        return NormalizedChunk.build(
            chunk_id=str(chunk_id) if chunk_id is not None else "0",
            content=content if isinstance(content, str) else None,
            finish_reason=finish_reason if isinstance(finish_reason, str) else None,
        )

    @staticmethod
    def _message_text(content: Any) -> str:
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for block in content:
                if isinstance(block, dict) and isinstance(block.get("text"), str):
                    parts.append(block["text"])
            return "".join(parts)
        return ""

    def parse_response(self, provider: ProviderRecord, data: Any) -> tuple[str, Usage]:
        if not isinstance(data, dict):
            raise UpstreamError("Provider returned a malformed response")
        choices = data.get("choices") or []
        first_choice = choices[0] if choices and isinstance(choices[0], dict) else {}
        message = first_choice.get("message")
        content = self._message_text(message.get("content")) if isinstance(message, dict) else ""
        usage = data.get("usage")
        usage = usage if isinstance(usage, dict) else {}
        return content, Usage.from_counts(
            usage.get("prompt_tokens"), usage.get("completion_tokens")
        )


class OpenAIAdapter(OpenAICompatAdapter):
    provider_type = "openai"
    default_url = "https://api.openai.com/v1/chat/completions"


class GeminiAdapter(OpenAICompatAdapter):
    provider_type = "gemini"
    default_url = "https://generativelanguage.googleapis.com/v1beta/openai/chat/completions"


class OpenRouterAdapter(OpenAICompatAdapter):
    provider_type = "openrouter"
    default_url = "https://openrouter.ai/api/v1/chat/completions"


class CustomAdapter(OpenAICompatAdapter):
    provider_type = "custom"
