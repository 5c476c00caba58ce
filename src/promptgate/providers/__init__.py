import json
from typing import Any, ClassVar, Dict, List, Sequence

from ..errors import ProviderConfigError, UpstreamError
from ..types import (
    ChatMessage,
    CompletionOptions,
    ModelRecord,
    NormalizedChunk,
    ProviderRecord,
    Usage,
)

ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_DEFAULT_MAX_TOKENS = 4096


def _decode_frame(data: str) -> Any:
    try:
        return json.loads(data)
    except (TypeError, ValueError):
        return None


def _drop_none(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


class BaseAdapter:
    """Vendor wire knowledge for one provider type.

    Adapters are stateless; every operation receives the provider record so
    per-provider settings such as ``base_url`` are honoured.
    """

    provider_type: ClassVar[str] = ""
    default_url: ClassVar[str | None] = None

    def build_url(self, provider: ProviderRecord) -> str:
        if provider.base_url:
            return f"{provider.base_url.rstrip('/')}/chat/completions"
        if self.default_url is None:
            raise ProviderConfigError(
                f"Provider '{provider.id}' of type '{provider.type}' requires a base URL"
            )
        return self.default_url

    def build_headers(self, provider: ProviderRecord, api_key: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }

    def build_request_body(
        self,
        provider: ProviderRecord,
        model: ModelRecord,
        messages: Sequence[ChatMessage],
        options: CompletionOptions,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def parse_frame(self, provider: ProviderRecord, data: str) -> NormalizedChunk | None:
        raise NotImplementedError

    def parse_response(self, provider: ProviderRecord, data: Any) -> tuple[str, Usage]:
        raise NotImplementedError


class AnthropicAdapter(BaseAdapter):
    provider_type = "anthropic"
    default_url = "https://api.anthropic.com/v1/messages"

    def build_headers(self, provider: ProviderRecord, api_key: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def build_request_body(
        self,
        provider: ProviderRecord,
        model: ModelRecord,
        messages: Sequence[ChatMessage],
        options: CompletionOptions,
    ) -> dict[str, Any]:
        system_parts: list[str] = []
        mapped: list[dict[str, Any]] = []
        for message in messages:
            if message.role == "system":
                system_parts.append(message.text())
                continue
            mapped.append(message.to_wire())
        payload: dict[str, Any] = {
            "model": model.model_id,
            "messages": mapped,
            "system": "\n".join(system_parts) if system_parts else None,
            "max_tokens": options.max_tokens or ANTHROPIC_DEFAULT_MAX_TOKENS,
            "temperature": options.temperature,
            "top_p": options.top_p,
        }
        payload = _drop_none(payload)
        payload["stream"] = options.stream
        return payload

    def parse_frame(self, provider: ProviderRecord, data: str) -> NormalizedChunk | None:
        parsed = _decode_frame(data)
        if not isinstance(parsed, dict):
            return None
        event_type = parsed.get("type")
        delta = parsed.get("delta")
        delta = delta if isinstance(delta, dict) else {}
        if event_type == "content_block_delta":
            index = parsed.get("index")
            text = delta.get("text")
            return NormalizedChunk.build(
                chunk_id=str(index) if index is not None else "0",
                content=text if isinstance(text, str) else "",
            )
        if event_type == "message_start":
            message = parsed.get("message")
            usage = message.get("usage") if isinstance(message, dict) else None
            if not isinstance(usage, dict):
                return None
            return NormalizedChunk.build(
                usage=Usage.from_counts(usage.get("input_tokens"), usage.get("output_tokens"))
            )
        if event_type == "message_stop":
            return NormalizedChunk.build(finish_reason="stop")
        if event_type == "message_delta":
            usage = parsed.get("usage")
            if not isinstance(usage, dict):
                return None
            stop_reason = delta.get("stop_reason")
            return NormalizedChunk.build(
                finish_reason=stop_reason if isinstance(stop_reason, str) else None,
                usage=Usage.from_counts(usage.get("input_tokens"), usage.get("output_tokens")),
            )
        return None

    def parse_response(self, provider: ProviderRecord, data: Any) -> tuple[str, Usage]:
        if not isinstance(data, dict):
            raise UpstreamError("Provider returned a malformed response")
        text_parts: list[str] = []
        for block in data.get("content") or []:
            if not isinstance(block, dict) or block.get("type", "text") != "text":
                continue
            text_value = block.get("text")
            if isinstance(text_value, str):
                text_parts.append(text_value)
        usage = data.get("usage")
        usage = usage if isinstance(usage, dict) else {}
        return "".join(text_parts), Usage.from_counts(
            usage.get("input_tokens"), usage.get("output_tokens")
        )


from .openai import (  # noqa: E402
    CustomAdapter,
    GeminiAdapter,
    OpenAIAdapter,
    OpenAICompatAdapter,
    OpenRouterAdapter,
)


class AdapterRegistry:
    _ADAPTER_FACTORIES: dict[str, type[BaseAdapter]] = {
        "openai": OpenAIAdapter,
        "anthropic": AnthropicAdapter,
        "gemini": GeminiAdapter,
        "openrouter": OpenRouterAdapter,
        "custom": CustomAdapter,
    }

    def __init__(self, factories: Dict[str, type[BaseAdapter]] | None = None) -> None:
        source = factories if factories is not None else self._ADAPTER_FACTORIES
        self.adapters: Dict[str, BaseAdapter] = {
            name: factory() for name, factory in source.items()
        }

    def get(self, provider_type: str) -> BaseAdapter:
        adapter = self.adapters.get((provider_type or "").strip())
        if adapter is None:
            display_type = provider_type.strip() if provider_type and provider_type.strip() else "<missing>"
            raise ProviderConfigError(f"Unknown provider type: {display_type}")
        return adapter

    def for_provider(self, provider: ProviderRecord) -> BaseAdapter:
        return self.get(provider.type)

    def types(self) -> List[str]:
        return sorted(self.adapters)


__all__ = [
    "BaseAdapter",
    "AnthropicAdapter",
    "OpenAICompatAdapter",
    "OpenAIAdapter",
    "GeminiAdapter",
    "OpenRouterAdapter",
    "CustomAdapter",
    "AdapterRegistry",
]
