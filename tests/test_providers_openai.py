import json

import pytest

from promptgate.errors import ProviderConfigError, UpstreamError
from promptgate.providers import (
    AdapterRegistry,
    CustomAdapter,
    GeminiAdapter,
    OpenAIAdapter,
    OpenRouterAdapter,
)
from promptgate.types import ChatMessage, CompletionOptions

from tests.helpers import make_model, make_provider


@pytest.mark.parametrize(
    ("adapter", "provider_type", "expected"),
    [
        (OpenAIAdapter(), "openai", "https://api.openai.com/v1/chat/completions"),
        (
            GeminiAdapter(),
            "gemini",
            "https://generativelanguage.googleapis.com/v1beta/openai/chat/completions",
        ),
        (OpenRouterAdapter(), "openrouter", "https://openrouter.ai/api/v1/chat/completions"),
    ],
)
def test_default_urls(adapter, provider_type: str, expected: str) -> None:
    assert adapter.build_url(make_provider(provider_type)) == expected


def test_base_url_trailing_slash_is_trimmed() -> None:
    provider = make_provider("openai", base_url="https://proxy.example.com/v1/")

    assert OpenAIAdapter().build_url(provider) == "https://proxy.example.com/v1/chat/completions"


def test_custom_without_base_url_is_a_config_error() -> None:
    with pytest.raises(ProviderConfigError) as excinfo:
        CustomAdapter().build_url(make_provider("custom"))

    assert excinfo.value.status_code == 400
    assert excinfo.value.code.value == "PROVIDER_ERROR"


def test_custom_with_base_url() -> None:
    provider = make_provider("custom", base_url="http://localhost:8080/v1")

    assert CustomAdapter().build_url(provider) == "http://localhost:8080/v1/chat/completions"


def test_bearer_headers() -> None:
    headers = OpenAIAdapter().build_headers(make_provider(), "sk-live")

    assert headers == {"Content-Type": "application/json", "Authorization": "Bearer sk-live"}


def test_request_body_omits_unset_options_and_keeps_messages() -> None:
    provider = make_provider()
    messages = [
        ChatMessage(role="system", content="Be brief"),
        ChatMessage(
            role="user",
            content=[
                {"type": "text", "text": "What is this?"},
                {"type": "image_url", "image_url": {"url": "https://img.example/cat.png"}},
            ],
        ),
    ]

    body = OpenAIAdapter().build_request_body(
        provider,
        make_model(provider, "gpt-4o-mini"),
        messages,
        CompletionOptions(temperature=0.3, max_tokens=100, stream=False),
    )

    assert body == {
        "model": "gpt-4o-mini",
        "messages": [
            {"role": "system", "content": "Be brief"},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "What is this?"},
                    {"type": "image_url", "image_url": {"url": "https://img.example/cat.png"}},
                ],
            },
        ],
        "temperature": 0.3,
        "max_tokens": 100,
        "stream": False,
    }


def test_parse_frame_preserves_upstream_fields() -> None:
    frame = {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 1700000000,
        "model": "gpt-4o",
        "system_fingerprint": "fp_abc",
        "choices": [{"index": 0, "delta": {"content": "Hel"}, "finish_reason": None}],
    }

    chunk = OpenAIAdapter().parse_frame(make_provider(), json.dumps(frame))

    assert chunk is not None
    assert chunk.delta_content == "Hel"
    assert chunk.to_wire() == frame


def test_parse_frame_usage_only_frame() -> None:
    frame = {
        "id": "chatcmpl-1",
        "choices": [],
        "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
    }

    chunk = OpenAIAdapter().parse_frame(make_provider(), json.dumps(frame))

    assert chunk is not None
    assert chunk.delta_content is None
    assert chunk.usage is not None
    assert chunk.usage.total_tokens == 7


@pytest.mark.parametrize("data", ["{not json", "[1, 2]", '{"choices": "nope"}', ""])
def test_parse_frame_rejects_garbage(data: str) -> None:
    assert OpenAIAdapter().parse_frame(make_provider(), data) is None


def test_parse_response_content_and_usage() -> None:
    content, usage = OpenAIAdapter().parse_response(
        make_provider(),
        {
            "choices": [{"message": {"role": "assistant", "content": "Hello"}}],
            "usage": {"prompt_tokens": 5, "completion_tokens": 2},
        },
    )

    assert content == "Hello"
    assert usage.prompt_tokens == 5
    assert usage.completion_tokens == 2
    assert usage.total_tokens == usage.prompt_tokens + usage.completion_tokens


def test_parse_response_without_usage_defaults_to_zero() -> None:
    content, usage = OpenAIAdapter().parse_response(
        make_provider(), {"choices": [{"message": {"content": "ok"}}]}
    )

    assert content == "ok"
    assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (0, 0, 0)


def test_parse_response_rejects_non_object() -> None:
    with pytest.raises(UpstreamError):
        OpenAIAdapter().parse_response(make_provider(), ["nope"])


def test_registry_lookup_and_unknown_type() -> None:
    registry = AdapterRegistry()

    assert registry.types() == ["anthropic", "custom", "gemini", "openai", "openrouter"]
    assert isinstance(registry.get("gemini"), GeminiAdapter)
    with pytest.raises(ProviderConfigError) as excinfo:
        registry.get("ollama")
    assert "Unknown provider type: ollama" in excinfo.value.message


def test_parse_frame_tolerates_null_fields() -> None:
    frame = {
        "id": None,
        "object": None,
        "created": None,
        "model": None,
        "choices": [
            {"index": None, "delta": {"content": "lo"}, "finish_reason": None},
            {"index": 1, "delta": None, "finish_reason": "stop"},
        ],
    }

    chunk = OpenAIAdapter().parse_frame(make_provider(), json.dumps(frame))

    assert chunk is not None
    assert chunk.delta_content == "lo"
    assert chunk.id == ""
    assert chunk.object == "chat.completion.chunk"
    assert chunk.choices[1].delta.content is None
    assert chunk.choices[1].finish_reason == "stop"


def test_parse_frame_null_choices_becomes_empty_list() -> None:
    chunk = OpenAIAdapter().parse_frame(
        make_provider(), json.dumps({"id": "x", "choices": None, "usage": {"prompt_tokens": 3}})
    )

    assert chunk is not None
    assert chunk.choices == []
    assert chunk.usage is not None
    assert chunk.usage.prompt_tokens == 3


def test_parse_frame_keeps_text_of_off_schema_frame() -> None:
    frame = {
        "id": "chatcmpl-1",
        "created": "yesterday",
        "choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": None}],
    }

    chunk = OpenAIAdapter().parse_frame(make_provider(), json.dumps(frame))

    assert chunk is not None
    assert chunk.id == "chatcmpl-1"
    assert chunk.delta_content == "lo"
