from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx

from promptgate.types import (
    ChatCompletionRequest,
    ModelRecord,
    ProviderRecord,
    ResolvedModel,
)

TEST_KEY_HEX = "0123456789abcdef" * 4
MODEL_UUID = "7b0c1f8e-4d3a-4c1e-9a55-2f7e0d6b9c10"
OWNER_ID = "user-1"


def sse_body(*payloads: str) -> bytes:
    return "".join(f"data: {payload}\n\n" for payload in payloads).encode("utf-8")


def make_provider(
    provider_type: str = "openai",
    *,
    base_url: str | None = None,
    enabled: bool = True,
    user_id: str = OWNER_ID,
    api_key_encrypted: str = "iv:tag:enc",
) -> ProviderRecord:
    return ProviderRecord(
        id=f"{provider_type}-main",
        user_id=user_id,
        type=provider_type,
        base_url=base_url,
        api_key_encrypted=api_key_encrypted,
        enabled=enabled,
    )


def make_model(provider: ProviderRecord, model_id: str = "gpt-4o") -> ModelRecord:
    return ModelRecord(id=MODEL_UUID, provider_id=provider.id, model_id=model_id, name=model_id)


def make_resolved(provider_type: str = "openai", **kwargs: Any) -> ResolvedModel:
    provider = make_provider(provider_type, **kwargs)
    return ResolvedModel(provider=provider, model=make_model(provider), api_key="sk-test")


def make_request(**overrides: Any) -> ChatCompletionRequest:
    payload: dict[str, Any] = {
        "modelId": MODEL_UUID,
        "messages": [{"role": "user", "content": "Say hello"}],
    }
    payload.update(overrides)
    return ChatCompletionRequest.model_validate(payload)


def mock_client(
    handler: Callable[[httpx.Request], httpx.Response],
) -> tuple[httpx.AsyncClient, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def recording_handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(recording_handler)), seen
