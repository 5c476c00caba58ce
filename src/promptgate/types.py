import time
from datetime import datetime, timezone
from typing import Annotated, Any, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

TraceStatus = Literal["success", "error"]


class TextPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"]
    text: str


class ImageUrl(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str


class ImageUrlPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["image_url"]
    image_url: ImageUrl


ContentPart = Annotated[Union[TextPart, ImageUrlPart], Field(discriminator="type")]


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: Union[str, List[ContentPart]]

    def text(self) -> str:
        """Text of the message, joining text parts of structured content."""
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text for part in self.content if isinstance(part, TextPart))

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class CompletionOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stream: bool = True


class ProviderRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    type: str
    base_url: Optional[str] = None
    api_key_encrypted: str = Field(repr=False)
    enabled: bool = True


class ModelRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    provider_id: str
    model_id: str
    name: str


class ResolvedModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: ProviderRecord
    model: ModelRecord
    api_key: str = Field(repr=False)


class Usage(BaseModel):
    model_config = ConfigDict(extra="allow")

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def _fill_total(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        normalized = dict(data)
        for key in ("prompt_tokens", "completion_tokens"):
            if normalized.get(key) is None:
                normalized[key] = 0
        prompt, completion = normalized["prompt_tokens"], normalized["completion_tokens"]
        if normalized.get("total_tokens") is None and isinstance(prompt, int) and isinstance(completion, int):
            normalized["total_tokens"] = prompt + completion
        return normalized

    @classmethod
    def from_counts(cls, prompt_tokens: Any, completion_tokens: Any) -> "Usage":
        prompt = prompt_tokens if isinstance(prompt_tokens, int) else 0
        completion = completion_tokens if isinstance(completion_tokens, int) else 0
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=prompt + completion,
        )


def _replace_nulls(data: Any, defaults: dict[str, Any]) -> Any:
    if not isinstance(data, dict):
        return data
    normalized = dict(data)
    for key, default in defaults.items():
        if key in normalized and normalized[key] is None:
            normalized[key] = default() if callable(default) else default
    return normalized


class ChunkDelta(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Optional[str] = None
    content: Optional[str] = None


class ChunkChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int = 0
    delta: ChunkDelta = Field(default_factory=ChunkDelta)
    finish_reason: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _tolerate_nulls(cls, data: Any) -> Any:
        return _replace_nulls(data, {"index": 0, "delta": dict})


class NormalizedChunk(BaseModel):
    """One streamed frame in the OpenAI ``chat.completion.chunk`` shape.

    Unknown upstream fields are kept so OpenAI-compatible frames are forwarded
    unchanged; serialize with :meth:`to_wire`.
    """

    model_config = ConfigDict(extra="allow")

    id: str = ""
    object: str = "chat.completion.chunk"
    created: int = 0
    model: str = ""
    choices: List[ChunkChoice] = Field(default_factory=list)
    usage: Optional[Usage] = None

    @model_validator(mode="before")
    @classmethod
    def _tolerate_nulls(cls, data: Any) -> Any:
        data = _replace_nulls(
            data,
            {"id": "", "object": "chat.completion.chunk", "created": 0, "model": "", "choices": list},
        )
        if isinstance(data, dict) and isinstance(data.get("id"), int):
            data["id"] = str(data["id"])
        return data

    @classmethod
    def build(
        cls,
        *,
        chunk_id: str = "0",
        content: str | None = None,
        finish_reason: str | None = None,
        usage: Usage | None = None,
    ) -> "NormalizedChunk":
        delta = ChunkDelta(content=content) if content is not None else ChunkDelta()
        fields: dict[str, Any] = {
            "id": chunk_id,
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": "",
            "choices": [ChunkChoice(index=0, delta=delta, finish_reason=finish_reason)],
        }
        if usage is not None:
            fields["usage"] = usage
        return cls(**fields)

    @property
    def delta_content(self) -> str | None:
        if not self.choices:
            return None
        return self.choices[0].delta.content

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    model_id: UUID = Field(alias="modelId")
    messages: List[ChatMessage] = Field(min_length=1)
    prompt_id: Optional[UUID] = Field(default=None, alias="promptId")
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    top_p: Optional[float] = Field(default=None, ge=0, le=1)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    frequency_penalty: Optional[float] = Field(default=None, ge=-2, le=2)
    presence_penalty: Optional[float] = Field(default=None, ge=-2, le=2)
    stream: bool = True
    save_trace: bool = Field(default=True, alias="saveTrace")

    def options(self, *, stream: bool | None = None) -> CompletionOptions:
        return CompletionOptions(
            temperature=self.temperature,
            top_p=self.top_p,
            max_tokens=self.max_tokens,
            frequency_penalty=self.frequency_penalty,
            presence_penalty=self.presence_penalty,
            stream=self.stream if stream is None else stream,
        )


class CompletionResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: str
    usage: Usage
    latency_ms: int = Field(alias="latencyMs")

    def to_body(self) -> dict[str, Any]:
        return {"data": self.model_dump(mode="json", by_alias=True)}


class TraceRecord(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    user_id: str = Field(alias="userId")
    prompt_id: Optional[str] = Field(default=None, alias="promptId")
    model_id: str = Field(alias="modelId")
    input: str
    output: Optional[str] = None
    tokens_input: int = Field(default=0, alias="tokensInput")
    tokens_output: int = Field(default=0, alias="tokensOutput")
    latency_ms: int = Field(default=0, alias="latencyMs")
    status: TraceStatus
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="createdAt"
    )
