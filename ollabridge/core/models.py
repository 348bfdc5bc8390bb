"""Wire models for both dialects."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant"]
FinishReason = Optional[Literal["stop", "length", "content_filter"]]


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    role: Role
    content: str


# --- public (OpenAI-style) dialect ---


class PublicChatRequest(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    model: str
    messages: list[ChatMessage]
    stream: Optional[bool] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str


class ChatChoice(BaseModel):
    index: int = 0
    message: AssistantMessage
    finish_reason: FinishReason = None


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class PublicChatResponse(BaseModel):
    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: list[ChatChoice]
    usage: Usage


class StreamDelta(BaseModel):
    role: Optional[Literal["assistant"]] = None
    content: Optional[str] = None


class StreamChoice(BaseModel):
    index: int = 0
    delta: StreamDelta
    finish_reason: FinishReason = None


class PublicChatStreamFrame(BaseModel):
    id: str
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int
    model: str
    choices: list[StreamChoice]

    def to_wire(self) -> dict:
        # delta 只保留出现的字段；finish_reason 必须始终存在（可为 null）
        payload = self.model_dump()
        for choice in payload["choices"]:
            choice["delta"] = {k: v for k, v in choice["delta"].items() if v is not None}
        return payload


class PublicModel(BaseModel):
    id: str
    object: Literal["model"] = "model"
    created: int
    owned_by: str


class PublicModelList(BaseModel):
    object: Literal["list"] = "list"
    data: list[PublicModel] = Field(default_factory=list)


# --- backend (Ollama) dialect ---


class BackendOptions(BaseModel):
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    num_predict: Optional[int] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None


class BackendChatRequest(BaseModel):
    model: str
    messages: list[ChatMessage]
    stream: bool = False
    options: Optional[BackendOptions] = None

    def to_wire(self) -> dict:
        return self.model_dump(exclude_none=True)


class BackendMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str = "assistant"
    content: str = ""


class BackendChatRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    model: str = ""
    created_at: str
    message: BackendMessage
    done: bool
    done_reason: Optional[str] = None
    prompt_eval_count: Optional[int] = None
    eval_count: Optional[int] = None


class BackendModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    modified_at: str = ""


class BackendModelList(BaseModel):
    model_config = ConfigDict(extra="ignore")

    models: list[BackendModel] = Field(default_factory=list)
