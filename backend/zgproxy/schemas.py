import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_serializer, model_validator

Role = Literal["system", "user", "assistant", "tool"]


def _drop_none(data: Dict[str, Any], *keys: str) -> Dict[str, Any]:
    for key in keys:
        if data.get(key) is None:
            data.pop(key, None)
    return data


# Tool calling

class FunctionCall(BaseModel):
    name: str
    arguments: str = ""  # opaque JSON fragment, never parsed

    @field_validator("arguments", mode="before")
    @classmethod
    def _arguments_as_text(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


class ToolCall(BaseModel):
    id: str
    type: Literal["function"] = "function"
    function: FunctionCall


class ToolDefinition(BaseModel):
    """A tool declaration, forwarded to the backend exactly as the client sent it."""

    model_config = ConfigDict(extra="allow", frozen=True)

    # only the field names are declared; the backend judges the contents
    type: Any = "function"
    function: Any = None


# Dialect A (OpenAI-compatible)

class ChatMessage(BaseModel):
    role: Role
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None  # tool role only
    name: Optional[str] = None

    @model_validator(mode="after")
    def _content_or_tool_calls(self) -> "ChatMessage":
        if self.content is None and not self.tool_calls:
            raise ValueError("content may be null only when tool_calls are present")
        return self

    @model_serializer(mode="wrap")
    def _omit_unset(self, handler):
        return _drop_none(handler(self), "tool_calls", "tool_call_id", "name")


class CompletionRequest(BaseModel):
    model: str = Field(min_length=1)
    messages: List[ChatMessage]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop: Optional[Union[str, List[str]]] = None
    stream: bool = False
    tools: Optional[List[ToolDefinition]] = None
    tool_choice: Optional[Union[Literal["none", "auto", "required"], Dict[str, Any]]] = None


class ResponseMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None

    @model_serializer(mode="wrap")
    def _omit_unset(self, handler):
        return _drop_none(handler(self), "tool_calls")


class Choice(BaseModel):
    index: int = 0
    message: ResponseMessage
    finish_reason: str = "stop"


class Usage(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class CompletionResponse(BaseModel):
    id: str
    object: str = "chat.completion"
    created: int
    model: str
    choices: List[Choice]
    usage: Usage


class StreamChoice(BaseModel):
    index: int = 0
    delta: Dict[str, Any] = Field(default_factory=dict)
    finish_reason: Optional[str] = None


class StreamFrame(BaseModel):
    id: str
    object: str = "chat.completion.chunk"
    created: int
    model: str
    choices: List[StreamChoice]
    usage: Optional[Dict[str, Any]] = None

    @model_serializer(mode="wrap")
    def _omit_unset(self, handler):
        return _drop_none(handler(self), "usage")


# Error documents

class ErrorDetail(BaseModel):
    message: str
    type: str
    code: str


class ErrorBody(BaseModel):
    error: ErrorDetail
