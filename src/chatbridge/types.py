"""Provider-agnostic request/response models."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chatbridge.transport import CancellationToken

Role = Literal["system", "user", "assistant", "tool"]
ProviderId = Literal["openai", "anthropic", "groq", "gemini", "openrouter", "sambanova", "cerebras", "v1"]

KNOWN_PROVIDERS: tuple[str, ...] = get_args(ProviderId)


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageUrl(BaseModel):
    url: str


class ImagePart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl


ContentPart = Annotated[Union[TextPart, ImagePart], Field(discriminator="type")]


class FunctionCall(BaseModel):
    name: str
    arguments: str = ""


class ToolCall(BaseModel):
    """A tool invocation requested by the model.

    ``function.arguments`` is the raw argument string and is only guaranteed to
    be valid JSON once the originating round has completed.
    """

    id: str
    type: Literal["function"] = "function"
    function: FunctionCall


class Message(BaseModel):
    """Single chat message."""

    role: Role
    content: str | list[ContentPart] = ""
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] | None = None

    @field_validator("content", mode="before")
    @classmethod
    def _null_content(cls, value: Any) -> Any:
        # vendors send null content on tool-call turns
        return "" if value is None else value

    @model_validator(mode="after")
    def _tool_messages_need_call_id(self) -> Message:
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool messages must carry tool_call_id")
        return self

    def text(self) -> str:
        """Return the textual content, joining text parts and skipping images."""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextPart))


class FunctionDef(BaseModel):
    name: str
    description: str | None = None
    # JSON Schema for the arguments; never interpreted here
    parameters: dict[str, Any] = Field(default_factory=dict)


class ToolDef(BaseModel):
    """JSON-schema tool definition (OpenAI function shape)."""

    type: Literal["function"] = "function"
    function: FunctionDef

    @property
    def name(self) -> str:
        return self.function.name


class ToolChoiceTarget(BaseModel):
    name: str


class ToolChoiceFunction(BaseModel):
    """Forces the model to call one specific tool."""

    type: Literal["function"] = "function"
    function: ToolChoiceTarget


ToolChoice = Union[Literal["auto", "none", "required"], ToolChoiceFunction]


class ChatRequest(BaseModel):
    """Normalized request shared by all providers."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, arbitrary_types_allowed=True)

    provider: str
    model: str = Field(min_length=1)
    messages: list[Message] = Field(min_length=1)
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stream: bool = False
    json_mode: bool = Field(default=False, alias="json")
    tools: list[ToolDef] | None = None
    tool_choice: ToolChoice | None = None
    extra_headers: dict[str, str] | None = None
    cancel: CancellationToken | None = Field(default=None, exclude=True)


class Usage(BaseModel):
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


class Choice(BaseModel):
    index: int = 0
    message: Message
    finish_reason: str | None = None


class ChatResponse(BaseModel):
    """Canonical result of a completed non-streaming call."""

    id: str
    created: int
    model: str
    choices: list[Choice]
    usage: Usage | None = None
    provider: str
    # provider-specific payload kept for debugging or advanced use
    raw: Any = None

    @property
    def message(self) -> Message | None:
        return self.choices[0].message if self.choices else None

    @property
    def text(self) -> str:
        message = self.message
        return message.text() if message is not None else ""


class FunctionCallDelta(BaseModel):
    name: str | None = None
    arguments: str = ""


class ToolCallDelta(BaseModel):
    """Fragment of a tool call; fragments sharing an ``id`` are concatenated."""

    id: str
    type: Literal["function"] = "function"
    function: FunctionCallDelta = Field(default_factory=FunctionCallDelta)


class Delta(BaseModel):
    role: Role | None = None
    content: str | None = None
    tool_calls: list[ToolCallDelta] | None = None


class ChatStreamChunk(BaseModel):
    """Additive streaming fragment; the consumer is responsible for accumulation."""

    id: str | None = None
    model: str | None = None
    created: int | None = None
    delta: Delta = Field(default_factory=Delta)
    finish_reason: str | None = None
    raw: Any = None


class TargetResolution(BaseModel):
    provider: str
    model: str


class ModelCheck(BaseModel):
    """Outcome of a model-existence check."""

    provider: str
    model: str
    exists: bool
    models: list[str] | None = None
    error: str | None = None
