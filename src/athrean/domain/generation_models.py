from __future__ import annotations

from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for payloads exchanged with the browser and the generation backend.

    Field names are snake_case in Python and camelCase on the wire.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, object]:
        return self.model_dump(by_alias=True, exclude_none=True)


ReasoningStatus = Literal["pending", "thinking", "completed"]
Role = Literal["user", "assistant"]


class ReasoningStep(WireModel):
    id: str
    title: str
    content: str
    status: ReasoningStatus
    duration_ms: Optional[int] = None


class UsageData(WireModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ContextUsage(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated_cost: float
    model: str
    context_window: int
    # Not clamped; display layers cap at 100.
    usage_percent: float


class ChatMessage(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    role: Role
    content: str
    timestamp: int


class Checkpoint(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    message_index: int
    label: str
    timestamp: int
    generated_code: Optional[str] = None


# --- inbound stream records ---


class ContentRecord(WireModel):
    type: Literal["content"]
    content: str = ""


class ReasoningRecord(WireModel):
    type: Literal["reasoning"]
    reasoning: ReasoningStep


class UsageRecord(WireModel):
    type: Literal["usage"]
    usage: UsageData


class StreamError(WireModel):
    code: str
    message: str = ""
    retryable: bool = False


class ErrorRecord(WireModel):
    """Sent by the backend when the upstream fails after the body has started."""

    type: Literal["error"]
    error: StreamError


StreamRecord = Annotated[
    Union[ContentRecord, ReasoningRecord, UsageRecord, ErrorRecord],
    Field(discriminator="type"),
]

_RECORD_ADAPTER: TypeAdapter[StreamRecord] = TypeAdapter(StreamRecord)
KNOWN_RECORD_TYPES = frozenset({"content", "reasoning", "usage", "error"})


def parse_stream_record(payload: Dict[str, object]) -> StreamRecord:
    """Validate one decoded protocol object.

    Raises ``pydantic.ValidationError`` for unknown types or malformed bodies; callers
    treat both as a dropped record.
    """

    return _RECORD_ADAPTER.validate_python(payload)


# --- request / response payloads ---


class HistoryMessage(WireModel):
    role: Role
    content: str


class GenerateRequest(WireModel):
    prompt: str = Field(min_length=1, max_length=10000)
    model: Optional[str] = None
    base_code: Optional[str] = None
    history: List[HistoryMessage] = Field(default_factory=list)
    use_reasoning: bool = True


class SessionCreate(WireModel):
    project_name: Optional[str] = None
    base_code: Optional[str] = None
    model: Optional[str] = None


class SessionGenerate(WireModel):
    prompt: str = Field(min_length=1, max_length=10000)
    use_reasoning: bool = True


class CheckpointCreate(WireModel):
    label: str = Field(min_length=1, max_length=200)


class BaseComponentUpdate(WireModel):
    name: Optional[str] = None
    code: Optional[str] = None


class BaseComponent(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: Optional[str] = None
    code: str


class SessionSnapshot(WireModel):
    session_id: str
    status: str
    messages: List[ChatMessage]
    generated_code: Optional[str] = None
    current_reasoning: List[ReasoningStep]
    current_context_usage: Optional[ContextUsage] = None
    checkpoints: List[Checkpoint]
    current_project_id: Optional[str] = None
    project_name: str
    base_component: Optional[BaseComponent] = None
    pending_prompt: Optional[str] = None


class ModelOption(WireModel):
    id: str
    name: str
    provider: str
    tier: str
    context_window: int
    input_price: float
    output_price: float
    supports_reasoning: bool
    description: Optional[str] = None


class PreviewState(WireModel):
    version: int
    files: Dict[str, str]


class GenerationOutcome(WireModel):
    status: str
    generated_code: Optional[str] = None
    message: Optional[ChatMessage] = None
    usage: Optional[ContextUsage] = None
    error: Optional[str] = None
    session: SessionSnapshot
