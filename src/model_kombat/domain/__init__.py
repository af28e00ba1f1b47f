"""Domain models for model-kombat."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from ..exceptions import ValidationError

# --------------------------------------------------------------------------- #
# Model catalog

JSON_OUTPUT_PARAMETERS = ("response_format", "structured_outputs")
FUNCTION_CALLING_PARAMETERS = ("tools", "tool_choice")


@dataclass(frozen=True)
class ModelPricing:
    """Upstream pricing expressed in USD per million tokens."""

    input_per_mtok: float = 0.0
    output_per_mtok: float = 0.0

    def cost(self, prompt_tokens: float, completion_tokens: float) -> float:
        """USD cost of a completion with the given token counts."""
        return (prompt_tokens * self.input_per_mtok + completion_tokens * self.output_per_mtok) / 1_000_000


@dataclass(frozen=True)
class ModelCapabilities:
    """Capability flags derived from a catalog entry."""

    stream: bool
    json_output: bool
    vision: bool
    function_calling: bool


@dataclass(frozen=True)
class Model:
    """Domain model for a catalog entry.

    Capabilities are not stored: they are recomputed from the raw
    ``supported_parameters`` and ``input_modalities`` on every access.
    """

    id: str
    display_name: str
    context_length: int
    pricing: ModelPricing
    supported_parameters: Tuple[str, ...] = ()
    input_modalities: Tuple[str, ...] = ()
    legacy_response_schema: bool = False
    description: str = ""

    @property
    def provider(self) -> str:
        return self.id.split("/", 1)[0] or "other"

    @property
    def capabilities(self) -> ModelCapabilities:
        params = set(self.supported_parameters)
        return ModelCapabilities(
            stream=True,
            json_output=bool(params.intersection(JSON_OUTPUT_PARAMETERS)) or self.legacy_response_schema,
            vision="image" in self.input_modalities,
            function_calling=bool(params.intersection(FUNCTION_CALLING_PARAMETERS)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "context_length": self.context_length,
            "pricing": asdict(self.pricing),
            "capabilities": asdict(self.capabilities),
            "provider": self.provider,
        }


# --------------------------------------------------------------------------- #
# Chat messages


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    url: str


ContentPart = Union[TextPart, ImagePart]


@dataclass(frozen=True)
class TextContent:
    """Plain text message content."""

    text: str


@dataclass(frozen=True)
class MultipartContent:
    """Structured message content mixing text and image parts."""

    parts: Tuple[ContentPart, ...]


MessageContent = Union[TextContent, MultipartContent]


def content_to_payload(content: MessageContent) -> Union[str, List[Dict[str, Any]]]:
    """Render message content in the upstream wire format."""
    if isinstance(content, TextContent):
        return content.text
    if isinstance(content, MultipartContent):
        parts: List[Dict[str, Any]] = []
        for part in content.parts:
            if isinstance(part, TextPart):
                parts.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                parts.append({"type": "image_url", "image_url": {"url": part.url}})
            else:
                raise TypeError(f"Unsupported content part: {type(part).__name__}")
        return parts
    raise TypeError(f"Unsupported message content: {type(content).__name__}")


def content_to_text(content: MessageContent) -> str:
    """Flatten message content to its text portions."""
    if isinstance(content, TextContent):
        return content.text
    return "".join(part.text for part in content.parts if isinstance(part, TextPart))


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: MessageContent

    @classmethod
    def text(cls, role: Union[Role, str], text: str) -> "ChatMessage":
        return cls(role=Role(role), content=TextContent(text))

    def to_payload(self) -> Dict[str, Any]:
        return {"role": self.role.value, "content": content_to_payload(self.content)}


@dataclass(frozen=True)
class ChatRequest:
    """Domain model for a chat completion request."""

    model_id: str
    messages: Tuple[ChatMessage, ...]
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    response_format: Optional[Dict[str, Any]] = None

    def validate(self) -> None:
        """Check the request invariants before it is sent upstream."""
        if not self.model_id:
            raise ValidationError("A model id is required", field="model_id", value=self.model_id)
        if not self.messages:
            raise ValidationError("A chat request needs at least one message", field="messages", value=[])
        last_role = self.messages[-1].role
        if last_role not in (Role.USER, Role.ASSISTANT):
            raise ValidationError(
                "The last message must come from the user or the assistant",
                field="messages",
                value=last_role.value,
            )
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ValidationError("max_tokens must be positive", field="max_tokens", value=self.max_tokens)

    def to_payload(self, *, stream: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model_id,
            "messages": [message.to_payload() for message in self.messages],
            "temperature": self.temperature,
        }
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens
        if self.response_format is not None:
            payload["response_format"] = self.response_format
        if stream:
            payload["stream"] = True
        return payload


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class ChatResponse:
    """Domain model for a completed chat response."""

    id: str
    model_id: str
    text: str
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)


# --------------------------------------------------------------------------- #
# Pipelines


class FailurePolicy(str, Enum):
    """What a fan-out pipeline does when one item fails."""

    ISOLATE = "isolate"
    ABORT = "abort"


class RefinementState(str, Enum):
    IDLE = "idle"
    SEEDED = "seeded"
    CRITIQUING = "critiquing"
    REFINING = "refining"
    CONVERGED = "converged"
    MAX_ROUNDS_REACHED = "max_rounds_reached"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RefinementRound:
    """One entry in a refinement lineage; round 0 is the seed."""

    round_number: int
    response: str
    critique: Optional[str] = None
    improvements_extracted: Tuple[str, ...] = ()
    timestamp: str = ""
    model_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["improvements_extracted"] = list(self.improvements_extracted)
        return data


@dataclass(frozen=True)
class RefinementOutcome:
    """Result of a refinement run, including partial state on failure."""

    rounds: Tuple[RefinementRound, ...]
    state: RefinementState
    error: Optional[Exception] = None

    @property
    def final_response(self) -> str:
        return self.rounds[-1].response if self.rounds else ""

    @property
    def converged(self) -> bool:
        return self.state is RefinementState.CONVERGED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "rounds": [entry.to_dict() for entry in self.rounds],
            "final_response": self.final_response,
            "error": str(self.error) if self.error is not None else None,
        }


class GenerationStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class CompetitorGeneration:
    """Mutable per-competitor record updated as a competition progresses."""

    model_id: str
    display_name: str
    response: str = ""
    generation_time_ms: int = 0
    estimated_cost: float = 0.0
    status: GenerationStatus = GenerationStatus.PENDING
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


CRITERIA_NAMES = ("relevance", "accuracy", "completeness", "clarity")


@dataclass(frozen=True)
class JudgingCriteria:
    """Percentage weights per criterion; they must sum to 100."""

    relevance: int = 25
    accuracy: int = 25
    completeness: int = 25
    clarity: int = 25

    def total(self) -> int:
        return self.relevance + self.accuracy + self.completeness + self.clarity

    def validate(self) -> None:
        """Reject weights outside 0-100 or not summing to exactly 100."""
        for name in CRITERIA_NAMES:
            value = getattr(self, name)
            if not 0 <= value <= 100:
                raise ValidationError(f"Weight for {name} must be between 0 and 100", field=name, value=value)
        if self.total() != 100:
            raise ValidationError("Judging criteria weights must sum to 100", field="criteria", value=self.total())

    def as_dict(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in CRITERIA_NAMES}


@dataclass(frozen=True)
class CriterionScores:
    relevance: int = 0
    accuracy: int = 0
    completeness: int = 0
    clarity: int = 0

    @classmethod
    def uniform(cls, value: int) -> "CriterionScores":
        return cls(relevance=value, accuracy=value, completeness=value, clarity=value)

    def as_dict(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in CRITERIA_NAMES}


@dataclass(frozen=True)
class JudgingResult:
    """Judge verdict for one competitor generation."""

    model_id: str
    display_name: str
    scores: CriterionScores
    weighted_total: int
    feedback: str
    rank: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "display_name": self.display_name,
            "scores": self.scores.as_dict(),
            "weighted_total": self.weighted_total,
            "feedback": self.feedback,
            "rank": self.rank,
            "error": self.error,
        }


__all__ = [
    "JSON_OUTPUT_PARAMETERS",
    "FUNCTION_CALLING_PARAMETERS",
    "ModelPricing",
    "ModelCapabilities",
    "Model",
    "Role",
    "TextPart",
    "ImagePart",
    "ContentPart",
    "TextContent",
    "MultipartContent",
    "MessageContent",
    "content_to_payload",
    "content_to_text",
    "ChatMessage",
    "ChatRequest",
    "Usage",
    "ChatResponse",
    "FailurePolicy",
    "RefinementState",
    "RefinementRound",
    "RefinementOutcome",
    "GenerationStatus",
    "CompetitorGeneration",
    "CRITERIA_NAMES",
    "JudgingCriteria",
    "CriterionScores",
    "JudgingResult",
]
