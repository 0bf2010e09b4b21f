"""
Data contracts shared by every layer of the router.

Requests, responses and audit entries are immutable once built: pydantic
models are declared with ``frozen=True`` and collections are tuples or
frozensets. The scanner "annotates" a request by producing a copy.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

ProviderId = str

_CHARS_PER_TOKEN = 4


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Capability(str, Enum):
    STREAMING = "streaming"
    EMBEDDINGS = "embeddings"
    VISION = "vision"
    FUNCTION_CALLING = "function_calling"


class ProviderKind(str, Enum):
    CLOUD = "cloud"
    LOCAL = "local"


class DataClassification(str, Enum):
    """Sensitivity tags, declared from least to most restrictive."""

    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    PII = "pii"
    REGULATED = "regulated"

    @property
    def rank(self) -> int:
        return _CLASSIFICATION_ORDER.index(self)

    @classmethod
    def most_restrictive(cls) -> DataClassification:
        return _CLASSIFICATION_ORDER[-1]

    @classmethod
    def strictest(cls, *levels: DataClassification) -> DataClassification:
        return max(levels, key=lambda level: level.rank)


_CLASSIFICATION_ORDER = list(DataClassification)


class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    CANCELLED = "cancelled"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str = ""
    images: tuple[str, ...] = ()
    name: str | None = None


class ToolSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)


class CompletionRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    messages: tuple[Message, ...] = Field(min_length=1)
    model: str = ""
    max_tokens: int = Field(default=1024, ge=1)
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    tools: tuple[ToolSpec, ...] = ()
    stream: bool = False
    classification: DataClassification | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timeout_s: float | None = Field(default=None, gt=0)
    security_flags: tuple[str, ...] = ()

    def required_capabilities(self) -> frozenset[Capability]:
        required: set[Capability] = set()
        if self.stream:
            required.add(Capability.STREAMING)
        if self.tools:
            required.add(Capability.FUNCTION_CALLING)
        if any(m.images for m in self.messages):
            required.add(Capability.VISION)
        return frozenset(required)

    def text(self) -> str:
        return "\n".join(m.content for m in self.messages if m.content)

    def estimated_prompt_tokens(self) -> int:
        return len(self.text()) // _CHARS_PER_TOKEN + 1

    def digest(self) -> str:
        """Stable hash of the content-bearing fields; used instead of raw text in audit."""
        return stable_hash(
            {
                "messages": [m.model_dump(mode="json") for m in self.messages],
                "model": self.model,
                "max_tokens": self.max_tokens,
                "temperature": self.temperature,
                "tools": [t.model_dump(mode="json") for t in self.tools],
                "stream": self.stream,
            }
        )


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class Usage(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class ToolCall(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = ""
    name: str
    arguments: str = "{}"


class CompletionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    usage: Usage = Field(default_factory=Usage)
    finish_reason: FinishReason = FinishReason.STOP
    provider_id: ProviderId = ""
    model: str = ""
    latency_ms: float = 0.0
    tool_calls: tuple[ToolCall, ...] = ()
    correlation_id: str = ""
    security_flags: tuple[str, ...] = ()


class CompletionChunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    delta: str = ""
    finish_reason: FinishReason | None = None
    usage: Usage | None = None
    provider_id: ProviderId = ""
    model: str = ""

    @property
    def is_final(self) -> bool:
        return self.finish_reason is not None


class Embedding(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    vector: tuple[float, ...]


# ---------------------------------------------------------------------------
# Providers & health
# ---------------------------------------------------------------------------


class ProviderCapabilities(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_context_tokens: int = Field(default=8192, ge=1)
    streaming: bool = False
    embeddings: bool = False
    vision: bool = False
    function_calling: bool = False
    models: frozenset[str] = frozenset()

    def supported(self) -> frozenset[Capability]:
        flags = {
            Capability.STREAMING: self.streaming,
            Capability.EMBEDDINGS: self.embeddings,
            Capability.VISION: self.vision,
            Capability.FUNCTION_CALLING: self.function_calling,
        }
        return frozenset(cap for cap, enabled in flags.items() if enabled)

    def satisfies(self, required: frozenset[Capability] | set[Capability]) -> bool:
        return set(required) <= self.supported()

    @property
    def richness(self) -> int:
        return len(self.supported())

    def supports_model(self, model: str) -> bool:
        return not model or not self.models or model in self.models


class HealthStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_id: ProviderId
    available: bool = True
    latency_ms: float | None = None
    last_checked_at: datetime | None = None
    consecutive_failures: int = 0
    last_failure_at: datetime | None = None
    marked_down_at: datetime | None = None
    last_error: str | None = None


# ---------------------------------------------------------------------------
# Routing policies
# ---------------------------------------------------------------------------


class CloudFirst(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["cloud_first"] = "cloud_first"
    fallback_to_local: bool = True


class LocalOnly(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["local_only"] = "local_only"


class ClassificationBased(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["classification_based"] = "classification_based"
    local_classifications: frozenset[DataClassification] = frozenset(
        {DataClassification.PII, DataClassification.REGULATED}
    )


class CapabilityBased(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["capability_based"] = "capability_based"
    required_capabilities: frozenset[Capability] = frozenset()


class CostOptimized(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["cost_optimized"] = "cost_optimized"
    max_cost_per_1k_tokens: float = Field(ge=0.0)


class LatencyOptimized(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["latency_optimized"] = "latency_optimized"
    max_latency_ms: float = Field(gt=0.0)


RoutingPolicy = Annotated[
    Union[
        CloudFirst,
        LocalOnly,
        ClassificationBased,
        CapabilityBased,
        CostOptimized,
        LatencyOptimized,
    ],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class Operation(str, Enum):
    COMPLETE = "complete"
    STREAM = "stream"
    EMBED = "embed"


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    FAILED = "failed"
    BLOCKED = "blocked"
    REJECTED = "rejected"
    NO_PROVIDER = "no_provider"
    CANCELLED = "cancelled"


class AuditRecord(BaseModel):
    """
    One append-only audit entry.

    attempt is 1-based for provider attempts and 0 for records written
    before any provider was contacted (blocked, rejected, no_provider).
    Exactly one record per request carries terminal=True.
    """

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    operation: Operation
    attempt: int = Field(default=0, ge=0)
    request_digest: str
    classification: DataClassification | None = None
    provider_id: ProviderId | None = None
    outcome: AuditOutcome
    error_kind: str | None = None
    error_code: str | None = None
    latency_ms: float = 0.0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    terminal: bool = False
    security_flags: tuple[str, ...] = ()


def stable_hash(data: Any) -> str:
    """Deterministic SHA-256 of JSON-serialisable data (keys sorted)."""
    normalized = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(normalized.encode()).hexdigest()


def texts_digest(texts: list[str] | tuple[str, ...]) -> str:
    return stable_hash({"texts": list(texts)})
