"""
Routing enumerations and value types.

TaskType is a closed set; every execution mode maps every task type to a
Route (primary model plus ordered fallbacks).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ExecutionMode(str, Enum):
    """Named cost/speed/quality policy selecting which model mapping to use."""

    BALANCED = "balanced"
    SUPER_SAVER = "super-saver"
    FAST_DELIVERY = "fast-delivery"


class TaskType(str, Enum):
    """Closed enumeration of story categories used for routing."""

    COMPLEX_INTEGRATION = "complex-integration"
    MATHEMATICAL = "mathematical"
    BACKEND_API = "backend-api"
    BACKEND_LOGIC = "backend-logic"
    FRONTEND_UI = "frontend-ui"
    FRONTEND_LOGIC = "frontend-logic"
    DATABASE = "database"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    REFACTORING = "refactoring"
    BUGFIX = "bugfix"
    DEVOPS = "devops"
    CONFIG = "config"
    UNKNOWN = "unknown"


class Provider(str, Enum):
    """Model providers with independently tracked quota."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    OPENROUTER = "openrouter"
    GEMINI = "gemini"
    LOCAL = "local"


class ModelCapability(str, Enum):
    DEEP_REASONING = "deep-reasoning"
    MATHEMATICAL = "mathematical"
    CODE_GENERATION = "code-generation"
    LONG_CONTEXT = "long-context"
    CREATIVE = "creative"
    FAST = "fast"
    CHEAP = "cheap"
    STRUCTURED_OUTPUT = "structured-output"
    MULTIMODAL = "multimodal"


@dataclass(frozen=True)
class ModelRef:
    """A concrete model at a provider."""

    model_id: str
    provider: Provider

    @property
    def key(self) -> str:
        """Learning key, ``provider:model_id``."""
        return f"{self.provider.value}:{self.model_id}"


@dataclass(frozen=True)
class Route:
    """Primary model and ordered fallbacks for one (mode, task type)."""

    primary: ModelRef
    fallbacks: tuple[ModelRef, ...] = ()

    @property
    def candidates(self) -> list[ModelRef]:
        return [self.primary, *self.fallbacks]


@dataclass(frozen=True)
class ModelReliability:
    """Learned reliability for one model on one task type."""

    reliability: float
    runs: int


@dataclass
class LearningHints:
    """
    Advisory learning input for the router.

    Attributes:
        best: Learning key (``provider:model_id``) of the best model, if any.
        reliability: Per-key reliability for the task type.
    """

    best: str | None = None
    reliability: dict[str, ModelReliability] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return self.best is None and not self.reliability


@dataclass
class Recommendation:
    """
    Output of the router.

    Attributes:
        model_id: Model to invoke.
        provider: Provider serving the model.
        reason: Human-readable explanation of the choice.
        quota_exhausted: True when no candidate had available quota and
            the primary was returned anyway.
        confidence: 0-1 confidence; raised when learning data agrees.
        fallbacks: Remaining candidates in preference order.
    """

    model_id: str
    provider: Provider
    reason: str
    quota_exhausted: bool = False
    confidence: float = 0.8
    fallbacks: list[ModelRef] = field(default_factory=list)

    @property
    def ref(self) -> ModelRef:
        return ModelRef(self.model_id, self.provider)
