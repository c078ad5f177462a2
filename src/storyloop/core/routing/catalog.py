"""
Model catalog: pricing, context windows, and capabilities.

Prices are USD per one million tokens.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from .models import ModelCapability, Provider

C = ModelCapability


class ModelInfo(BaseModel):
    """Static description of a model."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    provider: Provider
    input_cost_per_1m: float = Field(ge=0)
    output_cost_per_1m: float = Field(ge=0)
    context_window: int
    capabilities: tuple[ModelCapability, ...] = ()

    @property
    def is_free(self) -> bool:
        return self.input_cost_per_1m == 0 and self.output_cost_per_1m == 0


def _m(
    model_id: str,
    name: str,
    provider: Provider,
    cost_in: float,
    cost_out: float,
    context: int,
    *caps: ModelCapability,
) -> ModelInfo:
    return ModelInfo(
        id=model_id,
        name=name,
        provider=provider,
        input_cost_per_1m=cost_in,
        output_cost_per_1m=cost_out,
        context_window=context,
        capabilities=caps,
    )


MODEL_CATALOG: dict[str, ModelInfo] = {
    m.id: m
    for m in (
        # Anthropic
        _m("claude-opus-4-20250514", "Claude Opus 4", Provider.ANTHROPIC, 15.0, 75.0, 200_000,
           C.DEEP_REASONING, C.MATHEMATICAL, C.CODE_GENERATION, C.LONG_CONTEXT),
        _m("claude-sonnet-4-20250514", "Claude Sonnet 4", Provider.ANTHROPIC, 3.0, 15.0, 200_000,
           C.CODE_GENERATION, C.CREATIVE, C.DEEP_REASONING),
        _m("claude-3-5-haiku-20241022", "Claude Haiku 3.5", Provider.ANTHROPIC, 0.25, 1.25,
           200_000, C.CODE_GENERATION, C.FAST, C.CHEAP),
        # OpenAI
        _m("gpt-5.2-codex", "GPT-5.2 Codex", Provider.OPENAI, 2.5, 10.0, 128_000,
           C.CODE_GENERATION, C.STRUCTURED_OUTPUT, C.DEEP_REASONING),
        _m("gpt-5.1-codex-mini", "GPT-5.1 Codex Mini", Provider.OPENAI, 0.15, 0.6, 128_000,
           C.CODE_GENERATION, C.FAST, C.CHEAP, C.STRUCTURED_OUTPUT),
        _m("gpt-5.2", "GPT-5.2", Provider.OPENAI, 1.1, 4.4, 128_000,
           C.MATHEMATICAL, C.DEEP_REASONING),
        # Google
        _m("gemini-2.0-flash", "Gemini 2.0 Flash", Provider.GEMINI, 0.1, 0.4, 1_000_000,
           C.FAST, C.CHEAP, C.CREATIVE, C.LONG_CONTEXT),
        _m("gemini-1.5-pro", "Gemini 1.5 Pro", Provider.GEMINI, 1.25, 5.0, 2_000_000,
           C.LONG_CONTEXT, C.MULTIMODAL, C.CODE_GENERATION),
        # OpenRouter
        _m("deepseek-coder", "DeepSeek Coder", Provider.OPENROUTER, 0.14, 0.28, 128_000,
           C.CODE_GENERATION, C.CHEAP),
        # Local
        _m("llama-3.1-70b", "Llama 3.1 70B", Provider.LOCAL, 0.0, 0.0, 128_000,
           C.CODE_GENERATION, C.CHEAP),
        _m("qwen-2.5-coder", "Qwen 2.5 Coder", Provider.LOCAL, 0.0, 0.0, 128_000,
           C.CODE_GENERATION, C.CHEAP),
    )
}


def get_model_info(model_id: str) -> ModelInfo | None:
    return MODEL_CATALOG.get(model_id)


def models_for_provider(provider: Provider) -> list[ModelInfo]:
    return [m for m in MODEL_CATALOG.values() if m.provider == provider]


def models_with_capability(capability: ModelCapability) -> list[ModelInfo]:
    return [m for m in MODEL_CATALOG.values() if capability in m.capabilities]


def provider_for_model(model_id: str) -> Provider | None:
    info = MODEL_CATALOG.get(model_id)
    return info.provider if info else None


def estimate_cost(model_id: str, input_tokens: int, output_tokens: int) -> float:
    """
    Estimate USD cost for a token count, rounded to cents.

    Unknown models cost 0.0.

    Example:
        >>> estimate_cost("claude-sonnet-4-20250514", 1_000_000, 0)
        3.0
    """
    model = MODEL_CATALOG.get(model_id)
    if model is None:
        return 0.0
    cost = (input_tokens / 1_000_000) * model.input_cost_per_1m + (
        output_tokens / 1_000_000
    ) * model.output_cost_per_1m
    return round(cost, 2)
