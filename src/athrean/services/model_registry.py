"""Static model catalogue used for pricing and context-window lookups.

Prices are USD per one million tokens. Lookups never fail: an unknown model id
resolves to :data:`DEFAULT_PRICING` so cost and usage figures can always be
computed for whatever model the backend reports.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..domain.generation_models import ContextUsage, UsageData


class ModelTier(str, Enum):
    FREE = "free"
    BUDGET = "budget"
    STANDARD = "standard"
    PREMIUM = "premium"


@dataclass(frozen=True)
class ModelPricing:
    input: float
    output: float
    context_window: int


@dataclass(frozen=True)
class ModelConfig:
    id: str
    name: str
    provider: str
    context_window: int
    input_price: float
    output_price: float
    tier: ModelTier
    supports_reasoning: bool = False
    max_output_tokens: int = 8192
    description: Optional[str] = None

    @property
    def pricing(self) -> ModelPricing:
        return ModelPricing(input=self.input_price, output=self.output_price, context_window=self.context_window)


def _free(model_id: str, name: str, provider: str, context_window: int, *, reasoning: bool, max_out: int, description: str) -> ModelConfig:
    return ModelConfig(
        id=model_id,
        name=name,
        provider=provider,
        context_window=context_window,
        input_price=0.0,
        output_price=0.0,
        tier=ModelTier.FREE,
        supports_reasoning=reasoning,
        max_output_tokens=max_out,
        description=description,
    )


MODEL_REGISTRY: Tuple[ModelConfig, ...] = (
    # Free tier
    _free("nvidia/llama-3.1-nemotron-ultra-253b-v1:free", "Nemotron Ultra 253B", "nvidia", 131072, reasoning=True, max_out=32768, description="NVIDIA flagship free model"),
    _free("nvidia/nemotron-3-nano-30b-a3b:free", "Nemotron Nano 30B", "nvidia", 262144, reasoning=True, max_out=16384, description="Efficient MoE model for agentic work"),
    _free("deepseek/deepseek-r1-0528:free", "DeepSeek R1 0528", "deepseek", 163840, reasoning=True, max_out=32768, description="DeepSeek reasoning model"),
    _free("deepseek/deepseek-chat-v3-0324:free", "DeepSeek Chat V3", "deepseek", 131072, reasoning=True, max_out=16384, description="Conversational model with strong coding"),
    _free("meta-llama/llama-4-maverick:free", "Llama 4 Maverick", "meta", 1048576, reasoning=False, max_out=32768, description="400B MoE with 1M context"),
    _free("meta-llama/llama-3.3-70b-instruct:free", "Llama 3.3 70B", "meta", 131072, reasoning=False, max_out=8192, description="Instruction-tuned Llama 3.3"),
    _free("qwen/qwen3-coder:free", "Qwen3 Coder 480B", "qwen", 262144, reasoning=True, max_out=32768, description="Specialised coding model"),
    _free("qwen/qwq-32b:free", "QwQ 32B", "qwen", 131072, reasoning=True, max_out=16384, description="Chain-of-thought reasoning model"),
    _free("google/gemini-2.0-flash-exp:free", "Gemini 2.0 Flash Exp", "google", 1048576, reasoning=False, max_out=8192, description="Experimental Gemini 2.0"),
    _free("mistralai/devstral-2512:free", "Devstral 2512", "mistral", 262144, reasoning=False, max_out=32768, description="Agentic coding model"),
    _free("openai/gpt-oss-20b:free", "GPT-OSS 20B", "openai", 131072, reasoning=False, max_out=8192, description="Open-weight model with tool use"),
    # Budget tier
    ModelConfig("anthropic/claude-3-haiku", "Claude 3 Haiku", "anthropic", 200000, 0.25, 1.25, ModelTier.BUDGET, False, 4096, "Fast and affordable Claude model"),
    ModelConfig("anthropic/claude-3.5-haiku", "Claude 3.5 Haiku", "anthropic", 200000, 0.80, 4.0, ModelTier.BUDGET, False, 8192, "Fast Claude with improved capabilities"),
    ModelConfig("openai/gpt-4o-mini", "GPT-4o Mini", "openai", 128000, 0.15, 0.60, ModelTier.BUDGET, False, 16384, "Affordable GPT-4 quality"),
    ModelConfig("google/gemini-2.0-flash", "Gemini 2.0 Flash", "google", 1048576, 0.10, 0.40, ModelTier.BUDGET, False, 8192, "Fast Gemini with 1M context window"),
    ModelConfig("deepseek/deepseek-r1-0528", "DeepSeek R1 0528", "deepseek", 163840, 0.40, 1.75, ModelTier.BUDGET, True, 32768, "DeepSeek R1 paid tier"),
    ModelConfig("qwen/qwen3-coder", "Qwen3 Coder 480B", "qwen", 262144, 0.22, 0.95, ModelTier.BUDGET, True, 32768, "Qwen3 Coder paid tier"),
    # Standard tier
    ModelConfig("anthropic/claude-3.5-sonnet", "Claude 3.5 Sonnet", "anthropic", 200000, 3.0, 15.0, ModelTier.STANDARD, False, 8192, "Excellent code generation"),
    ModelConfig("anthropic/claude-sonnet-4", "Claude Sonnet 4", "anthropic", 1000000, 3.0, 15.0, ModelTier.STANDARD, True, 64000, "Claude with 1M context"),
    ModelConfig("openai/gpt-4o", "GPT-4o", "openai", 128000, 2.50, 10.0, ModelTier.STANDARD, False, 16384, "OpenAI multimodal flagship"),
    ModelConfig("google/gemini-2.5-pro", "Gemini 2.5 Pro", "google", 1048576, 1.25, 10.0, ModelTier.STANDARD, True, 65536, "1M context with advanced reasoning"),
    # Premium tier
    ModelConfig("anthropic/claude-opus-4", "Claude Opus 4", "anthropic", 200000, 15.0, 75.0, ModelTier.PREMIUM, True, 32000, "Most capable Claude model"),
    ModelConfig("openai/o1", "OpenAI o1", "openai", 200000, 15.0, 60.0, ModelTier.PREMIUM, True, 100000, "Advanced reasoning model"),
    ModelConfig("x-ai/grok-3", "Grok 3", "xai", 131072, 3.0, 15.0, ModelTier.PREMIUM, True, 16384, "xAI flagship model"),
)

_BY_ID: Dict[str, ModelConfig] = {m.id: m for m in MODEL_REGISTRY}

DEFAULT_FREE_MODEL = "deepseek/deepseek-r1-0528:free"
DEFAULT_PAID_MODEL = "anthropic/claude-sonnet-4"
DEFAULT_BACKEND_MODEL = "anthropic/claude-3.5-sonnet"

DEFAULT_PRICING = _BY_ID[DEFAULT_BACKEND_MODEL].pricing

_RECOMMENDED: Dict[str, Tuple[str, str]] = {
    # task: (free choice, paid choice)
    "component": ("qwen/qwen3-coder:free", "anthropic/claude-sonnet-4"),
    "app": ("deepseek/deepseek-r1-0528:free", "google/gemini-2.5-pro"),
    "debug": ("nvidia/nemotron-3-nano-30b-a3b:free", "anthropic/claude-3.5-sonnet"),
    "refactor": ("deepseek/deepseek-r1-0528:free", "anthropic/claude-sonnet-4"),
    "explain": ("meta-llama/llama-3.3-70b-instruct:free", "openai/gpt-4o"),
}


def get_model(model_id: str) -> Optional[ModelConfig]:
    return _BY_ID.get(model_id)


def get_pricing(model_id: str) -> ModelPricing:
    model = _BY_ID.get(model_id)
    return model.pricing if model else DEFAULT_PRICING


def is_model_free(model_id: str) -> bool:
    model = _BY_ID.get(model_id)
    return bool(model and model.tier is ModelTier.FREE)


def models_by_tier(tier: ModelTier) -> List[ModelConfig]:
    return [m for m in MODEL_REGISTRY if m.tier is tier]


def reasoning_models() -> List[ModelConfig]:
    return [m for m in MODEL_REGISTRY if m.supports_reasoning]


def recommended_model(task: str, prefer_free: bool = True) -> ModelConfig:
    free_id, paid_id = _RECOMMENDED.get(task, (MODEL_REGISTRY[0].id, DEFAULT_BACKEND_MODEL))
    return _BY_ID[free_id if prefer_free else paid_id]


def _token_count(value: object) -> int:
    try:
        count = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(count) or count < 0:
        return 0
    return int(count)


def calculate_cost(model_id: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Estimated USD cost of a completion; always finite and non-negative."""

    if is_model_free(model_id):
        return 0.0
    pricing = get_pricing(model_id)
    input_cost = _token_count(prompt_tokens) / 1_000_000 * pricing.input
    output_cost = _token_count(completion_tokens) / 1_000_000 * pricing.output
    return input_cost + output_cost


def build_context_usage(usage: UsageData, model_id: str) -> ContextUsage:
    pricing = get_pricing(model_id)
    total = _token_count(usage.total_tokens)
    return ContextUsage(
        prompt_tokens=_token_count(usage.prompt_tokens),
        completion_tokens=_token_count(usage.completion_tokens),
        total_tokens=total,
        estimated_cost=calculate_cost(model_id, usage.prompt_tokens, usage.completion_tokens),
        model=model_id,
        context_window=pricing.context_window,
        usage_percent=total / pricing.context_window * 100,
    )
