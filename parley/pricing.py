"""Model pricing for cost estimation.

Maps model identifiers (or identifier prefixes) to USD per 1M tokens.
Prices are approximate and should be periodically updated.
"""

from __future__ import annotations

from typing import NamedTuple


class ModelPricing(NamedTuple):
    input_per_1m: float
    output_per_1m: float


MODEL_PRICING: dict[str, ModelPricing] = {
    # OpenAI: GPT-4.5
    "gpt-4.5-preview": ModelPricing(75.00, 150.00),
    "gpt-4.5-preview-2025-02-27": ModelPricing(75.00, 150.00),
    # OpenAI: GPT-4.1
    "gpt-4.1": ModelPricing(2.00, 8.00),
    "gpt-4.1-mini": ModelPricing(0.40, 1.60),
    "gpt-4.1-nano": ModelPricing(0.10, 0.40),
    # OpenAI: GPT-4o
    "gpt-4o": ModelPricing(2.50, 10.00),
    "gpt-4o-2024-08-06": ModelPricing(2.50, 10.00),
    "gpt-4o-2024-11-20": ModelPricing(2.50, 10.00),
    "gpt-4o-2024-05-13": ModelPricing(5.00, 15.00),
    "gpt-4o-audio-preview": ModelPricing(2.50, 10.00),
    "gpt-4o-realtime-preview": ModelPricing(5.00, 20.00),
    "chatgpt-4o-latest": ModelPricing(5.00, 15.00),
    "gpt-4o-mini": ModelPricing(0.15, 0.60),
    "gpt-4o-mini-2024-07-18": ModelPricing(0.15, 0.60),
    "gpt-4o-mini-audio-preview": ModelPricing(0.15, 0.60),
    "gpt-4o-mini-realtime-preview": ModelPricing(0.60, 2.40),
    # OpenAI: o-series reasoning
    "o1": ModelPricing(15.00, 60.00),
    "o1-2024-12-17": ModelPricing(15.00, 60.00),
    "o1-preview-2024-09-12": ModelPricing(15.00, 60.00),
    "o1-pro": ModelPricing(150.00, 600.00),
    "o1-mini": ModelPricing(1.10, 4.40),
    "o3-mini": ModelPricing(1.10, 4.40),
    "o4-mini": ModelPricing(1.10, 4.40),
    # OpenAI: GPT-4 Turbo / GPT-4
    "gpt-4-turbo": ModelPricing(10.00, 30.00),
    "gpt-4-turbo-2024-04-09": ModelPricing(10.00, 30.00),
    "gpt-4-0125-preview": ModelPricing(10.00, 30.00),
    "gpt-4-1106-preview": ModelPricing(10.00, 30.00),
    "gpt-4": ModelPricing(30.00, 60.00),
    "gpt-4-0613": ModelPricing(30.00, 60.00),
    "gpt-4-32k": ModelPricing(60.00, 120.00),
    # OpenAI: Legacy
    "gpt-3.5-turbo": ModelPricing(0.50, 1.50),
    "gpt-3.5-turbo-0125": ModelPricing(0.50, 1.50),
    "gpt-3.5-turbo-1106": ModelPricing(1.00, 2.00),
    "gpt-3.5-turbo-instruct": ModelPricing(1.50, 2.00),
    "davinci-002": ModelPricing(2.00, 2.00),
    "babbage-002": ModelPricing(0.40, 0.40),
    # Anthropic: dated identifiers resolve through the prefix match
    "claude-opus-4-1": ModelPricing(15.00, 75.00),
    "claude-opus-4": ModelPricing(15.00, 75.00),
    "claude-sonnet-4-5": ModelPricing(3.00, 15.00),
    "claude-sonnet-4": ModelPricing(3.00, 15.00),
    "claude-haiku-4-5": ModelPricing(1.00, 5.00),
    "claude-3-7-sonnet": ModelPricing(3.00, 15.00),
    "claude-3-5-sonnet": ModelPricing(3.00, 15.00),
    "claude-3-5-haiku": ModelPricing(0.80, 4.00),
    "claude-3-opus": ModelPricing(15.00, 75.00),
    "claude-3-sonnet": ModelPricing(3.00, 15.00),
    "claude-3-haiku": ModelPricing(0.25, 1.25),
}


def get_model_pricing(
    model: str,
    table: dict[str, ModelPricing] | None = None,
) -> ModelPricing | None:
    """Look up pricing for a model identifier.

    An exact match wins. Otherwise the longest known key that prefixes
    ``model`` is used, so "claude-3-5-sonnet-20241022" resolves to
    "claude-3-5-sonnet" and never to a shorter key that also matches.
    """
    pricing = MODEL_PRICING if table is None else table
    if model in pricing:
        return pricing[model]
    prefix = max((key for key in pricing if model.startswith(key)), key=len, default=None)
    if prefix is None:
        return None
    return pricing[prefix]


def cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Estimated USD cost of one response; 0.0 for unknown models."""
    pricing = get_model_pricing(model)
    if pricing is None:
        return 0.0
    return (
        input_tokens * pricing.input_per_1m / 1_000_000
        + output_tokens * pricing.output_per_1m / 1_000_000
    )
