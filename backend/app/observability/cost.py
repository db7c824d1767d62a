"""
Token cost estimate for AI analysis calls.

Model pricing catalogue (USD per 1 000 tokens, public list prices).
Update MODEL_PRICING when rates change. Job totals are estimates for
operators, not billing records.
"""

from __future__ import annotations

from decimal import Decimal

# (input_price_per_1k, output_price_per_1k)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "anthropic.claude-3-5-sonnet-20241022-v2:0": (0.0030,  0.0150),
    "anthropic.claude-3-5-sonnet-20240620-v1:0": (0.0030,  0.0150),
    "anthropic.claude-3-7-sonnet-20250219-v1:0": (0.0030,  0.0150),
    "anthropic.claude-3-5-haiku-20241022-v1:0":  (0.0008,  0.0040),
    "anthropic.claude-3-haiku-20240307-v1:0":    (0.00025, 0.00125),
    "anthropic.claude-3-opus-20240229-v1:0":     (0.0150,  0.0750),
}

_DEFAULT_PRICING = (0.0030, 0.0150)   # fallback for unknown models


def _base_model(model: str) -> str:
    """Strip a cross-region inference prefix: "us.anthropic..." → "anthropic..."."""
    head, _, rest = model.partition(".")
    return rest if len(head) == 2 and rest.startswith("anthropic.") else model


def compute_cost(model: str, input_tokens: int, output_tokens: int) -> Decimal:
    """USD cost for the given token counts, as an exact Decimal."""
    price_in, price_out = MODEL_PRICING.get(_base_model(model), _DEFAULT_PRICING)
    cost = (input_tokens / 1000.0 * price_in) + (output_tokens / 1000.0 * price_out)
    return Decimal(str(round(cost, 9)))


def estimate_cost_usd(model: str, input_tokens: int, output_tokens: int) -> float:
    return float(round(compute_cost(model, input_tokens, output_tokens), 4))
