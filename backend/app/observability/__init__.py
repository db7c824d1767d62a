"""
Observability Package — token cost estimates

Usage::

    from app.observability import estimate_cost_usd
    job.estimated_cost_usd = estimate_cost_usd(model_id, tokens_in, tokens_out)
"""

from app.observability.cost import MODEL_PRICING, compute_cost, estimate_cost_usd

__all__ = ["MODEL_PRICING", "compute_cost", "estimate_cost_usd"]
