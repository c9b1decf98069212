"""
Static LLM price table used by the audit log

Prices are USD per 1 million tokens. This table is only a fallback: when
the extraction service reports the cost of a call, that figure is stored
as-is and these prices are never consulted.
"""

import re
from typing import Dict, Optional

from cv_pipeline.core.logging import get_logger

logger = get_logger(__name__)


# USD per 1M tokens
STATIC_PRICING: Dict[str, Dict[str, Dict[str, float]]] = {
    "openai": {
        "gpt-5": {"input": 3.00, "output": 12.00},
        "gpt-4o": {"input": 2.50, "output": 10.00},
        "gpt-4o-mini": {"input": 0.15, "output": 0.60},
        "gpt-4-turbo": {"input": 10.00, "output": 30.00},
        "gpt-4": {"input": 10.00, "output": 30.00},
        "gpt-3.5-turbo": {"input": 0.50, "output": 1.50},
    },
    "anthropic": {
        "claude-3-opus": {"input": 15.00, "output": 75.00},
        "claude-3-sonnet": {"input": 3.00, "output": 15.00},
        "claude-3-haiku": {"input": 0.25, "output": 1.25},
    },
    "google": {
        "gemini-pro": {"input": 0.50, "output": 1.50},
        "gemini-pro-vision": {"input": 0.50, "output": 1.50},
    },
}

# Provider prefixes some clients put in front of the model name
_PREFIX_PATTERN = re.compile(r"^(openai|anthropic|google|gemini)/")


def normalize_model(model: Optional[str]) -> str:
    """Lower-case the model name and drop a provider prefix."""
    if not model:
        return ""
    return _PREFIX_PATTERN.sub("", model.strip().lower())


def get_pricing(provider: str, model: str) -> Optional[Dict[str, float]]:
    return STATIC_PRICING.get((provider or "").lower(), {}).get(normalize_model(model))


def calculate_cost(
    provider: str, model: str, prompt_tokens: int = 0, completion_tokens: int = 0
) -> float:
    """
    Estimate the cost of a call in USD, rounded to 6 decimals.

    Unknown (provider, model) pairs cost 0 and log a warning.
    """
    pricing = get_pricing(provider, model)
    if pricing is None:
        logger.warning("No pricing found", provider=provider, model=model)
        return 0.0

    input_cost = (prompt_tokens or 0) * pricing["input"] / 1_000_000
    output_cost = (completion_tokens or 0) * pricing["output"] / 1_000_000
    return round(input_cost + output_cost, 6)
