"""
Vision model catalogue and cost calculation.

Each entry carries the token ceiling, the reasoning-effort knob where the
model supports one, JSON-mode support and per-1K token pricing (USD).
"""

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

AI_MODELS: Dict[str, Dict[str, Any]] = {
    "gpt-5": {
        "name": "gpt-5",
        "pricing": {"input_per_1k": 0.01, "output_per_1k": 0.03},
        # Reasoning tokens count against the ceiling, so GPT-5 needs room
        "max_tokens": 16000,
        "reasoning_effort": "medium",
        "json_mode": True,
        "supports_temperature": False,
    },
    "gpt-5-mini": {
        "name": "gpt-5-mini",
        "pricing": {"input_per_1k": 0.0015, "output_per_1k": 0.006},
        "max_tokens": 8000,
        "reasoning_effort": "low",
        "json_mode": True,
        "supports_temperature": False,
    },
    "gpt-5-nano": {
        "name": "gpt-5-nano",
        "pricing": {"input_per_1k": 0.0005, "output_per_1k": 0.002},
        "max_tokens": 4000,
        "reasoning_effort": "low",
        "json_mode": True,
        "supports_temperature": False,
    },
    "gpt-4o": {
        "name": "gpt-4o",
        "pricing": {"input_per_1k": 0.005, "output_per_1k": 0.015},
        "max_tokens": 4000,
        "reasoning_effort": None,
        "json_mode": True,
        "supports_temperature": True,
    },
    "gpt-4o-mini": {
        "name": "gpt-4o-mini",
        "pricing": {"input_per_1k": 0.00015, "output_per_1k": 0.0006},
        "max_tokens": 4000,
        "reasoning_effort": None,
        "json_mode": True,
        "supports_temperature": True,
    },
}

# Split applied when the provider only reports total tokens
FALLBACK_INPUT_SHARE = 0.8


def get_model_config(model_name: str) -> Dict[str, Any]:
    """
    Look up a model in the catalogue.

    Raises:
        ValueError: If the model is not in the catalogue
    """
    model = AI_MODELS.get(model_name)
    if not model:
        raise ValueError(
            f"Unknown model: {model_name}. Available: {', '.join(AI_MODELS)}"
        )
    return model


def calculate_cost(
    model_name: str,
    prompt_tokens: Optional[int],
    completion_tokens: Optional[int],
    total_tokens: Optional[int] = None,
) -> float:
    """
    Calculate the USD cost of one model call.

    The result depends only on the arguments, so the same usage always
    yields the same figure.

    Args:
        model_name: Catalogue model name
        prompt_tokens: Input tokens reported by the provider
        completion_tokens: Output tokens reported by the provider
        total_tokens: Used with an 80/20 split when the detailed counts are missing

    Returns:
        float: Cost in USD rounded to 6 decimal places
    """
    pricing = get_model_config(model_name)["pricing"]

    if not prompt_tokens and not completion_tokens and total_tokens:
        prompt_tokens = total_tokens * FALLBACK_INPUT_SHARE
        completion_tokens = total_tokens - prompt_tokens
        logger.debug(
            "Detailed token usage missing for %s; splitting %s total tokens 80/20",
            model_name,
            total_tokens,
        )

    input_cost = ((prompt_tokens or 0) / 1000) * pricing["input_per_1k"]
    output_cost = ((completion_tokens or 0) / 1000) * pricing["output_per_1k"]
    return round(input_cost + output_cost, 6)
