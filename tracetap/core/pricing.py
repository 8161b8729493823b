"""
Model Pricing

Cost lookup for LLM calls. The table is an explicit object handed to the
proxy and the OTLP normalizer so cost derivation stays a pure function of
(model, prompt tokens, completion tokens).
"""

from __future__ import annotations
import json
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger("tracetap.pricing")


# =============================================================================
# MODEL PRICING (per 1M tokens)
# =============================================================================

MODEL_PRICING: Dict[str, Dict[str, float]] = {
    # OpenAI GPT-4o Series
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4o-2024-05-13": {"input": 5.00, "output": 15.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},

    # OpenAI GPT-4.1 / GPT-4 / GPT-3.5
    "gpt-4.1": {"input": 2.00, "output": 8.00},
    "gpt-4.1-mini": {"input": 0.40, "output": 1.60},
    "gpt-4.1-nano": {"input": 0.10, "output": 0.40},
    "gpt-4-turbo": {"input": 10.00, "output": 30.00},
    "gpt-4": {"input": 30.00, "output": 60.00},
    "gpt-4-32k": {"input": 60.00, "output": 120.00},
    "gpt-3.5-turbo": {"input": 0.50, "output": 1.50},
    "gpt-3.5-turbo-1106": {"input": 1.00, "output": 2.00},

    # OpenAI reasoning
    "o1": {"input": 15.00, "output": 60.00},
    "o1-mini": {"input": 3.00, "output": 12.00},
    "o3-mini": {"input": 1.10, "output": 4.40},

    # OpenAI embeddings
    "text-embedding-3-small": {"input": 0.02, "output": 0.0},
    "text-embedding-3-large": {"input": 0.13, "output": 0.0},

    # Anthropic
    "claude-3-5-sonnet": {"input": 3.00, "output": 15.00},
    "claude-3-5-haiku": {"input": 0.80, "output": 4.00},
    "claude-3-7-sonnet": {"input": 3.00, "output": 15.00},
    "claude-3-opus": {"input": 15.00, "output": 75.00},
    "claude-3-sonnet": {"input": 3.00, "output": 15.00},
    "claude-3-haiku": {"input": 0.25, "output": 1.25},
    "claude-sonnet-4": {"input": 3.00, "output": 15.00},
    "claude-opus-4": {"input": 15.00, "output": 75.00},

    # Google Gemini
    "gemini-2.0-flash": {"input": 0.10, "output": 0.40},
    "gemini-1.5-pro": {"input": 1.25, "output": 5.00},
    "gemini-1.5-flash": {"input": 0.075, "output": 0.30},
    "gemini-1.5-flash-8b": {"input": 0.0375, "output": 0.15},
    "gemini-1.0-pro": {"input": 0.50, "output": 1.50},

    # Cohere
    "command-r-plus": {"input": 2.50, "output": 10.00},
    "command-r": {"input": 0.15, "output": 0.60},
    "command-a": {"input": 2.50, "output": 10.00},

    # Mistral
    "mistral-large": {"input": 2.00, "output": 6.00},
    "mistral-small": {"input": 0.20, "output": 0.60},
    "codestral": {"input": 0.20, "output": 0.60},

    # Groq-hosted open models
    "llama-3.1-8b-instant": {"input": 0.05, "output": 0.08},
    "llama-3.3-70b-versatile": {"input": 0.59, "output": 0.79},

    # Default fallback
    "_default": {"input": 1.00, "output": 3.00},
}

# Vendor prefixes used by routers and SDKs ("openai/gpt-4o")
VENDOR_PREFIXES = ("openai/", "anthropic/", "google/", "azure/", "together/")


def normalize_model_name(model: Optional[str]) -> Optional[str]:
    """Lower-case a model name and drop a leading vendor prefix."""
    if not model:
        return None
    normalized = model.lower().strip()
    for prefix in VENDOR_PREFIXES:
        if normalized.startswith(prefix):
            return normalized[len(prefix):]
    return normalized


class PricingTable:
    """
    Per-model token prices.

    Prices are kept per 1M tokens. A LiteLLM `model_prices_and_context_window`
    style JSON file can be overlaid on top of the built-in table.
    """

    def __init__(self, prices: Optional[Dict[str, Dict[str, float]]] = None):
        source = prices if prices is not None else MODEL_PRICING
        self._prices: Dict[str, Dict[str, float]] = {k.lower(): dict(v) for k, v in source.items()}
        self._prices.setdefault("_default", dict(MODEL_PRICING["_default"]))
        # Longest keys first so "gpt-4o-mini" wins over "gpt-4o" and "gpt-4"
        self._prefix_order = sorted(
            (k for k in self._prices if not k.startswith("_")),
            key=len,
            reverse=True,
        )

    @classmethod
    def from_litellm(cls, data: Dict[str, Any], base: Optional[Dict[str, Dict[str, float]]] = None) -> "PricingTable":
        """Build a table from LiteLLM per-token prices layered over `base`."""
        prices = {k: dict(v) for k, v in (base if base is not None else MODEL_PRICING).items()}
        for name, entry in data.items():
            if not isinstance(entry, dict):
                continue
            input_cost = entry.get("input_cost_per_token")
            if input_cost is None:
                continue
            output_cost = entry.get("output_cost_per_token", input_cost)
            key = normalize_model_name(name)
            if key:
                prices[key] = {
                    "input": float(input_cost) * 1_000_000,
                    "output": float(output_cost or 0) * 1_000_000,
                }
        return cls(prices)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "PricingTable":
        """Built-in table, overlaid with `path` when it is given and readable."""
        if not path:
            return cls()
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read pricing file {path}: {e}")
            return cls()
        table = cls.from_litellm(data)
        logger.info(f"Loaded pricing overlay from {path} ({len(data)} entries)")
        return table

    def __len__(self) -> int:
        return len(self._prefix_order)

    def find(self, model: Optional[str]) -> Optional[Dict[str, float]]:
        """Exact then longest-prefix match. None when nothing matches."""
        normalized = normalize_model_name(model)
        if not normalized:
            return None
        if normalized in self._prices:
            return self._prices[normalized]
        for key in self._prefix_order:
            if normalized.startswith(key):
                return self._prices[key]
        return None

    def get_pricing(self, model: Optional[str]) -> Dict[str, float]:
        """Get pricing for a model, falling back to the default rate."""
        return self.find(model) or self._prices["_default"]

    def calculate_cost(self, model: Optional[str], prompt_tokens: int, completion_tokens: int) -> float:
        """Calculate cost in USD for a call."""
        pricing = self.get_pricing(model)
        input_cost = ((prompt_tokens or 0) / 1_000_000) * pricing["input"]
        output_cost = ((completion_tokens or 0) / 1_000_000) * pricing["output"]
        return round(input_cost + output_cost, 8)
