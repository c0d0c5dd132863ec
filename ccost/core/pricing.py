"""
Pricing calculations and rate management.

Handles cost computations for Claude models, with a builtin rate table
that can be overridden by a cached pricing file.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Union

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

TOKENS_PER_MILLION = 1_000_000

# Model whose rates are used when a name cannot be resolved
FALLBACK_MODEL = "claude-sonnet-4-6"

# Only unresolved names with this prefix are reported back as warnings
UNKNOWN_MODEL_WARNING_PREFIX = "claude-"


@dataclass(frozen=True)
class ModelPricing:
    """Per-million-token rates for a specific model (USD)."""
    input_per_million: float
    output_per_million: float
    cache_create_per_million: float
    cache_read_per_million: float

    def __post_init__(self):
        """Validate rates are non-negative."""
        for name in ("input_per_million", "output_per_million",
                     "cache_create_per_million", "cache_read_per_million"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

    @classmethod
    def from_dict(cls, data: Mapping) -> "ModelPricing":
        """Build pricing from an override-file entry.

        Raises:
            ValueError: If a rate is missing or not a number
        """
        if not isinstance(data, Mapping):
            raise ValueError("pricing entry must be an object")
        rates = {}
        for json_key, field_name in _OVERRIDE_FIELDS.items():
            if json_key not in data:
                raise ValueError(f"missing '{json_key}'")
            value = data[json_key]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"'{json_key}' must be a number")
            rates[field_name] = float(value)
        return cls(**rates)

    def to_dict(self) -> Dict[str, float]:
        return {json_key: getattr(self, field_name) for json_key, field_name in _OVERRIDE_FIELDS.items()}


_OVERRIDE_FIELDS = {
    "inputPerMillion": "input_per_million",
    "outputPerMillion": "output_per_million",
    "cacheCreatePerMillion": "cache_create_per_million",
    "cacheReadPerMillion": "cache_read_per_million",
}


@dataclass(frozen=True)
class PricingLookup:
    """Outcome of resolving a model name against the pricing table."""
    model: str
    pricing: ModelPricing
    matched_key: Optional[str]
    fallback: bool

    @property
    def should_warn(self) -> bool:
        """Whether this unresolved model is reported to the user."""
        return self.fallback and self.model.startswith(UNKNOWN_MODEL_WARNING_PREFIX)

    def cost(self, usage: TokenUsage) -> float:
        return _cost_for(self.pricing, usage)


class PricingTable:
    """Immutable snapshot of model pricing.

    Built once at startup and passed to whatever needs to compute cost.
    """

    def __init__(self, prices: Mapping[str, ModelPricing]):
        if FALLBACK_MODEL not in prices:
            raise ValueError(f"Pricing table must contain fallback model: {FALLBACK_MODEL}")
        self._prices = MappingProxyType(dict(prices))
        # Longest key first so the most specific variant wins a fuzzy match
        self._fuzzy_keys = tuple(sorted(self._prices, key=lambda k: (-len(k), k)))

    @property
    def prices(self) -> Mapping[str, ModelPricing]:
        return self._prices

    def lookup(self, model: str) -> PricingLookup:
        """Resolve pricing for a model name.

        Tries an exact match, then a bidirectional substring match against
        known keys (handles dated or suffixed model names), then falls back
        to the fallback model.

        Args:
            model: Model identifier as logged

        Returns:
            PricingLookup describing which rates apply
        """
        if model in self._prices:
            return PricingLookup(model, self._prices[model], model, False)

        if model:
            for key in self._fuzzy_keys:
                if key in model or model in key:
                    return PricingLookup(model, self._prices[key], key, False)

        return PricingLookup(model, self._prices[FALLBACK_MODEL], None, True)

    def get_pricing(self, model: str) -> ModelPricing:
        return self.lookup(model).pricing

    def cost(self, model: str, usage: TokenUsage) -> float:
        """Calculate cost in USD for the given usage of a model."""
        return self.lookup(model).cost(usage)

    def merged(self, overrides: Mapping[str, ModelPricing]) -> "PricingTable":
        """Return a new table with overrides applied; override wins."""
        prices = dict(self._prices)
        prices.update(overrides)
        return PricingTable(prices)

    def __len__(self) -> int:
        return len(self._prices)

    def __contains__(self, model: object) -> bool:
        return model in self._prices


def _cost_for(pricing: ModelPricing, usage: TokenUsage) -> float:
    return (
        usage.input_tokens * pricing.input_per_million / TOKENS_PER_MILLION
        + usage.output_tokens * pricing.output_per_million / TOKENS_PER_MILLION
        + usage.cache_creation_input_tokens * pricing.cache_create_per_million / TOKENS_PER_MILLION
        + usage.cache_read_input_tokens * pricing.cache_read_per_million / TOKENS_PER_MILLION
    )


_OPUS = ModelPricing(
    input_per_million=5,
    output_per_million=25,
    cache_create_per_million=6.25,
    cache_read_per_million=0.5,
)
_SONNET = ModelPricing(
    input_per_million=3,
    output_per_million=15,
    cache_create_per_million=3.75,
    cache_read_per_million=0.3,
)
_HAIKU = ModelPricing(
    input_per_million=1,
    output_per_million=5,
    cache_create_per_million=1.25,
    cache_read_per_million=0.1,
)

# Builtin pricing table - overridable by the cached pricing file
BUILTIN_PRICING_TABLE = PricingTable({
    "claude-opus-4-6": _OPUS,
    "claude-opus-4-5-20251101": _OPUS,
    "claude-sonnet-4-6": _SONNET,
    "claude-sonnet-4-5-20250929": _SONNET,
    "claude-haiku-4-5-20251001": _HAIKU,
})


def load_pricing_overrides(path: Union[str, Path]) -> Dict[str, ModelPricing]:
    """Load model pricing overrides from a JSON file.

    The file maps model name to an object with ``inputPerMillion``,
    ``outputPerMillion``, ``cacheCreatePerMillion`` and
    ``cacheReadPerMillion``. A missing file yields no overrides. A file that
    cannot be read or decoded is ignored as a whole.

    Args:
        path: Path to the override file

    Returns:
        Mapping of model name to pricing (possibly empty)
    """
    override_path = Path(path)
    if not override_path.exists():
        return {}

    try:
        with open(override_path, 'r', encoding='utf-8') as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable pricing file %s: %s", override_path, e)
        return {}

    if not isinstance(raw, dict):
        logger.warning("Ignoring pricing file %s: top level must be an object", override_path)
        return {}

    overrides = {}
    for model, entry in raw.items():
        try:
            overrides[model] = ModelPricing.from_dict(entry)
        except ValueError as e:
            logger.warning("Ignoring pricing file %s: model %r: %s", override_path, model, e)
            return {}
    return overrides


def load_pricing_table(override_path: Optional[Union[str, Path]] = None) -> PricingTable:
    """Build the pricing snapshot for this process.

    Args:
        override_path: Optional override file merged over the builtin table

    Returns:
        PricingTable with overrides applied
    """
    if override_path is None:
        return BUILTIN_PRICING_TABLE
    overrides = load_pricing_overrides(override_path)
    if overrides:
        logger.debug("Loaded %d pricing overrides from %s", len(overrides), override_path)
    return BUILTIN_PRICING_TABLE.merged(overrides)


def calculate_cost(
    model: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    cache_creation_input_tokens: int = 0,
    cache_read_input_tokens: int = 0,
    table: PricingTable = BUILTIN_PRICING_TABLE,
) -> float:
    """Calculate total cost for model usage.

    Cost is the sum over the four token categories of
    ``tokens * rate_per_million / 1,000,000``. No rounding is applied.

    Args:
        model: Model identifier
        input_tokens: Uncached input tokens
        output_tokens: Output tokens
        cache_creation_input_tokens: Tokens written to the prompt cache
        cache_read_input_tokens: Tokens read from the prompt cache
        table: Pricing snapshot to use

    Returns:
        Cost in USD
    """
    usage = TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_creation_input_tokens=cache_creation_input_tokens,
        cache_read_input_tokens=cache_read_input_tokens,
    )
    return table.cost(model, usage)
