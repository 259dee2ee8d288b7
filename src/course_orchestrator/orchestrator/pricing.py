"""Token cost estimation for generation attempts."""

from __future__ import annotations

import os
from dataclasses import dataclass

PRICING_ENV = "COURSE_ORCH_PRICING"


@dataclass(slots=True, frozen=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


def estimate_cost_usd(*, model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Estimate attempt cost in USD; zero when no pricing is configured for the model."""

    pricing = lookup_pricing(model)
    if pricing is None:
        return 0.0
    return (prompt_tokens / 1_000_000) * pricing.input_per_1m + (
        completion_tokens / 1_000_000
    ) * pricing.output_per_1m


def lookup_pricing(model: str) -> ModelPricing | None:
    mapping = parse_pricing_mapping(os.getenv(PRICING_ENV, ""))
    direct = mapping.get(model.strip())
    if direct is not None:
        return direct
    return mapping.get("*")


def parse_pricing_mapping(raw: str) -> dict[str, ModelPricing]:
    """Parse `COURSE_ORCH_PRICING` mapping.

    Format:
    - `model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - `*` as model applies to every model without its own entry

    Malformed entries are ignored.
    """

    parsed: dict[str, ModelPricing] = {}
    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        model, sep, prices = value.partition(":")
        input_price, sep2, output_price = prices.partition(":")
        if not sep or not sep2:
            continue
        try:
            parsed[model.strip()] = ModelPricing(
                input_per_1m=float(input_price),
                output_per_1m=float(output_price),
            )
        except ValueError:
            continue
    return parsed
