"""Token cost estimation helpers for provider attempts."""

from __future__ import annotations

from dataclasses import dataclass, field

from taskplane.orchestrator.catalog import catalog_entry

# Share of a bare total token count attributed to the prompt side.
TOTAL_TOKENS_INPUT_SHARE = 0.3


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


@dataclass(slots=True)
class PricingTable:
    """Operator pricing overrides layered over the built-in catalog prices."""

    overrides: dict[tuple[str, str], ModelPricing] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: str) -> PricingTable:
        return cls(overrides=_parse_pricing_mapping(raw))

    def lookup(self, *, provider: str, model: str | None) -> ModelPricing | None:
        provider_key = provider.strip().lower()
        model_key = (model or "").strip()
        for key in ((provider_key, model_key), (provider_key, "*"), ("*", "*")):
            pricing = self.overrides.get(key)
            if pricing is not None:
                return pricing

        entry = catalog_entry(provider_key)
        if entry is None:
            return None
        return ModelPricing(input_per_1m=entry.input_per_1m, output_per_1m=entry.output_per_1m)

    def estimate_cost_usd(
        self,
        *,
        provider: str,
        model: str | None,
        prompt_tokens: int | None,
        completion_tokens: int | None,
        total_tokens: int | None,
    ) -> float | None:
        """Estimate attempt cost in USD from token usage and configured pricing."""

        pricing = self.lookup(provider=provider, model=model)
        if pricing is None:
            return None

        if prompt_tokens is not None and completion_tokens is not None:
            return (
                (prompt_tokens / 1_000_000) * pricing.input_per_1m
                + (completion_tokens / 1_000_000) * pricing.output_per_1m
            )

        if total_tokens is not None:
            input_tokens = total_tokens * TOTAL_TOKENS_INPUT_SHARE
            output_tokens = total_tokens - input_tokens
            return (
                (input_tokens / 1_000_000) * pricing.input_per_1m
                + (output_tokens / 1_000_000) * pricing.output_per_1m
            )
        return None


def _parse_pricing_mapping(raw: str) -> dict[tuple[str, str], ModelPricing]:
    """Parse `TASKPLANE_PROVIDER_PRICING` mapping.

    Format:
    - `provider:model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - supports wildcards in provider/model (`*`)
    - rows with malformed or negative prices are ignored
    """

    parsed: dict[tuple[str, str], ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 4:
            continue
        provider, model, input_price, output_price = parts
        try:
            input_per_1m = float(input_price)
            output_per_1m = float(output_price)
        except ValueError:
            continue
        if input_per_1m < 0 or output_per_1m < 0:
            continue
        parsed[(provider.lower(), model)] = ModelPricing(
            input_per_1m=input_per_1m,
            output_per_1m=output_per_1m,
        )
    return parsed
