"""Model cost registry and token estimation.

Costs are integer billing units. Token-metered models convert a token count to
units (rounded up, never below the model's minimum charge); flat-cost models
(image/video generation) charge a fixed amount per call.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from workflow_agent_orchestrator.core.usage import TokenUsage

logger = logging.getLogger(__name__)


class CostKind(str, Enum):
    TOKEN = "token"
    FLAT = "flat"


class CalculationMethod(str, Enum):
    ACTUAL = "actual"
    ESTIMATED = "estimated"
    HYBRID = "hybrid"


@dataclass(frozen=True, slots=True)
class CostPolicy:
    kind: CostKind = CostKind.TOKEN
    tokens_per_unit: int = 3000
    min_charge: int = 1
    estimation_accuracy: float = 1.0
    flat_cost: int = 0

    def units_for_tokens(self, tokens: int) -> int:
        """Convert a token count to billing units (ceil, floored at ``min_charge``)."""
        if self.kind is CostKind.FLAT:
            return self.flat_cost
        cost = math.ceil(max(tokens, 0) / self.tokens_per_unit)
        return max(cost, self.min_charge)


DEFAULT_TOKEN_POLICY = CostPolicy(
    kind=CostKind.TOKEN, tokens_per_unit=3000, min_charge=1, estimation_accuracy=1.1
)
DEFAULT_FLAT_POLICY = CostPolicy(kind=CostKind.FLAT, flat_cost=4, min_charge=4)


def _flat(cost: int) -> CostPolicy:
    return CostPolicy(kind=CostKind.FLAT, flat_cost=cost, min_charge=cost)


BUILTIN_POLICIES: dict[str, CostPolicy] = {
    # Reasoning models
    "grok-3-mini-latest": CostPolicy(tokens_per_unit=3000, min_charge=1, estimation_accuracy=1.1),
    "grok-2-latest": CostPolicy(tokens_per_unit=1500, min_charge=2, estimation_accuracy=1.2),
    "grok-2-mini-latest": CostPolicy(tokens_per_unit=2500, min_charge=1, estimation_accuracy=1.1),
    "gpt-4o-mini": CostPolicy(tokens_per_unit=3000, min_charge=1, estimation_accuracy=1.1),
    "gpt-4o": CostPolicy(tokens_per_unit=1500, min_charge=2, estimation_accuracy=1.2),
    # Image models
    "fal-ai/recraft-v3": _flat(6),
    "fal-ai/flux-lora": _flat(6),
    "fal-ai/flux/schnell": _flat(4),
    "fal-ai/flux-realism": _flat(6),
    "fal-ai/flux-pro": _flat(12),
    "fal-ai/flux/dev": _flat(10),
    "fal-ai/stable-diffusion-v3-medium": _flat(3),
    "fal-ai/aura-flow": _flat(3),
    "fal-ai/kolors": _flat(3),
    "fal-ai/stable-cascade": _flat(5),
}


class _PolicyEntry(BaseModel):
    """One entry of a cost-table override file."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["token", "flat"] = "token"
    tokens_per_unit: int = Field(default=3000, gt=0)
    min_charge: int = Field(default=1, ge=0)
    estimation_accuracy: float = Field(default=1.0, gt=0)
    flat_cost: int = Field(default=0, ge=0)

    def to_policy(self) -> CostPolicy:
        return CostPolicy(
            kind=CostKind(self.kind),
            tokens_per_unit=self.tokens_per_unit,
            min_charge=self.min_charge,
            estimation_accuracy=self.estimation_accuracy,
            flat_cost=self.flat_cost,
        )


class ModelCostRegistry:
    """Map of model id to cost policy with explicit fallbacks for unknown ids."""

    def __init__(
        self,
        policies: dict[str, CostPolicy] | None = None,
        token_fallback: CostPolicy = DEFAULT_TOKEN_POLICY,
        flat_fallback: CostPolicy = DEFAULT_FLAT_POLICY,
    ) -> None:
        self._policies: dict[str, CostPolicy] = dict(BUILTIN_POLICIES if policies is None else policies)
        self.token_fallback = token_fallback
        self.flat_fallback = flat_fallback

    @classmethod
    def from_file(cls, path: Path | None) -> ModelCostRegistry:
        """Build the registry from the built-in table, then apply a JSON override file.

        The file maps model ids to policy fields, e.g.
        ``{"my-model": {"kind": "token", "tokens_per_unit": 2000, "min_charge": 1}}``.

        Raises:
            ValueError: If the file can't be read or an entry is invalid.
        """
        registry = cls()
        if path is None:
            return registry

        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ValueError(f"Unable to load cost table {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ValueError(f"Cost table {path} must be a JSON object")

        for model, entry in raw.items():
            try:
                registry.register(model, _PolicyEntry.model_validate(entry).to_policy())
            except ValidationError as e:
                raise ValueError(f"Invalid cost policy for {model!r} in {path}: {e}") from e

        logger.info("Loaded cost table override", extra={"path": str(path), "models": len(raw)})
        return registry

    def register(self, model: str, policy: CostPolicy) -> None:
        self._policies[model] = policy

    def models(self) -> list[str]:
        return sorted(self._policies)

    def policy_for(self, model: str, *, flat: bool = False) -> CostPolicy:
        policy = self._policies.get(model)
        if policy is not None:
            return policy
        fallback = self.flat_fallback if flat else self.token_fallback
        logger.debug(
            "No cost policy registered; using fallback",
            extra={"model": model, "kind": fallback.kind.value},
        )
        return fallback

    def flat_cost(self, model: str) -> int:
        policy = self.policy_for(model, flat=True)
        if policy.kind is CostKind.FLAT:
            return policy.flat_cost
        # A token-metered model used as a flat capability charges its floor.
        return policy.min_charge


_WHITESPACE = re.compile(r"\s+")
_SPECIAL_CHARS = re.compile(r"[.,!?;:()\[\]{}\"`']")
_NUMBERS = re.compile(r"\d+")
_CODE_SPANS = re.compile(r"```[\s\S]*?```|`[^`]+`")


def estimate_tokens(text: str) -> int:
    """Estimate the token count of ``text``.

    Roughly four characters per token, plus small surcharges for word count,
    punctuation, numbers and code spans.
    """
    if not text:
        return 0

    base = math.ceil(len(text) / 4)
    words = [w for w in _WHITESPACE.split(text) if w]
    word_bonus = math.ceil(len(words) * 0.1)
    punctuation_bonus = math.ceil(len(_SPECIAL_CHARS.findall(text)) * 0.05)
    number_bonus = math.ceil(len(_NUMBERS.findall(text)) * 0.1)
    code_bonus = math.ceil(len(_CODE_SPANS.findall(text)) * 0.2)
    return base + word_bonus + punctuation_bonus + number_bonus + code_bonus


@dataclass(frozen=True, slots=True)
class UsageBreakdown:
    """Realised usage for one billed call."""

    input_tokens: int
    output_tokens: int
    cost: int
    model: str
    calculation_method: CalculationMethod

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_json(self) -> dict[str, object]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "cost": self.cost,
            "model": self.model,
            "calculation_method": self.calculation_method.value,
        }


def pre_estimate_cost(
    input_text: str,
    policy: CostPolicy,
    *,
    output_multiple: float = 2.5,
    safety_factor: float = 1.3,
) -> int:
    """Worst-case cost of a call whose prompt is ``input_text``."""
    if policy.kind is CostKind.FLAT:
        return policy.flat_cost
    input_tokens = estimate_tokens(input_text)
    output_tokens = math.ceil(input_tokens * output_multiple)
    adjusted = math.ceil((input_tokens + output_tokens) * safety_factor * policy.estimation_accuracy)
    return policy.units_for_tokens(adjusted)


def calculate_usage(
    model: str,
    policy: CostPolicy,
    input_text: str,
    output_text: str,
    usage: TokenUsage | None,
) -> UsageBreakdown:
    """Combine provider-reported counters with estimates for whatever is missing.

    The method is ``actual`` when both counters were reported, ``estimated``
    when neither was, and ``hybrid`` otherwise.
    """
    if policy.kind is CostKind.FLAT:
        return UsageBreakdown(0, 0, policy.flat_cost, model, CalculationMethod.ACTUAL)

    reported = usage or TokenUsage()
    input_tokens = reported.input_tokens if reported.input_tokens is not None else estimate_tokens(input_text)
    output_tokens = (
        reported.output_tokens if reported.output_tokens is not None else estimate_tokens(output_text)
    )

    if reported.is_complete:
        method = CalculationMethod.ACTUAL
    elif reported.is_empty:
        method = CalculationMethod.ESTIMATED
    else:
        method = CalculationMethod.HYBRID

    cost = policy.units_for_tokens(input_tokens + output_tokens)
    return UsageBreakdown(input_tokens, output_tokens, cost, model, method)

