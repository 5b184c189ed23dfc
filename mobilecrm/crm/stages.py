from __future__ import annotations

from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol


class StageLike(Protocol):
    name: str
    probability: int


def resolve_stage_probability(stages: Iterable[StageLike], stage_name: str) -> int:
    """Return the probability of the first stage named exactly ``stage_name``, else 0."""
    for stage in stages:
        if stage.name == stage_name:
            return int(stage.probability)
    return 0


def weighted_value(value: Decimal | float | int, probability: int) -> Decimal:
    return Decimal(str(value)) * Decimal(probability) / Decimal(100)


def round_amount(value: Decimal) -> int:
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
