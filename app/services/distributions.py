from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

MINIMUM_LEVELS = 3

DEFAULT_LEVELS: dict[str, list[float]] = {
    "user_payment_amount": [0, 0.01, 3, 6, 10, 20, 50, 100, 200, 300],
    "user_payment_count": [0, 1, 3, 5, 8, 13, 21, 34],
    "product_shop_count": [0, 1, 3, 5, 8, 13, 21, 34],
    "product_days_from_last_order": [0, 7, 14, 31, 93, 186, 365, 99999],
}


class DistributionConfigurationError(ValueError):
    """Raised when a distribution level set cannot be used."""


@dataclass(frozen=True, slots=True)
class DistributionBucket:
    lower: float
    upper: float | None
    count: int

    def contains(self, value: float) -> bool:
        if value < self.lower:
            return False
        return self.upper is None or value < self.upper


def normalise_levels(levels: Iterable[float]) -> list[float]:
    """Sort ``levels`` and make sure the set starts at zero.

    At least three non-negative values are required before the leading zero
    is added.
    """

    values = list(levels)
    if len(values) < MINIMUM_LEVELS:
        raise DistributionConfigurationError(
            f"Required at least {MINIMUM_LEVELS} distribution levels, got {len(values)}."
        )
    values.sort()
    if values[0] < 0:
        raise DistributionConfigurationError(
            f"Distribution levels must not be negative, got {values[0]}."
        )
    if values[0] != 0:
        values.insert(0, 0)
    return values


def level_ranges(levels: Sequence[float]) -> list[tuple[float, float | None]]:
    """Pair consecutive levels into half-open ranges; the last one is open-ended."""

    ranges: list[tuple[float, float | None]] = []
    for index, lower in enumerate(levels):
        upper = levels[index + 1] if index + 1 < len(levels) else None
        ranges.append((lower, upper))
    return ranges


class DistributionConfiguration:
    """Named level sets for the product detail distributions."""

    def __init__(self, configured: Mapping[str, Iterable[float]] | None = None) -> None:
        self._levels: dict[str, list[float]] = {}
        for key, levels in (configured or {}).items():
            self.set(key, levels)

    def set(self, key: str, levels: Iterable[float]) -> None:
        self._levels[key] = normalise_levels(levels)

    def levels(self, key: str) -> list[float]:
        if key in self._levels:
            return list(self._levels[key])
        try:
            return list(DEFAULT_LEVELS[key])
        except KeyError:
            raise DistributionConfigurationError(f"Unknown distribution '{key}'.") from None
