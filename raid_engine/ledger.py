"""Resource Ledger primitives over Organization Point banks.

All functions are pure: they take a bank mapping and return a new one. The
caller persists the result. Cost keys outside the configured category set
(for example ``materials``) are ignored.
"""
from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional

from .models import Faction


def _known(categories: Optional[Iterable[str]], cost: Mapping[str, int]) -> Iterable[str]:
    if categories is None:
        return list(cost.keys())
    allowed = set(categories)
    return [key for key in cost.keys() if key in allowed]


def normalize_bank(bank: Mapping[str, object], categories: Iterable[str]) -> Dict[str, int]:
    """Return ``bank`` with every category present as a non-negative int."""

    normalized: Dict[str, int] = {}
    for key in categories:
        try:
            value = int(bank.get(key, 0) or 0)
        except (TypeError, ValueError):
            value = 0
        normalized[key] = max(0, value)
    return normalized


def get_bank(faction: Faction, categories: Iterable[str]) -> Dict[str, int]:
    return normalize_bank(faction.bank, categories)


def can_afford(
    bank: Mapping[str, int],
    cost: Mapping[str, int],
    categories: Optional[Iterable[str]] = None,
) -> bool:
    """True when every costed category is covered by the bank level."""

    for key in _known(categories, cost):
        amount = int(cost.get(key, 0) or 0)
        if amount <= 0:
            continue
        if int(bank.get(key, 0) or 0) < amount:
            return False
    return True


def spend(
    bank: Mapping[str, int],
    cost: Mapping[str, int],
    categories: Optional[Iterable[str]] = None,
) -> Dict[str, int]:
    """Subtract ``cost`` from ``bank`` clamping each category at zero.

    Never raises; callers check :func:`can_afford` first.
    """

    result = {key: int(value or 0) for key, value in bank.items()}
    for key in _known(categories, cost):
        amount = int(cost.get(key, 0) or 0)
        if amount <= 0:
            continue
        result[key] = max(0, result.get(key, 0) - amount)
    return result


def credit(
    bank: Mapping[str, int],
    delta: Mapping[str, int],
    maxima: Mapping[str, int],
    default_max: int,
    categories: Optional[Iterable[str]] = None,
) -> Dict[str, int]:
    """Apply a signed delta to ``bank`` clamped to ``[0, max]`` per category."""

    result = {key: int(value or 0) for key, value in bank.items()}
    for key in _known(categories, delta):
        cap = int(maxima.get(key, default_max))
        result[key] = max(0, min(cap, result.get(key, 0) + int(delta.get(key, 0) or 0)))
    return result


def add_into(total: Dict[str, int], cost: Mapping[str, int]) -> Dict[str, int]:
    for key, amount in cost.items():
        total[key] = total.get(key, 0) + int(amount or 0)
    return total


def format_cost(cost: Mapping[str, int]) -> str:
    parts = [f"{key}:{int(amount)}" for key, amount in cost.items() if int(amount or 0)]
    return ", ".join(parts) if parts else "nothing"


__all__ = [
    "add_into",
    "can_afford",
    "credit",
    "format_cost",
    "get_bank",
    "normalize_bank",
    "spend",
]
