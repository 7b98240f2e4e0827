"""Deterministic random utilities and the dice primitive."""

from __future__ import annotations

import random
from dataclasses import dataclass


class DeterministicRNG:
    """Wraps :mod:`random` with deterministic replay support."""

    def __init__(self, seed: int) -> None:
        self._seed = seed & 0xFFFFFFFF
        # nosec B311 - deterministic pseudo-RNG acceptable for game mechanics
        self._random = random.Random(self._seed)

    @property
    def seed(self) -> int:
        return self._seed

    def randint(self, a: int, b: int) -> int:
        return self._random.randint(a, b)

    def roll_die(self, sides: int) -> int:
        return self.randint(1, sides)


@dataclass
class DiceRoll:
    total: int
    natural: int
    formula: str


class DiceRoller:
    """Rolls one N-sided die plus a flat modifier."""

    def __init__(self, rng: DeterministicRNG) -> None:
        self._rng = rng

    def roll(self, sides: int, modifier: int = 0) -> DiceRoll:
        if sides < 1:
            raise ValueError("die must have at least one side")
        natural = self._rng.roll_die(sides)
        if modifier:
            sign = "+" if modifier > 0 else "-"
            formula = f"1d{sides} {sign} {abs(modifier)}"
        else:
            formula = f"1d{sides}"
        return DiceRoll(total=natural + modifier, natural=natural, formula=formula)


__all__ = ["DeterministicRNG", "DiceRoll", "DiceRoller"]
