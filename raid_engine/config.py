"""Configuration loading utilities for the raid engine."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml


DEFAULT_SETTINGS_PATH = Path(__file__).parent / "data" / "settings.yaml"

_DEFAULT_CATEGORIES: Tuple[str, ...] = (
    "violence",
    "nonlethal",
    "intrigue",
    "economy",
    "softpower",
    "diplomacy",
    "logistics",
    "culture",
    "faith",
)
_DEFAULT_REQUEST_NAMESPACES: Tuple[str, ...] = (
    "territory",
    "eden",
    "tikkun",
    "alignment",
    "recon",
    "hex",
    "trade",
    "repairs",
    "spark",
)


@dataclass(frozen=True)
class Settings:
    """Typed view over the settings YAML file."""

    resource_categories: Tuple[str, ...]
    default_max: int
    resource_maxima: Dict[str, int]
    base_dc: int
    die_sides: int
    auto_win_total: int
    default_category: str
    unity_awards: Dict[str, int]
    unity_bounds: Tuple[int, int]
    morale_awards: Dict[str, int]
    morale_bounds: Tuple[int, int]
    request_namespaces: Tuple[str, ...]
    advance_interval_minutes: int
    campaign_seed: int

    def max_for(self, category: str) -> int:
        return int(self.resource_maxima.get(category, self.default_max))

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Settings":
        data = data or {}
        resources = data.get("resources", {})
        rounds = data.get("rounds", {})
        awards = data.get("outcome_awards", {})
        unity = awards.get("unity", {})
        morale = awards.get("morale", {})
        bounds = awards.get("bounds", {})
        turns = data.get("turns", {})
        campaign = data.get("campaign", {})
        categories = tuple(resources.get("categories") or _DEFAULT_CATEGORIES)
        default_category = str(rounds.get("default_category", "violence"))
        if default_category not in categories:
            raise ValueError(f"default_category {default_category!r} is not a resource category")
        return Settings(
            resource_categories=categories,
            default_max=int(resources.get("default_max", 10)),
            resource_maxima={k: int(v) for k, v in (resources.get("maxima") or {}).items()},
            base_dc=int(rounds.get("base_dc", 10)),
            die_sides=int(rounds.get("die_sides", 20)),
            auto_win_total=int(rounds.get("auto_win_total", 999)),
            default_category=default_category,
            unity_awards={
                "win": int(unity.get("win", 2)),
                "stalemate": int(unity.get("stalemate", 1)),
                "loss": int(unity.get("loss", -2)),
            },
            unity_bounds=(int(bounds.get("min", 0)), int(bounds.get("max", 100))),
            morale_awards={
                "win": int(morale.get("win", 5)),
                "stalemate": int(morale.get("stalemate", 2)),
                "loss": int(morale.get("loss", -5)),
            },
            morale_bounds=(int(bounds.get("min", 0)), int(bounds.get("max", 100))),
            request_namespaces=tuple(turns.get("request_namespaces") or _DEFAULT_REQUEST_NAMESPACES),
            advance_interval_minutes=int(turns.get("advance_interval_minutes", 60)),
            campaign_seed=int(campaign.get("seed", 42)),
        )


class SettingsLoader:
    """Loads and caches settings from YAML configuration files."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or DEFAULT_SETTINGS_PATH
        self._cache: Settings | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> Settings:
        if self._cache is not None and not force:
            return self._cache
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
        self._cache = Settings.from_dict(data)
        return self._cache


def get_settings() -> Settings:
    """Convenience accessor for default settings."""

    return SettingsLoader().load()


__all__ = ["Settings", "SettingsLoader", "get_settings"]
