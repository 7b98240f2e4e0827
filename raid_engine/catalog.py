"""Maneuver catalog loaded from YAML and validated at load time."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import yaml

from .models import (
    EffectOp,
    EffectRule,
    EffectTarget,
    EffectWrite,
    ManeuverDefinition,
    ManeuverKind,
    PostRollEffect,
    PreRollEffect,
    Scope,
    StrategicBehavior,
)

logger = logging.getLogger(__name__)

_DATA_PATH = Path(__file__).parent / "data"
DEFAULT_CATALOG_PATH = _DATA_PATH / "maneuvers.yaml"


class CatalogError(ValueError):
    """Raised for a malformed catalog entry; the loader drops the entry."""


def _parse_cost(raw: Any) -> Dict[str, int]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise CatalogError(f"cost must be a mapping, got {raw!r}")
    cost: Dict[str, int] = {}
    for key, amount in raw.items():
        try:
            cost[str(key)] = int(amount)
        except (TypeError, ValueError) as exc:
            raise CatalogError(f"cost {key!r} is not numeric") from exc
    return cost


def _parse_write(raw: Any) -> EffectWrite:
    if not isinstance(raw, Mapping) or "path" not in raw:
        raise CatalogError(f"effect write needs a path: {raw!r}")
    try:
        op = EffectOp(raw.get("op", "increment"))
    except ValueError as exc:
        raise CatalogError(f"unknown effect op {raw.get('op')!r}") from exc
    value = raw.get("value", 1)
    if op is EffectOp.INCREMENT and not isinstance(value, (int, float)):
        raise CatalogError(f"increment of {raw['path']!r} needs a number")
    return EffectWrite(op=op, path=str(raw["path"]), value=value)


def _parse_rules(raw: Any) -> Tuple[EffectRule, ...]:
    if not isinstance(raw, list) or not raw:
        raise CatalogError("effects must be a non-empty list")
    rules: List[EffectRule] = []
    for entry in raw:
        route = entry.get("route") if isinstance(entry, Mapping) else None
        if not isinstance(route, Mapping) or not route:
            raise CatalogError(f"effect rule needs a route: {entry!r}")
        targets: List[EffectTarget] = []
        for scope_name, writes in route.items():
            try:
                scope = Scope(scope_name)
            except ValueError as exc:
                raise CatalogError(f"unknown scope {scope_name!r}") from exc
            if not isinstance(writes, list) or not writes:
                raise CatalogError(f"scope {scope_name!r} has no writes")
            targets.append(EffectTarget(scope=scope, writes=tuple(_parse_write(w) for w in writes)))
        rules.append(EffectRule(targets=tuple(targets)))
    return tuple(rules)


class ManeuverCatalog:
    """Read-only registry of maneuvers, strategic activities and raid types."""

    def __init__(
        self,
        entries: Mapping[str, ManeuverDefinition],
        post_roll: Mapping[Tuple[str, bool], PostRollEffect],
        raid_types: Mapping[str, Dict[str, str]],
    ) -> None:
        self._entries: Dict[str, ManeuverDefinition] = dict(entries)
        self._post_roll: Dict[Tuple[str, bool], PostRollEffect] = dict(post_roll)
        self._raid_types: Dict[str, Dict[str, str]] = {k: dict(v) for k, v in raid_types.items()}

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ManeuverCatalog":
        path = path or DEFAULT_CATALOG_PATH
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        catalog = cls.from_dict(data)
        logger.info(
            "Loaded %d maneuvers and %d strategic activities from %s",
            len(catalog.maneuvers()),
            len(catalog.strategic_activities()),
            path,
        )
        return catalog

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ManeuverCatalog":
        entries: Dict[str, ManeuverDefinition] = {}
        pre_roll_table = data.get("pre_roll") or {}

        for key, raw in (data.get("maneuvers") or {}).items():
            try:
                entries[key] = cls._parse_maneuver(key, raw, pre_roll_table.get(key))
            except CatalogError as exc:
                logger.warning("Dropping maneuver %s: %s", key, exc)

        for key in pre_roll_table:
            if key not in entries:
                logger.warning("Pre-roll entry %s names no catalog maneuver; ignored", key)

        for key, raw in (data.get("strategic") or {}).items():
            if key in entries:
                logger.warning("Strategic activity %s duplicates a maneuver key; ignored", key)
                continue
            try:
                entries[key] = cls._parse_strategic(key, raw)
            except CatalogError as exc:
                logger.warning("Dropping strategic activity %s: %s", key, exc)

        post_roll: Dict[Tuple[str, bool], PostRollEffect] = {}
        for raw in data.get("post_roll") or []:
            key = raw.get("maneuver") if isinstance(raw, Mapping) else None
            definition = entries.get(key) if key else None
            if definition is None or definition.kind is not ManeuverKind.MANEUVER:
                logger.warning("Post-roll entry for %r names no catalog maneuver; ignored", key)
                continue
            when = raw.get("when")
            if when not in ("success", "failure"):
                logger.warning("Post-roll entry for %s has invalid trigger %r; ignored", key, when)
                continue
            try:
                rules = _parse_rules(raw.get("effects"))
            except CatalogError as exc:
                logger.warning("Dropping post-roll effect %s/%s: %s", key, when, exc)
                continue
            post_roll[(key, when == "success")] = PostRollEffect(
                maneuver=key,
                on_success=when == "success",
                rules=rules,
                note=str(raw.get("note", "")),
            )

        raid_types: Dict[str, Dict[str, str]] = {}
        for key, raw in (data.get("raid_types") or {}).items():
            if not isinstance(raw, Mapping) or "primary" not in raw:
                logger.warning("Raid type %s has no primary category; ignored", key)
                continue
            raid_types[key] = {"label": str(raw.get("label", key)), "primary": str(raw["primary"])}

        return cls(entries, post_roll, raid_types)

    @staticmethod
    def _parse_maneuver(key: str, raw: Any, pre_roll: Any) -> ManeuverDefinition:
        if not isinstance(raw, Mapping):
            raise CatalogError("entry must be a mapping")
        effect: Optional[PreRollEffect] = None
        if pre_roll is not None:
            if not isinstance(pre_roll, Mapping):
                raise CatalogError("pre-roll effect must be a mapping")
            unknown = set(pre_roll) - {"attack_bonus", "dc_bonus", "advantage", "auto_win"}
            if unknown:
                raise CatalogError(f"unknown pre-roll fields {sorted(unknown)}")
            effect = PreRollEffect(
                attack_bonus=int(pre_roll.get("attack_bonus", 0)),
                dc_bonus=int(pre_roll.get("dc_bonus", 0)),
                advantage=bool(pre_roll.get("advantage", False)),
                auto_win=bool(pre_roll.get("auto_win", False)),
            )
        return ManeuverDefinition(
            key=key,
            kind=ManeuverKind.MANEUVER,
            label=str(raw.get("label", key)),
            cost=_parse_cost(raw.get("cost")),
            tier=int(raw.get("tier", 1)),
            rarity=str(raw.get("rarity", "common")),
            summary=str(raw.get("summary", "")),
            applies_to=tuple(raw.get("applies_to") or ()),
            pre_roll=effect,
        )

    @staticmethod
    def _parse_strategic(key: str, raw: Any) -> ManeuverDefinition:
        if not isinstance(raw, Mapping):
            raise CatalogError("entry must be a mapping")
        if "effects" not in raw:
            raise CatalogError("strategic activity has no behaviour")
        behavior = StrategicBehavior(
            description=str(raw.get("description", "")),
            rules=_parse_rules(raw.get("effects")),
        )
        return ManeuverDefinition(
            key=key,
            kind=ManeuverKind.STRATEGIC,
            label=str(raw.get("label", key)),
            cost=_parse_cost(raw.get("cost")),
            tier=int(raw.get("tier", 1)),
            rarity=str(raw.get("rarity", "common")),
            summary=str(raw.get("summary", behavior.description)),
            behavior=behavior,
        )

    # Queries -------------------------------------------------------------
    def get(self, key: str) -> Optional[ManeuverDefinition]:
        return self._entries.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def maneuvers(self) -> List[ManeuverDefinition]:
        return [entry for entry in self._entries.values() if entry.kind is ManeuverKind.MANEUVER]

    def maneuvers_for(self, raid_type: Optional[str]) -> List[ManeuverDefinition]:
        """Maneuvers usable in ``raid_type``, ordered by tier then label."""

        usable = [entry for entry in self.maneuvers() if entry.applies_to_raid(raid_type)]
        return sorted(usable, key=lambda entry: (entry.tier, entry.label.lower()))

    def strategic_activities(self) -> List[ManeuverDefinition]:
        strategic = [entry for entry in self._entries.values() if entry.kind is ManeuverKind.STRATEGIC]
        return sorted(strategic, key=lambda entry: entry.label.lower())

    def post_roll_effect(self, key: str, success: bool) -> Optional[PostRollEffect]:
        return self._post_roll.get((key, success))

    def has_post_roll(self, key: str) -> bool:
        return (key, True) in self._post_roll or (key, False) in self._post_roll

    def raid_types(self) -> Dict[str, Dict[str, str]]:
        return {key: dict(value) for key, value in self._raid_types.items()}

    def primary_category(self, raid_type: Optional[str]) -> Optional[str]:
        if not raid_type:
            return None
        entry = self._raid_types.get(raid_type)
        return entry["primary"] if entry else None

    def cost_of(self, keys: Iterable[str]) -> Dict[str, int]:
        total: Dict[str, int] = {}
        for key in keys:
            entry = self._entries.get(key)
            if entry is None:
                continue
            for category, amount in entry.cost.items():
                total[category] = total.get(category, 0) + amount
        return total


__all__ = ["CatalogError", "DEFAULT_CATALOG_PATH", "ManeuverCatalog"]
