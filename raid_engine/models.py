"""Core data models for the raid engine."""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ManeuverKind(str, Enum):
    MANEUVER = "maneuver"
    STRATEGIC = "strategic"


class EffectOp(str, Enum):
    """Operations a queued effect may perform on a Pending Queue."""

    INCREMENT = "increment"
    APPEND = "append"
    ASSIGN = "assign"


class Scope(str, Enum):
    """Entity that receives a queued write.

    ``faction`` is the acting faction: the attacker of a round or the faction
    performing a strategic activity.
    """

    FACTION = "faction"
    DEFENDER = "defender"
    LOCATION = "location"


class RoundResult(str, Enum):
    WIN = "win"
    STALEMATE = "stalemate"
    LOSS = "loss"


@dataclass(frozen=True)
class EffectWrite:
    op: EffectOp
    path: str
    value: Any = 1


@dataclass(frozen=True)
class EffectTarget:
    scope: Scope
    writes: Tuple[EffectWrite, ...]


@dataclass(frozen=True)
class EffectRule:
    """Writes routed to the first available scope in ``targets``.

    A rule whose scopes are all unavailable writes nothing.
    """

    targets: Tuple[EffectTarget, ...]


@dataclass(frozen=True)
class PreRollEffect:
    attack_bonus: int = 0
    dc_bonus: int = 0
    advantage: bool = False
    auto_win: bool = False


@dataclass(frozen=True)
class StrategicBehavior:
    description: str
    rules: Tuple[EffectRule, ...]


@dataclass(frozen=True)
class PostRollEffect:
    maneuver: str
    on_success: bool
    rules: Tuple[EffectRule, ...]
    note: str = ""


@dataclass(frozen=True)
class ManeuverDefinition:
    """Immutable catalog record for a maneuver or a strategic activity."""

    key: str
    kind: ManeuverKind
    label: str
    cost: Dict[str, int] = field(default_factory=dict)
    tier: int = 1
    rarity: str = "common"
    summary: str = ""
    applies_to: Tuple[str, ...] = ()
    pre_roll: Optional[PreRollEffect] = None
    behavior: Optional[StrategicBehavior] = None

    def applies_to_raid(self, raid_type: Optional[str]) -> bool:
        if not self.applies_to or "any" in self.applies_to:
            return True
        return raid_type in self.applies_to


def _pending_of(turn: Dict[str, Any]) -> Dict[str, Any]:
    pending = turn.get("pending")
    if not isinstance(pending, dict):
        pending = {}
        turn["pending"] = pending
    return pending


@dataclass
class Faction:
    """A faction with its Resource Ledger and deferred turn state."""

    id: str
    name: str
    bank: Dict[str, int] = field(default_factory=dict)
    maxima: Dict[str, int] = field(default_factory=dict)
    mods: Dict[str, Any] = field(default_factory=dict)
    bonuses: Dict[str, Any] = field(default_factory=dict)
    turn: Dict[str, Any] = field(default_factory=lambda: {"pending": {}, "applied": []})
    requests: Dict[str, Any] = field(default_factory=dict)
    intel: Dict[str, Any] = field(default_factory=dict)
    victory: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def pools(self) -> Dict[str, int]:
        """Reporting view of the bank, recomputed on every access."""

        return dict(self.bank)

    @property
    def pending(self) -> Dict[str, Any]:
        return _pending_of(self.turn)

    def to_document(self) -> Dict[str, Any]:
        document = copy.deepcopy(self.extra)
        document.update(
            {
                "bank": self.bank,
                "maxima": self.maxima,
                "mods": self.mods,
                "bonuses": self.bonuses,
                "turn": self.turn,
                "requests": self.requests,
                "intel": self.intel,
                "victory": self.victory,
            }
        )
        return copy.deepcopy(document)

    @classmethod
    def from_document(cls, faction_id: str, name: str, document: Dict[str, Any]) -> "Faction":
        data = copy.deepcopy(document)
        turn = data.pop("turn", None) or {}
        turn.setdefault("pending", {})
        turn.setdefault("applied", [])
        return cls(
            id=faction_id,
            name=name,
            bank={k: int(v) for k, v in (data.pop("bank", None) or {}).items()},
            maxima={k: int(v) for k, v in (data.pop("maxima", None) or {}).items()},
            mods=data.pop("mods", None) or {},
            bonuses=data.pop("bonuses", None) or {},
            turn=turn,
            requests=data.pop("requests", None) or {},
            intel=data.pop("intel", None) or {},
            victory=data.pop("victory", None) or {},
            extra=data,
        )


@dataclass
class Location:
    """Territory unit referenced by rounds and strategic activities."""

    id: str
    name: str
    mods: Dict[str, Any] = field(default_factory=dict)
    turn: Dict[str, Any] = field(default_factory=lambda: {"pending": {}, "applied": []})
    requests: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def pending(self) -> Dict[str, Any]:
        return _pending_of(self.turn)

    def to_document(self) -> Dict[str, Any]:
        document = copy.deepcopy(self.extra)
        document.update({"mods": self.mods, "turn": self.turn, "requests": self.requests})
        return copy.deepcopy(document)

    @classmethod
    def from_document(cls, location_id: str, name: str, document: Dict[str, Any]) -> "Location":
        data = copy.deepcopy(document)
        turn = data.pop("turn", None) or {}
        turn.setdefault("pending", {})
        turn.setdefault("applied", [])
        return cls(
            id=location_id,
            name=name,
            mods=data.pop("mods", None) or {},
            turn=turn,
            requests=data.pop("requests", None) or {},
            extra=data,
        )


@dataclass
class WarLogEntry:
    faction_id: str
    type: str
    activity: str
    summary: str
    outcome: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[int] = None


@dataclass
class Event:
    timestamp: datetime
    action: str
    payload: Dict[str, object]


@dataclass
class RoundOutcome:
    total: int
    dc: int
    success: bool
    roll_detail: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Round:
    """Transient conflict interaction between an attacker and optional defender."""

    attacker_id: str
    defender_id: Optional[str] = None
    location_id: Optional[str] = None
    raid_type: Optional[str] = None
    category: Optional[str] = None
    attacker_maneuvers: List[str] = field(default_factory=list)
    defender_maneuvers: List[str] = field(default_factory=list)
    staged_attacker: int = 0
    staged_defender: int = 0
    base_dc: Optional[int] = None
    attack_bonus: int = 0
    difficulty_offset: int = 0
    committed: bool = False
    post_applied: bool = False
    outcome: Optional[RoundOutcome] = None


@dataclass
class TurnResult:
    faction_id: str
    ok: bool
    note: str
    applied: Dict[str, Any] = field(default_factory=dict)
    locations: List[str] = field(default_factory=list)
    requests: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MigrationReport:
    scanned: int = 0
    changed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    dry_run: bool = False

    def as_dict(self) -> Dict[str, object]:
        return {
            "scanned": self.scanned,
            "changed": list(self.changed),
            "failed": dict(self.failed),
            "dry_run": self.dry_run,
            "migrated": bool(self.changed) and not self.dry_run,
        }


__all__ = [
    "EffectOp",
    "EffectRule",
    "EffectTarget",
    "EffectWrite",
    "Event",
    "Faction",
    "Location",
    "ManeuverDefinition",
    "ManeuverKind",
    "MigrationReport",
    "PostRollEffect",
    "PreRollEffect",
    "Round",
    "RoundOutcome",
    "RoundResult",
    "Scope",
    "StrategicBehavior",
    "TurnResult",
    "WarLogEntry",
]
