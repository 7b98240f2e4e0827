"""Turn advance: drain Pending Queues into persistent faction and location state."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set

from .config import Settings
from .models import Faction, Location, TurnResult, WarLogEntry

logger = logging.getLogger(__name__)

ALREADY_RUNNING = "already-running"
_APPLIED_HISTORY = 50

_FACTION_MOD_DELTAS: Dict[str, str] = {
    "techScoreDelta": "techScore",
    "loyaltyDelta": "loyalty",
    "moraleDelta": "morale",
    "empathyDelta": "empathy",
    "darknessDelta": "darkness",
    "enlightenmentForAllDelta": "enlightenmentAll",
    "enemyLoyaltyDelta": "enemyLoyalty",
    "infrastructureDelta": "infrastructure",
    "radiationRisk": "radiationRisk",
}
_LOCATION_MOD_DELTAS: Dict[str, str] = {
    "defenseDelta": "defense",
    "tradeYieldDelta": "tradeYield",
    "loyaltyDelta": "loyalty",
    "enemyLoyaltyDelta": "enemyLoyalty",
    "moraleDelta": "morale",
    "radiationRisk": "radiationRisk",
}
_LOCATION_FLAGS = ("statusSet", "cleanseCorruption", "destroyHex")


class TurnLock:
    """Per-entity non-blocking guard for turn consumption."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: Set[str] = set()

    def try_acquire(self, entity_id: str) -> bool:
        with self._guard:
            if entity_id in self._held:
                return False
            self._held.add(entity_id)
            return True

    def release(self, entity_id: str) -> None:
        with self._guard:
            self._held.discard(entity_id)

    def is_held(self, entity_id: str) -> bool:
        with self._guard:
            return entity_id in self._held

    @contextmanager
    def hold(self, entity_id: str) -> Iterator[bool]:
        """Yield whether the lock was obtained; release only if it was."""

        acquired = self.try_acquire(entity_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(entity_id)


def _number(value: Any) -> float:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0


def _add(target: Dict[str, Any], key: str, delta: Any) -> None:
    total = _number(target.get(key, 0)) + _number(delta)
    target[key] = int(total) if float(total).is_integer() else total


def _overlay(target: Dict[str, Any], values: Mapping[str, Any]) -> None:
    """Numbers are added, lists extended, everything else replaced."""

    for key, value in values.items():
        if isinstance(value, bool) or not isinstance(value, (int, float, list)):
            target[key] = value
        elif isinstance(value, list):
            existing = target.get(key)
            target[key] = (list(existing) if isinstance(existing, list) else []) + list(value)
        else:
            _add(target, key, value)


def _merge_request(target: Dict[str, Any], key: str, value: Any) -> None:
    existing = target.get(key)
    if isinstance(value, dict):
        bucket = existing if isinstance(existing, dict) else {}
        _overlay(bucket, value)
        target[key] = bucket
    elif isinstance(value, list):
        target[key] = (list(existing) if isinstance(existing, list) else []) + list(value)
    else:
        target[key] = value


def _record_applied(turn: Dict[str, Any], snapshot: Dict[str, Any], now: datetime) -> None:
    history = turn.get("applied")
    history = list(history) if isinstance(history, list) else []
    history.append({"ts": now.isoformat(), "data": snapshot})
    turn["applied"] = history[-_APPLIED_HISTORY:]


class TurnConsumer:
    """Folds queued deltas and requests into entity state.

    The fold methods operate on in-memory entities only and pop the queue as
    they read it; :class:`~raid_engine.service.EngineService` persists the
    folded entities in one transaction.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @staticmethod
    def has_pending(entity: Faction | Location) -> bool:
        pending = entity.turn.get("pending")
        return isinstance(pending, dict) and bool(pending)

    def fold_faction(
        self,
        faction: Faction,
        factions: Mapping[str, Faction],
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Apply and clear ``faction``'s queue. Returns the drained snapshot.

        ``factions`` supplies the destinations of queued OP transfers.
        """

        now = now or datetime.now(timezone.utc)
        snapshot = faction.turn.pop("pending", None) or {}
        faction.turn["pending"] = {}
        mods = faction.mods
        bonuses = faction.bonuses
        request_keys = set(self._settings.request_namespaces)

        for key, value in snapshot.items():
            if key in _FACTION_MOD_DELTAS:
                _add(mods, _FACTION_MOD_DELTAS[key], value)
            elif key == "defenseLoss":
                _add(mods, "defense", -_number(value))
            elif key == "capsDelta" and isinstance(value, dict):
                caps = mods.setdefault("caps", {})
                for cap, delta in value.items():
                    _add(caps, cap, delta)
            elif key == "duration" and isinstance(value, dict):
                bonuses.setdefault("durations", {}).update(value)
            elif key in ("nextRaid", "nextTurn") and isinstance(value, dict):
                _overlay(bonuses.setdefault(key, {}), value)
            elif key == "nextTurns" and isinstance(value, list):
                existing = bonuses.get("nextTurns")
                bonuses["nextTurns"] = (list(existing) if isinstance(existing, list) else []) + value
            elif key == "intel" and isinstance(value, dict):
                faction.intel.update(value)
            elif key == "mergeResourcesNextTurn":
                if isinstance(value, dict) and value.get("active"):
                    bonuses.setdefault("nextTurn", {})["mergeResources"] = True
            elif key == "unityDelta":
                low, high = self._settings.unity_bounds
                unity = _number(faction.victory.get("unity", 0)) + _number(value)
                faction.victory["unity"] = int(max(low, min(high, unity)))
            elif key == "moraleOutcomeDelta":
                low, high = self._settings.morale_bounds
                morale = _number(mods.get("morale", 0)) + _number(value)
                mods["morale"] = int(max(low, min(high, morale)))
            elif key == "opTransfers" and isinstance(value, list):
                self._transfer(faction, factions, value)
            elif key in request_keys:
                _merge_request(faction.requests, key, value)
            else:
                logger.warning("Faction %s: unrecognised pending key %r kept in history only", faction.id, key)

        _record_applied(faction.turn, snapshot, now)
        return snapshot

    def fold_location(self, location: Location, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        snapshot = location.turn.pop("pending", None) or {}
        location.turn["pending"] = {}
        for key, value in snapshot.items():
            if key in _LOCATION_MOD_DELTAS:
                _add(location.mods, _LOCATION_MOD_DELTAS[key], value)
            elif key in _LOCATION_FLAGS:
                location.requests[key] = value
            elif key == "repairs":
                _merge_request(location.requests, key, value)
            else:
                logger.warning("Location %s: unrecognised pending key %r kept in history only", location.id, key)
        _record_applied(location.turn, snapshot, now)
        return snapshot

    def _transfer(self, source: Faction, factions: Mapping[str, Faction], transfers: List[Any]) -> None:
        categories = set(self._settings.resource_categories)
        for transfer in transfers:
            if not isinstance(transfer, dict):
                continue
            target = factions.get(str(transfer.get("to")))
            category = transfer.get("category")
            amount = int(_number(transfer.get("amount")))
            if target is None or target.id == source.id:
                logger.warning("OP transfer from %s has no valid destination: %r", source.id, transfer)
                continue
            if category not in categories or amount <= 0:
                logger.warning("OP transfer from %s ignored: %r", source.id, transfer)
                continue
            available = int(source.bank.get(category, 0))
            cap = target.maxima.get(category, self._settings.max_for(category))
            headroom = max(0, int(cap) - int(target.bank.get(category, 0)))
            moved = min(amount, available, headroom)
            if moved < amount:
                logger.info(
                    "OP transfer %s -> %s clipped from %d to %d %s",
                    source.id,
                    target.id,
                    amount,
                    moved,
                    category,
                )
            source.bank[category] = available - moved
            target.bank[category] = int(target.bank.get(category, 0)) + moved

    def summary_entry(
        self,
        faction: Faction,
        snapshot: Mapping[str, Any],
        locations: List[str],
        now: datetime,
    ) -> WarLogEntry:
        return WarLogEntry(
            faction_id=faction.id,
            type="turn",
            activity="advance_turn",
            summary="Applied queued Strategic effects; pending cleared.",
            payload={"keys": sorted(snapshot.keys()), "locations": locations},
            timestamp=now,
        )

    @staticmethod
    def empty_result(faction_id: str) -> TurnResult:
        return TurnResult(faction_id=faction_id, ok=True, note="empty")

    @staticmethod
    def busy_result(faction_id: str) -> TurnResult:
        return TurnResult(faction_id=faction_id, ok=False, note=ALREADY_RUNNING)


__all__ = ["ALREADY_RUNNING", "TurnConsumer", "TurnLock"]
