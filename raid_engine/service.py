"""High-level engine service orchestrating ledgers, raids and turn processing."""
from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from .catalog import ManeuverCatalog
from .config import Settings, get_settings
from .effects import apply_rules, apply_write, describe
from .ledger import can_afford, credit, format_cost, normalize_bank, spend
from .migration import migrate_documents, preview
from .models import (
    EffectOp,
    EffectWrite,
    Event,
    Faction,
    Location,
    ManeuverDefinition,
    ManeuverKind,
    Round,
    RoundOutcome,
    RoundResult,
    Scope,
    TurnResult,
    WarLogEntry,
)
from .post_round import PostRollApplier
from .resolver import PreRollResolver
from .rng import DeterministicRNG, DiceRoller
from .state import EngineState
from .turns import TurnConsumer, TurnLock

logger = logging.getLogger(__name__)

PLANNED_ORDER_PREFIX = "strategic:"


class EngineService:
    """Single entry point for the engine, constructed once and passed to callers."""

    class UnknownEntityError(LookupError):
        """Raised when a faction or location id is not registered."""

    class RoundAlreadyCommittedError(RuntimeError):
        """Raised when a round is resolved or post-processed a second time."""

    def __init__(
        self,
        db_path: Path,
        settings: Settings | None = None,
        catalog: ManeuverCatalog | None = None,
        rng: DeterministicRNG | None = None,
        *,
        migrate: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.catalog = catalog or ManeuverCatalog.load()
        self._admin_notifications: deque[str] = deque()
        self.state = EngineState(db_path, admin_notifier=self._queue_admin_notification)
        self._rng = rng or DeterministicRNG(seed=self.settings.campaign_seed)
        self.dice = DiceRoller(self._rng)
        self.resolver = PreRollResolver(self.catalog, self.settings, self.dice)
        self.post_round = PostRollApplier(self.catalog, self.settings)
        self.turns = TurnConsumer(self.settings)
        self.turn_lock = TurnLock()
        self._write_lock = threading.RLock()
        self.last_migration: Optional[Dict[str, object]] = None
        if migrate:
            self.last_migration = self.run_migration()

    # Admin notifications -------------------------------------------------
    def drain_admin_notifications(self) -> List[str]:
        messages = list(self._admin_notifications)
        self._admin_notifications.clear()
        return messages

    def push_admin_notification(self, message: str) -> None:
        self._queue_admin_notification(message)

    def _queue_admin_notification(self, message: str) -> None:
        logger.warning(message)
        self._admin_notifications.append(message)

    # Entities ------------------------------------------------------------
    def register_faction(
        self,
        faction_id: str,
        name: str,
        bank: Optional[Mapping[str, int]] = None,
        maxima: Optional[Mapping[str, int]] = None,
    ) -> Faction:
        """Create a faction, or update an existing one's name, maxima and bank.

        ``bank=None`` keeps a stored faction's bank; any given bank is clamped.
        """

        existing = self.state.get_faction(faction_id)
        faction = existing or Faction(id=faction_id, name=name)
        faction.name = name
        if maxima is not None:
            faction.maxima = {k: int(v) for k, v in maxima.items()}
        if bank is not None or existing is None:
            opening = normalize_bank(bank or {}, self.settings.resource_categories)
            faction.bank = credit(
                {key: 0 for key in opening},
                opening,
                faction.maxima,
                self.settings.default_max,
                self.settings.resource_categories,
            )
        self.state.upsert_faction(faction)
        return faction

    def register_location(
        self,
        location_id: str,
        name: str,
        mods: Optional[Mapping[str, Any]] = None,
    ) -> Location:
        location = self.state.get_location(location_id) or Location(id=location_id, name=name)
        location.name = name
        if mods is not None:
            location.mods = dict(mods)
        self.state.upsert_location(location)
        return location

    def get_faction(self, faction_id: str) -> Faction:
        faction = self.state.get_faction(faction_id)
        if faction is None:
            raise self.UnknownEntityError(f"Unknown faction: {faction_id}")
        return faction

    def get_location(self, location_id: str) -> Location:
        location = self.state.get_location(location_id)
        if location is None:
            raise self.UnknownEntityError(f"Unknown location: {location_id}")
        return location

    # Ledger --------------------------------------------------------------
    def get_bank(self, faction_id: str) -> Dict[str, int]:
        return normalize_bank(self.get_faction(faction_id).bank, self.settings.resource_categories)

    def get_pools(self, faction_id: str) -> Dict[str, int]:
        return normalize_bank(self.get_faction(faction_id).pools, self.settings.resource_categories)

    def can_afford(self, faction_id: str, cost: Mapping[str, int]) -> bool:
        return can_afford(self.get_faction(faction_id).bank, cost, self.settings.resource_categories)

    def spend(self, faction_id: str, cost: Mapping[str, int], reason: str = "") -> Dict[str, int]:
        """Debit ``cost`` clamping at zero. Callers check affordability first."""

        with self._write_lock:
            faction = self.get_faction(faction_id)
            faction.bank = spend(faction.bank, cost, self.settings.resource_categories)
            event = Event(
                timestamp=datetime.now(timezone.utc),
                action="ledger_spend",
                payload={"faction": faction_id, "cost": dict(cost), "reason": reason},
            )
            self.state.write_batch(factions=[faction], events=[event])
        return self.get_bank(faction_id)

    def credit(self, faction_id: str, delta: Mapping[str, int], origin: str) -> Dict[str, int]:
        """Apply a signed delta clamped to ``[0, max]`` and record its origin."""

        with self._write_lock:
            faction = self.get_faction(faction_id)
            before = dict(faction.bank)
            faction.bank = credit(
                faction.bank,
                delta,
                faction.maxima,
                self.settings.default_max,
                self.settings.resource_categories,
            )
            event = Event(
                timestamp=datetime.now(timezone.utc),
                action="ledger_credit",
                payload={
                    "faction": faction_id,
                    "delta": dict(delta),
                    "origin": origin,
                    "before": before,
                    "after": dict(faction.bank),
                },
            )
            self.state.write_batch(factions=[faction], events=[event])
        return self.get_bank(faction_id)

    # Pending queue producers --------------------------------------------
    def queue_effect(
        self,
        entity_id: str,
        op: EffectOp | str,
        path: str,
        value: Any = 1,
        *,
        location: bool = False,
    ) -> Dict[str, Any]:
        """Write one delta or request into a faction's or location's queue."""

        write = EffectWrite(op=EffectOp(op), path=path, value=value)
        with self._write_lock:
            if location:
                entity: Faction | Location = self.get_location(entity_id)
                context = {"location": entity_id, "now": datetime.now(timezone.utc).isoformat()}
                apply_write(entity.pending, write, context)
                self.state.write_batch(locations=[entity])
            else:
                entity = self.get_faction(entity_id)
                context = {"location": None, "now": datetime.now(timezone.utc).isoformat()}
                apply_write(entity.pending, write, context)
                self.state.write_batch(factions=[entity])
        return dict(entity.pending)

    def queue_op_transfer(self, source_id: str, target_id: str, category: str, amount: int) -> None:
        """Queue OP to move from ``source_id`` to ``target_id`` at the source's next turn."""

        if category not in self.settings.resource_categories:
            raise ValueError(f"Unknown resource category: {category}")
        self.get_faction(target_id)
        self.queue_effect(
            source_id,
            EffectOp.APPEND,
            "opTransfers",
            {"to": target_id, "category": category, "amount": int(amount)},
        )

    # Catalog -------------------------------------------------------------
    def list_activities(self) -> List[ManeuverDefinition]:
        return self.catalog.strategic_activities()

    def list_maneuvers(self, raid_type: Optional[str] = None) -> List[ManeuverDefinition]:
        return self.catalog.maneuvers_for(raid_type)

    # Strategic activities -----------------------------------------------
    def _run_activity(
        self,
        faction: Faction,
        key: str,
        location: Optional[Location],
        now: datetime,
    ) -> Tuple[str, WarLogEntry]:
        definition = self.catalog.get(key)
        if definition is None or definition.kind is not ManeuverKind.STRATEGIC or definition.behavior is None:
            logger.warning("Faction %s: unknown strategic activity %r skipped", faction.id, key)
            return "skipped", WarLogEntry(
                faction_id=faction.id,
                type="strategic",
                activity=key,
                summary=f"[SKIP] Unknown activity: {key}",
                outcome="skipped",
                timestamp=now,
            )

        categories = self.settings.resource_categories
        if not can_afford(faction.bank, definition.cost, categories):
            return "unaffordable", WarLogEntry(
                faction_id=faction.id,
                type="strategic",
                activity=key,
                summary=f"[COST] Cannot afford {definition.label} ({format_cost(definition.cost)})",
                outcome="unaffordable",
                timestamp=now,
            )

        faction.bank = spend(faction.bank, definition.cost, categories)
        targets: Dict[Scope, Dict[str, Any]] = {Scope.FACTION: faction.pending}
        if location is not None:
            targets[Scope.LOCATION] = location.pending
        performed = apply_rules(
            definition.behavior.rules,
            targets,
            location_id=location.id if location else None,
            now=now,
        )
        summary = (
            f"Strategic: {definition.label} - Spent {format_cost(definition.cost)}. "
            f"{definition.behavior.description}"
        )
        return "completed", WarLogEntry(
            faction_id=faction.id,
            type="strategic",
            activity=key,
            summary=summary.strip(),
            outcome="completed",
            payload={"cost": dict(definition.cost), "writes": describe(performed), "location": location.id if location else None},
            timestamp=now,
        )

    def apply_strategic_activity(
        self,
        faction_id: str,
        key: str,
        location_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, object]:
        """Spend for and queue one strategic activity immediately."""

        now = now or datetime.now(timezone.utc)
        with self._write_lock:
            faction = self.get_faction(faction_id)
            location = self.get_location(location_id) if location_id else None
            status, entry = self._run_activity(faction, key, location, now)
            if status == "completed":
                self.state.write_batch(
                    factions=[faction],
                    locations=[location] if location else [],
                    war_log=[entry],
                )
            else:
                self.state.write_batch(war_log=[entry])
        return {"ok": status == "completed", "status": status, "summary": entry.summary}

    def plan_activity(
        self,
        faction_id: str,
        key: str,
        location_id: Optional[str] = None,
        notes: str = "",
    ) -> int:
        """Queue a strategic activity to run at the faction's next planning pass."""

        self.get_faction(faction_id)
        if location_id:
            self.get_location(location_id)
        definition = self.catalog.get(key)
        if definition is None or definition.kind is not ManeuverKind.STRATEGIC:
            logger.warning("Planning unknown strategic activity %r for %s", key, faction_id)
        return self.state.enqueue_order(
            f"{PLANNED_ORDER_PREFIX}{key}",
            actor_id=faction_id,
            subject_id=location_id,
            payload={"key": key, "location_id": location_id, "notes": notes},
        )

    def planned_activities(self, faction_id: Optional[str] = None) -> List[Dict[str, object]]:
        orders = self.state.list_orders(status="pending", actor_id=faction_id)
        return [order for order in orders if str(order["order_type"]).startswith(PLANNED_ORDER_PREFIX)]

    def consume_planned(self, faction_id: str, now: Optional[datetime] = None) -> Dict[str, object]:
        """Run every pending planned activity for ``faction_id`` exactly once."""

        now = now or datetime.now(timezone.utc)
        with self.turn_lock.hold(faction_id) as acquired:
            if not acquired:
                logger.info("Planned activities for %s already running", faction_id)
                return {"ok": False, "note": TurnConsumer.busy_result(faction_id).note, "results": []}
            results: List[Dict[str, object]] = []
            for order in self.planned_activities(faction_id):
                payload = order["payload"] if isinstance(order["payload"], dict) else {}
                key = str(payload.get("key") or str(order["order_type"])[len(PLANNED_ORDER_PREFIX):])
                location_id = payload.get("location_id")
                with self._write_lock:
                    faction = self.get_faction(faction_id)
                    location = self.state.get_location(location_id) if location_id else None
                    if location_id and location is None:
                        logger.warning("Planned activity %s targets missing location %s", key, location_id)
                    status, entry = self._run_activity(faction, key, location, now)
                    result = {"status": status, "summary": entry.summary}
                    self.state.write_batch(
                        factions=[faction] if status == "completed" else [],
                        locations=[location] if status == "completed" and location else [],
                        war_log=[entry],
                        order_updates=[(int(order["id"]), status, result)],
                    )
                results.append({"order_id": order["id"], "key": key, **result})
            if not results:
                logger.info("No planned activities for %s", faction_id)
                return {"ok": True, "note": "empty", "results": []}
            return {"ok": True, "note": "consumed", "results": results}

    # Raid rounds ---------------------------------------------------------
    def resolve_round(self, round_: Round) -> RoundOutcome:
        """Charge both sides, roll the check and persist exactly one raid log entry.

        The round is marked committed only after the write succeeds, so a
        persistence failure leaves it retryable.
        """

        if round_.committed:
            raise self.RoundAlreadyCommittedError("Round already committed")
        if round_.defender_id and round_.defender_id == round_.attacker_id:
            raise ValueError("Attacker and defender must differ")
        with self._write_lock:
            attacker = self.get_faction(round_.attacker_id)
            defender = self.get_faction(round_.defender_id) if round_.defender_id else None
            if round_.location_id:
                self.get_location(round_.location_id)
            outcome = self.resolver.resolve(attacker, defender, round_)
            activity = round_.raid_type or outcome.metadata["category"]
            verdict = "success" if outcome.success else "failure"
            entry = WarLogEntry(
                faction_id=attacker.id,
                type="raid",
                activity=activity,
                summary=(
                    f"Raid ({activity}) vs {defender.name if defender else 'unopposed'}: "
                    f"{outcome.total} vs DC {outcome.dc} - {verdict.upper()}"
                ),
                outcome=verdict,
                payload={
                    "total": outcome.total,
                    "dc": outcome.dc,
                    "roll": outcome.roll_detail,
                    "defender": round_.defender_id,
                    "location": round_.location_id,
                    **outcome.metadata,
                },
            )
            factions = [attacker] + ([defender] if defender else [])
            self.state.write_batch(factions=factions, war_log=[entry])
        round_.outcome = outcome
        round_.committed = True
        return outcome

    def apply_post_round(
        self,
        round_: Round,
        result: Optional[RoundResult] = None,
        now: Optional[datetime] = None,
    ) -> List[WarLogEntry]:
        """Queue post-roll consequences of a committed round."""

        if not round_.committed or round_.outcome is None:
            raise ValueError("Round must be resolved before post-roll effects apply")
        if round_.post_applied:
            raise self.RoundAlreadyCommittedError("Post-roll effects already applied")
        outcome = round_.outcome
        with self._write_lock:
            attacker = self.get_faction(round_.attacker_id)
            defender = self.get_faction(round_.defender_id) if round_.defender_id else None
            location = self.get_location(round_.location_id) if round_.location_id else None
            entries = self.post_round.apply(
                attacker,
                defender,
                outcome.success,
                list(round_.attacker_maneuvers),
                list(round_.defender_maneuvers),
                location=location,
                result=result,
                now=now,
                attacker_forfeited=not outcome.metadata.get("paid_attacker", True),
                defender_forfeited=defender is not None and not outcome.metadata.get("paid_defender", True),
            )
            factions = [attacker] + ([defender] if defender else [])
            self.state.write_batch(
                factions=factions,
                locations=[location] if location else [],
                war_log=entries,
            )
        round_.post_applied = True
        return entries

    def run_round(self, round_: Round, result: Optional[RoundResult] = None) -> RoundOutcome:
        outcome = self.resolve_round(round_)
        self.apply_post_round(round_, result=result)
        return outcome

    # Turn processing -----------------------------------------------------
    def advance_turn(self, faction_id: str, now: Optional[datetime] = None) -> TurnResult:
        """Drain the faction's queue and every non-empty location queue."""

        now = now or datetime.now(timezone.utc)
        with self.turn_lock.hold(faction_id) as acquired:
            if not acquired:
                logger.info("Turn advance for %s already running", faction_id)
                return TurnConsumer.busy_result(faction_id)
            with self._write_lock:
                faction = self.get_faction(faction_id)
                locations = [loc for loc in self.state.all_locations() if self.turns.has_pending(loc)]
                if not self.turns.has_pending(faction) and not locations:
                    logger.info("Faction %s has no queued effects to apply", faction_id)
                    return TurnConsumer.empty_result(faction_id)

                factions = {item.id: item for item in self.state.all_factions()}
                faction = factions[faction_id]
                touched: Set[str] = set()
                snapshot: Dict[str, Any] = {}
                if self.turns.has_pending(faction):
                    transfers = faction.pending.get("opTransfers")
                    touched = {
                        str(item.get("to"))
                        for item in (transfers if isinstance(transfers, list) else [])
                        if isinstance(item, dict) and str(item.get("to")) in factions
                    }
                    snapshot = self.turns.fold_faction(faction, factions, now)

                for location in locations:
                    self.turns.fold_location(location, now)

                location_ids = [location.id for location in locations]
                entry = self.turns.summary_entry(faction, snapshot, location_ids, now)
                written = [faction] + [factions[fid] for fid in sorted(touched) if fid != faction_id]
                self.state.write_batch(factions=written, locations=locations, war_log=[entry])
        return TurnResult(
            faction_id=faction_id,
            ok=True,
            note="applied",
            applied=snapshot,
            locations=location_ids,
            requests=dict(faction.requests),
        )

    def advance_all_turns(self, now: Optional[datetime] = None) -> List[TurnResult]:
        now = now or datetime.now(timezone.utc)
        return [self.advance_turn(faction.id, now=now) for faction in self.state.all_factions()]

    # Migration -----------------------------------------------------------
    def preview_migration(self) -> Dict[str, object]:
        return {
            "factions": preview(self.state.faction_documents()),
            "locations": preview(self.state.location_documents()),
        }

    def run_migration(self, dry_run: bool = False) -> Dict[str, object]:
        with self._write_lock:
            faction_report, _ = migrate_documents(
                self.state.faction_documents(),
                self.state.save_faction_document,
                dry_run=dry_run,
            )
            location_report, _ = migrate_documents(
                self.state.location_documents(),
                self.state.save_location_document,
                dry_run=dry_run,
            )
        for report in (faction_report, location_report):
            for entity_id, error in report.failed.items():
                self._queue_admin_notification(f"Queue migration failed for {entity_id}: {error}")
        return {
            "factions": faction_report.as_dict(),
            "locations": location_report.as_dict(),
        }

    # War log -------------------------------------------------------------
    def war_log(self, faction_id: Optional[str] = None, limit: Optional[int] = None) -> List[WarLogEntry]:
        return self.state.war_log(faction_id, limit=limit)


__all__ = ["EngineService", "PLANNED_ORDER_PREFIX"]
