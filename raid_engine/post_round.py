"""Post-roll consequences queued after a raid round resolves."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from .catalog import ManeuverCatalog
from .config import Settings
from .effects import apply_rules, describe, increment
from .models import Faction, Location, ManeuverKind, RoundResult, Scope, WarLogEntry

logger = logging.getLogger(__name__)

NO_EFFECT_NOTE = "Maneuver used (no special post effect)."
FORFEIT_NOTE = "Maneuver forfeited (cost not paid); no post effect."
MORALE_AWARD_KEY = "moraleOutcomeDelta"

_MIRRORED = {RoundResult.WIN: RoundResult.LOSS, RoundResult.LOSS: RoundResult.WIN}


def outcome_rules(defaults: Mapping[str, int], overrides: Any) -> Dict[str, int]:
    """Merge a faction's per-outcome overrides onto ``defaults``.

    ``tie`` is accepted as an alias of ``stalemate``; unknown outcomes and
    non-numeric values are ignored.
    """

    rules = dict(defaults)
    if not isinstance(overrides, Mapping):
        return rules
    for key, value in overrides.items():
        outcome = "stalemate" if key == "tie" else key
        if outcome not in rules or isinstance(value, bool):
            continue
        try:
            rules[outcome] = int(value)
        except (TypeError, ValueError):
            logger.warning("Ignoring non-numeric %s award override %r", outcome, value)
    return rules


class PostRollApplier:
    """Writes success- or failure-conditioned consequences into Pending Queues.

    Only ``turn.pending`` of the given entities is touched; ledgers and
    modifiers change when the turn advances.
    """

    def __init__(self, catalog: ManeuverCatalog, settings: Settings) -> None:
        self._catalog = catalog
        self._settings = settings

    def apply(
        self,
        attacker: Faction,
        defender: Optional[Faction],
        success: bool,
        attacker_maneuvers: List[str],
        defender_maneuvers: Optional[List[str]] = None,
        location: Optional[Location] = None,
        result: Optional[RoundResult] = None,
        now: Optional[datetime] = None,
        *,
        attacker_forfeited: bool = False,
        defender_forfeited: bool = False,
    ) -> List[WarLogEntry]:
        """Queue consequences for every selected maneuver and the round outcome.

        A forfeited side's maneuvers are logged but queue nothing.
        """

        now = now or datetime.now(timezone.utc)
        targets: Dict[Scope, Dict[str, Any]] = {Scope.FACTION: attacker.pending}
        if defender is not None:
            targets[Scope.DEFENDER] = defender.pending
        if location is not None:
            targets[Scope.LOCATION] = location.pending

        outcome = "success" if success else "failure"
        entries: List[WarLogEntry] = []
        for key in attacker_maneuvers:
            definition = self._catalog.get(key)
            if definition is None or definition.kind is not ManeuverKind.MANEUVER:
                logger.warning("Post-roll: unknown maneuver %r skipped", key)
                continue
            effect = None if attacker_forfeited else self._catalog.post_roll_effect(key, success)
            if effect is None:
                note = FORFEIT_NOTE if attacker_forfeited else NO_EFFECT_NOTE
                entries.append(
                    WarLogEntry(
                        faction_id=attacker.id,
                        type="maneuver",
                        activity=key,
                        summary=f"{definition.label}: {note}",
                        outcome=outcome,
                        timestamp=now,
                    )
                )
                continue
            performed = apply_rules(
                effect.rules,
                targets,
                location_id=location.id if location else None,
                now=now,
            )
            if not performed:
                logger.info("Post-roll effect for %s had no available target", key)
            summary = f"{definition.label}: {effect.note}" if effect.note else definition.label
            entries.append(
                WarLogEntry(
                    faction_id=attacker.id,
                    type="maneuver",
                    activity=key,
                    summary=summary + " (queued)",
                    outcome=outcome,
                    payload={"writes": describe(performed)},
                    timestamp=now,
                )
            )

        if defender is not None:
            for key in defender_maneuvers or []:
                definition = self._catalog.get(key)
                if definition is None or definition.kind is not ManeuverKind.MANEUVER:
                    logger.warning("Post-roll: unknown defender maneuver %r skipped", key)
                    continue
                note = FORFEIT_NOTE if defender_forfeited else NO_EFFECT_NOTE
                entries.append(
                    WarLogEntry(
                        faction_id=defender.id,
                        type="maneuver",
                        activity=key,
                        summary=f"{definition.label}: {note}",
                        outcome="failure" if success else "success",
                        timestamp=now,
                    )
                )

        self._queue_outcome_awards(attacker, defender, result or (RoundResult.WIN if success else RoundResult.LOSS))
        return entries

    def _queue_outcome_awards(self, attacker: Faction, defender: Optional[Faction], result: RoundResult) -> None:
        self._queue_awards(attacker, result)
        if defender is not None:
            self._queue_awards(defender, _MIRRORED.get(result, result))

    def _queue_awards(self, faction: Faction, result: RoundResult) -> None:
        unity = outcome_rules(self._settings.unity_awards, faction.victory.get("unityRules"))
        morale = outcome_rules(self._settings.morale_awards, faction.extra.get("moraleRules"))
        if unity.get(result.value):
            increment(faction.pending, "unityDelta", unity[result.value])
        if morale.get(result.value):
            increment(faction.pending, MORALE_AWARD_KEY, morale[result.value])


__all__ = ["FORFEIT_NOTE", "MORALE_AWARD_KEY", "NO_EFFECT_NOTE", "PostRollApplier", "outcome_rules"]
