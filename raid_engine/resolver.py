"""Pre-roll resolution of raid rounds."""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .catalog import ManeuverCatalog
from .config import Settings
from .ledger import add_into, can_afford, credit, format_cost, spend
from .models import Faction, ManeuverDefinition, ManeuverKind, Round, RoundOutcome
from .rng import DiceRoll, DiceRoller

logger = logging.getLogger(__name__)


class PreRollResolver:
    """Charges both sides of a round, builds the DC and rolls the check.

    The faction objects passed to :meth:`resolve` have their banks debited in
    place; callers persist them together with the war log entry.
    """

    def __init__(self, catalog: ManeuverCatalog, settings: Settings, dice: DiceRoller) -> None:
        self._catalog = catalog
        self._settings = settings
        self._dice = dice

    def category_for(self, round_: Round) -> str:
        category = round_.category or self._catalog.primary_category(round_.raid_type)
        if category and category in self._settings.resource_categories:
            return category
        if category:
            logger.warning("Unknown round category %r; using %s", category, self._settings.default_category)
        return self._settings.default_category

    def _usable(self, keys: Sequence[str], side: str, skipped: List[str]) -> List[ManeuverDefinition]:
        usable: List[ManeuverDefinition] = []
        for key in keys:
            entry = self._catalog.get(key)
            if entry is None:
                logger.warning("%s maneuver %r: unknown activity, skipped", side, key)
                skipped.append(key)
                continue
            if entry.kind is not ManeuverKind.MANEUVER:
                logger.warning("%s selection %r is not a raid maneuver, skipped", side, key)
                skipped.append(key)
                continue
            usable.append(entry)
        return usable

    def _charge(
        self,
        faction: Optional[Faction],
        maneuvers: List[ManeuverDefinition],
        staged: int,
        category: str,
        side: str,
    ) -> Tuple[Dict[str, int], bool]:
        cost: Dict[str, int] = {}
        for entry in maneuvers:
            add_into(cost, entry.cost)
        if staged > 0:
            cost[category] = cost.get(category, 0) + staged
        if faction is None:
            return cost, False
        categories = self._settings.resource_categories
        if can_afford(faction.bank, cost, categories):
            faction.bank = spend(faction.bank, cost, categories)
            return cost, True
        logger.warning(
            "%s %s cannot afford %s; maneuvers and staged spend forfeited",
            side,
            faction.id,
            format_cost(cost),
        )
        return cost, False

    def _roll(self, modifier: int) -> DiceRoll:
        return self._dice.roll(self._settings.die_sides, modifier)

    def _use_round_flags(
        self,
        attacker: Faction,
        maneuvers: List[ManeuverDefinition],
    ) -> Tuple[bool, Dict[str, int]]:
        """Consume the attacker's one-shot ``nextTurn`` round flags.

        ``initiativeAdv`` grants advantage. ``freeManeuver`` refunds the cost of
        the paid maneuvers (not staged OP) and is kept until maneuvers are used.
        """

        next_turn = attacker.bonuses.get("nextTurn")
        if not isinstance(next_turn, dict):
            return False, {}
        initiative = bool(next_turn.pop("initiativeAdv", False))
        refund: Dict[str, int] = {}
        if next_turn.get("freeManeuver") and maneuvers:
            next_turn.pop("freeManeuver")
            for entry in maneuvers:
                add_into(refund, entry.cost)
            attacker.bank = credit(
                attacker.bank,
                refund,
                attacker.maxima,
                self._settings.default_max,
                self._settings.resource_categories,
            )
            logger.info("Attacker %s free maneuver: refunded %s", attacker.id, format_cost(refund))
        return initiative, refund

    def resolve(self, attacker: Faction, defender: Optional[Faction], round_: Round) -> RoundOutcome:
        category = self.category_for(round_)
        skipped: List[str] = []

        att_maneuvers = self._usable(round_.attacker_maneuvers, "Attacker", skipped)
        def_maneuvers = self._usable(round_.defender_maneuvers, "Defender", skipped)
        staged_att = max(0, int(round_.staged_attacker or 0))
        staged_def = max(0, int(round_.staged_defender or 0)) if defender is not None else 0
        if defender is None and round_.defender_maneuvers:
            logger.warning("Defender maneuvers selected without a defender; ignored")
            def_maneuvers = []

        cost_att, paid_att = self._charge(attacker, att_maneuvers, staged_att, category, "Attacker")
        cost_def, paid_def = self._charge(defender, def_maneuvers, staged_def, category, "Defender")
        if not paid_att:
            att_maneuvers, staged_att = [], 0
        if not paid_def:
            def_maneuvers, staged_def = [], 0

        bonus_att = 0
        advantage = False
        auto_win_att = False
        for entry in att_maneuvers:
            if entry.pre_roll is None:
                continue
            bonus_att += entry.pre_roll.attack_bonus
            advantage = advantage or entry.pre_roll.advantage
            auto_win_att = auto_win_att or entry.pre_roll.auto_win

        bonus_dc = 0
        auto_win_def = False
        for entry in def_maneuvers:
            if entry.pre_roll is None:
                continue
            bonus_dc += entry.pre_roll.dc_bonus
            auto_win_def = auto_win_def or entry.pre_roll.auto_win

        initiative, refund = self._use_round_flags(attacker, att_maneuvers)
        advantage = advantage or initiative

        staged_bonus_att = math.ceil(staged_att / 2)
        staged_bonus_def = math.ceil(staged_def / 2)
        base_dc = round_.base_dc if round_.base_dc is not None else self._settings.base_dc
        def_defense = _number(defender.mods.get("defense")) if defender else 0
        next_raid = (defender.bonuses.get("nextRaid") or {}) if defender else {}
        def_next_raid = _number(next_raid.get("defenseBonus")) if isinstance(next_raid, dict) else 0

        sentinel = self._settings.auto_win_total
        if auto_win_def:
            dc = sentinel
        else:
            dc = (
                base_dc
                + staged_bonus_def
                + bonus_dc
                + int(round_.difficulty_offset or 0)
                + def_defense
                + def_next_raid
            )

        modifier = int(round_.attack_bonus or 0) + staged_bonus_att + bonus_att
        rolls: List[DiceRoll] = []
        if auto_win_att:
            total = sentinel
            detail = "auto-win"
        else:
            rolls.append(self._roll(modifier))
            if advantage:
                rolls.append(self._roll(modifier))
            best = max(rolls, key=lambda r: r.total)
            total = best.total
            detail = best.formula if len(rolls) == 1 else f"{best.formula} (advantage: {', '.join(str(r.total) for r in rolls)})"

        metadata: Dict[str, Any] = {
            "category": category,
            "cost_attacker": cost_att,
            "cost_defender": cost_def,
            "paid_attacker": paid_att,
            "paid_defender": paid_def,
            "attacker_maneuvers": [entry.key for entry in att_maneuvers],
            "defender_maneuvers": [entry.key for entry in def_maneuvers],
            "staged_attacker": staged_att,
            "staged_defender": staged_def,
            "bonus_attack": bonus_att,
            "bonus_dc": bonus_dc,
            "advantage": advantage,
            "auto_win_attacker": auto_win_att,
            "auto_win_defender": auto_win_def,
            "defender_defense": def_defense,
            "defender_next_raid_bonus": def_next_raid,
            "naturals": [r.natural for r in rolls],
            "skipped": skipped,
            "initiative_used": initiative,
            "free_maneuver_refund": refund,
        }
        return RoundOutcome(
            total=total,
            dc=dc,
            success=total >= dc,
            roll_detail=detail,
            metadata=metadata,
        )


def _number(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


__all__ = ["PreRollResolver"]
