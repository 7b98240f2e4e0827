"""Tests for pre-roll resolution."""
from __future__ import annotations

import logging
from typing import List

from raid_engine.catalog import ManeuverCatalog
from raid_engine.config import get_settings
from raid_engine.models import Faction, Round
from raid_engine.resolver import PreRollResolver
from raid_engine.rng import DeterministicRNG, DiceRoller


def build_resolver(naturals: List[int]) -> PreRollResolver:
    rng = DeterministicRNG(seed=42)
    queue = list(naturals)
    rng.roll_die = lambda sides: queue.pop(0)  # type: ignore[assignment]
    return PreRollResolver(ManeuverCatalog.load(), get_settings(), DiceRoller(rng))


def test_affordable_maneuver_and_staged_spend_debit_bank():
    resolver = build_resolver([12])
    attacker = Faction(id="a", name="A", bank={"violence": 5})
    round_ = Round(
        attacker_id="a",
        category="violence",
        attacker_maneuvers=["command_overdrive"],
        staged_attacker=2,
    )

    outcome = resolver.resolve(attacker, None, round_)

    assert attacker.bank["violence"] == 0
    # 12 + ceil(2/2) + command_overdrive bonus 2
    assert outcome.total == 15
    assert outcome.metadata["paid_attacker"] is True
    assert outcome.metadata["cost_attacker"] == {"violence": 5}


def test_unopposed_dc_is_base_plus_offset():
    resolver = build_resolver([10])
    attacker = Faction(id="a", name="A")
    round_ = Round(attacker_id="a", difficulty_offset=3)

    outcome = resolver.resolve(attacker, None, round_)

    assert outcome.dc == get_settings().base_dc + 3
    assert outcome.success is False


def test_defender_extras_raise_dc():
    resolver = build_resolver([10])
    attacker = Faction(id="a", name="A")
    defender = Faction(
        id="d",
        name="D",
        bank={"violence": 8},
        mods={"defense": 2},
        bonuses={"nextRaid": {"defenseBonus": 5}},
    )
    round_ = Round(
        attacker_id="a",
        defender_id="d",
        defender_maneuvers=["defensive_entrenchment"],
        staged_defender=3,
        base_dc=12,
    )

    outcome = resolver.resolve(attacker, defender, round_)

    # 12 + ceil(3/2) + entrenchment 3 + defense 2 + next raid 5
    assert outcome.dc == 24
    assert defender.bank["violence"] == 1


def test_unaffordable_side_forfeits_benefits_without_debit(caplog):
    resolver = build_resolver([10])
    attacker = Faction(id="a", name="A", bank={"violence": 3})
    round_ = Round(attacker_id="a", attacker_maneuvers=["qliphothic_gambit"], staged_attacker=4)

    with caplog.at_level(logging.WARNING, logger="raid_engine.resolver"):
        outcome = resolver.resolve(attacker, None, round_)

    assert attacker.bank["violence"] == 3
    assert outcome.total == 10
    assert outcome.metadata["paid_attacker"] is False
    assert outcome.metadata["attacker_maneuvers"] == []
    assert "forfeited" in caplog.text


def test_unknown_maneuver_is_skipped_and_costs_nothing(caplog):
    resolver = build_resolver([9])
    attacker = Faction(id="a", name="A", bank={"violence": 2})
    round_ = Round(attacker_id="a", attacker_maneuvers=["retired_maneuver", "suppressive_fire"])

    with caplog.at_level(logging.WARNING, logger="raid_engine.resolver"):
        outcome = resolver.resolve(attacker, None, round_)

    assert outcome.metadata["skipped"] == ["retired_maneuver"]
    assert outcome.metadata["cost_attacker"] == {"violence": 2}
    assert attacker.bank["violence"] == 0
    assert "unknown activity, skipped" in caplog.text


def test_advantage_keeps_higher_roll():
    resolver = build_resolver([4, 17])
    attacker = Faction(id="a", name="A", bank={"intrigue": 3})
    round_ = Round(attacker_id="a", attacker_maneuvers=["spy_network"], attack_bonus=1)

    outcome = resolver.resolve(attacker, None, round_)

    assert outcome.total == 18
    assert outcome.metadata["naturals"] == [4, 17]
    assert "advantage" in outcome.roll_detail


def test_initiative_bonus_grants_advantage():
    resolver = build_resolver([2, 15])
    attacker = Faction(id="a", name="A", bonuses={"nextTurn": {"initiativeAdv": True}})

    outcome = resolver.resolve(attacker, None, Round(attacker_id="a"))

    assert outcome.metadata["advantage"] is True
    assert outcome.total == 15


def test_auto_win_sentinels():
    sentinel = get_settings().auto_win_total
    resolver = build_resolver([])
    attacker = Faction(id="a", name="A", bank={"faith": 5, "softpower": 5})
    defender = Faction(id="d", name="D")
    round_ = Round(attacker_id="a", defender_id="d", attacker_maneuvers=["sephirotic_intervention"])

    outcome = resolver.resolve(attacker, defender, round_)

    assert outcome.total == sentinel
    assert outcome.success is True
    assert outcome.roll_detail == "auto-win"

    resolver = build_resolver([20])
    defender = Faction(id="d", name="D", bank={"faith": 5, "softpower": 5})
    round_ = Round(attacker_id="a", defender_id="d", defender_maneuvers=["sephirotic_intervention"])
    outcome = resolver.resolve(Faction(id="a", name="A"), defender, round_)

    assert outcome.dc == sentinel
    assert outcome.success is False


def test_raid_type_sets_staged_category():
    resolver = build_resolver([10])
    attacker = Faction(id="a", name="A", bank={"faith": 4, "violence": 4})
    round_ = Round(attacker_id="a", raid_type="ritual", staged_attacker=4)

    outcome = resolver.resolve(attacker, None, round_)

    assert outcome.metadata["category"] == "faith"
    assert attacker.bank == {"faith": 0, "violence": 4}
    assert outcome.total == 12


def test_round_flags_are_consumed_and_free_maneuver_refunds_cost():
    resolver = build_resolver([3, 4])
    attacker = Faction(
        id="a",
        name="A",
        bank={"violence": 5},
        bonuses={"nextTurn": {"freeManeuver": True, "initiativeAdv": True, "opGainPct": 10}},
    )
    round_ = Round(attacker_id="a", category="violence", attacker_maneuvers=["flank_attack"])

    outcome = resolver.resolve(attacker, None, round_)

    assert attacker.bank["violence"] == 5
    assert outcome.metadata["free_maneuver_refund"] == {"violence": 5}
    assert outcome.metadata["initiative_used"] is True
    assert outcome.metadata["naturals"] == [3, 4]
    assert attacker.bonuses["nextTurn"] == {"opGainPct": 10}


def test_free_maneuver_is_kept_when_no_maneuver_is_paid():
    resolver = build_resolver([10])
    attacker = Faction(id="a", name="A", bonuses={"nextTurn": {"freeManeuver": True}})

    outcome = resolver.resolve(attacker, None, Round(attacker_id="a"))

    assert outcome.metadata["free_maneuver_refund"] == {}
    assert attacker.bonuses["nextTurn"] == {"freeManeuver": True}
