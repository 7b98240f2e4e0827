"""Integration tests for EngineService against a temporary state database."""
from __future__ import annotations

from pathlib import Path

import pytest

from raid_engine.models import EffectOp, Round
from raid_engine.post_round import FORFEIT_NOTE
from raid_engine.rng import DeterministicRNG
from raid_engine.service import EngineService
from raid_engine.state import PersistenceError


def build_service(tmp_path: Path) -> EngineService:
    service = EngineService(tmp_path / "state.db", rng=DeterministicRNG(seed=7))
    service.register_faction("a", "Ashen Host", bank={"violence": 5, "diplomacy": 8, "softpower": 3, "economy": 10})
    service.register_faction("d", "Dawn Choir", bank={"violence": 4})
    service.register_location("hex", "Hex 12", mods={"defense": 1})
    return service


def test_register_faction_clamps_opening_bank(tmp_path):
    service = build_service(tmp_path)
    service.register_faction("rich", "Rich", bank={"economy": 50, "faith": -3})

    bank = service.get_bank("rich")
    assert bank["economy"] == service.settings.max_for("economy")
    assert bank["faith"] == 0
    assert set(bank) == set(service.settings.resource_categories)


def test_unknown_faction_raises(tmp_path):
    service = build_service(tmp_path)

    with pytest.raises(EngineService.UnknownEntityError):
        service.get_faction("nobody")


def test_credit_records_origin_event(tmp_path):
    service = build_service(tmp_path)

    bank = service.credit("d", {"violence": 20}, origin="tribute")

    assert bank["violence"] == service.settings.max_for("violence")
    event = service.state.export_events()[-1]
    assert event.action == "ledger_credit"
    assert event.payload["origin"] == "tribute"
    assert event.payload["before"]["violence"] == 4


def test_spend_clamps_at_zero(tmp_path):
    service = build_service(tmp_path)

    bank = service.spend("d", {"violence": 9}, reason="overspend")

    assert bank["violence"] == 0
    assert service.state.export_events()[-1].action == "ledger_spend"


@pytest.mark.parametrize("offset, expected", [(-100, "success"), (100, "failure")])
def test_resolve_round_writes_one_raid_entry(tmp_path, offset, expected):
    service = build_service(tmp_path)
    round_ = Round(
        attacker_id="a",
        defender_id="d",
        location_id="hex",
        attacker_maneuvers=["command_overdrive"],
        difficulty_offset=offset,
    )

    outcome = service.resolve_round(round_)

    assert round_.committed is True
    assert round_.outcome is outcome
    assert outcome.success is (expected == "success")
    raids = [entry for entry in service.war_log("a") if entry.type == "raid"]
    assert len(raids) == 1
    assert raids[0].outcome == expected
    assert service.get_bank("a")["violence"] == 5 - service.catalog.cost_of(["command_overdrive"])["violence"]


def test_round_cannot_be_committed_twice(tmp_path):
    service = build_service(tmp_path)
    round_ = Round(attacker_id="a", defender_id="d")
    service.resolve_round(round_)

    with pytest.raises(EngineService.RoundAlreadyCommittedError):
        service.resolve_round(round_)

    service.apply_post_round(round_)
    with pytest.raises(EngineService.RoundAlreadyCommittedError):
        service.apply_post_round(round_)

    assert len([entry for entry in service.war_log("a") if entry.type == "raid"]) == 1


def test_post_round_requires_committed_round(tmp_path):
    service = build_service(tmp_path)

    with pytest.raises(ValueError):
        service.apply_post_round(Round(attacker_id="a", defender_id="d"))


def test_attacker_cannot_raid_itself(tmp_path):
    service = build_service(tmp_path)

    with pytest.raises(ValueError):
        service.resolve_round(Round(attacker_id="a", defender_id="a"))


def test_persistence_failure_leaves_round_retryable(tmp_path, monkeypatch):
    service = build_service(tmp_path)
    round_ = Round(attacker_id="a", defender_id="d", attacker_maneuvers=["command_overdrive"])
    original = service.state.write_batch

    def failing_write(**kwargs):
        raise PersistenceError("disk unavailable")

    monkeypatch.setattr(service.state, "write_batch", failing_write)
    with pytest.raises(PersistenceError):
        service.resolve_round(round_)

    assert round_.committed is False
    assert service.get_bank("a")["violence"] == 5
    assert service.war_log("a") == []

    monkeypatch.setattr(service.state, "write_batch", original)
    service.resolve_round(round_)
    assert round_.committed is True
    assert len(service.war_log("a")) == 1


def test_flank_attack_queues_defense_loss_for_next_turn(tmp_path):
    service = build_service(tmp_path)
    service.credit("a", {"violence": 5, "logistics": 5, "intrigue": 5}, origin="setup")
    round_ = Round(
        attacker_id="a",
        defender_id="d",
        raid_type="assault",
        attacker_maneuvers=["flank_attack"],
        difficulty_offset=-100,
    )

    outcome = service.run_round(round_)

    assert outcome.success is True
    defender = service.get_faction("d")
    assert defender.pending["defenseLoss"] == 1
    assert defender.mods.get("defense", 0) == 0

    result = service.advance_turn("d")
    assert result.note == "applied"
    assert service.get_faction("d").mods["defense"] == -1


def test_queued_deltas_accumulate_and_apply_once(tmp_path):
    service = build_service(tmp_path)
    service.queue_effect("a", EffectOp.INCREMENT, "loyaltyDelta", 1)
    service.queue_effect("a", "increment", "loyaltyDelta", 2)

    result = service.advance_turn("a")

    assert result.note == "applied"
    faction = service.get_faction("a")
    assert faction.mods["loyalty"] == 3
    assert faction.pending == {}
    logged = len(service.war_log("a"))

    second = service.advance_turn("a")
    assert second.note == "empty"
    assert service.get_faction("a").mods["loyalty"] == 3
    assert len(service.war_log("a")) == logged


def test_advance_turn_is_noop_while_locked(tmp_path):
    service = build_service(tmp_path)
    service.queue_effect("a", "increment", "loyaltyDelta", 1)

    assert service.turn_lock.try_acquire("a")
    try:
        result = service.advance_turn("a")
    finally:
        service.turn_lock.release("a")

    assert result.ok is False
    assert result.note == "already-running"
    assert service.get_faction("a").pending == {"loyaltyDelta": 1}


def test_op_transfer_moves_resources_on_advance(tmp_path):
    service = build_service(tmp_path)
    service.queue_op_transfer("a", "d", "economy", 4)

    service.advance_turn("a")

    assert service.get_bank("a")["economy"] == 6
    assert service.get_bank("d")["economy"] == 4


def test_strategic_activity_spends_and_queues_location(tmp_path):
    service = build_service(tmp_path)

    result = service.apply_strategic_activity("a", "develop_infrastructure", location_id="hex")

    assert result["ok"] is True
    assert result["summary"].startswith("Strategic: Develop Infrastructure - Spent economy:10.")
    assert service.get_bank("a")["economy"] == 0
    assert service.get_location("hex").pending == {"defenseDelta": 1, "tradeYieldDelta": 5}
    assert service.get_faction("a").pending == {}

    results = service.advance_all_turns()
    assert [(result.faction_id, result.note) for result in results] == [("a", "applied"), ("d", "empty")]
    assert results[0].locations == ["hex"]
    assert service.get_location("hex").pending == {}
    assert service.get_location("hex").mods == {"defense": 2, "tradeYield": 5}


def test_strategic_activity_skips_unknown_and_unaffordable(tmp_path):
    service = build_service(tmp_path)

    skipped = service.apply_strategic_activity("d", "bogus")
    unaffordable = service.apply_strategic_activity("d", "diplomatic_mission")

    assert skipped == {"ok": False, "status": "skipped", "summary": "[SKIP] Unknown activity: bogus"}
    assert unaffordable["status"] == "unaffordable"
    assert unaffordable["summary"] == "[COST] Cannot afford Diplomatic Mission (diplomacy:6, softpower:2)"
    assert service.get_faction("d").pending == {}
    assert service.get_bank("d")["violence"] == 4


def test_planned_activities_run_exactly_once(tmp_path):
    service = build_service(tmp_path)
    order_id = service.plan_activity("a", "diplomatic_mission", notes="envoys")

    first = service.consume_planned("a")
    second = service.consume_planned("a")

    assert first["note"] == "consumed"
    assert first["results"][0]["order_id"] == order_id
    assert first["results"][0]["status"] == "completed"
    assert second["note"] == "empty"
    assert service.get_faction("a").pending["loyaltyDelta"] == 5
    orders = service.state.list_orders(actor_id="a")
    assert orders[0]["status"] == "completed"


def test_legacy_queues_migrate_at_startup(tmp_path):
    service = build_service(tmp_path)
    document = service.state.faction_documents()["d"]
    document["post"] = {"pending": {"moraleDelta": 2}}
    service.state.save_faction_document("d", document)

    assert service.preview_migration()["factions"] == {"d": ["post.pending"]}

    reopened = EngineService(tmp_path / "state.db")

    assert reopened.last_migration["factions"]["changed"] == ["d"]
    assert reopened.get_faction("d").pending == {"moraleDelta": 2}
    assert reopened.preview_migration()["factions"] == {}


def test_forfeited_maneuvers_are_logged_without_consequences(tmp_path):
    service = build_service(tmp_path)
    service.register_faction("poor", "Poor Militia", bank={"violence": 1})
    round_ = Round(
        attacker_id="poor",
        defender_id="d",
        raid_type="assault",
        attacker_maneuvers=["flank_attack"],
        defender_maneuvers=["quantum_shield"],
        difficulty_offset=-100,
    )

    outcome = service.run_round(round_)

    assert outcome.success is True
    assert outcome.metadata["paid_attacker"] is False
    assert outcome.metadata["paid_defender"] is False
    assert "defenseLoss" not in service.get_faction("d").pending
    assert service.get_bank("poor")["violence"] == 1
    flank = [entry for entry in service.war_log("poor") if entry.activity == "flank_attack"]
    assert len(flank) == 1
    assert flank[0].summary == f"Flank Attack: {FORFEIT_NOTE}"
    shield = [entry for entry in service.war_log("d") if entry.activity == "quantum_shield"]
    assert shield[0].summary.endswith(FORFEIT_NOTE)


def test_location_only_queue_is_drained_by_advance(tmp_path):
    service = build_service(tmp_path)
    service.queue_effect("hex", "increment", "defenseDelta", 2, location=True)

    result = service.advance_turn("d")

    assert result.note == "applied"
    assert result.applied == {}
    assert result.locations == ["hex"]
    assert service.get_location("hex").mods == {"defense": 3}
    assert service.advance_turn("d").note == "empty"


def test_reregistering_without_bank_keeps_stored_bank(tmp_path):
    service = build_service(tmp_path)

    service.register_faction("d", "Dawn Choir Reformed")

    faction = service.get_faction("d")
    assert faction.name == "Dawn Choir Reformed"
    assert service.get_bank("d")["violence"] == 4

    service.register_faction("d", "Dawn Choir", bank={"faith": 3})
    assert service.get_bank("d")["violence"] == 0
    assert service.get_bank("d")["faith"] == 3


def test_outcome_awards_reach_unity_and_morale_on_advance(tmp_path):
    service = build_service(tmp_path)
    round_ = Round(attacker_id="a", defender_id="d", difficulty_offset=-100)

    service.run_round(round_)
    service.advance_turn("a")
    service.advance_turn("d")

    attacker = service.get_faction("a")
    defender = service.get_faction("d")
    assert attacker.victory["unity"] == service.settings.unity_awards["win"]
    assert attacker.mods["morale"] == service.settings.morale_awards["win"]
    assert defender.victory["unity"] == 0
    assert defender.mods["morale"] == 0
