"""Tests for catalog loading and load-time validation."""
from __future__ import annotations

import logging

from raid_engine.catalog import ManeuverCatalog
from raid_engine.models import EffectOp, ManeuverKind, Scope


def test_default_catalog_loads_both_kinds():
    catalog = ManeuverCatalog.load()

    flank = catalog.get("flank_attack")
    assert flank is not None
    assert flank.kind is ManeuverKind.MANEUVER
    assert flank.cost == {"violence": 5}
    assert flank.pre_roll is not None and flank.pre_roll.attack_bonus == 2

    infra = catalog.get("develop_infrastructure")
    assert infra is not None
    assert infra.kind is ManeuverKind.STRATEGIC
    assert infra.behavior is not None
    assert infra.behavior.description.startswith("+1 Defense")
    assert [t.scope for t in infra.behavior.rules[0].targets] == [Scope.LOCATION, Scope.FACTION]


def test_strategic_listing_is_sorted_by_label():
    catalog = ManeuverCatalog.load()

    labels = [entry.label for entry in catalog.strategic_activities()]

    assert labels == sorted(labels, key=str.lower)
    assert "Alliance Summit" == labels[0]
    assert all(entry.kind is ManeuverKind.STRATEGIC for entry in catalog.strategic_activities())


def test_maneuvers_for_filters_by_raid_type():
    catalog = ManeuverCatalog.load()

    assault = {entry.key for entry in catalog.maneuvers_for("assault")}
    espionage = {entry.key for entry in catalog.maneuvers_for("espionage")}

    assert "flank_attack" in assault
    assert "flank_attack" not in espionage
    assert "spy_network" in espionage
    assert "supply_surge" in assault and "supply_surge" in espionage
    assert catalog.primary_category("ritual") == "faith"
    assert catalog.primary_category("unknown") is None


def test_post_roll_table_lookup():
    catalog = ManeuverCatalog.load()

    effect = catalog.post_roll_effect("divine_favor", False)

    assert effect is not None
    assert catalog.post_roll_effect("divine_favor", True) is None
    write = effect.rules[0].targets[0].writes[0]
    assert write.op is EffectOp.INCREMENT
    assert write.path == "radiationRisk"


def test_invalid_entries_are_dropped_with_warning(caplog):
    data = {
        "maneuvers": {
            "good": {"label": "Good", "cost": {"violence": 1}},
            "bad_cost": {"label": "Bad", "cost": {"violence": "lots"}},
        },
        "pre_roll": {
            "good": {"attack_bonus": 1},
            "ghost": {"attack_bonus": 4},
        },
        "strategic": {
            "bad_op": {
                "label": "Bad Op",
                "cost": {"economy": 1},
                "effects": [{"route": {"faction": [{"op": "explode", "path": "x"}]}}],
            },
            "bad_scope": {
                "label": "Bad Scope",
                "effects": [{"route": {"moon": [{"op": "increment", "path": "x"}]}}],
            },
            "no_behaviour": {"label": "Nothing"},
            "fine": {
                "label": "Fine",
                "description": "ok",
                "effects": [{"route": {"faction": [{"op": "increment", "path": "moraleDelta"}]}}],
            },
        },
        "post_roll": [
            {"maneuver": "ghost", "when": "success", "effects": []},
            {"maneuver": "good", "when": "sometimes", "effects": []},
        ],
        "raid_types": {"assault": {"primary": "violence"}, "broken": {"label": "Broken"}},
    }

    with caplog.at_level(logging.WARNING, logger="raid_engine.catalog"):
        catalog = ManeuverCatalog.from_dict(data)

    assert "good" in catalog and "fine" in catalog
    for dropped in ("bad_cost", "bad_op", "bad_scope", "no_behaviour", "ghost"):
        assert dropped not in catalog
    assert not catalog.has_post_roll("good")
    assert catalog.raid_types() == {"assault": {"label": "assault", "primary": "violence"}}
    assert "ghost" in caplog.text
    assert "explode" in caplog.text


def test_cost_of_sums_known_keys_only():
    catalog = ManeuverCatalog.load()

    cost = catalog.cost_of(["suppressive_fire", "command_overdrive", "not_a_maneuver"])

    assert cost == {"violence": 5}


def test_shipped_catalog_loads_post_roll_table_without_warnings(caplog):
    with caplog.at_level(logging.WARNING, logger="raid_engine.catalog"):
        catalog = ManeuverCatalog.load()

    assert caplog.records == []
    flank = catalog.post_roll_effect("flank_attack", True)
    assert flank is not None
    assert flank.rules[0].targets[0].scope is Scope.DEFENDER
    for key in ("echo_strike_protocol", "propaganda_push", "technocrat_override", "unity_surge"):
        assert catalog.has_post_roll(key)
