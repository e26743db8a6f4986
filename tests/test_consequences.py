"""
Tests for damage and healing consequence rules.
"""

import pytest

from combat_keeper.combat.consequences import (
    adjust_damage,
    apply_damage_outcome,
    apply_healing_outcome,
    damage_log_message,
    healing_log_message,
    resolve_damage,
    resolve_healing,
)
from combat_keeper.models import Combatant, CombatantKind, DamageType


def _combatant(**fields) -> Combatant:
    fields.setdefault("max_hp", 20)
    fields.setdefault("current_hp", fields["max_hp"])
    return Combatant(encounter_id="enc", name="Aldric", **fields)


class TestAdjustDamage:

    def test_plain(self):
        assert adjust_damage(12, DamageType.SLASHING) == (12, [])

    def test_immunity_zeroes(self):
        adjusted, steps = adjust_damage(30, DamageType.FIRE, immunities=[DamageType.FIRE])
        assert adjusted == 0
        assert steps == ["Immune to fire damage"]

    def test_resistance_halves_rounding_down(self):
        adjusted, steps = adjust_damage(7, DamageType.COLD, resistances=[DamageType.COLD])
        assert adjusted == 3
        assert steps == ["Resistant to cold: 7 → 3"]

    def test_vulnerability_doubles(self):
        adjusted, _ = adjust_damage(9, DamageType.RADIANT, vulnerabilities=[DamageType.RADIANT])
        assert adjusted == 18

    def test_resistance_and_vulnerability_cancel(self):
        adjusted, _ = adjust_damage(
            10, DamageType.FIRE,
            resistances=[DamageType.FIRE],
            vulnerabilities=[DamageType.FIRE],
        )
        assert adjusted == 10

    def test_immunity_wins_over_everything(self):
        adjusted, _ = adjust_damage(
            10, DamageType.POISON,
            resistances=[DamageType.POISON],
            immunities=[DamageType.POISON],
            vulnerabilities=[DamageType.POISON],
        )
        assert adjusted == 0

    def test_accepts_string_type(self):
        assert adjust_damage(10, "fire", resistances=["fire"])[0] == 5


class TestResolveDamage:

    def test_resisted_fire_example(self):
        target = _combatant(resistances=[DamageType.FIRE])
        outcome = resolve_damage(target, 36, DamageType.FIRE)
        assert outcome.adjusted_amount == 18
        assert outcome.new_hp == 2
        assert outcome.damage_steps == ["Resistant to fire: 36 → 18", "18 damage to HP"]

    def test_temp_hp_absorbs_first(self):
        target = _combatant(temp_hp=5)
        outcome = resolve_damage(target, 8, DamageType.PIERCING)
        assert outcome.temp_hp_absorbed == 5
        assert outcome.hp_damage == 3
        assert outcome.new_temp_hp == 0
        assert outcome.new_hp == 17
        assert "Temp HP absorbed 5 damage" in outcome.damage_steps

    def test_temp_hp_absorbs_all(self):
        target = _combatant(temp_hp=10)
        outcome = resolve_damage(target, 4, DamageType.PIERCING)
        assert outcome.new_temp_hp == 6
        assert outcome.new_hp == 20
        assert outcome.hp_damage == 0

    def test_hp_floor_zero(self):
        outcome = resolve_damage(_combatant(current_hp=3), 50, DamageType.FORCE)
        assert outcome.new_hp == 0

    def test_pure_function(self):
        target = _combatant()
        resolve_damage(target, 10, DamageType.ACID)
        assert target.current_hp == 20

    def test_damage_at_zero_adds_death_save_failure(self):
        target = _combatant(current_hp=0)
        outcome = resolve_damage(target, 4, DamageType.SLASHING)
        assert outcome.death_save_failure_added is True
        apply_damage_outcome(target, outcome)
        assert target.death_saves.fail == 1

    def test_monster_at_zero_gets_no_death_saves(self):
        target = _combatant(current_hp=0, kind=CombatantKind.MONSTER)
        assert resolve_damage(target, 4, DamageType.SLASHING).death_save_failure_added is False

    def test_immune_damage_adds_no_failure(self):
        target = _combatant(current_hp=0, immunities=[DamageType.POISON])
        assert resolve_damage(target, 4, DamageType.POISON).death_save_failure_added is False


class TestHealing:

    def test_capped_at_max(self):
        outcome = resolve_healing(_combatant(current_hp=15), 10)
        assert outcome.new_hp == 20
        assert outcome.actual_healing == 5

    def test_from_zero_clears_death_saves(self):
        target = _combatant(current_hp=0, death_saves={"success": 2, "fail": 2})
        outcome = resolve_healing(target, 5)
        assert outcome.death_saves_cleared is True
        apply_healing_outcome(target, outcome)
        assert target.current_hp == 5
        assert target.death_saves.success == 0
        assert target.death_saves.fail == 0

    def test_zero_healing_from_zero_keeps_death_saves(self):
        target = _combatant(current_hp=0, death_saves={"success": 1, "fail": 0})
        outcome = resolve_healing(target, 0)
        assert outcome.death_saves_cleared is False


class TestLogMessages:

    def test_damage_message(self):
        target = _combatant()
        outcome = resolve_damage(target, 7, DamageType.SLASHING)
        message = damage_log_message(outcome, target.name, DamageType.SLASHING, "Goblin", "Scimitar")
        assert message == "Goblin uses Scimitar against Aldric for 7 slashing damage"

    def test_immune_message(self):
        target = _combatant(immunities=[DamageType.FIRE])
        outcome = resolve_damage(target, 7, DamageType.FIRE)
        assert "immune to fire" in damage_log_message(outcome, target.name, DamageType.FIRE)

    def test_healing_message(self):
        outcome = resolve_healing(_combatant(current_hp=10), 4)
        assert healing_log_message(outcome, "Aldric", "Elara", "Cure Wounds") == (
            "Elara uses Cure Wounds on Aldric, restores 4 HP"
        )


@pytest.mark.parametrize("amount", [0, 1, 19, 20, 21, 1000])
def test_hp_stays_in_bounds(amount):
    target = _combatant(temp_hp=3)
    outcome = resolve_damage(target, amount, DamageType.BLUDGEONING)
    apply_damage_outcome(target, outcome)
    assert 0 <= target.current_hp <= target.max_hp
    healed = resolve_healing(target, amount)
    apply_healing_outcome(target, healed)
    assert 0 <= target.current_hp <= target.max_hp
