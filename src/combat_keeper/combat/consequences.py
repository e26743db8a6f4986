"""
Consequence rules derived from a primitive damage or healing change.

These are pure functions. The mutator calls them inside the same atomic
step that writes the new HP, so derived changes (death saves, the
concentration prompt from ``concentration.py``) are committed together
with it.

Rules:
- Immunity zeroes damage. Resistance halves it (rounded down) and
  vulnerability doubles it; having both cancels out.
- Temporary HP absorbs damage before HP, and HP never drops below 0.
- A character already at 0 HP who takes damage gains a death-save failure.
- Healing that lifts a combatant from 0 HP clears its death saves.
"""

from dataclasses import dataclass, field
from typing import Iterable

from ..models import Combatant, CombatantKind, DamageType, DeathSaves


@dataclass
class DamageOutcome:
    """Result of resolving damage against one combatant.

    Attributes:
        raw_amount: Damage as submitted.
        adjusted_amount: Damage after immunity/resistance/vulnerability.
        temp_hp_absorbed: Portion soaked up by temporary HP.
        hp_damage: Portion that reached HP.
        new_hp: HP after the damage.
        new_temp_hp: Temporary HP after the damage.
        damage_steps: Human-readable audit lines.
        death_save_failure_added: Whether a failure was added because the
            combatant was already at 0 HP.
    """
    raw_amount: int
    adjusted_amount: int
    temp_hp_absorbed: int
    hp_damage: int
    new_hp: int
    new_temp_hp: int
    damage_steps: list[str] = field(default_factory=list)
    immune: bool = False
    death_save_failure_added: bool = False


@dataclass
class HealingOutcome:
    amount: int
    actual_healing: int
    new_hp: int
    death_saves_cleared: bool = False


def adjust_damage(
    amount: int,
    damage_type: DamageType,
    resistances: Iterable[DamageType] = (),
    immunities: Iterable[DamageType] = (),
    vulnerabilities: Iterable[DamageType] = (),
) -> tuple[int, list[str]]:
    """Apply the damage-type table to a raw amount.

    Returns:
        Tuple of (adjusted_amount, steps).
    """
    kind = DamageType(damage_type).value
    if DamageType(damage_type) in set(immunities):
        return 0, [f"Immune to {kind} damage"]

    resistant = DamageType(damage_type) in set(resistances)
    vulnerable = DamageType(damage_type) in set(vulnerabilities)

    if resistant and vulnerable:
        return amount, [f"Resistance and vulnerability to {kind} cancel out"]
    if resistant:
        adjusted = amount // 2
        return adjusted, [f"Resistant to {kind}: {amount} → {adjusted}"]
    if vulnerable:
        adjusted = amount * 2
        return adjusted, [f"Vulnerable to {kind}: {amount} → {adjusted}"]
    return amount, []


def resolve_damage(combatant: Combatant, amount: int, damage_type: DamageType) -> DamageOutcome:
    """Compute the effect of damage on a combatant without mutating it."""
    adjusted, steps = adjust_damage(
        amount,
        damage_type,
        combatant.resistances,
        combatant.immunities,
        combatant.vulnerabilities,
    )
    immune = DamageType(damage_type) in set(combatant.immunities)

    remaining = adjusted
    absorbed = 0
    if remaining > 0 and combatant.temp_hp > 0:
        absorbed = min(remaining, combatant.temp_hp)
        remaining -= absorbed
        steps.append(f"Temp HP absorbed {absorbed} damage")

    hp_damage = 0
    if remaining > 0:
        hp_damage = remaining
        steps.append(f"{hp_damage} damage to HP")

    failure_added = (
        adjusted > 0
        and combatant.current_hp == 0
        and combatant.kind == CombatantKind.CHARACTER
        and combatant.death_saves.fail < 3
    )

    return DamageOutcome(
        raw_amount=amount,
        adjusted_amount=adjusted,
        temp_hp_absorbed=absorbed,
        hp_damage=hp_damage,
        new_hp=max(0, combatant.current_hp - hp_damage),
        new_temp_hp=max(0, combatant.temp_hp - absorbed),
        damage_steps=steps,
        immune=immune,
        death_save_failure_added=failure_added,
    )


def apply_damage_outcome(combatant: Combatant, outcome: DamageOutcome) -> None:
    combatant.current_hp = outcome.new_hp
    combatant.temp_hp = outcome.new_temp_hp
    if outcome.death_save_failure_added:
        combatant.death_saves = DeathSaves(
            success=combatant.death_saves.success,
            fail=min(3, combatant.death_saves.fail + 1),
        )


def resolve_healing(combatant: Combatant, amount: int) -> HealingOutcome:
    """Compute healing capped at max HP, clearing death saves from 0 HP."""
    new_hp = min(combatant.max_hp, combatant.current_hp + amount)
    return HealingOutcome(
        amount=amount,
        actual_healing=new_hp - combatant.current_hp,
        new_hp=new_hp,
        death_saves_cleared=combatant.current_hp == 0 and new_hp > 0,
    )


def apply_healing_outcome(combatant: Combatant, outcome: HealingOutcome) -> None:
    combatant.current_hp = outcome.new_hp
    if outcome.death_saves_cleared:
        combatant.death_saves = DeathSaves()


def damage_log_message(
    outcome: DamageOutcome,
    target_name: str,
    damage_type: DamageType,
    source_name: str | None = None,
    ability_name: str | None = None,
) -> str:
    source = source_name or "Unknown"
    ability = ability_name or "Attack"
    kind = DamageType(damage_type).value
    if outcome.immune:
        return f"{source} uses {ability} against {target_name}, immune to {kind} damage"
    if outcome.hp_damage > 0:
        return f"{source} uses {ability} against {target_name} for {outcome.hp_damage} {kind} damage"
    return f"{source} uses {ability} against {target_name} for {outcome.adjusted_amount} {kind} damage"


def healing_log_message(
    outcome: HealingOutcome,
    target_name: str,
    source_name: str | None = None,
    ability_name: str | None = None,
) -> str:
    source = source_name or "Unknown"
    ability = ability_name or "Healing"
    return f"{source} uses {ability} on {target_name}, restores {outcome.actual_healing} HP"
