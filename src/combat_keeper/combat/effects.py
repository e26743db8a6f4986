"""
Effects engine for encounter effects and the conditions they carry.

This module provides:
- EffectsEngine: stateless helpers that link conditions to effects,
  find expired effects and conditions for a round, and pick the effects
  that tick damage at the start or end of a combatant's turn.
- SRD_CONDITIONS: the condition names the engine recognises without a
  custom definition.

Effects expire exclusively: an effect with ``end_round = N`` is gone once
the encounter reaches round N. Conditions linked to an effect share its
lifetime and are removed with it.
"""

from typing import Iterable

from ..models import ActiveCondition, Combatant, Effect, TickTiming

SRD_CONDITIONS: frozenset[str] = frozenset({
    "blinded",
    "charmed",
    "deafened",
    "exhaustion",
    "frightened",
    "grappled",
    "incapacitated",
    "invisible",
    "paralyzed",
    "petrified",
    "poisoned",
    "prone",
    "restrained",
    "stunned",
    "unconscious",
})


class EffectsEngine:
    """Stateless operations over Effect records and combatant conditions."""

    # -----------------------------------------------------------------
    # Conditions
    # -----------------------------------------------------------------

    @staticmethod
    def add_condition(
        combatant: Combatant,
        name: str,
        source_effect_id: str | None = None,
        ends_at_round: int | None = None,
    ) -> ActiveCondition:
        """Add a condition, replacing an existing one of the same name and source."""
        condition = ActiveCondition(
            name=name.strip().lower(),
            source_effect_id=source_effect_id,
            ends_at_round=ends_at_round,
        )
        combatant.conditions = [
            c for c in combatant.conditions
            if not (c.name == condition.name and c.source_effect_id == source_effect_id)
        ]
        combatant.conditions.append(condition)
        return condition

    @staticmethod
    def remove_condition(combatant: Combatant, name: str) -> bool:
        before = len(combatant.conditions)
        combatant.conditions = [c for c in combatant.conditions if c.name != name.lower()]
        return len(combatant.conditions) != before

    @staticmethod
    def apply_effect(combatant: Combatant, effect: Effect) -> ActiveCondition | None:
        """Attach the effect's linked condition to its target, if it has one."""
        if not effect.applies_condition:
            return None
        return EffectsEngine.add_condition(
            combatant,
            effect.applies_condition,
            source_effect_id=effect.id,
            ends_at_round=effect.end_round,
        )

    @staticmethod
    def remove_linked_conditions(combatant: Combatant, effect_ids: Iterable[str]) -> list[str]:
        """Drop conditions owned by the given effects.

        Returns:
            Names of the removed conditions.
        """
        ids = set(effect_ids)
        removed = [c.name for c in combatant.conditions if c.source_effect_id in ids]
        if removed:
            combatant.conditions = [
                c for c in combatant.conditions if c.source_effect_id not in ids
            ]
        return removed

    @staticmethod
    def expire_conditions(combatant: Combatant, current_round: int) -> list[str]:
        """Drop conditions whose ``ends_at_round`` has been reached."""
        expired = [
            c.name for c in combatant.conditions
            if c.ends_at_round is not None and c.ends_at_round <= current_round
        ]
        if expired:
            combatant.conditions = [
                c for c in combatant.conditions
                if c.ends_at_round is None or c.ends_at_round > current_round
            ]
        return expired

    # -----------------------------------------------------------------
    # Effect Durations
    # -----------------------------------------------------------------

    @staticmethod
    def expired_effects(effects: Iterable[Effect], current_round: int) -> list[Effect]:
        return [
            e for e in effects
            if e.end_round is not None and e.end_round <= current_round
        ]

    @staticmethod
    def ticking_effects(
        effects: Iterable[Effect],
        combatant_id: str,
        timing: TickTiming,
    ) -> list[Effect]:
        """Effects on a combatant that deal damage at the given turn boundary."""
        return [
            e for e in effects
            if e.combatant_id == combatant_id
            and e.ticks_at == timing
            and e.damage_per_tick
            and e.damage_type_per_tick is not None
        ]

    @staticmethod
    def is_standard_condition(name: str) -> bool:
        return name.strip().lower() in SRD_CONDITIONS
