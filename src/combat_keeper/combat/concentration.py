"""
Concentration tracking for combat effects.

This module enforces the 5e concentration mechanic over Effect records:
- A combatant can only concentrate on one spell at a time; creating a new
  concentration effect supersedes every effect the caster was
  concentrating on before.
- Taking damage owes a CON saving throw at DC = max(10, damage // 2),
  issued as a single Save Prompt scoped to that combatant.
- Failing that save breaks concentration and removes the effects.

The ConcentrationTracker is stateless: it reads effect lists and returns
the records the mutator should write or delete.
"""

from typing import Iterable

from ..models import Ability, Combatant, Effect, PromptSource, SavePrompt, TargetScope


class ConcentrationTracker:
    """Stateless engine for concentration bookkeeping."""

    # -----------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------

    @staticmethod
    def concentration_dc(damage: int) -> int:
        return max(10, damage // 2)

    @staticmethod
    def concentrated_effects(effects: Iterable[Effect], combatant_id: str) -> list[Effect]:
        """Effects that the given combatant is concentrating on."""
        return [
            e for e in effects
            if e.requires_concentration and e.concentrating_combatant_id == combatant_id
        ]

    # -----------------------------------------------------------------
    # Starting / Breaking Concentration
    # -----------------------------------------------------------------

    @staticmethod
    def start_concentration(effects: Iterable[Effect], new_effect: Effect) -> list[Effect]:
        """Find the effects a new concentration effect supersedes.

        Args:
            effects: Current effects in the encounter.
            new_effect: The effect being created.

        Returns:
            Effects the caster was already concentrating on; empty if the new
            effect does not need concentration or has no caster.
        """
        caster = new_effect.concentrating_combatant_id
        if not new_effect.requires_concentration or caster is None:
            return []
        return [
            e for e in ConcentrationTracker.concentrated_effects(effects, caster)
            if e.id != new_effect.id
        ]

    @staticmethod
    def break_concentration(effects: Iterable[Effect], combatant_id: str) -> list[Effect]:
        """Effects to remove when a combatant loses concentration."""
        return ConcentrationTracker.concentrated_effects(effects, combatant_id)

    # -----------------------------------------------------------------
    # Concentration Saves
    # -----------------------------------------------------------------

    @staticmethod
    def derive_check(
        combatant: Combatant,
        damage: int,
        effects: Iterable[Effect],
    ) -> SavePrompt | None:
        """Build the CON save owed for concentration after damage.

        Args:
            combatant: The damaged combatant.
            damage: Damage taken after the damage-type table, including any
                part absorbed by temporary HP.
            effects: Current effects in the encounter.

        Returns:
            One SavePrompt targeting only this combatant, or None if the
            combatant took no damage or is not concentrating.
        """
        held = ConcentrationTracker.concentrated_effects(effects, combatant.id)
        if damage <= 0 or not held:
            return None

        names = sorted({e.name for e in held})
        return SavePrompt(
            encounter_id=combatant.encounter_id,
            ability=Ability.CON,
            dc=ConcentrationTracker.concentration_dc(damage),
            description=f"Concentration check for {combatant.name} ({', '.join(names)})",
            target_scope=TargetScope.CUSTOM,
            target_ids=[combatant.id],
            source=PromptSource.CONCENTRATION,
            effect_names=names,
            expected_responses=1,
        )
