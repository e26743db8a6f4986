"""
Authoritative combat mutator.

One async handler per remote function. Every handler validates its
request, takes the record locks it needs, recomputes the outcome from the
stored state, and commits the primary change, the combat log entry and
any derived records (concentration prompts, expired effects, linked
conditions) in a single transaction. Nothing is written when a rule
check fails.

``invoke`` is the entry point used by the HTTP app and the in-process
transport: it validates the body, runs the handler through the
idempotency registry and returns the camelCase response body.
"""

import logging
import random
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from ..combat.concentration import ConcentrationTracker
from ..combat.consequences import (
    apply_damage_outcome,
    apply_healing_outcome,
    damage_log_message,
    healing_log_message,
    resolve_damage,
    resolve_healing,
)
from ..combat.contested import contest_log_message, resolve_contest, resolve_escape
from ..combat.dice import roll_d20
from ..combat.effects import EffectsEngine
from ..combat.resources import (
    MonsterArchetype,
    ResourceLedger,
    calculate_multiclass_resources,
    calculate_resources,
)
from ..combat.turns import (
    apply_turn,
    end_encounter,
    ensure_not_ended,
    launch_encounter,
    next_turn,
    roll_initiative_order,
)
from ..exceptions import (
    ActionValidationError,
    DuplicateSubmissionError,
    NotFoundError,
    RuleViolationError,
)
from ..models import (
    Combatant,
    CombatantKind,
    CombatLogEntry,
    DeathSaves,
    Effect,
    Encounter,
    EncounterStatus,
    PromptSource,
    PromptStatus,
    SavePrompt,
    SaveResult,
    TargetScope,
    TickTiming,
)
from ..schemas import (
    FUNCTIONS,
    AddCombatantsRequest,
    AddCombatantsResponse,
    AdvanceTurnResponse,
    ClosePromptRequest,
    ClosePromptResponse,
    ConcentrationCheck,
    ContestRequest,
    ContestResponse,
    DamageRequest,
    DamageResponse,
    EncounterRequest,
    EncounterResponse,
    EscapeGrappleRequest,
    EscapeGrappleResponse,
    HealingRequest,
    HealingResponse,
    InitiativeRequest,
    InitiativeResponse,
    ManageEffectRequest,
    ManageEffectResponse,
    PoolResponse,
    RestRequest,
    RestResponse,
    SavePromptRequest,
    SavePromptResponse,
    SaveResultRequest,
    SaveResultResponse,
    SelectArcanumRequest,
    SpendResourceRequest,
    TempHpRequest,
    TempHpResponse,
    TickDamage,
    UndoRequest,
    UndoResponse,
    WireModel,
    format_validation_errors,
)
from .idempotency import IdempotencyRegistry
from .store import CombatStore, Transaction

logger = logging.getLogger("combat-keeper.server")

Handler = Callable[[Any], Awaitable[WireModel]]

UNDOABLE_ACTIONS = ("damage", "healing", "temp_hp", "effect_applied")


class CombatMutator:
    """Executes remote combat functions against a CombatStore."""

    def __init__(
        self,
        store: CombatStore,
        *,
        idempotency: IdempotencyRegistry | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.idempotency = idempotency or IdempotencyRegistry()
        self.rng = rng or random.Random()
        self._handlers: dict[str, Handler] = {
            "apply-damage": self.apply_damage,
            "apply-healing": self.apply_healing,
            "grant-temp-hp": self.grant_temp_hp,
            "roll-initiative": self.roll_initiative,
            "advance-turn": self.advance_turn,
            "manage-effect": self.manage_effect,
            "launch-encounter": self.launch_encounter,
            "end-encounter": self.end_encounter,
            "add-combatants": self.add_combatants,
            "spend-resource": self.spend_resource,
            "take-rest": self.take_rest,
            "select-arcanum-spell": self.select_arcanum_spell,
            "create-save-prompt": self.create_save_prompt,
            "record-save-result": self.record_save_result,
            "close-save-prompt": self.close_save_prompt,
            "resolve-contest": self.resolve_contest,
            "escape-grapple": self.escape_grapple,
            "undo-action": self.undo_action,
        }

    @property
    def function_names(self) -> list[str]:
        return list(self._handlers)

    # =================================================================
    # Entry point
    # =================================================================

    async def invoke(
        self,
        function: str,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Validate, execute (at most once per key) and serialize a call.

        Args:
            function: Remote function name, e.g. ``"apply-damage"``.
            payload: Decoded camelCase request body.
            idempotency_key: Key identifying the logical action; repeated
                deliveries with the same key replay the first response.

        Returns:
            The camelCase response body.

        Raises:
            NotFoundError: If the function does not exist.
            ActionValidationError: If the body fails schema validation.
            CombatKeeperError: Any rule or transient failure from the handler.
        """
        handler = self._handlers.get(function)
        if handler is None:
            raise NotFoundError(f"Unknown function '{function}'", details={"function": function})

        request_model, _ = FUNCTIONS[function]
        if not isinstance(payload, dict):
            raise ActionValidationError("Request body must be a JSON object")
        try:
            request = request_model.model_validate(payload)
        except ValidationError as e:
            raise ActionValidationError(
                "Invalid request data",
                details=format_validation_errors(e.errors()),
            ) from e

        async def run() -> dict[str, Any]:
            response = await handler(request)
            return response.to_wire()

        body, _ = await self.idempotency.run(idempotency_key, function, payload, run)
        return body

    # =================================================================
    # Helpers
    # =================================================================

    @staticmethod
    def _log(
        tx: Transaction,
        encounter: Encounter,
        action_type: str,
        message: str,
        *,
        combatant_id: str | None = None,
        amount: int | None = None,
        details: dict[str, Any] | None = None,
        round_: int | None = None,
        undoes: str | None = None,
    ) -> CombatLogEntry:
        entry = CombatLogEntry(
            encounter_id=encounter.id,
            combatant_id=combatant_id,
            round=encounter.current_round if round_ is None else round_,
            action_type=action_type,
            message=message,
            amount=amount,
            details=details or {},
            undoes=undoes,
        )
        tx.put(entry)
        return entry

    def _effects(self, encounter_id: str) -> list[Effect]:
        return self.store.find(Effect.table, encounter_id=encounter_id)

    def _remove_effects(
        self,
        tx: Transaction,
        effects: list[Effect],
        combatants: dict[str, Combatant],
    ) -> list[str]:
        """Delete effects and strip their linked conditions from loaded combatants."""
        for effect in effects:
            tx.delete(Effect.table, effect.id)
            target = combatants.get(effect.combatant_id)
            if target is not None:
                EffectsEngine.remove_linked_conditions(target, [effect.id])
        return [e.id for e in effects]

    # =================================================================
    # Damage, healing and temporary HP
    # =================================================================

    async def apply_damage(self, request: DamageRequest) -> DamageResponse:
        async with self.store.locked(request.encounter_id, combatant_ids=[request.character_id]):
            encounter = self.store.get_encounter(request.encounter_id)
            ensure_not_ended(encounter, "apply damage")

            target = self.store.get_combatant(request.character_id, request.encounter_id)
            previous_hp = target.current_hp
            outcome = resolve_damage(target, request.amount, request.damage_type)
            apply_damage_outcome(target, outcome)
            prompt = ConcentrationTracker.derive_check(
                target, outcome.adjusted_amount, self._effects(request.encounter_id)
            )

            tx = self.store.transaction()
            tx.put(target)
            if prompt is not None:
                tx.put(prompt)
            entry = self._log(
                tx,
                encounter,
                "damage",
                damage_log_message(
                    outcome, target.name, request.damage_type,
                    request.source_name, request.ability_name,
                ),
                combatant_id=target.id,
                amount=outcome.hp_damage,
                round_=request.current_round,
                details={
                    "type": request.damage_type.value,
                    "rawAmount": outcome.raw_amount,
                    "adjustedAmount": outcome.adjusted_amount,
                    "tempHpAbsorbed": outcome.temp_hp_absorbed,
                    "previousHp": previous_hp,
                    "steps": outcome.damage_steps,
                    "source": request.source_name,
                    "ability": request.ability_name,
                    "savePromptId": prompt.id if prompt else None,
                },
            )
            tx.commit()

        logger.info(
            f"{target.name} took {outcome.adjusted_amount} {request.damage_type.value} damage "
            f"(HP {previous_hp} -> {target.current_hp})"
        )
        check = ConcentrationCheck(required=False)
        if prompt is not None:
            check = ConcentrationCheck(
                required=True,
                dc=prompt.dc,
                effects=prompt.effect_names,
                save_prompt_id=prompt.id,
            )
        return DamageResponse(
            character_id=target.id,
            new_hp=target.current_hp,
            new_temp_hp=target.temp_hp,
            damage_steps=outcome.damage_steps,
            concentration_check=check,
            death_saves=target.death_saves,
            version=target.version,
            log_entry_id=entry.id,
        )

    async def apply_healing(self, request: HealingRequest) -> HealingResponse:
        async with self.store.locked(request.encounter_id, combatant_ids=[request.character_id]):
            encounter = self.store.get_encounter(request.encounter_id)
            ensure_not_ended(encounter, "apply healing")

            target = self.store.get_combatant(request.character_id, request.encounter_id)
            previous_hp = target.current_hp
            outcome = resolve_healing(target, request.amount)
            apply_healing_outcome(target, outcome)

            tx = self.store.transaction()
            tx.put(target)
            entry = self._log(
                tx,
                encounter,
                "healing",
                healing_log_message(outcome, target.name, request.source_name, request.ability_name),
                combatant_id=target.id,
                amount=outcome.actual_healing,
                round_=request.current_round,
                details={
                    "requestedAmount": request.amount,
                    "previousHp": previous_hp,
                    "deathSavesCleared": outcome.death_saves_cleared,
                    "source": request.source_name,
                    "ability": request.ability_name,
                },
            )
            tx.commit()

        logger.info(f"{target.name} healed {outcome.actual_healing} (HP {previous_hp} -> {target.current_hp})")
        return HealingResponse(
            character_id=target.id,
            new_hp=target.current_hp,
            actual_healing=outcome.actual_healing,
            death_saves_cleared=outcome.death_saves_cleared,
            version=target.version,
            log_entry_id=entry.id,
        )

    async def grant_temp_hp(self, request: TempHpRequest) -> TempHpResponse:
        """Temporary HP does not stack: the higher of old and new is kept."""
        async with self.store.locked(request.encounter_id, combatant_ids=[request.character_id]):
            encounter = self.store.get_encounter(request.encounter_id)
            ensure_not_ended(encounter, "grant temporary HP")

            target = self.store.get_combatant(request.character_id, request.encounter_id)
            previous = target.temp_hp
            target.temp_hp = max(previous, request.amount)

            tx = self.store.transaction()
            tx.put(target)
            source = request.source_name or "Unknown"
            entry = self._log(
                tx,
                encounter,
                "temp_hp",
                f"{source} grants {target.name} {request.amount} temporary HP (now {target.temp_hp})",
                combatant_id=target.id,
                amount=target.temp_hp - previous,
                round_=request.current_round,
                details={"previousTempHp": previous, "offered": request.amount},
            )
            tx.commit()

        return TempHpResponse(
            character_id=target.id,
            new_temp_hp=target.temp_hp,
            version=target.version,
            log_entry_id=entry.id,
        )

    # =================================================================
    # Initiative and turns
    # =================================================================

    async def roll_initiative(self, request: InitiativeRequest) -> InitiativeResponse:
        async with self.store.locked(request.encounter_id):
            encounter = self.store.get_encounter(request.encounter_id)
            ensure_not_ended(encounter, "roll initiative")
            combatants = [
                self.store.get_combatant(cid, encounter.id) for cid in request.character_ids
            ]

            order = roll_initiative_order(combatants, rng=self.rng)
            encounter.initiative = order
            encounter.current_turn_index = 0

            tx = self.store.transaction()
            tx.put(encounter)
            summary = ", ".join(f"{e.name} ({e.total})" for e in order)
            entry = self._log(
                tx,
                encounter,
                "initiative",
                f"Initiative rolled: {summary}",
                details={"order": [e.model_dump() for e in order]},
            )
            tx.commit()

        logger.info(f"Initiative rolled for encounter {encounter.id}: {summary}")
        return InitiativeResponse(
            initiative=order,
            current_turn=order[0].name if order else None,
            log_entry_id=entry.id,
        )

    def _tick(
        self,
        tx: Transaction,
        encounter: Encounter,
        combatant: Combatant,
        effect: Effect,
        effects: list[Effect],
        ticks: list[TickDamage],
        prompt_ids: list[str],
    ) -> None:
        outcome = resolve_damage(combatant, effect.damage_per_tick, effect.damage_type_per_tick)
        apply_damage_outcome(combatant, outcome)
        prompt = ConcentrationTracker.derive_check(combatant, outcome.adjusted_amount, effects)
        if prompt is not None:
            tx.put(prompt)
            prompt_ids.append(prompt.id)
        kind = effect.damage_type_per_tick.value
        self._log(
            tx,
            encounter,
            "damage",
            f"{effect.name} deals {outcome.hp_damage} {kind} damage to {combatant.name}",
            combatant_id=combatant.id,
            amount=outcome.hp_damage,
            details={
                "type": kind,
                "rawAmount": outcome.raw_amount,
                "adjustedAmount": outcome.adjusted_amount,
                "tempHpAbsorbed": outcome.temp_hp_absorbed,
                "steps": outcome.damage_steps,
                "effectId": effect.id,
                "savePromptId": prompt.id if prompt else None,
            },
        )
        ticks.append(TickDamage(
            character_id=combatant.id,
            effect_name=effect.name,
            amount=outcome.hp_damage,
            new_hp=combatant.current_hp,
        ))

    async def advance_turn(self, request: EncounterRequest) -> AdvanceTurnResponse:
        """Move the turn pointer and run every turn-boundary consequence.

        Order of work: end-of-turn ticks for the combatant whose turn
        ends, expiry of effects and conditions for the new round, action
        economy and turn-start pools for the next combatant, then its
        start-of-turn ticks.
        """
        async with self.store.locked(request.encounter_id):
            encounter = self.store.get_encounter(request.encounter_id)
            advance = next_turn(encounter)
            roster = self.store.find(Combatant.table, encounter_id=encounter.id)

            async with self.store.locked(combatant_ids=[c.id for c in roster]):
                combatants = {
                    c.id: c for c in self.store.find(Combatant.table, encounter_id=encounter.id)
                }
                effects = self._effects(encounter.id)
                previous = encounter.initiative[advance.previous_index]
                upcoming = encounter.initiative[advance.next_index]

                tx = self.store.transaction()
                ticks: list[TickDamage] = []
                prompt_ids: list[str] = []

                ending = combatants.get(previous.combatant_id)
                if ending is not None:
                    for effect in EffectsEngine.ticking_effects(effects, ending.id, TickTiming.END):
                        self._tick(tx, encounter, ending, effect, effects, ticks, prompt_ids)

                apply_turn(encounter, advance)

                expired = EffectsEngine.expired_effects(effects, advance.round)
                self._remove_effects(tx, expired, combatants)
                expired_ids = {e.id for e in expired}
                effects = [e for e in effects if e.id not in expired_ids]

                expired_conditions = []
                for combatant in combatants.values():
                    for name in EffectsEngine.expire_conditions(combatant, advance.round):
                        expired_conditions.append(f"{combatant.name}: {name}")

                refilled: list[str] = []
                starting = combatants.get(upcoming.combatant_id)
                if starting is not None:
                    starting.action_used = False
                    starting.bonus_action_used = False
                    starting.reaction_used = False
                    refilled = ResourceLedger.reset_turn_start(starting)
                    for effect in EffectsEngine.ticking_effects(effects, starting.id, TickTiming.START):
                        self._tick(tx, encounter, starting, effect, effects, ticks, prompt_ids)

                for combatant in combatants.values():
                    tx.put(combatant)
                tx.put(encounter)

                if advance.is_new_round:
                    message = f"Round {advance.round} begins: {upcoming.name}'s turn"
                else:
                    message = f"{upcoming.name}'s turn"
                entry = self._log(
                    tx,
                    encounter,
                    "turn_advance",
                    message,
                    combatant_id=upcoming.combatant_id,
                    details={
                        "previousIndex": advance.previous_index,
                        "nextIndex": advance.next_index,
                        "isNewRound": advance.is_new_round,
                        "expiredEffects": [e.name for e in expired],
                    },
                )
                tx.commit()

        logger.info(f"Encounter {encounter.id}: round {advance.round}, {upcoming.name}'s turn")
        return AdvanceTurnResponse(
            current_turn=upcoming.name,
            current_turn_id=upcoming.combatant_id,
            new_round=advance.round,
            is_new_round=advance.is_new_round,
            expired_effects=[e.name for e in expired],
            expired_conditions=expired_conditions,
            tick_damage=ticks,
            save_prompt_ids=prompt_ids,
            refilled_pools=refilled,
            log_entry_id=entry.id,
        )

    # =================================================================
    # Effects
    # =================================================================

    async def manage_effect(self, request: ManageEffectRequest) -> ManageEffectResponse:
        if request.action == "create":
            return await self._create_effect(request)
        return await self._delete_effect(request)

    async def _create_effect(self, request: ManageEffectRequest) -> ManageEffectResponse:
        data = request.effect_data
        async with self.store.locked(request.encounter_id):
            encounter = self.store.get_encounter(request.encounter_id)
            ensure_not_ended(encounter, "create effect")
            self.store.get_combatant(data.character_id, encounter.id)
            if data.concentrating_character_id:
                self.store.get_combatant(data.concentrating_character_id, encounter.id)

            effect = Effect(
                encounter_id=encounter.id,
                combatant_id=data.character_id,
                name=data.name,
                description=data.description,
                kind=data.kind,
                source=data.source,
                start_round=data.start_round,
                end_round=data.end_round,
                requires_concentration=data.requires_concentration,
                concentrating_combatant_id=data.concentrating_character_id,
                applies_condition=data.applies_condition,
                damage_per_tick=data.damage_per_tick,
                damage_type_per_tick=data.damage_type_per_tick,
                ticks_at=data.ticks_at,
            )
            superseded = ConcentrationTracker.start_concentration(self._effects(encounter.id), effect)
            affected = {effect.combatant_id} | {e.combatant_id for e in superseded}

            async with self.store.locked(combatant_ids=affected):
                combatants = {
                    cid: self.store.get_combatant(cid, encounter.id) for cid in sorted(affected)
                }
                tx = self.store.transaction()
                removed = self._remove_effects(tx, superseded, combatants)
                EffectsEngine.apply_effect(combatants[effect.combatant_id], effect)
                tx.put(effect)
                for combatant in combatants.values():
                    tx.put(combatant)

                target_name = combatants[effect.combatant_id].name
                entry = self._log(
                    tx,
                    encounter,
                    "effect_applied",
                    f"{effect.name} applied to {target_name}",
                    combatant_id=effect.combatant_id,
                    details={
                        "effectId": effect.id,
                        "condition": effect.applies_condition,
                        "superseded": removed,
                    },
                )
                tx.commit()

        if removed:
            logger.info(f"{effect.name} superseded concentration effects {removed}")
        return ManageEffectResponse(
            effect=effect,
            removed_effect_ids=removed,
            effects=self._effects(encounter.id),
            log_entry_id=entry.id,
        )

    async def _delete_effect(self, request: ManageEffectRequest) -> ManageEffectResponse:
        async with self.store.locked(request.encounter_id):
            encounter = self.store.get_encounter(request.encounter_id)
            effect: Effect = self.store.get(Effect.table, request.effect_id)
            if effect.encounter_id != encounter.id:
                raise NotFoundError(
                    f"Effect '{effect.id}' is not part of encounter '{encounter.id}'",
                    details={"table": Effect.table, "id": effect.id},
                )

            async with self.store.locked(combatant_ids=[effect.combatant_id]):
                target = self.store.get_combatant(effect.combatant_id)
                tx = self.store.transaction()
                removed = self._remove_effects(tx, [effect], {target.id: target})
                tx.put(target)
                entry = self._log(
                    tx,
                    encounter,
                    "effect_removed",
                    f"{effect.name} removed from {target.name}",
                    combatant_id=target.id,
                    details={"effectId": effect.id},
                )
                tx.commit()

        return ManageEffectResponse(
            removed_effect_ids=removed,
            effects=self._effects(encounter.id),
            log_entry_id=entry.id,
        )

    # =================================================================
    # Encounter lifecycle
    # =================================================================

    async def launch_encounter(self, request: EncounterRequest) -> EncounterResponse:
        campaign_id = self.store.get_encounter(request.encounter_id).campaign_id

        # Only launches activate encounters, so the active set is stable
        # while the campaign lock is held.
        async with self.store.locked(campaign_id=campaign_id):
            siblings = self.store.find(
                Encounter.table, campaign_id=campaign_id, status=EncounterStatus.ACTIVE
            )
            sibling_ids = [e.id for e in siblings if e.id != request.encounter_id]

            async with self.store.locked(request.encounter_id, *sibling_ids):
                encounter = self.store.get_encounter(request.encounter_id)
                others = [self.store.get_encounter(eid) for eid in sibling_ids]
                ended = launch_encounter(encounter, others)

                tx = self.store.transaction()
                for other in ended:
                    tx.put(other)
                    self._log(tx, other, "encounter_end", f"{other.name} ended: superseded by {encounter.name}")
                tx.put(encounter)
                entry = self._log(
                    tx,
                    encounter,
                    "encounter_start",
                    f"{encounter.name} started",
                    details={"endedEncounterIds": [e.id for e in ended]},
                )
                tx.commit()

        logger.info(f"Launched encounter {encounter.id} in campaign {campaign_id}")
        return EncounterResponse(
            encounter=encounter,
            ended_encounter_ids=[e.id for e in ended],
            log_entry_id=entry.id,
        )

    async def end_encounter(self, request: EncounterRequest) -> EncounterResponse:
        async with self.store.locked(request.encounter_id):
            encounter = self.store.get_encounter(request.encounter_id)
            ensure_not_ended(encounter, "end encounter")
            final_round = encounter.current_round
            end_encounter(encounter)

            tx = self.store.transaction()
            tx.put(encounter)
            entry = self._log(
                tx,
                encounter,
                "encounter_end",
                f"{encounter.name} ended after round {final_round}",
                round_=final_round,
            )
            tx.commit()

        logger.info(f"Ended encounter {encounter.id}")
        return EncounterResponse(encounter=encounter, log_entry_id=entry.id)

    async def add_combatants(self, request: AddCombatantsRequest) -> AddCombatantsResponse:
        """Insert combatants with pools computed from their classes or legendary stats."""
        async with self.store.locked(request.encounter_id):
            encounter = self.store.get_encounter(request.encounter_id)
            ensure_not_ended(encounter, "add combatants")

            added = []
            for spec in request.combatants:
                resources = {}
                if spec.classes:
                    shape = calculate_multiclass_resources([(c.name, c.level) for c in spec.classes])
                    resources.update(shape.pools())
                if spec.legendary_actions or spec.legendary_resistances:
                    archetype = MonsterArchetype(
                        name=spec.name,
                        legendary_actions=spec.legendary_actions,
                        legendary_resistances=spec.legendary_resistances,
                    )
                    resources.update(calculate_resources(archetype).pools())

                current_hp = spec.max_hp if spec.current_hp is None else min(spec.current_hp, spec.max_hp)
                added.append(Combatant(
                    encounter_id=encounter.id,
                    name=spec.name,
                    kind=spec.kind,
                    current_hp=current_hp,
                    max_hp=spec.max_hp,
                    temp_hp=spec.temp_hp,
                    armor_class=spec.armor_class,
                    initiative_bonus=spec.initiative_bonus,
                    passive_perception=spec.passive_perception,
                    saving_throws=spec.saving_throws,
                    resistances=spec.resistances,
                    immunities=spec.immunities,
                    vulnerabilities=spec.vulnerabilities,
                    resources=resources,
                ))

            tx = self.store.transaction()
            for combatant in added:
                tx.put(combatant)
            self._log(
                tx,
                encounter,
                "combatants_added",
                f"Added {', '.join(c.name for c in added)}",
                details={"combatantIds": [c.id for c in added]},
            )
            tx.commit()

        logger.info(f"Added {len(added)} combatants to encounter {encounter.id}")
        return AddCombatantsResponse(combatants=added)

    # =================================================================
    # Resources
    # =================================================================

    async def spend_resource(self, request: SpendResourceRequest) -> PoolResponse:
        async with self.store.locked(request.encounter_id, combatant_ids=[request.character_id]):
            encounter = self.store.get_encounter(request.encounter_id)
            ensure_not_ended(encounter, "spend resource")

            combatant = self.store.get_combatant(request.character_id, request.encounter_id)
            pool = ResourceLedger.find_pool(combatant, request.resource_key)
            ResourceLedger.spend(pool, request.amount)

            tx = self.store.transaction()
            tx.put(combatant)
            entry = self._log(
                tx,
                encounter,
                "resource_spent",
                f"{combatant.name} spends {request.amount} {pool.label} ({pool.remaining}/{pool.max} remaining)",
                combatant_id=combatant.id,
                amount=request.amount,
                details={"key": pool.key, "remaining": pool.remaining},
            )
            tx.commit()

        return PoolResponse(
            character_id=combatant.id,
            pool=pool,
            version=combatant.version,
            log_entry_id=entry.id,
        )

    async def take_rest(self, request: RestRequest) -> RestResponse:
        encounter = self.store.get_encounter(request.encounter_id)

        async with self.store.locked(combatant_ids=[request.character_id]):
            combatant = self.store.get_combatant(request.character_id, request.encounter_id)
            outcome = ResourceLedger.rest(combatant, request.rest_type)

            tx = self.store.transaction()
            tx.put(combatant)
            entry = self._log(
                tx,
                encounter,
                "rest",
                f"{combatant.name} takes a {request.rest_type.value} rest",
                combatant_id=combatant.id,
                amount=outcome.hp_restored or None,
                details={"restoredPools": outcome.restored_pools},
            )
            tx.commit()

        return RestResponse(
            character_id=combatant.id,
            rest_type=request.rest_type,
            restored_pools=outcome.restored_pools,
            current_hp=combatant.current_hp,
            exhaustion_level=outcome.exhaustion_level,
            version=combatant.version,
            log_entry_id=entry.id,
        )

    async def select_arcanum_spell(self, request: SelectArcanumRequest) -> PoolResponse:
        encounter = self.store.get_encounter(request.encounter_id)

        async with self.store.locked(combatant_ids=[request.character_id]):
            combatant = self.store.get_combatant(request.character_id, request.encounter_id)
            pool = ResourceLedger.find_pool(combatant, f"mystic_arcanum_{request.spell_level}")
            ResourceLedger.select_arcanum(pool, request.spell_name)

            tx = self.store.transaction()
            tx.put(combatant)
            entry = self._log(
                tx,
                encounter,
                "arcanum_selected",
                f"{combatant.name} binds {request.spell_name} to {pool.label}",
                combatant_id=combatant.id,
                details={"key": pool.key, "spell": request.spell_name},
            )
            tx.commit()

        return PoolResponse(
            character_id=combatant.id,
            pool=pool,
            version=combatant.version,
            log_entry_id=entry.id,
        )

    # =================================================================
    # Save prompts
    # =================================================================

    async def create_save_prompt(self, request: SavePromptRequest) -> SavePromptResponse:
        async with self.store.locked(request.encounter_id):
            encounter = self.store.get_encounter(request.encounter_id)
            ensure_not_ended(encounter, "create save prompt")
            roster = self.store.find(Combatant.table, encounter_id=encounter.id)

            if request.target_scope == TargetScope.PARTY:
                target_ids = [c.id for c in roster if c.kind == CombatantKind.CHARACTER]
            elif request.target_scope == TargetScope.ALL:
                target_ids = [c.id for c in roster]
            else:
                known = {c.id for c in roster}
                missing = [cid for cid in request.custom_target_ids if cid not in known]
                if missing:
                    raise NotFoundError(
                        f"Combatants not in encounter: {', '.join(missing)}",
                        details={"table": Combatant.table, "ids": missing},
                    )
                target_ids = list(dict.fromkeys(request.custom_target_ids))

            if not target_ids:
                raise RuleViolationError(
                    f"No combatants match target scope '{request.target_scope.value}'"
                )

            prompt = SavePrompt(
                encounter_id=encounter.id,
                ability=request.ability,
                dc=request.dc,
                description=request.description,
                target_scope=request.target_scope,
                target_ids=target_ids,
                advantage_mode=request.advantage_mode,
                half_on_success=request.half_on_success,
                expected_responses=len(target_ids),
            )
            tx = self.store.transaction()
            tx.put(prompt)
            self._log(
                tx,
                encounter,
                "save_prompt",
                f"DC {prompt.dc} {prompt.ability.value} save: {prompt.description}",
                details={"savePromptId": prompt.id, "targetIds": target_ids},
            )
            tx.commit()

        return SavePromptResponse(prompt=prompt, target_count=len(target_ids))

    async def record_save_result(self, request: SaveResultRequest) -> SaveResultResponse:
        """Record one combatant's roll against an active prompt.

        A failed save may be turned into a success by spending a legendary
        resistance; the spend, the result and the prompt counter commit
        together. A failed concentration save removes the effects the
        combatant was concentrating on.
        """
        prompt: SavePrompt = self.store.get(SavePrompt.table, request.save_prompt_id)

        async with self.store.locked(prompt.encounter_id):
            prompt = self.store.get(SavePrompt.table, request.save_prompt_id)
            encounter = self.store.get_encounter(prompt.encounter_id)
            if prompt.status != PromptStatus.ACTIVE:
                raise RuleViolationError(
                    "Save prompt is no longer active",
                    details={"savePromptId": prompt.id, "status": prompt.status.value},
                )
            if request.character_id not in prompt.target_ids:
                raise RuleViolationError(
                    "Combatant is not a target of this save prompt",
                    details={"savePromptId": prompt.id, "characterId": request.character_id},
                )
            if self.store.find(
                SaveResult.table, save_prompt_id=prompt.id, combatant_id=request.character_id
            ):
                raise DuplicateSubmissionError(
                    "Save result already submitted for this combatant",
                    details={"savePromptId": prompt.id, "characterId": request.character_id},
                )

            effects = self._effects(encounter.id)
            held = []
            if prompt.source == PromptSource.CONCENTRATION:
                held = ConcentrationTracker.concentrated_effects(effects, request.character_id)
            affected = {request.character_id} | {e.combatant_id for e in held}

            async with self.store.locked(combatant_ids=affected):
                combatants = {
                    cid: self.store.get_combatant(cid, encounter.id) for cid in sorted(affected)
                }
                combatant = combatants[request.character_id]
                total = request.roll + request.modifier
                pool = ResourceLedger.legendary_resistance_pool(combatant)
                evaluation = ResourceLedger.evaluate_save(total, prompt.dc, pool)

                success = evaluation.success
                resistance_used = False
                if request.use_legendary_resistance and not success:
                    if pool is None:
                        raise RuleViolationError(f"{combatant.name} has no legendary resistances")
                    ResourceLedger.spend(pool, 1)
                    success = True
                    resistance_used = True

                result = SaveResult(
                    save_prompt_id=prompt.id,
                    encounter_id=encounter.id,
                    combatant_id=combatant.id,
                    roll=request.roll,
                    modifier=request.modifier,
                    total=total,
                    success=success,
                    legendary_resistance_used=resistance_used,
                )
                prompt.received_responses += 1
                auto_resolved = prompt.received_responses >= prompt.expected_responses
                if auto_resolved:
                    prompt.status = PromptStatus.RESOLVED

                tx = self.store.transaction()
                broken: list[str] = []
                if held and not success:
                    self._remove_effects(tx, held, combatants)
                    broken = [e.name for e in held]
                for changed in combatants.values():
                    tx.put(changed)
                tx.put(result)
                tx.put(prompt)

                outcome = "succeeds" if success else "fails"
                suffix = " (legendary resistance)" if resistance_used else ""
                self._log(
                    tx,
                    encounter,
                    "save_result",
                    f"{combatant.name} {outcome} DC {prompt.dc} {prompt.ability.value} save with {total}{suffix}",
                    combatant_id=combatant.id,
                    details={
                        "savePromptId": prompt.id,
                        "roll": request.roll,
                        "modifier": request.modifier,
                        "legendaryResistanceUsed": resistance_used,
                        "concentrationBroken": broken,
                    },
                )
                tx.commit()

        if broken:
            logger.info(f"{combatant.name} lost concentration on {', '.join(broken)}")
        return SaveResultResponse(
            result=result,
            success=success,
            legendary_resistance_used=resistance_used,
            auto_resolved=auto_resolved,
            concentration_broken=broken,
        )

    async def close_save_prompt(self, request: ClosePromptRequest) -> ClosePromptResponse:
        prompt: SavePrompt = self.store.get(SavePrompt.table, request.save_prompt_id)

        async with self.store.locked(prompt.encounter_id):
            prompt = self.store.get(SavePrompt.table, request.save_prompt_id)
            if prompt.status == PromptStatus.RESOLVED:
                return ClosePromptResponse(prompt=prompt)

            encounter = self.store.get_encounter(prompt.encounter_id)
            prompt.status = PromptStatus.RESOLVED
            tx = self.store.transaction()
            tx.put(prompt)
            self._log(
                tx,
                encounter,
                "save_prompt_closed",
                f"Save prompt closed with {prompt.received_responses}/{prompt.expected_responses} responses",
                details={"savePromptId": prompt.id},
            )
            tx.commit()

        return ClosePromptResponse(prompt=prompt)

    # =================================================================
    # Contested checks
    # =================================================================

    async def resolve_contest(self, request: ContestRequest) -> ContestResponse:
        async with self.store.locked(
            request.encounter_id, combatant_ids=[request.attacker_id, request.target_id]
        ):
            encounter = self.store.get_encounter(request.encounter_id)
            ensure_not_ended(encounter, request.check_type.value)

            attacker = self.store.get_combatant(request.attacker_id, encounter.id)
            target = self.store.get_combatant(request.target_id, encounter.id)
            if attacker.action_used:
                raise RuleViolationError(
                    f"{attacker.name} has already used their action this turn",
                    details={"characterId": attacker.id},
                )

            attacker_roll = request.attacker_roll or roll_d20(rng=self.rng)[0]
            target_roll = request.target_roll or roll_d20(rng=self.rng)[0]
            outcome = resolve_contest(
                request.check_type,
                attacker_roll,
                request.attacker_bonus,
                target_roll,
                request.target_athletics_bonus,
                request.target_acrobatics_bonus,
            )

            attacker.action_used = True
            tx = self.store.transaction()
            tx.put(attacker)
            if outcome.success:
                EffectsEngine.add_condition(target, outcome.condition)
                tx.put(target)
            entry = self._log(
                tx,
                encounter,
                request.check_type.value,
                contest_log_message(outcome, attacker.name, target.name),
                combatant_id=attacker.id,
                round_=request.current_round,
                details={**outcome.to_dict(), "targetId": target.id},
            )
            tx.commit()

        return ContestResponse(
            success=outcome.success,
            attacker_roll=outcome.attacker_roll,
            attacker_total=outcome.attacker_total,
            target_roll=outcome.target_roll,
            target_total=outcome.target_total,
            target_used_acrobatics=outcome.target_used_acrobatics,
            condition=outcome.condition,
            log_entry_id=entry.id,
        )

    async def escape_grapple(self, request: EscapeGrappleRequest) -> EscapeGrappleResponse:
        async with self.store.locked(request.encounter_id, combatant_ids=[request.character_id]):
            encounter = self.store.get_encounter(request.encounter_id)
            ensure_not_ended(encounter, "escape grapple")

            combatant = self.store.get_combatant(request.character_id, encounter.id)
            if not combatant.has_condition("grappled"):
                raise RuleViolationError(
                    f"{combatant.name} is not grappled",
                    details={"characterId": combatant.id},
                )

            roll = request.roll or roll_d20(rng=self.rng)[0]
            outcome = resolve_escape(
                roll, request.athletics_bonus, request.acrobatics_bonus, request.escape_dc
            )
            if outcome.success:
                EffectsEngine.remove_condition(combatant, "grappled")
            combatant.action_used = True

            tx = self.store.transaction()
            tx.put(combatant)
            verb = "escapes the grapple" if outcome.success else "fails to escape the grapple"
            entry = self._log(
                tx,
                encounter,
                "escape",
                f"{combatant.name} {verb} ({outcome.total} vs DC {outcome.dc})",
                combatant_id=combatant.id,
                round_=request.current_round,
                details={"roll": roll, "total": outcome.total, "dc": outcome.dc},
            )
            tx.commit()

        return EscapeGrappleResponse(
            success=outcome.success,
            roll=outcome.roll,
            total=outcome.total,
            used_acrobatics=outcome.used_acrobatics,
            log_entry_id=entry.id,
        )

    # =================================================================
    # Undo
    # =================================================================

    async def undo_action(self, request: UndoRequest) -> UndoResponse:
        """Reverse one log entry by appending a compensating entry.

        Damage, healing, temporary HP and effect creation can be undone;
        every other action type is rejected, as is undoing an entry twice.
        """
        async with self.store.locked(request.encounter_id):
            encounter = self.store.get_encounter(request.encounter_id)
            original: CombatLogEntry = self.store.get(CombatLogEntry.table, request.log_entry_id)
            if original.encounter_id != encounter.id:
                raise NotFoundError(
                    f"Log entry '{original.id}' is not part of encounter '{encounter.id}'",
                    details={"table": CombatLogEntry.table, "id": original.id},
                )
            if original.action_type not in UNDOABLE_ACTIONS:
                raise RuleViolationError(
                    f"Cannot undo action type '{original.action_type}'",
                    details={"actionType": original.action_type},
                )
            if self.store.find(CombatLogEntry.table, undoes=original.id):
                raise RuleViolationError(
                    "Action has already been undone",
                    details={"logEntryId": original.id},
                )

            if original.action_type == "effect_applied":
                return await self._undo_effect(encounter, original)

            async with self.store.locked(combatant_ids=[original.combatant_id]):
                combatant = self.store.get_combatant(original.combatant_id)
                amount = original.amount or 0
                if original.action_type == "damage":
                    combatant.current_hp = min(combatant.max_hp, combatant.current_hp + amount)
                    combatant.temp_hp += original.details.get("tempHpAbsorbed", 0)
                    if combatant.current_hp > 0:
                        combatant.death_saves = DeathSaves()
                elif original.action_type == "healing":
                    combatant.current_hp = max(0, combatant.current_hp - amount)
                else:
                    combatant.temp_hp = original.details.get("previousTempHp", 0)

                tx = self.store.transaction()
                tx.put(combatant)
                entry = self._log(
                    tx,
                    encounter,
                    "undo",
                    f"Undid: {original.message}",
                    combatant_id=combatant.id,
                    undoes=original.id,
                    details={"originalEntry": original.model_dump(mode="json")},
                )
                tx.commit()

        logger.info(f"Undid {original.action_type} entry {original.id}")
        return UndoResponse(
            undone_action=original.action_type,
            log_entry_id=entry.id,
            character_id=combatant.id,
            new_hp=combatant.current_hp,
        )

    async def _undo_effect(self, encounter: Encounter, original: CombatLogEntry) -> UndoResponse:
        effect_id = original.details.get("effectId")
        removed = self.store.find(Effect.table, lambda e: e.id == effect_id)

        async with self.store.locked(combatant_ids=[e.combatant_id for e in removed]):
            combatants = {
                e.combatant_id: self.store.get_combatant(e.combatant_id) for e in removed
            }
            tx = self.store.transaction()
            self._remove_effects(tx, removed, combatants)
            for combatant in combatants.values():
                tx.put(combatant)
            entry = self._log(
                tx,
                encounter,
                "undo",
                f"Undid: {original.message}",
                combatant_id=original.combatant_id,
                undoes=original.id,
                details={"originalEntry": original.model_dump(mode="json")},
            )
            tx.commit()

        return UndoResponse(
            undone_action=original.action_type,
            log_entry_id=entry.id,
            character_id=original.combatant_id,
        )
