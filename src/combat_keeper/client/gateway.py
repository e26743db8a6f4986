"""
Action Gateway: the client's single entry point for combat mutations.

Every action goes through the same pipeline:
1. Build and validate the request schema locally. Invalid input never
   reaches the network.
2. Refuse a second call of the same kind while one is in flight.
3. Derive one idempotency key for the logical action and reuse it on
   every retry attempt.
4. Invoke the remote function inside the bounded retry wrapper.
5. Emit a telemetry event and, on failure, one error notification.

The gateway never touches local state. Callers that want an immediate
HP update can pass the returned ``new_hp`` and ``version`` to
``EncounterView.apply_optimistic``.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from ..config import EngineConfig
from ..exceptions import ActionInFlightError, ActionValidationError, CombatKeeperError
from ..schemas import (
    FUNCTIONS,
    AddCombatantsResponse,
    AdvanceTurnResponse,
    ClosePromptResponse,
    ContestResponse,
    DamageResponse,
    EffectData,
    EncounterResponse,
    EscapeGrappleResponse,
    HealingResponse,
    InitiativeResponse,
    ManageEffectResponse,
    PoolResponse,
    RestResponse,
    SavePromptResponse,
    SaveResultResponse,
    TempHpResponse,
    UndoResponse,
    format_validation_errors,
)
from .retry import with_retry
from .telemetry import Telemetry
from .transport import Transport

logger = logging.getLogger("combat-keeper.gateway")


@dataclass
class Notification:
    """A caller-visible message (toast) about an action."""
    level: str
    title: str
    message: str


def make_idempotency_key(action: str, target_id: str, timestamp_ms: int) -> str:
    """Key for one logical action: ``{action}:{target_id}:{timestamp_ms}``."""
    return f"{action}:{target_id}:{timestamp_ms}"


def _log_notification(notification: Notification) -> None:
    level = logging.ERROR if notification.level == "error" else logging.WARNING
    logger.log(level, f"{notification.title}: {notification.message}")


class ActionGateway:
    """
    Validates, de-duplicates and retries combat actions for one client.

    Attributes:
        transport: Remote function-call transport
        client_id: Identifier sent with every call
        config: Retry and timeout settings
        telemetry: Telemetry emitter
    """

    def __init__(
        self,
        transport: Transport,
        *,
        client_id: str,
        config: EngineConfig | None = None,
        notifier: Callable[[Notification], None] | None = None,
        telemetry: Telemetry | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.client_id = client_id
        self.config = config or EngineConfig()
        self.notifier = notifier or _log_notification
        self.telemetry = telemetry or Telemetry(client_id=client_id)
        self._clock = clock
        self._sleep = sleep
        self._in_flight: set[str] = set()
        self._last_ms = 0

    def is_busy(self, function: str) -> bool:
        return function in self._in_flight

    # -----------------------------------------------------------------
    # Pipeline
    # -----------------------------------------------------------------

    def _timestamp_ms(self) -> int:
        # Keys must differ for consecutive actions, even within one millisecond.
        now = int(self._clock() * 1000)
        if now <= self._last_ms:
            now = self._last_ms + 1
        self._last_ms = now
        return now

    def _fail(
        self,
        function: str,
        encounter_id: str | None,
        error: CombatKeeperError,
        latency_ms: float | None = None,
    ) -> None:
        self.telemetry.emit(
            "combat_action_error",
            encounter_id=encounter_id,
            event_data={"function": function, "code": error.code},
            latency_ms=latency_ms,
            error_message=error.message,
        )
        self.notifier(Notification(level="error", title=f"{function} failed", message=error.message))

    async def _submit(
        self,
        function: str,
        fields: dict[str, Any],
        *,
        encounter_id: str | None,
        target_id: str | None,
        event_type: str,
        event_data: dict[str, Any] | None = None,
    ) -> Any:
        request_model, response_model = FUNCTIONS[function]
        try:
            request = request_model.model_validate(fields)
        except ValidationError as e:
            error = ActionValidationError(
                f"Invalid {function} request",
                details=format_validation_errors(e.errors()),
            )
            self._fail(function, encounter_id, error)
            raise error from e

        if function in self._in_flight:
            raise ActionInFlightError(
                f"{function} is already in progress",
                details={"function": function},
            )

        self._in_flight.add(function)
        key = make_idempotency_key(function, target_id or encounter_id or "-", self._timestamp_ms())
        payload = request.to_wire()
        started = time.perf_counter()

        def on_retry(attempt: int, error: CombatKeeperError, delay: float) -> None:
            self.notifier(Notification(
                level="warning",
                title=f"Retrying {function}",
                message=f"{error.message} (attempt {attempt + 1} of {self.config.max_retries + 1})",
            ))

        try:
            body = await with_retry(
                lambda: self.transport.call(
                    function, payload, idempotency_key=key, client_id=self.client_id
                ),
                max_retries=self.config.max_retries,
                base_delay=self.config.retry_base_delay,
                max_delay=self.config.retry_max_delay,
                on_retry=on_retry,
                sleep=self._sleep,
                description=function,
            )
        except CombatKeeperError as e:
            self._fail(function, encounter_id, e, (time.perf_counter() - started) * 1000)
            raise
        finally:
            self._in_flight.discard(function)

        latency_ms = (time.perf_counter() - started) * 1000
        response = response_model.model_validate(body)
        self.telemetry.emit(
            event_type,
            encounter_id=encounter_id,
            event_data={"function": function, **(event_data or {})},
            latency_ms=latency_ms,
        )
        logger.debug(f"{function} succeeded in {latency_ms:.1f}ms (key {key})")
        return response

    # -----------------------------------------------------------------
    # Damage and healing
    # -----------------------------------------------------------------

    async def apply_damage(
        self,
        character_id: str,
        amount: int,
        damage_type: str,
        encounter_id: str,
        current_round: int,
        source_name: str | None = None,
        ability_name: str | None = None,
    ) -> DamageResponse:
        """
        Apply damage to a combatant.

        Args:
            character_id: Target combatant id
            amount: Raw damage before resistances (0-1000)
            damage_type: One of the DamageType values
            encounter_id: Encounter the target belongs to
            current_round: Round shown to the caller, for the log
            source_name: Who dealt the damage
            ability_name: What dealt the damage

        Returns:
            The authoritative result, including any concentration check
        """
        return await self._submit(
            "apply-damage",
            {
                "character_id": character_id,
                "amount": amount,
                "damage_type": damage_type,
                "encounter_id": encounter_id,
                "current_round": current_round,
                "source_name": source_name,
                "ability_name": ability_name,
            },
            encounter_id=encounter_id,
            target_id=character_id,
            event_type="damage_applied",
            event_data={"characterId": character_id, "amount": amount, "damageType": damage_type},
        )

    async def apply_healing(
        self,
        character_id: str,
        amount: int,
        encounter_id: str,
        current_round: int,
        source_name: str | None = None,
        ability_name: str | None = None,
    ) -> HealingResponse:
        return await self._submit(
            "apply-healing",
            {
                "character_id": character_id,
                "amount": amount,
                "encounter_id": encounter_id,
                "current_round": current_round,
                "source_name": source_name,
                "ability_name": ability_name,
            },
            encounter_id=encounter_id,
            target_id=character_id,
            event_type="healing_applied",
            event_data={"characterId": character_id, "amount": amount},
        )

    async def grant_temp_hp(
        self,
        character_id: str,
        amount: int,
        encounter_id: str,
        current_round: int,
        source_name: str | None = None,
    ) -> TempHpResponse:
        return await self._submit(
            "grant-temp-hp",
            {
                "character_id": character_id,
                "amount": amount,
                "encounter_id": encounter_id,
                "current_round": current_round,
                "source_name": source_name,
            },
            encounter_id=encounter_id,
            target_id=character_id,
            event_type="temp_hp_granted",
            event_data={"characterId": character_id, "amount": amount},
        )

    # -----------------------------------------------------------------
    # Turn flow and encounter lifecycle
    # -----------------------------------------------------------------

    async def roll_initiative(self, encounter_id: str, character_ids: list[str]) -> InitiativeResponse:
        return await self._submit(
            "roll-initiative",
            {"encounter_id": encounter_id, "character_ids": character_ids},
            encounter_id=encounter_id,
            target_id=encounter_id,
            event_type="initiative_rolled",
            event_data={"count": len(character_ids)},
        )

    async def advance_turn(self, encounter_id: str) -> AdvanceTurnResponse:
        """Advance to the next combatant; emits ``round_start`` when the round wraps."""
        response: AdvanceTurnResponse = await self._submit(
            "advance-turn",
            {"encounter_id": encounter_id},
            encounter_id=encounter_id,
            target_id=encounter_id,
            event_type="turn_advance",
        )
        if response.is_new_round:
            self.telemetry.emit(
                "round_start",
                encounter_id=encounter_id,
                event_data={"round": response.new_round},
            )
        return response

    async def launch_encounter(self, encounter_id: str) -> EncounterResponse:
        return await self._submit(
            "launch-encounter",
            {"encounter_id": encounter_id},
            encounter_id=encounter_id,
            target_id=encounter_id,
            event_type="encounter_start",
        )

    async def end_encounter(self, encounter_id: str) -> EncounterResponse:
        return await self._submit(
            "end-encounter",
            {"encounter_id": encounter_id},
            encounter_id=encounter_id,
            target_id=encounter_id,
            event_type="encounter_end",
        )

    async def add_combatants(self, encounter_id: str, combatants: list[dict[str, Any]]) -> AddCombatantsResponse:
        return await self._submit(
            "add-combatants",
            {"encounter_id": encounter_id, "combatants": combatants},
            encounter_id=encounter_id,
            target_id=encounter_id,
            event_type="combatants_added",
            event_data={"count": len(combatants)},
        )

    # -----------------------------------------------------------------
    # Effects
    # -----------------------------------------------------------------

    async def manage_effect(
        self,
        action: str,
        encounter_id: str,
        effect_data: EffectData | dict[str, Any] | None = None,
        effect_id: str | None = None,
    ) -> ManageEffectResponse:
        """
        Create or delete an effect.

        Args:
            action: "create" or "delete"
            encounter_id: Encounter the effect belongs to
            effect_data: Effect fields, required for create
            effect_id: Effect to remove, required for delete

        Returns:
            The created effect (if any) and the encounter's current effects
        """
        if isinstance(effect_data, EffectData):
            effect_data = effect_data.model_dump()
        target_id = effect_id
        if effect_data is not None:
            target_id = effect_data.get("character_id") or effect_data.get("characterId")
        return await self._submit(
            "manage-effect",
            {
                "action": action,
                "encounter_id": encounter_id,
                "effect_data": effect_data,
                "effect_id": effect_id,
            },
            encounter_id=encounter_id,
            target_id=target_id,
            event_type="effect_created" if action == "create" else "effect_deleted",
        )

    # -----------------------------------------------------------------
    # Resources
    # -----------------------------------------------------------------

    async def spend_resource(
        self,
        character_id: str,
        encounter_id: str,
        resource_key: str,
        amount: int = 1,
    ) -> PoolResponse:
        return await self._submit(
            "spend-resource",
            {
                "character_id": character_id,
                "encounter_id": encounter_id,
                "resource_key": resource_key,
                "amount": amount,
            },
            encounter_id=encounter_id,
            target_id=character_id,
            event_type="resource_spent",
            event_data={"characterId": character_id, "resourceKey": resource_key, "amount": amount},
        )

    async def take_rest(self, character_id: str, encounter_id: str, rest_type: str) -> RestResponse:
        return await self._submit(
            "take-rest",
            {"character_id": character_id, "encounter_id": encounter_id, "rest_type": rest_type},
            encounter_id=encounter_id,
            target_id=character_id,
            event_type="rest_taken",
            event_data={"characterId": character_id, "restType": rest_type},
        )

    async def select_arcanum_spell(
        self,
        character_id: str,
        encounter_id: str,
        spell_level: int,
        spell_name: str,
    ) -> PoolResponse:
        return await self._submit(
            "select-arcanum-spell",
            {
                "character_id": character_id,
                "encounter_id": encounter_id,
                "spell_level": spell_level,
                "spell_name": spell_name,
            },
            encounter_id=encounter_id,
            target_id=character_id,
            event_type="arcanum_selected",
            event_data={"spellLevel": spell_level, "spellName": spell_name},
        )

    # -----------------------------------------------------------------
    # Save prompts
    # -----------------------------------------------------------------

    async def create_save_prompt(
        self,
        encounter_id: str,
        ability: str,
        dc: int,
        description: str,
        target_scope: str,
        custom_target_ids: list[str] | None = None,
        advantage_mode: str = "normal",
        half_on_success: bool = False,
    ) -> SavePromptResponse:
        return await self._submit(
            "create-save-prompt",
            {
                "encounter_id": encounter_id,
                "ability": ability,
                "dc": dc,
                "description": description,
                "target_scope": target_scope,
                "custom_target_ids": custom_target_ids,
                "advantage_mode": advantage_mode,
                "half_on_success": half_on_success,
            },
            encounter_id=encounter_id,
            target_id=encounter_id,
            event_type="save_prompt_created",
            event_data={"ability": ability, "dc": dc, "targetScope": target_scope},
        )

    async def record_save_result(
        self,
        save_prompt_id: str,
        character_id: str,
        roll: int,
        modifier: int,
        use_legendary_resistance: bool = False,
        encounter_id: str | None = None,
    ) -> SaveResultResponse:
        return await self._submit(
            "record-save-result",
            {
                "save_prompt_id": save_prompt_id,
                "character_id": character_id,
                "roll": roll,
                "modifier": modifier,
                "use_legendary_resistance": use_legendary_resistance,
            },
            encounter_id=encounter_id,
            target_id=f"{save_prompt_id}.{character_id}",
            event_type="save_result_submitted",
            event_data={"savePromptId": save_prompt_id, "characterId": character_id},
        )

    async def close_save_prompt(self, save_prompt_id: str, encounter_id: str | None = None) -> ClosePromptResponse:
        return await self._submit(
            "close-save-prompt",
            {"save_prompt_id": save_prompt_id},
            encounter_id=encounter_id,
            target_id=save_prompt_id,
            event_type="save_prompt_closed",
        )

    # -----------------------------------------------------------------
    # Contests and undo
    # -----------------------------------------------------------------

    async def resolve_contest(
        self,
        encounter_id: str,
        current_round: int,
        check_type: str,
        attacker_id: str,
        target_id: str,
        attacker_bonus: int,
        target_athletics_bonus: int,
        target_acrobatics_bonus: int,
        attacker_roll: int | None = None,
        target_roll: int | None = None,
    ) -> ContestResponse:
        return await self._submit(
            "resolve-contest",
            {
                "encounter_id": encounter_id,
                "current_round": current_round,
                "check_type": check_type,
                "attacker_id": attacker_id,
                "target_id": target_id,
                "attacker_bonus": attacker_bonus,
                "target_athletics_bonus": target_athletics_bonus,
                "target_acrobatics_bonus": target_acrobatics_bonus,
                "attacker_roll": attacker_roll,
                "target_roll": target_roll,
            },
            encounter_id=encounter_id,
            target_id=target_id,
            event_type="contest_resolved",
            event_data={"checkType": check_type, "attackerId": attacker_id, "targetId": target_id},
        )

    async def escape_grapple(
        self,
        encounter_id: str,
        current_round: int,
        character_id: str,
        athletics_bonus: int,
        acrobatics_bonus: int,
        escape_dc: int,
        roll: int | None = None,
    ) -> EscapeGrappleResponse:
        return await self._submit(
            "escape-grapple",
            {
                "encounter_id": encounter_id,
                "current_round": current_round,
                "character_id": character_id,
                "athletics_bonus": athletics_bonus,
                "acrobatics_bonus": acrobatics_bonus,
                "escape_dc": escape_dc,
                "roll": roll,
            },
            encounter_id=encounter_id,
            target_id=character_id,
            event_type="grapple_escape_attempted",
        )

    async def undo_action(self, encounter_id: str, log_entry_id: str) -> UndoResponse:
        return await self._submit(
            "undo-action",
            {"encounter_id": encounter_id, "log_entry_id": log_entry_id},
            encounter_id=encounter_id,
            target_id=log_entry_id,
            event_type="action_undone",
        )
