"""
Wire schemas for the remote combat functions.

Requests and responses use camelCase on the wire (``characterId``,
``damageSteps``) and snake_case in Python. Records embedded in a response
(effects, prompts, combatants) keep their row field names.

Every request is validated by these models twice: by the Action Gateway
before anything is sent, and again by the server before anything is
written.
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .combat.contested import ContestType
from .models import (
    Ability,
    AdvantageMode,
    Combatant,
    CombatantKind,
    DamageType,
    DeathSaves,
    Effect,
    Encounter,
    InitiativeEntry,
    ResourcePool,
    RestType,
    SavePrompt,
    SaveResult,
    TargetScope,
    TickTiming,
)

RecordId = Annotated[str, Field(min_length=1, max_length=64)]


class WireModel(BaseModel):
    """Base for request/response payloads."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ===========================================================================
# Requests
# ===========================================================================

class DamageRequest(WireModel):
    character_id: RecordId
    amount: int = Field(ge=0, le=1000)
    damage_type: DamageType
    encounter_id: RecordId
    current_round: int = Field(ge=0)
    source_name: str | None = Field(default=None, max_length=100)
    ability_name: str | None = Field(default=None, max_length=100)


class HealingRequest(WireModel):
    character_id: RecordId
    amount: int = Field(ge=0, le=1000)
    encounter_id: RecordId
    current_round: int = Field(ge=0)
    source_name: str | None = Field(default=None, max_length=100)
    ability_name: str | None = Field(default=None, max_length=100)


class TempHpRequest(WireModel):
    character_id: RecordId
    amount: int = Field(ge=0, le=1000)
    encounter_id: RecordId
    current_round: int = Field(ge=0)
    source_name: str | None = Field(default=None, max_length=100)


class InitiativeRequest(WireModel):
    encounter_id: RecordId
    character_ids: list[str] = Field(min_length=1, max_length=20)

    @model_validator(mode="after")
    def _unique_ids(self) -> "InitiativeRequest":
        if len(set(self.character_ids)) != len(self.character_ids):
            raise ValueError("characterIds must not contain duplicates")
        return self


class EncounterRequest(WireModel):
    """Body of advance-turn, launch-encounter, and end-encounter."""
    encounter_id: RecordId


class EffectData(WireModel):
    character_id: RecordId
    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    kind: str = Field(default="spell", max_length=50)
    source: str | None = Field(default=None, max_length=100)
    start_round: int = Field(default=0, ge=0)
    end_round: int | None = Field(default=None, ge=0)
    requires_concentration: bool = False
    concentrating_character_id: str | None = None
    applies_condition: str | None = Field(default=None, min_length=1, max_length=50)
    damage_per_tick: int | None = Field(default=None, ge=0, le=500)
    damage_type_per_tick: DamageType | None = None
    ticks_at: TickTiming = TickTiming.START

    @model_validator(mode="after")
    def _consistent(self) -> "EffectData":
        if self.end_round is not None and self.end_round < self.start_round:
            raise ValueError("endRound must not be before startRound")
        if self.requires_concentration and not self.concentrating_character_id:
            raise ValueError("concentratingCharacterId is required for concentration effects")
        if self.damage_per_tick and self.damage_type_per_tick is None:
            raise ValueError("damageTypePerTick is required when damagePerTick is set")
        return self


class ManageEffectRequest(WireModel):
    action: Literal["create", "delete"]
    encounter_id: RecordId
    effect_data: EffectData | None = None
    effect_id: str | None = None

    @model_validator(mode="after")
    def _payload_for_action(self) -> "ManageEffectRequest":
        if self.action == "create" and self.effect_data is None:
            raise ValueError("effectData is required to create an effect")
        if self.action == "delete" and not self.effect_id:
            raise ValueError("effectId is required to delete an effect")
        return self


class ClassLevel(WireModel):
    name: str = Field(min_length=1, max_length=50)
    level: int = Field(ge=1, le=20)


class CombatantSpec(WireModel):
    name: str = Field(min_length=1, max_length=100)
    kind: CombatantKind = CombatantKind.CHARACTER
    max_hp: int = Field(ge=1, le=1000)
    current_hp: int | None = Field(default=None, ge=0, le=1000)
    temp_hp: int = Field(default=0, ge=0, le=1000)
    armor_class: int = Field(default=10, ge=0, le=40)
    initiative_bonus: int = Field(default=0, ge=-10, le=20)
    passive_perception: int = Field(default=10, ge=0, le=40)
    saving_throws: dict[Ability, int] = Field(default_factory=dict)
    resistances: list[DamageType] = Field(default_factory=list)
    immunities: list[DamageType] = Field(default_factory=list)
    vulnerabilities: list[DamageType] = Field(default_factory=list)
    classes: list[ClassLevel] = Field(default_factory=list)
    legendary_actions: int = Field(default=0, ge=0, le=5)
    legendary_resistances: int = Field(default=0, ge=0, le=5)


class AddCombatantsRequest(WireModel):
    encounter_id: RecordId
    combatants: list[CombatantSpec] = Field(min_length=1, max_length=20)


class SpendResourceRequest(WireModel):
    character_id: RecordId
    encounter_id: RecordId
    resource_key: str = Field(min_length=1, max_length=64)
    amount: int = Field(default=1, ge=1, le=20)


class RestRequest(WireModel):
    character_id: RecordId
    encounter_id: RecordId
    rest_type: RestType


class SelectArcanumRequest(WireModel):
    character_id: RecordId
    encounter_id: RecordId
    spell_level: int = Field(ge=6, le=9)
    spell_name: str = Field(min_length=1, max_length=100)


class SavePromptRequest(WireModel):
    encounter_id: RecordId
    ability: Ability
    dc: int = Field(ge=5, le=30)
    description: str = Field(min_length=1, max_length=500)
    target_scope: TargetScope
    custom_target_ids: list[str] | None = None
    advantage_mode: AdvantageMode = AdvantageMode.NORMAL
    half_on_success: bool = False

    @model_validator(mode="after")
    def _custom_targets(self) -> "SavePromptRequest":
        if self.target_scope == TargetScope.CUSTOM and not self.custom_target_ids:
            raise ValueError("customTargetIds is required when targetScope is custom")
        return self


class SaveResultRequest(WireModel):
    save_prompt_id: RecordId
    character_id: RecordId
    roll: int = Field(ge=1, le=20)
    modifier: int = Field(ge=-10, le=20)
    use_legendary_resistance: bool = False


class ClosePromptRequest(WireModel):
    save_prompt_id: RecordId


class ContestRequest(WireModel):
    encounter_id: RecordId
    current_round: int = Field(ge=0)
    check_type: ContestType
    attacker_id: RecordId
    target_id: RecordId
    attacker_bonus: int = Field(ge=-10, le=20)
    target_athletics_bonus: int = Field(ge=-10, le=20)
    target_acrobatics_bonus: int = Field(ge=-10, le=20)
    attacker_roll: int | None = Field(default=None, ge=1, le=20)
    target_roll: int | None = Field(default=None, ge=1, le=20)

    @model_validator(mode="after")
    def _distinct_parties(self) -> "ContestRequest":
        if self.attacker_id == self.target_id:
            raise ValueError("attackerId and targetId must differ")
        return self


class EscapeGrappleRequest(WireModel):
    encounter_id: RecordId
    current_round: int = Field(ge=0)
    character_id: RecordId
    athletics_bonus: int = Field(ge=-10, le=20)
    acrobatics_bonus: int = Field(ge=-10, le=20)
    escape_dc: int = Field(ge=5, le=30)
    roll: int | None = Field(default=None, ge=1, le=20)


class UndoRequest(WireModel):
    encounter_id: RecordId
    log_entry_id: RecordId


# ===========================================================================
# Responses
# ===========================================================================

class ConcentrationCheck(WireModel):
    required: bool
    dc: int | None = None
    effects: list[str] = Field(default_factory=list)
    save_prompt_id: str | None = None


class DamageResponse(WireModel):
    character_id: str
    new_hp: int = Field(alias="newHP")
    new_temp_hp: int = Field(alias="newTempHP")
    damage_steps: list[str]
    concentration_check: ConcentrationCheck
    death_saves: DeathSaves
    version: int
    log_entry_id: str


class HealingResponse(WireModel):
    character_id: str
    new_hp: int = Field(alias="newHP")
    actual_healing: int
    death_saves_cleared: bool
    version: int
    log_entry_id: str


class TempHpResponse(WireModel):
    character_id: str
    new_temp_hp: int = Field(alias="newTempHP")
    version: int
    log_entry_id: str


class InitiativeResponse(WireModel):
    initiative: list[InitiativeEntry]
    current_turn: str | None
    log_entry_id: str


class TickDamage(WireModel):
    character_id: str
    effect_name: str
    amount: int
    new_hp: int = Field(alias="newHP")


class AdvanceTurnResponse(WireModel):
    current_turn: str
    current_turn_id: str
    new_round: int
    is_new_round: bool
    expired_effects: list[str] = Field(default_factory=list)
    expired_conditions: list[str] = Field(default_factory=list)
    tick_damage: list[TickDamage] = Field(default_factory=list)
    save_prompt_ids: list[str] = Field(default_factory=list)
    refilled_pools: list[str] = Field(default_factory=list)
    log_entry_id: str


class ManageEffectResponse(WireModel):
    effect: Effect | None = None
    removed_effect_ids: list[str] = Field(default_factory=list)
    effects: list[Effect] = Field(default_factory=list)
    log_entry_id: str


class EncounterResponse(WireModel):
    encounter: Encounter
    ended_encounter_ids: list[str] = Field(default_factory=list)
    log_entry_id: str


class AddCombatantsResponse(WireModel):
    combatants: list[Combatant]


class PoolResponse(WireModel):
    character_id: str
    pool: ResourcePool
    version: int
    log_entry_id: str


class RestResponse(WireModel):
    character_id: str
    rest_type: RestType
    restored_pools: list[str]
    current_hp: int
    exhaustion_level: int
    version: int
    log_entry_id: str


class SavePromptResponse(WireModel):
    prompt: SavePrompt
    target_count: int


class SaveResultResponse(WireModel):
    result: SaveResult
    success: bool
    legendary_resistance_used: bool
    auto_resolved: bool
    concentration_broken: list[str] = Field(default_factory=list)


class ClosePromptResponse(WireModel):
    prompt: SavePrompt


class ContestResponse(WireModel):
    success: bool
    attacker_roll: int
    attacker_total: int
    target_roll: int
    target_total: int
    target_used_acrobatics: bool
    condition: str | None = None
    log_entry_id: str


class EscapeGrappleResponse(WireModel):
    success: bool
    roll: int
    total: int
    used_acrobatics: bool
    log_entry_id: str


class UndoResponse(WireModel):
    undone_action: str
    log_entry_id: str
    character_id: str | None = None
    new_hp: int | None = Field(default=None, alias="newHP")


# ===========================================================================
# Function registry
# ===========================================================================

FUNCTIONS: dict[str, tuple[type[WireModel], type[WireModel]]] = {
    "apply-damage": (DamageRequest, DamageResponse),
    "apply-healing": (HealingRequest, HealingResponse),
    "grant-temp-hp": (TempHpRequest, TempHpResponse),
    "roll-initiative": (InitiativeRequest, InitiativeResponse),
    "advance-turn": (EncounterRequest, AdvanceTurnResponse),
    "manage-effect": (ManageEffectRequest, ManageEffectResponse),
    "launch-encounter": (EncounterRequest, EncounterResponse),
    "end-encounter": (EncounterRequest, EncounterResponse),
    "add-combatants": (AddCombatantsRequest, AddCombatantsResponse),
    "spend-resource": (SpendResourceRequest, PoolResponse),
    "take-rest": (RestRequest, RestResponse),
    "select-arcanum-spell": (SelectArcanumRequest, PoolResponse),
    "create-save-prompt": (SavePromptRequest, SavePromptResponse),
    "record-save-result": (SaveResultRequest, SaveResultResponse),
    "close-save-prompt": (ClosePromptRequest, ClosePromptResponse),
    "resolve-contest": (ContestRequest, ContestResponse),
    "escape-grapple": (EscapeGrappleRequest, EscapeGrappleResponse),
    "undo-action": (UndoRequest, UndoResponse),
}


def format_validation_errors(errors: list[dict]) -> list[str]:
    """Render pydantic error dicts as 'path: message' strings."""
    formatted = []
    for err in errors:
        path = ".".join(str(p) for p in err.get("loc", ()))
        formatted.append(f"{path}: {err.get('msg', 'invalid value')}" if path else err.get("msg", ""))
    return formatted
