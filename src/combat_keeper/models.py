"""
Data models for the combat engine.

These are the records the authoritative store holds and the change feed
announces: encounters, combatants (with their resource pools embedded),
effects, save prompts, save results, and the append-only combat log.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, Field, model_validator
from shortuuid import random


def _new_id() -> str:
    return random(length=8)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class DamageType(str, Enum):
    """Damage types recognised by the damage-adjustment table."""
    ACID = "acid"
    BLUDGEONING = "bludgeoning"
    COLD = "cold"
    FIRE = "fire"
    FORCE = "force"
    LIGHTNING = "lightning"
    NECROTIC = "necrotic"
    PIERCING = "piercing"
    POISON = "poison"
    PSYCHIC = "psychic"
    RADIANT = "radiant"
    SLASHING = "slashing"
    THUNDER = "thunder"


class Ability(str, Enum):
    STR = "STR"
    DEX = "DEX"
    CON = "CON"
    INT = "INT"
    WIS = "WIS"
    CHA = "CHA"


class CombatantKind(str, Enum):
    CHARACTER = "character"
    MONSTER = "monster"


class EncounterStatus(str, Enum):
    PREPARING = "preparing"
    ACTIVE = "active"
    ENDED = "ended"


class RestType(str, Enum):
    SHORT = "short"
    LONG = "long"


class PoolKind(str, Enum):
    SPELL_SLOT = "spell_slot"
    PACT_SLOT = "pact_slot"
    CLASS_RESOURCE = "class_resource"
    LEGENDARY_ACTION = "legendary_action"
    LEGENDARY_RESISTANCE = "legendary_resistance"
    MYSTIC_ARCANUM = "mystic_arcanum"


class TargetScope(str, Enum):
    PARTY = "party"
    ALL = "all"
    CUSTOM = "custom"


class AdvantageMode(str, Enum):
    NORMAL = "normal"
    ADVANTAGE = "advantage"
    DISADVANTAGE = "disadvantage"


class PromptStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


class PromptSource(str, Enum):
    MANUAL = "manual"
    CONCENTRATION = "concentration"


class TickTiming(str, Enum):
    START = "start"
    END = "end"


# ---------------------------------------------------------------------------
# Base record
# ---------------------------------------------------------------------------

class Record(BaseModel):
    """A versioned row in the authoritative store.

    ``version`` is bumped by the store on every committed write; readers
    use it to discard stale change notifications.
    """
    table: ClassVar[str] = ""

    id: str = Field(default_factory=_new_id)
    version: int = 0
    updated_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Resource pools
# ---------------------------------------------------------------------------

class ResourcePool(BaseModel):
    """A bounded counter attached to a combatant.

    ``remaining`` is clamped into ``[0, max]`` on construction, so a pool
    can never be stored out of range.
    """
    key: str
    label: str
    kind: PoolKind = PoolKind.CLASS_RESOURCE
    max: int = Field(ge=0)
    remaining: int = 0
    reset_on: RestType = RestType.LONG
    resets_on_turn_start: bool = False
    spell_level: int | None = Field(default=None, ge=1, le=9)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _clamp_remaining(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        maximum = max(0, int(data.get("max", 0)))
        remaining = data.get("remaining")
        if remaining is None:
            remaining = maximum
        data["remaining"] = min(max(0, int(remaining)), maximum)
        return data

    @property
    def used(self) -> int:
        return self.max - self.remaining


# ---------------------------------------------------------------------------
# Combatants
# ---------------------------------------------------------------------------

class DeathSaves(BaseModel):
    success: int = Field(default=0, ge=0, le=3)
    fail: int = Field(default=0, ge=0, le=3)


class ActiveCondition(BaseModel):
    """A condition on a combatant, optionally owned by an effect."""
    name: str
    source_effect_id: str | None = None
    ends_at_round: int | None = None


class Combatant(Record):
    """A character or monster taking part in an encounter."""
    table: ClassVar[str] = "combatants"

    encounter_id: str
    name: str
    kind: CombatantKind = CombatantKind.CHARACTER
    current_hp: int = Field(ge=0)
    max_hp: int = Field(ge=1)
    temp_hp: int = Field(default=0, ge=0)
    armor_class: int = 10
    initiative_bonus: int = 0
    passive_perception: int = 10
    saving_throws: dict[Ability, int] = Field(default_factory=dict)
    resistances: list[DamageType] = Field(default_factory=list)
    immunities: list[DamageType] = Field(default_factory=list)
    vulnerabilities: list[DamageType] = Field(default_factory=list)
    conditions: list[ActiveCondition] = Field(default_factory=list)
    exhaustion_level: int = Field(default=0, ge=0, le=6)
    death_saves: DeathSaves = Field(default_factory=DeathSaves)
    resources: dict[str, ResourcePool] = Field(default_factory=dict)
    action_used: bool = False
    bonus_action_used: bool = False
    reaction_used: bool = False

    def has_condition(self, name: str) -> bool:
        return any(c.name.lower() == name.lower() for c in self.conditions)

    def pools_of_kind(self, kind: PoolKind) -> list[ResourcePool]:
        return [p for p in self.resources.values() if p.kind == kind]


# ---------------------------------------------------------------------------
# Encounters
# ---------------------------------------------------------------------------

class InitiativeEntry(BaseModel):
    combatant_id: str
    name: str
    roll: int
    bonus: int
    total: int
    passive_perception: int = 10


class Encounter(Record):
    """One combat session within a campaign."""
    table: ClassVar[str] = "encounters"

    campaign_id: str
    name: str = "Encounter"
    status: EncounterStatus = EncounterStatus.PREPARING
    is_active: bool = False
    current_round: int = Field(default=0, ge=0)
    current_turn_index: int = Field(default=0, ge=0)
    initiative: list[InitiativeEntry] = Field(default_factory=list)

    @property
    def current_entry(self) -> InitiativeEntry | None:
        if not self.initiative:
            return None
        return self.initiative[self.current_turn_index % len(self.initiative)]


# ---------------------------------------------------------------------------
# Effects
# ---------------------------------------------------------------------------

class Effect(Record):
    """A timed or persistent status applied to a combatant.

    ``end_round`` of None means the effect lasts until removed.
    """
    table: ClassVar[str] = "effects"

    encounter_id: str
    combatant_id: str
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    kind: str = "spell"
    source: str | None = None
    start_round: int = Field(default=0, ge=0)
    end_round: int | None = Field(default=None, ge=0)
    requires_concentration: bool = False
    concentrating_combatant_id: str | None = None
    applies_condition: str | None = None
    damage_per_tick: int | None = Field(default=None, ge=0)
    damage_type_per_tick: DamageType | None = None
    ticks_at: TickTiming = TickTiming.START


# ---------------------------------------------------------------------------
# Save prompts
# ---------------------------------------------------------------------------

class SavePrompt(Record):
    """A pending request for combatants to roll a save against a DC."""
    table: ClassVar[str] = "save_prompts"

    encounter_id: str
    ability: Ability
    dc: int = Field(ge=1)
    description: str
    target_scope: TargetScope = TargetScope.CUSTOM
    target_ids: list[str] = Field(default_factory=list)
    advantage_mode: AdvantageMode = AdvantageMode.NORMAL
    half_on_success: bool = False
    source: PromptSource = PromptSource.MANUAL
    effect_names: list[str] = Field(default_factory=list)
    expected_responses: int = 0
    received_responses: int = 0
    status: PromptStatus = PromptStatus.ACTIVE


class SaveResult(Record):
    table: ClassVar[str] = "save_results"

    save_prompt_id: str
    encounter_id: str
    combatant_id: str
    roll: int = Field(ge=1, le=20)
    modifier: int = Field(ge=-10, le=20)
    total: int
    success: bool
    legendary_resistance_used: bool = False


# ---------------------------------------------------------------------------
# Combat log
# ---------------------------------------------------------------------------

class CombatLogEntry(Record):
    """An immutable record of one action taken in an encounter."""
    table: ClassVar[str] = "combat_log"

    encounter_id: str
    combatant_id: str | None = None
    round: int = 0
    action_type: str
    message: str
    amount: int | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    undoes: str | None = None


RECORD_TYPES: dict[str, type[Record]] = {
    cls.table: cls
    for cls in (Encounter, Combatant, Effect, SavePrompt, SaveResult, CombatLogEntry)
}
