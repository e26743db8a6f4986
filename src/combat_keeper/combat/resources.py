"""
Resource Ledger: pool shapes per class/level/archetype and the spend and
restore rules that keep every pool inside ``[0, max]``.

Pool shapes come from the 5e progression tables:
- Shared spell slots follow the full-caster table indexed by the
  multiclass caster level (full + half // 2 + third // 3).
- Warlock pact slots are tracked separately and refill on a short rest.
- Class resources (rage, ki, channel divinity, ...) follow level bands.
- Mystic Arcanum grants one 6th/7th/8th/9th-level use at warlock
  levels 11/13/15/17, each with a one-time spell choice.
- Monster archetypes carry fixed legendary action/resistance counts.
  Legendary actions refill at the start of that monster's own turn.

The ResourceLedger is stateless: it mutates the pools handed to it and
returns small result objects describing what changed.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable

from pydantic import BaseModel, Field

from ..exceptions import ActionValidationError, NotFoundError, ResourceExhaustedError, RuleViolationError
from ..models import Combatant, DeathSaves, PoolKind, ResourcePool, RestType

logger = logging.getLogger("combat-keeper")


# ---------------------------------------------------------------------------
# Progression tables
# ---------------------------------------------------------------------------

FULL_CASTER_SLOTS: dict[int, list[int]] = {
    1: [2],
    2: [3],
    3: [4, 2],
    4: [4, 3],
    5: [4, 3, 2],
    6: [4, 3, 3],
    7: [4, 3, 3, 1],
    8: [4, 3, 3, 2],
    9: [4, 3, 3, 3, 1],
    10: [4, 3, 3, 3, 2],
    11: [4, 3, 3, 3, 2, 1],
    12: [4, 3, 3, 3, 2, 1],
    13: [4, 3, 3, 3, 2, 1, 1],
    14: [4, 3, 3, 3, 2, 1, 1],
    15: [4, 3, 3, 3, 2, 1, 1, 1],
    16: [4, 3, 3, 3, 2, 1, 1, 1],
    17: [4, 3, 3, 3, 2, 1, 1, 1, 1],
    18: [4, 3, 3, 3, 3, 1, 1, 1, 1],
    19: [4, 3, 3, 3, 3, 2, 1, 1, 1],
    20: [4, 3, 3, 3, 3, 2, 2, 1, 1],
}

FULL_CASTERS = ("Bard", "Cleric", "Druid", "Sorcerer", "Wizard")
HALF_CASTERS = ("Paladin", "Ranger")
THIRD_CASTERS = ("Eldritch Knight", "Arcane Trickster")

# Arcanum spell level -> warlock level that unlocks it
MYSTIC_ARCANUM_LEVELS: dict[int, int] = {6: 11, 7: 13, 8: 15, 9: 17}

UNLIMITED_USES = 999


def _ordinal(n: int) -> str:
    return {1: "1st", 2: "2nd", 3: "3rd"}.get(n, f"{n}th")


def pool_key(label: str) -> str:
    """Derive a stable pool key from its label ('Ki Points' -> 'ki_points')."""
    return re.sub(r"[^a-z0-9]+", "_", label.lower()).strip("_")


def _class_pool(label: str, total: int, reset_on: str) -> ResourcePool:
    pool = ResourcePool(
        key=pool_key(label),
        label=label,
        kind=PoolKind.CLASS_RESOURCE,
        max=total,
        reset_on=RestType(reset_on),
    )
    if total >= UNLIMITED_USES:
        pool.metadata["unlimited"] = True
    return pool


def _barbarian(level: int) -> list[ResourcePool]:
    if level < 3:
        rages = 2
    elif level < 6:
        rages = 3
    elif level < 12:
        rages = 4
    elif level < 17:
        rages = 5
    elif level < 20:
        rages = 6
    else:
        rages = UNLIMITED_USES
    return [_class_pool("Rage", rages, "long")]


def _fighter(level: int) -> list[ResourcePool]:
    pools = []
    if level >= 2:
        pools.append(_class_pool("Action Surge", 1 if level < 17 else 2, "short"))
    if level >= 9:
        uses = 1 if level < 13 else 2 if level < 17 else 3
        pools.append(_class_pool("Indomitable", uses, "long"))
    return pools


def _bard(level: int) -> list[ResourcePool]:
    if level < 2:
        return []
    uses = max(1, (level - 1) // 4 + 3)
    return [_class_pool("Bardic Inspiration", uses, "long" if level < 5 else "short")]


def _cleric(level: int) -> list[ResourcePool]:
    if level < 2:
        return []
    uses = 1 if level < 6 else 2 if level < 18 else 3
    return [_class_pool("Channel Divinity", uses, "short")]


def _warlock(level: int) -> list[ResourcePool]:
    if level < 2:
        return []
    return [_class_pool("Invocations", (level + 1) // 3 + 2, "long")]


CLASS_RESOURCES: dict[str, Callable[[int], list[ResourcePool]]] = {
    "Barbarian": _barbarian,
    "Monk": lambda level: [_class_pool("Ki Points", level, "short")],
    "Fighter": _fighter,
    "Bard": _bard,
    "Cleric": _cleric,
    "Druid": lambda level: [_class_pool("Wild Shape", 2, "short")] if level >= 2 else [],
    "Paladin": lambda level: [_class_pool("Channel Divinity", 1, "short")] if level >= 3 else [],
    "Ranger": lambda level: [],
    "Rogue": lambda level: [],
    "Sorcerer": lambda level: [_class_pool("Sorcery Points", level, "long")],
    "Warlock": _warlock,
    "Wizard": lambda level: [_class_pool("Arcane Recovery", 1, "long")] if level >= 2 else [],
}


def warlock_pact_slot_level(warlock_level: int) -> int:
    if warlock_level >= 9:
        return 5
    if warlock_level >= 7:
        return 4
    if warlock_level >= 5:
        return 3
    if warlock_level >= 3:
        return 2
    return 1


def warlock_pact_slots(warlock_level: int) -> int:
    if warlock_level >= 17:
        return 4
    if warlock_level >= 11:
        return 3
    if warlock_level >= 2:
        return 2
    return 1


def multiclass_caster_level(classes: list[tuple[str, int]]) -> int:
    """Combined caster level for shared spell slots (Warlock excluded)."""
    full = sum(level for name, level in classes if name in FULL_CASTERS)
    half = sum(level for name, level in classes if name in HALF_CASTERS)
    third = sum(level for name, level in classes if name in THIRD_CASTERS)
    return full + half // 2 + third // 3


# ---------------------------------------------------------------------------
# Shapes
# ---------------------------------------------------------------------------

class MonsterArchetype(BaseModel):
    """Fixed legendary resources of a monster stat block."""
    name: str
    legendary_actions: int = Field(default=0, ge=0)
    legendary_resistances: int = Field(default=0, ge=0)


class ResourceShape(BaseModel):
    """The pools a combatant starts an encounter with."""
    spell_slots: list[ResourcePool] = Field(default_factory=list)
    class_resources: list[ResourcePool] = Field(default_factory=list)

    def pools(self) -> dict[str, ResourcePool]:
        return {p.key: p for p in [*self.spell_slots, *self.class_resources]}


def _shared_slot_pools(caster_level: int) -> list[ResourcePool]:
    if caster_level <= 0:
        return []
    counts = FULL_CASTER_SLOTS[min(caster_level, 20)]
    return [
        ResourcePool(
            key=f"spell_slot_{level}",
            label=f"{_ordinal(level)}-level spell slots",
            kind=PoolKind.SPELL_SLOT,
            max=count,
            reset_on=RestType.LONG,
            spell_level=level,
        )
        for level, count in enumerate(counts, start=1)
        if count > 0
    ]


def _pact_pools(warlock_level: int) -> list[ResourcePool]:
    if warlock_level <= 0:
        return []
    slot_level = warlock_pact_slot_level(warlock_level)
    return [
        ResourcePool(
            key="pact_slot",
            label=f"Pact slots ({_ordinal(slot_level)} level)",
            kind=PoolKind.PACT_SLOT,
            max=warlock_pact_slots(warlock_level),
            reset_on=RestType.SHORT,
            spell_level=slot_level,
        )
    ]


def _arcanum_pools(warlock_level: int) -> list[ResourcePool]:
    return [
        ResourcePool(
            key=f"mystic_arcanum_{spell_level}",
            label=f"Mystic Arcanum ({_ordinal(spell_level)} level)",
            kind=PoolKind.MYSTIC_ARCANUM,
            max=1,
            reset_on=RestType.LONG,
            spell_level=spell_level,
            metadata={"spell": None},
        )
        for spell_level, unlocked_at in MYSTIC_ARCANUM_LEVELS.items()
        if warlock_level >= unlocked_at
    ]


def _legendary_pools(archetype: MonsterArchetype) -> list[ResourcePool]:
    pools = []
    if archetype.legendary_actions:
        pools.append(ResourcePool(
            key="legendary_actions",
            label="Legendary Actions",
            kind=PoolKind.LEGENDARY_ACTION,
            max=archetype.legendary_actions,
            reset_on=RestType.LONG,
            resets_on_turn_start=True,
        ))
    if archetype.legendary_resistances:
        pools.append(ResourcePool(
            key="legendary_resistances",
            label="Legendary Resistances",
            kind=PoolKind.LEGENDARY_RESISTANCE,
            max=archetype.legendary_resistances,
            reset_on=RestType.LONG,
        ))
    return pools


def calculate_multiclass_resources(classes: list[tuple[str, int]]) -> ResourceShape:
    """Compute pool shapes for a (possibly multiclass) character.

    Args:
        classes: ``(class_name, level)`` pairs. Subclass casters are given by
            their subclass name ('Eldritch Knight', 'Arcane Trickster').

    Returns:
        A ResourceShape. Same input always yields the same shape.

    Raises:
        ActionValidationError: If a level is outside 1..20.
    """
    for name, level in classes:
        if not 1 <= level <= 20:
            raise ActionValidationError(
                f"Invalid level {level} for {name}", details=["level: must be between 1 and 20"]
            )

    warlock_level = sum(level for name, level in classes if name == "Warlock")
    spell_slots = _shared_slot_pools(multiclass_caster_level(classes)) + _pact_pools(warlock_level)

    class_resources: list[ResourcePool] = []
    for name, level in classes:
        generator = CLASS_RESOURCES.get(name)
        if generator is not None:
            class_resources.extend(generator(level))
    class_resources.extend(_arcanum_pools(warlock_level))

    return ResourceShape(spell_slots=spell_slots, class_resources=class_resources)


def calculate_resources(class_or_archetype: str | MonsterArchetype, level: int = 1) -> ResourceShape:
    """Compute pool shapes for a single class at a level, or a monster archetype.

    Args:
        class_or_archetype: A class name ('Warlock') or a MonsterArchetype.
        level: Class level; ignored for archetypes.

    Returns:
        A ResourceShape.
    """
    if isinstance(class_or_archetype, MonsterArchetype):
        return ResourceShape(class_resources=_legendary_pools(class_or_archetype))
    return calculate_multiclass_resources([(class_or_archetype, level)])


# ---------------------------------------------------------------------------
# Ledger operations
# ---------------------------------------------------------------------------

@dataclass
class SaveEvaluation:
    """Outcome of a save before it is committed.

    Attributes:
        total: Roll plus modifier.
        dc: Difficulty class.
        success: Whether the roll succeeds on its own.
        legendary_resistance_available: Whether a failed save may be turned
            into a success by spending a legendary resistance.
    """
    total: int
    dc: int
    success: bool
    legendary_resistance_available: bool


@dataclass
class RestOutcome:
    rest_type: RestType
    restored_pools: list[str] = field(default_factory=list)
    hp_restored: int = 0
    exhaustion_level: int = 0


class ResourceLedger:
    """Stateless spend/restore operations on resource pools."""

    @staticmethod
    def find_pool(combatant: Combatant, key: str) -> ResourcePool:
        """Look up a pool on a combatant.

        Raises:
            NotFoundError: If the combatant has no pool with that key.
        """
        pool = combatant.resources.get(key)
        if pool is None:
            raise NotFoundError(f"{combatant.name} has no resource '{key}'")
        return pool

    @staticmethod
    def spend(pool: ResourcePool, amount: int = 1) -> ResourcePool:
        """Spend from a pool.

        Args:
            pool: The pool to decrement (mutated in place).
            amount: Uses to spend, at least 1.

        Returns:
            The same pool.

        Raises:
            ActionValidationError: If amount is below 1.
            ResourceExhaustedError: If amount exceeds what remains. The pool
                is left unchanged.
        """
        if amount < 1:
            raise ActionValidationError(
                f"Cannot spend {amount} from {pool.label}", details=["amount: must be at least 1"]
            )
        if pool.metadata.get("unlimited"):
            return pool
        if amount > pool.remaining:
            if pool.remaining == 0:
                message = f"{pool.label} already used ({pool.remaining}/{pool.max} remaining)"
            else:
                message = f"Cannot spend {amount} {pool.label}: only {pool.remaining} remaining"
            raise ResourceExhaustedError(
                message,
                details={"key": pool.key, "remaining": pool.remaining, "requested": amount},
            )
        pool.remaining = min(max(0, pool.remaining - amount), pool.max)
        return pool

    @staticmethod
    def restore(pool: ResourcePool, rest_type: RestType) -> bool:
        """Refill a pool if the rest type resets it.

        A long rest refills every pool; a short rest refills only pools
        with ``reset_on == short``.

        Returns:
            True if the pool was refilled.
        """
        if rest_type == RestType.LONG or pool.reset_on == RestType.SHORT:
            changed = pool.remaining != pool.max
            pool.remaining = pool.max
            return changed
        return False

    @staticmethod
    def rest(combatant: Combatant, rest_type: RestType) -> RestOutcome:
        """Apply a rest to every pool on a combatant.

        A long rest also restores HP to max, drops temporary HP, clears
        death saves, and lowers exhaustion by one level.
        """
        outcome = RestOutcome(rest_type=rest_type)
        for key, pool in combatant.resources.items():
            if ResourceLedger.restore(pool, rest_type):
                outcome.restored_pools.append(key)

        if rest_type == RestType.LONG:
            outcome.hp_restored = combatant.max_hp - combatant.current_hp
            combatant.current_hp = combatant.max_hp
            combatant.temp_hp = 0
            combatant.death_saves = DeathSaves()
            combatant.exhaustion_level = max(0, combatant.exhaustion_level - 1)

        outcome.exhaustion_level = combatant.exhaustion_level
        logger.debug(
            f"{rest_type.value} rest for {combatant.name}: restored {outcome.restored_pools}"
        )
        return outcome

    @staticmethod
    def reset_turn_start(combatant: Combatant) -> list[str]:
        """Refill pools that reset at the start of this combatant's turn."""
        refilled = []
        for key, pool in combatant.resources.items():
            if pool.resets_on_turn_start and pool.remaining != pool.max:
                pool.remaining = pool.max
                refilled.append(key)
        return refilled

    # -----------------------------------------------------------------
    # Legendary Resistance
    # -----------------------------------------------------------------

    @staticmethod
    def legendary_resistance_pool(combatant: Combatant) -> ResourcePool | None:
        pools = combatant.pools_of_kind(PoolKind.LEGENDARY_RESISTANCE)
        return pools[0] if pools else None

    @staticmethod
    def evaluate_save(total: int, dc: int, pool: ResourcePool | None) -> SaveEvaluation:
        """Evaluate a save and whether legendary resistance can be offered.

        This runs before the result is committed so a failed save can
        still be turned into a success.
        """
        success = total >= dc
        return SaveEvaluation(
            total=total,
            dc=dc,
            success=success,
            legendary_resistance_available=(not success and pool is not None and pool.remaining > 0),
        )

    # -----------------------------------------------------------------
    # Mystic Arcanum
    # -----------------------------------------------------------------

    @staticmethod
    def select_arcanum(pool: ResourcePool, spell_name: str) -> ResourcePool:
        """Record the one-time spell choice for a Mystic Arcanum level.

        Choosing the same spell again is a no-op.

        Raises:
            RuleViolationError: If the pool is not an arcanum, or a different
                spell was already chosen for this level.
        """
        if pool.kind != PoolKind.MYSTIC_ARCANUM:
            raise RuleViolationError(f"{pool.label} is not a Mystic Arcanum")
        current = pool.metadata.get("spell")
        if current and current != spell_name:
            raise RuleViolationError(
                f"{pool.label} is already bound to {current}",
                details={"key": pool.key, "spell": current},
            )
        pool.metadata["spell"] = spell_name
        return pool
