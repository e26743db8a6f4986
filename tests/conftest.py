"""
Pytest configuration and fixtures for combat-keeper tests.
"""

import random
from typing import Any, Callable

import pytest

from combat_keeper.combat.resources import MonsterArchetype, calculate_resources
from combat_keeper.models import (
    Combatant,
    CombatantKind,
    Encounter,
    EncounterStatus,
)
from combat_keeper.server.mutator import CombatMutator
from combat_keeper.server.store import CombatStore


# Configure anyio to only use asyncio (not trio)
@pytest.fixture
def anyio_backend():
    return "asyncio"


# ---------------------------------------------------------------------------
# Store and encounter
# ---------------------------------------------------------------------------

@pytest.fixture
def store() -> CombatStore:
    return CombatStore()


@pytest.fixture
def mutator(store: CombatStore) -> CombatMutator:
    """Mutator with a seeded RNG so server-side rolls are reproducible."""
    return CombatMutator(store, rng=random.Random(7))


@pytest.fixture
def encounter(store: CombatStore) -> Encounter:
    """An active encounter in round 1."""
    enc = Encounter(
        campaign_id="camp-1",
        name="Goblin Ambush",
        status=EncounterStatus.ACTIVE,
        is_active=True,
        current_round=1,
    )
    store.insert(enc)
    return enc


@pytest.fixture
def make_combatant(store: CombatStore, encounter: Encounter) -> Callable[..., Combatant]:
    """Factory that inserts a combatant into the encounter."""

    def _make(name: str = "Aldric", **fields: Any) -> Combatant:
        fields.setdefault("max_hp", 20)
        fields.setdefault("current_hp", fields["max_hp"])
        combatant = Combatant(encounter_id=encounter.id, name=name, **fields)
        store.insert(combatant)
        return combatant

    return _make


@pytest.fixture
def fighter(make_combatant) -> Combatant:
    """A 20 HP fighter resistant to fire."""
    return make_combatant("Aldric", max_hp=20, resistances=["fire"], initiative_bonus=2)


@pytest.fixture
def wizard(make_combatant) -> Combatant:
    """A level 5 wizard with spell slots."""
    return make_combatant(
        "Elara",
        max_hp=30,
        initiative_bonus=3,
        resources=calculate_resources("Wizard", 5).pools(),
    )


@pytest.fixture
def dragon(make_combatant) -> Combatant:
    """A monster with three legendary actions and one legendary resistance."""
    archetype = MonsterArchetype(name="Young Red Dragon", legendary_actions=3, legendary_resistances=1)
    return make_combatant(
        "Young Red Dragon",
        kind=CombatantKind.MONSTER,
        max_hp=178,
        immunities=["fire"],
        initiative_bonus=0,
        resources=calculate_resources(archetype).pools(),
    )
