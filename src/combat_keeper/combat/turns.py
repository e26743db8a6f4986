"""
Turn/Round state machine for encounters.

Status moves ``preparing -> active -> ended`` and never back; ``ended`` is
terminal. Orthogonal to the status, a turn pointer cycles through the
initiative list and the round counter increments each time it wraps.
At most one encounter per campaign is active: launching one force-ends
any other active encounter in the same campaign.
"""

import logging
import random
from dataclasses import dataclass
from typing import Iterable

from ..exceptions import EncounterStateError
from ..models import Combatant, Encounter, EncounterStatus, InitiativeEntry
from .dice import roll_d20

logger = logging.getLogger("combat-keeper")


@dataclass
class TurnAdvance:
    """Where the turn pointer lands after one advance.

    Attributes:
        previous_index: Index of the combatant whose turn just ended.
        next_index: Index of the combatant whose turn starts.
        round: Round number after the advance.
        is_new_round: True when the pointer wrapped to the top of the order.
    """
    previous_index: int
    next_index: int
    round: int
    is_new_round: bool


# ---------------------------------------------------------------------------
# Initiative
# ---------------------------------------------------------------------------

def order_initiative(entries: list[InitiativeEntry]) -> list[InitiativeEntry]:
    """Sort by total, then bonus, then passive perception, all descending.

    Remaining ties keep their input order.
    """
    indexed = list(enumerate(entries))
    indexed.sort(key=lambda pair: (-pair[1].total, -pair[1].bonus, -pair[1].passive_perception, pair[0]))
    return [entry for _, entry in indexed]


def roll_initiative_order(
    combatants: Iterable[Combatant],
    rng: random.Random | None = None,
) -> list[InitiativeEntry]:
    """Roll d20 + initiative bonus for each combatant and order the results."""
    entries = []
    for combatant in combatants:
        roll, _ = roll_d20(rng=rng)
        entries.append(InitiativeEntry(
            combatant_id=combatant.id,
            name=combatant.name,
            roll=roll,
            bonus=combatant.initiative_bonus,
            total=roll + combatant.initiative_bonus,
            passive_perception=combatant.passive_perception or 10,
        ))
    return order_initiative(entries)


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

def ensure_not_ended(encounter: Encounter, action: str) -> None:
    if encounter.status == EncounterStatus.ENDED:
        raise EncounterStateError(
            f"Cannot {action}: encounter '{encounter.name}' has ended",
            details={"encounterId": encounter.id, "status": encounter.status.value},
        )


def ensure_active(encounter: Encounter, action: str) -> None:
    if encounter.status != EncounterStatus.ACTIVE:
        raise EncounterStateError(
            f"Cannot {action}: encounter '{encounter.name}' is {encounter.status.value}",
            details={"encounterId": encounter.id, "status": encounter.status.value},
        )


def launch_encounter(encounter: Encounter, campaign_encounters: Iterable[Encounter]) -> list[Encounter]:
    """Move an encounter to ``active`` and force-end its active siblings.

    Args:
        encounter: The encounter to launch (mutated).
        campaign_encounters: Other encounters in the same campaign.

    Returns:
        The sibling encounters that were force-ended (mutated).

    Raises:
        EncounterStateError: If the encounter has already ended.
    """
    ensure_not_ended(encounter, "launch encounter")
    ended = []
    for other in campaign_encounters:
        if other.id != encounter.id and other.status == EncounterStatus.ACTIVE:
            end_encounter(other)
            ended.append(other)
            logger.info(f"Encounter {other.id} superseded by {encounter.id}")

    if encounter.status == EncounterStatus.PREPARING:
        encounter.status = EncounterStatus.ACTIVE
        encounter.is_active = True
        encounter.current_round = max(1, encounter.current_round)
        encounter.current_turn_index = 0
    return ended


def end_encounter(encounter: Encounter) -> None:
    """Move an encounter to ``ended`` and clear its initiative."""
    encounter.status = EncounterStatus.ENDED
    encounter.is_active = False
    encounter.current_round = 0
    encounter.current_turn_index = 0
    encounter.initiative = []


def next_turn(encounter: Encounter) -> TurnAdvance:
    """Compute the next turn pointer and round without mutating.

    Raises:
        EncounterStateError: If the encounter is not active or has no
            initiative order.
    """
    ensure_active(encounter, "advance turn")
    if not encounter.initiative:
        raise EncounterStateError(
            "Cannot advance turn: no initiative has been rolled",
            details={"encounterId": encounter.id},
        )
    count = len(encounter.initiative)
    current = encounter.current_turn_index % count
    nxt = (current + 1) % count
    is_new_round = nxt == 0
    return TurnAdvance(
        previous_index=current,
        next_index=nxt,
        round=encounter.current_round + 1 if is_new_round else encounter.current_round,
        is_new_round=is_new_round,
    )


def apply_turn(encounter: Encounter, advance: TurnAdvance) -> None:
    encounter.current_turn_index = advance.next_index
    encounter.current_round = advance.round
