"""
Combat rules package for combat-keeper.

Provides the resource ledger and its progression tables, damage and
healing consequences, concentration tracking, effect durations, the
turn/round state machine, contested checks, and the monster action parser.
"""

# Resource ledger
from .resources import (
    MonsterArchetype,
    ResourceLedger,
    ResourceShape,
    calculate_multiclass_resources,
    calculate_resources,
)

# Consequence rules
from .consequences import adjust_damage, resolve_damage, resolve_healing
from .concentration import ConcentrationTracker

# Effects and conditions
from .effects import EffectsEngine, SRD_CONDITIONS

# Turns and contests
from .turns import TurnAdvance, launch_encounter, next_turn, roll_initiative_order
from .contested import ContestType, resolve_contest, resolve_escape

# Monster actions
from .action_parser import AttackAction, GenericAction, SaveAction, parse_monster_action

__all__ = [
    "MonsterArchetype",
    "ResourceLedger",
    "ResourceShape",
    "calculate_multiclass_resources",
    "calculate_resources",
    "adjust_damage",
    "resolve_damage",
    "resolve_healing",
    "ConcentrationTracker",
    "EffectsEngine",
    "SRD_CONDITIONS",
    "TurnAdvance",
    "launch_encounter",
    "next_turn",
    "roll_initiative_order",
    "ContestType",
    "resolve_contest",
    "resolve_escape",
    "AttackAction",
    "GenericAction",
    "SaveAction",
    "parse_monster_action",
]
