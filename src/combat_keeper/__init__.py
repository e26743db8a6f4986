"""
combat-keeper - Combat resolution engine for a tabletop RPG campaign manager.
"""

from .config import EngineConfig
from .exceptions import CombatKeeperError
from .models import Combatant, Effect, Encounter, ResourcePool, SavePrompt

try:
    from importlib.metadata import PackageNotFoundError, version as _get_version
    __version__ = _get_version("combat-keeper")
except PackageNotFoundError:
    __version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    "CombatKeeperError",
    "Combatant",
    "Effect",
    "Encounter",
    "ResourcePool",
    "SavePrompt",
]
