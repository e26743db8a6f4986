"""
Parser for free-text monster action descriptions.

``parse_monster_action`` turns a stat-block action such as
"Melee Weapon Attack: +7 to hit, reach 5 ft. Hit: 15 (2d10 + 4) piercing
damage." into a tagged variant:

- ``attack``: has an attack bonus; may also carry a save rider.
- ``save``: no attack roll, but a "DC N Ability" save.
- ``generic``: anything else (multiattack, auras, utility actions).

The function is pure, so it can be tested against a fixed corpus.
"""

import re
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from ..models import Ability, DamageType
from .dice import average_roll

ATTACK_PATTERN = re.compile(r"([+-]\d+)\s+to\s+hit", re.IGNORECASE)
DAMAGE_PATTERN = re.compile(r"\(?(\d+d\d+(?:\s*[+-]\s*\d+)?)\)?\s+(\w+)\s+damage", re.IGNORECASE)
SAVE_PATTERN = re.compile(r"DC\s+(\d+)\s+(\w+)", re.IGNORECASE)

DEFAULT_DAMAGE_TYPE = DamageType.BLUDGEONING

ABILITY_NAMES: dict[str, Ability] = {
    "str": Ability.STR, "strength": Ability.STR,
    "dex": Ability.DEX, "dexterity": Ability.DEX,
    "con": Ability.CON, "constitution": Ability.CON,
    "int": Ability.INT, "intelligence": Ability.INT,
    "wis": Ability.WIS, "wisdom": Ability.WIS,
    "cha": Ability.CHA, "charisma": Ability.CHA,
}


class DamageRoll(BaseModel):
    dice: str
    damage_type: DamageType
    average: int


class AttackAction(BaseModel):
    kind: Literal["attack"] = "attack"
    name: str
    description: str
    attack_bonus: int
    damage: list[DamageRoll] = Field(default_factory=list)
    save_dc: int | None = None
    save_ability: Ability | None = None


class SaveAction(BaseModel):
    kind: Literal["save"] = "save"
    name: str
    description: str
    save_dc: int
    save_ability: Ability | None = None
    damage: list[DamageRoll] = Field(default_factory=list)
    half_on_success: bool = False


class GenericAction(BaseModel):
    kind: Literal["generic"] = "generic"
    name: str
    description: str


MonsterAction = Annotated[Union[AttackAction, SaveAction, GenericAction], Field(discriminator="kind")]

monster_action_adapter: TypeAdapter[MonsterAction] = TypeAdapter(MonsterAction)


def _parse_damage(description: str) -> list[DamageRoll]:
    rolls = []
    for dice, kind in DAMAGE_PATTERN.findall(description):
        dice = re.sub(r"\s+", "", dice)
        try:
            damage_type = DamageType(kind.lower())
        except ValueError:
            damage_type = DEFAULT_DAMAGE_TYPE
        rolls.append(DamageRoll(dice=dice, damage_type=damage_type, average=average_roll(dice)))
    return rolls


def parse_monster_action(name: str, description: str | None) -> MonsterAction:
    """Classify a monster action and extract its numbers.

    Args:
        name: The action's name ('Bite', 'Fire Breath').
        description: The stat-block text. None is treated as empty.

    Returns:
        An AttackAction, SaveAction, or GenericAction.
    """
    text = description or ""
    attack = ATTACK_PATTERN.search(text)
    save = SAVE_PATTERN.search(text)
    damage = _parse_damage(text)

    save_dc = int(save.group(1)) if save else None
    save_ability = ABILITY_NAMES.get(save.group(2).lower()) if save else None

    if attack or "to hit" in text.lower():
        return AttackAction(
            name=name,
            description=text,
            attack_bonus=int(attack.group(1)) if attack else 0,
            damage=damage,
            save_dc=save_dc,
            save_ability=save_ability,
        )
    if save_dc is not None:
        return SaveAction(
            name=name,
            description=text,
            save_dc=save_dc,
            save_ability=save_ability,
            damage=damage,
            half_on_success="half as much damage" in text.lower(),
        )
    return GenericAction(name=name, description=text)
