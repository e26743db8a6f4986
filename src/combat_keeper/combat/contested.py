"""
Contested checks: grapple, shove, and escaping a grapple.

The defender never chooses a skill: the resolver always takes the better
of Athletics and Acrobatics. An attacker wins only on a strictly higher
total, so ties go to the defender. Escaping a grapple is a check against
the grappler's escape DC, where meeting the DC is enough.
"""

from dataclasses import asdict, dataclass
from enum import Enum


class ContestType(str, Enum):
    GRAPPLE = "grapple"
    SHOVE = "shove"


CONTEST_CONDITIONS: dict[ContestType, str] = {
    ContestType.GRAPPLE: "grappled",
    ContestType.SHOVE: "prone",
}


@dataclass
class ContestOutcome:
    """Result of an opposed Athletics check.

    Attributes:
        contest_type: Grapple or shove.
        attacker_roll: Attacker's natural d20.
        attacker_total: Attacker's roll plus Athletics.
        target_roll: Defender's natural d20.
        target_total: Defender's roll plus the better skill bonus.
        target_used_acrobatics: Whether Acrobatics was the better bonus.
        success: Whether the attacker won.
        condition: Condition applied to the target on success.
    """
    contest_type: ContestType
    attacker_roll: int
    attacker_total: int
    target_roll: int
    target_total: int
    target_used_acrobatics: bool
    success: bool
    condition: str | None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["contest_type"] = self.contest_type.value
        return data


@dataclass
class EscapeOutcome:
    roll: int
    bonus: int
    total: int
    dc: int
    used_acrobatics: bool
    success: bool


def best_defense(athletics_bonus: int, acrobatics_bonus: int) -> tuple[int, bool]:
    """Pick the defender's maximizing skill.

    Returns:
        Tuple of (bonus, used_acrobatics). Athletics wins ties.
    """
    if acrobatics_bonus > athletics_bonus:
        return acrobatics_bonus, True
    return athletics_bonus, False


def resolve_contest(
    contest_type: ContestType,
    attacker_roll: int,
    attacker_bonus: int,
    target_roll: int,
    target_athletics_bonus: int,
    target_acrobatics_bonus: int,
) -> ContestOutcome:
    """Resolve a grapple or shove from two d20 rolls."""
    contest_type = ContestType(contest_type)
    defense, used_acrobatics = best_defense(target_athletics_bonus, target_acrobatics_bonus)
    attacker_total = attacker_roll + attacker_bonus
    target_total = target_roll + defense
    success = attacker_total > target_total
    return ContestOutcome(
        contest_type=contest_type,
        attacker_roll=attacker_roll,
        attacker_total=attacker_total,
        target_roll=target_roll,
        target_total=target_total,
        target_used_acrobatics=used_acrobatics,
        success=success,
        condition=CONTEST_CONDITIONS[contest_type] if success else None,
    )


def resolve_escape(roll: int, athletics_bonus: int, acrobatics_bonus: int, escape_dc: int) -> EscapeOutcome:
    """Resolve an attempt to escape a grapple against the grappler's DC."""
    bonus, used_acrobatics = best_defense(athletics_bonus, acrobatics_bonus)
    total = roll + bonus
    return EscapeOutcome(
        roll=roll,
        bonus=bonus,
        total=total,
        dc=escape_dc,
        used_acrobatics=used_acrobatics,
        success=total >= escape_dc,
    )


def contest_log_message(outcome: ContestOutcome, attacker_name: str, target_name: str) -> str:
    verb = "grapple" if outcome.contest_type == ContestType.GRAPPLE else "shove"
    if outcome.success:
        past = "grappled" if outcome.contest_type == ContestType.GRAPPLE else "shoved"
        return (
            f"{attacker_name} {past} {target_name}! "
            f"({outcome.attacker_total} vs {outcome.target_total})"
        )
    return (
        f"{attacker_name} failed to {verb} {target_name} "
        f"({outcome.attacker_total} vs {outcome.target_total})"
    )
