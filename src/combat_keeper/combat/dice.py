"""
Dice helpers used by the server-side rolls (initiative, contests).

Every roller takes an optional ``random.Random`` so tests and replays can
seed it; without one the module-level generator is used.
"""

import random
import re

DICE_PATTERN = re.compile(r"^\s*(\d+)d(\d+)\s*(?:([+-])\s*(\d+))?\s*$", re.IGNORECASE)


def parse_dice(notation: str) -> tuple[int, int, int]:
    """Parse dice notation like '2d6+3' into (num_dice, die_size, modifier).

    Args:
        notation: Dice notation string (e.g., '1d20', '2d6 + 3', '1d8-1').

    Returns:
        Tuple of (number_of_dice, die_size, flat_modifier).

    Raises:
        ValueError: If the notation cannot be parsed.
    """
    m = DICE_PATTERN.match(notation)
    if not m:
        raise ValueError(f"Invalid dice notation: {notation!r}")
    modifier = int(m.group(4) or 0)
    if m.group(3) == "-":
        modifier = -modifier
    return int(m.group(1)), int(m.group(2)), modifier


def average_roll(notation: str) -> int:
    """Average result of a dice expression, rounded down (stat-block style)."""
    num, size, mod = parse_dice(notation)
    return (num * (size + 1)) // 2 + mod


def roll_dice(notation: str, rng: random.Random | None = None) -> tuple[list[int], int]:
    """Roll dice from notation and return (individual_rolls, total)."""
    rng = rng or random
    num, size, mod = parse_dice(notation)
    rolls = [rng.randint(1, size) for _ in range(num)]
    return rolls, sum(rolls) + mod


def roll_d20(
    advantage: bool = False,
    disadvantage: bool = False,
    rng: random.Random | None = None,
) -> tuple[int, list[int]]:
    """Roll a d20, optionally with advantage or disadvantage.

    Advantage and disadvantage together cancel out to a single roll.

    Returns:
        Tuple of (chosen_result, all_d20_rolls).
    """
    rng = rng or random
    if advantage != disadvantage:
        r1 = rng.randint(1, 20)
        r2 = rng.randint(1, 20)
        if advantage:
            return max(r1, r2), [r1, r2]
        return min(r1, r2), [r1, r2]
    r = rng.randint(1, 20)
    return r, [r]
