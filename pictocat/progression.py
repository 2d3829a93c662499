from __future__ import annotations

from typing import Any, Dict, Tuple

from .config import DEFAULTS


def award_player_xp(
    stats: Dict[str, Any],
    amount: int,
    step: int = DEFAULTS.xp_to_next_level_step,
) -> Tuple[Dict[str, Any], int]:
    """Add xp to a player's stats, levelling up as many times as it covers.

    Returns the new stats and the number of levels gained. Each level raises
    the next threshold by ``step``.
    """
    level = max(1, int(stats.get("level", 1)))
    xp = max(0, int(stats.get("xp", 0))) + max(0, int(amount))
    to_next = max(1, int(stats.get("xp_to_next_level", DEFAULTS.start_xp_to_next_level)))
    gained = 0
    while xp >= to_next:
        xp -= to_next
        level += 1
        gained += 1
        to_next += step
    new_stats = dict(stats)
    new_stats.update({"level": level, "xp": xp, "xp_to_next_level": to_next})
    return new_stats, gained
