"""
ANSI colors for worker name prefixes.

assign_colors() returns a new mapping per run; nothing is kept at module level.
"""

from __future__ import annotations

import random
from collections.abc import Mapping
from enum import StrEnum


class Color(StrEnum):
    RED = "red"
    GREEN = "green"
    YELLOW = "yellow"
    BLUE = "blue"
    MAGENTA = "magenta"
    CYAN = "cyan"
    BRIGHT_RED = "bright_red"
    BRIGHT_GREEN = "bright_green"
    BRIGHT_YELLOW = "bright_yellow"
    BRIGHT_BLUE = "bright_blue"
    BRIGHT_MAGENTA = "bright_magenta"
    BRIGHT_CYAN = "bright_cyan"
    WHITE = "white"
    # resolved by assign_colors()
    RANDOM = "random"


_SGR_CODES: dict[Color, int] = {
    Color.RED: 31,
    Color.GREEN: 32,
    Color.YELLOW: 33,
    Color.BLUE: 34,
    Color.MAGENTA: 35,
    Color.CYAN: 36,
    Color.WHITE: 37,
    Color.BRIGHT_RED: 91,
    Color.BRIGHT_GREEN: 92,
    Color.BRIGHT_YELLOW: 93,
    Color.BRIGHT_BLUE: 94,
    Color.BRIGHT_MAGENTA: 95,
    Color.BRIGHT_CYAN: 96,
}

# white is kept out of the pool: it does not stand out from regular output
COLOR_POOL: tuple[Color, ...] = tuple(
    color for color in _SGR_CODES if color is not Color.WHITE
)


def assign_colors(
    preferred: Mapping[str, Color],
    *,
    rng: random.Random | None = None,
) -> dict[str, Color]:
    """Resolve RANDOM entries from the pool, avoiding colors already taken while possible."""
    rng = rng or random.Random()
    assigned: dict[str, Color] = {}
    taken: set[Color] = {color for color in preferred.values() if color is not Color.RANDOM}

    for name, color in preferred.items():
        if color is not Color.RANDOM:
            assigned[name] = color
            continue
        free = [candidate for candidate in COLOR_POOL if candidate not in taken]
        if not free:
            # more workers than colors: start reusing
            free = list(COLOR_POOL)
            taken.clear()
        choice = rng.choice(free)
        taken.add(choice)
        assigned[name] = choice
    return assigned


def open_sequence(color: Color) -> str:
    code = _SGR_CODES.get(color)
    if code is None:
        return ""
    return f"\x1b[{code}m"


def close_sequence() -> str:
    return "\x1b[0m"


__all__ = ["COLOR_POOL", "Color", "assign_colors", "close_sequence", "open_sequence"]
