"""CEFR level table.

The one place that knows the order of levels. Anything that needs the
"next level" or a level's position goes through here.
"""
from enum import Enum
from typing import Optional, Union


class Level(str, Enum):
    """CEFR proficiency levels, lowest first."""
    A1 = "A1"
    A2 = "A2"
    B1 = "B1"
    B2 = "B2"
    C1 = "C1"
    C2 = "C2"

    def __str__(self) -> str:
        return self.value


LEVELS: tuple[Level, ...] = tuple(Level)

MIN_LEVEL = LEVELS[0]


def parse_level(value: Union[str, Level]) -> Level:
    """Convert a stored level string into a Level, raising ValueError if unknown."""
    if isinstance(value, Level):
        return value
    return Level(value.strip().upper())


def level_index(level: Union[str, Level]) -> int:
    """Position of the level in the table (A1 is 0)."""
    return LEVELS.index(parse_level(level))


def next_level(level: Union[str, Level]) -> Optional[Level]:
    """Level after the given one, or None at the top of the table."""
    index = level_index(level)
    if index + 1 >= len(LEVELS):
        return None
    return LEVELS[index + 1]