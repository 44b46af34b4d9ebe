"""Tool magazine for mills and lathes.

Tools are generated once when a machine is built. Life only goes down, and
only for the active tool while it is cutting; nothing re-tips or replaces a
tool at runtime.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List

from .randomness import RandomSource


class ToolCategory(Enum):
    """Cutting tool families."""

    DRILL = "DRILL"
    END_MILL = "END_MILL"
    FACE_MILL = "FACE_MILL"
    REAMER = "REAMER"
    TAP = "TAP"
    BORING_BAR = "BORING_BAR"


COATINGS = ("TiN", "TiCN", "AlTiN", "Uncoated")

MAX_TOOL_LIFE = 100.0


@dataclass
class Tool:
    """One pocket of the tool magazine."""

    number: int
    category: ToolCategory
    diameter: float  # mm
    length: float  # mm
    current_life: float  # % remaining
    max_life: float = MAX_TOOL_LIFE
    flutes: int = 2
    coating: str = "Uncoated"
    description: str = ""
    in_use: bool = False
    total_cuts: int = 0

    def wear(self, amount: float) -> None:
        """Remove life, never going below zero."""
        self.current_life = max(0.0, min(self.max_life, self.current_life - amount))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "type": self.category.value,
            "diameter": self.diameter,
            "length": self.length,
            "currentLife": round(self.current_life, 2),
            "maxLife": self.max_life,
            "flutes": self.flutes,
            "coating": self.coating,
            "description": self.description,
            "inUse": self.in_use,
            "totalCuts": self.total_cuts,
        }


def create_tool_inventory(capacity: int, rng: RandomSource) -> List[Tool]:
    """Generate a full magazine of tools numbered 1..capacity."""
    categories = list(ToolCategory)
    tools = []
    for number in range(1, capacity + 1):
        tools.append(
            Tool(
                number=number,
                category=rng.choice(categories),
                diameter=round(rng.uniform(2, 22), 2),
                length=round(rng.uniform(50, 150), 2),
                current_life=MAX_TOOL_LIFE - rng.uniform(0, 80),
                flutes=rng.randint(2, 5),
                coating=rng.choice(COATINGS),
                description=f"Tool {number}",
            )
        )
    return tools
