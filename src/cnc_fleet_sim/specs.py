"""Static machine specifications.

Physical limits per machine type and per model: axis travel, spindle power
and speed, rapid traverse, tool capacity and the press/laser ceilings.
Pure data; the simulation engine only ever reads these.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class MachineType(Enum):
    """Machine families known to the simulator."""

    CNC_MILL = "CNC_MILL"
    LATHE = "LATHE"
    PRESS_BRAKE = "PRESS_BRAKE"
    LASER = "LASER"

    @property
    def has_tooling(self) -> bool:
        """Mills and lathes carry a tool magazine and a coolant system."""
        return self in (MachineType.CNC_MILL, MachineType.LATHE)


AXES = ("X", "Y", "Z")

AxisLimits = Dict[str, Tuple[float, float]]


@dataclass(frozen=True)
class MachineSpec:
    """Immutable physical limits of one machine."""

    axis_limits: AxisLimits = field(
        default_factory=lambda: {"X": (0.0, 762.0), "Y": (0.0, 406.0), "Z": (0.0, 508.0)}
    )
    spindle_power: float = 30.0  # HP
    max_rpm: float = 8100.0
    rapid_traverse: float = 1000.0  # ipm
    tool_capacity: int = 24
    max_tonnage: Optional[float] = None  # press brakes only
    max_laser_power: Optional[float] = None  # lasers only, W

    def lower(self, axis: str) -> float:
        return self.axis_limits[axis][0]

    def upper(self, axis: str) -> float:
        return self.axis_limits[axis][1]

    def midpoint(self, axis: str) -> float:
        low, high = self.axis_limits[axis]
        return (low + high) / 2

    def clamp(self, axis: str, value: float) -> float:
        """Clamp a position to the travel of an axis."""
        low, high = self.axis_limits[axis]
        return max(low, min(high, value))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "axisLimits": {axis: list(limits) for axis, limits in self.axis_limits.items()},
            "spindlePower": self.spindle_power,
            "maxRPM": self.max_rpm,
            "rapidTraverse": self.rapid_traverse,
            "toolCapacity": self.tool_capacity,
        }
        if self.max_tonnage is not None:
            data["maxTonnage"] = self.max_tonnage
        if self.max_laser_power is not None:
            data["maxLaserPower"] = self.max_laser_power
        return data


# =============================================================================
# Registry
# =============================================================================

DEFAULT_MAX_TONNAGE = 200.0
DEFAULT_MAX_LASER_POWER = 6000.0

# Defaults per machine type, applied before any model preset
TYPE_DEFAULTS: Dict[MachineType, Dict[str, Any]] = {
    MachineType.CNC_MILL: {},
    MachineType.LATHE: {},
    MachineType.PRESS_BRAKE: {"max_tonnage": DEFAULT_MAX_TONNAGE},
    MachineType.LASER: {"max_laser_power": DEFAULT_MAX_LASER_POWER},
}

MODEL_PRESETS: Dict[str, Dict[str, Any]] = {
    "VF-2": {
        "axis_limits": {"X": (0, 762), "Y": (0, 406), "Z": (0, 508)},
        "spindle_power": 30,
        "max_rpm": 8100,
        "rapid_traverse": 1000,
        "tool_capacity": 24,
    },
    "VF-4": {
        "axis_limits": {"X": (0, 1270), "Y": (0, 508), "Z": (0, 635)},
        "spindle_power": 30,
        "max_rpm": 8100,
        "rapid_traverse": 1000,
        "tool_capacity": 24,
    },
    "HMC": {
        "axis_limits": {"X": (0, 800), "Y": (0, 700), "Z": (0, 600)},
        "spindle_power": 40,
        "max_rpm": 12000,
        "rapid_traverse": 1200,
        "tool_capacity": 40,
    },
    "LATHE": {
        "axis_limits": {"X": (0, 300), "Y": (0, 200), "Z": (0, 500)},
        "spindle_power": 20,
        "max_rpm": 4000,
        "rapid_traverse": 800,
        "tool_capacity": 12,
    },
    "PRESS": {
        "axis_limits": {"X": (0, 100), "Y": (0, 2000), "Z": (0, 300)},
        "max_tonnage": 200,
    },
    "LASER": {
        "axis_limits": {"X": (0, 1500), "Y": (0, 3000), "Z": (0, 100)},
        "max_laser_power": 6000,
    },
}

SPEC_FIELDS = (
    "axis_limits",
    "spindle_power",
    "max_rpm",
    "rapid_traverse",
    "tool_capacity",
    "max_tonnage",
    "max_laser_power",
)


def _normalize_axis_limits(raw: Dict[str, Any]) -> AxisLimits:
    limits: AxisLimits = {}
    for axis in AXES:
        if axis not in raw:
            raise ValueError(f"Axis limits missing axis {axis}")
        low, high = raw[axis]
        low, high = float(low), float(high)
        if low > high:
            raise ValueError(f"Axis {axis} lower limit {low} exceeds upper limit {high}")
        limits[axis] = (low, high)
    return limits


def build_spec(
    machine_type: MachineType,
    model: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> MachineSpec:
    """Build a spec from type defaults, a model preset and explicit overrides.

    Later sources win. Ceilings that do not belong to the machine type are
    dropped so a mill never reports a tonnage limit.
    """
    values: Dict[str, Any] = dict(TYPE_DEFAULTS[machine_type])
    if model and model in MODEL_PRESETS:
        values.update(MODEL_PRESETS[model])

    for key, value in (overrides or {}).items():
        if key not in SPEC_FIELDS:
            raise ValueError(f"Unknown spec field: {key}")
        values[key] = value

    if machine_type != MachineType.PRESS_BRAKE:
        values.pop("max_tonnage", None)
    elif values.get("max_tonnage") is None:
        values["max_tonnage"] = DEFAULT_MAX_TONNAGE

    if machine_type != MachineType.LASER:
        values.pop("max_laser_power", None)
    elif values.get("max_laser_power") is None:
        values["max_laser_power"] = DEFAULT_MAX_LASER_POWER

    if "axis_limits" in values:
        values["axis_limits"] = _normalize_axis_limits(values["axis_limits"])
    for key in ("spindle_power", "max_rpm", "rapid_traverse", "max_tonnage", "max_laser_power"):
        if values.get(key) is not None:
            values[key] = float(values[key])
    if "tool_capacity" in values:
        values["tool_capacity"] = int(values["tool_capacity"])

    return MachineSpec(**values)
