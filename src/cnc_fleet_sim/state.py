"""Runtime state of a simulated machine.

A ``MachineState`` carries the fields every machine has, plus exactly one
type-specific payload selected by the machine type:

- ``MillPayload``  (CNC_MILL, LATHE): tool magazine, tool wear, coolant
- ``PressPayload`` (PRESS_BRAKE): tonnage, ram, back gauge, bend angle
- ``LaserPayload`` (LASER): laser power, assist gas, resonator, cut speed
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .randomness import RandomSource
from .specs import AXES, MachineSpec, MachineType
from .tools import Tool, create_tool_inventory

ALARM_HISTORY_LIMIT = 20


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_z(value: datetime) -> str:
    """ISO 8601 with a trailing Z, the format dashboards expect."""
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ExecutionMode(Enum):
    """Coarse machine status shown on dashboards."""

    IDLE = "IDLE"
    RUNNING = "RUNNING"
    ALARM = "ALARM"
    STOPPED = "STOPPED"


class CyclePhase(Enum):
    """Cycle phases.

    Mills and lathes walk IDLE -> SPINDLE_RAMP -> RAPID -> CUTTING ->
    RETRACT -> DWELL -> FINISH -> IDLE. Press brakes and lasers only use
    IDLE and RUNNING.
    """

    IDLE = "IDLE"
    SPINDLE_RAMP = "SPINDLE_RAMP"
    RAPID = "RAPID"
    CUTTING = "CUTTING"
    RETRACT = "RETRACT"
    DWELL = "DWELL"
    FINISH = "FINISH"
    RUNNING = "RUNNING"


@dataclass
class AlarmRecord:
    """One entry of the alarm history."""

    code: Any
    message: str
    timestamp: datetime
    cycle_phase: CyclePhase
    spindle_load: float
    cleared: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "timestamp": isoformat_z(self.timestamp),
            "cyclePhase": self.cycle_phase.value,
            "spindleLoad": round(self.spindle_load, 1),
            "cleared": self.cleared,
        }


@dataclass
class MachineWarning:
    """Non-blocking threshold warning, recomputed every tick."""

    type: str
    severity: str  # "warning" or "caution"
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "severity": self.severity, "message": self.message}


# =============================================================================
# Type-specific payloads
# =============================================================================


@dataclass
class Coolant:
    level: float = 100.0  # %
    pressure: float = 50.0  # PSI
    temperature: float = 72.0  # F
    flow: float = 0.0  # GPM

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": round(self.level, 1),
            "pressure": round(self.pressure, 1),
            "temperature": round(self.temperature, 1),
            "flow": round(self.flow, 1),
        }


@dataclass
class MillPayload:
    tools: List[Tool] = field(default_factory=list)
    current_tool: int = 1
    tool_wear: float = 0.0  # 0..1
    coolant: Coolant = field(default_factory=Coolant)

    @property
    def active_tool(self) -> Optional[Tool]:
        if 1 <= self.current_tool <= len(self.tools):
            return self.tools[self.current_tool - 1]
        return None


@dataclass
class PressPayload:
    max_tonnage: float
    tonnage: float = 0.0
    ram_position: float = 0.0  # % of stroke
    back_gauge: float = 0.0
    bend_angle: float = 0.0


@dataclass
class LaserPayload:
    max_laser_power: float
    laser_power: float = 0.0  # W
    gas_pressure: float = 240.0  # PSI
    resonator_temp: float = 26.0  # C
    cut_speed: float = 0.0


Payload = Union[MillPayload, PressPayload, LaserPayload]


def _axis_map(value: float) -> Dict[str, float]:
    return {axis: value for axis in AXES}


@dataclass
class MachineState:
    """Mutable state of one machine."""

    machine_id: str
    name: str
    model: str
    machine_type: MachineType
    spec: MachineSpec
    payload: Payload

    # Core state
    power: bool = True
    execution: ExecutionMode = ExecutionMode.IDLE
    cycle_phase: CyclePhase = CyclePhase.IDLE
    time_in_phase: float = 0.0
    cycle_time_target: float = 30.0

    # Alarms
    alarm: Optional[str] = None
    alarm_code: Any = None  # int for built-in alarms, as sent for injected ones
    alarm_history: List[AlarmRecord] = field(default_factory=list)
    warnings: List[MachineWarning] = field(default_factory=list)

    # Spindle
    spindle_speed: float = 0.0
    target_spindle_speed: float = 0.0
    spindle_load: float = 0.0
    spindle_temp: float = 25.0
    spindle_hours: float = 0.0
    spindle_orientation: float = 0.0

    # Feed and motion
    feed_rate: float = 0.0
    target_feed: float = 0.0
    rapid_rate: float = 0.0
    axis_positions: Dict[str, float] = field(default_factory=lambda: _axis_map(0.0))

    # Servos
    servo_load: Dict[str, float] = field(default_factory=lambda: _axis_map(0.0))
    servo_following_error: Dict[str, float] = field(default_factory=lambda: _axis_map(0.0))
    servo_temp: Dict[str, float] = field(default_factory=lambda: _axis_map(25.0))

    # Production
    part_count: int = 0
    total_cycles: int = 0
    machine_on_hours: float = 0.0
    production_rate: int = 0  # parts/hour

    # Health
    battery_voltage: float = 3.6
    temperature: float = 72.0
    vibration: float = 0.0
    current_amps: float = 7.0
    oil_pressure: float = 50.0
    oil_level: float = 100.0

    material: Optional[str] = None
    program_running: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def alarm_active(self) -> bool:
        return self.alarm is not None

    @property
    def mill(self) -> Optional[MillPayload]:
        return self.payload if isinstance(self.payload, MillPayload) else None

    @property
    def press(self) -> Optional[PressPayload]:
        return self.payload if isinstance(self.payload, PressPayload) else None

    @property
    def laser(self) -> Optional[LaserPayload]:
        return self.payload if isinstance(self.payload, LaserPayload) else None

    @property
    def active_tool(self) -> Optional[Tool]:
        mill = self.mill
        return mill.active_tool if mill else None


def create_payload(machine_type: MachineType, spec: MachineSpec, rng: RandomSource) -> Payload:
    """Build the payload variant that belongs to a machine type."""
    if machine_type.has_tooling:
        return MillPayload(tools=create_tool_inventory(spec.tool_capacity, rng))
    if machine_type == MachineType.PRESS_BRAKE:
        return PressPayload(max_tonnage=spec.max_tonnage)
    if machine_type == MachineType.LASER:
        return LaserPayload(max_laser_power=spec.max_laser_power)
    raise ValueError(f"Unsupported machine type: {machine_type}")


def create_machine_state(
    machine_id: str,
    name: str,
    model: str,
    machine_type: MachineType,
    spec: MachineSpec,
    rng: RandomSource,
    material: Optional[str] = None,
    program_running: Optional[str] = None,
) -> MachineState:
    """Create a powered-on, idle machine parked at mid-travel with Z at safe height."""
    state = MachineState(
        machine_id=machine_id,
        name=name,
        model=model,
        machine_type=machine_type,
        spec=spec,
        payload=create_payload(machine_type, spec, rng),
        cycle_time_target=rng.uniform(20, 45),
        material=material,
        program_running=program_running,
    )
    state.axis_positions = {
        "X": spec.midpoint("X"),
        "Y": spec.midpoint("Y"),
        "Z": spec.upper("Z"),
    }
    return state
