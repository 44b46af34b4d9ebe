"""Alarm and warning rules.

Alarms are evaluated in table order and the first rule whose condition holds
*and* whose per-tick draw succeeds wins; at most one alarm is raised per tick.
Codes follow the Haas numbering where a real code exists (103-105 following
error, 115 coolant pump, 200 spindle over temp, 9100 low battery); the rest
carry no code.

Warnings are not alarms: they never stop a cycle and the list is rebuilt
from scratch on every tick.
"""

from dataclasses import dataclass
from typing import Callable, FrozenSet, List, Optional, Tuple

from .randomness import RandomSource
from .specs import MachineType
from .state import MachineState, MachineWarning

Condition = Callable[[MachineState], bool]

TOOLED_TYPES = frozenset({MachineType.CNC_MILL, MachineType.LATHE})
PRESS_TYPES = frozenset({MachineType.PRESS_BRAKE})
LASER_TYPES = frozenset({MachineType.LASER})

# Alarm thresholds
FOLLOWING_ERROR_LIMIT = 0.005
LOW_BATTERY_VOLTS = 3.0
COOLANT_FAULT_LEVEL = 10.0
SPINDLE_OVERLOAD_PCT = 95.0
SPINDLE_OVER_TEMP_C = 85.0
TOOL_LIFE_EXPIRED_PCT = 5.0
HIGH_VIBRATION = 5.0
OVER_TONNAGE_RATIO = 0.9
LASER_FAULT_LOAD_PCT = 95.0
RESONATOR_OVERHEAT_C = 85.0

# Warning thresholds
BATTERY_WARNING_VOLTS = 3.2
COOLANT_WARNING_LEVEL = 20.0
TOOL_WEAR_WARNING_PCT = 15.0
HIGH_TEMP_WARNING_C = 75.0
HIGH_LOAD_WARNING_PCT = 85.0


@dataclass(frozen=True)
class AlarmRule:
    code: Optional[int]
    message: str
    probability: float
    machine_types: FrozenSet[MachineType]
    condition: Condition


def _following_error(axis: str) -> Condition:
    return lambda s: s.servo_following_error[axis] > FOLLOWING_ERROR_LIMIT


def _coolant_below(level: float) -> Condition:
    return lambda s: s.mill is not None and s.mill.coolant.level < level


def _tool_life_below(pct: float) -> Condition:
    return lambda s: s.active_tool is not None and s.active_tool.current_life < pct


ALARM_RULES: Tuple[AlarmRule, ...] = (
    AlarmRule(103, "X AXIS FOLLOWING ERROR", 0.02, TOOLED_TYPES, _following_error("X")),
    AlarmRule(104, "Y AXIS FOLLOWING ERROR", 0.02, TOOLED_TYPES, _following_error("Y")),
    AlarmRule(105, "Z AXIS FOLLOWING ERROR", 0.02, TOOLED_TYPES, _following_error("Z")),
    AlarmRule(
        9100, "LOW BATTERY", 0.05, TOOLED_TYPES, lambda s: s.battery_voltage < LOW_BATTERY_VOLTS
    ),
    AlarmRule(115, "COOLANT PUMP FAULT", 0.10, TOOLED_TYPES, _coolant_below(COOLANT_FAULT_LEVEL)),
    AlarmRule(
        None, "SPINDLE_OVERLOAD", 0.05, TOOLED_TYPES, lambda s: s.spindle_load > SPINDLE_OVERLOAD_PCT
    ),
    AlarmRule(
        200, "SPINDLE OVER TEMP", 0.08, TOOLED_TYPES, lambda s: s.spindle_temp > SPINDLE_OVER_TEMP_C
    ),
    AlarmRule(None, "TOOL_LIFE_EXPIRED", 0.15, TOOLED_TYPES, _tool_life_below(TOOL_LIFE_EXPIRED_PCT)),
    AlarmRule(None, "HIGH_VIBRATION", 0.08, TOOLED_TYPES, lambda s: s.vibration > HIGH_VIBRATION),
    AlarmRule(
        None,
        "OVER_TONNAGE",
        0.10,
        PRESS_TYPES,
        lambda s: s.press is not None
        and s.press.tonnage > s.press.max_tonnage * OVER_TONNAGE_RATIO,
    ),
    AlarmRule(
        None, "LASER_POWER_FAULT", 0.10, LASER_TYPES, lambda s: s.spindle_load > LASER_FAULT_LOAD_PCT
    ),
    AlarmRule(
        None,
        "RESONATOR_OVERHEAT",
        0.08,
        LASER_TYPES,
        lambda s: s.laser is not None and s.laser.resonator_temp > RESONATOR_OVERHEAT_C,
    ),
)


def evaluate_alarms(state: MachineState, rng: RandomSource) -> Optional[AlarmRule]:
    """Return the first rule that fires this tick, if any.

    The draw is only taken for rules whose condition holds.
    """
    for rule in ALARM_RULES:
        if state.machine_type not in rule.machine_types:
            continue
        if rule.condition(state) and rng.chance(rule.probability):
            return rule
    return None


# =============================================================================
# Warnings
# =============================================================================


@dataclass(frozen=True)
class WarningRule:
    type: str
    severity: str
    message: str  # may reference {tool}
    condition: Condition


WARNING_RULES: Tuple[WarningRule, ...] = (
    WarningRule(
        "BATTERY_LOW",
        "warning",
        "Battery voltage low",
        lambda s: s.battery_voltage < BATTERY_WARNING_VOLTS,
    ),
    WarningRule(
        "COOLANT_LOW",
        "warning",
        "Coolant level below 20%",
        _coolant_below(COOLANT_WARNING_LEVEL),
    ),
    WarningRule(
        "TOOL_WEAR",
        "warning",
        "Tool {tool} life below 15%",
        _tool_life_below(TOOL_WEAR_WARNING_PCT),
    ),
    WarningRule(
        "HIGH_TEMP",
        "warning",
        "Spindle temperature elevated",
        lambda s: s.spindle_temp > HIGH_TEMP_WARNING_C,
    ),
    WarningRule(
        "HIGH_LOAD",
        "caution",
        "Spindle load above 85%",
        lambda s: s.spindle_load > HIGH_LOAD_WARNING_PCT,
    ),
)


def evaluate_warnings(state: MachineState) -> List[MachineWarning]:
    """Build the current warning list from thresholds alone."""
    tool = state.mill.current_tool if state.mill else None
    return [
        MachineWarning(rule.type, rule.severity, rule.message.format(tool=tool))
        for rule in WARNING_RULES
        if rule.condition(state)
    ]
