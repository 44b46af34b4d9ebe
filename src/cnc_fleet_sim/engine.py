"""Machine simulation engine.

``MachineSimulator`` owns one ``MachineState`` and advances it by an elapsed
interval. Each call to ``advance`` runs, in order:

1. Power check: a powered-off machine is forced to STOPPED/IDLE and nothing
   else runs.
2. On-hours and phase-time accumulation.
3. Alarm hold: an active alarm freezes the cycle, spins the spindle down and
   may auto-clear with a small per-tick probability.
4. The cycle updater for the machine type (mill/lathe, press brake, laser).
5. Health sensor drift.
6. Alarm evaluation.
7. Warning recomputation.

Nothing in here raises for out-of-range telemetry; every value is clamped
to its documented range instead.
"""

import logging
from typing import Any, Callable, Dict, Optional

from .alarms import evaluate_alarms, evaluate_warnings
from .randomness import RandomSource
from .specs import AXES, MachineSpec, MachineType
from .state import (
    ALARM_HISTORY_LIMIT,
    AlarmRecord,
    CyclePhase,
    ExecutionMode,
    MachineState,
    create_machine_state,
    utc_now,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Transition table
# =============================================================================

# Per-tick probabilities
MILL_START_PROBABILITY = 0.05
PRESS_START_PROBABILITY = 0.05
LASER_START_PROBABILITY = 0.07
ALARM_AUTO_CLEAR_PROBABILITY = 0.02

# New mill/lathe cycle targets
CYCLE_TIME_RANGE = (20.0, 45.0)  # s
MIN_TARGET_RPM = 3000.0
TARGET_FEED_RANGE = (300.0, 1800.0)  # ipm

# Mill/lathe phases (rates are per second unless noted)
IDLE_SPINDLE_DECEL = 500.0
IDLE_FEED_DECEL = 500.0
IDLE_LOAD_DECAY = 5.0
IDLE_COOLANT_RECOVERY = 0.1  # % per tick
SPINDLE_RAMP_RATE = 350.0
SPINDLE_RAMP_LOAD_SCALE = 15.0
SPINDLE_RAMP_LOAD_CAP = 20.0
RAPID_LOAD_RANGE = (5.0, 10.0)
RAPID_DURATION = 3.0
CUTTING_FEED_RAMP = 200.0
CUTTING_Z_RATE = 1.0
Z_FLOOR_CLEARANCE = 5.0
CUTTING_SHARE_OF_CYCLE = 0.6
TOOL_WEAR_DIVISOR = 250000.0
MAX_TOOL_LIFE_LOSS = 0.02  # % per tick
SPINDLE_HOURS_MIN_RPM = 300.0
RETRACT_Z_RATE = 4.0
Z_SAFE_CLEARANCE = 10.0
RETRACT_LOAD_DECAY = 10.0
RETRACT_LOAD_FLOOR = 5.0
RETRACT_FEED_DECAY = 300.0
DWELL_DURATION = 2.0
DWELL_LOAD_DECAY = 5.0
FINISH_LOAD_FACTOR = 0.7

# Press brake
BEND_ANGLE_RANGE = (45.0, 135.0)
RAM_SPEED = 20.0  # % of stroke per second
PRESS_TONNAGE_SHARE = 0.8
PRESS_SERVO_SCALE = 80.0
BEND_DURATION = 5.0

# Laser
MIN_LASER_POWER = 2000.0
LASER_FEED_RANGE = (800.0, 3000.0)
CUT_SPEED_RAMP = 300.0
HEAD_JITTER = 5.0
RESONATOR_HEAT_RATE = 0.4  # C per tick at full power
RESONATOR_COOL_RATE = 0.05  # C per tick
RESONATOR_FLOOR = 26.0
RESONATOR_CEILING = 120.0
LASER_CUT_DURATION = 8.0

# Health sensors (per tick unless noted)
AMBIENT_TEMP_RANGE = (72.0, 120.0)
AMBIENT_HEAT_RATE = 0.3
AMBIENT_COOL_RATE = 0.2
SPINDLE_TEMP_RANGE = (25.0, 95.0)
SPINDLE_HEAT_RATE = 0.15
SPINDLE_COOL_RATE = 0.03
CURRENT_FLOOR = 7.0
CURRENT_LOAD_SCALE = 8.0
CURRENT_DECAY = 0.5
BATTERY_DRAIN = 0.0001  # V per second
BATTERY_FLOOR = 2.8
OIL_PRESSURE_RANGE = (45.0, 55.0)
OIL_LEVEL_DECAY = 0.001
OIL_LEVEL_FLOOR = 20.0
SERVO_TEMP_RANGE = (25.0, 65.0)
SERVO_HEAT_RATE = 0.1
SERVO_COOL_RATE = 0.05


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class MachineSimulator:
    """Advances one machine's state and applies commands to it."""

    def __init__(self, state: MachineState, rng: Optional[RandomSource] = None):
        self.state = state
        self.rng = rng or RandomSource()
        self._mill_phases: Dict[CyclePhase, Callable[[float], None]] = {
            CyclePhase.IDLE: self._phase_idle,
            CyclePhase.SPINDLE_RAMP: self._phase_spindle_ramp,
            CyclePhase.RAPID: self._phase_rapid,
            CyclePhase.CUTTING: self._phase_cutting,
            CyclePhase.RETRACT: self._phase_retract,
            CyclePhase.DWELL: self._phase_dwell,
            CyclePhase.FINISH: self._phase_finish,
        }

    @classmethod
    def create(
        cls,
        machine_id: str,
        name: str,
        model: str,
        machine_type: MachineType,
        spec: MachineSpec,
        rng: Optional[RandomSource] = None,
        material: Optional[str] = None,
        program_running: Optional[str] = None,
    ) -> "MachineSimulator":
        """Build a machine and its initial state from a spec."""
        rng = rng or RandomSource()
        state = create_machine_state(
            machine_id,
            name,
            model,
            machine_type,
            spec,
            rng,
            material=material,
            program_running=program_running,
        )
        return cls(state, rng)

    @property
    def machine_id(self) -> str:
        return self.state.machine_id

    # =========================================================================
    # Main update
    # =========================================================================

    def advance(self, dt_seconds: float) -> MachineState:
        """Advance the simulation by ``dt_seconds`` of elapsed time."""
        s = self.state
        if dt_seconds <= 0:
            logger.debug(f"{s.machine_id}: ignoring non-positive dt {dt_seconds}")
            return s

        s.timestamp = utc_now()

        if not s.power:
            s.execution = ExecutionMode.STOPPED
            s.cycle_phase = CyclePhase.IDLE
            s.spindle_speed = 0.0
            s.spindle_load = 0.0
            s.feed_rate = 0.0
            return s

        s.machine_on_hours += dt_seconds / 3600.0
        s.time_in_phase += dt_seconds

        if s.alarm_active:
            s.execution = ExecutionMode.ALARM
            s.cycle_phase = CyclePhase.IDLE
            s.spindle_speed = max(0.0, s.spindle_speed - IDLE_SPINDLE_DECEL * dt_seconds)
            s.feed_rate = 0.0
            if self.rng.chance(ALARM_AUTO_CLEAR_PROBABILITY):
                logger.info(f"{s.machine_id}: alarm '{s.alarm}' recovered")
                self._clear_alarm()
            return s

        if s.machine_type.has_tooling:
            self._mill_phases[s.cycle_phase](dt_seconds)
        elif s.machine_type == MachineType.PRESS_BRAKE:
            self._update_press_cycle(dt_seconds)
        elif s.machine_type == MachineType.LASER:
            self._update_laser_cycle(dt_seconds)

        self._enforce_limits()
        self._update_health(dt_seconds)

        rule = evaluate_alarms(s, self.rng)
        if rule is not None:
            self._set_alarm(rule.code, rule.message)

        s.warnings = evaluate_warnings(s)
        return s

    def _enter(self, phase: CyclePhase) -> None:
        self.state.cycle_phase = phase
        self.state.time_in_phase = 0.0

    def _complete_part(self) -> None:
        s = self.state
        s.part_count += 1
        s.total_cycles += 1
        if s.machine_on_hours > 0:
            s.production_rate = round(s.part_count / s.machine_on_hours)

    def _enforce_limits(self) -> None:
        s = self.state
        for axis in AXES:
            s.axis_positions[axis] = s.spec.clamp(axis, s.axis_positions[axis])
        s.spindle_load = _clamp(s.spindle_load, 0.0, 100.0)
        s.spindle_orientation %= 360.0
        mill = s.mill
        if mill is not None:
            mill.coolant.level = _clamp(mill.coolant.level, 0.0, 100.0)
            mill.tool_wear = _clamp(mill.tool_wear, 0.0, 1.0)

    # =========================================================================
    # Mill / lathe cycle
    # =========================================================================

    def _phase_idle(self, dt: float) -> None:
        s = self.state
        s.execution = ExecutionMode.IDLE
        s.spindle_speed = max(0.0, s.spindle_speed - IDLE_SPINDLE_DECEL * dt)
        s.feed_rate = max(0.0, s.feed_rate - IDLE_FEED_DECEL * dt)
        s.spindle_load = max(0.0, s.spindle_load - IDLE_LOAD_DECAY * dt)

        coolant = s.mill.coolant
        coolant.level = min(100.0, coolant.level + IDLE_COOLANT_RECOVERY)
        coolant.flow = 0.0

        if self.rng.chance(MILL_START_PROBABILITY):
            self._start_mill_cycle()

    def _start_mill_cycle(self) -> None:
        s = self.state
        self._enter(CyclePhase.SPINDLE_RAMP)
        s.execution = ExecutionMode.RUNNING
        s.cycle_time_target = self.rng.uniform(*CYCLE_TIME_RANGE)
        s.target_spindle_speed = self.rng.uniform(
            min(MIN_TARGET_RPM, s.spec.max_rpm), s.spec.max_rpm
        )
        s.target_feed = self.rng.uniform(*TARGET_FEED_RANGE)
        if not s.program_running:
            s.program_running = self.rng.program_number()
        logger.debug(
            f"{s.machine_id}: cycle start {s.program_running} "
            f"rpm={s.target_spindle_speed:.0f} feed={s.target_feed:.0f} "
            f"target={s.cycle_time_target:.1f}s"
        )

    def _phase_spindle_ramp(self, dt: float) -> None:
        s = self.state
        s.execution = ExecutionMode.RUNNING
        target = s.target_spindle_speed
        step = SPINDLE_RAMP_RATE * dt
        if s.spindle_speed < target:
            s.spindle_speed = min(target, s.spindle_speed + step)
        else:
            s.spindle_speed = max(target, s.spindle_speed - step)

        ratio = s.spindle_speed / target if target > 0 else 1.0
        s.spindle_load = min(SPINDLE_RAMP_LOAD_CAP, ratio * SPINDLE_RAMP_LOAD_SCALE)
        s.spindle_orientation = (s.spindle_orientation + s.spindle_speed * dt / 60.0) % 360.0

        if s.spindle_speed == target:
            self._enter(CyclePhase.RAPID)

    def _phase_rapid(self, dt: float) -> None:
        # G0 to a random point, Z held at safe height
        s = self.state
        spec = s.spec
        s.execution = ExecutionMode.RUNNING
        s.axis_positions["X"] = self.rng.uniform(spec.lower("X"), spec.upper("X"))
        s.axis_positions["Y"] = self.rng.uniform(spec.lower("Y"), spec.upper("Y"))
        s.axis_positions["Z"] = spec.upper("Z")
        s.rapid_rate = spec.rapid_traverse
        s.feed_rate = 0.0
        s.spindle_load = self.rng.uniform(*RAPID_LOAD_RANGE)

        if s.time_in_phase >= RAPID_DURATION:
            s.rapid_rate = 0.0
            self._enter(CyclePhase.CUTTING)

    def _phase_cutting(self, dt: float) -> None:
        s = self.state
        mill = s.mill
        spec = s.spec
        s.execution = ExecutionMode.RUNNING

        if s.feed_rate < s.target_feed:
            s.feed_rate = min(s.target_feed, s.feed_rate + CUTTING_FEED_RAMP * dt)

        feed_ratio = s.feed_rate / max(s.target_feed, 1.0)
        s.axis_positions["Z"] = max(
            spec.lower("Z") + Z_FLOOR_CLEARANCE,
            s.axis_positions["Z"] - CUTTING_Z_RATE * dt * feed_ratio,
        )

        base_load = (s.feed_rate / 1800.0) * 35.0
        wear_load = mill.tool_wear * 50.0
        vibration_load = s.vibration * 8.0
        noise = self.rng.uniform(-2.0, 2.5)
        s.spindle_load = _clamp(base_load + wear_load + vibration_load + noise, 0.0, 100.0)

        mill.tool_wear = min(1.0, mill.tool_wear + s.spindle_load / TOOL_WEAR_DIVISOR)
        s.vibration = mill.tool_wear * 3.0 + self.rng.uniform(0.0, 0.4)

        if s.spindle_speed > SPINDLE_HOURS_MIN_RPM:
            s.spindle_hours += dt / 3600.0

        tool = mill.active_tool
        if tool is not None:
            tool.wear(self.rng.uniform(0.0, MAX_TOOL_LIFE_LOSS))
            tool.in_use = True
            tool.total_cuts += 1

        coolant = mill.coolant
        coolant.level = max(0.0, coolant.level - self.rng.uniform(0.0, 0.08))
        coolant.pressure = self.rng.uniform(45.0, 60.0)
        coolant.temperature = self.rng.uniform(72.0, 87.0)
        coolant.flow = self.rng.uniform(5.0, 8.0)

        s.servo_load["X"] = self.rng.uniform(20.0, 50.0)
        s.servo_load["Y"] = self.rng.uniform(20.0, 50.0)
        s.servo_load["Z"] = 30.0 + s.spindle_load * 0.5

        s.servo_following_error["X"] = self.rng.uniform(0.0, 0.002)
        s.servo_following_error["Y"] = self.rng.uniform(0.0, 0.002)
        s.servo_following_error["Z"] = self.rng.uniform(0.0, 0.003)

        if s.time_in_phase >= s.cycle_time_target * CUTTING_SHARE_OF_CYCLE:
            self._enter(CyclePhase.RETRACT)

    def _phase_retract(self, dt: float) -> None:
        s = self.state
        s.execution = ExecutionMode.RUNNING
        ceiling = s.spec.upper("Z") - Z_SAFE_CLEARANCE

        s.axis_positions["Z"] += RETRACT_Z_RATE * dt
        s.spindle_load = max(RETRACT_LOAD_FLOOR, s.spindle_load - RETRACT_LOAD_DECAY * dt)
        s.feed_rate = max(0.0, s.feed_rate - RETRACT_FEED_DECAY * dt)

        if s.axis_positions["Z"] >= ceiling:
            s.axis_positions["Z"] = ceiling
            self._enter(CyclePhase.DWELL)

    def _phase_dwell(self, dt: float) -> None:
        s = self.state
        s.execution = ExecutionMode.RUNNING
        s.feed_rate = 0.0
        s.spindle_load = max(0.0, s.spindle_load - DWELL_LOAD_DECAY * dt)

        if s.time_in_phase >= DWELL_DURATION:
            self._enter(CyclePhase.FINISH)

    def _phase_finish(self, dt: float) -> None:
        s = self.state
        s.execution = ExecutionMode.RUNNING
        self._complete_part()
        s.spindle_load *= FINISH_LOAD_FACTOR
        s.feed_rate = 0.0

        tool = s.active_tool
        if tool is not None:
            tool.in_use = False

        logger.debug(f"{s.machine_id}: part {s.part_count} complete")
        self._enter(CyclePhase.IDLE)

    # =========================================================================
    # Press brake cycle
    # =========================================================================

    def _update_press_cycle(self, dt: float) -> None:
        s = self.state
        press = s.press

        if s.cycle_phase == CyclePhase.IDLE and self.rng.chance(PRESS_START_PROBABILITY):
            self._enter(CyclePhase.RUNNING)
            s.execution = ExecutionMode.RUNNING
            press.bend_angle = self.rng.uniform(*BEND_ANGLE_RANGE)
            press.back_gauge = self.rng.uniform(s.spec.lower("X"), s.spec.upper("X"))

        if s.cycle_phase == CyclePhase.RUNNING:
            s.execution = ExecutionMode.RUNNING
            press.ram_position = min(100.0, press.ram_position + RAM_SPEED * dt)
            press.tonnage = (press.ram_position / 100.0) * press.max_tonnage * PRESS_TONNAGE_SHARE
            ratio = press.tonnage / press.max_tonnage if press.max_tonnage > 0 else 0.0
            s.spindle_load = ratio * 100.0
            s.servo_load["Y"] = ratio * PRESS_SERVO_SCALE

            if s.time_in_phase >= BEND_DURATION:
                self._complete_part()
                press.ram_position = 0.0
                press.tonnage = 0.0
                self._enter(CyclePhase.IDLE)
                s.execution = ExecutionMode.IDLE
        else:
            s.execution = ExecutionMode.IDLE
            s.spindle_load = 0.0
            press.tonnage = 0.0

    # =========================================================================
    # Laser cycle
    # =========================================================================

    def _update_laser_cycle(self, dt: float) -> None:
        s = self.state
        laser = s.laser

        if s.cycle_phase == CyclePhase.IDLE and self.rng.chance(LASER_START_PROBABILITY):
            self._enter(CyclePhase.RUNNING)
            s.execution = ExecutionMode.RUNNING
            laser.laser_power = self.rng.uniform(
                MIN_LASER_POWER, max(MIN_LASER_POWER, laser.max_laser_power)
            )
            s.target_feed = self.rng.uniform(*LASER_FEED_RANGE)

        if s.cycle_phase == CyclePhase.RUNNING:
            s.execution = ExecutionMode.RUNNING
            ratio = laser.laser_power / laser.max_laser_power if laser.max_laser_power > 0 else 0.0
            s.spindle_load = ratio * 100.0

            if laser.cut_speed < s.target_feed:
                laser.cut_speed = min(s.target_feed, laser.cut_speed + CUT_SPEED_RAMP * dt)
            s.feed_rate = laser.cut_speed

            s.axis_positions["X"] += self.rng.uniform(-HEAD_JITTER, HEAD_JITTER)
            s.axis_positions["Y"] += self.rng.uniform(-HEAD_JITTER, HEAD_JITTER)

            laser.resonator_temp = min(
                RESONATOR_CEILING, laser.resonator_temp + ratio * RESONATOR_HEAT_RATE
            )

            if s.time_in_phase >= LASER_CUT_DURATION:
                self._complete_part()
                self._enter(CyclePhase.IDLE)
                s.execution = ExecutionMode.IDLE
                laser.cut_speed = 0.0
                s.feed_rate = 0.0
        else:
            s.execution = ExecutionMode.IDLE
            s.spindle_load = 0.0
            laser.cut_speed = 0.0
            s.feed_rate = 0.0
            laser.resonator_temp = max(RESONATOR_FLOOR, laser.resonator_temp - RESONATOR_COOL_RATE)

    # =========================================================================
    # Health sensors
    # =========================================================================

    def _update_health(self, dt: float) -> None:
        s = self.state
        load_ratio = s.spindle_load / 100.0
        running = s.execution == ExecutionMode.RUNNING

        if running:
            s.temperature = min(AMBIENT_TEMP_RANGE[1], s.temperature + load_ratio * AMBIENT_HEAT_RATE)
            s.spindle_temp = min(SPINDLE_TEMP_RANGE[1], s.spindle_temp + load_ratio * SPINDLE_HEAT_RATE)
            s.current_amps = CURRENT_FLOOR + load_ratio * CURRENT_LOAD_SCALE
        else:
            s.temperature = max(AMBIENT_TEMP_RANGE[0], s.temperature - AMBIENT_COOL_RATE)
            s.spindle_temp = max(SPINDLE_TEMP_RANGE[0], s.spindle_temp - SPINDLE_COOL_RATE)
            s.current_amps = max(CURRENT_FLOOR, s.current_amps - CURRENT_DECAY)

        s.battery_voltage = max(BATTERY_FLOOR, s.battery_voltage - BATTERY_DRAIN * dt)

        s.oil_pressure = self.rng.uniform(*OIL_PRESSURE_RANGE)
        s.oil_level = _clamp(s.oil_level - OIL_LEVEL_DECAY, OIL_LEVEL_FLOOR, 100.0)

        for axis in AXES:
            if running:
                s.servo_temp[axis] = min(SERVO_TEMP_RANGE[1], s.servo_temp[axis] + SERVO_HEAT_RATE)
            else:
                s.servo_temp[axis] = max(SERVO_TEMP_RANGE[0], s.servo_temp[axis] - SERVO_COOL_RATE)

    # =========================================================================
    # Alarms
    # =========================================================================

    def _set_alarm(self, code: Any, message: str) -> None:
        s = self.state
        s.alarm_history.append(
            AlarmRecord(
                code=code,
                message=message,
                timestamp=utc_now(),
                cycle_phase=s.cycle_phase,
                spindle_load=s.spindle_load,
            )
        )
        if len(s.alarm_history) > ALARM_HISTORY_LIMIT:
            del s.alarm_history[:-ALARM_HISTORY_LIMIT]

        s.alarm = message
        s.alarm_code = code
        if s.power:
            s.execution = ExecutionMode.ALARM
            s.cycle_phase = CyclePhase.IDLE

        tool = s.active_tool
        if tool is not None:
            tool.in_use = False

        logger.info(f"{s.machine_id}: alarm {code if code is not None else '-'} {message}")

    def _clear_alarm(self) -> bool:
        s = self.state
        if not s.alarm_active:
            return False

        if s.alarm_history:
            s.alarm_history[-1].cleared = True
        s.alarm = None
        s.alarm_code = None
        s.execution = ExecutionMode.IDLE if s.power else ExecutionMode.STOPPED
        self._enter(CyclePhase.IDLE)
        return True

    # =========================================================================
    # Commands
    # =========================================================================

    def set_power(self, on: bool) -> None:
        """Switch the machine on or off.

        Switching off stops the machine at once; spindle and feed are zeroed
        on the next ``advance``.
        """
        s = self.state
        s.power = on
        if on:
            s.execution = ExecutionMode.ALARM if s.alarm_active else ExecutionMode.IDLE
        else:
            s.execution = ExecutionMode.STOPPED
            self._enter(CyclePhase.IDLE)
            tool = s.active_tool
            if tool is not None:
                tool.in_use = False
        logger.info(f"{s.machine_id}: power {'on' if on else 'off'}")

    def inject_alarm(self, code: Any, message: str) -> None:
        """Raise an alarm exactly as the automatic evaluator would."""
        self._set_alarm(code, message)

    def clear_alarm(self) -> bool:
        """Clear the active alarm. Returns False when none was active."""
        cleared = self._clear_alarm()
        if cleared:
            logger.info(f"{self.state.machine_id}: alarm cleared")
        return cleared
