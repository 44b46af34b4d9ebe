"""Tests for the machine simulation engine."""

import pytest

from cnc_fleet_sim.engine import MILL_START_PROBABILITY, MachineSimulator
from cnc_fleet_sim.randomness import RandomSource
from cnc_fleet_sim.specs import AXES, MachineType, build_spec
from cnc_fleet_sim.state import ALARM_HISTORY_LIMIT, CyclePhase, ExecutionMode

from conftest import ScriptedRandom, make_machine


def run_until(sim: MachineSimulator, predicate, dt=1.0, max_ticks=500):
    """Advance until predicate(state) holds; return the phases seen after each tick."""
    phases = [sim.state.cycle_phase]
    for _ in range(max_ticks):
        sim.advance(dt)
        phases.append(sim.state.cycle_phase)
        if predicate(sim.state):
            return phases
    pytest.fail("condition never reached")


def collapse(phases):
    result = []
    for phase in phases:
        if not result or result[-1] != phase:
            result.append(phase)
    return result


class TestInitialState:
    """Tests for a freshly built machine."""

    def test_starts_powered_and_idle(self, mill):
        s = mill.state

        assert s.power is True
        assert s.execution == ExecutionMode.IDLE
        assert s.cycle_phase == CyclePhase.IDLE
        assert s.alarm is None
        assert s.part_count == 0

    def test_parked_at_mid_travel_with_z_up(self, mill):
        s = mill.state

        assert s.axis_positions["X"] == s.spec.midpoint("X")
        assert s.axis_positions["Y"] == s.spec.midpoint("Y")
        assert s.axis_positions["Z"] == s.spec.upper("Z")

    def test_health_defaults(self, mill):
        s = mill.state

        assert s.battery_voltage == 3.6
        assert s.oil_level == 100.0
        assert s.mill.coolant.level == 100.0
        assert len(s.mill.tools) == s.spec.tool_capacity

    @pytest.mark.parametrize("machine_type", list(MachineType))
    def test_payload_matches_type(self, machine_type):
        s = make_machine(machine_type).state

        assert (s.mill is not None) == machine_type.has_tooling
        assert (s.press is not None) == (machine_type == MachineType.PRESS_BRAKE)
        assert (s.laser is not None) == (machine_type == MachineType.LASER)


class TestMillCycle:
    """Tests for the mill/lathe phase sequence."""

    def test_full_cycle_phase_order(self, eager_rng):
        sim = make_machine(MachineType.CNC_MILL, eager_rng)

        phases = run_until(sim, lambda s: s.part_count == 1)

        assert collapse(phases) == [
            CyclePhase.IDLE,
            CyclePhase.SPINDLE_RAMP,
            CyclePhase.RAPID,
            CyclePhase.CUTTING,
            CyclePhase.RETRACT,
            CyclePhase.DWELL,
            CyclePhase.FINISH,
            CyclePhase.IDLE,
        ]
        assert sim.state.total_cycles == 1
        assert sim.state.alarm is None

    def test_lathe_runs_the_same_cycle(self, eager_rng):
        sim = make_machine(MachineType.LATHE, eager_rng)

        run_until(sim, lambda s: s.part_count == 1)

        assert sim.state.cycle_phase == CyclePhase.IDLE

    def test_one_part_per_cycle(self, eager_rng):
        sim = make_machine(MachineType.CNC_MILL, eager_rng)

        run_until(sim, lambda s: s.part_count == 3, max_ticks=1000)

        assert sim.state.part_count == 3
        assert sim.state.production_rate > 0

    def test_cycle_start_sets_targets(self):
        rng = ScriptedRandom(chance_result=lambda p: p == MILL_START_PROBABILITY)
        sim = make_machine(MachineType.CNC_MILL, rng)
        sim.state.program_running = None

        sim.advance(1.0)

        s = sim.state
        assert s.cycle_phase == CyclePhase.SPINDLE_RAMP
        assert s.execution == ExecutionMode.RUNNING
        assert s.target_spindle_speed == 3000 + 0.5 * (8100 - 3000)
        assert s.target_feed == 300 + 0.5 * 1500
        assert 20 <= s.cycle_time_target <= 45
        assert s.program_running.startswith("O")
        assert len(s.program_running) == 5

    def test_target_speed_within_slow_spindle(self):
        rng = ScriptedRandom(chance_result=lambda p: p == MILL_START_PROBABILITY, fraction=1.0)
        spec = build_spec(MachineType.LATHE, "LATHE", {"max_rpm": 2000})
        sim = MachineSimulator.create("slow", "Slow Lathe", "LATHE", MachineType.LATHE, spec, rng=rng)

        sim.advance(1.0)

        assert sim.state.cycle_phase == CyclePhase.SPINDLE_RAMP
        assert sim.state.target_spindle_speed == 2000

    def test_idle_without_start_stays_idle(self, mill):
        for _ in range(10):
            mill.advance(1.0)

        assert mill.state.cycle_phase == CyclePhase.IDLE
        assert mill.state.execution == ExecutionMode.IDLE

    def test_spindle_ramp_never_overshoots(self, eager_rng):
        sim = make_machine(MachineType.CNC_MILL, eager_rng)
        sim.advance(1.0)  # enters SPINDLE_RAMP
        target = sim.state.target_spindle_speed

        while sim.state.cycle_phase == CyclePhase.SPINDLE_RAMP:
            sim.advance(1.0)
            assert sim.state.spindle_speed <= target

        assert sim.state.spindle_speed == target

    def test_ramp_down_from_above_target(self, eager_rng):
        sim = make_machine(MachineType.CNC_MILL, eager_rng)
        s = sim.state
        s.cycle_phase = CyclePhase.SPINDLE_RAMP
        s.target_spindle_speed = 3000.0
        s.spindle_speed = 3500.0

        sim.advance(1.0)
        assert s.spindle_speed == 3150.0
        sim.advance(1.0)

        assert s.spindle_speed == 3000.0
        assert s.cycle_phase == CyclePhase.RAPID

    def test_cutting_wears_active_tool_only(self, eager_rng):
        sim = make_machine(MachineType.CNC_MILL, eager_rng)
        lives = [t.current_life for t in sim.state.mill.tools]

        run_until(sim, lambda s: s.cycle_phase == CyclePhase.RETRACT)

        tools = sim.state.mill.tools
        assert tools[0].current_life < lives[0]
        assert tools[0].total_cuts > 0
        assert [t.current_life for t in tools[1:]] == lives[1:]
        assert sim.state.mill.tool_wear > 0

    def test_rapid_rate_zeroed_after_rapid(self, eager_rng):
        sim = make_machine(MachineType.CNC_MILL, eager_rng)

        run_until(sim, lambda s: s.cycle_phase == CyclePhase.RAPID)
        sim.advance(1.0)
        assert sim.state.rapid_rate == sim.state.spec.rapid_traverse

        run_until(sim, lambda s: s.cycle_phase == CyclePhase.CUTTING)
        assert sim.state.rapid_rate == 0.0


class TestPressAndLaser:
    """Tests for the press brake and laser cycles."""

    def test_press_bend_completes(self, eager_rng):
        sim = make_machine(MachineType.PRESS_BRAKE, eager_rng)

        sim.advance(1.0)
        press = sim.state.press
        assert sim.state.cycle_phase == CyclePhase.RUNNING
        assert press.ram_position == 20.0
        assert 45 <= press.bend_angle <= 135
        assert 0 <= press.back_gauge <= sim.state.spec.upper("X")

        for _ in range(5):
            sim.advance(1.0)

        assert sim.state.part_count == 1
        assert sim.state.cycle_phase == CyclePhase.IDLE
        assert press.ram_position == 0.0
        assert press.tonnage == 0.0

    def test_press_tonnage_tracks_ram(self, eager_rng):
        sim = make_machine(MachineType.PRESS_BRAKE, eager_rng)

        for _ in range(3):
            sim.advance(1.0)

        press = sim.state.press
        assert press.ram_position == 60.0
        assert press.tonnage == pytest.approx(0.6 * 200 * 0.8)
        assert sim.state.spindle_load == pytest.approx(48.0)

    def test_press_idle_holds_no_tonnage(self, quiet_rng):
        sim = make_machine(MachineType.PRESS_BRAKE, quiet_rng)

        sim.advance(1.0)

        assert sim.state.execution == ExecutionMode.IDLE
        assert sim.state.press.tonnage == 0.0

    def test_laser_cut_completes(self, eager_rng):
        sim = make_machine(MachineType.LASER, eager_rng)

        sim.advance(1.0)
        laser = sim.state.laser
        assert sim.state.cycle_phase == CyclePhase.RUNNING
        assert laser.laser_power == 2000 + 0.5 * 4000
        assert laser.resonator_temp > 26.0

        for _ in range(8):
            sim.advance(1.0)

        assert sim.state.part_count == 1
        assert sim.state.cycle_phase == CyclePhase.IDLE
        assert laser.cut_speed == 0.0

    def test_laser_resonator_cools_when_idle(self, quiet_rng):
        sim = make_machine(MachineType.LASER, quiet_rng)
        sim.state.laser.resonator_temp = 40.0

        sim.advance(1.0)

        assert sim.state.laser.resonator_temp == pytest.approx(39.95)


class TestHealth:
    """Tests for health sensor drift."""

    def test_idle_cools_toward_floor(self, mill):
        s = mill.state
        s.temperature = 80.0
        s.spindle_temp = 30.0
        s.current_amps = 10.0

        mill.advance(1.0)

        assert s.temperature == pytest.approx(79.8)
        assert s.spindle_temp == pytest.approx(29.97)
        assert s.current_amps == pytest.approx(9.5)

    def test_battery_drains_slowly(self, mill):
        mill.advance(100.0)

        assert mill.state.battery_voltage == pytest.approx(3.59)

    def test_oil_pressure_band(self, mill):
        mill.advance(1.0)

        assert 45 <= mill.state.oil_pressure <= 55


class TestPower:
    """Tests for power control."""

    @pytest.mark.parametrize("machine_type", list(MachineType))
    def test_power_off_stops_on_next_tick(self, machine_type):
        sim = make_machine(machine_type, ScriptedRandom(chance_result=True))
        for _ in range(8):
            sim.advance(1.0)

        sim.set_power(False)
        sim.advance(1.0)

        s = sim.state
        assert s.execution == ExecutionMode.STOPPED
        assert s.cycle_phase == CyclePhase.IDLE
        assert s.spindle_speed == 0
        assert s.feed_rate == 0

    def test_power_off_freezes_counters(self, mill):
        mill.set_power(False)
        mill.advance(3600.0)

        assert mill.state.machine_on_hours == 0.0

    def test_power_on_returns_to_idle(self, mill):
        mill.set_power(False)
        mill.set_power(True)

        assert mill.state.execution == ExecutionMode.IDLE

    def test_power_on_with_alarm_shows_alarm(self, mill):
        mill.set_power(False)
        mill.inject_alarm(200, "SPINDLE OVER TEMP")
        mill.set_power(True)

        assert mill.state.execution == ExecutionMode.ALARM


class TestAlarms:
    """Tests for alarm set, hold and clear."""

    def test_inject_then_clear(self, mill):
        mill.inject_alarm(103, "X AXIS FOLLOWING ERROR")

        assert mill.state.alarm == "X AXIS FOLLOWING ERROR"
        assert mill.state.alarm_code == 103
        assert mill.state.execution == ExecutionMode.ALARM

        assert mill.clear_alarm() is True

        s = mill.state
        assert s.alarm is None
        assert s.alarm_code is None
        assert s.alarm_history[-1].cleared is True
        assert s.alarm_history[-1].code == 103
        assert s.execution == ExecutionMode.IDLE

    def test_clear_without_alarm_is_noop(self, mill):
        assert mill.clear_alarm() is False
        assert mill.state.alarm_history == []

    def test_history_records_state_before_reset(self, mill):
        s = mill.state
        s.cycle_phase = CyclePhase.CUTTING
        s.spindle_load = 62.5

        mill.inject_alarm(None, "HIGH_VIBRATION")

        record = s.alarm_history[-1]
        assert record.cycle_phase == CyclePhase.CUTTING
        assert record.spindle_load == 62.5
        assert s.cycle_phase == CyclePhase.IDLE

    def test_alarm_freezes_cycle(self, mill):
        s = mill.state
        s.cycle_phase = CyclePhase.CUTTING
        s.spindle_speed = 4000.0
        s.feed_rate = 900.0
        mill.inject_alarm(115, "COOLANT PUMP FAULT")

        for _ in range(5):
            mill.advance(1.0)

        assert s.execution == ExecutionMode.ALARM
        assert s.cycle_phase == CyclePhase.IDLE
        assert s.part_count == 0
        assert s.feed_rate == 0.0
        assert s.spindle_speed == 1500.0
        assert s.alarm == "COOLANT PUMP FAULT"

    def test_alarm_auto_clears(self, eager_rng):
        sim = make_machine(MachineType.CNC_MILL, eager_rng)
        sim.inject_alarm(9100, "LOW BATTERY")

        sim.advance(1.0)

        assert sim.state.alarm is None
        assert sim.state.alarm_history[-1].cleared is True
        assert sim.state.execution == ExecutionMode.IDLE

    def test_history_capped_fifo(self, mill):
        for i in range(ALARM_HISTORY_LIMIT + 5):
            mill.inject_alarm(None, f"A{i}")

        history = mill.state.alarm_history
        assert len(history) == ALARM_HISTORY_LIMIT
        assert history[0].message == "A5"
        assert history[-1].message == f"A{ALARM_HISTORY_LIMIT + 4}"

    def test_spindle_overload_raised(self, eager_rng):
        sim = make_machine(MachineType.CNC_MILL, eager_rng)
        s = sim.state

        for _ in range(100):
            s.cycle_phase = CyclePhase.DWELL
            s.time_in_phase = 0.0
            s.spindle_load = 96.0
            sim.advance(0.1)
            if s.alarm is not None:
                break

        assert s.alarm == "SPINDLE_OVERLOAD"
        assert s.alarm_code is None
        assert s.execution == ExecutionMode.ALARM

    def test_active_tool_released_on_alarm(self, eager_rng):
        sim = make_machine(MachineType.CNC_MILL, eager_rng)
        run_until(sim, lambda s: s.cycle_phase == CyclePhase.CUTTING)
        sim.advance(1.0)
        assert sim.state.active_tool.in_use is True

        sim.inject_alarm(None, "TOOL_LIFE_EXPIRED")

        assert sim.state.active_tool.in_use is False


class TestBounds:
    """Telemetry stays in range whatever the step size."""

    @pytest.mark.parametrize("dt", [0.5, 2.0, 60.0, 1e6])
    @pytest.mark.parametrize("machine_type", list(MachineType))
    def test_clamped_fields(self, machine_type, dt):
        sim = make_machine(machine_type, RandomSource(seed=11))

        for _ in range(150):
            sim.advance(dt)
            s = sim.state
            for axis in AXES:
                assert s.spec.lower(axis) <= s.axis_positions[axis] <= s.spec.upper(axis)
            assert 0 <= s.spindle_load <= 100
            assert 0 <= s.spindle_orientation < 360
            assert 2.8 <= s.battery_voltage <= 3.6
            assert 20 <= s.oil_level <= 100
            if s.mill is not None:
                assert 0 <= s.mill.tool_wear <= 1
                assert 0 <= s.mill.coolant.level <= 100
                assert all(0 <= t.current_life <= t.max_life for t in s.mill.tools)
            assert len(s.alarm_history) <= ALARM_HISTORY_LIMIT

    @pytest.mark.parametrize("dt", [0.0, -1.0])
    def test_non_positive_dt_is_noop(self, mill, dt):
        before = mill.state.timestamp

        mill.advance(dt)

        assert mill.state.timestamp == before
        assert mill.state.machine_on_hours == 0.0
        assert mill.state.time_in_phase == 0.0


class TestWarnings:
    """Warnings are rebuilt on every tick."""

    def test_warnings_follow_thresholds(self, mill):
        s = mill.state
        s.battery_voltage = 3.1
        s.mill.tools[0].current_life = 10.0

        mill.advance(1.0)
        types = {w.type for w in s.warnings}
        assert {"BATTERY_LOW", "TOOL_WEAR"} <= types

        s.battery_voltage = 3.5
        s.mill.tools[0].current_life = 90.0
        mill.advance(1.0)

        assert s.warnings == []
