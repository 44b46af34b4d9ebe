"""Wire projections of machine state.

Everything here reads a ``MachineState`` and returns plain dicts ready for
JSON; nothing writes back into the state, so rounding never leaks into the
simulation's working precision.
"""

from typing import Any, Dict, List, Optional

from .specs import MachineType
from .state import MachineState, isoformat_z, utc_now

SNAPSHOT_ALARM_HISTORY = 5


def _round_axes(values: Dict[str, float], digits: int) -> Dict[str, float]:
    return {axis: round(value, digits) for axis, value in values.items()}


def build_snapshot(state: MachineState) -> Dict[str, Any]:
    """Serialize one machine for REST, WebSocket and MQTT consumers."""
    s = state
    data: Dict[str, Any] = {
        "id": s.machine_id,
        "name": s.name,
        "model": s.model,
        "type": s.machine_type.value,
        "specs": s.spec.to_dict(),
        # State
        "power": s.power,
        "execution": s.execution.value,
        "cyclePhase": s.cycle_phase.value,
        # Alarms
        "alarm": s.alarm,
        "alarmCode": s.alarm_code,
        "alarmHistory": [a.to_dict() for a in s.alarm_history[-SNAPSHOT_ALARM_HISTORY:]],
        "warnings": [w.to_dict() for w in s.warnings],
        # Spindle
        "spindleSpeed": round(s.spindle_speed),
        "targetSpindleSpeed": round(s.target_spindle_speed),
        "spindleLoad": round(s.spindle_load, 1),
        "spindleTemp": round(s.spindle_temp, 1),
        "spindleHours": round(s.spindle_hours, 3),
        "spindleOrientation": round(s.spindle_orientation) % 360,
        # Feed and motion
        "feedRate": round(s.feed_rate),
        "targetFeed": round(s.target_feed),
        "rapidRate": round(s.rapid_rate),
        "axisPositions": _round_axes(s.axis_positions, 2),
        # Servos
        "servoLoad": _round_axes(s.servo_load, 1),
        "servoFollowingError": _round_axes(s.servo_following_error, 4),
        "servoTemp": _round_axes(s.servo_temp, 1),
        # Production
        "partCount": s.part_count,
        "totalCycles": s.total_cycles,
        "machineOnHours": round(s.machine_on_hours, 3),
        "productionRate": s.production_rate,
        # Health
        "batteryVoltage": round(s.battery_voltage, 2),
        "temperature": round(s.temperature),
        "vibration": round(s.vibration, 2),
        "currentAmps": round(s.current_amps, 1),
        "oilPressure": round(s.oil_pressure),
        "oilLevel": round(s.oil_level),
        "timestamp": isoformat_z(s.timestamp),
    }

    if s.mill is not None:
        data.update(
            {
                "currentTool": s.mill.current_tool,
                "tools": [t.to_dict() for t in s.mill.tools],
                "toolWear": round(s.mill.tool_wear, 3),
                "coolant": s.mill.coolant.to_dict(),
            }
        )
    elif s.press is not None:
        data.update(
            {
                "tonnage": round(s.press.tonnage),
                "maxTonnage": s.press.max_tonnage,
                "ramPosition": round(s.press.ram_position),
                "backGauge": round(s.press.back_gauge, 2),
                "bendAngle": round(s.press.bend_angle),
            }
        )
    elif s.laser is not None:
        data.update(
            {
                "laserPower": round(s.laser.laser_power),
                "maxLaserPower": s.laser.max_laser_power,
                "gasPressure": round(s.laser.gas_pressure),
                "resonatorTemp": round(s.laser.resonator_temp, 1),
                "cutSpeed": round(s.laser.cut_speed),
            }
        )

    if s.material:
        data["material"] = s.material
    if s.program_running:
        data["programRunning"] = s.program_running

    return data


def build_plant_update(snapshots: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Wrap snapshots in the push-channel message."""
    return {
        "type": "PLANT_UPDATE",
        "timestamp": isoformat_z(utc_now()),
        "machines": snapshots,
    }


def _active_tool_life(snapshot: Dict[str, Any]) -> Optional[float]:
    tools = snapshot.get("tools") or []
    index = snapshot.get("currentTool", 0) - 1
    if 0 <= index < len(tools):
        return tools[index]["currentLife"]
    return None


def build_dashboard(snapshot: Dict[str, Any]) -> Dict[str, Any]:
    """Regroup a snapshot into the model-specific dashboard layout."""
    machine_type = MachineType(snapshot["type"])

    if machine_type.has_tooling:
        critical = {
            "spindleSpeed": snapshot["spindleSpeed"],
            "spindleLoad": snapshot["spindleLoad"],
            "spindleTemp": snapshot["spindleTemp"],
            "feedRate": snapshot["feedRate"],
            "coolantLevel": snapshot["coolant"]["level"],
            "coolantPressure": snapshot["coolant"]["pressure"],
            "currentTool": snapshot["currentTool"],
            "toolLife": _active_tool_life(snapshot),
            "servoLoad": snapshot["servoLoad"],
            "servoFollowingError": snapshot["servoFollowingError"],
        }
    elif machine_type == MachineType.PRESS_BRAKE:
        critical = {
            key: snapshot[key] for key in ("tonnage", "maxTonnage", "ramPosition", "bendAngle")
        }
    else:
        critical = {
            key: snapshot[key]
            for key in ("laserPower", "maxLaserPower", "gasPressure", "resonatorTemp", "cutSpeed")
        }

    return {
        "machine": {key: snapshot[key] for key in ("id", "name", "model", "type")},
        "status": {
            key: snapshot[key]
            for key in ("power", "execution", "cyclePhase", "alarm", "alarmCode")
        },
        "critical": critical,
        "performance": {
            key: snapshot[key]
            for key in ("partCount", "totalCycles", "machineOnHours", "productionRate")
        },
        "health": {
            key: snapshot[key]
            for key in ("batteryVoltage", "temperature", "vibration", "oilPressure", "oilLevel")
        },
        "warnings": snapshot["warnings"],
        "recentAlarms": snapshot["alarmHistory"],
    }
