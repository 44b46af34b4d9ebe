"""Plant-level aggregates over a set of machine states."""

from collections import OrderedDict
from typing import Any, Dict, List, Sequence

from .alarms import BATTERY_WARNING_VOLTS, COOLANT_WARNING_LEVEL, TOOL_WEAR_WARNING_PCT
from .state import ExecutionMode, MachineState, isoformat_z, utc_now

HIGH_AMBIENT_TEMP = 100.0
TOP_ALARMS = 10


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def plant_status(states: Sequence[MachineState]) -> Dict[str, Any]:
    return {
        "total": len(states),
        "running": sum(1 for s in states if s.execution == ExecutionMode.RUNNING),
        "idle": sum(1 for s in states if s.execution == ExecutionMode.IDLE),
        "alarm": sum(1 for s in states if s.execution == ExecutionMode.ALARM),
        "stopped": sum(1 for s in states if not s.power),
        "totalParts": sum(s.part_count for s in states),
        "totalCycles": sum(s.total_cycles for s in states),
        "avgProductionRate": round(_mean([s.production_rate for s in states])),
        "timestamp": isoformat_z(utc_now()),
    }


def active_alarms(states: Sequence[MachineState]) -> Dict[str, Any]:
    alarms = [
        {
            "machineId": s.machine_id,
            "machineName": s.name,
            "model": s.model,
            "alarmCode": s.alarm_code,
            "alarm": s.alarm,
            "execution": s.execution.value,
            "timestamp": isoformat_z(s.timestamp),
        }
        for s in states
        if s.alarm_active
    ]
    return {"count": len(alarms), "alarms": alarms}


def production_summary(states: Sequence[MachineState]) -> Dict[str, Any]:
    machines = [
        {
            "id": s.machine_id,
            "name": s.name,
            "model": s.model,
            "partCount": s.part_count,
            "totalCycles": s.total_cycles,
            "productionRate": s.production_rate,
            "machineOnHours": round(s.machine_on_hours, 2),
            "execution": s.execution.value,
        }
        for s in states
    ]
    return {
        "machines": machines,
        "totals": {
            "parts": sum(s.part_count for s in states),
            "cycles": sum(s.total_cycles for s in states),
            "hours": round(sum(s.machine_on_hours for s in states), 2),
        },
    }


def _tool_life_low(state: MachineState) -> bool:
    tool = state.active_tool
    return tool is not None and tool.current_life < TOOL_WEAR_WARNING_PCT


def health_summary(states: Sequence[MachineState]) -> Dict[str, Any]:
    return {
        "batteryWarnings": sum(1 for s in states if s.battery_voltage < BATTERY_WARNING_VOLTS),
        "temperatureWarnings": sum(1 for s in states if s.temperature > HIGH_AMBIENT_TEMP),
        "coolantWarnings": sum(
            1 for s in states if s.mill is not None and s.mill.coolant.level < COOLANT_WARNING_LEVEL
        ),
        "toolWarnings": sum(1 for s in states if _tool_life_low(s)),
        "avgBatteryVoltage": round(_mean([s.battery_voltage for s in states]), 2),
        "avgTemperature": round(_mean([s.temperature for s in states])),
        "machines": [
            {"id": s.machine_id, "name": s.name, "warnings": [w.to_dict() for w in s.warnings]}
            for s in states
        ],
    }


def _uptime(state: MachineState) -> int:
    if not state.power:
        return 0
    return 100 if state.execution == ExecutionMode.RUNNING else 50


def uptime_analytics(states: Sequence[MachineState]) -> Dict[str, Any]:
    machines = []
    for s in states:
        utilization = (
            round(s.spindle_hours / s.machine_on_hours * 100) if s.machine_on_hours > 0 else 0
        )
        machines.append(
            {
                "id": s.machine_id,
                "name": s.name,
                "model": s.model,
                "uptime": _uptime(s),
                "machineOnHours": round(s.machine_on_hours, 2),
                "spindleHours": round(s.spindle_hours, 2),
                "utilizationRate": utilization,
            }
        )
    return {
        "machines": machines,
        "fleetAvgUptime": round(_mean([m["uptime"] for m in machines])),
    }


def alarm_analytics(states: Sequence[MachineState]) -> Dict[str, Any]:
    """Alarm frequency across every machine's retained history."""
    stats: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    for s in states:
        for record in s.alarm_history:
            key = record.message or "UNKNOWN"
            entry = stats.setdefault(
                key, {"message": key, "code": record.code, "count": 0, "machines": []}
            )
            entry["count"] += 1
            if s.name not in entry["machines"]:
                entry["machines"].append(s.name)

    ranked: List[Dict[str, Any]] = sorted(stats.values(), key=lambda e: e["count"], reverse=True)
    return {
        "totalAlarms": sum(e["count"] for e in ranked),
        "uniqueAlarmTypes": len(ranked),
        "topAlarms": ranked[:TOP_ALARMS],
    }
