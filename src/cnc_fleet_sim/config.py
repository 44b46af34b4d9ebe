"""Configuration management for the fleet simulator."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .specs import SPEC_FIELDS, MachineSpec, MachineType, build_spec


@dataclass
class ServerConfig:
    """HTTP / WebSocket server settings."""

    host: str = "0.0.0.0"
    port: int = 5000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


@dataclass
class SimulationConfig:
    """Simulation parameters."""

    tick_interval_ms: int = 2000
    time_acceleration: float = 1.0
    random_seed: Optional[int] = None


@dataclass
class MQTTConfig:
    """MQTT broker configuration."""

    enabled: bool = False
    broker: str = "localhost"
    port: int = 1883
    username: str = ""
    password: str = ""
    client_id: str = "fleet-sim"
    qos: int = 1
    topic_prefix: str = "fleet-sim"


@dataclass
class MachineConfig:
    """One machine of the fleet."""

    id: str
    name: str
    model: str
    machine_type: MachineType
    material: Optional[str] = None
    program: Optional[str] = None
    spec_overrides: Dict[str, Any] = field(default_factory=dict)

    def build_spec(self) -> MachineSpec:
        return build_spec(self.machine_type, self.model, self.spec_overrides)


def _parse_machine_type(value: Any) -> MachineType:
    try:
        return MachineType(str(value).upper())
    except ValueError:
        valid = ", ".join(t.value for t in MachineType)
        raise ValueError(f"Invalid machine type '{value}' (expected one of: {valid})") from None


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Main configuration container."""

    server: ServerConfig = field(default_factory=ServerConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    machines: List[MachineConfig] = field(default_factory=list)

    def get_machine(self, machine_id: str) -> Optional[MachineConfig]:
        for machine in self.machines:
            if machine.id == machine_id:
                return machine
        return None

    @classmethod
    def from_yaml(cls, config_path: Path) -> "Config":
        """Load configuration from YAML file."""
        if not config_path.exists():
            return cls.default()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls._from_dict(data)

    @classmethod
    def from_env(cls, base: Optional["Config"] = None) -> "Config":
        """Apply environment variable overrides on top of ``base`` (or the default)."""
        config = base or cls.default()

        config.server.host = os.getenv("HOST", config.server.host)
        config.server.port = int(os.getenv("PORT", config.server.port))

        tick = os.getenv("TICK_INTERVAL_MS")
        if tick:
            config.simulation.tick_interval_ms = int(tick)
        seed = os.getenv("RANDOM_SEED")
        if seed:
            config.simulation.random_seed = int(seed)

        enabled = os.getenv("MQTT_ENABLED")
        if enabled is not None:
            config.mqtt.enabled = _env_flag(enabled)
        config.mqtt.broker = os.getenv("MQTT_BROKER", config.mqtt.broker)
        config.mqtt.port = int(os.getenv("MQTT_PORT", config.mqtt.port))
        config.mqtt.username = os.getenv("MQTT_USERNAME", config.mqtt.username)
        config.mqtt.password = os.getenv("MQTT_PASSWORD", config.mqtt.password)

        return config

    @classmethod
    def default(cls) -> "Config":
        """Create default configuration with the demo fleet."""
        config = cls()
        config.machines = [
            MachineConfig(
                id="haas_vf2",
                name="Haas VF-2",
                model="VF-2",
                machine_type=MachineType.CNC_MILL,
                material="Aluminum 6061",
                program="O1234",
            ),
            MachineConfig(
                id="haas_vf4",
                name="Haas VF-4",
                model="VF-4",
                machine_type=MachineType.CNC_MILL,
                material="Steel 4140",
            ),
            MachineConfig(
                id="toyoda_hmc",
                name="Toyoda HMC",
                model="HMC",
                machine_type=MachineType.CNC_MILL,
                material="Stainless 316",
            ),
            MachineConfig(
                id="cnc_lathe",
                name="CNC Lathe",
                model="LATHE",
                machine_type=MachineType.LATHE,
                material="Brass C360",
            ),
            MachineConfig(
                id="durma_press",
                name="Durma Press Brake",
                model="PRESS",
                machine_type=MachineType.PRESS_BRAKE,
            ),
            MachineConfig(
                id="fiber_laser",
                name="Fiber Laser",
                model="LASER",
                machine_type=MachineType.LASER,
            ),
        ]
        return config

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        config = cls.default()

        if "server" in data:
            server_data = data["server"] or {}
            config.server = ServerConfig(
                host=server_data.get("host", config.server.host),
                port=int(server_data.get("port", config.server.port)),
                cors_origins=list(server_data.get("cors_origins", config.server.cors_origins)),
            )

        if "simulation" in data:
            sim_data = data["simulation"] or {}
            seed = sim_data.get("random_seed")
            config.simulation = SimulationConfig(
                tick_interval_ms=int(
                    sim_data.get("tick_interval_ms", config.simulation.tick_interval_ms)
                ),
                time_acceleration=float(
                    sim_data.get("time_acceleration", config.simulation.time_acceleration)
                ),
                random_seed=int(seed) if seed is not None else None,
            )
            if config.simulation.tick_interval_ms <= 0:
                raise ValueError("simulation.tick_interval_ms must be positive")
            if config.simulation.time_acceleration <= 0:
                raise ValueError("simulation.time_acceleration must be positive")

        if "mqtt" in data:
            mqtt_data = data["mqtt"] or {}
            config.mqtt = MQTTConfig(
                enabled=bool(mqtt_data.get("enabled", config.mqtt.enabled)),
                broker=mqtt_data.get("broker", config.mqtt.broker),
                port=int(mqtt_data.get("port", config.mqtt.port)),
                username=mqtt_data.get("username", config.mqtt.username),
                password=mqtt_data.get("password", config.mqtt.password),
                client_id=mqtt_data.get("client_id", config.mqtt.client_id),
                qos=int(mqtt_data.get("qos", config.mqtt.qos)),
                topic_prefix=mqtt_data.get("topic_prefix", config.mqtt.topic_prefix),
            )

        # A machines list replaces the demo fleet entirely
        if "machines" in data:
            config.machines = []
            seen = set()
            for entry in data["machines"] or []:
                if "id" not in entry:
                    raise ValueError("Machine entry is missing 'id'")
                if entry["id"] in seen:
                    raise ValueError(f"Duplicate machine id: {entry['id']}")
                seen.add(entry["id"])

                overrides = dict(entry.get("specs") or {})
                unknown = set(overrides) - set(SPEC_FIELDS)
                if unknown:
                    raise ValueError(
                        f"Unknown spec field(s) for {entry['id']}: {', '.join(sorted(unknown))}"
                    )

                config.machines.append(
                    MachineConfig(
                        id=entry["id"],
                        name=entry.get("name", entry["id"]),
                        model=entry.get("model", ""),
                        machine_type=_parse_machine_type(entry.get("type", "CNC_MILL")),
                        material=entry.get("material"),
                        program=entry.get("program"),
                        spec_overrides=overrides,
                    )
                )

        return config

    def to_yaml(self, path: Path) -> None:
        """Save configuration to YAML file."""
        machines = []
        for m in self.machines:
            entry: Dict[str, Any] = {
                "id": m.id,
                "name": m.name,
                "model": m.model,
                "type": m.machine_type.value,
            }
            if m.material:
                entry["material"] = m.material
            if m.program:
                entry["program"] = m.program
            if m.spec_overrides:
                entry["specs"] = m.spec_overrides
            machines.append(entry)

        data = {
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "cors_origins": list(self.server.cors_origins),
            },
            "simulation": {
                "tick_interval_ms": self.simulation.tick_interval_ms,
                "time_acceleration": self.simulation.time_acceleration,
                "random_seed": self.simulation.random_seed,
            },
            "mqtt": {
                "enabled": self.mqtt.enabled,
                "broker": self.mqtt.broker,
                "port": self.mqtt.port,
                "username": self.mqtt.username,
                "password": self.mqtt.password,
                "client_id": self.mqtt.client_id,
                "qos": self.mqtt.qos,
                "topic_prefix": self.mqtt.topic_prefix,
            },
            "machines": machines,
        }

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
