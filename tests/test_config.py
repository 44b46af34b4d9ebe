"""Tests for configuration loading."""

import pytest
import yaml

from cnc_fleet_sim.config import Config, MachineConfig
from cnc_fleet_sim.specs import MachineType


class TestDefaultConfig:
    """Tests for Config.default()."""

    def test_demo_fleet(self):
        cfg = Config.default()

        assert [m.id for m in cfg.machines] == [
            "haas_vf2",
            "haas_vf4",
            "toyoda_hmc",
            "cnc_lathe",
            "durma_press",
            "fiber_laser",
        ]
        assert cfg.get_machine("haas_vf2").program == "O1234"
        assert cfg.get_machine("cnc_lathe").material == "Brass C360"
        assert cfg.get_machine("missing") is None

    def test_defaults(self):
        cfg = Config.default()

        assert cfg.server.port == 5000
        assert cfg.simulation.tick_interval_ms == 2000
        assert cfg.simulation.random_seed is None
        assert cfg.mqtt.enabled is False
        assert cfg.mqtt.topic_prefix == "fleet-sim"

    def test_machine_spec_from_preset(self):
        spec = Config.default().get_machine("toyoda_hmc").build_spec()

        assert spec.max_rpm == 12000
        assert spec.tool_capacity == 40


class TestYamlConfig:
    """Tests for YAML loading and saving."""

    def test_missing_file_gives_default(self, tmp_path):
        cfg = Config.from_yaml(tmp_path / "nope.yaml")

        assert len(cfg.machines) == 6

    def test_round_trip(self, tmp_path):
        path = tmp_path / "config.yaml"
        cfg = Config.default()
        cfg.simulation.random_seed = 9
        cfg.machines[0].spec_overrides = {"max_rpm": 9000}

        cfg.to_yaml(path)
        loaded = Config.from_yaml(path)

        assert loaded.simulation.random_seed == 9
        assert [m.id for m in loaded.machines] == [m.id for m in cfg.machines]
        assert loaded.machines[0].build_spec().max_rpm == 9000
        assert loaded.machines[4].machine_type == MachineType.PRESS_BRAKE

    def test_machines_list_replaces_fleet(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            yaml.dump(
                {
                    "simulation": {"tick_interval_ms": 500, "random_seed": 3},
                    "machines": [
                        {
                            "id": "mill_a",
                            "name": "Mill A",
                            "model": "VF-2",
                            "type": "cnc_mill",
                            "specs": {"axis_limits": {"X": [0, 400], "Y": [0, 300], "Z": [0, 200]}},
                        }
                    ],
                }
            )
        )

        cfg = Config.from_yaml(path)

        assert cfg.simulation.tick_interval_ms == 500
        assert len(cfg.machines) == 1
        machine = cfg.machines[0]
        assert machine.machine_type == MachineType.CNC_MILL
        assert machine.build_spec().upper("X") == 400.0

    def test_invalid_machine_type(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"machines": [{"id": "x", "type": "WATERJET"}]}))

        with pytest.raises(ValueError, match="Invalid machine type"):
            Config.from_yaml(path)

    def test_unknown_spec_field(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"machines": [{"id": "x", "specs": {"warp": 9}}]}))

        with pytest.raises(ValueError, match="warp"):
            Config.from_yaml(path)

    def test_duplicate_ids(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"machines": [{"id": "x"}, {"id": "x"}]}))

        with pytest.raises(ValueError, match="Duplicate"):
            Config.from_yaml(path)

    def test_non_positive_tick_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"simulation": {"tick_interval_ms": 0}}))

        with pytest.raises(ValueError):
            Config.from_yaml(path)


class TestEnvConfig:
    """Tests for environment overrides."""

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("PORT", "8080")
        monkeypatch.setenv("HOST", "127.0.0.1")
        monkeypatch.setenv("TICK_INTERVAL_MS", "250")
        monkeypatch.setenv("RANDOM_SEED", "42")
        monkeypatch.setenv("MQTT_ENABLED", "true")
        monkeypatch.setenv("MQTT_BROKER", "broker.local")
        monkeypatch.setenv("MQTT_PORT", "1884")

        cfg = Config.from_env()

        assert cfg.server.port == 8080
        assert cfg.server.host == "127.0.0.1"
        assert cfg.simulation.tick_interval_ms == 250
        assert cfg.simulation.random_seed == 42
        assert cfg.mqtt.enabled is True
        assert cfg.mqtt.broker == "broker.local"
        assert cfg.mqtt.port == 1884

    def test_env_applies_on_top_of_base(self, monkeypatch):
        monkeypatch.setenv("PORT", "9000")
        monkeypatch.delenv("MQTT_ENABLED", raising=False)
        base = Config.default()
        base.machines = [
            MachineConfig(id="solo", name="Solo", model="LASER", machine_type=MachineType.LASER)
        ]

        cfg = Config.from_env(base)

        assert cfg.server.port == 9000
        assert [m.id for m in cfg.machines] == ["solo"]
        assert cfg.mqtt.enabled is False
