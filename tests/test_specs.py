"""Tests for machine specs and tool inventory."""

import pytest

from cnc_fleet_sim.randomness import RandomSource
from cnc_fleet_sim.specs import (
    DEFAULT_MAX_LASER_POWER,
    DEFAULT_MAX_TONNAGE,
    MachineSpec,
    MachineType,
    build_spec,
)
from cnc_fleet_sim.tools import COATINGS, MAX_TOOL_LIFE, Tool, ToolCategory, create_tool_inventory


class TestBuildSpec:
    """Tests for build_spec()."""

    def test_type_defaults(self):
        spec = build_spec(MachineType.CNC_MILL)

        assert spec.axis_limits["X"] == (0.0, 762.0)
        assert spec.max_rpm == 8100
        assert spec.tool_capacity == 24
        assert spec.max_tonnage is None
        assert spec.max_laser_power is None

    def test_model_preset(self):
        spec = build_spec(MachineType.CNC_MILL, "HMC")

        assert spec.axis_limits["Y"] == (0.0, 700.0)
        assert spec.max_rpm == 12000
        assert spec.tool_capacity == 40

    def test_overrides_win(self):
        spec = build_spec(
            MachineType.CNC_MILL,
            "VF-4",
            {"max_rpm": 10000, "axis_limits": {"X": [0, 500], "Y": [0, 400], "Z": [0, 300]}},
        )

        assert spec.max_rpm == 10000.0
        assert spec.upper("X") == 500.0

    def test_unknown_override_rejected(self):
        with pytest.raises(ValueError, match="Unknown spec field"):
            build_spec(MachineType.CNC_MILL, overrides={"turbo": True})

    def test_inverted_axis_limits_rejected(self):
        with pytest.raises(ValueError):
            build_spec(
                MachineType.CNC_MILL,
                overrides={"axis_limits": {"X": [10, 0], "Y": [0, 1], "Z": [0, 1]}},
            )

    def test_ceilings_follow_type(self):
        assert build_spec(MachineType.PRESS_BRAKE).max_tonnage == DEFAULT_MAX_TONNAGE
        assert build_spec(MachineType.LASER).max_laser_power == DEFAULT_MAX_LASER_POWER
        # a tonnage override on a mill is dropped
        assert build_spec(MachineType.CNC_MILL, overrides={"max_tonnage": 50}).max_tonnage is None

    def test_only_mills_and_lathes_have_tooling(self):
        assert MachineType.CNC_MILL.has_tooling
        assert MachineType.LATHE.has_tooling
        assert not MachineType.PRESS_BRAKE.has_tooling
        assert not MachineType.LASER.has_tooling


class TestMachineSpec:
    """Tests for MachineSpec helpers."""

    def test_clamp(self):
        spec = MachineSpec()

        assert spec.clamp("X", -5) == 0.0
        assert spec.clamp("X", 10_000) == 762.0
        assert spec.clamp("Z", 100) == 100

    def test_midpoint(self):
        assert MachineSpec().midpoint("Y") == 203.0

    def test_to_dict(self):
        data = build_spec(MachineType.PRESS_BRAKE, "PRESS").to_dict()

        assert data["axisLimits"]["Y"] == [0.0, 2000.0]
        assert data["maxTonnage"] == 200.0
        assert "maxLaserPower" not in data


class TestToolInventory:
    """Tests for tool generation."""

    @pytest.fixture
    def tools(self):
        return create_tool_inventory(12, RandomSource(seed=42))

    def test_inventory_size_and_numbering(self, tools):
        assert len(tools) == 12
        assert [t.number for t in tools] == list(range(1, 13))

    def test_attribute_ranges(self, tools):
        for tool in tools:
            assert 2 <= tool.diameter <= 22
            assert 50 <= tool.length <= 150
            assert 20 < tool.current_life <= MAX_TOOL_LIFE
            assert 2 <= tool.flutes <= 5
            assert tool.coating in COATINGS
            assert isinstance(tool.category, ToolCategory)
            assert tool.in_use is False

    def test_seeded_inventory_is_reproducible(self):
        first = create_tool_inventory(5, RandomSource(seed=7))
        second = create_tool_inventory(5, RandomSource(seed=7))

        assert [t.to_dict() for t in first] == [t.to_dict() for t in second]

    def test_wear_clamps_at_zero(self):
        tool = Tool(number=1, category=ToolCategory.DRILL, diameter=6, length=80, current_life=0.5)

        tool.wear(2.0)

        assert tool.current_life == 0.0

    def test_to_dict(self):
        tool = Tool(
            number=3, category=ToolCategory.TAP, diameter=8, length=60, current_life=55.5555
        )

        data = tool.to_dict()

        assert data["type"] == "TAP"
        assert data["currentLife"] == 55.56
        assert data["inUse"] is False
