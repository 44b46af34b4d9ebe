"""Shared fixtures."""

from typing import Callable, List, Union

import pytest

from cnc_fleet_sim.engine import MachineSimulator
from cnc_fleet_sim.randomness import RandomSource
from cnc_fleet_sim.specs import MachineType, build_spec


class ScriptedRandom(RandomSource):
    """Deterministic draws for tests.

    ``chance`` answers from a fixed flag (or a predicate on the probability)
    and ``uniform`` returns the same fraction of every range.
    """

    def __init__(
        self,
        chance_result: Union[bool, Callable[[float], bool]] = False,
        fraction: float = 0.5,
    ):
        super().__init__(seed=0)
        self.chance_result = chance_result
        self.fraction = fraction
        self.chance_calls: List[float] = []

    def chance(self, probability: float) -> bool:
        self.chance_calls.append(probability)
        if callable(self.chance_result):
            return self.chance_result(probability)
        return self.chance_result

    def uniform(self, low: float, high: float) -> float:
        return low + self.fraction * (high - low)


MODELS = {
    MachineType.CNC_MILL: "VF-2",
    MachineType.LATHE: "LATHE",
    MachineType.PRESS_BRAKE: "PRESS",
    MachineType.LASER: "LASER",
}


def make_machine(machine_type=MachineType.CNC_MILL, rng=None, machine_id="m1"):
    model = MODELS[machine_type]
    return MachineSimulator.create(
        machine_id,
        f"Test {model}",
        model,
        machine_type,
        build_spec(machine_type, model),
        rng=rng or ScriptedRandom(),
    )


@pytest.fixture
def quiet_rng():
    """Never starts a cycle, never raises or clears an alarm."""
    return ScriptedRandom(chance_result=False)


@pytest.fixture
def eager_rng():
    """Every probability gate passes."""
    return ScriptedRandom(chance_result=True)


@pytest.fixture
def mill(quiet_rng):
    return make_machine(MachineType.CNC_MILL, quiet_rng)
