"""Fleet registry and the tick driver that advances it."""

import logging
import threading
import time
from collections import OrderedDict
from contextlib import ExitStack
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

from .config import Config
from .engine import MachineSimulator
from .randomness import RandomSource
from .snapshot import build_plant_update, build_snapshot
from .state import MachineState

logger = logging.getLogger(__name__)

PlantListener = Callable[[Dict[str, Any]], None]
T = TypeVar("T")


class MachineNotFoundError(KeyError):
    """Raised when a machine id is not in the fleet."""

    def __init__(self, machine_id: str):
        super().__init__(machine_id)
        self.machine_id = machine_id

    def __str__(self) -> str:
        return f"Machine not found: {self.machine_id}"


class Fleet:
    """Ordered set of simulated machines keyed by id.

    Each machine has its own re-entrant lock. Ticks, commands and snapshots
    for a machine all run under that lock, so a command can never interleave
    with a tick of the same machine.
    """

    def __init__(self):
        self._machines: "OrderedDict[str, MachineSimulator]" = OrderedDict()
        self._locks: Dict[str, threading.RLock] = {}

    @classmethod
    def from_config(cls, config: Config) -> "Fleet":
        fleet = cls()
        seed = config.simulation.random_seed
        for index, machine in enumerate(config.machines):
            rng = RandomSource(seed + index if seed is not None else None)
            fleet.add(
                MachineSimulator.create(
                    machine.id,
                    machine.name,
                    machine.model,
                    machine.machine_type,
                    machine.build_spec(),
                    rng=rng,
                    material=machine.material,
                    program_running=machine.program,
                )
            )
        logger.info(f"Fleet built with {len(fleet)} machines")
        return fleet

    def add(self, simulator: MachineSimulator) -> None:
        machine_id = simulator.machine_id
        if machine_id in self._machines:
            raise ValueError(f"Duplicate machine id: {machine_id}")
        self._machines[machine_id] = simulator
        self._locks[machine_id] = threading.RLock()

    def __len__(self) -> int:
        return len(self._machines)

    def __contains__(self, machine_id: object) -> bool:
        return machine_id in self._machines

    def __iter__(self) -> Iterator[MachineSimulator]:
        return iter(list(self._machines.values()))

    @property
    def ids(self) -> List[str]:
        return list(self._machines)

    def get(self, machine_id: str) -> MachineSimulator:
        try:
            return self._machines[machine_id]
        except KeyError:
            raise MachineNotFoundError(machine_id) from None

    def lock(self, machine_id: str) -> threading.RLock:
        self.get(machine_id)
        return self._locks[machine_id]

    # =========================================================================
    # Simulation
    # =========================================================================

    def advance(self, dt_seconds: float) -> None:
        """Advance every machine in order, one at a time."""
        for machine_id, simulator in list(self._machines.items()):
            with self._locks[machine_id]:
                simulator.advance(dt_seconds)

    def states(self) -> List[MachineState]:
        return [sim.state for sim in self]

    def summarize(self, fn: Callable[[List[MachineState]], T]) -> T:
        """Run an aggregate over all states with every machine lock held.

        Locks are taken in fleet order, the same order ticks use.
        """
        with ExitStack() as stack:
            for machine_id in list(self._machines):
                stack.enter_context(self._locks[machine_id])
            return fn(self.states())

    # =========================================================================
    # Snapshots
    # =========================================================================

    def snapshot(self, machine_id: str) -> Dict[str, Any]:
        simulator = self.get(machine_id)
        with self._locks[machine_id]:
            return build_snapshot(simulator.state)

    def snapshots(self) -> List[Dict[str, Any]]:
        result = []
        for machine_id, simulator in list(self._machines.items()):
            with self._locks[machine_id]:
                result.append(build_snapshot(simulator.state))
        return result

    def plant_update(self) -> Dict[str, Any]:
        return build_plant_update(self.snapshots())

    # =========================================================================
    # Commands
    # =========================================================================

    def set_power(self, machine_id: str, on: bool) -> None:
        simulator = self.get(machine_id)
        with self._locks[machine_id]:
            simulator.set_power(on)

    def inject_alarm(self, machine_id: str, code: Any, message: str) -> None:
        simulator = self.get(machine_id)
        with self._locks[machine_id]:
            simulator.inject_alarm(code, message)

    def clear_alarm(self, machine_id: str) -> bool:
        simulator = self.get(machine_id)
        with self._locks[machine_id]:
            return simulator.clear_alarm()


class TickDriver:
    """Advances a fleet on a fixed period and fans the result out to listeners.

    Every tick advances each machine by the fixed simulated interval
    ``tick_interval_ms / 1000``; the wall-clock wait between ticks is that
    interval divided by ``time_acceleration``.
    """

    def __init__(self, fleet: Fleet, tick_interval_ms: int = 2000, time_acceleration: float = 1.0):
        if tick_interval_ms <= 0:
            raise ValueError("tick_interval_ms must be positive")
        if time_acceleration <= 0:
            raise ValueError("time_acceleration must be positive")
        self.fleet = fleet
        self.tick_interval_ms = tick_interval_ms
        self.time_acceleration = time_acceleration
        self.tick_count = 0
        self._listeners: List[PlantListener] = []
        self._running = False
        self._stop_event = threading.Event()
        self._tick_thread: Optional[threading.Thread] = None

    @property
    def dt(self) -> float:
        return self.tick_interval_ms / 1000.0

    @property
    def running(self) -> bool:
        return self._running

    def add_listener(self, listener: PlantListener) -> None:
        """Register a callback for every PLANT_UPDATE. It must not block."""
        self._listeners.append(listener)

    def remove_listener(self, listener: PlantListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def tick(self) -> Dict[str, Any]:
        """Run one tick and notify listeners. Returns the PLANT_UPDATE."""
        self.fleet.advance(self.dt)
        self.tick_count += 1
        update = self.fleet.plant_update()
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception as e:
                logger.error(f"Plant update listener failed: {e}")
        return update

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        self._tick_thread = threading.Thread(
            target=self._tick_loop, name="fleet-tick", daemon=True
        )
        self._tick_thread.start()
        logger.info(
            f"Tick driver started: {self.tick_interval_ms} ms period, "
            f"{self.time_acceleration}x acceleration, {len(self.fleet)} machines"
        )

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._tick_thread:
            self._tick_thread.join(timeout=5)
        self._tick_thread = None
        logger.info("Tick driver stopped")

    def _tick_loop(self) -> None:
        interval = self.dt / self.time_acceleration
        while self._running:
            started = time.monotonic()
            try:
                self.tick()
                logger.debug(f"Tick {self.tick_count} done")
            except Exception as e:
                logger.error(f"Error in tick loop: {e}")
            elapsed = time.monotonic() - started
            self._stop_event.wait(max(0.0, interval - elapsed))
