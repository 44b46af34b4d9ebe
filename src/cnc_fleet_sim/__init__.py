"""CNC Fleet Simulator - simulated machine-shop telemetry over REST, WebSocket and MQTT."""

__version__ = "0.1.0"

from .config import Config
from .engine import MachineSimulator
from .fleet import Fleet, MachineNotFoundError, TickDriver
from .specs import MachineSpec, MachineType

__all__ = [
    "Config",
    "Fleet",
    "MachineNotFoundError",
    "MachineSimulator",
    "MachineSpec",
    "MachineType",
    "TickDriver",
    "__version__",
]
