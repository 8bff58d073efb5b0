"""
Simulation of the Ricart-Agrawala distributed mutual exclusion algorithm.
"""
from .clock import LamportClock
from .common import ConfigurationError, EventType, MessageType, NodeState
from .config import (
    SimulationConfig,
    config_template,
    load_config,
    randomize_config,
    save_config,
)
from .driver import SimulationDriver
from .engine import MutexEngine
from .node import Node
from .snapshot import MessageSnapshot, NodeSnapshot, SimulationSnapshot
from .transport import Message, MessageTransport

__all__ = [
    "LamportClock",
    "ConfigurationError",
    "EventType",
    "MessageType",
    "NodeState",
    "SimulationConfig",
    "config_template",
    "load_config",
    "randomize_config",
    "save_config",
    "SimulationDriver",
    "MutexEngine",
    "Node",
    "MessageSnapshot",
    "NodeSnapshot",
    "SimulationSnapshot",
    "Message",
    "MessageTransport",
]
