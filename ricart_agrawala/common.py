from __future__ import annotations

import enum
from typing import Any, Dict, List, Tuple

from typing_extensions import TypeAlias

# Supported node count bounds
MIN_NODES: int = 2
MAX_NODES: int = 100

DEFAULT_NUM_NODES: int = 3
# Ticks a node stays in the critical section
DEFAULT_CS_DURATION: int = 3
# Min/max network delay in simulated time units
DEFAULT_MIN_DELAY: int = 5
DEFAULT_MAX_DELAY: int = 15
# Processing delay added before an immediate REPLY leaves a node
DEFAULT_REPLY_DELAY: int = 1
# Simulated time units per driver tick
DEFAULT_TICK_PERIOD: int = 10
# Wall-clock seconds between ticks when the driver runs in the background
DEFAULT_TICK_INTERVAL: float = 1.0
DEFAULT_REQUEST_PROBABILITY: float = 0.1
DEFAULT_MESSAGE_HISTORY_LIMIT: int = 200
# Event log entries kept by the engine
DEFAULT_HISTORY_LIMIT: int = 2000

RANDOM_CS_RANGE = (1, 6)
RANDOM_MIN_DELAY_RANGE = (2, 12)
RANDOM_MAX_DELAY_OFFSET = (1, 20)
RANDOM_REQ_MAX_COUNT = 3
RANDOM_REQ_MAX_TIME = 250


class ConfigurationError(ValueError):
    """Raised when a simulation is configured with unsupported values."""


class NodeState(enum.Enum):
    RELEASED = 0
    WANTED = 1
    HELD = 2

    def __str__(self):
        # E.g., RELEASED -> R, WANTED -> W, HELD -> H
        return self.name[0]


class MessageType(enum.Enum):
    REQUEST = 1
    REPLY = 2


class EventType(str, enum.Enum):
    """Event types recorded in the simulation history."""

    MESSAGE_ARRIVAL = "MSG_ARRIVE"
    CS_ENTER = "CS_ENTER"
    CS_EXIT = "CS_EXIT"
    SCHEDULED_REQUEST = "SCHED_REQ"
    MANUAL_REQUEST = "MANUAL_REQ"
    RANDOM_REQUEST = "RANDOM_REQ"
    TIME_ADVANCE = "TIME_ADV"
    INIT = "INIT"
    ERROR = "ERROR"


NodeId: TypeAlias = int
ClockValue: TypeAlias = int
SimTime: TypeAlias = int
Ticket: TypeAlias = Tuple[ClockValue, NodeId]
EdgeKey: TypeAlias = Tuple[NodeId, NodeId]

CSDurations: TypeAlias = Dict[NodeId, int]
EdgeDelays: TypeAlias = Dict[EdgeKey, Dict[str, int]]
ScheduledRequests: TypeAlias = Dict[NodeId, List[SimTime]]
HistoryEntry: TypeAlias = Dict[str, Any]


def edge_key(u: NodeId, v: NodeId) -> EdgeKey:
    return tuple(sorted((u, v)))


def edge_key_to_str(key: EdgeKey) -> str:
    u, v = sorted(key)
    return f"{u},{v}"


def str_to_edge_key(edge_str: str) -> EdgeKey:
    """Convert a string of an edge (e.g., "0,1") to a tuple of integers."""

    try:
        parts = edge_str.split(",")
        if len(parts) == 2:
            u = int(parts[0].strip())
            v = int(parts[1].strip())
            return edge_key(u, v)
        else:
            raise ValueError(
                "Edge string must contain two integers separated by a comma."
            )
    except (ValueError, TypeError, AttributeError) as e:
        raise ConfigurationError(
            f"Invalid edge string format '{edge_str}': {e}"
        ) from e


def validate_num_nodes(num_nodes: Any) -> int:
    if isinstance(num_nodes, bool) or not isinstance(num_nodes, int):
        raise ConfigurationError(
            f"Number of nodes must be an integer, got {num_nodes!r}."
        )
    if not MIN_NODES <= num_nodes <= MAX_NODES:
        raise ConfigurationError(
            f"Number of nodes must be between {MIN_NODES} and {MAX_NODES}, got {num_nodes}."
        )
    return num_nodes
