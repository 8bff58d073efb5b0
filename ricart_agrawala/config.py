"""
Simulation parameters and their JSON representation.

A configuration file looks like::

    {
        "num_nodes": 3,
        "cs_durations": {"0": 3, "1": 5},
        "edge_delays": {"0,1": {"min": 5, "max": 15}},
        "scheduled_requests": {"0": [0, 40]},
        "request_probability": 0.1,
        "seed": 7
    }

Every key is optional; missing keys fall back to the defaults below.
"""
from __future__ import annotations

import dataclasses
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

from loguru import logger
import numpy as np

from .common import (
    DEFAULT_CS_DURATION,
    DEFAULT_MAX_DELAY,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_MESSAGE_HISTORY_LIMIT,
    DEFAULT_MIN_DELAY,
    DEFAULT_NUM_NODES,
    DEFAULT_REPLY_DELAY,
    DEFAULT_REQUEST_PROBABILITY,
    DEFAULT_TICK_INTERVAL,
    DEFAULT_TICK_PERIOD,
    RANDOM_CS_RANGE,
    RANDOM_MAX_DELAY_OFFSET,
    RANDOM_MIN_DELAY_RANGE,
    RANDOM_REQ_MAX_COUNT,
    RANDOM_REQ_MAX_TIME,
    ConfigurationError,
    CSDurations,
    EdgeDelays,
    ScheduledRequests,
    edge_key,
    edge_key_to_str,
    str_to_edge_key,
    validate_num_nodes,
)

PathLike = Union[str, Path]


def _non_negative_int(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigurationError(f"{what} must be a non-negative integer, got {value!r}.")
    return value


@dataclass
class SimulationConfig:
    num_nodes: int = DEFAULT_NUM_NODES
    cs_duration: int = DEFAULT_CS_DURATION
    cs_durations: CSDurations = field(default_factory=dict)
    min_delay: int = DEFAULT_MIN_DELAY
    max_delay: int = DEFAULT_MAX_DELAY
    edge_delays: EdgeDelays = field(default_factory=dict)
    reply_delay: int = DEFAULT_REPLY_DELAY
    tick_period: int = DEFAULT_TICK_PERIOD
    tick_interval: float = DEFAULT_TICK_INTERVAL
    request_probability: float = DEFAULT_REQUEST_PROBABILITY
    scheduled_requests: ScheduledRequests = field(default_factory=dict)
    seed: Optional[int] = None
    shuffle_due: bool = True
    message_history_limit: int = DEFAULT_MESSAGE_HISTORY_LIMIT
    history_limit: int = DEFAULT_HISTORY_LIMIT

    def validate(self) -> "SimulationConfig":
        validate_num_nodes(self.num_nodes)
        if _non_negative_int(self.cs_duration, "CS duration") < 1:
            raise ConfigurationError("CS duration must be at least 1 tick.")
        for node_id, duration in self.cs_durations.items():
            self._check_node_id(node_id, "CS duration")
            if _non_negative_int(duration, f"CS duration for Node {node_id}") < 1:
                raise ConfigurationError(
                    f"CS duration for Node {node_id} must be at least 1 tick."
                )

        min_d = _non_negative_int(self.min_delay, "Min delay")
        max_d = _non_negative_int(self.max_delay, "Max delay")
        if min_d > max_d:
            raise ConfigurationError(f"Invalid min/max delay ({min_d}/{max_d}).")
        normalized = {}
        for key, delays in self.edge_delays.items():
            if not isinstance(key, tuple) or len(key) != 2:
                raise ConfigurationError(f"Edge key {key!r} must be a pair of node ids.")
            u, v = key
            if u == v:
                raise ConfigurationError(f"Edge {key} connects a node to itself.")
            self._check_node_id(u, "Edge delay")
            self._check_node_id(v, "Edge delay")
            if not isinstance(delays, dict) or "min" not in delays or "max" not in delays:
                raise ConfigurationError(
                    f"Edge delay entry for {key} must be a dict with 'min' and 'max'."
                )
            e_min = _non_negative_int(delays["min"], f"Min delay for edge {key}")
            e_max = _non_negative_int(delays["max"], f"Max delay for edge {key}")
            if e_min > e_max:
                raise ConfigurationError(
                    f"Invalid min/max delay ({e_min}/{e_max}) for edge {key}."
                )
            normalized[edge_key(u, v)] = {"min": e_min, "max": e_max}
        self.edge_delays = normalized

        _non_negative_int(self.reply_delay, "Reply delay")
        if _non_negative_int(self.tick_period, "Tick period") < 1:
            raise ConfigurationError("Tick period must be at least 1 time unit.")
        if not isinstance(self.tick_interval, (int, float)) or self.tick_interval < 0:
            raise ConfigurationError(
                f"Tick interval must be a non-negative number, got {self.tick_interval!r}."
            )
        if not isinstance(self.request_probability, (int, float)) or not (
            0.0 <= self.request_probability <= 1.0
        ):
            raise ConfigurationError(
                f"Request probability must lie in [0, 1], got {self.request_probability!r}."
            )
        for node_id, times in self.scheduled_requests.items():
            self._check_node_id(node_id, "Scheduled request")
            if not isinstance(times, (list, tuple)):
                raise ConfigurationError(
                    f"Scheduled request times for Node {node_id} must be a list."
                )
            for t in times:
                _non_negative_int(t, f"Scheduled time for Node {node_id}")
        if self.seed is not None:
            _non_negative_int(self.seed, "Seed")
        _non_negative_int(self.message_history_limit, "Message history limit")
        if _non_negative_int(self.history_limit, "History limit") < 1:
            raise ConfigurationError("History limit must keep at least one entry.")
        return self

    def _check_node_id(self, node_id: Any, what: str) -> None:
        if isinstance(node_id, bool) or not isinstance(node_id, int) or not (
            0 <= node_id < self.num_nodes
        ):
            raise ConfigurationError(
                f"{what} references unknown node {node_id!r} (nodes 0..{self.num_nodes - 1})."
            )

    def cs_duration_for(self, node_id: int) -> int:
        return self.cs_durations.get(node_id, self.cs_duration)

    def full_edge_delays(self) -> EdgeDelays:
        """Delay bounds for every edge of the complete graph, overrides applied."""
        delays = {}
        for u in range(self.num_nodes):
            for v in range(u + 1, self.num_nodes):
                delays[(u, v)] = dict(
                    self.edge_delays.get(
                        (u, v), {"min": self.min_delay, "max": self.max_delay}
                    )
                )
        return delays

    def with_nodes(self, num_nodes: int) -> "SimulationConfig":
        """Copy of this config for a different node count, dropping per-node entries that no longer fit."""
        validate_num_nodes(num_nodes)
        return dataclasses.replace(
            self,
            num_nodes=num_nodes,
            cs_durations={k: v for k, v in self.cs_durations.items() if k < num_nodes},
            edge_delays={
                k: dict(v)
                for k, v in self.edge_delays.items()
                if max(k) < num_nodes
            },
            scheduled_requests={
                k: list(v)
                for k, v in self.scheduled_requests.items()
                if k < num_nodes
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "num_nodes": self.num_nodes,
            "cs_duration": self.cs_duration,
            "cs_durations": {str(k): v for k, v in self.cs_durations.items()},
            "min_delay": self.min_delay,
            "max_delay": self.max_delay,
            "edge_delays": {
                edge_key_to_str(k): {"min": v["min"], "max": v["max"]}
                for k, v in self.edge_delays.items()
            },
            "reply_delay": self.reply_delay,
            "tick_period": self.tick_period,
            "tick_interval": self.tick_interval,
            "request_probability": self.request_probability,
            "scheduled_requests": {
                str(k): sorted(set(v)) for k, v in self.scheduled_requests.items()
            },
            "seed": self.seed,
            "shuffle_due": self.shuffle_due,
            "message_history_limit": self.message_history_limit,
            "history_limit": self.history_limit,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SimulationConfig":
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a JSON object.")

        known = {f.name for f in dataclasses.fields(cls)}
        unknown = set(data) - known - {"metadata"}
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {sorted(unknown)}")

        kwargs = {k: v for k, v in data.items() if k in known}
        try:
            if "cs_durations" in kwargs:
                kwargs["cs_durations"] = {
                    int(k): v for k, v in _as_dict(kwargs["cs_durations"], "cs_durations").items()
                }
            if "edge_delays" in kwargs:
                kwargs["edge_delays"] = {
                    str_to_edge_key(k): v
                    for k, v in _as_dict(kwargs["edge_delays"], "edge_delays").items()
                }
            if "scheduled_requests" in kwargs:
                kwargs["scheduled_requests"] = {
                    int(k): v
                    for k, v in _as_dict(
                        kwargs["scheduled_requests"], "scheduled_requests"
                    ).items()
                }
        except ConfigurationError:
            raise
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Error processing configuration keys: {e}") from e

        return cls(**kwargs).validate()


def _as_dict(value: Any, what: str) -> Dict[Any, Any]:
    if not isinstance(value, dict):
        raise ConfigurationError(f"{what} must be a dictionary.")
    return value


def load_config(filepath: PathLike) -> SimulationConfig:
    filepath = Path(filepath)
    try:
        with open(filepath, "r") as f:
            loaded_data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"File not found: {filepath}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON file {filepath}: {e}") from e

    config = SimulationConfig.from_dict(loaded_data)
    logger.info(f"Configuration loaded from {filepath} ({config.num_nodes} nodes).")
    return config


def save_config(config: SimulationConfig, filepath: PathLike) -> Path:
    config.validate()
    json_data = config.to_dict()
    json_data["metadata"] = {
        "num_nodes": config.num_nodes,
        "saved_at": time.strftime("%Y-%m-%d %H:%M:%S"),
    }
    filepath = Path(filepath)
    with open(filepath, "w") as f:
        json.dump(json_data, f, indent=4)
    logger.info(f"Configuration saved to {filepath}.")
    return filepath


def config_template() -> Dict[str, Any]:
    """Example configuration document for four nodes."""
    template = SimulationConfig(
        num_nodes=4,
        cs_durations={0: 5, 3: 2},
        edge_delays={(0, 1): {"min": 2, "max": 8}, (2, 3): {"min": 10, "max": 20}},
        scheduled_requests={0: [0, 60], 2: [15]},
        seed=42,
    ).to_dict()
    template["metadata"] = {
        "description": "Template showing the configuration structure.",
        "generated_at": time.strftime("%Y-%m-%d %H:%M:%S"),
    }
    return template


def randomize_config(
    num_nodes: int, rng: Optional[np.random.Generator] = None
) -> SimulationConfig:
    """Random per-node durations, per-edge delays and scheduled requests."""
    validate_num_nodes(num_nodes)
    rng = rng if rng is not None else np.random.default_rng()
    logger.info(f"Randomizing configuration for {num_nodes} nodes...")

    cs_durations = {
        i: int(rng.integers(*RANDOM_CS_RANGE, endpoint=True)) for i in range(num_nodes)
    }

    edge_delays = {}
    for u in range(num_nodes):
        for v in range(u + 1, num_nodes):
            rand_min = int(rng.integers(*RANDOM_MIN_DELAY_RANGE, endpoint=True))
            rand_max = rand_min + int(rng.integers(*RANDOM_MAX_DELAY_OFFSET, endpoint=True))
            edge_delays[edge_key(u, v)] = {"min": rand_min, "max": rand_max}

    scheduled_requests = {}
    for i in range(num_nodes):
        count = int(rng.integers(0, RANDOM_REQ_MAX_COUNT, endpoint=True))
        if count:
            times = rng.choice(RANDOM_REQ_MAX_TIME + 1, size=count, replace=False)
            scheduled_requests[i] = sorted(int(t) for t in times)

    return SimulationConfig(
        num_nodes=num_nodes,
        cs_durations=cs_durations,
        edge_delays=edge_delays,
        scheduled_requests=scheduled_requests,
    ).validate()
