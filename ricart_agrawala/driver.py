from __future__ import annotations

import bisect
import threading
from typing import List, Optional, Tuple

from loguru import logger

from .common import EventType, NodeId, NodeState, SimTime
from .engine import MutexEngine
from .snapshot import SimulationSnapshot


class SimulationDriver:
    """
    Periodic policy layer on top of a ``MutexEngine``.

    Each tick advances simulated time by ``tick_period``, delivers the
    messages that became due, counts down occupied critical sections and
    lets idle nodes issue requests, either from the configured schedule or
    at random with ``request_probability``. Nothing here is needed for the
    protocol to be correct; the same engine can be driven by hand.
    """

    def __init__(self, engine: MutexEngine):
        self.engine = engine
        self.tick_count: int = 0
        self.tick_interval: float = engine.config.tick_interval
        self._schedule: List[Tuple[SimTime, NodeId]] = []
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._load_schedule()

    @property
    def config(self):
        return self.engine.config

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _load_schedule(self) -> None:
        self._schedule = []
        logger.info(f"  Scheduled Requests Config: {self.config.scheduled_requests}")
        for node_id, times in self.config.scheduled_requests.items():
            for time_val in times:
                logger.info(f"    Scheduling N{node_id} request @ T={time_val}")
                bisect.insort(self._schedule, (time_val, node_id))

    def _fire_scheduled_requests(self) -> List[NodeId]:
        fired = []
        while self._schedule and self._schedule[0][0] <= self.engine.now:
            _, node_id = self._schedule.pop(0)
            logger.info(
                f"T={self.engine.now}: Handling scheduled request for N{node_id}."
            )
            if self.engine.request_cs(node_id, EventType.SCHEDULED_REQUEST):
                fired.append(node_id)
        return fired

    def _issue_random_requests(self) -> List[NodeId]:
        probability = self.config.request_probability
        issued = []
        if probability <= 0:
            return issued
        for node_id, node in self.engine.nodes.items():
            if node.state != NodeState.RELEASED:
                continue
            if self.engine.rng.random() < probability:
                if self.engine.request_cs(node_id, EventType.RANDOM_REQUEST):
                    issued.append(node_id)
        return issued

    def tick(self) -> SimulationSnapshot:
        with self.engine.lock:
            self.tick_count += 1
            target_time = self.engine.now + self.config.tick_period
            logger.debug(f"--- Tick {self.tick_count}: advancing to T={target_time} ---")
            self.engine.advance_to(target_time)
            self.engine.tick_timers()
            self._fire_scheduled_requests()
            self._issue_random_requests()
            return self.engine.snapshot()

    def run(self, ticks: int) -> SimulationSnapshot:
        if not isinstance(ticks, int) or ticks < 0:
            raise ValueError(f"Tick count must be a non-negative integer, got {ticks!r}.")
        snapshot = self.engine.snapshot()
        for _ in range(ticks):
            snapshot = self.tick()
        return snapshot

    def _loop(self) -> None:
        while not self._stop_event.wait(self.tick_interval):
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Driver tick failed, stopping: {e}")
                break

    def start(self) -> bool:
        if self.is_running:
            logger.info("Driver already running.")
            return False
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name="ricart-agrawala-driver", daemon=True
        )
        self._thread.start()
        logger.info(f"Driver started (interval {self.tick_interval}s).")
        return True

    def stop(self) -> bool:
        """Stop ticking. Node states and in-flight messages stay as they are."""
        if not self.is_running:
            return False
        self._stop_event.set()
        if self._thread is not threading.current_thread():
            self._thread.join()
        self._thread = None
        logger.info(f"Driver stopped at T={self.engine.now} after {self.tick_count} ticks.")
        return True

    def set_speed(self, tick_interval: float) -> None:
        if tick_interval < 0:
            raise ValueError(f"Tick interval must be non-negative, got {tick_interval}.")
        self.tick_interval = tick_interval

    def reset(self, num_nodes: Optional[int] = None) -> None:
        self.stop()
        self.engine.initialize(num_nodes)
        self.tick_count = 0
        self._load_schedule()
