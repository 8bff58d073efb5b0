from __future__ import annotations

import heapq
import itertools
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from loguru import logger
import networkx as nx
import numpy as np

from .common import (
    DEFAULT_MAX_DELAY,
    DEFAULT_MESSAGE_HISTORY_LIMIT,
    DEFAULT_MIN_DELAY,
    ClockValue,
    EdgeDelays,
    MessageType,
    NodeId,
    SimTime,
    edge_key,
)


@dataclass
class Message:
    id: int
    sender: NodeId
    receiver: NodeId
    type: MessageType
    timestamp: ClockValue
    sent_at: SimTime
    deadline: SimTime
    delivered: bool = False
    delivered_at: Optional[SimTime] = None

    def __str__(self):
        return f"{self.type.name} N{self.sender}->N{self.receiver} TS={self.timestamp}"


MessageHandler = Callable[[Message], None]


def create_graph(num_nodes: int, edge_delays: Optional[EdgeDelays] = None) -> nx.Graph:
    """Build the fully connected network, each edge carrying its delay bounds."""
    edge_delays = edge_delays or {}
    G = nx.complete_graph(num_nodes)
    for u, v in G.edges():
        delays = edge_delays.get(
            edge_key(u, v),
            {"min": DEFAULT_MIN_DELAY, "max": DEFAULT_MAX_DELAY},
        )
        G.edges[u, v]["min_delay"] = int(delays.get("min", DEFAULT_MIN_DELAY))
        G.edges[u, v]["max_delay"] = int(delays.get("max", DEFAULT_MAX_DELAY))
    return G


class MessageTransport:
    """
    Simulated asynchronous network.

    Messages are reliable and delivered exactly once, but each one waits a
    random delay drawn from its edge's bounds, so concurrently sent
    messages may arrive in any order.
    """

    def __init__(
        self,
        graph: nx.Graph,
        rng: Optional[np.random.Generator] = None,
        shuffle_due: bool = True,
        history_limit: int = DEFAULT_MESSAGE_HISTORY_LIMIT,
    ):
        self.graph = graph
        self.rng = rng if rng is not None else np.random.default_rng()
        self.shuffle_due = shuffle_due
        self.history_limit = history_limit
        self.now: SimTime = 0
        self._ids = itertools.count(1)
        self._queue: List[Tuple[SimTime, int]] = []
        self._messages: "OrderedDict[int, Message]" = OrderedDict()

    def get_delay(self, u: NodeId, v: NodeId) -> int:
        if u == v:
            return 0
        try:
            edge_data = self.graph.edges[u, v]
        except KeyError:
            logger.warning(
                f"Edge ({u}, {v}) not found in graph for delay lookup. Using default delay 1."
            )
            return 1
        min_d = edge_data.get("min_delay", DEFAULT_MIN_DELAY)
        max_d = edge_data.get("max_delay", DEFAULT_MAX_DELAY)
        actual_min = min(min_d, max_d)
        actual_max = max(min_d, max_d)
        if actual_min == actual_max:
            return actual_min
        return int(self.rng.integers(actual_min, actual_max, endpoint=True))

    def send(
        self,
        sender: NodeId,
        receiver: NodeId,
        msg_type: MessageType,
        timestamp: ClockValue,
        extra_delay: int = 0,
    ) -> Optional[Message]:
        if sender == receiver:
            logger.warning(
                f"Attempt to send message from N{sender} to itself. Skipping."
            )
            return None

        delay = max(0, int(extra_delay)) + self.get_delay(sender, receiver)
        message = Message(
            id=next(self._ids),
            sender=sender,
            receiver=receiver,
            type=msg_type,
            timestamp=timestamp,
            sent_at=self.now,
            deadline=self.now + delay,
        )
        self._messages[message.id] = message
        heapq.heappush(self._queue, (message.deadline, message.id))
        logger.debug(
            f"T={self.now}: SEND {message}, Delay:{delay}, Arrival:{message.deadline}"
        )
        return message

    def deliver(self, message_id: int, handler: MessageHandler) -> bool:
        """Deliver one message regardless of its deadline. Redelivery is a no-op."""
        message = self._messages.get(message_id)
        if message is None:
            logger.warning(f"Message #{message_id} is unknown. Nothing delivered.")
            return False
        if message.delivered:
            logger.debug(f"Message #{message_id} ({message}) already delivered. Ignored.")
            return False
        message.delivered = True
        message.delivered_at = self.now
        handler(message)
        self._prune_history()
        return True

    def deliver_due(self, handler: MessageHandler, now: Optional[SimTime] = None) -> int:
        """
        Deliver every message whose deadline is at or before ``now``.

        Time moves forward deadline by deadline, so a message sent while
        handling another one is delivered in the same call if it also falls
        due by ``now``. Messages sharing a deadline are handed over in a
        random order when ``shuffle_due`` is set. Returns the number of
        messages delivered.
        """
        target_time = self.now if now is None else now
        if target_time < self.now:
            logger.warning(
                f"Attempted to move transport time backwards (T={target_time} < Current T={self.now}). Ignored."
            )
            target_time = self.now

        delivered = 0
        while True:
            deadline = self._peek_deadline()
            if deadline is None or deadline > target_time:
                break
            self.now = max(self.now, deadline)
            batch = self._pop_due()
            if self.shuffle_due and len(batch) > 1:
                batch = [batch[i] for i in self.rng.permutation(len(batch))]
            for message_id in batch:
                if self.deliver(message_id, handler):
                    delivered += 1
        self.now = target_time
        return delivered

    def _peek_deadline(self) -> Optional[SimTime]:
        while self._queue:
            deadline, message_id = self._queue[0]
            message = self._messages.get(message_id)
            if message is not None and not message.delivered:
                return deadline
            # Already delivered out of order, or pruned.
            heapq.heappop(self._queue)
        return None

    def _pop_due(self) -> List[int]:
        due = []
        while self._queue and self._queue[0][0] <= self.now:
            _, message_id = heapq.heappop(self._queue)
            message = self._messages.get(message_id)
            # Out-of-order delivery may already have consumed the entry.
            if message is not None and not message.delivered:
                due.append(message_id)
        return due

    def next_deadline(self) -> Optional[SimTime]:
        return self._peek_deadline()

    def in_flight(self) -> List[Message]:
        return [m for m in self._messages.values() if not m.delivered]

    def messages(self) -> List[Message]:
        return list(self._messages.values())

    def clear(self) -> None:
        self._queue.clear()
        self._messages.clear()
        self._ids = itertools.count(1)
        self.now = 0

    def _prune_history(self) -> None:
        delivered = [m.id for m in self._messages.values() if m.delivered]
        excess = len(delivered) - self.history_limit
        for message_id in delivered[: max(0, excess)]:
            del self._messages[message_id]
