from __future__ import annotations

from typing import Iterable, List, Optional, Set, Union

from loguru import logger

from .clock import LamportClock
from .common import (
    DEFAULT_CS_DURATION,
    ClockValue,
    NodeId,
    NodeState,
    Ticket,
)


class Node:
    """
    A single participant of the Ricart-Agrawala protocol.

    The node only tracks its own state. Sending messages and deciding when
    to reply is the engine's job; the node exposes the transitions the
    engine drives it through:

    - RELEASED -> WANTED via ``begin_request``
    - WANTED -> HELD via ``record_reply`` once every peer has replied
    - HELD -> RELEASED via ``release``, which hands back the deferred ids
    """

    def __init__(
        self,
        node_id: NodeId,
        cs_duration: Union[int, float, str] = DEFAULT_CS_DURATION,
    ):
        self.id: NodeId = node_id
        self.cs_duration: int = DEFAULT_CS_DURATION

        try:
            duration_val = int(cs_duration)
            if duration_val < 1:
                logger.warning(
                    f"Node {node_id} initialized with CS duration {cs_duration} below 1 tick. "
                    f"Using 1 instead."
                )
                self.cs_duration = 1
            else:
                self.cs_duration = duration_val
        except (ValueError, TypeError):
            logger.error(
                f"Invalid CS duration type/value '{cs_duration}' for Node {node_id}. "
                f"Using default: {DEFAULT_CS_DURATION}."
            )
            self.cs_duration = DEFAULT_CS_DURATION

        self.state: NodeState = NodeState.RELEASED
        self.clock = LamportClock()
        self.request_ts: Optional[ClockValue] = None
        self.pending_replies: Set[NodeId] = set()
        self.deferred_replies: List[NodeId] = []
        self.cs_timer: int = 0

    @property
    def ticket(self) -> Optional[Ticket]:
        if self.request_ts is None:
            return None
        return self.request_ts, self.id

    def has_priority_over(
        self, other_ts: ClockValue, other_id: NodeId
    ) -> bool:
        """True when this node's outstanding request is older than (other_ts, other_id)."""
        if self.ticket is None:
            return False
        return self.ticket < (other_ts, other_id)

    def update_clock(self, received_ts: ClockValue = 0) -> ClockValue:
        return self.clock.tick(received_ts)

    def begin_request(self, peers: Iterable[NodeId]) -> bool:
        if self.state != NodeState.RELEASED:
            return False

        self.state = NodeState.WANTED
        self.request_ts = self.update_clock()
        self.pending_replies.clear()
        self.pending_replies.update(p for p in peers if p != self.id)
        if not self.pending_replies:
            self.enter_cs()
        return True

    def record_reply(self, sender_id: NodeId) -> bool:
        """
        Account for a REPLY from ``sender_id``.

        Returns True only when this reply completed the request and the node
        moved into the critical section.
        """
        if self.state != NodeState.WANTED:
            return False
        if sender_id not in self.pending_replies:
            return False
        self.pending_replies.discard(sender_id)
        if not self.pending_replies:
            self.enter_cs()
            return True
        return False

    def defer(self, sender_id: NodeId) -> bool:
        if sender_id == self.id or sender_id in self.deferred_replies:
            return False
        self.deferred_replies.append(sender_id)
        return True

    def enter_cs(self) -> None:
        self.state = NodeState.HELD
        self.pending_replies.clear()
        self.cs_timer = self.cs_duration

    def countdown(self) -> bool:
        """Consume one tick of occupancy; True when the timer ran out."""
        if self.state != NodeState.HELD or self.cs_timer <= 0:
            return False
        self.cs_timer -= 1
        return self.cs_timer == 0

    def release(self) -> Optional[List[NodeId]]:
        if self.state != NodeState.HELD:
            return None
        self.state = NodeState.RELEASED
        deferred = list(self.deferred_replies)
        self.deferred_replies.clear()
        self.request_ts = None
        self.cs_timer = 0
        return deferred

    def __repr__(self) -> str:
        state_char = str(self.state)
        req_str = f"({self.request_ts},{self.id})" if self.ticket else "(-)"
        return (
            f"N(id:{self.id}, S:{state_char}, C:{self.clock.value}, Req:{req_str}, "
            f"Out:{len(self.pending_replies)}, Def:{len(self.deferred_replies)}, T:{self.cs_timer})"
        )
