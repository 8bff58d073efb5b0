"""Immutable views of the simulation handed to renderers and tests."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from .common import ClockValue, MessageType, NodeId, NodeState, SimTime
from .node import Node
from .transport import Message


@dataclass(frozen=True)
class NodeSnapshot:
    id: NodeId
    state: NodeState
    clock: ClockValue
    request_ts: Optional[ClockValue]
    pending_replies: Tuple[NodeId, ...]
    deferred_replies: Tuple[NodeId, ...]
    cs_timer: int

    @classmethod
    def of(cls, node: Node) -> "NodeSnapshot":
        return cls(
            id=node.id,
            state=node.state,
            clock=node.clock.value,
            request_ts=node.request_ts,
            pending_replies=tuple(sorted(node.pending_replies)),
            deferred_replies=tuple(node.deferred_replies),
            cs_timer=node.cs_timer,
        )

    @property
    def in_critical_section(self) -> bool:
        return self.state == NodeState.HELD


@dataclass(frozen=True)
class MessageSnapshot:
    id: int
    sender: NodeId
    receiver: NodeId
    type: MessageType
    timestamp: ClockValue
    sent_at: SimTime
    deadline: SimTime
    delivered: bool

    @classmethod
    def of(cls, message: Message) -> "MessageSnapshot":
        return cls(
            id=message.id,
            sender=message.sender,
            receiver=message.receiver,
            type=message.type,
            timestamp=message.timestamp,
            sent_at=message.sent_at,
            deadline=message.deadline,
            delivered=message.delivered,
        )


@dataclass(frozen=True)
class SimulationSnapshot:
    nodes: Tuple[NodeSnapshot, ...]
    messages: Tuple[MessageSnapshot, ...]
    global_clock: ClockValue
    now: SimTime

    @property
    def in_flight(self) -> Tuple[MessageSnapshot, ...]:
        return tuple(m for m in self.messages if not m.delivered)

    @property
    def held(self) -> Tuple[NodeId, ...]:
        return tuple(n.id for n in self.nodes if n.in_critical_section)

    def node(self, node_id: NodeId) -> NodeSnapshot:
        return self.nodes[node_id]
