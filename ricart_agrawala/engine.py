from __future__ import annotations

import threading
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from loguru import logger
import numpy as np

from .common import (
    ClockValue,
    EventType,
    HistoryEntry,
    MessageType,
    NodeId,
    NodeState,
    SimTime,
    validate_num_nodes,
)
from .config import SimulationConfig
from .node import Node
from .snapshot import MessageSnapshot, NodeSnapshot, SimulationSnapshot
from .transport import Message, MessageTransport, create_graph

Listener = Callable[[SimulationSnapshot], None]


class MutexEngine:
    """
    Ricart-Agrawala mutual exclusion over a simulated network.

    The engine owns every node and the transport. All mutation goes through
    its public methods, which are serialized by a single re-entrant lock;
    callers only ever see immutable snapshots.
    """

    def __init__(
        self,
        config: Optional[SimulationConfig] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.config: SimulationConfig = (config or SimulationConfig()).validate()
        self.rng = rng if rng is not None else np.random.default_rng(self.config.seed)
        self._lock = threading.RLock()
        self.listeners: List[Listener] = []

        self.nodes: Dict[NodeId, Node] = {}
        self.transport: Optional[MessageTransport] = None
        self.global_clock: ClockValue = 0
        self.history_data: Deque[HistoryEntry] = deque(maxlen=self.config.history_limit)
        self.cs_entries: int = 0
        self.safety_violations: int = 0

        self.initialize(self.config.num_nodes)

    @property
    def num_nodes(self) -> int:
        return len(self.nodes)

    @property
    def now(self) -> SimTime:
        return self.transport.now

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def initialize(self, num_nodes: Optional[int] = None) -> None:
        """(Re)create ``num_nodes`` RELEASED nodes and an empty network."""
        if num_nodes is None:
            num_nodes = self.config.num_nodes
        validate_num_nodes(num_nodes)

        with self._lock:
            if num_nodes != self.config.num_nodes:
                self.config = self.config.with_nodes(num_nodes)

            logger.info(f"Initializing Simulation with {num_nodes} nodes.")
            self.nodes = {
                i: Node(i, self.config.cs_duration_for(i)) for i in range(num_nodes)
            }
            graph = create_graph(num_nodes, self.config.full_edge_delays())
            self.transport = MessageTransport(
                graph,
                rng=self.rng,
                shuffle_due=self.config.shuffle_due,
                history_limit=self.config.message_history_limit,
            )
            self.global_clock = 0
            self.history_data = deque(maxlen=self.config.history_limit)
            self.cs_entries = 0
            self.safety_violations = 0

            self._log_state(
                EventType.INIT,
                f"Simulation initialized with {num_nodes} nodes.",
                list(range(num_nodes)),
            )
        self._notify()

    def add_listener(self, listener: Listener) -> None:
        self.listeners.append(listener)

    def _get_node(self, node_id: NodeId, action: str) -> Optional[Node]:
        node = self.nodes.get(node_id)
        if node is None:
            logger.error(f"Node {node_id} not found in {action}.")
        return node

    def _tick_clock(self, node: Node, received_ts: ClockValue = 0) -> ClockValue:
        value = node.update_clock(received_ts)
        self.global_clock = max(self.global_clock, value)
        return value

    def _send(
        self,
        sender: Node,
        receiver_id: NodeId,
        msg_type: MessageType,
        timestamp: ClockValue,
        extra_delay: int = 0,
    ) -> Optional[Message]:
        return self.transport.send(
            sender.id, receiver_id, msg_type, timestamp, extra_delay=extra_delay
        )

    def request_cs(
        self, node_id: NodeId, event_type: EventType = EventType.MANUAL_REQUEST
    ) -> bool:
        with self._lock:
            node = self._get_node(node_id, "request_cs")
            if node is None:
                return False
            if node.state != NodeState.RELEASED:
                logger.info(
                    f"T={self.now}: N{node_id} cannot request CS (State: {node.state.name})."
                )
                return False

            peers = [i for i in self.nodes if i != node_id]
            node.begin_request(peers)
            self.global_clock = max(self.global_clock, node.clock.value)
            logger.info(
                f"T={self.now}: N{node_id} wants CS, broadcasting REQUESTS (ReqTS: {node.ticket})."
            )
            for other_id in peers:
                self._send(node, other_id, MessageType.REQUEST, node.request_ts)

            self._log_state(
                event_type, f"Node {node_id} requested CS at TS={node.request_ts}.", [node_id]
            )
            if node.state == NodeState.HELD:
                self._entered_cs(node)
        self._notify()
        return True

    def release_cs(self, node_id: NodeId) -> bool:
        with self._lock:
            node = self._get_node(node_id, "release_cs")
            if node is None:
                return False
            if node.state != NodeState.HELD:
                logger.info(
                    f"T={self.now}: N{node_id} cannot release CS (State: {node.state.name})."
                )
                return False

            deferred = node.release()
            logger.info(f"T={self.now}: --- N{node_id} EXIT CS ---")
            details = f"Node {node_id} exited CS."
            if deferred:
                reply_ts = self._tick_clock(node)
                logger.debug(
                    f"  -> N{node_id} sending deferred REPLYs to {deferred} (Clock now {reply_ts})."
                )
                for waiting_id in deferred:
                    self._send(node, waiting_id, MessageType.REPLY, reply_ts)
                details += f" Sent {len(deferred)} deferred replies to {deferred}."
            else:
                details += " No deferred requests."
            self._log_state(EventType.CS_EXIT, details, [node_id, *deferred])
        self._notify()
        return True

    def on_request(self, message: Message) -> None:
        """Apply the reply-or-defer rule to a REQUEST arriving at its receiver."""
        with self._lock:
            self._process_request(message)
        self._notify()

    def on_reply(self, message: Message) -> None:
        with self._lock:
            self._process_reply(message)
        self._notify()

    def _process_request(self, message: Message) -> None:
        receiver = self._get_node(message.receiver, "on_request")
        if receiver is None:
            return
        sender_id = message.sender
        self._tick_clock(receiver, message.timestamp)
        logger.debug(
            f"  -> N{receiver.id} Clock updated to {receiver.clock.value}"
        )

        if receiver.state == NodeState.RELEASED:
            should_reply_immediately = True
            logger.debug(f"  -> N{receiver.id} is RELEASED. Replying to N{sender_id}.")
        elif receiver.state == NodeState.WANTED:
            # Lexicographic (timestamp, id): the lower id wins a timestamp tie.
            should_reply_immediately = not receiver.has_priority_over(
                message.timestamp, sender_id
            )
            if should_reply_immediately:
                logger.debug(
                    f"  -> N{receiver.id} is WANTED, N{sender_id}'s request {(message.timestamp, sender_id)} "
                    f"has priority over mine {receiver.ticket}. Replying."
                )
            else:
                logger.debug(
                    f"  -> N{receiver.id} is WANTED, my request {receiver.ticket} has priority over "
                    f"N{sender_id}'s {(message.timestamp, sender_id)}. Deferring."
                )
        else:
            should_reply_immediately = False
            logger.debug(f"  -> N{receiver.id} is HELD, deferring N{sender_id}.")

        if should_reply_immediately:
            reply_ts = self._tick_clock(receiver)
            self._send(
                receiver,
                sender_id,
                MessageType.REPLY,
                reply_ts,
                extra_delay=self.config.reply_delay,
            )
        elif receiver.defer(sender_id):
            logger.debug(
                f"  -> N{receiver.id} added N{sender_id} to deferred queue: {receiver.deferred_replies}"
            )
        else:
            logger.warning(
                f"  -> N{receiver.id} N{sender_id} already in deferred queue. {receiver.deferred_replies}"
            )

    def _process_reply(self, message: Message) -> None:
        receiver = self._get_node(message.receiver, "on_reply")
        if receiver is None:
            return
        sender_id = message.sender
        self._tick_clock(receiver, message.timestamp)

        if receiver.state != NodeState.WANTED:
            logger.warning(
                f"  -> N{receiver.id} got REPLY from N{sender_id} but is not WANTED "
                f"(State: {receiver.state.name}). Ignored."
            )
            return
        if sender_id not in receiver.pending_replies:
            logger.warning(
                f"  -> N{receiver.id} got unexpected/duplicate REPLY from N{sender_id}. "
                f"Outstanding set: {receiver.pending_replies}. Ignored."
            )
            return

        entered = receiver.record_reply(sender_id)
        logger.debug(
            f"  -> N{receiver.id} got needed REPLY from N{sender_id}. "
            f"Remaining replies needed: {len(receiver.pending_replies)}"
        )
        if entered:
            self._entered_cs(receiver)

    def _entered_cs(self, node: Node) -> None:
        self.cs_entries += 1
        logger.info(
            f"T={self.now}: +++ N{node.id} ENTER CS (Duration: {node.cs_duration}) +++"
        )
        self._log_state(
            EventType.CS_ENTER,
            f"Node {node.id} entered CS (Duration: {node.cs_duration})",
            [node.id],
        )
        self._check_safety()

    def _check_safety(self) -> None:
        held = self.held_nodes()
        if len(held) > 1:
            self.safety_violations += 1
            details = f"Mutual exclusion violated: nodes {held} are all HELD."
            logger.critical(f"T={self.now}: {details}")
            self._log_state(EventType.ERROR, details, held)

    def _handle_message(self, message: Message) -> None:
        logger.debug(f"T={self.now}: RECV N{message.receiver}<-N{message.sender} ({message.type.name}) MsgTS:{message.timestamp}")
        if message.type == MessageType.REQUEST:
            self._process_request(message)
        elif message.type == MessageType.REPLY:
            self._process_reply(message)
        self._log_state(
            EventType.MESSAGE_ARRIVAL,
            f"{message.type.name} N{message.sender}->N{message.receiver} processed.",
            [message.receiver, message.sender],
        )

    def deliver(self, message_id: int) -> bool:
        """Deliver a single in-flight message now, ignoring its deadline."""
        with self._lock:
            delivered = self.transport.deliver(message_id, self._handle_message)
        if delivered:
            self._notify()
        return delivered

    def deliver_due(self, now: Optional[SimTime] = None) -> int:
        with self._lock:
            count = self.transport.deliver_due(self._handle_message, now)
        if count:
            self._notify()
        return count

    def advance_to(self, now: SimTime) -> int:
        """Move simulated time forward to ``now`` and deliver everything that became due."""
        with self._lock:
            initial_time = self.now
            count = self.deliver_due(now)
            self._log_state(
                EventType.TIME_ADVANCE,
                f"Advanced time from T={initial_time} to T={self.now} (processed {count} messages).",
                [],
            )
        return count

    def tick_timers(self) -> List[NodeId]:
        """Consume one tick of every occupied critical section, releasing expired ones."""
        released = []
        with self._lock:
            for node in self.nodes.values():
                if node.countdown():
                    released.append(node.id)
            for node_id in released:
                self.release_cs(node_id)
        return released

    def held_nodes(self) -> List[NodeId]:
        with self._lock:
            return [n.id for n in self.nodes.values() if n.state == NodeState.HELD]

    def in_flight(self) -> List[Message]:
        with self._lock:
            return self.transport.in_flight()

    def snapshot(self) -> SimulationSnapshot:
        with self._lock:
            return SimulationSnapshot(
                nodes=tuple(NodeSnapshot.of(self.nodes[i]) for i in sorted(self.nodes)),
                messages=tuple(MessageSnapshot.of(m) for m in self.transport.messages()),
                global_clock=self.global_clock,
                now=self.now,
            )

    def _get_current_node_snapshots(self) -> Dict[NodeId, NodeSnapshot]:
        return {node_id: NodeSnapshot.of(node) for node_id, node in self.nodes.items()}

    def _log_state(
        self, event_type: EventType, details: str, involved_node_ids: List[NodeId]
    ) -> None:
        self.history_data.append(
            {
                "time": int(self.now) if self.transport else 0,
                "type": event_type,
                "details": details,
                "involved": involved_node_ids,
                "node_snapshots": self._get_current_node_snapshots(),
            }
        )

    def _notify(self) -> None:
        if not self.listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self.listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Error during snapshot listener callback: {e}")
