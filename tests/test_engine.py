import dataclasses
import itertools
import threading

from loguru import logger
import pytest

from ricart_agrawala import (
    ConfigurationError,
    EventType,
    Message,
    MessageType,
    NodeState,
)

from .helpers import (
    deliver_one,
    deliver_requests_from,
    find_messages,
    make_engine,
)


def test_initialize_creates_released_nodes(engine):
    snapshot = engine.snapshot()
    assert len(snapshot.nodes) == 3
    assert all(n.state == NodeState.RELEASED for n in snapshot.nodes)
    assert snapshot.messages == ()
    assert snapshot.global_clock == 0
    assert engine.history_data[0]["type"] == EventType.INIT


def test_reinitialize_clears_messages_and_clock(engine):
    engine.request_cs(0)
    engine.initialize(5)
    snapshot = engine.snapshot()
    assert len(snapshot.nodes) == 5
    assert snapshot.messages == ()
    assert snapshot.global_clock == 0
    assert snapshot.now == 0


@pytest.mark.parametrize("bad_count", [0, 1, 101, "3", True])
def test_invalid_node_count_leaves_state_untouched(engine, bad_count):
    engine.request_cs(0)
    before = engine.snapshot()
    with pytest.raises(ConfigurationError):
        engine.initialize(bad_count)
    assert engine.snapshot() == before


def test_request_broadcasts_to_every_peer(engine):
    assert engine.request_cs(1)
    node = engine.snapshot().node(1)
    assert node.state == NodeState.WANTED
    assert node.request_ts == 1
    assert node.pending_replies == (0, 2)

    requests = find_messages(engine, MessageType.REQUEST, sender=1)
    assert sorted(m.receiver for m in requests) == [0, 2]
    assert all(m.timestamp == 1 for m in requests)


def test_invalid_operations_are_noops(engine):
    assert not engine.release_cs(0)
    engine.request_cs(0)
    before = engine.snapshot()

    assert not engine.request_cs(0)
    assert not engine.release_cs(0)
    assert not engine.request_cs(42)
    assert not engine.release_cs(-1)
    assert engine.snapshot() == before


def test_released_receiver_replies_immediately(engine):
    engine.request_cs(0)
    deliver_one(engine, MessageType.REQUEST, 0, 1)

    receiver = engine.snapshot().node(1)
    # Merge the request timestamp, then tick again for the reply.
    assert receiver.clock == 3
    replies = find_messages(engine, MessageType.REPLY, sender=1, receiver=0)
    assert [m.timestamp for m in replies] == [3]
    assert receiver.deferred_replies == ()


def test_held_receiver_defers(engine):
    engine.request_cs(0)
    deliver_requests_from(engine, 0)
    deliver_one(engine, MessageType.REPLY, 1, 0)
    deliver_one(engine, MessageType.REPLY, 2, 0)
    assert engine.snapshot().node(0).state == NodeState.HELD

    engine.request_cs(2)
    deliver_one(engine, MessageType.REQUEST, 2, 0)
    assert engine.snapshot().node(0).deferred_replies == (2,)
    assert find_messages(engine, MessageType.REPLY, sender=0) == []


def test_tie_break_favors_lower_node_id(engine):
    # Fresh clocks give both requests the same timestamp.
    engine.request_cs(0)
    engine.request_cs(1)
    assert engine.snapshot().node(0).request_ts == engine.snapshot().node(1).request_ts == 1

    deliver_one(engine, MessageType.REQUEST, 1, 0)
    assert engine.snapshot().node(0).deferred_replies == (1,)
    assert find_messages(engine, MessageType.REPLY, sender=0) == []

    deliver_one(engine, MessageType.REQUEST, 0, 1)
    assert engine.snapshot().node(1).deferred_replies == ()
    assert len(find_messages(engine, MessageType.REPLY, sender=1, receiver=0)) == 1


def test_tie_break_is_independent_of_arrival_order():
    engine = make_engine(3)
    engine.request_cs(2)
    engine.request_cs(1)

    # Node 1 sees node 2's request first and still wins the tie.
    deliver_one(engine, MessageType.REQUEST, 2, 1)
    assert engine.snapshot().node(1).deferred_replies == (2,)
    deliver_one(engine, MessageType.REQUEST, 1, 2)
    assert engine.snapshot().node(2).deferred_replies == ()

    engine.deliver_due(100)
    snapshot = engine.snapshot()
    assert snapshot.node(1).state == NodeState.HELD
    assert snapshot.node(2).state == NodeState.WANTED
    assert snapshot.node(2).pending_replies == (1,)


def test_older_timestamp_wins_over_lower_id():
    engine = make_engine(3)
    engine.request_cs(2)
    deliver_one(engine, MessageType.REQUEST, 2, 0)
    # Node 0's clock has moved past node 2's ticket.
    engine.request_cs(0)
    assert engine.snapshot().node(0).request_ts > 1

    deliver_one(engine, MessageType.REQUEST, 2, 1)
    engine.deliver_due(100)
    assert engine.snapshot().held == (2,)


@pytest.mark.parametrize("num_nodes", [2, 3, 5])
def test_single_requester_needs_exactly_n_minus_one_replies(num_nodes):
    engine = make_engine(num_nodes)
    engine.request_cs(0)
    deliver_requests_from(engine, 0)

    replies = find_messages(engine, MessageType.REPLY, receiver=0)
    assert len(replies) == num_nodes - 1
    for count, reply in enumerate(replies, start=1):
        assert engine.snapshot().node(0).state == NodeState.WANTED
        assert engine.deliver(reply.id)
        assert len(engine.snapshot().node(0).pending_replies) == num_nodes - 1 - count
    assert engine.snapshot().node(0).state == NodeState.HELD


def test_reply_order_does_not_change_outcome():
    outcomes = set()
    for order in itertools.permutations([1, 2, 3]):
        engine = make_engine(4)
        engine.request_cs(0)
        deliver_requests_from(engine, 0)
        for sender in order:
            deliver_one(engine, MessageType.REPLY, sender, 0)
        outcomes.add(engine.snapshot().node(0))

    assert len(outcomes) == 1
    node = outcomes.pop()
    assert node.state == NodeState.HELD
    assert node.pending_replies == ()


def test_release_flushes_every_deferred_reply():
    engine = make_engine(4)
    engine.request_cs(0)
    engine.deliver_due(10)
    assert engine.snapshot().held == (0,)

    for requester in (3, 1, 2):
        engine.request_cs(requester)
        deliver_one(engine, MessageType.REQUEST, requester, 0)
    assert engine.snapshot().node(0).deferred_replies == (3, 1, 2)
    assert find_messages(engine, MessageType.REPLY, sender=0) == []

    assert engine.release_cs(0)
    node = engine.snapshot().node(0)
    flushed = find_messages(engine, MessageType.REPLY, sender=0)
    assert [m.receiver for m in flushed] == [3, 1, 2]
    assert {m.timestamp for m in flushed} == {node.clock}
    assert node.deferred_replies == ()
    assert node.state == NodeState.RELEASED
    assert node.request_ts is None


def test_redelivery_has_no_effect(engine):
    engine.request_cs(0)
    deliver_requests_from(engine, 0)
    reply = deliver_one(engine, MessageType.REPLY, 1, 0)
    before = engine.snapshot()

    assert not engine.deliver(reply.id)
    assert engine.snapshot() == before


def test_duplicate_reply_is_tolerated(engine):
    engine.request_cs(0)
    deliver_requests_from(engine, 0)
    deliver_one(engine, MessageType.REPLY, 1, 0)

    duplicate = Message(
        id=999,
        sender=1,
        receiver=0,
        type=MessageType.REPLY,
        timestamp=3,
        sent_at=0,
        deadline=0,
    )
    engine.on_reply(duplicate)
    node = engine.snapshot().node(0)
    assert node.state == NodeState.WANTED
    assert node.pending_replies == (2,)


def test_reply_to_released_node_is_ignored(engine):
    late = Message(
        id=999, sender=2, receiver=1, type=MessageType.REPLY, timestamp=7, sent_at=0, deadline=0
    )
    engine.on_reply(late)
    node = engine.snapshot().node(1)
    assert node.state == NodeState.RELEASED
    assert node.clock == 8


def test_reply_handler_waits_for_engine_lock(engine):
    engine.request_cs(0)
    deliver_requests_from(engine, 0)
    reply = find_messages(engine, MessageType.REPLY, sender=1, receiver=0)[0]

    worker = threading.Thread(target=engine.on_reply, args=(reply,))
    with engine.lock:
        worker.start()
        worker.join(0.2)
        assert worker.is_alive()
        assert engine.nodes[0].pending_replies == {1, 2}
    worker.join(5)
    assert not worker.is_alive()
    assert engine.snapshot().node(0).pending_replies == (2,)


def test_message_traffic_stays_below_info_level(engine):
    lines = []
    handler_id = logger.add(lines.append, level="INFO", format="{message}")
    try:
        engine.request_cs(0)
        engine.deliver_due(10)
    finally:
        logger.remove(handler_id)

    text = "".join(lines)
    assert "ENTER CS" in text
    assert "SEND" not in text
    assert "RECV" not in text

def test_three_node_scenario():
    engine = make_engine(3)
    engine.request_cs(0)
    engine.request_cs(1)
    assert engine.snapshot().node(0).request_ts == 1

    # Both peers answer node 0 right away.
    deliver_one(engine, MessageType.REQUEST, 0, 1)
    deliver_one(engine, MessageType.REQUEST, 0, 2)
    deliver_one(engine, MessageType.REPLY, 1, 0)
    deliver_one(engine, MessageType.REPLY, 2, 0)
    assert engine.snapshot().held == (0,)

    # Node 0 holds the section and defers node 1; node 2 replies.
    deliver_one(engine, MessageType.REQUEST, 1, 0)
    deliver_one(engine, MessageType.REQUEST, 1, 2)
    deliver_one(engine, MessageType.REPLY, 2, 1)
    snapshot = engine.snapshot()
    assert snapshot.node(0).deferred_replies == (1,)
    assert snapshot.node(1).state == NodeState.WANTED
    assert snapshot.node(1).pending_replies == (0,)

    engine.release_cs(0)
    deliver_one(engine, MessageType.REPLY, 0, 1)
    snapshot = engine.snapshot()
    assert snapshot.held == (1,)
    assert snapshot.node(0).state == NodeState.RELEASED
    assert engine.cs_entries == 2


def test_tick_timers_releases_expired_section():
    engine = make_engine(3, cs_duration=2)
    engine.request_cs(0)
    engine.deliver_due(10)
    assert engine.tick_timers() == []
    assert engine.snapshot().node(0).cs_timer == 1
    assert engine.tick_timers() == [0]
    assert engine.snapshot().node(0).state == NodeState.RELEASED


def test_per_node_cs_duration():
    engine = make_engine(3, cs_durations={1: 5})
    engine.request_cs(1)
    engine.deliver_due(10)
    assert engine.snapshot().node(1).cs_timer == 5


def test_reply_delay_postpones_immediate_replies():
    engine = make_engine(2, reply_delay=4)
    engine.request_cs(0)
    deliver_one(engine, MessageType.REQUEST, 0, 1)
    reply = find_messages(engine, MessageType.REPLY, sender=1)[0]
    assert reply.deadline == engine.now + 4 + 1


def test_global_clock_tracks_highest_node_clock(engine):
    engine.request_cs(0)
    engine.deliver_due(10)
    snapshot = engine.snapshot()
    assert snapshot.global_clock == max(n.clock for n in snapshot.nodes)
    assert snapshot.global_clock > 0


def test_snapshot_is_read_only(engine):
    engine.request_cs(0)
    first = engine.snapshot()
    assert engine.snapshot() == first
    with pytest.raises(dataclasses.FrozenInstanceError):
        first.nodes[0].state = NodeState.HELD
    assert engine.nodes[0].state == NodeState.WANTED


def test_listeners_receive_snapshots_and_failures_are_contained(engine):
    seen = []

    def broken(snapshot):
        raise RuntimeError("renderer crashed")

    engine.add_listener(broken)
    engine.add_listener(seen.append)
    engine.request_cs(2)
    engine.deliver_due(10)

    assert seen
    assert seen[-1].held == (2,)


@pytest.mark.parametrize("seed", range(12))
def test_mutual_exclusion_holds_under_random_interleavings(seed):
    engine = make_engine(
        5,
        seed=seed,
        min_delay=0,
        max_delay=12,
        reply_delay=1,
        cs_duration=2,
    )
    rng = engine.rng
    for _ in range(300):
        for node_id in range(5):
            if rng.random() < 0.2:
                engine.request_cs(node_id)
        engine.advance_to(engine.now + int(rng.integers(1, 6)))
        engine.tick_timers()

    assert engine.safety_violations == 0
    assert engine.cs_entries > 10
    for entry in engine.history_data:
        held = [s for s in entry["node_snapshots"].values() if s.state == NodeState.HELD]
        assert len(held) <= 1, entry["details"]
