"""Helpers shared by the engine and driver tests."""

from ricart_agrawala import MessageType, MutexEngine, SimulationConfig


def make_engine(num_nodes=3, **overrides):
    """Engine without random requests and with one-unit network delays."""
    params = dict(
        num_nodes=num_nodes,
        request_probability=0.0,
        min_delay=1,
        max_delay=1,
        reply_delay=0,
        seed=0,
    )
    params.update(overrides)
    return MutexEngine(SimulationConfig(**params))


def find_messages(engine, msg_type=None, sender=None, receiver=None):
    """In-flight messages matching the given filters, oldest first."""
    return [
        m
        for m in sorted(engine.in_flight(), key=lambda m: m.id)
        if (msg_type is None or m.type == msg_type)
        and (sender is None or m.sender == sender)
        and (receiver is None or m.receiver == receiver)
    ]


def deliver_one(engine, msg_type, sender, receiver):
    matches = find_messages(engine, msg_type, sender, receiver)
    assert len(matches) == 1, f"expected one {msg_type} N{sender}->N{receiver}, got {matches}"
    assert engine.deliver(matches[0].id)
    return matches[0]


def deliver_requests_from(engine, sender):
    for message in find_messages(engine, MessageType.REQUEST, sender=sender):
        assert engine.deliver(message.id)


