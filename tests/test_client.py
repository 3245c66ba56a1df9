"""Tests for the bus client facade."""

import time

import pytest

from disco_floor_mcp.bus.client import FloorBusClient
from disco_floor_mcp.bus.events import BusEvent
from disco_floor_mcp.bus.session import Stage
from disco_floor_mcp.exceptions import AddressingError, TransportError
from disco_floor_mcp.models.config import BusConfig
from disco_floor_mcp.protocol.commands import Command
from disco_floor_mcp.transport.emulated_floor import EmulatedFloor, EmulatedNode


def _config(**overrides):
    values = dict(reset_delay=0, stage_delay=0, sensor_delay=0, floor_width=4, floor_height=2)
    values.update(overrides)
    return BusConfig(**values)


def _client(nodes, **overrides):
    floor = EmulatedFloor(nodes)
    client = FloorBusClient(_config(**overrides), transport=floor, sleep=lambda s: None)
    events = []
    client.subscribe(lambda event, **data: events.append((event, data)))
    return client, floor, events


class BrokenFloor(EmulatedFloor):
    """Emulated floor whose port dies after a number of writes."""

    def __init__(self, nodes, writes_left):
        super().__init__(nodes)
        self.writes_left = writes_left

    def write(self, data):
        if self.writes_left <= 0:
            raise TransportError("Write failed: device disconnected")
        self.writes_left -= 1
        return super().write(data)


def test_connect_emits_connected():
    """connect() opens the transport and emits connected."""
    client, floor, events = _client(2)
    client.connect("/dev/ttyUSB0")
    assert client.connected
    assert floor.connected
    assert client.stage == Stage.IDLE
    assert events == [(BusEvent.CONNECTED, {"port": "/dev/ttyUSB0"})]


def test_connect_uses_transport_factory():
    """Without a ready transport the factory builds one from the config."""
    floor = EmulatedFloor(1)
    built = []

    def factory(config):
        built.append(config.port)
        return floor

    client = FloorBusClient(_config(port="/dev/ttyS3"), transport_factory=factory)
    client.connect()
    assert built == ["/dev/ttyS3"]
    assert client.connected


def test_assign_addresses_full_sequence():
    """NULL, RESET, then two passes; done-addressing carries the count."""
    client, floor, events = _client(3)
    client.connect()
    addresses = list(client.assign_addresses())

    assert addresses == [1, 2, 3]
    assert client.node_count == 3
    assert client.config.node_count == 3
    assert floor.messages[0].command == Command.NULL
    assert floor.messages[1].command == Command.RESET
    done = [d for e, d in events if e == BusEvent.DONE_ADDRESSING]
    assert done == [{"node_count": 3}]


def test_assign_addresses_silent_middle_node():
    """A dead node 2 of 3: the others are found and batches size to 2."""
    nodes = [EmulatedNode(0), EmulatedNode(1, responsive=False), EmulatedNode(2)]
    client, floor, events = _client(nodes)
    client.connect()
    list(client.assign_addresses())

    done = [d for e, d in events if e == BusEvent.DONE_ADDRESSING]
    assert done == [{"node_count": 2}]

    floor.messages.clear()
    client.run_cycle()
    sensor_request = [m for m in floor.messages if m.command == Command.GET_SENSOR_VALUE]
    assert sensor_request[0].node_count == 2


def test_assign_addresses_no_nodes():
    """An empty bus raises and leaves the port open."""
    client, floor, events = _client(0)
    client.connect()
    with pytest.raises(AddressingError, match="no nodes found"):
        list(client.assign_addresses())
    assert client.connected
    assert client.stage == Stage.IDLE
    assert isinstance(client.last_error, AddressingError)


def test_assign_addresses_retries_failed_first_pass():
    """A first pass that fails is retried once after a fresh reset."""
    client, floor, events = _client(
        [EmulatedNode(0, wrong_replies=3), EmulatedNode(1)], max_address_corrections=2
    )
    client.connect()
    addresses = list(client.assign_addresses())
    assert addresses == [1, 2]
    resets = [m for m in floor.messages if m.command == Command.RESET]
    assert len(resets) == 2


def test_assign_addresses_gives_up_after_retry():
    """A node that keeps answering wrong fails both attempts."""
    client, floor, events = _client(
        [EmulatedNode(0, wrong_replies=100)], max_address_corrections=2
    )
    client.connect()
    with pytest.raises(AddressingError):
        list(client.assign_addresses())
    assert client.connected
    assert not floor.daisy


def test_cached_node_count_skips_addressing():
    """With re_address off a cached count is used straight away."""
    client, floor, events = _client(2, re_address=False, node_count=2)
    client.connect()
    assert client.node_count == 2
    assert floor.written == bytearray()


def test_run_is_noop_without_nodes():
    """run() refuses to start with no nodes."""
    client, floor, events = _client(2)
    client.connect()
    assert client.run() is False
    assert not client.running


def test_run_and_stop():
    """The worker thread cycles until stopped."""
    client, floor, events = _client(2)
    client.connect()
    list(client.assign_addresses())

    assert client.run() is True
    assert client.run() is False
    deadline = time.monotonic() + 2.0
    while not any(e == BusEvent.FLOOR_UPDATED for e, _ in events):
        assert time.monotonic() < deadline, "no cycle completed"
        time.sleep(0.01)
    client.stop()

    assert not client.running
    assert client.stage == Stage.RUNNING


def test_transport_error_resets_session():
    """A dead port is fatal: the error surfaces and the session goes IDLE."""
    floor = BrokenFloor(2, writes_left=1000)
    client = FloorBusClient(_config(), transport=floor, sleep=lambda s: None)
    client.connect()
    list(client.assign_addresses())

    floor.writes_left = 0
    with pytest.raises(TransportError):
        client.run_cycle()
    assert client.stage == Stage.IDLE
    assert client.node_count == 0
    assert isinstance(client.last_error, TransportError)


def test_worker_stops_on_transport_error():
    """The run loop ends itself when the port fails."""
    floor = BrokenFloor(2, writes_left=1000)
    client = FloorBusClient(_config(), transport=floor, sleep=lambda s: None)
    client.connect()
    list(client.assign_addresses())

    floor.writes_left = 0
    client.run()
    deadline = time.monotonic() + 2.0
    while client.running:
        assert time.monotonic() < deadline, "worker did not stop"
        time.sleep(0.01)
    assert isinstance(client.last_error, TransportError)
    client.stop()


def test_disconnect_closes_port():
    """disconnect() stops the loop, closes the port and resets to IDLE."""
    client, floor, events = _client(2)
    client.connect()
    list(client.assign_addresses())
    client.run()
    client.disconnect()
    assert not floor.connected
    assert not client.connected
    assert client.stage == Stage.IDLE
    client.disconnect()


def test_escape_hatch_messages():
    """start/send/end on the client put a frame on the bus."""
    client, floor, events = _client(1)
    client.connect()
    list(client.assign_addresses())
    client.start_message(Command.SET_COLOR, destination=1, length=3)
    client.send_data(b"\x05\x06\x07")
    client.end_message()
    assert floor.nodes[0].color == (5, 6, 7)


def test_run_loop_waits_for_open_message():
    """The loop pauses while a hand-built message is open, without errors."""
    floor = EmulatedFloor(2)
    client = FloorBusClient(_config(), transport=floor, sleep=lambda s: time.sleep(0.001))
    updates = []

    def on_event(event, **data):
        if event == BusEvent.FLOOR_UPDATED:
            updates.append(data)

    client.subscribe(on_event)
    client.connect()
    list(client.assign_addresses())
    client.run()

    client.start_message(Command.SET_COLOR, destination=2, length=3)
    held = len(updates)
    time.sleep(0.05)
    assert len(updates) == held
    assert client.last_error is None

    client.send_data(b"\x01\x02\x03")
    client.end_message()
    deadline = time.monotonic() + 2.0
    while len(updates) == held:
        assert time.monotonic() < deadline, "loop did not resume"
        time.sleep(0.01)
    client.stop()
    assert client.last_error is None


def test_frames_per_second_disconnected():
    """A client that is not connected reports zero."""
    client, floor, events = _client(1)
    assert client.frames_per_second == 0
    assert client.node_count == 0
