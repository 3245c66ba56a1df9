"""High-level client for the floor bus.

Usage::

    client = FloorBusClient(BusConfig(port="/dev/ttyUSB0"))
    client.connect()
    for address in client.assign_addresses():
        print("found node", address)
    client.cells.set_color((255, 0, 0))
    client.run()
    ...
    client.disconnect()
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator

from ..exceptions import AddressingError, FloorBusError, TransportError
from ..models.config import BusConfig
from ..models.floor import CellSource, build_floor
from ..transport.serial_connection import SerialConnection
from .events import BusEvent, EventEmitter, Listener
from .session import BusSession, Stage

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 2.0  # seconds to wait for the worker thread


def _serial_factory(config: BusConfig) -> SerialConnection:
    return SerialConnection(config.port, config.baudrate)


class FloorBusClient:
    """Connection, addressing and the continuous update loop.

    Args:
        config: Bus settings. ``config.port`` is used when :meth:`connect`
            is called without a port.
        cells: The floor the cycle reads colors from. Defaults to a
            ``floor_width`` x ``floor_height`` grid.
        transport: A ready transport (e.g. an emulated floor) to use instead
            of opening a serial port.
        transport_factory: Builds the transport from the config on connect.
    """

    def __init__(
        self,
        config: BusConfig | None = None,
        cells: CellSource | None = None,
        transport=None,
        transport_factory: Callable[[BusConfig], object] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or BusConfig()
        if cells is None:
            cells = build_floor(
                self.config.floor_width * self.config.floor_height,
                width=self.config.floor_width,
            )
        self.cells = cells
        self.events = EventEmitter()
        self.last_error: Exception | None = None
        self._transport = transport
        self._transport_factory = transport_factory or _serial_factory
        self._sleep = sleep
        self._session: BusSession | None = None
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._worker: threading.Thread | None = None

    # Listeners

    def subscribe(self, listener: Listener) -> None:
        self.events.subscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        self.events.unsubscribe(listener)

    # State

    @property
    def connected(self) -> bool:
        return self._session is not None and self._session.transport.connected

    @property
    def session(self) -> BusSession:
        if self._session is None:
            raise TransportError("Not connected to the bus")
        return self._session

    @property
    def stage(self) -> Stage:
        return self._session.stage if self._session else Stage.IDLE

    @property
    def node_count(self) -> int:
        return self._session.node_count if self._session else 0

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    @property
    def frames_per_second(self) -> int:
        return self._session.fps.value if self._session else 0

    # Connection

    def connect(self, port: str | None = None) -> None:
        """Open the bus.

        Raises:
            PortError: If the port is invalid or in use.
        """
        if self.connected:
            self.disconnect()
        if port:
            self.config.port = port

        transport = self._transport
        if transport is None:
            transport = self._transport_factory(self.config)
        transport.open()

        self._session = BusSession(
            transport, self.config, self.cells, self.events, sleep=self._sleep
        )
        self.last_error = None
        if not self.config.re_address and self.config.node_count:
            self._session.register_nodes(self.config.node_count)
        self.events.emit(BusEvent.CONNECTED, port=self.config.port)

    def disconnect(self) -> None:
        """Stop the loop and close the port. Safe to call when not connected."""
        self.stop()
        session = self._session
        if session is None:
            return
        with self._lock:
            session.abort_message()
            session.reset()
            session.transport.close()
        self._session = None

    # Addressing

    def assign_addresses(self) -> Iterator[int]:
        """Discover every node, yielding addresses as they are confirmed.

        Raises:
            AddressingError: If the second attempt fails or no nodes answer.
        """
        with self._lock:
            session = self.session
            if self.running:
                raise AddressingError("Stop the update loop before addressing")
            try:
                yield from self._first_pass(session)
                self._sleep(self.config.reset_delay)
                yield from session.address_nodes(session.node_count)
            except TransportError as e:
                self._fail(e)
                raise
            except AddressingError as e:
                self.last_error = e
                session.set_stage(Stage.IDLE)
                raise

            if session.node_count == 0:
                session.set_stage(Stage.IDLE)
                self.last_error = AddressingError("no nodes found")
                raise self.last_error

            self.config.node_count = session.node_count
            logger.info("Addressing done, %d node(s)", session.node_count)
            self.events.emit(BusEvent.DONE_ADDRESSING, node_count=session.node_count)

    def _first_pass(self, session: BusSession) -> Iterator[int]:
        for attempt in (1, 2):
            session.clear_bus()
            self._sleep(self.config.reset_delay)
            try:
                yield from session.address_nodes(0)
                return
            except AddressingError as e:
                if attempt == 2:
                    raise
                logger.warning("Addressing failed (%s), retrying", e)

    # Update loop

    def run(self) -> bool:
        """Start the update loop on a worker thread.

        Returns:
            False if it was already running or there are no nodes.
        """
        if self.running or self.node_count == 0:
            return False
        self._stop.clear()
        self._worker = threading.Thread(
            target=self._loop, name="floor-bus", daemon=True
        )
        self._worker.start()
        return True

    def stop(self) -> None:
        worker = self._worker
        if worker is None:
            return
        self._stop.set()
        if worker is not threading.current_thread():
            worker.join(STOP_TIMEOUT)
            if worker.is_alive():
                logger.warning("Update loop did not stop within %.1fs", STOP_TIMEOUT)
        self._worker = None

    def run_cycle(self) -> None:
        """Run one update cycle on the calling thread."""
        with self._lock:
            try:
                self.session.run_cycle()
            except TransportError as e:
                self._fail(e)
                raise

    def _loop(self) -> None:
        logger.info("Update loop started")
        while not self._stop.is_set():
            session = self._session
            if session is None:
                break
            try:
                with self._lock:
                    busy = session.busy
                    if not busy:
                        session.run_cycle()
            except TransportError as e:
                logger.exception("Update loop stopped by transport error")
                self._fail(e)
                break
            except FloorBusError as e:
                logger.error("Cycle failed: %s", e)
                self.last_error = e
                continue
            if busy:
                # A caller is streaming its own message.
                self._sleep(self.config.stage_delay)
        logger.info("Update loop stopped")

    def _fail(self, error: Exception) -> None:
        self.last_error = error
        if self._session is not None:
            self._session.reset()

    # Escape hatch

    def start_message(self, command: int, destination: int = 0, flags: int = 0,
                      length: int = 0, node_count: int = 0) -> None:
        with self._lock:
            self.session.start_message(command, destination, flags, length, node_count)

    def send_data(self, data: bytes) -> None:
        with self._lock:
            self.session.send_data(data)

    def end_message(self) -> None:
        with self._lock:
            self.session.end_message()
