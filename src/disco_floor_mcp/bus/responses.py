"""Response collection and address tracking.

A response-expected batch message is answered in place: after the header,
node 1 writes its slot, then node 2, and so on. The master cannot tell the
nodes apart on the wire, so bytes are assigned to nodes purely by count.
When a node stays silent the master writes the slot itself from the
defaults so the nodes behind it can carry on.
"""

from __future__ import annotations

import logging

from ..exceptions import AddressingError, ResponseTimeoutError

logger = logging.getLogger(__name__)


class ResponseCollector:
    """Demultiplex the response stream of one batch message.

    Args:
        node_count: Number of slots.
        bytes_per_node: Slot size.
        defaults: The value used for bytes a node did not send. Either a
            single slot-sized pattern or a full ``node_count * bytes_per_node``
            body (for example the pre-filled request body).
    """

    def __init__(self, node_count: int, bytes_per_node: int, defaults: bytes) -> None:
        if node_count < 1 or bytes_per_node < 1:
            raise ValueError("Response collection needs at least one byte per node")
        total = node_count * bytes_per_node
        if len(defaults) == bytes_per_node:
            defaults = defaults * node_count
        if len(defaults) != total:
            raise ValueError(
                f"Defaults must be {bytes_per_node} or {total} bytes, got {len(defaults)}"
            )
        self.node_count = node_count
        self.bytes_per_node = bytes_per_node
        self.total = total
        self._defaults = defaults
        self._data = bytearray()
        self.timeouts: list[ResponseTimeoutError] = []

    @property
    def received(self) -> int:
        return len(self._data)

    @property
    def complete(self) -> bool:
        return len(self._data) >= self.total

    def node_index(self) -> int:
        """Node whose slot the next byte belongs to, or -1 when every slot is full."""
        if self.complete:
            return -1
        return len(self._data) // self.bytes_per_node

    def push(self, byte: int) -> int | None:
        """Store one received byte.

        Returns:
            The index of the node whose slot this byte completed, else None.
        """
        if self.complete:
            raise ValueError("Response already complete")
        self._data.append(byte)
        if len(self._data) % self.bytes_per_node == 0:
            return len(self._data) // self.bytes_per_node - 1
        return None

    def fill_current(self) -> bytes:
        """Default-fill the rest of the current node's slot.

        Returns:
            The bytes that were synthesized. The caller writes them onto the
            bus in place of the silent node.
        """
        index = self.node_index()
        if index < 0:
            return b""
        end = (index + 1) * self.bytes_per_node
        fill = self._defaults[len(self._data) : end]
        self._data += fill
        error = ResponseTimeoutError(index, len(fill))
        self.timeouts.append(error)
        logger.warning("%s", error)
        return bytes(fill)

    def responses(self) -> list[bytes]:
        """Per-node slots collected so far, in address order."""
        size = self.bytes_per_node
        return [
            bytes(self._data[i * size : (i + 1) * size])
            for i in range((len(self._data) + size - 1) // size)
        ]

    @property
    def body(self) -> bytes:
        return bytes(self._data)


class AddressTracker:
    """Check address replies during one addressing pass.

    The correction limit applies to each node: an accepted address resets
    the count.
    """

    def __init__(self, last_address: int = 0, max_corrections: int = 10) -> None:
        self.last_address = last_address
        self.max_corrections = max_corrections
        self.corrections = 0

    @property
    def expected(self) -> int:
        return self.last_address + 1

    def offer(self, reply: int) -> bool:
        """Accept ``reply`` if it is the next address, else count a correction.

        Raises:
            AddressingError: When more corrections were needed than allowed.
        """
        if reply == self.expected:
            self.last_address = reply
            self.corrections = 0
            return True
        self.corrections += 1
        logger.debug(
            "Unexpected address reply %d (expected %d), correction %d",
            reply, self.expected, self.corrections,
        )
        if self.corrections > self.max_corrections:
            raise AddressingError(
                f"Gave up after {self.corrections - 1} address corrections "
                f"(last reply {reply}, expected {self.expected})"
            )
        return False
