"""A discovered floor node."""

from __future__ import annotations

from dataclasses import dataclass

MAX_COMMAND_ID = 7

Signature = tuple


@dataclass
class Node:
    """A node confirmed during addressing.

    ``address`` is fixed until the next full re-addressing.

    ``last_command_id`` counts the color updates put on the bus for this
    node, modulo 8. Batch frames have no field for it, so it is host-side
    bookkeeping only: it tells how often a node was updated, and nothing on
    the wire depends on it.
    """

    address: int
    last_sent_signature: Signature | None = None
    last_command_id: int = 0

    @property
    def index(self) -> int:
        """Position of this node's slot in batch messages."""
        return self.address - 1

    def mark_sent(self, signature: Signature) -> None:
        """Record that ``signature`` was put on the bus for this node."""
        self.last_sent_signature = signature
        self.last_command_id = (
            0 if self.last_command_id >= MAX_COMMAND_ID else self.last_command_id + 1
        )

    def needs_update(self, signature: Signature) -> bool:
        return signature != self.last_sent_signature
