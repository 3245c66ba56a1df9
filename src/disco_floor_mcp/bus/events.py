"""Bus events and the listener registry.

Listeners are plain callables ``listener(event, **data)``:

- ``CONNECTED``: ``port``
- ``NEW_NODE``: ``address``
- ``DONE_ADDRESSING``: ``node_count``
- ``STAGE_CHANGE``: ``old``, ``new``
- ``FLOOR_UPDATED``: ``cycle``
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from threading import Lock
from typing import Any

logger = logging.getLogger(__name__)


class BusEvent(Enum):
    CONNECTED = "connected"
    NEW_NODE = "new-node"
    DONE_ADDRESSING = "done-addressing"
    STAGE_CHANGE = "stage-change"
    FLOOR_UPDATED = "floor-updated"


Listener = Callable[..., None]


class EventEmitter:
    """Thread-safe listener list.

    Events are delivered on the thread that raised them, usually the bus
    worker. A failing listener is logged and does not affect the others.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._lock = Lock()

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
            else:
                logger.warning("Attempted to unsubscribe unknown listener: %r", listener)

    def emit(self, event: BusEvent, **data: Any) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, **data)
            except Exception:
                logger.exception("Error in %s listener %r", event.value, listener)
