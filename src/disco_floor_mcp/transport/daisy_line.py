"""Half-duplex line controller for the daisy-chain enable line."""

from __future__ import annotations

import logging
import time
from enum import Enum

logger = logging.getLogger(__name__)


class LineState(Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


class DaisyLine:
    """Gate the enable line that lets the first unaddressed node talk.

    Every transition is flushed to the hardware before returning, then the
    line is given ``settle`` seconds before the next byte goes out.
    """

    def __init__(self, transport, settle: float = 0.0) -> None:
        self._transport = transport
        self._settle = settle
        self.state = LineState.DISABLED

    @property
    def enabled(self) -> bool:
        return self.state == LineState.ENABLED

    def enable(self) -> None:
        self._set(True)

    def disable(self) -> None:
        self._set(False)

    def _set(self, enabled: bool) -> None:
        # Drain first so the line never changes under bytes still in flight.
        self._transport.flush()
        self._transport.set_daisy(enabled)
        self._transport.flush()
        self.state = LineState.ENABLED if enabled else LineState.DISABLED
        logger.debug("Daisy line %s", self.state.value)
        if self._settle:
            time.sleep(self._settle)
