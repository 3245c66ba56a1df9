"""Bus configuration."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path

BAUD_RATE = 250000


@dataclass
class BusConfig:
    """Settings for one serial bus connection.

    Durations are in seconds.
    """

    port: str = ""
    baudrate: int = BAUD_RATE
    re_address: bool = True
    node_count: int = 0
    addressing_timeout: float = 1.0
    response_timeout: float = 0.05
    receive_timeout: float = 0.5
    reset_delay: float = 0.5
    stage_delay: float = 0.001
    sensor_delay: float = 0.02
    max_address_corrections: int = 10
    sensors_enabled: bool = True
    refresh_interval: int = 30
    floor_width: int = 8
    floor_height: int = 8

    def __post_init__(self) -> None:
        if self.node_count < 0 or self.node_count > 255:
            raise ValueError(f"node_count must be 0-255, got {self.node_count}")
        for name in ("addressing_timeout", "response_timeout", "receive_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.max_address_corrections < 0:
            raise ValueError("max_address_corrections cannot be negative")

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> BusConfig:
        """Build a config, ignoring keys this version does not know."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def load(cls, path: str | Path) -> BusConfig:
        """Load a config from a JSON file. A missing file gives the defaults."""
        path = Path(path)
        if not path.exists():
            return cls()
        return cls.from_dict(json.loads(path.read_text()))

    def save(self, path: str | Path) -> Path:
        path = Path(path)
        path.write_text(json.dumps(self.to_dict(), indent=2))
        return path
