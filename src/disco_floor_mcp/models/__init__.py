"""Data models for the floor, discovered nodes and bus configuration."""

from .config import BusConfig
from .floor import FloorCell, FloorCellList, build_floor
from .node import Node
