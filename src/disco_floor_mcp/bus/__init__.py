"""Bus engine: session state machine, response handling, events and the client facade."""

from .client import FloorBusClient
from .events import BusEvent, EventEmitter
from .responses import AddressTracker, ResponseCollector
from .session import BusSession, Stage, Step
