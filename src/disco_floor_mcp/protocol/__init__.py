"""Protocol layer: message framing, CRC, command builders, and response parsing."""

from .framing import Message, build_frame, parse_frame, FrameParser
from .commands import Command, build_command
