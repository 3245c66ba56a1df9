"""Master-side RS-485 bus engine and MCP server for an LED dance floor."""

__version__ = "0.3.0"
