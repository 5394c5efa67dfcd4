"""Google Calendar MCP server spanning multiple accounts."""

__version__ = "0.1.0"
