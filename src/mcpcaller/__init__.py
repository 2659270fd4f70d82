"""Synthetic MCP traffic generator."""

__version__ = "0.1.0"
