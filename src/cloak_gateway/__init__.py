"""Cloak Gateway: prompt security gateway for local AI assistants."""

__version__ = "0.1.0"
