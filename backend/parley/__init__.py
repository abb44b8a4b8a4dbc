"""Parley - conversational session service."""

__version__ = "1.0.0"
