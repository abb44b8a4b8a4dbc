"""Services module - wires the session subsystem together."""

from .container import SessionServices, build_text_generator

__all__ = ['SessionServices', 'build_text_generator']
