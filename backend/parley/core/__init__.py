"""Core module - session lifecycle, message logs, titles and commands.

Managers are imported from their own modules; only the error taxonomy is
re-exported here so storage can depend on it without a cycle.
"""

from .errors import GenerationError, NotFoundError, ParleyError, PersistenceError, ValidationError

__all__ = ['ParleyError', 'NotFoundError', 'ValidationError', 'PersistenceError', 'GenerationError']
