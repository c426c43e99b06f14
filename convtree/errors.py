"""Error taxonomy for conversation tree operations.

Every error is recoverable from the caller's side. Branch operations raise
before touching the store, so a caught error means nothing was changed.
"""

from typing import Optional


class ConvTreeError(Exception):
    """Base class for all conversation tree errors."""

    def __init__(self, message: str, *, message_id: Optional[str] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message_id = message_id
        self.request_id = request_id


class NotFound(ConvTreeError):
    """An id references a node absent from the store."""


class OrphanNode(ConvTreeError):
    """Insert referenced a parent that does not exist."""


class StreamingInProgress(ConvTreeError):
    """Mutation attempted on a node that is the target of a live stream."""


class SessionConflict(ConvTreeError):
    """A stream was opened against a node that is already streaming."""


class CannotDeleteRoot(ConvTreeError):
    """The conversation root cannot be deleted."""


class InvalidOperation(ConvTreeError):
    """Operation preconditions (role, children, root) were not met."""


class TransportError(ConvTreeError):
    """Wraps an error surfaced by the model transport."""
