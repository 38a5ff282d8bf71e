"""
Interactive state persistence.

This package holds the session's state models, the attachment store used for
oversized states, the deferred host writer, the inline/attachment store
adapter and the reconciler that picks the authoritative state at startup.
"""

from .models import (
    HandshakeResult,
    LinkedStateEntry,
    ReconciliationOutcome,
    StateReference,
)

__all__ = [
    "HandshakeResult",
    "LinkedStateEntry",
    "ReconciliationOutcome",
    "StateReference",
]
