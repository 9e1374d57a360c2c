"""Negotiation errors."""

from __future__ import annotations


class NegotiationError(Exception):
    """A negotiation step failed or was attempted in the wrong state."""


class InvalidStateError(NegotiationError):
    pass


class UnexpectedAnswerError(NegotiationError):
    """An answer arrived without a matching outstanding offer.

    Duplicate or late answers are normal on a signaling channel, so callers
    log and ignore this.
    """


class RoleConflictError(NegotiationError):
    def __init__(self, peer_id: str, existing: str, requested: str):
        super().__init__(f"peer {peer_id} already has a {existing} session (requested {requested})")
        self.peer_id = peer_id
        self.existing = existing
        self.requested = requested
