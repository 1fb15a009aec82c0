"""Typed failures surfaced by the tracker core.

The HTTP layer translates these into status codes; the core never decides
transport-level responses itself.
"""

from __future__ import annotations

from typing import Any


class TrackerError(Exception):
    """Base class for all tracker failures."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(TrackerError):
    """Input rejected before any write happened."""


class NotFoundError(TrackerError):
    """A referenced page, project or user does not exist for this user."""


class StoreError(TrackerError):
    """The backing store failed (locked, unavailable, corrupt)."""
