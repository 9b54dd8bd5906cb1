"""Shared service-layer exceptions."""

from __future__ import annotations


class ArrangementError(Exception):
    """Expected failure while generating or playing an arrangement."""


class ResourceUnavailable(ArrangementError):
    """Raised when no instrument voice is loaded."""


class SchedulingFailure(ArrangementError):
    """A single pattern scheduler failed during setup."""

    def __init__(self, instrument_id: str, reason: str) -> None:
        super().__init__(f"{instrument_id}: {reason}")
        self.instrument_id = instrument_id


class CaptureTimeout(ArrangementError):
    """Capture stop exceeded its bounded wait."""


class ArtifactUnavailable(ArrangementError):
    """Raised when export is requested before any capture completed."""


class InvalidTransition(ArrangementError):
    """Raised when a session event is not valid for the current state."""

    def __init__(self, state: str, event: str) -> None:
        super().__init__(f"cannot {event} while {state}")
        self.state = state
        self.event = event


class TransportDisposedError(ArrangementError):
    """Raised when a torn-down transport is queried."""
