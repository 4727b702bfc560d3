"""Exception hierarchy for the track fitting framework."""

from __future__ import annotations

from typing import Optional


class TrackFitError(Exception):
    """Base exception for all trackfit errors."""

    pass


class GeometryError(TrackFitError):
    """Raised when the detector geometry is malformed or cannot be closed."""

    pass


class PropagationError(TrackFitError):
    """Raised when the propagation loop fails (e.g. step budget exhausted)."""

    def __init__(self, message: str, steps: Optional[int] = None):
        self.steps = steps
        super().__init__(message)


class FitStateError(TrackFitError):
    """Raised when the Kalman actor is driven through an illegal state transition."""

    pass


class FitInvariantError(TrackFitError):
    """
    Raised when the fit bookkeeping is inconsistent.

    This signals a navigation contract breach (a processed surface reported
    again, or more processed states than expected), not a data problem.
    """

    def __init__(self, message: str, surface: Optional[object] = None):
        self.surface = surface
        super().__init__(message)


class ConfigError(TrackFitError):
    """Raised when a configuration file cannot be parsed or is invalid."""

    pass
