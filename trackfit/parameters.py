from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

import numpy as np

from trackfit.surfaces import Surface, SurfaceType

__all__ = [
    "LOC0", "LOC1", "PHI", "THETA", "QOP", "BOUND_SIZE",
    "wrap_angle",
    "BoundParameters",
    "Measurement",
    "TrackState",
]

# bound parameter layout
LOC0, LOC1, PHI, THETA, QOP = range(5)
BOUND_SIZE = 5


def wrap_angle(phi: float) -> float:
    """Map an angle to :math:`[-\\pi, \\pi)`."""
    return float((phi + np.pi) % (2.0 * np.pi) - np.pi)


def _direction(phi: float, theta: float) -> np.ndarray:
    st = np.sin(theta)
    return np.array([np.cos(phi) * st, np.sin(phi) * st, np.cos(theta)])


@dataclass(slots=True)
class BoundParameters:
    r"""
    Track parameters bound to a surface.

    Layout ``[loc0, loc1, phi, theta, q/p]`` where ``loc0, loc1`` are the
    surface-local coordinates (see :class:`~trackfit.surfaces.Surface`),
    :math:`\phi,\theta` the direction angles and :math:`q/p` the signed
    inverse momentum in :math:`\mathrm{GeV}^{-1}`.

    Attributes
    ----------
    surface : Surface
        Reference surface.
    parameters : ndarray, shape (5,)
        Bound parameter vector.
    covariance : ndarray, shape (5, 5), optional
        Bound covariance; ``None`` for parameters without uncertainty.
    """
    surface: Surface
    parameters: np.ndarray
    covariance: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        self.parameters = np.asarray(self.parameters, dtype=np.float64).reshape(BOUND_SIZE)
        if self.covariance is not None:
            self.covariance = np.asarray(self.covariance, dtype=np.float64).reshape(BOUND_SIZE, BOUND_SIZE)

    @classmethod
    def from_global(cls,
                    surface: Surface,
                    position: Sequence[float],
                    momentum: Sequence[float],
                    charge: float,
                    covariance: Optional[np.ndarray] = None) -> "BoundParameters":
        r"""
        Bind a global position/momentum to ``surface``.

        The position is assumed to lie on the surface; it is projected onto the
        local frame without an intersection step.
        """
        mom = np.asarray(momentum, dtype=np.float64)
        p = float(np.linalg.norm(mom))
        if p <= 0.0:
            raise ValueError("Momentum must be non-zero")
        d = mom / p
        loc = surface.global_to_local(position, d)
        phi = float(np.arctan2(d[1], d[0]))
        theta = float(np.arccos(np.clip(d[2], -1.0, 1.0)))
        q = 1.0 if charge >= 0 else -1.0
        return cls(surface, np.array([loc[0], loc[1], phi, theta, q / p]), covariance)

    @property
    def charge(self) -> float:
        return -1.0 if self.parameters[QOP] < 0 else 1.0

    def absolute_momentum(self) -> float:
        qop = self.parameters[QOP]
        return float(np.inf if qop == 0.0 else abs(1.0 / qop))

    def direction(self) -> np.ndarray:
        return _direction(self.parameters[PHI], self.parameters[THETA])

    def momentum(self) -> np.ndarray:
        return self.absolute_momentum() * self.direction()

    def position(self) -> np.ndarray:
        return self.surface.local_to_global(self.parameters[:2], self.direction())

    def __repr__(self) -> str:
        return (f"BoundParameters({self.surface!r}, "
                f"params={np.array2string(self.parameters, precision=4)}, "
                f"cov={'yes' if self.covariance is not None else 'no'})")


@dataclass(slots=True)
class Measurement:
    r"""
    Measurement of a subset of the bound parameters on a surface.

    Attributes
    ----------
    surface : Surface
        Surface the hit was recorded on.
    indices : tuple of int
        Which bound parameters are measured (e.g. ``(LOC0, LOC1)``).
    values : ndarray, shape (m,)
        Measured values.
    covariance : ndarray, shape (m, m)
        Measurement covariance :math:`R`.
    hit_id : int, optional
        Identifier of the originating hit.
    """
    surface: Surface
    indices: Tuple[int, ...]
    values: np.ndarray
    covariance: np.ndarray
    hit_id: Optional[int] = None

    def __post_init__(self) -> None:
        self.indices = tuple(int(i) for i in self.indices)
        m = len(self.indices)
        if m == 0 or any(i < 0 or i >= BOUND_SIZE for i in self.indices):
            raise ValueError(f"Invalid measurement indices {self.indices}")
        self.values = np.asarray(self.values, dtype=np.float64).reshape(m)
        self.covariance = np.asarray(self.covariance, dtype=np.float64).reshape(m, m)

    @property
    def size(self) -> int:
        return len(self.indices)

    def projector(self) -> np.ndarray:
        r"""Projection matrix :math:`H` (shape ``(m, 5)``) selecting the measured parameters."""
        H = np.zeros((self.size, BOUND_SIZE), dtype=np.float64)
        H[np.arange(self.size), self.indices] = 1.0
        return H

    def residual(self, predicted: np.ndarray) -> np.ndarray:
        r = self.values - np.asarray(predicted, dtype=np.float64)[list(self.indices)]
        # angular components wrap around; on a cylinder loc0 is R*phi
        for k, idx in enumerate(self.indices):
            if idx == PHI or (idx == LOC1 and self.surface.type is SurfaceType.DISC):
                r[k] = wrap_angle(r[k])
            elif idx == LOC0 and self.surface.type is SurfaceType.CYLINDER:
                radius = self.surface.bounds["radius"]
                r[k] = radius * wrap_angle(r[k] / radius)
        return r


@dataclass(slots=True)
class TrackState:
    r"""
    One slot of a trajectory: a measurement plus the fit results on its surface.

    ``predicted`` is set when the state is visited; ``filtered`` when the
    update succeeds. ``outlier`` marks a visited state whose update was
    rejected. ``smoothed`` is reserved for a backward pass.
    """
    measurement: Measurement
    predicted: Optional[BoundParameters] = None
    filtered: Optional[BoundParameters] = None
    smoothed: Optional[BoundParameters] = None
    chi2: float = field(default=float("nan"))
    outlier: bool = False

    @property
    def surface(self) -> Surface:
        return self.measurement.surface

    @property
    def is_processed(self) -> bool:
        return self.predicted is not None
