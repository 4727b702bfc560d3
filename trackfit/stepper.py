from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
from scipy.optimize import newton

from trackfit.exceptions import PropagationError
from trackfit.parameters import BOUND_SIZE, LOC0, LOC1, PHI, QOP, THETA, BoundParameters, wrap_angle
from trackfit.surfaces import ON_SURFACE_TOLERANCE, Surface, SurfaceType, plane_surface

logger = logging.getLogger(__name__)

__all__ = ["C_LIGHT", "helix_advance", "StepperState", "HelixStepper"]

# GeV / (T mm)
C_LIGHT = 0.299792458e-3

# central-difference steps per bound parameter (mm, mm, rad, rad, relative q/p)
_FD_STEPS = np.array([1e-5, 1e-5, 1e-7, 1e-7, 1e-7])


def helix_advance(position: np.ndarray,
                  direction: np.ndarray,
                  momentum: float,
                  charge: float,
                  b_field: float,
                  s: float) -> Tuple[np.ndarray, np.ndarray]:
    r"""
    Exact helix transport by path length ``s`` in a uniform field along :math:`z`.

    With :math:`\omega = -q\,c\,B_z / p` (curvature per unit path length),

    .. math::

        \begin{aligned}
        x(s) &= x_0 + \big(d_x \sin\omega s + d_y(\cos\omega s - 1)\big)/\omega,\\
        y(s) &= y_0 + \big(d_x(1-\cos\omega s) + d_y \sin\omega s\big)/\omega,\\
        z(s) &= z_0 + d_z s,
        \end{aligned}

    and the transverse direction rotates by :math:`\omega s`. For
    :math:`|\omega s| \ll 1` a straight line is used.

    Parameters
    ----------
    position, direction : ndarray, shape (3,)
        Start point (mm) and unit direction.
    momentum : float
        Absolute momentum (GeV).
    charge : float
        Charge sign.
    b_field : float
        :math:`B_z` in Tesla.
    s : float
        Signed path length (mm).

    Returns
    -------
    position, direction : ndarray, shape (3,)
    """
    dx, dy, dz = direction
    omega = -charge * C_LIGHT * b_field / momentum if momentum > 0 else 0.0
    theta = omega * s
    if abs(theta) < 1e-9:
        return position + s * direction, direction.copy()
    c, sn = np.cos(theta), np.sin(theta)
    pos = np.array([
        position[0] + (dx * sn + dy * (c - 1.0)) / omega,
        position[1] + (dx * (1.0 - c) + dy * sn) / omega,
        position[2] + dz * s,
    ])
    d = np.array([c * dx - sn * dy, sn * dx + c * dy, dz])
    return pos, d


class StepperState:
    r"""
    Running kinematic state of one propagation.

    The covariance is a bound :math:`5\times 5` matrix expressed on
    ``reference_surface`` (or, if that is ``None``, on the curvilinear plane
    through the reference point). Every commit of kinematics or covariance
    snapshots the reference point used by the covariance transport.

    Attributes
    ----------
    position, direction : ndarray, shape (3,)
    momentum : float
        Absolute momentum (GeV).
    charge : float
    nav_dir : int
        ``+1`` forward, ``-1`` backward.
    step_size : float
        Step the next call to :meth:`HelixStepper.step` will take.
    path_accumulated : float
        Absolute path length travelled.
    """

    __slots__ = ("position", "direction", "momentum", "charge", "nav_dir", "step_size",
                 "path_accumulated", "reference_surface", "_covariance",
                 "_ref_position", "_ref_direction", "_ref_momentum", "_ref_path")

    def __init__(self,
                 position: np.ndarray,
                 direction: np.ndarray,
                 momentum: float,
                 charge: float,
                 covariance: Optional[np.ndarray] = None,
                 reference_surface: Optional[Surface] = None,
                 nav_dir: int = 1) -> None:
        d = np.asarray(direction, dtype=np.float64)
        self.position = np.asarray(position, dtype=np.float64).copy()
        self.direction = d / np.linalg.norm(d)
        self.momentum = float(momentum)
        self.charge = float(charge)
        self.nav_dir = 1 if nav_dir >= 0 else -1
        self.step_size = np.inf
        self.path_accumulated = 0.0
        self.reference_surface = reference_surface
        self._covariance: Optional[np.ndarray] = None
        self.covariance = covariance

    @classmethod
    def from_parameters(cls, start: BoundParameters, nav_dir: int = 1) -> "StepperState":
        return cls(start.position(), start.direction(), start.absolute_momentum(), start.charge,
                   covariance=start.covariance, reference_surface=start.surface, nav_dir=nav_dir)

    @property
    def covariance(self) -> Optional[np.ndarray]:
        return self._covariance

    @covariance.setter
    def covariance(self, cov: Optional[np.ndarray]) -> None:
        self._covariance = None if cov is None else np.array(cov, dtype=np.float64).reshape(BOUND_SIZE, BOUND_SIZE)
        self.snapshot()

    def snapshot(self) -> None:
        """Make the current kinematics the reference of the stored covariance."""
        self._ref_position = self.position.copy()
        self._ref_direction = self.direction.copy()
        self._ref_momentum = self.momentum
        self._ref_path = self.path_accumulated

    @property
    def reference(self) -> Tuple[np.ndarray, np.ndarray, float]:
        return self._ref_position, self._ref_direction, self._ref_momentum

    def path_since_reference(self) -> float:
        """Signed path from the covariance reference point to the current position."""
        return self.nav_dir * (self.path_accumulated - self._ref_path)

    def __repr__(self) -> str:
        return (f"StepperState(pos={np.array2string(self.position, precision=3)}, "
                f"p={self.momentum:.4g}, q={self.charge:+.0f}, path={self.path_accumulated:.4g})")


class HelixStepper:
    r"""
    Helix transport in a uniform solenoidal field.

    Parameters
    ----------
    b_field : float, optional
        :math:`B_z` in Tesla. Default ``2.0``.
    process_noise : float, optional
        Angular variance added per unit path length (rad² / mm), applied to
        :math:`\phi,\theta` during covariance transport:

        .. math::

            C' = J\,C\,J^\top + Q\,|\Delta s|, \qquad
            Q = \mathrm{diag}(0,\, 0,\, q_0/\sin^2\theta,\, q_0,\, 0).

    path_tolerance : float, optional
        Newton tolerance on the path length solve (mm).
    """

    def __init__(self, b_field: float = 2.0, process_noise: float = 0.0, path_tolerance: float = 1e-10) -> None:
        self.b_field = float(b_field)
        self.process_noise = float(process_noise)
        self.path_tolerance = float(path_tolerance)

    def __repr__(self) -> str:
        return f"HelixStepper(b_field={self.b_field}, process_noise={self.process_noise})"

    # --------------------------------------------------------------- motion
    def advance(self, state: StepperState, s: float) -> Tuple[np.ndarray, np.ndarray]:
        """Position and direction after a signed path ``s`` (state unchanged)."""
        return helix_advance(state.position, state.direction, state.momentum, state.charge, self.b_field, s)

    def step(self, state: StepperState, h: Optional[float] = None) -> float:
        r"""
        Move the state by ``|h|`` along ``nav_dir`` (default: ``state.step_size``).

        Returns
        -------
        float
            Absolute path length of the step.
        """
        length = abs(state.step_size if h is None else h)
        if not np.isfinite(length):
            raise ValueError("Step size must be finite")
        state.position, state.direction = self.advance(state, state.nav_dir * length)
        state.path_accumulated += length
        return length

    def update(self,
               state: StepperState,
               position: np.ndarray,
               direction: np.ndarray,
               momentum: float,
               surface: Optional[Surface] = None) -> None:
        """Overwrite the running kinematics; ``surface`` becomes the covariance reference."""
        d = np.asarray(direction, dtype=np.float64)
        state.position = np.asarray(position, dtype=np.float64).copy()
        state.direction = d / np.linalg.norm(d)
        state.momentum = float(momentum)
        state.reference_surface = surface
        state.snapshot()

    # --------------------------------------------------------- path solving
    def _solve_path(self,
                    position: np.ndarray,
                    direction: np.ndarray,
                    momentum: float,
                    charge: float,
                    surface: Surface,
                    guess: float) -> Optional[float]:
        def f(s):
            pos, d = helix_advance(position, direction, momentum, charge, self.b_field, s)
            return surface.signed_distance(pos, d)

        try:
            s = float(newton(f, float(guess), maxiter=50, tol=self.path_tolerance))
        except (RuntimeError, OverflowError):
            return None
        if not np.isfinite(s) or abs(f(s)) > ON_SURFACE_TOLERANCE:
            return None
        return s

    def path_to_surface(self, state: StepperState, surface: Surface, bound_check: bool = True) -> Optional[float]:
        r"""
        Forward path length (along ``nav_dir``) to ``surface``.

        The straight-line estimate seeds a Newton solve of the surface distance
        function along the helix.

        Returns
        -------
        float or None
            ``None`` if no forward intersection exists (or it is out of bounds).
        """
        est = surface.intersection_estimate(state.position, state.direction, state.nav_dir)
        if not est:
            return None
        s = self._solve_path(state.position, state.direction, state.momentum, state.charge,
                             surface, state.nav_dir * est.path_length)
        if s is None:
            return None
        forward = state.nav_dir * s
        if forward <= ON_SURFACE_TOLERANCE:
            return None
        if bound_check:
            pos, d = self.advance(state, s)
            if not surface.inside_bounds(surface.global_to_local(pos, d), ON_SURFACE_TOLERANCE):
                return None
        return forward

    # ------------------------------------------------------------ binding
    def bind(self, state: StepperState, surface: Surface, want_covariance: bool = True) -> BoundParameters:
        r"""
        Bound parameters of the current state on ``surface``.

        The current position is taken to be on ``surface``. The covariance is
        transported from the reference point with the numerical Jacobian of
        the bound-to-bound helix map plus path-proportional process noise.
        ``state`` is not modified.
        """
        params = BoundParameters.from_global(surface, state.position, state.momentum * state.direction,
                                             state.charge)
        if want_covariance and state.covariance is not None:
            params.covariance = self._transport_covariance(state, surface)
        return params

    def _reference_surface(self, state: StepperState) -> Surface:
        if state.reference_surface is not None:
            return state.reference_surface
        ref_pos, ref_dir, _ = state.reference
        return plane_surface(ref_pos, ref_dir, name="curvilinear")

    def _transport_covariance(self, state: StepperState, target: Surface) -> np.ndarray:
        ref_surface = self._reference_surface(state)
        ref_pos, ref_dir, ref_mom = state.reference
        x0 = BoundParameters.from_global(ref_surface, ref_pos, ref_mom * ref_dir, state.charge).parameters
        s0 = state.path_since_reference()

        def bound_map(x: np.ndarray) -> np.ndarray:
            start = BoundParameters(ref_surface, x)
            p, q = start.absolute_momentum(), start.charge
            s = self._solve_path(start.position(), start.direction(), p, q, target, s0)
            if s is None:
                raise PropagationError(f"Covariance transport to {target!r} did not converge")
            pos, d = helix_advance(start.position(), start.direction(), p, q, self.b_field, s)
            return BoundParameters.from_global(target, pos, p * d, q).parameters

        J = np.empty((BOUND_SIZE, BOUND_SIZE))
        for k in range(BOUND_SIZE):
            h = _FD_STEPS[k] * (abs(x0[QOP]) if k == QOP else 1.0) or _FD_STEPS[k]
            xp, xm = x0.copy(), x0.copy()
            xp[k] += h
            xm[k] -= h
            J[:, k] = _bound_difference(bound_map(xp), bound_map(xm), target) / (2.0 * h)

        cov = J @ state.covariance @ J.T
        if self.process_noise > 0.0 and s0 != 0.0:
            q0 = self.process_noise * abs(s0)
            sin_theta = max(np.sin(x0[THETA]), 1e-6)
            cov[PHI, PHI] += q0 / sin_theta ** 2
            cov[THETA, THETA] += q0
        return 0.5 * (cov + cov.T)


def _bound_difference(a: np.ndarray, b: np.ndarray, surface: Surface) -> np.ndarray:
    d = a - b
    d[PHI] = wrap_angle(d[PHI])
    if surface.type is SurfaceType.DISC:
        d[LOC1] = wrap_angle(d[LOC1])
    elif surface.type is SurfaceType.CYLINDER:
        circumference = 2.0 * np.pi * surface.bounds["radius"]
        d[LOC0] = (d[LOC0] + 0.5 * circumference) % circumference - 0.5 * circumference
    return d
