from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from trackfit.fitter.kernels import chi2 as chi2_kernel
from trackfit.fitter.kernels import kalman_gain
from trackfit.parameters import BOUND_SIZE, LOC0, PHI, THETA, BoundParameters, Measurement, TrackState, wrap_angle
from trackfit.surfaces import SurfaceType

logger = logging.getLogger(__name__)

__all__ = ["UpdateResult", "GainMatrixUpdator"]

_I5 = np.eye(BOUND_SIZE)


@dataclass(frozen=True)
class UpdateResult:
    """Filtered parameters and the :math:`\\chi^2` of the accepted measurement."""
    parameters: BoundParameters
    chi2: float


class GainMatrixUpdator:
    r"""
    Gain-matrix Kalman update.

    With residual :math:`r = m - H x^-`, innovation covariance
    :math:`S = H P^- H^\top + R` and gain :math:`K = P^- H^\top S^{-1}`,

    .. math::

        \begin{aligned}
        x^+ &= x^- + K r,\\
        P^+ &= (I - K H)\,P^-\,(I - K H)^\top + K R K^\top, \\
        \chi^2 &= r^\top S^{-1} r.
        \end{aligned}

    The Joseph form keeps :math:`P^+` symmetric positive semi-definite.

    Parameters
    ----------
    chi2_cut : float, optional
        Measurements with :math:`\chi^2` above the cut are rejected.
        ``inf`` (default) disables gating.

    Notes
    -----
    The update is a pure function of its inputs: neither the track state nor
    the predicted parameters are modified. A rejected update returns ``None``.
    """

    def __init__(self, chi2_cut: float = np.inf) -> None:
        self.chi2_cut = float(chi2_cut)

    def __repr__(self) -> str:
        return f"GainMatrixUpdator(chi2_cut={self.chi2_cut})"

    def __call__(self, track_state: TrackState, predicted: BoundParameters) -> Optional[UpdateResult]:
        return self.update(track_state.measurement, predicted)

    def update(self, measurement: Measurement, predicted: BoundParameters) -> Optional[UpdateResult]:
        P = predicted.covariance
        if P is None:
            logger.debug("Rejecting update on %r: predicted parameters carry no covariance", measurement.surface)
            return None
        x = predicted.parameters
        if not (np.all(np.isfinite(x)) and np.all(np.isfinite(P)) and np.all(np.isfinite(measurement.values))):
            logger.debug("Rejecting update on %r: non-finite input", measurement.surface)
            return None

        H = measurement.projector()
        R = measurement.covariance
        r = measurement.residual(x)
        S = H @ P @ H.T + R
        try:
            chi2 = chi2_kernel(r, S)
            K = kalman_gain(P, H, S)
        except np.linalg.LinAlgError:
            logger.debug("Rejecting update on %r: singular innovation covariance", measurement.surface)
            return None
        if chi2 > self.chi2_cut:
            logger.debug("Rejecting update on %r: chi2 %.3f > %.3f", measurement.surface, chi2, self.chi2_cut)
            return None

        x_upd = x + K @ r
        x_upd[PHI] = wrap_angle(x_upd[PHI])
        if predicted.surface.type is SurfaceType.CYLINDER:
            radius = predicted.surface.bounds["radius"]
            x_upd[LOC0] = radius * wrap_angle(x_upd[LOC0] / radius)
        x_upd[THETA] = float(np.clip(x_upd[THETA], 0.0, np.pi))
        IKH = _I5 - K @ H
        P_upd = IKH @ P @ IKH.T + K @ R @ K.T
        P_upd = 0.5 * (P_upd + P_upd.T)
        return UpdateResult(BoundParameters(predicted.surface, x_upd, P_upd), float(chi2))
