from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from trackfit.fitter.fitter import FitOutput
from trackfit.fitter.kalman_actor import FitResult
from trackfit.geometry_id import GeometryID
from trackfit.parameters import LOC0, LOC1, QOP, Measurement, TrackState

logger = logging.getLogger(__name__)

__all__ = [
    "MEASUREMENT_COLUMNS",
    "track_states_from_frame",
    "fit_result_frame",
    "fit_summary",
]

MEASUREMENT_COLUMNS = ("geometry_id", "loc0", "loc1", "var_loc0", "var_loc1")


def track_states_from_frame(hits: pd.DataFrame, geometry) -> List[TrackState]:
    r"""
    Build a trajectory from a table of 2D measurements.

    Parameters
    ----------
    hits : pandas.DataFrame
        One row per measurement with columns ``geometry_id`` (packed
        identifier of a sensitive surface), ``loc0``, ``loc1``, ``var_loc0``
        and ``var_loc1``. An optional ``hit_id`` column is carried over.
    geometry : TrackingGeometry
        Closed geometry used to look the surfaces up.

    Returns
    -------
    list of TrackState
        In row order.

    Raises
    ------
    KeyError
        If a column is missing or a ``geometry_id`` is unknown.
    """
    missing = [c for c in MEASUREMENT_COLUMNS if c not in hits.columns]
    if missing:
        raise KeyError(f"Missing measurement columns: {missing}")
    has_hit_id = "hit_id" in hits.columns

    states: List[TrackState] = []
    for row in hits.itertuples(index=False):
        gid = GeometryID(int(row.geometry_id))
        surface = geometry.find_surface(gid)
        if surface is None:
            raise KeyError(f"Unknown geometry id {gid!r}")
        meas = Measurement(surface,
                           (LOC0, LOC1),
                           np.array([row.loc0, row.loc1], dtype=np.float64),
                           np.diag([row.var_loc0, row.var_loc1]).astype(np.float64),
                           hit_id=int(row.hit_id) if has_hit_id else None)
        states.append(TrackState(meas))
    logger.debug("Built %d track states from %d rows", len(states), len(hits))
    return states


def _loc(params, k: int) -> float:
    return float(params.parameters[k]) if params is not None else np.nan


def fit_result_frame(result: FitResult, track: Optional[int] = None) -> pd.DataFrame:
    r"""
    One row per track state of a fit.

    Columns: ``track``, ``position``, ``geometry_id``, ``volume``, ``layer``,
    ``sensitive``, ``hit_id``, ``resolved``, ``processed``, ``outlier``,
    ``chi2``, ``pred_loc0``, ``pred_loc1``, ``filt_loc0``, ``filt_loc1``,
    ``filt_qop``.
    """
    rows = []
    unresolved = set(result.unresolved)
    for pos, ts in enumerate(result.fitted_states):
        gid = ts.surface.geometry_id
        rows.append({
            "track": track,
            "position": pos,
            "geometry_id": int(gid),
            "volume": gid.volume,
            "layer": gid.layer,
            "sensitive": gid.sensitive,
            "hit_id": ts.measurement.hit_id,
            "resolved": pos not in unresolved,
            "processed": ts.is_processed,
            "outlier": ts.outlier,
            "chi2": ts.chi2,
            "pred_loc0": _loc(ts.predicted, LOC0),
            "pred_loc1": _loc(ts.predicted, LOC1),
            "filt_loc0": _loc(ts.filtered, LOC0),
            "filt_loc1": _loc(ts.filtered, LOC1),
            "filt_qop": _loc(ts.filtered, QOP),
        })
    return pd.DataFrame(rows, columns=[
        "track", "position", "geometry_id", "volume", "layer", "sensitive", "hit_id",
        "resolved", "processed", "outlier", "chi2",
        "pred_loc0", "pred_loc1", "filt_loc0", "filt_loc1", "filt_qop",
    ])


def fit_summary(outputs: Sequence[FitOutput]) -> pd.DataFrame:
    r"""
    One row per fit: state counts, :math:`\sum\chi^2`, end momentum.

    ``chi2_ndf`` divides by the number of measured parameters of the
    accepted states minus the five fitted parameters (``NaN`` when
    non-positive).
    """
    rows = []
    for i, out in enumerate(outputs):
        res = out.result
        accepted = [ts for ts in res.fitted_states if ts.filtered is not None]
        chi2_sum = float(sum(ts.chi2 for ts in accepted))
        ndf = sum(ts.measurement.size for ts in accepted) - 5
        rows.append({
            "track": i,
            "n_states": len(res.fitted_states),
            "n_resolved": res.expected_states,
            "n_processed": res.processed_states,
            "n_outliers": res.n_outliers,
            "n_unresolved": len(res.unresolved),
            "finished": res.finished,
            "chi2": chi2_sum,
            "chi2_ndf": chi2_sum / ndf if ndf > 0 else np.nan,
            "p": out.end_parameters.absolute_momentum(),
            "charge": out.end_parameters.charge,
            "steps": out.steps,
            "path_length": out.path_length,
        })
    return pd.DataFrame(rows)
