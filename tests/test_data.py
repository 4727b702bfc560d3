import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pandas as pd
import pytest

from trackfit.data import MEASUREMENT_COLUMNS, fit_result_frame, fit_summary, track_states_from_frame
from trackfit.detector import telescope_geometry
from trackfit.fitter import KalmanFitter
from trackfit.navigator import Navigator
from trackfit.parameters import LOC0, LOC1, BoundParameters
from trackfit.propagator import Propagator
from trackfit.stepper import HelixStepper
from trackfit.surfaces import perigee_surface


@pytest.fixture
def geometry():
    return telescope_geometry([100.0, 200.0, 300.0])


def _hits(geometry):
    # straight track along z: every plane is hit at its centre
    return pd.DataFrame({
        "hit_id": [11, 12, 13],
        "geometry_id": [int(sf.geometry_id) for sf in geometry.sensitive_surfaces()],
        "loc0": [0.0, 0.0, 0.0],
        "loc1": [0.0, 0.0, 0.0],
        "var_loc0": [0.01] * 3,
        "var_loc1": [0.01] * 3,
    })


def test_track_states_from_frame(geometry):
    states = track_states_from_frame(_hits(geometry), geometry)
    assert [ts.surface for ts in states] == geometry.sensitive_surfaces()
    assert [ts.measurement.hit_id for ts in states] == [11, 12, 13]
    assert states[0].measurement.indices == (LOC0, LOC1)
    np.testing.assert_allclose(states[0].measurement.covariance, np.eye(2) * 0.01)

    no_ids = _hits(geometry).drop(columns=["hit_id"])
    assert all(ts.measurement.hit_id is None for ts in track_states_from_frame(no_ids, geometry))


def test_frame_errors(geometry):
    with pytest.raises(KeyError):
        track_states_from_frame(_hits(geometry).drop(columns=["var_loc1"]), geometry)
    hits = _hits(geometry)
    hits.loc[0, "geometry_id"] = 12345
    with pytest.raises(KeyError):
        track_states_from_frame(hits, geometry)
    assert set(MEASUREMENT_COLUMNS) <= set(_hits(geometry).columns)


def test_result_and_summary_frames(geometry):
    fitter = KalmanFitter(Propagator(HelixStepper(b_field=0.0), Navigator(geometry)))
    # slightly off the beam axis so the perigee frame is defined
    start = BoundParameters.from_global(perigee_surface(), np.zeros(3), [1e-3, 0.0, 1.0], 1.0,
                                        np.diag([0.01, 0.01, 1e-6, 1e-6, 1e-4]))
    out = fitter.fit(track_states_from_frame(_hits(geometry), geometry), start)
    assert out.finished

    frame = fit_result_frame(out.result, track=7)
    assert len(frame) == 3
    assert (frame["track"] == 7).all()
    assert frame["processed"].all() and frame["resolved"].all()
    assert not frame["outlier"].any()
    assert list(frame["layer"]) == [1, 2, 3]
    assert list(frame["hit_id"]) == [11, 12, 13]
    assert frame["filt_loc0"].abs().max() < 0.5

    summary = fit_summary([out])
    row = summary.iloc[0]
    assert row["n_states"] == 3 and row["n_processed"] == 3
    assert row["n_unresolved"] == 0
    assert bool(row["finished"])
    assert row["p"] == pytest.approx(1.0, rel=1e-5)
    assert row["steps"] == 3
