import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest
from numpy.testing import assert_allclose

from trackfit.detector import barrel_geometry, telescope_geometry
from trackfit.exceptions import PropagationError
from trackfit.fitter import GainMatrixUpdator, KalmanFitter
from trackfit.navigator import Navigator
from trackfit.parameters import LOC0, LOC1, QOP, BoundParameters, Measurement, TrackState
from trackfit.propagator import Propagator, PropagatorOptions
from trackfit.stepper import HelixStepper, StepperState
from trackfit.surfaces import perigee_surface, plane_surface

B_FIELD = 2.0
START_COV = np.diag([0.1 ** 2, 0.1 ** 2, 1e-3 ** 2, 1e-3 ** 2, 1e-2 ** 2])


def _direction(phi, theta):
    return np.array([np.cos(phi) * np.sin(theta), np.sin(phi) * np.sin(theta), np.cos(theta)])


def _start(phi, theta, p=1.0, q=1.0):
    return BoundParameters.from_global(perigee_surface(), np.zeros(3), p * _direction(phi, theta), q, START_COV)


def _truth(surfaces, start, stepper):
    """Local coordinates where the helix from ``start`` crosses each surface."""
    truth = []
    for sf in surfaces:
        state = StepperState.from_parameters(start)
        s = stepper.path_to_surface(state, sf)
        assert s is not None
        pos, d = stepper.advance(state, s)
        truth.append(sf.global_to_local(pos, d))
    return truth


def _states(surfaces, truth, offsets=None):
    offsets = offsets or {}
    return [TrackState(Measurement(sf, (LOC0, LOC1), loc + offsets.get(i, 0.0), np.eye(2) * 0.01, hit_id=i))
            for i, (sf, loc) in enumerate(zip(surfaces, truth))]


def _fitter(geometry, chi2_cut=np.inf):
    stepper = HelixStepper(b_field=B_FIELD)
    return KalmanFitter(Propagator(stepper, Navigator(geometry)), GainMatrixUpdator(chi2_cut)), stepper


@pytest.fixture
def telescope():
    return telescope_geometry([100.0, 200.0, 300.0, 400.0, 500.0])


def test_telescope_fit_recovers_truth(telescope):
    fitter, stepper = _fitter(telescope)
    start = _start(0.3, 0.1)
    surfaces = telescope.sensitive_surfaces()
    truth = _truth(surfaces, start, stepper)
    # shuffled input order
    states = _states(surfaces, truth)[::-1]

    out = fitter.fit(states, start)
    result = out.result
    assert out.finished
    assert result.processed_states == 5
    assert result.unresolved == []
    assert result.n_outliers == 0
    assert out.steps == 5
    assert out.end_parameters.surface is surfaces[-1]
    for ts in result.fitted_states:
        loc = truth[ts.measurement.hit_id]
        assert_allclose(ts.filtered.parameters[:2], loc, atol=1e-3)
        assert ts.chi2 == pytest.approx(0.0, abs=1e-3)
        assert ts.filtered.covariance[LOC0, LOC0] <= ts.predicted.covariance[LOC0, LOC0]
        assert abs(ts.filtered.parameters[QOP] - 1.0) < 0.05


def test_unresolved_state_is_skipped(telescope):
    fitter, stepper = _fitter(telescope)
    start = _start(0.3, 0.1)
    surfaces = telescope.sensitive_surfaces()
    states = _states(surfaces, _truth(surfaces, start, stepper))
    outside = plane_surface((0.0, 0.0, 5000.0))
    states.append(TrackState(Measurement(outside, (LOC0, LOC1), [0.0, 0.0], np.eye(2))))

    out = fitter.fit(states, start)
    assert out.finished
    assert out.result.processed_states == 5
    assert out.result.unresolved == [5]
    assert out.result.fitted_states[5].predicted is None


def test_far_measurement_becomes_outlier(telescope):
    fitter, stepper = _fitter(telescope, chi2_cut=25.0)
    start = _start(0.3, 0.1)
    surfaces = telescope.sensitive_surfaces()
    truth = _truth(surfaces, start, stepper)
    states = _states(surfaces, truth, offsets={2: np.array([50.0, 0.0])})

    out = fitter.fit(states, start)
    assert out.finished
    assert out.result.processed_states == 5
    assert out.result.n_outliers == 1
    assert states[2].outlier and states[2].filtered is None
    for i in (0, 1, 3, 4):
        assert_allclose(states[i].filtered.parameters[:2], truth[i], atol=1e-3)


def test_fit_many_matches_sequential_fits(telescope):
    fitter, stepper = _fitter(telescope)
    surfaces = telescope.sensitive_surfaces()

    def job(phi):
        start = _start(phi, 0.1)
        return _states(surfaces, _truth(surfaces, start, stepper)), start

    phis = [0.3, -1.0, 2.0, 2.8]
    parallel = fitter.fit_many([job(phi) for phi in phis], max_workers=4)
    sequential = [fitter.fit(*job(phi)) for phi in phis]
    assert len(parallel) == len(phis)
    for a, b in zip(parallel, sequential):
        assert a.finished and b.finished
        for x, y in zip(a.result.fitted_states, b.result.fitted_states):
            assert_allclose(x.filtered.parameters, y.filtered.parameters)
            assert_allclose(x.filtered.covariance, y.filtered.covariance)
    assert fitter.fit_many([]) == []


def test_step_budget_is_enforced(telescope):
    fitter, stepper = _fitter(telescope)
    start = _start(0.3, 0.1)
    surfaces = telescope.sensitive_surfaces()
    states = _states(surfaces, _truth(surfaces, start, stepper))
    with pytest.raises(PropagationError) as err:
        fitter.fit(states, start, PropagatorOptions(max_steps=2))
    assert err.value.steps == 2


def test_debug_string_collects_actor_lines(telescope):
    fitter, stepper = _fitter(telescope)
    start = _start(0.3, 0.1)
    surfaces = telescope.sensitive_surfaces()
    states = _states(surfaces, _truth(surfaces, start, stepper))
    out = fitter.fit(states, start, PropagatorOptions(debug=True))
    assert out.debug_string.count("Filtering step successful") == 5
    assert "K->" in out.debug_string

    states = _states(surfaces, _truth(surfaces, start, stepper))
    assert fitter.fit(states, start).debug_string == ""


def test_barrel_fit_resolves_layers_geometrically():
    geometry = barrel_geometry([50.0, 100.0, 150.0], half_z=500.0, assign_layer_index=False)
    fitter, stepper = _fitter(geometry)
    start = _start(0.3, 1.2)
    surfaces = geometry.sensitive_surfaces()
    truth = _truth(surfaces, start, stepper)

    out = fitter.fit(_states(surfaces, truth), start)
    result = out.result
    assert out.finished
    assert result.processed_states == 3
    assert result.measurement_surfaces.layers() == [0, 1, 2]
    for ts, loc in zip(result.fitted_states, truth):
        assert_allclose(ts.filtered.parameters[:2], loc, atol=1e-3)
