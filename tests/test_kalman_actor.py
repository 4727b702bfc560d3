import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

from types import SimpleNamespace

import numpy as np
import pytest
from numpy.testing import assert_allclose

from trackfit.exceptions import FitInvariantError, FitStateError
from trackfit.fitter.kalman_actor import ActorStatus, FitResult, KalmanActor
from trackfit.fitter.updator import UpdateResult
from trackfit.navigator import NavigationState
from trackfit.parameters import LOC0, LOC1, BoundParameters, Measurement, TrackState
from trackfit.propagator import PropagatorOptions, debug_log
from trackfit.surfaces import plane_surface


class FakeStepper:
    """Records bind calls; binds wherever the stepping state currently is."""

    def __init__(self):
        self.bind_calls = []

    def bind(self, stepping, surface, want_covariance=True):
        self.bind_calls.append(surface)
        cov = stepping.covariance.copy() if want_covariance else None
        return BoundParameters.from_global(surface, stepping.position,
                                           stepping.momentum * stepping.direction, stepping.charge, cov)

    def update(self, stepping, position, direction, momentum, surface=None):
        stepping.position = np.array(position, dtype=float)
        stepping.direction = np.array(direction, dtype=float)
        stepping.momentum = float(momentum)


class FakeUpdator:
    """Shifts the local position and halves the covariance; rejects chosen surfaces."""

    def __init__(self, reject=()):
        self.reject = set(reject)
        self.calls = []

    def __call__(self, track_state, predicted):
        self.calls.append(track_state.surface)
        if track_state.surface in self.reject:
            return None
        x = predicted.parameters.copy()
        x[LOC0] += 0.5
        x[LOC1] -= 0.25
        return UpdateResult(BoundParameters(predicted.surface, x, 0.5 * predicted.covariance), 1.5)


def _telescope(n, offset=0.0):
    surfaces = []
    for i in range(n):
        sf = plane_surface((0.0, 0.0, offset + 100.0 * (i + 1)), name=f"plane{i}")
        sf.layer_index = i
        surfaces.append(sf)
    return surfaces


def _track_states(surfaces):
    return [TrackState(Measurement(sf, (LOC0, LOC1), [0.0, 0.0], np.eye(2) * 0.01)) for sf in surfaces]


def _prop_state(debug=False, nav_dir=1, world=None):
    stepping = SimpleNamespace(position=np.zeros(3), direction=np.array([0.0, 0.0, 1.0]),
                               momentum=2.0, charge=1.0, covariance=np.eye(5), nav_dir=nav_dir)
    return SimpleNamespace(options=PropagatorOptions(debug=debug), stepping=stepping,
                           navigation=NavigationState(world_volume=world), stepper=FakeStepper(),
                           debug_string="")


def _arrive(state, surface, i):
    """Simulate transport onto ``surface`` at a distinct transverse position."""
    z = surface.center()[2]
    state.stepping.position = np.array([0.1 * (i + 1), -0.2 * (i + 1), z])
    state.navigation.current_surface = surface


def _run(surfaces, updator=None, debug=False):
    actor = KalmanActor(_track_states(surfaces), updator or FakeUpdator())
    state, result = _prop_state(debug), FitResult()
    actor(state, result)
    for i, sf in enumerate(surfaces):
        _arrive(state, sf, i)
        actor(state, result)
    return state, result


def test_five_states_end_to_end():
    surfaces = _telescope(5)
    actor = KalmanActor(_track_states(surfaces), FakeUpdator())
    state, result = _prop_state(), FitResult()

    actor(state, result)
    assert result.status is ActorStatus.ACTIVE
    assert len(state.navigation.sequence.external_surfaces) == 5
    assert result.expected_states == 5

    for i, sf in enumerate(surfaces):
        assert not state.navigation.navigation_break
        _arrive(state, sf, i)
        actor(state, result)
        assert result.processed_states == i + 1

    assert state.navigation.navigation_break
    assert result.status is ActorStatus.TERMINATED
    last = result.fitted_states[-1].filtered
    assert_allclose(state.stepping.position, last.position())
    assert_allclose(state.stepping.covariance, last.covariance)
    assert_allclose(state.stepping.covariance, np.eye(5) * 0.5 ** 5)
    assert all(ts.filtered is not None and ts.chi2 == 1.5 for ts in result.fitted_states)


def test_rejected_update_keeps_prediction():
    surfaces = _telescope(5)
    actor = KalmanActor(_track_states(surfaces), FakeUpdator(reject=[surfaces[2]]))
    state, result = _prop_state(), FitResult()
    actor(state, result)
    for i, sf in enumerate(surfaces):
        _arrive(state, sf, i)
        transported = state.stepping.position.copy()
        cov_before = state.stepping.covariance.copy()
        actor(state, result)
        if i == 2:
            assert_allclose(state.stepping.position, transported)
            assert_allclose(state.stepping.covariance, cov_before)
    assert result.processed_states == 5
    assert result.finished
    rejected = result.fitted_states[2]
    assert rejected.outlier
    assert rejected.filtered is None
    assert rejected.predicted is not None
    assert result.n_outliers == 1
    assert_allclose(state.stepping.covariance, np.eye(5) * 0.5 ** 4)


def test_unknown_surface_is_inert():
    surfaces = _telescope(3)
    updator = FakeUpdator()
    actor = KalmanActor(_track_states(surfaces), updator)
    state, result = _prop_state(), FitResult()
    actor(state, result)
    _arrive(state, plane_surface((0.0, 0.0, 150.0)), 0)
    position = state.stepping.position.copy()
    actor(state, result)
    assert result.processed_states == 0
    assert state.stepper.bind_calls == []
    assert updator.calls == []
    assert_allclose(state.stepping.position, position)
    assert_allclose(state.stepping.covariance, np.eye(5))
    assert not any(ts.is_processed for ts in result.fitted_states)


def test_no_surface_reported_is_inert():
    surfaces = _telescope(2)
    actor = KalmanActor(_track_states(surfaces), FakeUpdator())
    state, result = _prop_state(), FitResult()
    actor(state, result)
    actor(state, result)
    assert result.processed_states == 0
    assert result.status is ActorStatus.ACTIVE


def test_independent_actors_do_not_interfere():
    first, second = _telescope(4), _telescope(4, offset=1000.0)
    _, alone_a = _run(first)
    _, alone_b = _run(second)

    actor_a = KalmanActor(_track_states(first), FakeUpdator())
    actor_b = KalmanActor(_track_states(second), FakeUpdator())
    state_a, state_b = _prop_state(), _prop_state()
    res_a, res_b = FitResult(), FitResult()
    actor_a(state_a, res_a)
    actor_b(state_b, res_b)
    for i in range(4):
        _arrive(state_a, first[i], i)
        actor_a(state_a, res_a)
        _arrive(state_b, second[i], i)
        actor_b(state_b, res_b)

    for alone, together in ((alone_a, res_a), (alone_b, res_b)):
        assert together.processed_states == alone.processed_states == 4
        assert set(together.access_index.values()) == set(alone.access_index.values())
        for x, y in zip(alone.fitted_states, together.fitted_states):
            assert_allclose(x.filtered.parameters, y.filtered.parameters)
            assert_allclose(x.filtered.covariance, y.filtered.covariance)
    assert set(res_a.access_index).isdisjoint(res_b.access_index)


def test_revisiting_a_processed_surface_is_reported():
    surfaces = _telescope(3)
    actor = KalmanActor(_track_states(surfaces), FakeUpdator())
    state, result = _prop_state(), FitResult()
    actor(state, result)
    _arrive(state, surfaces[0], 0)
    actor(state, result)
    with pytest.raises(FitInvariantError) as err:
        actor(state, result)
    assert err.value.surface is surfaces[0]
    assert result.processed_states == 1


def test_trajectory_is_moved_exactly_once():
    surfaces = _telescope(2)
    states = _track_states(surfaces)
    actor = KalmanActor(states, FakeUpdator())
    assert not actor.consumed
    state, result = _prop_state(), FitResult()
    actor(state, result)
    assert actor.consumed
    assert result.fitted_states[0] is states[0]
    with pytest.raises(FitStateError):
        actor(_prop_state(), FitResult())

    fresh = KalmanActor(_track_states(surfaces), FakeUpdator())
    with pytest.raises(FitStateError):
        fresh(_prop_state(), FitResult(fitted_states=_track_states(surfaces)))


def test_unresolved_states_do_not_block_termination():
    surfaces = _telescope(5)
    surfaces[4].layer_index = None
    actor = KalmanActor(_track_states(surfaces), FakeUpdator())
    state, result = _prop_state(), FitResult()
    actor(state, result)
    assert result.unresolved == [4]
    assert result.expected_states == 4
    for i, sf in enumerate(surfaces[:4]):
        _arrive(state, sf, i)
        actor(state, result)
    assert result.finished
    assert result.processed_states == 4
    assert len(result.fitted_states) == 5
    assert result.fitted_states[4].predicted is None


def test_nothing_to_fit_terminates_immediately():
    surfaces = _telescope(2)
    for sf in surfaces:
        sf.layer_index = None
    for states in (_track_states(surfaces), []):
        actor = KalmanActor(states, FakeUpdator())
        state, result = _prop_state(), FitResult()
        actor(state, result)
        assert result.finished
        assert state.navigation.navigation_break
        assert result.processed_states == 0


def test_calls_after_termination_are_ignored():
    surfaces = _telescope(2)
    state, result = _run(surfaces)
    assert result.finished
    bind_calls = len(state.stepper.bind_calls)
    state.navigation.current_surface = surfaces[0]
    actor = KalmanActor([], FakeUpdator())
    actor(state, result)
    assert len(state.stepper.bind_calls) == bind_calls
    assert result.processed_states == 2


def test_calibrated_measurement_reaches_the_updator():
    surfaces = _telescope(1)
    seen = []

    def calibrator(measurement, predicted):
        return Measurement(measurement.surface, measurement.indices, measurement.values + 1.0,
                           measurement.covariance)

    def updator(track_state, predicted):
        seen.append(track_state.measurement.values.copy())
        return None

    actor = KalmanActor(_track_states(surfaces), updator, calibrator)
    state, result = _prop_state(), FitResult()
    actor(state, result)
    _arrive(state, surfaces[0], 0)
    actor(state, result)
    assert_allclose(seen[0], [1.0, 1.0])
    assert result.fitted_states[0].outlier


def test_debug_producer_not_called_when_debug_is_off():
    def producer():
        raise AssertionError("message producer must not be evaluated")

    state = _prop_state(debug=False)
    debug_log(state, producer, "KalmanActor")
    assert state.debug_string == ""

    state, _ = _run(_telescope(2), debug=False)
    assert state.debug_string == ""


def test_debug_output_when_enabled():
    state, _ = _run(_telescope(2), debug=True)
    lines = state.debug_string.splitlines()
    assert any("K->" in l and "KalmanActor | " in l for l in lines)
    assert any("Filtering step successful" in l for l in lines)
    assert any("Finalize" in l for l in lines)

    state = _prop_state(debug=True, nav_dir=-1)
    KalmanActor([], FakeUpdator())(state, FitResult())
    assert "<-K" in state.debug_string


def test_shared_surface_updates_the_last_state():
    surfaces = _telescope(2)
    states = _track_states([surfaces[0], surfaces[1], surfaces[0]])
    actor = KalmanActor(states, FakeUpdator())
    state, result = _prop_state(), FitResult()
    actor(state, result)
    assert result.unresolved == [0]
    for i, sf in enumerate(surfaces):
        _arrive(state, sf, i)
        actor(state, result)
    assert result.finished
    assert result.processed_states == 2
    assert states[2].filtered is not None
    assert states[0].predicted is None
