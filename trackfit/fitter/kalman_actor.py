from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Set

from trackfit.exceptions import FitInvariantError, FitStateError
from trackfit.fitter.calibrator import VoidCalibrator
from trackfit.measurement_surfaces import MeasurementSurfaces, build_measurement_index
from trackfit.parameters import TrackState
from trackfit.propagator import debug_log
from trackfit.surfaces import Surface

logger = logging.getLogger(__name__)

__all__ = ["ActorStatus", "FitResult", "KalmanActor"]


class ActorStatus(Enum):
    """Lifecycle of one fit."""
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    TERMINATED = "terminated"


@dataclass
class FitResult:
    r"""
    Running state of one Kalman fit, owned by its :class:`KalmanActor`.

    Attributes
    ----------
    fitted_states : list of TrackState
        The trajectory, moved in from the actor on the first call.
    processed_states : int
        Number of states an update was attempted on (accepted or rejected).
    access_index : dict[Surface, int]
        Position in ``fitted_states`` of every resolved measurement surface.
    measurement_surfaces : MeasurementSurfaces, optional
        Layer -> surface index handed to the navigator.
    unresolved : list of int
        Positions excluded from the fit (no layer, or a later state on the
        same surface); never updated.
    processed_surfaces : set of Surface
        Surfaces already updated; a second visit is an invariant violation.
    status : ActorStatus
    """
    fitted_states: List[TrackState] = field(default_factory=list)
    processed_states: int = 0
    access_index: Dict[Surface, int] = field(default_factory=dict)
    measurement_surfaces: Optional[MeasurementSurfaces] = None
    unresolved: List[int] = field(default_factory=list)
    processed_surfaces: Set[Surface] = field(default_factory=set)
    status: ActorStatus = ActorStatus.UNINITIALIZED

    @property
    def expected_states(self) -> int:
        return len(self.access_index)

    @property
    def finished(self) -> bool:
        return self.status is ActorStatus.TERMINATED

    @property
    def n_outliers(self) -> int:
        return sum(1 for ts in self.fitted_states if ts.outlier)


class KalmanActor:
    r"""
    Per-step Kalman filter callback for the propagator.

    The actor takes ownership of ``track_states`` at construction and moves
    them into :attr:`FitResult.fitted_states` on its first call. One actor
    fits one trajectory exactly once.

    Called as ``actor(state, result)`` once per propagation step:

    1. On the first call the measurement index is built from the current
       stepper position (see
       :func:`~trackfit.measurement_surfaces.build_measurement_index`) and
       handed to the navigator as ``sequence.external_surfaces``.
    2. If the navigator reports a ``current_surface`` that is in the access
       index, the state on it is updated and counted.
    3. Once ``processed_states`` equals the number of resolved states the
       fit terminates and sets ``navigation_break``.

    Update on a surface:

    .. math::

        x^- = \mathrm{bind}(\text{stepper}, \text{surface}), \qquad
        x^+ = \mathrm{update}(m, x^-).

    On success the stepper position, direction, momentum and covariance are
    overwritten with :math:`x^+`; on rejection the stepper keeps
    :math:`x^-` and the state is flagged ``outlier`` (still counted).

    Parameters
    ----------
    track_states : sequence of TrackState
        Trajectory to fit (any order). Ownership passes to the actor.
    updator : callable
        ``updator(track_state, predicted) -> UpdateResult | None``.
    calibrator : callable, optional
        ``calibrator(measurement, predicted) -> Measurement``; defaults to
        :class:`~trackfit.fitter.calibrator.VoidCalibrator`.
    """

    result_type = FitResult
    name = "KalmanActor"

    def __init__(self,
                 track_states: Sequence[TrackState],
                 updator: Callable,
                 calibrator: Optional[Callable] = None) -> None:
        self._pending: Optional[List[TrackState]] = list(track_states)
        self.updator = updator
        self.calibrator = calibrator or VoidCalibrator()

    @property
    def consumed(self) -> bool:
        """``True`` once the trajectory has been moved into a result."""
        return self._pending is None

    def __call__(self, state, result: FitResult) -> None:
        if result.status is ActorStatus.TERMINATED:
            return
        if result.status is ActorStatus.UNINITIALIZED:
            self._initialize(state, result)
            if self._check_finished(state, result):
                return

        surface = state.navigation.current_surface
        if surface is None or surface not in result.access_index:
            return
        self._update(state, surface, result)
        self._check_finished(state, result)

    # ------------------------------------------------------------ lifecycle
    def _initialize(self, state, result: FitResult) -> None:
        if self._pending is None:
            raise FitStateError("KalmanActor trajectory was already moved into a fit result")
        if result.fitted_states:
            raise FitStateError("FitResult already holds a trajectory")
        result.fitted_states, self._pending = self._pending, None

        index, access_index, unresolved = build_measurement_index(
            result.fitted_states, state.stepping, state.navigation)
        result.measurement_surfaces = index
        result.access_index = access_index
        result.unresolved = unresolved
        state.navigation.sequence.external_surfaces = index
        result.status = ActorStatus.ACTIVE

        self._debug(state, lambda: f"Initialize: {len(access_index)} of "
                                   f"{len(result.fitted_states)} states on {len(index.layers())} layers")

    def _check_finished(self, state, result: FitResult) -> bool:
        if result.processed_states > result.expected_states:
            raise FitInvariantError(
                f"Processed {result.processed_states} states but only {result.expected_states} are expected")
        if result.processed_states < result.expected_states:
            return False
        result.status = ActorStatus.TERMINATED
        state.navigation.navigation_break = True
        self._debug(state, lambda: f"Finalize: {result.processed_states} states processed")
        logger.debug("Kalman fit finished: %d processed, %d outliers, %d unresolved",
                     result.processed_states, result.n_outliers, len(result.unresolved))
        return True

    # --------------------------------------------------------------- update
    def _update(self, state, surface: Surface, result: FitResult) -> None:
        if surface in result.processed_surfaces:
            raise FitInvariantError(f"Surface {surface!r} was reached twice", surface=surface)

        position = result.access_index[surface]
        track_state = result.fitted_states[position]
        self._debug(state, lambda: f"Measurement surface {surface.geometry_id} detected")

        predicted = state.stepper.bind(state.stepping, surface, True)
        track_state.predicted = predicted
        track_state.measurement = self.calibrator(track_state.measurement, predicted)
        updated = self.updator(track_state, predicted)

        if updated is not None:
            filtered = updated.parameters
            track_state.filtered = filtered
            track_state.chi2 = updated.chi2
            state.stepper.update(state.stepping, filtered.position(), filtered.direction(),
                                 filtered.absolute_momentum(), surface)
            state.stepping.covariance = filtered.covariance
            self._debug(state, lambda: f"Filtering step successful, chi2 = {updated.chi2:.3f}")
        else:
            track_state.outlier = True
            logger.info("Update rejected on %r (state %d); keeping the prediction", surface, position)
            self._debug(state, lambda: "Filtering step rejected")

        result.processed_surfaces.add(surface)
        result.processed_states += 1

    def _debug(self, state, producer: Callable[[], str]) -> None:
        marker = "K->" if state.stepping.nav_dir > 0 else "<-K"
        debug_log(state, producer, self.name, marker)
