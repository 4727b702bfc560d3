from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from trackfit.fitter.calibrator import VoidCalibrator
from trackfit.fitter.kalman_actor import FitResult, KalmanActor
from trackfit.fitter.updator import GainMatrixUpdator
from trackfit.parameters import BoundParameters, TrackState
from trackfit.propagator import Propagator, PropagatorOptions

logger = logging.getLogger(__name__)

__all__ = ["FitOutput", "KalmanFitter"]


@dataclass
class FitOutput:
    """Kalman fit result plus the propagation that produced it."""
    result: FitResult
    end_parameters: BoundParameters
    steps: int
    path_length: float
    debug_string: str = ""

    @property
    def finished(self) -> bool:
        return self.result.finished


class KalmanFitter:
    r"""
    Forward Kalman filter over one trajectory.

    Wraps a :class:`~trackfit.fitter.kalman_actor.KalmanActor` in a
    propagation started from ``start_parameters``.

    Parameters
    ----------
    propagator : Propagator
    updator : callable, optional
        Default :class:`GainMatrixUpdator` without gating.
    calibrator : callable, optional
        Default :class:`VoidCalibrator`.
    """

    def __init__(self, propagator: Propagator, updator=None, calibrator=None) -> None:
        self.propagator = propagator
        self.updator = updator or GainMatrixUpdator()
        self.calibrator = calibrator or VoidCalibrator()

    def fit(self,
            track_states: Sequence[TrackState],
            start_parameters: BoundParameters,
            options: Optional[PropagatorOptions] = None) -> FitOutput:
        """
        Fit one trajectory. ``track_states`` is taken over by the fit and
        returned (updated in place) in ``FitOutput.result.fitted_states``.
        """
        actor = KalmanActor(track_states, self.updator, self.calibrator)
        prop = self.propagator.propagate(start_parameters, options, actors=[actor])
        result = prop.get(KalmanActor)
        if not result.finished:
            logger.warning("Kalman fit stopped early: %d of %d states processed",
                           result.processed_states, result.expected_states)
        return FitOutput(result, prop.end_parameters, prop.steps, prop.path_length, prop.debug_string)

    def fit_many(self,
                 jobs: Iterable[Tuple[Sequence[TrackState], BoundParameters]],
                 options: Optional[PropagatorOptions] = None,
                 max_workers: Optional[int] = None) -> List[FitOutput]:
        r"""
        Fit independent trajectories in a thread pool.

        Each job gets its own actor and result; nothing mutable is shared
        between fits. Results are returned in job order. The first failing
        job re-raises its exception.
        """
        jobs = list(jobs)
        if not jobs:
            return []
        with ThreadPoolExecutor(max_workers=max_workers) as exe:
            futures = [exe.submit(self.fit, states, start, options) for states, start in jobs]
            outputs = [f.result() for f in futures]
        logger.info("Fitted %d trajectories (%d finished)", len(outputs), sum(o.finished for o in outputs))
        return outputs
