from .calibrator import VoidCalibrator
from .fitter import FitOutput, KalmanFitter
from .kalman_actor import ActorStatus, FitResult, KalmanActor
from .updator import GainMatrixUpdator, UpdateResult

__all__ = [
    "VoidCalibrator",
    "FitOutput",
    "KalmanFitter",
    "ActorStatus",
    "FitResult",
    "KalmanActor",
    "GainMatrixUpdator",
    "UpdateResult",
]
