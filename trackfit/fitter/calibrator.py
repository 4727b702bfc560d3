from __future__ import annotations

from trackfit.parameters import BoundParameters, Measurement

__all__ = ["VoidCalibrator"]


class VoidCalibrator:
    """Calibrator that returns the measurement unchanged."""

    def __call__(self, measurement: Measurement, predicted: BoundParameters) -> Measurement:
        return measurement

    def __repr__(self) -> str:
        return "VoidCalibrator()"
