__all__ = [
    "GeometryID", "Identifier",
    "Surface", "SurfaceType", "Intersection",
    "plane_surface", "disc_surface", "cylinder_surface", "line_surface", "perigee_surface",
    "CylinderVolumeBounds", "CuboidVolumeBounds", "BoundarySurface", "AbstractVolume", "volume_adjacency",
    "Layer", "LayerArray", "TrackingVolume", "TrackingGeometry", "telescope_geometry", "barrel_geometry",
    "BoundParameters", "Measurement", "TrackState",
    "MeasurementSurfaces", "build_measurement_index",
    "HelixStepper", "StepperState",
    "Navigator", "NavigationState",
    "Propagator", "PropagatorOptions", "PropagatorResult",
    "KalmanActor", "FitResult", "ActorStatus", "KalmanFitter", "GainMatrixUpdator", "VoidCalibrator",
    "FitterConfig", "load_config", "setup_logging",
    "TrackFitError", "GeometryError", "PropagationError", "FitStateError", "FitInvariantError", "ConfigError",
]

# Identifiers
from .geometry_id import GeometryID, Identifier

# Geometry
from .surfaces import (
    Surface,
    SurfaceType,
    Intersection,
    plane_surface,
    disc_surface,
    cylinder_surface,
    line_surface,
    perigee_surface,
)
from .volumes import CylinderVolumeBounds, CuboidVolumeBounds, BoundarySurface, AbstractVolume, volume_adjacency
from .detector import Layer, LayerArray, TrackingVolume, TrackingGeometry, telescope_geometry, barrel_geometry

# Track model
from .parameters import BoundParameters, Measurement, TrackState
from .measurement_surfaces import MeasurementSurfaces, build_measurement_index

# Propagation
from .stepper import HelixStepper, StepperState
from .navigator import Navigator, NavigationState
from .propagator import Propagator, PropagatorOptions, PropagatorResult

# Fitting
from .fitter import KalmanActor, FitResult, ActorStatus, KalmanFitter, GainMatrixUpdator, VoidCalibrator

# Configuration & errors
from .config import FitterConfig, load_config, setup_logging
from .exceptions import (
    TrackFitError,
    GeometryError,
    PropagationError,
    FitStateError,
    FitInvariantError,
    ConfigError,
)
