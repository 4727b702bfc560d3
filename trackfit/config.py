from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import orjson

from trackfit.exceptions import ConfigError
from trackfit.fitter import GainMatrixUpdator, KalmanFitter
from trackfit.navigator import Navigator
from trackfit.propagator import Propagator, PropagatorOptions
from trackfit.stepper import HelixStepper

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_CONFIG",
    "FitterConfig",
    "load_config",
    "setup_logging",
]

DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = {
    "stepper": {
        "b_field": 2.0,          # T
        "process_noise": 0.0,    # rad^2 / mm
    },
    "updator": {
        "chi2_cut": float("inf"),
    },
    "propagation": {
        "max_steps": 1000,
        "max_step_size": float("inf"),
        "path_limit": float("inf"),
        "nav_dir": 1,
        "debug": False,
    },
    "navigator": {
        "target_all_sensitive": False,
    },
    "fit": {
        "max_workers": None,
    },
}


def setup_logging(verbose: bool = False) -> None:
    r"""
    Configure process-wide logging.

    Parameters
    ----------
    verbose : bool, optional
        If ``True``, set level to ``DEBUG``; otherwise ``INFO``.

    Notes
    -----
    Format is ``'%(asctime)s | %(levelname)-8s | %(message)s'`` with ``%H:%M:%S`` timestamps.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


def _deep_update(d: dict, u: Mapping) -> dict:
    r"""
    Recursively merge dictionaries (without side effects).

    Nested dicts are merged; any other value in ``u`` replaces the one in ``d``.
    """
    out = dict(d)
    for k, v in u.items():
        if isinstance(v, Mapping) and isinstance(out.get(k), dict):
            out[k] = _deep_update(out[k], v)
        else:
            out[k] = v
    return out


def _check_keys(cfg: Mapping, reference: Mapping, where: str = "") -> None:
    for k, v in cfg.items():
        if k not in reference:
            raise ConfigError(f"Unknown configuration key '{where}{k}'")
        if isinstance(reference[k], dict):
            if not isinstance(v, Mapping):
                raise ConfigError(f"Configuration section '{where}{k}' must be an object")
            _check_keys(v, reference[k], f"{where}{k}.")


@dataclass
class FitterConfig:
    r"""
    Flat, validated fitter configuration.

    Build it from nested overrides with :meth:`from_dict` or from a JSON file
    with :func:`load_config`; missing entries take the values of
    :data:`DEFAULT_CONFIG`.
    """
    b_field: float = 2.0
    process_noise: float = 0.0
    chi2_cut: float = float("inf")
    max_steps: int = 1000
    max_step_size: float = float("inf")
    path_limit: float = float("inf")
    nav_dir: int = 1
    debug: bool = False
    target_all_sensitive: bool = False
    max_workers: Optional[int] = None

    def __post_init__(self) -> None:
        if self.process_noise < 0.0:
            raise ConfigError("process_noise must be non-negative")
        if self.chi2_cut <= 0.0:
            raise ConfigError("chi2_cut must be positive")
        if self.max_steps <= 0:
            raise ConfigError("max_steps must be positive")
        if self.max_step_size <= 0.0 or self.path_limit <= 0.0:
            raise ConfigError("max_step_size and path_limit must be positive")
        if self.nav_dir not in (1, -1):
            raise ConfigError(f"nav_dir must be +1 or -1, got {self.nav_dir}")

    @classmethod
    def from_dict(cls, overrides: Optional[Mapping] = None) -> "FitterConfig":
        overrides = overrides or {}
        _check_keys(overrides, DEFAULT_CONFIG)
        cfg = _deep_update(DEFAULT_CONFIG, overrides)
        # JSON has no infinity; null means "unbounded" for the float limits
        def _limit(v):
            return float("inf") if v is None else float(v)
        try:
            return cls(
                b_field=float(cfg["stepper"]["b_field"]),
                process_noise=float(cfg["stepper"]["process_noise"]),
                chi2_cut=_limit(cfg["updator"]["chi2_cut"]),
                max_steps=int(cfg["propagation"]["max_steps"]),
                max_step_size=_limit(cfg["propagation"]["max_step_size"]),
                path_limit=_limit(cfg["propagation"]["path_limit"]),
                nav_dir=int(cfg["propagation"]["nav_dir"]),
                debug=bool(cfg["propagation"]["debug"]),
                target_all_sensitive=bool(cfg["navigator"]["target_all_sensitive"]),
                max_workers=cfg["fit"]["max_workers"],
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration value: {e}") from e

    def propagator_options(self) -> PropagatorOptions:
        return PropagatorOptions(max_steps=self.max_steps,
                                 max_step_size=self.max_step_size,
                                 path_limit=self.path_limit,
                                 nav_dir=self.nav_dir,
                                 debug=self.debug)

    def build_fitter(self, geometry) -> KalmanFitter:
        """Assemble stepper, navigator, propagator and fitter for ``geometry``."""
        stepper = HelixStepper(self.b_field, self.process_noise)
        navigator = Navigator(geometry, target_all_sensitive=self.target_all_sensitive)
        return KalmanFitter(Propagator(stepper, navigator), GainMatrixUpdator(self.chi2_cut))


def load_config(config_path: Union[str, Path]) -> FitterConfig:
    r"""
    Load a JSON configuration with :mod:`orjson` and merge it over the defaults.

    Parameters
    ----------
    config_path : str or pathlib.Path
        Path to the JSON file.

    Returns
    -------
    FitterConfig

    Raises
    ------
    ConfigError
        If the file cannot be read or parsed, is not a JSON object, or
        contains unknown keys or invalid values.
    """
    config_path = Path(config_path)
    try:
        raw = orjson.loads(config_path.read_bytes())
    except (OSError, orjson.JSONDecodeError) as e:
        raise ConfigError(f"Failed to parse {config_path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a JSON object")
    logger.debug("Loaded configuration from %s", config_path)
    return FitterConfig.from_dict(raw)
