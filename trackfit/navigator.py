from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from trackfit.measurement_surfaces import MeasurementSurfaces
from trackfit.surfaces import Surface

logger = logging.getLogger(__name__)

__all__ = ["NavigationSequence", "NavigationState", "Navigator"]


@dataclass
class NavigationSequence:
    """Surfaces an actor asked the navigator to stop on."""
    external_surfaces: Optional[MeasurementSurfaces] = None


@dataclass
class NavigationState:
    r"""
    Per-propagation navigation state.

    Attributes
    ----------
    world_volume : object, optional
        Geometry entry point with ``tracking_volume(point)``.
    current_surface : Surface, optional
        Surface reached by the last step (``None`` between surfaces).
    target_surface : Surface, optional
        Surface the current step aims at.
    sequence : NavigationSequence
        External surface hint.
    navigation_break : bool
        Stop signal, set by the navigator (nothing left to reach) or an actor.
    """
    world_volume: Optional[object] = None
    current_surface: Optional[Surface] = None
    target_surface: Optional[Surface] = None
    sequence: NavigationSequence = field(default_factory=NavigationSequence)
    navigation_break: bool = False


class Navigator:
    r"""
    Surface-to-surface navigator.

    Candidates are the surfaces in ``sequence.external_surfaces`` when an
    actor provided them, otherwise every sensitive surface of the geometry.
    With ``target_all_sensitive=True`` the hint is ignored and the navigator
    stops on every sensitive surface.

    Each :meth:`target` call picks the nearest forward candidate along the
    helix and sets the stepper's step size; :meth:`status` reports the
    surface when the step lands on it.
    """

    def __init__(self, geometry=None, target_all_sensitive: bool = False) -> None:
        self.geometry = geometry
        self.target_all_sensitive = target_all_sensitive

    def make_state(self) -> NavigationState:
        return NavigationState(world_volume=self.geometry)

    def _candidates(self, navigation: NavigationState) -> List[Surface]:
        external = navigation.sequence.external_surfaces
        if external is not None and not self.target_all_sensitive:
            return external.surfaces()
        if self.geometry is None:
            return []
        return self.geometry.sensitive_surfaces()

    def status(self, state) -> None:
        """Set ``current_surface`` if the stepper sits on the targeted surface."""
        nav, stepping = state.navigation, state.stepping
        target = nav.target_surface
        if target is not None and target.is_on_surface(stepping.position, stepping.direction):
            nav.current_surface = target
            nav.target_surface = None
            logger.debug("Reached %r at path %.4f", target, stepping.path_accumulated)
        else:
            nav.current_surface = None

    def target(self, state) -> None:
        r"""
        Choose the next surface and set ``stepping.step_size``.

        Sets ``navigation_break`` when no forward candidate remains. The step
        is capped by ``options.max_step_size`` and the remaining path budget.
        """
        nav, stepping, stepper = state.navigation, state.stepping, state.stepper
        best: Optional[Surface] = None
        best_path = np.inf
        for surface in self._candidates(nav):
            if surface is nav.current_surface:
                continue
            path = stepper.path_to_surface(stepping, surface)
            if path is not None and path < best_path:
                best, best_path = surface, path
        if best is None:
            logger.debug("No forward candidate surface left; stopping navigation")
            nav.navigation_break = True
            nav.target_surface = None
            return
        remaining = state.options.path_limit - stepping.path_accumulated
        nav.target_surface = best
        stepping.step_size = min(best_path, state.options.max_step_size, remaining)
