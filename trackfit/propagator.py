from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence

import numpy as np

from trackfit.exceptions import PropagationError
from trackfit.navigator import NavigationState, Navigator
from trackfit.parameters import BoundParameters
from trackfit.stepper import HelixStepper, StepperState
from trackfit.surfaces import plane_surface

logger = logging.getLogger(__name__)

__all__ = [
    "PropagatorOptions",
    "PropagatorState",
    "PropagatorResult",
    "Propagator",
    "debug_log",
]


@dataclass
class PropagatorOptions:
    r"""
    Options of one propagation.

    Attributes
    ----------
    max_steps : int
        Step budget; exceeding it raises :class:`PropagationError`.
    max_step_size : float
        Upper bound of a single step (mm).
    path_limit : float
        Total path budget (mm); the propagation stops quietly when reached.
    nav_dir : int
        ``+1`` forward, ``-1`` backward.
    debug : bool
        Collect per-step debug lines in ``PropagatorState.debug_string``.
    debug_pfx_width, debug_msg_width : int
        Column widths of the debug lines.
    """
    max_steps: int = 1000
    max_step_size: float = np.inf
    path_limit: float = np.inf
    nav_dir: int = 1
    debug: bool = False
    debug_pfx_width: int = 30
    debug_msg_width: int = 50


class PropagatorState:
    """Everything an actor sees during one step."""

    __slots__ = ("options", "stepping", "navigation", "stepper", "debug_string")

    def __init__(self,
                 options: PropagatorOptions,
                 stepping: StepperState,
                 navigation: NavigationState,
                 stepper: HelixStepper) -> None:
        self.options = options
        self.stepping = stepping
        self.navigation = navigation
        self.stepper = stepper
        self.debug_string = ""


def debug_log(state, producer: Callable[[], str], name: str, marker: str = "") -> None:
    r"""
    Append one formatted line to ``state.debug_string``.

    ``producer`` is only evaluated when ``state.options.debug`` is set, so
    message formatting costs nothing on the normal path. The line is also
    sent to the module logger at ``DEBUG`` level.
    """
    options = state.options
    if not options.debug:
        return
    line = (f"   {marker}{name:>{options.debug_pfx_width}} | "
            f"{producer():>{options.debug_msg_width}}")
    state.debug_string += line + "\n"
    logger.debug("%s", line)


@dataclass
class PropagatorResult:
    """End state of a propagation plus the per-actor results."""
    end_parameters: BoundParameters
    steps: int
    path_length: float
    results: Dict[type, Any]
    debug_string: str = ""

    def get(self, actor_type: type) -> Any:
        try:
            return self.results[actor_type]
        except KeyError:
            raise KeyError(f"No result for actor type {actor_type.__name__}") from None


class Propagator:
    r"""
    Step loop driving a stepper, a navigator and a list of actors.

    Per iteration: the navigator picks a target and step size, the stepper
    moves, the navigator updates ``current_surface`` and every actor is
    called as ``actor(state, result)``. Actors are also called once before
    the first step. The loop ends when ``navigation_break`` is set or the
    path limit is reached.

    Parameters
    ----------
    stepper : HelixStepper
    navigator : Navigator
    """

    def __init__(self, stepper: HelixStepper, navigator: Navigator) -> None:
        self.stepper = stepper
        self.navigator = navigator

    def propagate(self,
                  start: BoundParameters,
                  options: Optional[PropagatorOptions] = None,
                  actors: Sequence[Any] = ()) -> PropagatorResult:
        """
        Propagate ``start`` until navigation stops.

        Raises
        ------
        PropagationError
            If ``options.max_steps`` is exhausted.
        """
        options = options or PropagatorOptions()
        stepping = StepperState.from_parameters(start, options.nav_dir)
        state = PropagatorState(options, stepping, self.navigator.make_state(), self.stepper)
        results: Dict[type, Any] = {type(a): a.result_type() for a in actors}

        def act() -> None:
            for actor in actors:
                actor(state, results[type(actor)])

        self.navigator.status(state)
        act()
        steps = 0
        while not state.navigation.navigation_break:
            if stepping.path_accumulated >= options.path_limit:
                logger.debug("Path limit %.3f reached", options.path_limit)
                break
            self.navigator.target(state)
            if state.navigation.navigation_break:
                break
            if steps >= options.max_steps:
                raise PropagationError(f"Step budget of {options.max_steps} exhausted", steps=steps)
            self.stepper.step(stepping)
            steps += 1
            self.navigator.status(state)
            act()

        surface = state.navigation.current_surface
        if surface is None:
            surface = plane_surface(stepping.position, stepping.direction, name="curvilinear")
        end = self.stepper.bind(stepping, surface, True)
        logger.debug("Propagation finished after %d steps, path %.3f", steps, stepping.path_accumulated)
        return PropagatorResult(end, steps, stepping.path_accumulated, results, state.debug_string)
