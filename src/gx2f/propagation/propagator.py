import logging

from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from gx2f.propagation.navigator import NavigationState
from gx2f.propagation.stepper import StepperState
from gx2f.propagation.surfaces import PlaneSurface
from gx2f.states.states import BoundTrackParameters
from gx2f.tracker.errors import PropagationError
from gx2f.utils.config_classes import GeometryContext, MagneticFieldContext, PropagatorPlainOptions

logger = logging.getLogger(__name__)

# actor(state, stepper, navigator, result) -> None
Action = Callable[["PropagatorState", Any, Any, Any], None]
# aborter(state, stepper, navigator, result) -> bool
Aborter = Callable[["PropagatorState", Any, Any, Any], bool]


@dataclass
class PropagatorOptions:
    geo_context: GeometryContext = field(default_factory=GeometryContext)
    mag_field_context: MagneticFieldContext = field(default_factory=MagneticFieldContext)
    plain: PropagatorPlainOptions = field(default_factory=PropagatorPlainOptions)

    # Called in order at the start and after every surface reached
    actions: List[Action] = field(default_factory=list)
    # Evaluated after the actions, propagation stops when any returns True
    aborters: List[Aborter] = field(default_factory=list)

    target_surface: Optional[PlaneSurface] = None


@dataclass
class PropagatorState:
    options: PropagatorOptions
    stepping: StepperState
    navigation: NavigationState
    steps: int = 0

    @property
    def geo_context(self) -> GeometryContext:
        return self.options.geo_context


@dataclass
class PropagatorResult:
    result: Any
    end_parameters: Optional[BoundTrackParameters]
    steps: int
    path_length: float
    aborted: bool = False


class Propagator:
    """
    Moves a track through the detector, surface by surface, invoking the
    attached actions on every surface the navigator reports.
    """
    def __init__(self, stepper, navigator):
        self.stepper = stepper
        self.navigator = navigator

    def _act(self, state: PropagatorState, result) -> bool:
        for action in state.options.actions:
            action(state, self.stepper, self.navigator, result)
        return any(
            aborter(state, self.stepper, self.navigator, result)
            for aborter in state.options.aborters
        )

    def _finish(self, state: PropagatorState, result, aborted: bool) -> PropagatorResult:
        stepping = state.stepping
        return PropagatorResult(
            result=result,
            end_parameters=stepping.bound if stepping.bound_surface is not None else None,
            steps=state.steps,
            path_length=stepping.path_length,
            aborted=aborted,
        )

    def propagate(self, start: BoundTrackParameters, options: PropagatorOptions, result=None) -> PropagatorResult:
        """
        Propagate from the start parameters until navigation is exhausted,
        the path limit is reached or an aborter fires.

        The result object is handed to every action and aborter and returned
        in the PropagatorResult. Raises PropagationError if the step limit is
        exceeded or the stepper fails.
        """
        plain = options.plain
        state = PropagatorState(
            options=options,
            stepping=self.stepper.make_state(start),
            navigation=self.navigator.make_state(start.reference_surface, options.target_surface),
        )

        # Pre-step call, no current surface yet
        if self._act(state, result):
            return self._finish(state, result, aborted=True)

        while state.steps < plain.max_steps:
            target = self.navigator.next_target(
                state.navigation,
                self.stepper.position(state.stepping),
                plain.direction * self.stepper.direction(state.stepping),
            )
            if target is None:
                logger.debug(f"Navigation exhausted after {state.steps} steps")
                return self._finish(state, result, aborted=False)

            surface, path = target
            if state.stepping.path_length + path > plain.path_limit:
                logger.debug(f"Path limit {plain.path_limit} reached")
                return self._finish(state, result, aborted=True)

            self.stepper.step(state.stepping, plain.direction * path)
            state.steps += 1

            self.navigator.set_current_surface(state.navigation, surface)
            aborted = self._act(state, result)
            self.navigator.set_current_surface(state.navigation, None)
            if aborted:
                return self._finish(state, result, aborted=True)

        raise PropagationError(f"Propagation reached the step limit of {plain.max_steps}")
