import numpy as np

from dataclasses import dataclass, field
from typing import Optional, Tuple

from gx2f.propagation.surfaces import PlaneSurface
from gx2f.states.states import BoundParameters, BoundTrackParameters
from gx2f.tracker.errors import PropagationError
from gx2f.utils.tools import (
    BOUND_SIZE, BoundIndices,
    d_direction_d_phi, d_direction_d_theta, direction_from_phi_theta, phi_theta_from_direction,
)


@dataclass
class StepperState:
    """
    Free state of a straight-line track plus the last bound state it was
    expressed in. Time advances with path length (units with c = 1).
    """
    position: np.ndarray
    time: float
    direction: np.ndarray
    q_over_p: float
    charge: float

    bound: BoundTrackParameters
    covariance: Optional[np.ndarray] = None
    jacobian: np.ndarray = field(default_factory=lambda: np.eye(BOUND_SIZE))
    path_length: float = 0.0

    # Surface the current bound state was computed on, None right after a step
    bound_surface: Optional[PlaneSurface] = None


def straight_line_jacobian(start: BoundTrackParameters, target: PlaneSurface) -> Tuple[np.ndarray, float]:
    """
    Analytic Jacobian of the bound parameters on the target surface with
    respect to the bound parameters on the start surface, for a straight line.

    Returns the (6, 6) Jacobian and the path length between the two surfaces.
    """
    params = start.parameters
    surface = start.reference_surface

    position = surface.local_to_global(params.loc)
    direction = direction_from_phi_theta(params.phi, params.theta)

    path = target.intersect(position, direction)
    if path is None:
        raise PropagationError(f"Track is parallel to {target}")

    n = target.normal
    cos_incidence = n @ direction

    # Derivatives of the start position and direction w.r.t. the bound parameters (3 x 6)
    d_pos = np.zeros((3, BOUND_SIZE))
    d_pos[:, BoundIndices.LOC0] = surface.u
    d_pos[:, BoundIndices.LOC1] = surface.v

    d_dir = np.zeros((3, BOUND_SIZE))
    d_dir[:, BoundIndices.PHI] = d_direction_d_phi(params.phi, params.theta)
    d_dir[:, BoundIndices.THETA] = d_direction_d_theta(params.phi, params.theta)

    # Path length correction, the end point must stay on the target plane
    d_path = -(n @ d_pos + path * (n @ d_dir)) / cos_incidence

    d_end = d_pos + np.outer(direction, d_path) + path * d_dir

    jacobian = np.zeros((BOUND_SIZE, BOUND_SIZE))
    jacobian[BoundIndices.LOC0] = target.u @ d_end
    jacobian[BoundIndices.LOC1] = target.v @ d_end
    jacobian[BoundIndices.PHI, BoundIndices.PHI] = 1.0
    jacobian[BoundIndices.THETA, BoundIndices.THETA] = 1.0
    jacobian[BoundIndices.QOVERP, BoundIndices.QOVERP] = 1.0
    jacobian[BoundIndices.TIME] = d_path
    jacobian[BoundIndices.TIME, BoundIndices.TIME] += 1.0

    return jacobian, path


class StraightLineStepper:
    """
    Stepper for neutral or field-free tracks moving on straight lines.
    """
    def __init__(self, surface_tolerance: float = 1e-6):
        self.surface_tolerance = surface_tolerance

    def make_state(self, start: BoundTrackParameters) -> StepperState:
        return StepperState(
            position=start.position(),
            time=start.time,
            direction=start.direction(),
            q_over_p=start.parameters.q_over_p,
            charge=start.charge,
            bound=start,
            covariance=None if start.covariance is None else start.covariance.copy(),
            bound_surface=start.reference_surface,
        )

    def position(self, state: StepperState) -> np.ndarray:
        return state.position

    def direction(self, state: StepperState) -> np.ndarray:
        return state.direction

    def step(self, state: StepperState, path: float) -> None:
        state.position = state.position + path * state.direction
        state.time += path
        state.path_length += path
        state.bound_surface = None

    def transport_covariance_to_bound(self, state: StepperState, surface: PlaneSurface) -> None:
        self.bound_state(state, surface, transport_cov=True)

    def bound_state(self, state: StepperState, surface: PlaneSurface,
                    transport_cov: bool = True) -> Tuple[BoundTrackParameters, np.ndarray, float]:
        """
        Express the current state on a surface.

        Returns the bound parameters (with transported covariance if any),
        the Jacobian from the previous bound state and the accumulated path
        length. Raises PropagationError if the stepper is not on the surface.
        """
        if state.bound_surface is not surface:
            distance = surface.distance(state.position)
            if abs(distance) > self.surface_tolerance:
                raise PropagationError(
                    f"Stepper is {distance:.3g} away from {surface}, cannot create bound state"
                )

            jacobian, _ = straight_line_jacobian(state.bound, surface)

            phi, theta = phi_theta_from_direction(state.direction)
            loc = surface.global_to_local(state.position)
            parameters = BoundParameters(loc[0], loc[1], phi, theta, state.q_over_p, state.time)

            covariance = state.covariance
            if covariance is not None and transport_cov:
                covariance = jacobian @ covariance @ jacobian.T
                state.covariance = covariance

            state.jacobian = jacobian
            state.bound = BoundTrackParameters(
                parameters=parameters,
                reference_surface=surface,
                covariance=None if covariance is None else covariance.copy(),
                charge=state.charge,
            )
            state.bound_surface = surface

        return state.bound, state.jacobian.copy(), state.path_length
