from dataclasses import dataclass
from typing import Optional
import numpy as np

from gx2f.propagation.surfaces import GeometryIdentifier, PlaneSurface
from gx2f.utils.tools import BoundIndices, direction_from_phi_theta, phi_theta_from_direction, ssa


def _at_index(index: int):
    def getter(self):
        return float(np.asarray(self)[index])

    def setter(self, value):
        np.asarray(self)[index] = value

    return property(getter, setter)


class BoundParameters(np.ndarray):
    """
    Defines the bound track parameter vector, expressed on a reference surface.

    loc0 -- First local coordinate on the surface
    loc1 -- Second local coordinate on the surface
    phi -- Azimuthal angle of the direction
    theta -- Polar angle of the direction
    q_over_p -- Charge over momentum
    time -- Time coordinate
    """
    loc0 = _at_index(BoundIndices.LOC0)
    loc1 = _at_index(BoundIndices.LOC1)
    phi = _at_index(BoundIndices.PHI)
    theta = _at_index(BoundIndices.THETA)
    q_over_p = _at_index(BoundIndices.QOVERP)
    time = _at_index(BoundIndices.TIME)

    def __new__(cls, loc0=0.0, loc1=0.0, phi=0.0, theta=np.pi / 2, q_over_p=1.0, time=0.0):
        full_state = np.array([loc0, loc1, phi, theta, q_over_p, time], dtype=float)
        return full_state.view(cls)

    @classmethod
    def from_vector(cls, vector) -> "BoundParameters":
        vector = np.asarray(vector, dtype=float).flatten()
        if vector.size != len(BoundIndices):
            raise ValueError(f"Bound parameter vector needs {len(BoundIndices)} entries, got {vector.size}")
        return cls(*vector)

    @property
    def loc(self) -> np.ndarray:
        return np.asarray(self)[:2].copy()

    def updated(self, delta: np.ndarray) -> "BoundParameters":
        """Returns a copy shifted by delta, with phi wrapped to [-pi, pi]."""
        new = BoundParameters.from_vector(np.asarray(self) + np.asarray(delta, dtype=float))
        new.phi = ssa(new.phi)
        return new


@dataclass
class BoundTrackParameters:
    """
    Track parameters bound to a reference surface, with optional covariance.
    """
    parameters: BoundParameters
    reference_surface: PlaneSurface
    covariance: Optional[np.ndarray] = None
    charge: float = 1.0

    def __post_init__(self):
        if not isinstance(self.parameters, BoundParameters):
            self.parameters = BoundParameters.from_vector(self.parameters)
        if self.covariance is not None:
            self.covariance = np.asarray(self.covariance, dtype=float).reshape(6, 6)

    @classmethod
    def curvilinear(cls, pos4, direction, q_over_p: float, covariance=None, charge: float = 1.0) -> "BoundTrackParameters":
        """
        Parameters on the plane through the position that is perpendicular
        to the direction. Local position is zero by construction.
        """
        pos4 = np.asarray(pos4, dtype=float)
        phi, theta = phi_theta_from_direction(direction)
        surface = PlaneSurface.from_normal(
            pos4[:3], direction,
            geometry_id=GeometryIdentifier(),
            is_sensitive=False,
        )
        parameters = BoundParameters(0.0, 0.0, phi, theta, q_over_p, pos4[3])
        return cls(parameters=parameters, reference_surface=surface, covariance=covariance, charge=charge)

    def position(self, geo_context=None) -> np.ndarray:
        return self.reference_surface.local_to_global(self.parameters.loc)

    def four_position(self, geo_context=None) -> np.ndarray:
        return np.append(self.position(geo_context), self.time)

    @property
    def time(self) -> float:
        return self.parameters.time

    def direction(self) -> np.ndarray:
        return direction_from_phi_theta(self.parameters.phi, self.parameters.theta)

    def absolute_momentum(self) -> float:
        q = abs(self.charge) if self.charge != 0 else 1.0
        return q / abs(self.parameters.q_over_p)

    def transverse_momentum(self) -> float:
        return self.absolute_momentum() * np.sin(self.parameters.theta)

    def momentum(self) -> np.ndarray:
        return self.absolute_momentum() * self.direction()

    def signed_charge(self) -> float:
        if self.charge == 0:
            return 0.0
        return float(np.sign(self.parameters.q_over_p) * abs(self.charge))

    def with_parameters(self, parameters: BoundParameters, covariance=None) -> "BoundTrackParameters":
        return BoundTrackParameters(
            parameters=parameters,
            reference_surface=self.reference_surface,
            covariance=covariance,
            charge=self.charge,
        )
