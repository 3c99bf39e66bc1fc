import numpy as np
from enum import IntEnum

BOUND_SIZE = 6
REDUCED_MATRIX_SIZE = 4
MEASUREMENT_DIM = 2


class BoundIndices(IntEnum):
    """
    Enum mapping bound parameter indices to human-readable names.
    """
    LOC0 = 0
    LOC1 = 1
    PHI = 2
    THETA = 3
    QOVERP = 4
    TIME = 5

    def __str__(self):
        return self.name


def ssa(angle: float | np.ndarray) -> float | np.ndarray:
    """
    Calculates the Smallest Signed Angle, wrapping the input to the range [-pi, pi].
    This function is vectorized and works on both scalars and NumPy arrays.
    """
    return np.pi - np.mod(np.pi - angle, 2 * np.pi)


def direction_from_phi_theta(phi: float, theta: float) -> np.ndarray:
    return np.array([
        np.cos(phi) * np.sin(theta),
        np.sin(phi) * np.sin(theta),
        np.cos(theta),
    ])


def phi_theta_from_direction(direction: np.ndarray) -> tuple[float, float]:
    direction = np.asarray(direction, dtype=float)
    direction = direction / np.linalg.norm(direction)
    phi = np.arctan2(direction[1], direction[0])
    theta = np.arccos(np.clip(direction[2], -1.0, 1.0))
    return phi, theta


def d_direction_d_phi(phi: float, theta: float) -> np.ndarray:
    return np.array([-np.sin(phi) * np.sin(theta), np.cos(phi) * np.sin(theta), 0.0])


def d_direction_d_theta(phi: float, theta: float) -> np.ndarray:
    return np.array([np.cos(phi) * np.cos(theta), np.sin(phi) * np.cos(theta), -np.sin(theta)])


def curvilinear_axes(direction: np.ndarray) -> np.ndarray:
    """
    Local frame of the plane perpendicular to a direction.

    Returns a (3, 3) rotation whose columns are (U, V, T) with T the unit
    direction, U perpendicular to both T and the global z axis, and
    V = T x U. Falls back to the global x axis when T is (anti)parallel to z.
    """
    T = np.asarray(direction, dtype=float)
    T = T / np.linalg.norm(T)

    if abs(T[2]) < 0.99999:
        U = np.array([-T[1], T[0], 0.0])
    else:
        U = np.cross(T, np.array([1.0, 0.0, 0.0]))
        U = np.cross(U, T)
    U /= np.linalg.norm(U)
    V = np.cross(T, U)

    return np.column_stack((U, V, T))


def projector(measurement_dim: int = MEASUREMENT_DIM, bound_size: int = BOUND_SIZE) -> np.ndarray:
    """
    Projection from the bound parameter space onto the local hit coordinates.
    Only 2-D local-position hits are supported, i.e. ones at (0, 0) and (1, 1).
    """
    proj = np.zeros((measurement_dim, bound_size))
    proj[0, 0] = 1.0
    proj[1, 1] = 1.0
    return proj
