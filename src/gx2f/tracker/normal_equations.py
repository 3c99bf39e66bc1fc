"""
Normal equations of the linearized Global Chi-Square fit.

Every measurement i with residual r_i, covariance C_i and Jacobian J_i from
the start parameters contributes

    chi2 += r_i^T C_i^-1 r_i
    A    += (H J_i)^T C_i^-1 (H J_i)
    b    += (H J_i)^T C_i^-1 r_i

with H the 2xP projector onto the local hit coordinates. The update delta
solves A delta = b on the leading reduced block of the parameters.
"""
import numpy as np
from dataclasses import dataclass
from typing import Sequence, Tuple

from scipy.linalg import qr, solve_triangular

from gx2f.tracker.errors import MeasurementCovarianceError
from gx2f.utils.tools import BOUND_SIZE, REDUCED_MATRIX_SIZE, projector

# Relative size of an R diagonal entry, w.r.t. the largest pivot, below which a column counts as dependent
RANK_TOLERANCE = 1e-10


@dataclass
class NormalEquationSystem:
    a_matrix: np.ndarray
    b_vector: np.ndarray
    chi2: float
    n_measurements: int
    # Per-measurement chi2 contributions, in input order
    chi2_contributions: np.ndarray

    @classmethod
    def empty(cls, size: int = BOUND_SIZE) -> "NormalEquationSystem":
        return cls(np.zeros((size, size)), np.zeros(size), 0.0, 0, np.zeros(0))

    def reduced(self, reduced_size: int = REDUCED_MATRIX_SIZE) -> Tuple[np.ndarray, np.ndarray]:
        return (self.a_matrix[:reduced_size, :reduced_size].copy(),
                self.b_vector[:reduced_size].copy())


def build_normal_equations(residuals: Sequence[np.ndarray],
                           covariances: Sequence[np.ndarray],
                           jacobians: Sequence[np.ndarray]) -> NormalEquationSystem:
    """
    Accumulates the measurement contributions into the full PxP system.

    Raises MeasurementCovarianceError if a measurement covariance is singular.
    """
    if not len(residuals) == len(covariances) == len(jacobians):
        raise ValueError(
            f"Collector sizes differ: {len(residuals)} residuals, "
            f"{len(covariances)} covariances, {len(jacobians)} jacobians"
        )

    proj = projector()
    system = NormalEquationSystem.empty()
    contributions = np.zeros(len(residuals))

    for i_meas, (residual, covariance, jacobian) in enumerate(zip(residuals, covariances, jacobians)):
        try:
            cov_inv = np.linalg.inv(covariance)
        except np.linalg.LinAlgError as err:
            raise MeasurementCovarianceError(f"Measurement covariance {i_meas} is not invertible") from err

        projected_jacobian = proj @ jacobian

        contributions[i_meas] = residual @ cov_inv @ residual
        system.a_matrix += projected_jacobian.T @ cov_inv @ projected_jacobian
        system.b_vector += projected_jacobian.T @ cov_inv @ residual

    # Drop rounding asymmetry
    system.a_matrix = 0.5 * (system.a_matrix + system.a_matrix.T)
    system.chi2 = float(contributions.sum())
    system.n_measurements = len(residuals)
    system.chi2_contributions = contributions
    return system


def _rank(r_factor: np.ndarray, tolerance: float = None) -> int:
    diag = np.abs(np.diag(r_factor))
    if diag.size == 0 or diag[0] == 0.0:
        return 0
    if tolerance is None:
        tolerance = RANK_TOLERANCE
    return int(np.sum(diag > tolerance * diag[0]))


def solve_pivoted_qr(a_matrix: np.ndarray, b_vector: np.ndarray, tolerance: float = None) -> Tuple[np.ndarray, int]:
    """
    Solves a_matrix @ x = b_vector with a column-pivoted QR decomposition.

    Rank-deficient systems are handled by setting the components belonging to
    the dropped pivot columns to zero. Returns the solution and the numerical rank.
    """
    n = a_matrix.shape[1]
    q_factor, r_factor, pivots = qr(a_matrix, pivoting=True)
    rank = _rank(r_factor, tolerance)

    solution = np.zeros(n)
    if rank == 0:
        return solution, 0

    rhs = q_factor.T @ b_vector
    z = solve_triangular(r_factor[:rank, :rank], rhs[:rank])
    solution[pivots[:rank]] = z
    return solution, rank


def solve_reduced(system: NormalEquationSystem, reduced_size: int = REDUCED_MATRIX_SIZE,
                  tolerance: float = None) -> Tuple[np.ndarray, int]:
    """
    Parameter update from the leading reduced block, zero-padded to full size.
    Returns the delta and the rank of the reduced matrix.
    """
    a_reduced, b_reduced = system.reduced(reduced_size)
    delta_reduced, rank = solve_pivoted_qr(a_reduced, b_reduced, tolerance)

    delta = np.zeros(system.b_vector.shape[0])
    delta[:reduced_size] = delta_reduced
    return delta, rank


def reduced_covariance(system: NormalEquationSystem, reduced_size: int = REDUCED_MATRIX_SIZE,
                       tolerance: float = None) -> Tuple[np.ndarray, bool]:
    """
    Covariance of the fitted parameters from the inverse of the reduced block.

    Components outside the reduced block are identity. Returns the covariance
    and whether the reduced matrix was singular, in which case the covariance
    is the identity placeholder.
    """
    size = system.a_matrix.shape[0]
    covariance = np.eye(size)

    a_reduced, _ = system.reduced(reduced_size)
    _, r_factor, _ = qr(a_reduced, pivoting=True)
    if _rank(r_factor, tolerance) < reduced_size:
        return covariance, True

    covariance[:reduced_size, :reduced_size] = np.linalg.inv(a_reduced)
    return covariance, False
