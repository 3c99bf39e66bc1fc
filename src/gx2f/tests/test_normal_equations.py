"""
Tests for building and solving the Global Chi-Square normal equations.
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from gx2f.tracker.errors import MeasurementCovarianceError
from gx2f.tracker.normal_equations import (
    NormalEquationSystem,
    build_normal_equations,
    reduced_covariance,
    solve_pivoted_qr,
    solve_reduced,
)
from gx2f.utils.tools import projector


def random_contributions(n_meas, seed=0):
    rng = np.random.default_rng(seed)
    residuals = [rng.normal(size=2) for _ in range(n_meas)]
    covariances = []
    for _ in range(n_meas):
        a = rng.normal(size=(2, 2))
        covariances.append(a @ a.T + 0.1 * np.eye(2))
    jacobians = [np.eye(6) + 0.1 * rng.normal(size=(6, 6)) for _ in range(n_meas)]
    return residuals, covariances, jacobians


class TestBuildNormalEquations:
    """Test accumulation of measurement contributions."""

    def test_empty(self):
        system = build_normal_equations([], [], [])
        assert system.chi2 == 0.0
        assert system.n_measurements == 0
        assert_allclose(system.a_matrix, np.zeros((6, 6)))
        assert_allclose(system.b_vector, np.zeros(6))

    def test_matches_explicit_sum(self):
        residuals, covariances, jacobians = random_contributions(4)
        system = build_normal_equations(residuals, covariances, jacobians)

        h = projector()
        a = np.zeros((6, 6))
        b = np.zeros(6)
        chi2 = 0.0
        for r, c, j in zip(residuals, covariances, jacobians):
            c_inv = np.linalg.inv(c)
            a += (h @ j).T @ c_inv @ (h @ j)
            b += (h @ j).T @ c_inv @ r
            chi2 += r @ c_inv @ r

        assert_allclose(system.a_matrix, a, atol=1e-12)
        assert_allclose(system.b_vector, b, atol=1e-12)
        assert_allclose(system.chi2, chi2)
        assert_allclose(system.chi2_contributions.sum(), chi2)
        assert system.n_measurements == 4

    def test_symmetric(self):
        system = build_normal_equations(*random_contributions(7, seed=3))
        assert_allclose(system.a_matrix, system.a_matrix.T, rtol=0, atol=0)

    def test_chi2_non_negative(self):
        for seed in range(5):
            system = build_normal_equations(*random_contributions(3, seed=seed))
            assert system.chi2 >= 0
            assert np.all(system.chi2_contributions >= 0)

    def test_singular_covariance_raises(self):
        residuals, covariances, jacobians = random_contributions(2)
        covariances[1] = np.zeros((2, 2))
        with pytest.raises(MeasurementCovarianceError):
            build_normal_equations(residuals, covariances, jacobians)

    def test_size_mismatch_raises(self):
        residuals, covariances, jacobians = random_contributions(2)
        with pytest.raises(ValueError):
            build_normal_equations(residuals, covariances[:1], jacobians)


class TestSolve:
    """Test the pivoted QR solver and the reduced block handling."""

    def test_full_rank_solution(self):
        rng = np.random.default_rng(1)
        a = rng.normal(size=(4, 4))
        a = a @ a.T + np.eye(4)
        x_true = rng.normal(size=4)

        x, rank = solve_pivoted_qr(a, a @ x_true)
        assert rank == 4
        assert_allclose(x, x_true, atol=1e-10)

    def test_rank_deficient_solution(self):
        # Only the first two components are constrained
        a = np.diag([2.0, 4.0, 0.0, 0.0])
        b = np.array([2.0, 8.0, 0.0, 0.0])

        x, rank = solve_pivoted_qr(a, b)
        assert rank == 2
        assert_allclose(x, [1.0, 2.0, 0.0, 0.0], atol=1e-12)

    def test_zero_matrix(self):
        x, rank = solve_pivoted_qr(np.zeros((4, 4)), np.zeros(4))
        assert rank == 0
        assert_allclose(x, np.zeros(4))

    def test_solve_reduced_pads_delta(self):
        system = build_normal_equations(*random_contributions(5))
        delta, rank = solve_reduced(system)

        assert delta.shape == (6,)
        assert rank == 4
        assert_allclose(delta[4:], 0.0)
        a_reduced, b_reduced = system.reduced()
        assert_allclose(a_reduced @ delta[:4], b_reduced, atol=1e-10)


class TestReducedCovariance:
    """Test covariance extraction from the normal matrix."""

    def test_inverse_of_reduced_block(self):
        system = build_normal_equations(*random_contributions(5))
        covariance, singular = reduced_covariance(system)

        assert not singular
        a_reduced, _ = system.reduced()
        assert_allclose(covariance[:4, :4] @ a_reduced, np.eye(4), atol=1e-9)

    def test_identity_outside_block(self):
        system = build_normal_equations(*random_contributions(5))
        covariance, _ = reduced_covariance(system)

        expected = np.eye(6)
        assert_allclose(covariance[4:, :], expected[4:, :])
        assert_allclose(covariance[:, 4:], expected[:, 4:])

    def test_single_measurement_is_singular(self):
        residuals, covariances, jacobians = random_contributions(1)
        system = build_normal_equations(residuals, covariances, jacobians)
        covariance, singular = reduced_covariance(system)

        assert singular
        assert_allclose(covariance, np.eye(6))

    def test_empty_system_is_singular(self):
        covariance, singular = reduced_covariance(NormalEquationSystem.empty())
        assert singular
        assert_allclose(covariance, np.eye(6))
