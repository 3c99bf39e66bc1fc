"""
Tests for the Global Chi-Square fitter iteration.
"""

import logging

import numpy as np
import pytest
from numpy.testing import assert_allclose

from gx2f.propagation.navigator import Navigator
from gx2f.propagation.propagator import Propagator
from gx2f.propagation.stepper import StraightLineStepper
from gx2f.sensors.measurement import PassThroughCalibrator, SourceLink
from gx2f.simulation import build_telescope, create_measurements
from gx2f.states.track_container import TrackContainer, TrackQualityFlag
from gx2f.tracker.errors import DuplicateMeasurementError, PropagationError, UnconfiguredExtensionError
from gx2f.tracker.extensions import Gx2FitterExtensions
from gx2f.tracker.global_chi_square import Gx2Fitter
from gx2f.utils.config_classes import Gx2FitterOptions, PropagatorPlainOptions, TelescopeConfig

START_OFFSET = np.array([0.5, -0.4, 0.01, -0.01, 0.0, 0.0])


class FailingStepper(StraightLineStepper):
    def transport_covariance_to_bound(self, state, surface):
        raise PropagationError("transport failed")


class LateFailingStepper(StraightLineStepper):
    """Transports normally during the first propagations, fails afterwards."""
    def __init__(self, working_propagations):
        super().__init__()
        self.working_propagations = working_propagations
        self.propagations = 0

    def make_state(self, start):
        self.propagations += 1
        return super().make_state(start)

    def transport_covariance_to_bound(self, state, surface):
        if self.propagations > self.working_propagations:
            raise PropagationError("transport failed")
        super().transport_covariance_to_bound(state, surface)


class LateFailingPropagator(Propagator):
    def __init__(self, stepper, navigator, working_propagations):
        super().__init__(stepper, navigator)
        self.working_propagations = working_propagations
        self.propagations = 0

    def propagate(self, start, options, result=None):
        self.propagations += 1
        if self.propagations > self.working_propagations:
            raise PropagationError("step limit")
        return super().propagate(start, options, result)


@pytest.fixture
def start(truth):
    return truth.with_parameters(truth.parameters.updated(START_OFFSET), covariance=np.eye(6))


def source_links(measurements):
    return [m.source_link for m in measurements]


class TestExactRecovery:
    """Noise-free measurements must be fitted exactly."""

    def test_recovers_truth(self, propagator, truth, start, make_measurements, make_options):
        measurements = make_measurements(truth)
        container = TrackContainer()

        result = Gx2Fitter(propagator).fit(source_links(measurements), start, make_options(measurements), container)

        assert result.ok
        assert result.is_clean
        assert result.iterations == 5
        assert_allclose(result.track.parameters[:4], np.asarray(truth.parameters)[:4], atol=1e-8)
        assert result.chi2 < 1e-10

    def test_unfitted_parameters_untouched(self, propagator, truth, start, make_measurements, make_options):
        measurements = make_measurements(truth)
        result = Gx2Fitter(propagator).fit(source_links(measurements), start, make_options(measurements),
                                           TrackContainer())
        assert result.track.parameters[4] == start.parameters.q_over_p
        assert result.track.parameters[5] == start.parameters.time
        assert result.track.reference_surface is start.reference_surface

    def test_two_surfaces_from_truth(self, truth):
        telescope = build_telescope(TelescopeConfig(num_surfaces=2))
        propagator = Propagator(StraightLineStepper(), Navigator(telescope))
        measurements = create_measurements(propagator, truth, (0.0, 0.0), np.random.default_rng(0))
        for measurement in measurements:
            measurement.covariance = np.eye(2)

        options = Gx2FitterOptions(
            extensions=Gx2FitterExtensions(calibrator=PassThroughCalibrator(measurements)),
            n_update_max=1,
        )
        result = Gx2Fitter(propagator).fit(source_links(measurements), truth, options, TrackContainer())

        assert result.ok
        assert len(measurements) == 2
        assert_allclose(result.delta_history[0], np.zeros(6), atol=1e-9)
        assert_allclose(result.chi2, 0.0, atol=1e-15)
        assert not result.degraded_covariance


class TestIteration:
    """Test the behaviour of the iteration over noisy data."""

    def test_chi2_decreases(self, propagator, truth, start, make_options):
        measurements = create_measurements(propagator, truth, (0.05, 0.05), np.random.default_rng(7))
        result = Gx2Fitter(propagator).fit(source_links(measurements), start,
                                           make_options(measurements, n_update_max=6), TrackContainer())

        history = result.chi2_history
        assert len(history) == 6
        for previous, current in zip(history[:3], history[1:4]):
            assert current <= previous + 1e-6

    def test_final_chi2_matches_reported_parameters(self, propagator, truth, start, make_options):
        measurements = create_measurements(propagator, truth, (0.05, 0.05), np.random.default_rng(11))
        result = Gx2Fitter(propagator).fit(source_links(measurements), start, make_options(measurements),
                                           TrackContainer())
        assert_allclose(result.chi2, result.chi2_history[-1])
        assert_allclose(result.track.chi2, result.chi2, rtol=1e-12)

    def test_covariance(self, propagator, truth, start, make_measurements, make_options):
        measurements = make_measurements(truth)
        result = Gx2Fitter(propagator).fit(source_links(measurements), start, make_options(measurements),
                                           TrackContainer())

        covariance = result.track.covariance
        assert_allclose(covariance[:4, :4], covariance[:4, :4].T, rtol=1e-8, atol=1e-14)
        assert np.all(np.linalg.eigvalsh(covariance[:4, :4]) > 0)
        expected = np.eye(6)
        assert_allclose(covariance[4:, :], expected[4:, :], rtol=0, atol=0)
        assert_allclose(covariance[:, 4:], expected[:, 4:], rtol=0, atol=0)

    def test_zero_iterations(self, propagator, truth, start, make_measurements, make_options):
        measurements = make_measurements(truth)
        result = Gx2Fitter(propagator).fit(source_links(measurements), start,
                                           make_options(measurements, n_update_max=0), TrackContainer())
        assert result.ok
        assert result.iterations == 0
        assert not result.degraded_covariance
        assert_allclose(result.track.parameters, np.asarray(start.parameters))
        assert_allclose(result.track.covariance, np.eye(6))
        assert result.track.n_states == 0


class TestConvergence:
    """Optional early exit on small updates."""

    def test_early_exit(self, propagator, truth, start, make_measurements, make_options):
        measurements = make_measurements(truth)
        options = make_options(measurements, n_update_max=20, convergence_threshold=1e-9)
        result = Gx2Fitter(propagator).fit(source_links(measurements), start, options, TrackContainer())

        assert result.converged
        assert result.iterations < 20
        assert not result.flags & TrackQualityFlag.NOT_CONVERGED
        assert_allclose(result.track.parameters[:4], np.asarray(truth.parameters)[:4], atol=1e-8)

    def test_not_converged_flag(self, propagator, truth, start, make_measurements, make_options):
        measurements = make_measurements(truth)
        options = make_options(measurements, n_update_max=2, convergence_threshold=1e-30)
        result = Gx2Fitter(propagator).fit(source_links(measurements), start, options, TrackContainer())

        assert result.ok
        assert not result.converged
        assert result.flags & TrackQualityFlag.NOT_CONVERGED
        assert not result.is_clean

    def test_no_threshold_runs_full_budget(self, propagator, truth, start, make_measurements, make_options):
        measurements = make_measurements(truth)
        result = Gx2Fitter(propagator).fit(source_links(measurements), start,
                                           make_options(measurements, n_update_max=7), TrackContainer())
        assert result.iterations == 7
        assert not result.converged
        assert result.flags == TrackQualityFlag.NONE


class TestDegenerateInput:
    """Fewer constraints than fitted parameters."""

    def test_single_measurement_degraded(self, propagator, truth, start, make_measurements, make_options):
        measurements = make_measurements(truth)
        result = Gx2Fitter(propagator).fit(source_links(measurements[:1]), start, make_options(measurements),
                                           TrackContainer())

        assert result.ok
        assert result.degraded_covariance
        assert result.flags & TrackQualityFlag.DEGRADED_COVARIANCE
        assert_allclose(result.track.covariance, np.eye(6))
        assert np.all(np.isfinite(result.track.parameters))
        assert result.track.ndf == 0

    def test_no_measurements_degraded(self, propagator, start, make_options):
        result = Gx2Fitter(propagator).fit([], start, make_options([]), TrackContainer())
        assert result.ok
        assert result.degraded_covariance
        assert_allclose(result.track.parameters, np.asarray(start.parameters))

    def test_degraded_logs_warning(self, propagator, truth, start, make_measurements, make_options, caplog):
        measurements = make_measurements(truth)
        with caplog.at_level(logging.WARNING, logger="Gx2Fitter"):
            Gx2Fitter(propagator).fit(source_links(measurements[:1]), start, make_options(measurements),
                                      TrackContainer())
        assert any("singular" in record.getMessage() for record in caplog.records)


class TestContractViolations:
    """Invalid input raises before any propagation."""

    def test_unconfigured_calibrator(self, propagator, truth, start, make_measurements, make_options):
        measurements = make_measurements(truth)
        options = make_options(measurements, extensions=Gx2FitterExtensions())
        with pytest.raises(UnconfiguredExtensionError):
            Gx2Fitter(propagator).fit(source_links(measurements), start, options, TrackContainer())

    def test_duplicate_measurements(self, propagator, truth, start, make_measurements, make_options):
        measurements = make_measurements(truth)
        links = source_links(measurements)
        links.append(SourceLink(links[0].geometry_id, 99))
        with pytest.raises(DuplicateMeasurementError):
            Gx2Fitter(propagator).fit(links, start, make_options(measurements), TrackContainer())

    def test_material_flags_warn(self, propagator, truth, start, make_measurements, make_options, caplog):
        measurements = make_measurements(truth)
        options = make_options(measurements, multiple_scattering=True)
        with caplog.at_level(logging.WARNING, logger="Gx2Fitter"):
            result = Gx2Fitter(propagator).fit(source_links(measurements), start, options, TrackContainer())
        assert result.ok
        assert any("Material" in record.getMessage() for record in caplog.records)

    def test_invalid_options(self, make_options):
        with pytest.raises(ValueError):
            make_options([], n_update_max=-1)
        with pytest.raises(ValueError):
            make_options([], reduced_size=7)


class TestEngineFailure:
    """Engine failures end the fit with a failed result."""

    def test_transport_failure(self, telescope, truth, start, make_measurements, make_options):
        measurements = make_measurements(truth)
        propagator = Propagator(FailingStepper(), Navigator(telescope))
        container = TrackContainer()

        result = Gx2Fitter(propagator).fit(source_links(measurements), start, make_options(measurements), container)

        assert not result.ok
        assert result.track is None
        assert isinstance(result.error, PropagationError)
        assert len(container) == 0
        assert len(container.trajectory) == 0

    @pytest.mark.parametrize("working_propagations", [1, 3])
    def test_transport_failure_in_later_iteration(self, telescope, truth, start, make_measurements, make_options,
                                                  working_propagations):
        measurements = make_measurements(truth)
        stepper = LateFailingStepper(working_propagations)
        container = TrackContainer()

        result = Gx2Fitter(Propagator(stepper, Navigator(telescope))).fit(
            source_links(measurements), start, make_options(measurements), container)

        assert not result.ok
        assert result.track is None
        assert isinstance(result.error, PropagationError)
        assert result.iterations == working_propagations
        assert len(result.chi2_history) == working_propagations
        assert len(container) == 0
        assert len(container.trajectory) == 0

    def test_propagator_failure_in_later_iteration(self, telescope, truth, start, make_measurements, make_options):
        measurements = make_measurements(truth)
        propagator = LateFailingPropagator(StraightLineStepper(), Navigator(telescope), working_propagations=2)
        container = TrackContainer()

        result = Gx2Fitter(propagator).fit(source_links(measurements), start, make_options(measurements), container)

        assert not result.ok
        assert isinstance(result.error, PropagationError)
        assert result.iterations == 2
        assert len(container) == 0

    def test_step_limit(self, propagator, truth, start, make_measurements, make_options):
        measurements = make_measurements(truth)
        options = make_options(measurements, propagator_plain_options=PropagatorPlainOptions(max_steps=2))
        result = Gx2Fitter(propagator).fit(source_links(measurements), start, options, TrackContainer())

        assert not result.ok
        assert isinstance(result.error, PropagationError)
        assert result.iterations == 0


class TestTrackOutput:
    """Test the track written to the container."""

    def test_track_quantities(self, propagator, truth, start, make_measurements, make_options):
        measurements = make_measurements(truth)
        container = TrackContainer()
        result = Gx2Fitter(propagator).fit(source_links(measurements), start, make_options(measurements), container)

        track = result.track
        assert len(container) == 1
        assert container.get_track(0) is track
        assert track.n_measurements == 6
        assert track.n_holes == 0
        assert track.n_outliers == 0
        assert track.n_states == 6
        assert track.ndf == 8

        states = container.track_states(track)
        assert [s.reference_surface for s in states] == propagator.navigator.detector.surfaces
        assert_allclose(sum(s.chi2 for s in states), track.chi2)

    def test_holes_and_outliers(self, propagator, truth, start, telescope, make_measurements, make_options):
        measurements = make_measurements(truth)
        links = [measurements[i].source_link for i in (0, 2, 3, 5)]
        outlier_surface = telescope.surfaces[3]
        options = make_options(measurements)
        options.extensions = Gx2FitterExtensions(
            calibrator=options.extensions.calibrator,
            outlier_finder=lambda track_state: track_state.reference_surface is outlier_surface,
        )

        result = Gx2Fitter(propagator).fit(links, start, options, TrackContainer())

        track = result.track
        assert track.n_measurements == 3
        assert track.n_outliers == 1
        assert track.n_holes == 2
        assert track.n_states == 6
        assert track.ndf == 2

    def test_surface_limit_flag(self, truth, start, make_options):
        telescope = build_telescope(TelescopeConfig(num_surfaces=15, spacing=20.0))
        propagator = Propagator(StraightLineStepper(), Navigator(telescope))
        measurements = create_measurements(propagator, truth, (0.0, 0.0), np.random.default_rng(0))
        for measurement in measurements:
            measurement.covariance = np.eye(2) * 0.05 ** 2

        result = Gx2Fitter(propagator).fit(source_links(measurements), start, make_options(measurements),
                                           TrackContainer())

        assert result.ok
        assert result.finished_by_limit
        assert result.flags & TrackQualityFlag.FINISHED_BY_LIMIT
        assert result.track.n_measurements == 12

    def test_tracks_share_container(self, propagator, truth, start, make_measurements, make_options):
        measurements = make_measurements(truth)
        container = TrackContainer()
        fitter = Gx2Fitter(propagator)
        first = fitter.fit(source_links(measurements), start, make_options(measurements), container)
        second = fitter.fit(source_links(measurements[:4]), start, make_options(measurements), container)

        assert len(container) == 2
        assert len(container.track_states(first.track)) == 6
        assert len(container.track_states(second.track)) == 4
        assert len(container.trajectory) == 10
