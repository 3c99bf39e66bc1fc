import numpy as np
import pytest

from gx2f.propagation.navigator import Navigator
from gx2f.propagation.propagator import Propagator
from gx2f.propagation.stepper import StraightLineStepper
from gx2f.sensors.measurement import PassThroughCalibrator
from gx2f.simulation import build_reference_surface, build_telescope, create_measurements
from gx2f.states.states import BoundParameters, BoundTrackParameters
from gx2f.tracker.extensions import Gx2FitterExtensions
from gx2f.utils.config_classes import Gx2FitterOptions, TelescopeConfig

HIT_STD_DEV = 0.05


@pytest.fixture
def telescope():
    return build_telescope(TelescopeConfig())


@pytest.fixture
def reference_surface():
    return build_reference_surface()


@pytest.fixture
def propagator(telescope):
    return Propagator(StraightLineStepper(), Navigator(telescope))


@pytest.fixture
def truth(reference_surface):
    parameters = BoundParameters(0.3, -0.2, 0.05, np.pi / 2 + 0.03, 1.0, 0.0)
    return BoundTrackParameters(parameters=parameters, reference_surface=reference_surface)


@pytest.fixture
def make_measurements(propagator):
    """Noise-free hits of a track on every sensitive surface, with HIT_STD_DEV resolution."""
    def _make(track_parameters, std=HIT_STD_DEV):
        measurements = create_measurements(propagator, track_parameters, (0.0, 0.0), np.random.default_rng(0))
        for measurement in measurements:
            measurement.covariance = np.eye(2) * std ** 2
        return measurements
    return _make


@pytest.fixture
def make_options():
    def _make(measurements, **kwargs):
        extensions = kwargs.pop("extensions", Gx2FitterExtensions(calibrator=PassThroughCalibrator(measurements)))
        return Gx2FitterOptions(extensions=extensions, **kwargs)
    return _make
