class Gx2FitterError(Exception):
    """Base class for errors raised by the fitter."""


class UnconfiguredExtensionError(Gx2FitterError, ValueError):
    """A required extension (e.g. the calibrator) was never configured."""


class DuplicateMeasurementError(Gx2FitterError, ValueError):
    """Two input measurements share one geometry identifier."""


class MeasurementDimensionError(Gx2FitterError, ValueError):
    """A calibrated measurement is not a 2-D local hit with a 2x2 covariance."""


class MeasurementCovarianceError(Gx2FitterError, ValueError):
    """A measurement covariance cannot be inverted."""


class PropagationError(Gx2FitterError, RuntimeError):
    """The propagation engine failed to transport the track."""
