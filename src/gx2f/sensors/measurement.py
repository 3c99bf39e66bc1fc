import numpy as np

from dataclasses import dataclass, field
from typing import Sequence

from gx2f.propagation.surfaces import GeometryIdentifier
from gx2f.states.track_container import TrackState


@dataclass(frozen=True)
class SourceLink:
    """
    Handle to an uncalibrated measurement.

    geometry_id -- Surface the measurement was recorded on
    index -- Position of the measurement in its measurement container
    """
    geometry_id: GeometryIdentifier
    index: int


@dataclass
class Measurement:
    """
    A 2-D local hit on a detector surface.
    """
    source_link: SourceLink
    values: np.ndarray
    covariance: np.ndarray = field(default_factory=lambda: np.eye(2))

    def __post_init__(self):
        self.values = np.asarray(self.values, dtype=float)
        self.covariance = np.asarray(self.covariance, dtype=float)

    @property
    def geometry_id(self) -> GeometryIdentifier:
        return self.source_link.geometry_id


class PassThroughCalibrator:
    """
    Calibrator that copies the stored measurement into the track state
    without any track-dependent correction.
    """
    def __init__(self, measurements: Sequence[Measurement]):
        self.measurements = list(measurements)

    def __call__(self, geo_context, source_link: SourceLink, track_state: TrackState) -> None:
        measurement = self.measurements[source_link.index]
        track_state.calibrated = measurement.values.copy()
        track_state.calibrated_covariance = measurement.covariance.copy()
