import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from gx2f.states.track_container import MultiTrajectory, TrackState
from gx2f.tracker.errors import UnconfiguredExtensionError


class Direction(Enum):
    FORWARD = 1
    BACKWARD = -1


# calibrator(geo_context, source_link, track_state) -> None
Calibrator = Callable[[object, object, TrackState], None]
# updater(geo_context, track_state, direction, logger) -> None, raises on failure
Updater = Callable[[object, TrackState, Direction, logging.Logger], None]
# outlier_finder(track_state) -> bool
OutlierFinder = Callable[[TrackState], bool]


def void_calibrator(geo_context, source_link, track_state: TrackState) -> None:
    raise UnconfiguredExtensionError("No calibrator configured, void calibrator should never execute")


def void_updater(geo_context, track_state: TrackState, direction: Direction, logger: logging.Logger) -> None:
    track_state.filtered = None if track_state.predicted is None else track_state.predicted.copy()
    track_state.filtered_covariance = (
        None if track_state.predicted_covariance is None else track_state.predicted_covariance.copy()
    )


def void_smoother(geo_context, trajectory: MultiTrajectory, entry: int, logger: logging.Logger) -> None:
    for track_state in trajectory.visit_backwards(entry):
        track_state.smoothed = track_state.filtered
        track_state.smoothed_covariance = track_state.filtered_covariance


def void_outlier_finder(track_state: TrackState) -> bool:
    return False


@dataclass(frozen=True)
class Gx2FitterExtensions:
    """
    Delegates customizing the fit.

    calibrator -- Turns an uncalibrated source link into a calibrated 2-D
        measurement on the track state, e.g. applying wire sagging or module
        deformations. Left unconfigured (None) by default, fits refuse to
        start without one.
    updater -- Incorporates a measurement into filtered parameters. Shared
        with the Kalman-style fitters, the chi-square iteration does not use it.
    outlier_finder -- Decides whether a measurement is excluded from the fit.
    """
    calibrator: Optional[Calibrator] = None
    updater: Updater = void_updater
    outlier_finder: OutlierFinder = void_outlier_finder

    @property
    def is_configured(self) -> bool:
        return self.calibrator is not None and self.calibrator is not void_calibrator

    def require_configured(self) -> None:
        if not self.is_configured:
            raise UnconfiguredExtensionError(
                "Gx2FitterExtensions.calibrator is not configured. Supply a calibrator before fitting."
            )

    def calibrate(self, geo_context, source_link, track_state: TrackState) -> None:
        calibrator = self.calibrator if self.calibrator is not None else void_calibrator
        calibrator(geo_context, source_link, track_state)
