from dataclasses import dataclass
from typing import List

from gx2f.sensors.measurement import Measurement
from gx2f.states.states import BoundTrackParameters
from gx2f.tracker.result import Gx2FitResult
from gx2f.utils.config_classes import Config


@dataclass
class TrackSample:
    """
    One simulated track: truth, the measurements it left and what the fitter made of it.
    """
    index: int
    truth: BoundTrackParameters
    start: BoundTrackParameters
    measurements: List[Measurement]
    fit_result: Gx2FitResult


@dataclass
class SimulationResult:
    """
    A data class to store the results of a complete simulation run.
    It holds the configuration and one sample per simulated track, in track order.
    """
    config: Config
    samples: List[TrackSample]

    @property
    def successful(self) -> List[TrackSample]:
        return [s for s in self.samples if s.fit_result.ok]

    @property
    def failure_rate(self) -> float:
        if not self.samples:
            return 0.0
        return 1.0 - len(self.successful) / len(self.samples)
