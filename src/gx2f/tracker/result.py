from dataclasses import dataclass, field
from typing import List, Optional
import numpy as np

from gx2f.states.track_container import TrackProxy, TrackQualityFlag
from gx2f.tracker.Gx2FitterResult import Gx2FitterResult


@dataclass
class Gx2FitResult:
    """
    Outcome of a single fit call.
    """
    track: Optional[TrackProxy]
    error: Optional[Exception] = None

    chi2: float = np.nan
    iterations: int = 0
    converged: bool = False

    # Quality flags, also stored on the track
    degraded_covariance: bool = False
    finished_by_limit: bool = False

    # Optional Debugging / Analysis Info
    chi2_history: List[float] = field(default_factory=list)
    delta_history: List[np.ndarray] = field(default_factory=list)
    final_iteration: Optional[Gx2FitterResult] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.track is not None

    @property
    def flags(self) -> TrackQualityFlag:
        if self.track is None:
            return TrackQualityFlag.NONE
        return self.track.flags

    @property
    def is_clean(self) -> bool:
        """Succeeded without any quality flag raised."""
        return self.ok and self.flags == TrackQualityFlag.NONE
