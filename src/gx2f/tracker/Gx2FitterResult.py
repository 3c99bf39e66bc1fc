import numpy as np
from dataclasses import dataclass, field
from typing import List, Optional

from gx2f.propagation.surfaces import PlaneSurface
from gx2f.states.track_container import TrackState
from gx2f.utils.tools import BOUND_SIZE


@dataclass
class Gx2FitterResult:
    """
    Holds everything the actor collects during one propagation of a fit iteration.
    Created fresh for every iteration and discarded once the normal equations are built.
    """
    # States in visiting order, measurements, outliers and holes
    track_states: List[TrackState] = field(default_factory=list)

    # Collectors feeding the normal equations, one entry per non-outlier measurement
    collector_residuals: List[np.ndarray] = field(default_factory=list)
    collector_covariances: List[np.ndarray] = field(default_factory=list)
    collector_jacobians: List[np.ndarray] = field(default_factory=list)

    jacobian_from_start: np.ndarray = field(default_factory=lambda: np.eye(BOUND_SIZE))

    # Counters
    surface_count: int = 0
    measurement_states: int = 0
    measurement_holes: int = 0
    outlier_states: int = 0
    processed_states: int = 0

    # Sensitive surfaces without measurement not enclosed by measurements
    missed_active_surfaces: List[PlaneSurface] = field(default_factory=list)
    # Sensitive surfaces without measurement since the last measurement
    pending_holes: List[PlaneSurface] = field(default_factory=list)

    external_surfaces_registered: bool = False

    # Termination
    finished: bool = False
    finished_by_limit: bool = False
    target_reached: bool = False
    error: Optional[Exception] = None

    def close(self) -> None:
        """Called once propagation returned, trailing holes are not enclosed by measurements."""
        self.missed_active_surfaces.extend(self.pending_holes)
        self.pending_holes = []

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def measurement_track_states(self) -> List[TrackState]:
        return [s for s in self.track_states if s.is_measurement and not s.is_outlier]
