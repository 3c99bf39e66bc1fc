from dataclasses import dataclass, field
from enum import IntFlag
from typing import Any, Iterator, List, Optional
import numpy as np

from gx2f.propagation.surfaces import PlaneSurface
from gx2f.utils.tools import BOUND_SIZE, MEASUREMENT_DIM, REDUCED_MATRIX_SIZE

INVALID_INDEX = -1


class TrackStateType(IntFlag):
    PARAMETER = 1
    MEASUREMENT = 2
    OUTLIER = 4
    HOLE = 8


class TrackQualityFlag(IntFlag):
    NONE = 0
    DEGRADED_COVARIANCE = 1     # Singular normal equations, covariance is a placeholder
    FINISHED_BY_LIMIT = 2       # Propagation stopped at the surface ceiling
    NOT_CONVERGED = 4           # Convergence threshold set but never met


@dataclass
class TrackState:
    """
    Holds everything recorded for one visited surface of a fit iteration.
    """
    reference_surface: PlaneSurface
    type_flags: TrackStateType = TrackStateType.PARAMETER
    source_link: Any = None

    # Transport
    predicted: Optional[np.ndarray] = None
    predicted_covariance: Optional[np.ndarray] = None
    jacobian: Optional[np.ndarray] = None               # Previous bound state -> this surface
    jacobian_from_start: Optional[np.ndarray] = None    # Start parameters -> this surface
    path_length: float = 0.0

    # Measurement, filled by the calibrator
    calibrated: Optional[np.ndarray] = None
    calibrated_covariance: Optional[np.ndarray] = None

    # Fit quantities
    residual: Optional[np.ndarray] = None
    chi2: float = 0.0

    # Used by updaters sharing the extension contract
    filtered: Optional[np.ndarray] = None
    filtered_covariance: Optional[np.ndarray] = None
    smoothed: Optional[np.ndarray] = None
    smoothed_covariance: Optional[np.ndarray] = None

    # Position in a trajectory, set when the state is stored
    index: int = INVALID_INDEX
    previous: int = INVALID_INDEX

    @property
    def is_measurement(self) -> bool:
        return bool(self.type_flags & TrackStateType.MEASUREMENT)

    @property
    def is_outlier(self) -> bool:
        return bool(self.type_flags & TrackStateType.OUTLIER)

    @property
    def is_hole(self) -> bool:
        return bool(self.type_flags & TrackStateType.HOLE)


class MultiTrajectory:
    """
    Append-only store of track states. States are linked backwards
    through their `previous` index, so one store can hold many tracks.
    """
    def __init__(self):
        self._states: List[TrackState] = []

    def __len__(self) -> int:
        return len(self._states)

    def add_track_state(self, state: TrackState, previous: int = INVALID_INDEX) -> int:
        state.index = len(self._states)
        state.previous = previous
        self._states.append(state)
        return state.index

    def append_states(self, states: List[TrackState]) -> int:
        """Appends states as one linked chain and returns the tip index."""
        tip = INVALID_INDEX
        for state in states:
            tip = self.add_track_state(state, previous=tip)
        return tip

    def get_track_state(self, index: int) -> TrackState:
        return self._states[index]

    def visit_backwards(self, tip_index: int) -> Iterator[TrackState]:
        index = tip_index
        while index != INVALID_INDEX:
            state = self._states[index]
            yield state
            index = state.previous


@dataclass
class TrackProxy:
    """
    A fitted track stored in a TrackContainer.
    """
    index: int
    parameters: Optional[np.ndarray] = None
    covariance: Optional[np.ndarray] = None
    reference_surface: Optional[PlaneSurface] = None
    tip_index: int = INVALID_INDEX

    n_measurements: int = 0
    n_holes: int = 0
    n_outliers: int = 0
    n_states: int = 0
    chi2: float = 0.0
    ndf: int = 0
    flags: TrackQualityFlag = TrackQualityFlag.NONE


class TrackContainer:
    """
    Append-only container of fitted tracks and their track states.
    """
    def __init__(self, trajectory: Optional[MultiTrajectory] = None):
        self.trajectory = trajectory if trajectory is not None else MultiTrajectory()
        self._tracks: List[TrackProxy] = []

    def __len__(self) -> int:
        return len(self._tracks)

    def __iter__(self) -> Iterator[TrackProxy]:
        return iter(self._tracks)

    def add_track(self) -> TrackProxy:
        track = TrackProxy(
            index=len(self._tracks),
            parameters=np.zeros(BOUND_SIZE),
            covariance=np.eye(BOUND_SIZE),
        )
        self._tracks.append(track)
        return track

    def get_track(self, index: int) -> TrackProxy:
        return self._tracks[index]

    def track_states(self, track: TrackProxy) -> List[TrackState]:
        """States of a track in trajectory order."""
        return list(reversed(list(self.trajectory.visit_backwards(track.tip_index))))


def calculate_track_quantities(track: TrackProxy, trajectory: MultiTrajectory,
                               n_fitted_parameters: int = REDUCED_MATRIX_SIZE) -> None:
    """
    Fills the quality counters of a track by walking its states from the tip.
    """
    track.n_measurements = 0
    track.n_holes = 0
    track.n_outliers = 0
    track.n_states = 0
    track.chi2 = 0.0

    for state in trajectory.visit_backwards(track.tip_index):
        track.n_states += 1
        if state.is_outlier:
            track.n_outliers += 1
        elif state.is_measurement:
            track.n_measurements += 1
            track.chi2 += state.chi2
        elif state.is_hole:
            track.n_holes += 1

    track.ndf = max(MEASUREMENT_DIM * track.n_measurements - n_fitted_parameters, 0)
