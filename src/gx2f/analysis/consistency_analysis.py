from collections import defaultdict
from functools import cache
from typing import Dict, List, Sequence, Tuple, Union
import numpy as np
from scipy.stats import chi2
from dataclasses import dataclass, field

from gx2f.utils.SimulationResult import SimulationResult, TrackSample
from gx2f.utils.tools import REDUCED_MATRIX_SIZE, BoundIndices, ssa


@cache
def chi2_interval(alpha, dof):
    return chi2.interval(alpha, dof)


@cache
def chi2_mean(dof):
    return chi2.mean(dof)


@dataclass
class ConsistencyData:
    values: np.ndarray
    alpha: float
    dof: int
    lower: float
    median: float
    upper: float
    above_median: float
    in_interval: float
    a: float
    adof: int
    aconf: Tuple[float, float]


def consistency_data(values: np.ndarray, dof: int, alpha: float = 0.95) -> ConsistencyData:
    """
    Summary of chi-square distributed values (NEES, fit chi2) against the
    chi-square distribution with dof degrees of freedom.
    """
    values = np.asarray(values, dtype=float)
    n = len(values)
    if n == 0:
        raise ValueError("No values to analyse")

    lower, upper = chi2_interval(alpha, dof)
    median = chi2_mean(dof)

    above_median = np.sum(values > median) / n
    in_interval = np.sum((values > lower) & (values < upper)) / n

    # Averaged NEES, its sum over n samples is chi2 with n * dof degrees of freedom
    a = np.mean(values)
    adof = n * dof
    a_lower, a_upper = chi2_interval(alpha, adof)
    aconf = (a_lower / n, a_upper / n)

    return ConsistencyData(values, alpha, dof, lower, median, upper,
                           above_median, in_interval, a, adof, aconf)


@dataclass
class FitConsistencyAnalysis:
    """
    Compares fitted track parameters with the simulated truth over all
    successful fits of a simulation run. Only the reduced block
    (loc0, loc1, phi, theta) is analysed, the rest is not fitted.
    """
    sim_result: SimulationResult
    include_degraded: bool = False

    samples: List[TrackSample] = field(init=False)
    errors: np.ndarray = field(init=False)
    covariances: np.ndarray = field(init=False)

    def __post_init__(self):
        self.samples = [
            s for s in self.sim_result.successful
            if self.include_degraded or not s.fit_result.degraded_covariance
        ]

        errors, covariances = [], []
        for sample in self.samples:
            track = sample.fit_result.track
            err = track.parameters[:REDUCED_MATRIX_SIZE] - np.asarray(sample.truth.parameters)[:REDUCED_MATRIX_SIZE]
            err[BoundIndices.PHI] = ssa(err[BoundIndices.PHI])
            errors.append(err)
            covariances.append(track.covariance[:REDUCED_MATRIX_SIZE, :REDUCED_MATRIX_SIZE])

        self.errors = np.array(errors).reshape(-1, REDUCED_MATRIX_SIZE)
        self.covariances = np.array(covariances).reshape(-1, REDUCED_MATRIX_SIZE, REDUCED_MATRIX_SIZE)

    @staticmethod
    def _resolve(indices: Union[None, int, str, Sequence[Union[int, str]]]) -> np.ndarray:
        if indices is None or (isinstance(indices, str) and indices == 'all'):
            return np.arange(REDUCED_MATRIX_SIZE)
        if isinstance(indices, np.ndarray):
            return indices.astype(int)
        if isinstance(indices, (int, str)):
            indices = [indices]
        return np.array([BoundIndices[i.upper()] if isinstance(i, str) else int(i) for i in indices])

    def get_nees_values(self, indices=None) -> np.ndarray:
        idx = self._resolve(indices)
        nees = np.empty(len(self.errors))
        for i, (err, cov) in enumerate(zip(self.errors, self.covariances)):
            e = err[idx]
            nees[i] = e @ np.linalg.solve(cov[np.ix_(idx, idx)], e)
        return nees

    def get_nees(self, indices=None, alpha=0.95) -> ConsistencyData:
        idx = self._resolve(indices)
        return consistency_data(self.get_nees_values(idx), dof=len(idx), alpha=alpha)

    def get_pulls(self, index: Union[int, str]) -> np.ndarray:
        """Error over fitted standard deviation, standard normal for a consistent fit."""
        i = self._resolve(index)[0]
        return self.errors[:, i] / np.sqrt(self.covariances[:, i, i])

    def _tracks_with_ndf(self):
        return [s.fit_result.track for s in self.samples if s.fit_result.track.ndf > 0]

    def get_chi2(self, alpha=0.95) -> Dict[int, ConsistencyData]:
        """
        Fit chi2 of the tracks, grouped by ndf. Tracks that missed a plane or
        carry holes or outliers have fewer degrees of freedom than the rest
        of the run. Tracks without degrees of freedom are left out.
        """
        groups = defaultdict(list)
        for track in self._tracks_with_ndf():
            groups[track.ndf].append(track.chi2)
        return {ndf: consistency_data(values, dof=ndf, alpha=alpha) for ndf, values in sorted(groups.items())}

    def get_chi2_per_ndf(self) -> np.ndarray:
        return np.array([t.chi2 / t.ndf for t in self._tracks_with_ndf()])

    def get_chi2_in_interval(self, alpha=0.95) -> float:
        """Share of tracks whose chi2 lies inside the interval of their own ndf."""
        groups = self.get_chi2(alpha)
        n = sum(len(d.values) for d in groups.values())
        if n == 0:
            return np.nan
        return sum(d.in_interval * len(d.values) for d in groups.values()) / n

    def get_fit_probabilities(self) -> np.ndarray:
        """Chi-square p-values, uniform for a consistent fit."""
        return np.array([chi2.sf(t.chi2, t.ndf) for t in self._tracks_with_ndf()])
