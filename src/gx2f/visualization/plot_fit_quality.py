import logging
import pickle
import sys
from pathlib import Path
from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
from scipy.stats import chi2, norm

from gx2f.analysis.consistency_analysis import FitConsistencyAnalysis
from gx2f.global_project_paths import FIGURES_PATH, SIMDATA_PATH
from gx2f.utils.SimulationResult import SimulationResult
from gx2f.utils.tools import REDUCED_MATRIX_SIZE, BoundIndices

logger = logging.getLogger(__name__)


def plot_pulls(analysis: FitConsistencyAnalysis, bins: int = 30):
    """Pull histograms of the fitted parameters with the standard normal overlaid."""
    fig, axs = plt.subplots(1, REDUCED_MATRIX_SIZE, figsize=(16, 4))

    x = np.linspace(-5, 5, 200)
    for i, ax in enumerate(axs):
        label = str(BoundIndices(i))
        pulls = analysis.get_pulls(i)

        ax.hist(pulls, bins=bins, range=(-5, 5), density=True, color='royalblue', alpha=0.7, label='Pulls')
        ax.plot(x, norm.pdf(x), color='darkorange', linestyle='--', label='N(0, 1)')
        ax.set_title(f'Pull: {label}')
        ax.grid(True, alpha=0.2)

        stats_text = f"Mean: {np.mean(pulls):.2f}, Std: {np.std(pulls):.2f}"
        ax.text(0.05, 0.95, stats_text, transform=ax.transAxes, verticalalignment='top', fontsize=8,
                bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))

    axs[0].legend(loc='upper right', fontsize=8)
    plt.tight_layout()
    return fig


def plot_chi2_distribution(analysis: FitConsistencyAnalysis, bins: int = 30, alpha: float = 0.95):
    """
    Fit chi2/ndf histogram and fit probabilities. The expected curve mixes the
    chi2/ndf densities of all ndf present in the run, weighted by their track counts.
    """
    groups = analysis.get_chi2(alpha)
    values = analysis.get_chi2_per_ndf()
    fig, (ax_chi2, ax_prob) = plt.subplots(1, 2, figsize=(12, 4))

    upper = max(np.max(values, initial=0.0), 3.0) * 1.1
    x = np.linspace(1e-6, upper, 200)
    expected = np.zeros_like(x)
    for ndf, data in groups.items():
        expected += len(data.values) / len(values) * ndf * chi2.pdf(ndf * x, ndf)

    ax_chi2.hist(values, bins=bins, range=(0, upper), density=True, color='royalblue', alpha=0.7, label='Fit chi2/ndf')
    if groups:
        ndf_text = ", ".join(str(ndf) for ndf in groups)
        ax_chi2.plot(x, expected, color='darkorange', linestyle='--', label=f'Expected (ndf {ndf_text})')
    ax_chi2.set_title(f'chi2/ndf, in {alpha:.0%} CI: {analysis.get_chi2_in_interval(alpha):.1%}')
    ax_chi2.legend(fontsize=8)
    ax_chi2.grid(True, alpha=0.2)

    ax_prob.hist(analysis.get_fit_probabilities(), bins=bins, range=(0, 1), color='royalblue', alpha=0.7)
    ax_prob.set_title('Fit probability')
    ax_prob.grid(True, alpha=0.2)

    plt.tight_layout()
    return fig


def plot_chi2_per_iteration(sim_result: SimulationResult, max_tracks: int = 50):
    """chi2 after every iteration for the first tracks of a run, log scale."""
    fig, ax = plt.subplots(1, 1, figsize=(8, 5))

    for sample in sim_result.samples[:max_tracks]:
        history = sample.fit_result.chi2_history
        if not history:
            continue
        ax.plot(np.arange(1, len(history) + 1), history, color='royalblue', linewidth=1, alpha=0.4)

    ax.set_yscale('log')
    ax.set_xlabel('Iteration')
    ax.set_ylabel('chi2')
    ax.set_title('chi2 per iteration')
    ax.grid(True, which="both", ls="-", alpha=0.2)
    plt.tight_layout()
    return fig


def plot_fit_quality(sim_result: SimulationResult, save: bool = False, show: bool = True):
    analysis = FitConsistencyAnalysis(sim_result)
    figures = {
        "pulls": plot_pulls(analysis),
        "chi2": plot_chi2_distribution(analysis),
        "chi2_per_iteration": plot_chi2_per_iteration(sim_result),
    }

    nees = analysis.get_nees()
    logger.info(f"Avg NEES: {nees.a:.2f} (CI {nees.aconf[0]:.2f}-{nees.aconf[1]:.2f}), in CI: {nees.in_interval:.1%}")

    if save:
        FIGURES_PATH.mkdir(parents=True, exist_ok=True)
        for name, fig in figures.items():
            path = FIGURES_PATH / f"{sim_result.config.sim.name}_{name}.png"
            fig.savefig(path, dpi=150)
            logger.info(f"Saved {path}")
    if show:
        plt.show()
    return figures


def latest_simulation_file(directory: Path = SIMDATA_PATH) -> Optional[Path]:
    """Most recently written simulation pickle in the directory, None if there is none."""
    pickles = sorted(Path(directory).glob("*.pkl"), key=lambda p: p.stat().st_mtime)
    return pickles[-1] if pickles else None


def plot_fit_quality_from_pickle(filename: str, save: bool = False) -> Optional[dict]:
    filepath = Path(SIMDATA_PATH) / filename
    if not filepath.exists():
        logger.error(f"File {filepath} not found.")
        return None

    with open(filepath, "rb") as f:
        sim_result: SimulationResult = pickle.load(f)
    return plot_fit_quality(sim_result, save=save)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    # Pickle name as written by main.py, defaults to the latest run
    if len(sys.argv) > 1:
        plot_fit_quality_from_pickle(sys.argv[1])
    else:
        latest = latest_simulation_file()
        if latest is None:
            logger.error(f"No simulation results in {SIMDATA_PATH}.")
            sys.exit(1)
        plot_fit_quality_from_pickle(latest.name)
