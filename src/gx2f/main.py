import sys
import pickle
import logging
from zlib import crc32

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)

from gx2f.global_project_paths import SIMDATA_PATH
from gx2f.simulation import run_single_simulation
from gx2f.utils.config_classes import Config, FitConfig, SimulationConfig, TelescopeConfig
from gx2f.utils.SimulationResult import SimulationResult
from gx2f.visualization.plot_fit_quality import plot_fit_quality


def get_default_config() -> Config:
    # Simulation Parameters
    sim_config = SimulationConfig(
        name="",
        num_tracks=500,
        seed=42,
        loc_std_dev=1.0,
        momentum=1.0,
        start_std_devs=(0.5, 0.5, 0.01, 0.01),
        num_workers=4,
    )

    # Six planes, 50 um resolution in both local directions
    telescope_config = TelescopeConfig(
        num_surfaces=6,
        first_position=50.0,
        spacing=50.0,
        half_lengths=(100.0, 100.0),
        hit_std_dev=(0.05, 0.05),
    )

    fit_config = FitConfig(
        n_update_max=5,
        convergence_threshold=None,
        max_surfaces=11,
    )

    return Config(sim=sim_config, telescope=telescope_config, fit=fit_config)


if __name__ == "__main__":
    PLOT_FIT_QUALITY = True
    LOAD_SIM_RESULT = False

    config = get_default_config()

    id_number = crc32(repr(config).encode())
    config.sim.name = f"telescope_{config.sim.seed}_{config.telescope.num_surfaces}planes_{id_number:010d}"
    config.sim.save_result = True

    pickle_path = SIMDATA_PATH / f"{config.sim.name}.pkl"
    if pickle_path.exists() and LOAD_SIM_RESULT:
        with open(pickle_path, "rb") as f:
            sim_result: SimulationResult = pickle.load(f)
    else:
        sim_result = run_single_simulation(config=config)

    logging.info(f"Failure rate: {sim_result.failure_rate:.1%}")

    if PLOT_FIT_QUALITY:
        plot_fit_quality(sim_result)
