import itertools
import sys
import logging

# Setup Logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)

from gx2f.main import get_default_config
from gx2f.simulation import run_single_simulation
from gx2f.tracker.errors import Gx2FitterError


def set_nested_value(obj, path, value):
    """Sets a value deep in a nested object using a dot-notation string."""
    parts = path.split('.')
    last = parts.pop()
    for part in parts:
        obj = getattr(obj, part)
    if not hasattr(obj, last):
        raise AttributeError(f"{type(obj).__name__} has no attribute '{last}'")
    setattr(obj, last, value)


def build_configs(param_grid: dict):
    """One config per combination of the grid values, named after the swept parameters."""
    keys = list(param_grid.keys())
    configs = []
    for combination in itertools.product(*param_grid.values()):
        config = get_default_config()

        param_desc_parts = []
        for path, val in zip(keys, combination):
            set_nested_value(config, path, val)
            short_key = path.split('.')[-1]
            param_desc_parts.append(f"{short_key}_{val}")

        param_suffix = ("_" + "_".join(param_desc_parts)) if param_desc_parts else ""
        config.sim.name = f"gx2f{param_suffix}_seed_{config.sim.seed}"
        config.sim.save_result = True
        configs.append(config)
    return configs


if __name__ == "__main__":

    # Keys: dot-notation path to attribute
    # Values: List of options to sweep over
    param_grid = {
        "fit.n_update_max": [1, 3, 5],
        "telescope.num_surfaces": [4, 6],
        # "sim.seed": [42, 100],  # Uncomment to test robustness
    }

    configs = build_configs(param_grid)
    print(f"--- Queued {len(configs)} simulations ---")

    for i, config in enumerate(configs):
        print(f"\n[{i+1}/{len(configs)}] Running: {config.sim.name}")
        try:
            sim_result = run_single_simulation(config=config)
            print(f"   > Success. Failure rate {sim_result.failure_rate:.1%}")
        except Gx2FitterError:
            logging.error(f"Simulation {config.sim.name} failed!", exc_info=True)
