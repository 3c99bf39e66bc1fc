import logging
import pickle
import numpy as np
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import List, Optional

from tqdm import tqdm

from gx2f.global_project_paths import SIMDATA_PATH
from gx2f.propagation.navigator import Navigator
from gx2f.propagation.propagator import Propagator, PropagatorOptions
from gx2f.propagation.stepper import StraightLineStepper
from gx2f.propagation.surfaces import Detector, GeometryIdentifier, PlaneSurface
from gx2f.sensors.measurement import Measurement, PassThroughCalibrator, SourceLink
from gx2f.states.states import BoundParameters, BoundTrackParameters
from gx2f.states.track_container import TrackContainer
from gx2f.tracker.extensions import Gx2FitterExtensions
from gx2f.tracker.global_chi_square import Gx2Fitter
from gx2f.utils.config_classes import Config, Gx2FitterOptions, TelescopeConfig
from gx2f.utils.SimulationResult import SimulationResult, TrackSample

logger = logging.getLogger(__name__)

TELESCOPE_AXIS = np.array([1.0, 0.0, 0.0])


def build_telescope(telescope_cfg: TelescopeConfig) -> Detector:
    """
    Sensitive planes along the global x axis, one layer per plane.
    """
    surfaces = []
    for i_surface in range(telescope_cfg.num_surfaces):
        x = telescope_cfg.first_position + i_surface * telescope_cfg.spacing
        surfaces.append(PlaneSurface.from_normal(
            center=[x, 0.0, 0.0],
            normal=TELESCOPE_AXIS,
            geometry_id=GeometryIdentifier(volume=1, layer=i_surface + 1, sensitive=1),
            half_lengths=telescope_cfg.half_lengths,
        ))
    return Detector(surfaces)


def build_reference_surface() -> PlaneSurface:
    """Plane at the origin, perpendicular to the telescope, on which truth and fit are expressed."""
    return PlaneSurface.from_normal(
        center=[0.0, 0.0, 0.0],
        normal=TELESCOPE_AXIS,
        geometry_id=GeometryIdentifier(volume=0, layer=0, sensitive=0),
        is_sensitive=False,
    )


class MeasurementCreator:
    """
    Propagator action recording a smeared local hit on every sensitive surface.
    """
    def __init__(self, hit_std_dev, rng: np.random.Generator):
        self.hit_std_dev = np.asarray(hit_std_dev, dtype=float)
        self.rng = rng

    def __call__(self, state, stepper, navigator, result: List[Measurement]) -> None:
        surface = navigator.current_surface(state.navigation)
        if surface is None or not surface.is_sensitive:
            return

        bound_params, _, _ = stepper.bound_state(state.stepping, surface, transport_cov=False)
        true_loc = bound_params.parameters.loc
        values = true_loc + self.rng.normal(0.0, self.hit_std_dev)

        source_link = SourceLink(geometry_id=surface.geometry_id, index=len(result))
        result.append(Measurement(
            source_link=source_link,
            values=values,
            covariance=np.diag(self.hit_std_dev ** 2),
        ))


def create_measurements(propagator: Propagator, truth: BoundTrackParameters,
                        hit_std_dev, rng: np.random.Generator) -> List[Measurement]:
    options = PropagatorOptions(actions=[MeasurementCreator(hit_std_dev, rng)])
    return propagator.propagate(truth, options, []).result


def generate_truth(config: Config, reference_surface: PlaneSurface, rng: np.random.Generator) -> BoundTrackParameters:
    sim_cfg = config.sim
    charge = 1.0
    parameters = BoundParameters(
        loc0=rng.normal(0.0, sim_cfg.loc_std_dev),
        loc1=rng.normal(0.0, sim_cfg.loc_std_dev),
        phi=rng.uniform(*sim_cfg.phi_range),
        theta=rng.uniform(*sim_cfg.theta_range),
        q_over_p=charge / sim_cfg.momentum,
        time=0.0,
    )
    return BoundTrackParameters(parameters=parameters, reference_surface=reference_surface, charge=charge)


def smear_start_parameters(truth: BoundTrackParameters, start_std_devs, rng: np.random.Generator) -> BoundTrackParameters:
    std_devs = np.zeros(6)
    std_devs[:len(start_std_devs)] = start_std_devs

    parameters = truth.parameters.updated(rng.normal(0.0, 1.0, size=6) * std_devs)
    covariance = np.diag(np.where(std_devs > 0, std_devs, 1.0) ** 2)
    return truth.with_parameters(parameters, covariance=covariance)


def fit_options(config: Config, measurements: List[Measurement]) -> Gx2FitterOptions:
    fit_cfg = config.fit
    return Gx2FitterOptions(
        extensions=Gx2FitterExtensions(calibrator=PassThroughCalibrator(measurements)),
        n_update_max=fit_cfg.n_update_max,
        convergence_threshold=fit_cfg.convergence_threshold,
        max_surfaces=fit_cfg.max_surfaces,
    )


def run_single_track(track_index: int, config: Config, detector: Detector,
                     reference_surface: PlaneSurface) -> TrackSample:
    """
    Simulates and fits one track. Every call builds its own propagator, fitter
    and container, so calls can run concurrently.
    """
    rng = np.random.default_rng([config.sim.seed, track_index])
    propagator = Propagator(StraightLineStepper(), Navigator(detector))

    truth = generate_truth(config, reference_surface, rng)
    measurements = create_measurements(propagator, truth, config.telescope.hit_std_dev, rng)
    start = smear_start_parameters(truth, config.sim.start_std_devs, rng)

    fitter = Gx2Fitter(propagator)
    fit_result = fitter.fit(
        [m.source_link for m in measurements],
        start,
        fit_options(config, measurements),
        TrackContainer(),
    )
    if not fit_result.ok:
        logger.warning(f"Fit of track {track_index} failed: {fit_result.error}")

    return TrackSample(index=track_index, truth=truth, start=start, measurements=measurements, fit_result=fit_result)


def run_single_simulation(config: Config, num_workers: Optional[int] = None) -> SimulationResult:
    """
    Simulates and fits config.sim.num_tracks independent tracks through a telescope.
    Tracks are fitted concurrently, one task per track.
    """
    sim_cfg = config.sim
    num_workers = sim_cfg.num_workers if num_workers is None else num_workers

    detector = build_telescope(config.telescope)
    reference_surface = build_reference_surface()

    logger.info(f"Fitting {sim_cfg.num_tracks} tracks through {len(detector)} surfaces with {num_workers} workers")

    samples: List[Optional[TrackSample]] = [None] * sim_cfg.num_tracks
    with ThreadPoolExecutor(max_workers=num_workers) as executor:
        future_to_index = {
            executor.submit(run_single_track, i_track, config, detector, reference_surface): i_track
            for i_track in range(sim_cfg.num_tracks)
        }
        for future in tqdm(as_completed(future_to_index), total=len(future_to_index), desc="Fitting tracks"):
            samples[future_to_index[future]] = future.result()

    sim_result = SimulationResult(config=config, samples=samples)
    logger.info(f"{len(sim_result.successful)}/{len(samples)} fits succeeded")

    if sim_cfg.save_result:
        SIMDATA_PATH.mkdir(parents=True, exist_ok=True)
        filename = SIMDATA_PATH / f"{sim_cfg.name}.pkl"
        with open(filename, "wb") as f:
            pickle.dump(sim_result, f)
        logger.info(f"Simulation run data saved to {filename}")

    return sim_result
