import logging
import numpy as np
from typing import Dict, Iterable, List, Optional

from gx2f.propagation.propagator import PropagatorOptions
from gx2f.propagation.surfaces import GeometryIdentifier
from gx2f.sensors.measurement import SourceLink
from gx2f.states.states import BoundParameters, BoundTrackParameters
from gx2f.states.track_container import TrackContainer, TrackProxy, TrackQualityFlag, calculate_track_quantities
from gx2f.tracker.errors import PropagationError
from gx2f.tracker.Gx2fActor import Gx2fAborter, Gx2fActor
from gx2f.tracker.Gx2FitterResult import Gx2FitterResult
from gx2f.tracker.normal_equations import NormalEquationSystem, build_normal_equations, reduced_covariance, solve_reduced
from gx2f.tracker.result import Gx2FitResult
from gx2f.tracker.tracker import TrackFitter
from gx2f.utils.config_classes import Gx2FitterOptions
from gx2f.utils.tools import BOUND_SIZE


class Gx2Fitter(TrackFitter):
    """
    Global Chi-Square fitter.

    Every iteration propagates the current parameter estimate through all
    measurement surfaces, collects residuals and Jacobians from the start
    parameters, and solves the linearized normal equations for a parameter
    update (Gauss-Newton). The fitted covariance is the inverse of the
    normal matrix of the last iteration.
    """
    def __init__(self, propagator, logger: Optional[logging.Logger] = None):
        super().__init__(propagator, logger if logger is not None else logging.getLogger("Gx2Fitter"))
        self.actor_logger = self.logger.getChild("Actor")

    def fit(self,
            source_links: Iterable[SourceLink],
            start_parameters: BoundTrackParameters,
            options: Gx2FitterOptions,
            track_container: TrackContainer) -> Gx2FitResult:
        """
        Fit the measurements behind the source links, starting from the given parameters.

        Parameters:
        - source_links: Uncalibrated measurements, at most one per surface
        - start_parameters: Initial estimate; its reference surface is where the fit is expressed
        - options: Contexts, extensions and iteration settings
        - track_container: Storage the fitted track and its states are appended to

        Returns a Gx2FitResult. Engine failures are reported through a failed result,
        input contract violations raise.
        """
        options.extensions.require_configured()
        if options.multiple_scattering or options.energy_loss:
            self.logger.warning("Material effects are not implemented in the Gx2Fitter and are ignored.")

        input_measurements = self.prepare_measurements(source_links)
        self.logger.debug(f"Prepared {len(input_measurements)} input measurements")

        params = BoundParameters.from_vector(start_parameters.parameters)
        delta_params = np.zeros(BOUND_SIZE)
        system = NormalEquationSystem.empty()
        iteration_result: Optional[Gx2FitterResult] = None

        chi2_history: List[float] = []
        delta_history: List[np.ndarray] = []
        finished_by_limit = False
        converged = False

        self.logger.debug("Start to iterate")

        for n_update in range(options.n_update_max):
            self.logger.debug(f"nUpdate = {n_update + 1}/{options.n_update_max}")

            params = params.updated(delta_params)
            self.logger.debug(f"updated params: {np.asarray(params)}")

            start = start_parameters.with_parameters(params, covariance=start_parameters.covariance)
            try:
                iteration_result = self._propagate(start, options, input_measurements)
            except PropagationError as err:
                self.logger.error(f"Propagation failed in iteration {n_update + 1}: {err}")
                return Gx2FitResult(track=None, error=err, iterations=n_update,
                                    chi2_history=chi2_history, delta_history=delta_history)

            if not iteration_result.ok:
                self.logger.error(f"Measurement collection failed in iteration {n_update + 1}: {iteration_result.error}")
                return Gx2FitResult(track=None, error=iteration_result.error, iterations=n_update,
                                    chi2_history=chi2_history, delta_history=delta_history,
                                    final_iteration=iteration_result)

            finished_by_limit |= iteration_result.finished_by_limit

            system = build_normal_equations(
                iteration_result.collector_residuals,
                iteration_result.collector_covariances,
                iteration_result.collector_jacobians,
            )
            delta_params, rank = solve_reduced(system, options.reduced_size)

            chi2_history.append(system.chi2)
            delta_history.append(delta_params.copy())

            self.logger.debug(f"chi2sum = {system.chi2}, rank = {rank}/{options.reduced_size}")
            self.logger.debug(f"deltaParams: {delta_params}")

            if options.convergence_threshold is not None and np.linalg.norm(delta_params) < options.convergence_threshold:
                self.logger.debug(f"Converged after {n_update + 1} iterations")
                converged = True
                break

        self.logger.debug("Finished to iterate")

        covariance, singular = reduced_covariance(system, options.reduced_size)
        degraded = singular and options.n_update_max > 0
        if degraded:
            self.logger.warning(
                f"Reduced normal matrix is singular ({system.n_measurements} measurements), "
                f"covariance is not available."
            )

        flags = TrackQualityFlag.NONE
        if degraded:
            flags |= TrackQualityFlag.DEGRADED_COVARIANCE
        if finished_by_limit:
            flags |= TrackQualityFlag.FINISHED_BY_LIMIT
        if options.convergence_threshold is not None and not converged:
            flags |= TrackQualityFlag.NOT_CONVERGED

        track = self._write_track(
            track_container, params, covariance, start_parameters, iteration_result, system, options, flags
        )

        return Gx2FitResult(
            track=track,
            chi2=system.chi2,
            iterations=len(chi2_history),
            converged=converged,
            degraded_covariance=degraded,
            finished_by_limit=finished_by_limit,
            chi2_history=chi2_history,
            delta_history=delta_history,
            final_iteration=iteration_result,
        )

    def _propagate(self, start: BoundTrackParameters, options: Gx2FitterOptions,
                   input_measurements: Dict[GeometryIdentifier, SourceLink]) -> Gx2FitterResult:
        actor = Gx2fActor(
            input_measurements=input_measurements,
            extensions=options.extensions,
            target_surface=options.reference_surface,
            max_surfaces=options.max_surfaces,
            logger=self.actor_logger,
        )
        propagator_options = PropagatorOptions(
            geo_context=options.geo_context,
            mag_field_context=options.mag_field_context,
            plain=options.propagator_plain_options,
            actions=[actor],
            aborters=[Gx2fAborter()],
            target_surface=options.reference_surface,
        )

        outcome = self.propagator.propagate(start, propagator_options, Gx2FitterResult())
        result: Gx2FitterResult = outcome.result
        result.close()

        self.logger.debug(
            f"Collected {len(result.collector_residuals)} residuals, "
            f"{len(result.collector_covariances)} covariances, "
            f"{len(result.collector_jacobians)} jacobians"
        )
        return result

    @staticmethod
    def _write_track(track_container: TrackContainer,
                     params: BoundParameters,
                     covariance: np.ndarray,
                     start_parameters: BoundTrackParameters,
                     iteration_result: Optional[Gx2FitterResult],
                     system: NormalEquationSystem,
                     options: Gx2FitterOptions,
                     flags: TrackQualityFlag) -> TrackProxy:
        states = [] if iteration_result is None else iteration_result.track_states

        # Contributions follow the collector order, i.e. non-outlier measurements in visiting order
        if iteration_result is not None:
            for state, chi2 in zip(iteration_result.measurement_track_states, system.chi2_contributions):
                state.chi2 = float(chi2)

        tip_index = track_container.trajectory.append_states(states)

        track = track_container.add_track()
        track.parameters = np.array(params, dtype=float)
        track.covariance = covariance
        track.reference_surface = start_parameters.reference_surface
        track.tip_index = tip_index
        track.flags = flags
        calculate_track_quantities(track, track_container.trajectory, options.reduced_size)
        return track
