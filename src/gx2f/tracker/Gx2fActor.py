import logging
import numpy as np
from typing import Mapping, Optional

from gx2f.propagation.surfaces import GeometryIdentifier, PlaneSurface
from gx2f.sensors.measurement import SourceLink
from gx2f.states.track_container import TrackState, TrackStateType
from gx2f.tracker.errors import MeasurementDimensionError, PropagationError
from gx2f.tracker.extensions import Gx2FitterExtensions
from gx2f.tracker.Gx2FitterResult import Gx2FitterResult
from gx2f.utils.tools import MEASUREMENT_DIM

DEFAULT_MAX_SURFACES = 11


class Gx2fActor:
    """
    Propagator action collecting residuals, covariances and Jacobians for the
    Global Chi-Square fit.

    Called once before the first step and once per surface reached. On
    surfaces carrying a measurement, the predicted state is expressed on the
    surface, the measurement calibrated and the residual stored together
    with the Jacobian from the start parameters.
    """
    def __init__(self,
                 input_measurements: Mapping[GeometryIdentifier, SourceLink],
                 extensions: Gx2FitterExtensions,
                 target_surface: Optional[PlaneSurface] = None,
                 max_surfaces: int = DEFAULT_MAX_SURFACES,
                 logger: Optional[logging.Logger] = None):
        self.input_measurements = input_measurements
        self.extensions = extensions
        self.target_surface = target_surface
        self.max_surfaces = max_surfaces
        self.logger = logger if logger is not None else logging.getLogger("Gx2Fitter").getChild("Actor")

    def __call__(self, state, stepper, navigator, result: Gx2FitterResult) -> None:
        if result.finished:
            return

        # Measurement surfaces are hit even outside their bounds
        if not navigator.is_direct and not result.external_surfaces_registered:
            for geometry_id in self.input_measurements:
                navigator.insert_external_surface(state.navigation, geometry_id)
            result.external_surfaces_registered = True

        surface = navigator.current_surface(state.navigation)
        if surface is not None:
            result.surface_count += 1
            self.logger.debug(f"Surface {surface.geometry_id} detected.")

            source_link = self.input_measurements.get(surface.geometry_id)
            if source_link is not None:
                self._handle_measurement(state, stepper, surface, source_link, result)
                if not result.ok:
                    return
            elif surface.is_sensitive:
                result.pending_holes.append(surface)

            if self.target_surface is not None and surface is self.target_surface:
                self.logger.debug("Target surface reached.")
                result.target_reached = True
                result.finished = True

        if result.surface_count > self.max_surfaces:
            self.logger.warning("Actor: finish due to limit. Result might be garbage.")
            result.finished = True
            result.finished_by_limit = True

    def _handle_measurement(self, state, stepper, surface: PlaneSurface, source_link: SourceLink,
                            result: Gx2FitterResult) -> None:
        try:
            stepper.transport_covariance_to_bound(state.stepping, surface)
            bound_params, jacobian, path_length = stepper.bound_state(state.stepping, surface, transport_cov=False)
        except PropagationError as err:
            self.logger.error(f"Bound state on {surface.geometry_id} failed: {err}")
            result.error = err
            return

        result.jacobian_from_start = jacobian @ result.jacobian_from_start

        # Holes only count when enclosed by measurements
        if result.measurement_states + result.outlier_states > 0:
            for hole_surface in result.pending_holes:
                result.track_states.append(TrackState(reference_surface=hole_surface, type_flags=TrackStateType.HOLE))
                result.measurement_holes += 1
        else:
            result.missed_active_surfaces.extend(result.pending_holes)
        result.pending_holes = []

        track_state = TrackState(
            reference_surface=surface,
            type_flags=TrackStateType.PARAMETER | TrackStateType.MEASUREMENT,
            source_link=source_link,
            predicted=np.array(bound_params.parameters, dtype=float),
            predicted_covariance=None if bound_params.covariance is None else bound_params.covariance.copy(),
            jacobian=jacobian,
            jacobian_from_start=result.jacobian_from_start.copy(),
            path_length=path_length,
        )
        result.track_states.append(track_state)
        result.processed_states += 1

        self.extensions.calibrate(state.geo_context, source_link, track_state)
        measurement, covariance = self._calibrated(track_state)

        residual = measurement - track_state.predicted[:MEASUREMENT_DIM]
        track_state.residual = residual
        self.logger.debug(f"Measurement in Actor: {measurement}, residual: {residual}")

        if self.extensions.outlier_finder(track_state):
            self.logger.debug(f"Measurement on {surface.geometry_id} flagged as outlier.")
            track_state.type_flags |= TrackStateType.OUTLIER
            result.outlier_states += 1
            return

        result.measurement_states += 1
        result.collector_residuals.append(residual)
        result.collector_covariances.append(covariance)
        result.collector_jacobians.append(track_state.jacobian_from_start)

    @staticmethod
    def _calibrated(track_state: TrackState):
        measurement = track_state.calibrated
        covariance = track_state.calibrated_covariance
        if measurement is None or covariance is None:
            raise MeasurementDimensionError(
                f"Calibrator left no measurement or covariance on {track_state.reference_surface.geometry_id}"
            )
        measurement = np.asarray(measurement, dtype=float)
        covariance = np.asarray(covariance, dtype=float)
        if measurement.shape != (MEASUREMENT_DIM,) or covariance.shape != (MEASUREMENT_DIM, MEASUREMENT_DIM):
            raise MeasurementDimensionError(
                f"Expected a {MEASUREMENT_DIM}-D measurement with {MEASUREMENT_DIM}x{MEASUREMENT_DIM} covariance, "
                f"got shapes {measurement.shape} and {covariance.shape}"
            )
        return measurement, covariance


class Gx2fAborter:
    """
    Stops propagation once the actor failed or finished.
    """
    def __call__(self, state, stepper, navigator, result: Gx2FitterResult) -> bool:
        return not result.ok or result.finished
