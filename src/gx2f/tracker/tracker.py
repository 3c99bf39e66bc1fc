import logging
from typing import Dict, Iterable, Optional

from gx2f.propagation.surfaces import GeometryIdentifier
from gx2f.sensors.measurement import SourceLink
from gx2f.tracker.errors import DuplicateMeasurementError


class TrackFitter:
    """
    Common base of the propagation-based track fitters.
    """
    def __init__(self, propagator, logger: Optional[logging.Logger] = None):
        self.propagator = propagator
        self.logger = logger if logger is not None else logging.getLogger(type(self).__name__)

    def fit(self, source_links, start_parameters, options, track_container):
        raise NotImplementedError("Fit method not implemented for the TrackFitter class.")

    @staticmethod
    def prepare_measurements(source_links: Iterable[SourceLink]) -> Dict[GeometryIdentifier, SourceLink]:
        """
        Copies the input source links into a map keyed by geometry identifier,
        keeping input order. A fit uses at most one measurement per surface.
        """
        input_measurements: Dict[GeometryIdentifier, SourceLink] = {}
        for source_link in source_links:
            geometry_id = source_link.geometry_id
            if geometry_id in input_measurements:
                raise DuplicateMeasurementError(f"More than one measurement on surface {geometry_id}")
            input_measurements[geometry_id] = source_link
        return input_measurements
