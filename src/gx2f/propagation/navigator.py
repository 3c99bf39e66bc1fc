import logging
import numpy as np

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from gx2f.propagation.surfaces import Detector, GeometryIdentifier, PlaneSurface
from gx2f.tracker.errors import PropagationError

logger = logging.getLogger(__name__)


@dataclass
class NavigationState:
    start_surface: Optional[PlaneSurface] = None
    target_surface: Optional[PlaneSurface] = None
    current_surface: Optional[PlaneSurface] = None

    # Surfaces that must be hit, boundary checks are ignored for them
    external_surfaces: Dict[GeometryIdentifier, PlaneSurface] = field(default_factory=dict)

    visited: Set[int] = field(default_factory=set)
    sequence_index: int = 0


class Navigator:
    """
    Navigates through a detector geometry, reporting every surface the
    straight-line track crosses within the surface bounds.

    resolve_sensitive -- Stop at sensitive surfaces
    resolve_passive -- Stop at passive (non-sensitive) surfaces
    """
    is_direct = False

    def __init__(self, detector: Detector, resolve_sensitive: bool = True, resolve_passive: bool = True,
                 path_tolerance: float = 1e-9):
        self.detector = detector
        self.resolve_sensitive = resolve_sensitive
        self.resolve_passive = resolve_passive
        self.path_tolerance = path_tolerance

    def make_state(self, start_surface: Optional[PlaneSurface] = None,
                   target_surface: Optional[PlaneSurface] = None) -> NavigationState:
        state = NavigationState(start_surface=start_surface, target_surface=target_surface)
        if start_surface is not None:
            state.visited.add(id(start_surface))
        return state

    def insert_external_surface(self, state: NavigationState, geometry_id: GeometryIdentifier) -> None:
        surface = self.detector.find_surface(geometry_id)
        if surface is None:
            logger.warning(f"External surface {geometry_id} is not part of the detector, ignored")
            return
        state.external_surfaces[geometry_id] = surface

    def current_surface(self, state: NavigationState) -> Optional[PlaneSurface]:
        return state.current_surface

    def set_current_surface(self, state: NavigationState, surface: Optional[PlaneSurface]) -> None:
        state.current_surface = surface
        if surface is not None:
            state.visited.add(id(surface))

    def _candidates(self, state: NavigationState) -> List[Tuple[PlaneSurface, bool]]:
        candidates = [(surface, True) for surface in state.external_surfaces.values()]
        for surface in self.detector:
            if surface.geometry_id in state.external_surfaces:
                continue
            if (surface.is_sensitive and self.resolve_sensitive) or (not surface.is_sensitive and self.resolve_passive):
                candidates.append((surface, False))
        if state.target_surface is not None:
            candidates.append((state.target_surface, True))
        return candidates

    def next_target(self, state: NavigationState, position: np.ndarray,
                    direction: np.ndarray) -> Optional[Tuple[PlaneSurface, float]]:
        """
        Closest surface ahead of the track, with the path length to reach it,
        or None when navigation is exhausted.
        """
        best = None
        for surface, skip_bounds in self._candidates(state):
            if id(surface) in state.visited:
                continue
            path = surface.intersect(position, direction)
            if path is None or path <= self.path_tolerance:
                continue
            if not skip_bounds:
                loc = surface.global_to_local(position + path * direction)
                if not surface.inside_bounds(loc):
                    continue
            if best is None or path < best[1]:
                best = (surface, path)
        return best


class DirectNavigator:
    """
    Follows a fixed, ordered sequence of surfaces. The sequence already
    contains every surface of interest, so no external surfaces are needed.
    """
    is_direct = True

    def __init__(self, surfaces: Sequence[PlaneSurface]):
        self.surfaces = list(surfaces)

    def make_state(self, start_surface: Optional[PlaneSurface] = None,
                   target_surface: Optional[PlaneSurface] = None) -> NavigationState:
        return NavigationState(start_surface=start_surface, target_surface=target_surface)

    def current_surface(self, state: NavigationState) -> Optional[PlaneSurface]:
        return state.current_surface

    def set_current_surface(self, state: NavigationState, surface: Optional[PlaneSurface]) -> None:
        state.current_surface = surface
        if surface is not None:
            state.visited.add(id(surface))

    def next_target(self, state: NavigationState, position: np.ndarray,
                    direction: np.ndarray) -> Optional[Tuple[PlaneSurface, float]]:
        if state.sequence_index >= len(self.surfaces):
            return None
        surface = self.surfaces[state.sequence_index]
        state.sequence_index += 1

        path = surface.intersect(position, direction)
        if path is None or path < 0.0:
            raise PropagationError(f"Surface {surface} of the direct navigation sequence cannot be reached")
        return surface, path
