import numpy as np

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from gx2f.utils.tools import curvilinear_axes


@dataclass(frozen=True, order=True)
class GeometryIdentifier:
    """
    Identifies a detector surface by volume, layer and sensitive element.
    Ordered lexicographically so that maps keyed by identifiers iterate
    in detector order.
    """
    volume: int = 0
    layer: int = 0
    sensitive: int = 0

    def __str__(self):
        return f"vol={self.volume}|lay={self.layer}|sen={self.sensitive}"


@dataclass(eq=False)
class PlaneSurface:
    """
    Planar surface with a local Cartesian frame.

    center -- Global position of the local origin
    rotation -- (3, 3) matrix with columns (u, v, normal)
    half_lengths -- Optional rectangular bounds (half_u, half_v)
    is_sensitive -- Whether the surface is backed by a detector element
    """
    center: np.ndarray
    rotation: np.ndarray
    geometry_id: GeometryIdentifier = field(default_factory=GeometryIdentifier)
    half_lengths: Optional[Tuple[float, float]] = None
    is_sensitive: bool = True

    def __post_init__(self):
        self.center = np.asarray(self.center, dtype=float).reshape(3)
        self.rotation = np.asarray(self.rotation, dtype=float).reshape(3, 3)

    @classmethod
    def from_normal(cls, center, normal, **kwargs) -> "PlaneSurface":
        return cls(center=center, rotation=curvilinear_axes(normal), **kwargs)

    @property
    def u(self) -> np.ndarray:
        return self.rotation[:, 0]

    @property
    def v(self) -> np.ndarray:
        return self.rotation[:, 1]

    @property
    def normal(self) -> np.ndarray:
        return self.rotation[:, 2]

    def local_to_global(self, loc: np.ndarray) -> np.ndarray:
        return self.center + loc[0] * self.u + loc[1] * self.v

    def global_to_local(self, position: np.ndarray) -> np.ndarray:
        diff = np.asarray(position, dtype=float) - self.center
        return np.array([self.u @ diff, self.v @ diff])

    def distance(self, position: np.ndarray) -> float:
        """Signed distance of a point to the plane."""
        return float(self.normal @ (np.asarray(position, dtype=float) - self.center))

    def intersect(self, position: np.ndarray, direction: np.ndarray) -> Optional[float]:
        """
        Path length along a straight line until the plane is crossed,
        or None if the line is parallel to the plane.
        """
        cos_incidence = self.normal @ direction
        if abs(cos_incidence) < 1e-12:
            return None
        return float(self.normal @ (self.center - position) / cos_incidence)

    def inside_bounds(self, loc: np.ndarray, tolerance: float = 0.0) -> bool:
        if self.half_lengths is None:
            return True
        half_u, half_v = self.half_lengths
        return abs(loc[0]) <= half_u + tolerance and abs(loc[1]) <= half_v + tolerance

    def __repr__(self):
        return f"PlaneSurface({self.geometry_id}, center={self.center.tolist()})"


class Detector:
    """
    Ordered collection of surfaces, addressable by geometry identifier.
    """
    def __init__(self, surfaces: Sequence[PlaneSurface]):
        self._surfaces: List[PlaneSurface] = list(surfaces)
        self._by_id: Dict[GeometryIdentifier, PlaneSurface] = {}
        for surface in self._surfaces:
            if surface.geometry_id in self._by_id:
                raise ValueError(f"Duplicate surface identifier {surface.geometry_id}")
            self._by_id[surface.geometry_id] = surface

    def __iter__(self) -> Iterator[PlaneSurface]:
        return iter(self._surfaces)

    def __len__(self) -> int:
        return len(self._surfaces)

    @property
    def surfaces(self) -> List[PlaneSurface]:
        return list(self._surfaces)

    @property
    def sensitive_surfaces(self) -> List[PlaneSurface]:
        return [s for s in self._surfaces if s.is_sensitive]

    def find_surface(self, geometry_id: GeometryIdentifier) -> Optional[PlaneSurface]:
        return self._by_id.get(geometry_id)
