import numpy as np
from typing import Optional, Tuple

from dataclasses import dataclass, field

from gx2f.propagation.surfaces import PlaneSurface
from gx2f.tracker.extensions import Gx2FitterExtensions
from gx2f.utils.tools import REDUCED_MATRIX_SIZE


@dataclass(frozen=True)
class GeometryContext:
    """Opaque alignment/conditions context for geometry lookups."""
    tag: str = "nominal"


@dataclass(frozen=True)
class MagneticFieldContext:
    """Opaque context for magnetic field lookups."""
    tag: str = "nominal"


@dataclass(frozen=True)
class CalibrationContext:
    """Opaque context for measurement calibration."""
    tag: str = "nominal"


@dataclass
class PropagatorPlainOptions:
    """
    Engine tuning independent of the actors attached to a propagation.
    """
    max_steps: int = 1000
    path_limit: float = np.inf
    direction: int = 1


@dataclass
class Gx2FitterOptions:
    """
    Configuration of a single Global Chi-Square fit.
    """
    geo_context: GeometryContext = field(default_factory=GeometryContext)
    mag_field_context: MagneticFieldContext = field(default_factory=MagneticFieldContext)
    # The calibrator is called with the geometry context only
    calibration_context: CalibrationContext = field(default_factory=CalibrationContext)

    extensions: Gx2FitterExtensions = field(default_factory=Gx2FitterExtensions)
    propagator_plain_options: PropagatorPlainOptions = field(default_factory=PropagatorPlainOptions)

    # Surface at which propagation may stop cleanly
    reference_surface: Optional[PlaneSurface] = None

    # Material effects are not implemented, these only warn when enabled
    multiple_scattering: bool = False
    energy_loss: bool = False

    n_update_max: int = 5

    # None keeps the full iteration budget, otherwise stop when |delta| drops below
    convergence_threshold: Optional[float] = None

    # Ceiling on surfaces visited in one propagation
    max_surfaces: int = 11

    reduced_size: int = REDUCED_MATRIX_SIZE

    def __post_init__(self):
        if self.n_update_max < 0:
            raise ValueError("n_update_max must be non-negative")
        if not 0 < self.reduced_size <= 6:
            raise ValueError(f"reduced_size must be in [1, 6], got {self.reduced_size}")


@dataclass
class TelescopeConfig:
    """
    A row of equally spaced planes, normals along the global x axis.
    """
    num_surfaces: int = 6
    first_position: float = 50.0
    spacing: float = 50.0
    half_lengths: Tuple[float, float] = (100.0, 100.0)
    hit_std_dev: Tuple[float, float] = (0.05, 0.05)


@dataclass
class SimulationConfig:
    name: str = "default_simulation"

    num_tracks: int = 100
    seed: int = 42

    # Truth generation
    phi_range: Tuple[float, float] = (-0.1, 0.1)
    theta_range: Tuple[float, float] = (np.pi / 2 - 0.1, np.pi / 2 + 0.1)
    loc_std_dev: float = 1.0
    momentum: float = 1.0

    # Smearing of the start parameters handed to the fitter
    start_std_devs: Tuple[float, float, float, float] = (0.5, 0.5, 0.01, 0.01)

    num_workers: int = 4
    save_result: bool = False


@dataclass
class FitConfig:
    n_update_max: int = 5
    convergence_threshold: Optional[float] = None
    max_surfaces: int = 11


@dataclass
class Config:
    sim: SimulationConfig
    telescope: TelescopeConfig
    fit: FitConfig
