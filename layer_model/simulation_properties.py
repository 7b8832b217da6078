"""
Properties and configuration for the three-layer diffusion model

Defines the simulation configuration, the per-layer diffusion parameters and
the discretized cylindrical geometry (grid, layer indices, source and probe
positions, time stepping).
"""

from layer_model import *

logger = logging.getLogger(__name__)

FARADAY = 96485.3399  # Faraday constant (C/mol)


class ConfigurationError(ValueError):
    """Raised for configuration problems detected before any time stepping."""


@dataclass(frozen=True)
class Layer:
    """
    Diffusion parameters of one homogeneous layer.

    Attributes:
        alpha: Extracellular volume fraction
        theta: Permeability (D* = theta * D_free, tortuosity lambda = 1/sqrt(theta))
        kappa: Nonspecific clearance rate constant (1/s)
    """
    alpha: float
    theta: float
    kappa: float = 0.0

    def dstar(self, dfree: float) -> float:
        """Effective diffusion coefficient D* = theta * D_free (m²/s)."""
        return self.theta * dfree

    @property
    def tortuosity(self) -> float:
        return 1.0 / np.sqrt(self.theta)


@dataclass(frozen=True)
class LayerSet:
    """
    The three stacked layers along z.

    bottom = SR (z below the middle layer), middle = SP, top = SO.
    """
    bottom: Layer
    middle: Layer
    top: Layer

    def __iter__(self):
        return iter((self.bottom, self.middle, self.top))

    def with_middle(self, middle: Layer, global_kappa: bool = False) -> 'LayerSet':
        """
        Return a copy with a new middle layer.

        Args:
            middle: Replacement middle layer
            global_kappa: If True, kappa of the other layers is tied to middle.kappa

        Returns:
            layers: New LayerSet
        """
        if global_kappa:
            return LayerSet(
                bottom=replace(self.bottom, kappa=middle.kappa),
                middle=middle,
                top=replace(self.top, kappa=middle.kappa),
            )
        return LayerSet(bottom=self.bottom, middle=middle, top=self.top)

    def homogeneous(self) -> 'LayerSet':
        """All three layers set to the bottom layer's parameters."""
        return LayerSet(bottom=self.bottom, middle=self.bottom, top=self.bottom)

    def max_dstar(self, dfree: float) -> float:
        return max(layer.dstar(dfree) for layer in self)


@dataclass(frozen=True)
class ExtraSource:
    """
    Additional point source.

    Attributes:
        z: Axial position relative to the main source (m)
        r: Radial position (m)
        current: Iontophoretic current (A)
    """
    z: float
    r: float
    current: float


@dataclass
class SimulationConfig:
    """
    Configuration for the three-layer diffusion simulation.

    Positions along z (layer boundaries, probe, cylinder ends, extra
    sources) are given relative to the main source, which defines the
    origin. Lengths in m, times in s, currents in A.
    """
    # ========== GRID DIMENSIONS ==========
    nr: int = 500     # Number of steps in radial direction
    nz: int = 1000    # Number of steps in axial direction

    # ========== PHYSICAL DIMENSIONS ==========
    rmax: float = 1000.0e-6   # Cylinder radius (m)
    zmax: float = 2000.0e-6   # Cylinder length (m), ignored when ez1/ez2 are given

    # ========== LAYER GEOMETRY ==========
    lz1: float = -25.0e-6     # Lower boundary of middle layer (m)
    lz2: float = 25.0e-6      # Upper boundary of middle layer (m)
    ez1: Optional[float] = None   # Lower end of cylinder (m), <= 0
    ez2: Optional[float] = None   # Upper end of cylinder (m), >= 0
    nolayer: bool = False     # Homogeneous environment with bottom layer parameters

    # ========== LAYER PARAMETERS ==========
    bottom: Layer = field(default_factory=lambda: Layer(alpha=0.218, theta=0.447, kappa=0.0))
    middle: Layer = field(default_factory=lambda: Layer(alpha=0.2, theta=0.4, kappa=0.0))
    top: Layer = field(default_factory=lambda: Layer(alpha=0.218, theta=0.447, kappa=0.0))
    global_kappa: bool = False            # kappa of bottom/top tied to middle
    kappa_outside: Optional[float] = None # kappa of bottom/top layers
    dfree: float = 1.24e-9    # Free diffusion coefficient (m²/s)

    # ========== TIME ==========
    tmax: float = 150.0       # Duration of experiment (s)
    nt: Optional[int] = None  # Number of time steps (default from von Neumann criterion)
    nt_scale: Optional[float] = None  # Divides dt

    # ========== SOURCE ==========
    current: float = 80.0e-9          # Iontophoretic current (A)
    transport_number: float = 0.35    # Transport number of source electrode
    delay: float = 10.0               # Delay before source starts (s)
    duration: float = 50.0            # Source duration (s)
    additional_sources: Tuple[ExtraSource, ...] = ()

    # ========== PROBE ==========
    probe_z: float = 120.0e-6  # Axial probe offset from source (m)
    probe_r: float = 0.0       # Radial probe offset (m)

    # ========== SNAPSHOTS ==========
    image_spacing: float = -1.0   # Time between field snapshots (s), <= 0 disables

    @property
    def source_amplitude(self) -> float:
        """Source strength in mol/s (not a concentration)."""
        return self.current * self.transport_number / FARADAY

    def layer_set(self) -> LayerSet:
        """
        Resolve the effective layer parameters.

        Applies kappa_outside, nolayer and global_kappa the same way the
        experiment setup does: nolayer copies the bottom layer everywhere,
        global_kappa ties bottom/top kappa to the middle layer.
        """
        if self.kappa_outside is not None and self.global_kappa:
            raise ConfigurationError(
                "Both global kappa and kappa_outside specified; global kappa sets "
                "the outer kappa to the middle kappa"
            )
        layers = LayerSet(self.bottom, self.middle, self.top)
        if self.kappa_outside is not None:
            layers = LayerSet(
                bottom=replace(layers.bottom, kappa=self.kappa_outside),
                middle=layers.middle,
                top=replace(layers.top, kappa=self.kappa_outside),
            )
        if self.nolayer:
            layers = layers.homogeneous()
        if self.global_kappa:
            layers = layers.with_middle(layers.middle, global_kappa=True)
        return layers


def _lround(x: float) -> int:
    """Round half away from zero."""
    return int(np.sign(x) * np.floor(abs(x) + 0.5))


class CylinderGrid:
    """
    Discretized cylinder in (z, r) with three layers along z.

    Concentration arrays have shape (nz, nr+1):
    - Row i is z = i*dz (bottom of cylinder at z=0)
    - Column 1 is r = 0, column j >= 1 is r = (j-1)*dr
    - Column 0 holds the mirror image of column 2 (symmetry about r = 0)

    Layer rows: bottom 0..iz1, middle iz1+1..iz2, top iz2+1..nz-1.
    All validation happens here, before any time stepping.
    """

    def __init__(self, config: SimulationConfig, verbose: bool = False):
        """
        Build grid, layer indices, time axis, source field and probe indices.

        Args:
            config: SimulationConfig with physical parameters
            verbose: Print a summary of the adjusted values

        Raises:
            ConfigurationError: Inconsistent geometry, time or source settings
        """
        self.config = config
        self.layers = config.layer_set()
        self.nolayer = config.nolayer
        self.nr, self.nz = config.nr, config.nz
        self.dfree = config.dfree

        if self.nr < 2 or self.nz < 3:
            raise ConfigurationError(f"Grid too small: nr={self.nr}, nz={self.nz}")

        self._setup_geometry()
        self._setup_time()
        self._setup_arrays()

        if verbose:
            self.report()

    # ========== GEOMETRY ==========
    def _setup_geometry(self):
        config = self.config
        lz1, lz2 = config.lz1, config.lz2
        pz, pr = config.probe_z, config.probe_r

        if (config.ez1 is None) != (config.ez2 is None):
            raise ConfigurationError("Cylinder ends ez1 and ez2 must be specified together")

        # Shift z so that the cylinder runs from 0 to zmax. By default the
        # middle layer is centered in the volume.
        if config.ez1 is not None:
            if config.ez1 > 0:
                raise ConfigurationError(f"Bottom of cylinder ez1 = {config.ez1} > 0")
            if config.ez2 < 0:
                raise ConfigurationError(f"Top of cylinder ez2 = {config.ez2} < 0")
            if config.ez1 > lz1:
                raise ConfigurationError(f"Bottom of cylinder ez1 = {config.ez1} > lz1 = {lz1}")
            if config.ez2 < lz2:
                raise ConfigurationError(f"Top of cylinder ez2 = {config.ez2} < lz2 = {lz2}")
            zmax = config.ez2 - config.ez1
            coord_shift = -config.ez1
        else:
            zmax = config.zmax
            coord_shift = (zmax - (lz1 + lz2)) / 2.0

        if lz2 <= lz1:
            raise ConfigurationError(f"Layer boundaries out of order: lz1={lz1}, lz2={lz2}")

        self.coord_shift = coord_shift
        self.zmax = zmax

        # dr and dz must be equal; the radius gives way
        self.dz = zmax / self.nz
        self.dr = config.rmax / self.nr
        self.rmax = config.rmax
        if abs(self.dr - self.dz) > 1.0e-15:
            self.dr = self.dz
            self.rmax = self.dr * self.nr

        if self.dr <= 0:
            raise ConfigurationError(f"Non-positive grid spacing dr = {self.dr}")

        self.sz = _lround(coord_shift / self.dz) * self.dz
        self.sr = 0.0
        self.pz = _lround((pz + coord_shift) / self.dz) * self.dz
        self.pr = _lround(pr / self.dr) * self.dr

        self.iz1 = _lround((lz1 + coord_shift) / self.dz)
        self.iz2 = _lround((lz2 + coord_shift) / self.dz)
        self.lz1 = self.iz1 * self.dz + self.dz / 2.0
        self.lz2 = self.iz2 * self.dz + self.dz / 2.0

        if self.nolayer:
            # Layer rows only matter for clearance; keep them inside the grid
            self.iz1 = min(max(self.iz1, 0), self.nz - 2)
            self.iz2 = min(max(self.iz2, self.iz1), self.nz - 2)
        else:
            if self.iz2 - self.iz1 < 2:
                raise ConfigurationError("Layer has too few discrete steps to continue.")
            if self.iz1 < 0 or self.iz2 > self.nz - 2:
                raise ConfigurationError(
                    f"Layer boundaries (iz1, iz2) = ({self.iz1}, {self.iz2}) "
                    f"outside cylinder with nz = {self.nz}"
                )

        self.isource = _lround(self.sz / self.dz)
        self.jsource = 1 + _lround(self.sr / self.dr)
        self.iprobe = _lround(self.pz / self.dz)
        self.jprobe = 1 + _lround(self.pr / self.dr)
        self._check_cell('probe', self.iprobe, self.jprobe)
        self._check_cell('source', self.isource, self.jsource)

    def _check_cell(self, name, i, j):
        if i < 0 or i > self.nz - 1:
            raise ConfigurationError(f"{name} z-index {i} outside [0, {self.nz - 1}]")
        if j < 0 or j > self.nr:
            raise ConfigurationError(f"{name} r-index {j} outside [0, {self.nr}]")

    # ========== TIME ==========
    def _setup_time(self):
        config = self.config
        dstar_max = self.layers.max_dstar(self.dfree)
        if dstar_max <= 0:
            raise ConfigurationError(f"Non-positive diffusion coefficient D* = {dstar_max}")
        self.dt_stable = 0.9 * self.dr ** 2 / (6.0 * dstar_max)

        if config.nt is not None:
            if config.nt <= 0:
                raise ConfigurationError(f"nt = {config.nt} must be positive")
            dt = config.tmax / config.nt
        else:
            dt = self.dt_stable

        if config.nt_scale is not None:
            if abs(config.nt_scale) < np.finfo(float).eps:
                raise ConfigurationError("nt_scale = 0")
            if config.nt_scale < 0.0:
                raise ConfigurationError("nt_scale < 0")
            dt /= config.nt_scale

        if dt <= 0:
            raise ConfigurationError(f"Non-positive time step dt = {dt}")

        # Round tmax, duration and delay to multiples of dt
        self.dt = dt
        self.nt = _lround(config.tmax / dt)
        self.tmax = dt * self.nt
        self.ns = _lround(config.duration / dt)
        self.duration = dt * self.ns
        self.nds = _lround(config.delay / dt)
        self.delay = dt * self.nds

        if self.delay >= self.tmax:
            raise ConfigurationError(f"Source delay ({self.delay:f}) should be < tmax ({self.tmax:f})")
        if self.duration >= self.tmax:
            raise ConfigurationError(f"Source duration ({self.duration:f}) should be < tmax ({self.tmax:f})")
        if self.delay + self.duration >= self.tmax:
            raise ConfigurationError(
                f"Source delay ({self.delay:f}) + duration ({self.duration:f}) "
                f"should be < tmax ({self.tmax:f})"
            )

        self.von_neumann_ratio = dt * 6.0 * dstar_max / self.dr ** 2
        if self.von_neumann_ratio > 1.0:
            logger.warning(
                "Time step dt = %g s exceeds the von Neumann bound (ratio %.3f); "
                "the explicit scheme will diverge", dt, self.von_neumann_ratio
            )

    # ========== ARRAYS ==========
    def _setup_arrays(self):
        nz, nr = self.nz, self.nr
        dr, dz, dt = self.dr, self.dz, self.dt

        # 1/r lookup, 0 at r = 0 (column 1)
        self.invr = np.zeros(nr + 1)
        self.invr[0] = 1.0 / dr
        self.invr[2:] = 1.0 / ((np.arange(2, nr + 1) - 1.0) * dr)

        self.t = dt * np.arange(self.nt)
        self.alphas = self.alpha_field(self.layers)

        self.source = np.zeros((nz, nr + 1))
        self._add_point_source(self.isource, self.jsource, self.config.source_amplitude)

        for n, extra in enumerate(self.config.additional_sources):
            isource = _lround((extra.z + self.coord_shift) / dz)
            jsource = 1 + _lround(extra.r / dr)
            if isource < 0 or isource > nz - 1:
                raise ConfigurationError(
                    f"adding additional source {n}; isource = {isource} outside [0, {nz - 1}]"
                )
            if jsource < 0 or jsource > nr:
                raise ConfigurationError(
                    f"adding additional source {n}; jsource = {jsource} outside [0, {nr}]"
                )
            amplitude = extra.current * self.config.transport_number / FARADAY
            self._add_point_source(isource, jsource, amplitude)

    def _add_point_source(self, i, j, amplitude):
        self.source[i, j] += (1.0 / self.alphas[i, j]) * amplitude * self.dt * 4.0 / (np.pi * self.dr ** 2 * self.dz)

    def alpha_field(self, layers: LayerSet) -> np.ndarray:
        """Volume fraction at every grid point for the given layers."""
        alphas = np.empty((self.nz, self.nr + 1))
        alphas[:self.iz1 + 1] = layers.bottom.alpha
        alphas[self.iz1 + 1:self.iz2 + 1] = layers.middle.alpha
        alphas[self.iz2 + 1:] = layers.top.alpha
        return alphas

    @property
    def spdist(self) -> float:
        """Source-probe distance (m)."""
        return float(np.hypot(self.pr - self.sr, self.pz - self.sz))

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.nz, self.nr + 1)

    def report(self):
        """Print the adjusted geometry and time parameters."""
        print("=" * 70)
        print("THREE-LAYER DIFFUSION MODEL")
        print("=" * 70)
        where = "to have the volume go from z=0 to z=zmax" if self.config.ez1 is not None \
            else "to center the middle layer in the volume"
        print(f"  z-values shifted by {1e6 * self.coord_shift:f} microns {where}")
        print(f"  nr x nz = {self.nr} x {self.nz}")
        print(f"  rmax x zmax = {1e6 * self.rmax:f} x {1e6 * self.zmax:f} microns")
        print(f"  dr x dz = {1e6 * self.dr:f} x {1e6 * self.dz:f} microns")
        print(f"  (sr, sz) = ({1e6 * self.sr:f}, {1e6 * self.sz:f}) microns")
        print(f"  (pr, pz) = ({1e6 * self.pr:f}, {1e6 * self.pz:f}) microns")
        print(f"  Electrode distance = {1e6 * self.spdist:f} microns")
        print(f"  (iz1, iz2) = ({self.iz1}, {self.iz2})")
        print(f"  Layer thickness = {1e6 * (self.lz2 - self.lz1):f} microns")
        print(f"  Nolayer flag = {self.nolayer}")
        for name, layer in zip(('bottom', 'middle', 'top'), self.layers):
            print(f"  {name:6s}: alpha = {layer.alpha:.4f}, theta = {layer.theta:.4f}, "
                  f"lambda = {layer.tortuosity:.4f}, kappa = {layer.kappa:.6f}")
        print(f"  nt = {self.nt}, tmax = {self.tmax:f} s, dt = {1e3 * self.dt:f} ms")
        print(f"  von Neumann dt / (dr^2/(6*dstar)) = {self.von_neumann_ratio:f}")
        print(f"  Source delay = {self.delay:f} s, duration = {self.duration:f} s")
        print(f"  Current = {1e9 * self.config.current:g} nA, "
              f"transport number = {self.config.transport_number:f}")
