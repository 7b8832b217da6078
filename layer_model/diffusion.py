"""
Explicit Time Stepping of the Layered Diffusion Equation

Implements one forward-Euler step of

    ∂c/∂t = D* ∇²c - κ c + s/α

in each homogeneous layer, with:
- Interface continuity through ghost rows (three-layer model)
- A single set of parameters for the whole volume (one-layer model)
- Source injection while the source is on
- First-order nonspecific clearance
- Reflective symmetry about r = 0
"""

from layer_model import *

logger = logging.getLogger(__name__)


class SubFieldPool:
    """
    Work buffers for the steppers, sized once from the grid.

    Holds the three layer sub-fields (with ghost rows), their update
    buffers, the interface rows, a full-size update buffer for the
    one-layer model and one Laplacian operator per buffer shape. A fitter
    runs many simulations on the same grid and reuses one pool.
    """

    def __init__(self, grid):
        N = grid.nr + 1
        iz1, iz2, nz = grid.iz1, grid.iz2, grid.nz

        self.bottom = np.zeros((iz1 + 2, N))
        self.middle = np.zeros((iz2 - iz1 + 2, N))
        self.top = np.zeros((nz - iz2, N))
        self.d_bottom = np.zeros_like(self.bottom)
        self.d_middle = np.zeros_like(self.middle)
        self.d_top = np.zeros_like(self.top)
        self.cb_lower = np.zeros(N)
        self.cb_upper = np.zeros(N)
        self.delta = np.zeros((nz, N))

        self.laplacians = {
            'bottom': CylindricalLaplacian(self.bottom.shape, grid.invr),
            'middle': CylindricalLaplacian(self.middle.shape, grid.invr),
            'top': CylindricalLaplacian(self.top.shape, grid.invr),
            'full': CylindricalLaplacian(self.delta.shape, grid.invr),
        }

    def buffers(self) -> List[np.ndarray]:
        return [self.bottom, self.middle, self.top,
                self.d_bottom, self.d_middle, self.d_top,
                self.cb_lower, self.cb_upper, self.delta]

    def reset(self):
        """Zero all buffers before a new run."""
        for buf in self.buffers():
            buf.fill(0.0)


class LayerStepper:
    """
    Advances the concentration field by one time step.

    Subclasses implement the diffusion update; source, clearance and the
    axis condition are shared.
    """

    def __init__(self, grid, layers: LayerSet, pool: Optional[SubFieldPool] = None):
        """
        Args:
            grid: CylinderGrid object
            layers: LayerSet with the parameters for this run
            pool: Shared work buffers (allocated if not given)
        """
        self.grid = grid
        self.layers = layers
        self.dt = grid.dt
        self.source = grid.source
        self.source_off = grid.delay + grid.duration
        self.pool = pool if pool is not None else SubFieldPool(grid)
        self.axis = AxisSymmetryCondition()
        self.clearance = self._clearance_factors()

    def scale_factors(self, layer: Layer) -> Tuple[float, float]:
        """
        Weights of the Laplacian and 1/r terms for one layer.

        Returns:
            s1: D*·Δt/Δr²
            s2: D*·Δt/(2Δr)
        """
        dstar = layer.dstar(self.grid.dfree)
        s1 = dstar * self.dt / self.grid.dr ** 2
        s2 = dstar * self.dt / (2.0 * self.grid.dr)
        if s1 <= 0:
            raise ConfigurationError(f"Non-positive scale factor {s1:g} (theta = {layer.theta:g})")
        return s1, s2

    def _clearance_factors(self) -> Tuple[float, float, float]:
        return tuple(1.0 - layer.kappa * self.dt for layer in self.layers)

    def step(self, c: np.ndarray, t: float) -> np.ndarray:
        """
        Advance c in place from time t to t + dt.

        Args:
            c: Concentration field (nz, nr+1)
            t: Current time (s)

        Returns:
            c: Updated field
        """
        self._diffuse(c)

        if t + self.dt / 2.0 < self.source_off:
            c += self.source

        self._clear(c)
        self.axis(c)
        return c

    def _diffuse(self, c: np.ndarray):
        raise NotImplementedError

    def _clear(self, c: np.ndarray):
        iz1, iz2 = self.grid.iz1, self.grid.iz2
        f_bottom, f_middle, f_top = self.clearance
        if f_bottom != 1.0:
            c[:iz1 + 1] *= f_bottom
        if f_middle != 1.0:
            c[iz1 + 1:iz2 + 1] *= f_middle
        if f_top != 1.0:
            c[iz2 + 1:] *= f_top


class SingleLayerStepper(LayerStepper):
    """Homogeneous volume with the bottom layer's parameters everywhere."""

    def __init__(self, grid, layers: LayerSet, pool: Optional[SubFieldPool] = None):
        super().__init__(grid, layers, pool)
        self.s1, self.s2 = self.scale_factors(layers.bottom)

    def _clearance_factors(self):
        f = 1.0 - self.layers.bottom.kappa * self.dt
        return (f, f, f)

    def _diffuse(self, c):
        delta = self.pool.laplacians['full'].apply(c, self.s1, self.s2, out=self.pool.delta)
        c += delta


class ThreeLayerStepper(LayerStepper):
    """Bottom, middle and top layers coupled through the interface conditions."""

    def __init__(self, grid, layers: LayerSet, pool: Optional[SubFieldPool] = None):
        super().__init__(grid, layers, pool)
        self.interfaces = InterfaceBoundaryConditions(grid, layers)
        self.scales = {
            'bottom': self.scale_factors(layers.bottom),
            'middle': self.scale_factors(layers.middle),
            'top': self.scale_factors(layers.top),
        }

    def _diffuse(self, c):
        pool = self.pool
        self.interfaces.split(c, pool.bottom, pool.middle, pool.top,
                              pool.cb_lower, pool.cb_upper)

        for name, sub, delta in (('bottom', pool.bottom, pool.d_bottom),
                                 ('middle', pool.middle, pool.d_middle),
                                 ('top', pool.top, pool.d_top)):
            s1, s2 = self.scales[name]
            pool.laplacians[name].apply(sub, s1, s2, out=delta)

        self.interfaces.recompose(c, pool.bottom, pool.middle, pool.top,
                                  pool.d_bottom, pool.d_middle, pool.d_top)


def make_stepper(grid, layers: Optional[LayerSet] = None, nolayer: Optional[bool] = None,
                 pool: Optional[SubFieldPool] = None) -> LayerStepper:
    """
    Choose the stepper variant once for a run.

    Args:
        grid: CylinderGrid object
        layers: Layer parameters (default: the grid's)
        nolayer: Use the one-layer model (default: the grid's setting)
        pool: Shared work buffers

    Returns:
        stepper: SingleLayerStepper or ThreeLayerStepper
    """
    layers = grid.layers if layers is None else layers
    nolayer = grid.nolayer if nolayer is None else nolayer
    if nolayer:
        logger.info("nolayer set, using the one-layer model")
        return SingleLayerStepper(grid, layers, pool)
    if grid.iz2 - grid.iz1 < 2:
        raise ConfigurationError("Layer has too few discrete steps to continue.")
    return ThreeLayerStepper(grid, layers, pool)
