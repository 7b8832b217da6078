"""Boundary Conditions at Layer Interfaces and the Symmetry Axis"""

from layer_model import *


class InterfaceBoundaryConditions:
    """
    Continuity of concentration and flux at the two layer interfaces.

    The true interface lies halfway between rows iz and iz+1. Its value is
    the flux-weighted average of the two adjacent rows,

        cb = (D*_A α_A c[iz] + D*_B α_B c[iz+1]) / (D*_A α_A + D*_B α_B),

    and each layer sees the other side through a ghost row extrapolated
    linearly through cb: ghost = 2·cb - c_nearest.
    """

    def __init__(self, grid, layers: LayerSet):
        """
        Initialize interface weights for one layer configuration.

        Args:
            grid: CylinderGrid object
            layers: LayerSet with bottom, middle and top parameters
        """
        self.iz1 = grid.iz1
        self.iz2 = grid.iz2
        self.nz = grid.nz

        dfree = grid.dfree
        w_bottom = layers.bottom.dstar(dfree) * layers.bottom.alpha
        w_middle = layers.middle.dstar(dfree) * layers.middle.alpha
        w_top = layers.top.dstar(dfree) * layers.top.alpha
        if w_bottom + w_middle <= 0 or w_middle + w_top <= 0:
            raise ConfigurationError("Interface weights D*·alpha must be positive")

        # Normalized weights of the row below / above each interface
        self.lower_weights = (w_bottom / (w_bottom + w_middle), w_middle / (w_bottom + w_middle))
        self.upper_weights = (w_middle / (w_middle + w_top), w_top / (w_middle + w_top))

    def interface_values(self, c: np.ndarray, cb_lower: np.ndarray, cb_upper: np.ndarray):
        """
        Calculate the interface concentrations between the layers.

        Args:
            c: Concentration field (nz, nr+1)
            cb_lower: Output, interface between bottom and middle layers (nr+1,)
            cb_upper: Output, interface between middle and top layers (nr+1,)
        """
        wa, wb = self.lower_weights
        np.multiply(c[self.iz1], wa, out=cb_lower)
        cb_lower += wb * c[self.iz1 + 1]

        wa, wb = self.upper_weights
        np.multiply(c[self.iz2], wa, out=cb_upper)
        cb_upper += wb * c[self.iz2 + 1]

    def split(self, c: np.ndarray, bottom: np.ndarray, middle: np.ndarray, top: np.ndarray,
              cb_lower: np.ndarray, cb_upper: np.ndarray):
        """
        Copy the field into the three layer sub-fields and fill their ghost rows.

        Sub-field layout:
            bottom (iz1+2 rows):     rows 0..iz1, then ghost above
            middle (iz2-iz1+2 rows): ghost below, rows iz1+1..iz2, ghost above
            top    (nz-iz2 rows):    ghost below, rows iz2+1..nz-1

        Args:
            c: Concentration field (nz, nr+1)
            bottom, middle, top: Output sub-fields
            cb_lower, cb_upper: Work arrays for the interface values (nr+1,)
        """
        iz1, iz2 = self.iz1, self.iz2
        self.interface_values(c, cb_lower, cb_upper)

        bottom[:iz1 + 1] = c[:iz1 + 1]
        np.subtract(2.0 * cb_lower, c[iz1], out=bottom[iz1 + 1])

        np.subtract(2.0 * cb_lower, c[iz1 + 1], out=middle[0])
        middle[1:-1] = c[iz1 + 1:iz2 + 1]
        np.subtract(2.0 * cb_upper, c[iz2], out=middle[-1])

        np.subtract(2.0 * cb_upper, c[iz2 + 1], out=top[0])
        top[1:] = c[iz2 + 1:]

    def recompose(self, c: np.ndarray, bottom: np.ndarray, middle: np.ndarray, top: np.ndarray,
                  d_bottom: np.ndarray, d_middle: np.ndarray, d_top: np.ndarray):
        """Write the updated layer interiors back into c, dropping ghost rows."""
        iz1, iz2 = self.iz1, self.iz2
        np.add(bottom[:iz1 + 1], d_bottom[:iz1 + 1], out=c[:iz1 + 1])
        np.add(middle[1:-1], d_middle[1:-1], out=c[iz1 + 1:iz2 + 1])
        np.add(top[1:], d_top[1:], out=c[iz2 + 1:])


class AxisSymmetryCondition:
    """
    Reflective condition about r = 0.

    Location: column 1 (r = 0)
    Condition: ∂c/∂r = 0, implemented by copying column 2 into mirror column 0
    """

    def apply(self, c: np.ndarray) -> np.ndarray:
        c[:, 0] = c[:, 2]
        return c

    def __call__(self, c: np.ndarray) -> np.ndarray:
        return self.apply(c)
