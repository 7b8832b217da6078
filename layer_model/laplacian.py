"""
Laplacian in cylindrical coordinates

With circular symmetry the Laplacian of c is

    ∇²c = ∂²c/∂z² + ∂²c/∂r² + (1/r) ∂c/∂r

and, since Δz = Δr, the first two terms are the 5-point Cartesian kernel

    L = [[0,  1, 0],
         [1, -4, 1],
         [0,  1, 0]] / Δr²

while the first derivative uses D = [-1, 0, 1] / (2Δr) along r. At r = 0,
(1/r) ∂c/∂r → ∂²c/∂r² (L'Hôpital), giving

    L0 = [[0,  1, 0],
          [2, -6, 2],
          [0,  1, 0]] / Δr²

Both kernels are scaled by D* = θ·D_free and Δt through the two scale
factors, so the operator returns the change of c over one time step.
"""

from layer_model import *


class CylindricalLaplacian:
    """
    Computes s1·(L*c) + s2·(1/r)·(D*c) for a rectangular field.

    Rows are z, columns are r; column 1 is r = 0 and column 0 is the mirror
    column. Neighbours outside the field count as zero, so the outermost rows
    and columns use one-sided stencils. The r = 0 kernel L0 is only used on
    interior rows; the two edge rows keep the regular kernel there (1/r is 0
    at column 1, so only the L term remains).
    """

    def __init__(self, shape: Tuple[int, int], invr: np.ndarray):
        """
        Allocate the padded workspace for fields of the given shape.

        Args:
            shape: (M, N) field shape, M >= 2 rows (z) and N >= 2 columns (r)
            invr: 1/r lookup of length N
        """
        M, N = shape
        if M < 2 or N < 2:
            raise ValueError(f"Field must be at least 2 x 2, got {M} x {N}")
        if len(invr) != N:
            raise ValueError(f"invr has length {len(invr)}, expected {N}")
        self.shape = (M, N)
        self.invr = np.asarray(invr, dtype=float)
        # One ring of zeros around the field
        self._padded = np.zeros((M + 2, N + 2))

    def apply(self, a: np.ndarray, scale1: float, scale2: float,
              out: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Calculate the update of field a over one time step.

        Args:
            a: Field (M, N)
            scale1: D*·Δt/Δr², weight of the Laplacian kernel
            scale2: D*·Δt/(2Δr), weight of the 1/r first-derivative term
            out: Optional output array (M, N), overwritten

        Returns:
            out: Change of a over one time step
        """
        M, N = self.shape
        if a.shape != self.shape:
            raise ValueError(f"Field shape {a.shape} does not match operator shape {self.shape}")
        if out is None:
            out = np.empty(self.shape)

        p = self._padded
        p[1:-1, 1:-1] = a
        up, down = p[:-2, 1:-1], p[2:, 1:-1]
        left, right = p[1:-1, :-2], p[1:-1, 2:]

        # ========== REGULAR KERNEL ==========
        np.add(up, down, out=out)
        out += left
        out += right
        out -= 4.0 * a
        out *= scale1
        out += scale2 * (right - left) * self.invr

        # ========== r = 0 COLUMN (interior rows) ==========
        if M > 2:
            out[1:-1, 1] = scale1 * (
                p[1:-3, 2] + p[3:-1, 2]
                + 2.0 * p[2:-2, 1] - 6.0 * p[2:-2, 2] + 2.0 * p[2:-2, 3]
            )

        return out
