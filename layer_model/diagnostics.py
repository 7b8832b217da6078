"""
Diagnostic Tools for the Layered Diffusion Solver

Provides functions to check time step stability, the axis condition,
interface continuity and the amount of substance in the volume.
"""

from layer_model import *


def stability_ratios(grid, layers: Optional[LayerSet] = None) -> dict:
    """
    von Neumann ratio dt / (dr²/(6 D*)) of each layer; the scheme is stable for ratios <= 1.
    """
    layers = grid.layers if layers is None else layers
    return {
        name: grid.dt * 6.0 * layer.dstar(grid.dfree) / grid.dr ** 2
        for name, layer in zip(('bottom', 'middle', 'top'), layers)
    }


def axis_asymmetry(c: np.ndarray) -> float:
    """Largest |c[:, 0] - c[:, 2]|; 0 when the mirror column is consistent."""
    return float(np.max(np.abs(c[:, 0] - c[:, 2])))


def cell_volumes(grid) -> np.ndarray:
    """
    Volume of the ring around each grid point (m³), shape (nr+1,).

    The axis point owns a disk of radius dr/2; point j >= 2 a ring of width dr
    at r = (j-1)·dr. The mirror column owns nothing.
    """
    dr, dz = grid.dr, grid.dz
    volumes = np.zeros(grid.nr + 1)
    volumes[1] = np.pi * (dr / 2.0) ** 2 * dz
    volumes[2:] = 2.0 * np.pi * (np.arange(2, grid.nr + 1) - 1.0) * dr * dr * dz
    return volumes


def total_amount(grid, c: np.ndarray, layers: Optional[LayerSet] = None) -> float:
    """Amount of substance in the extracellular space, Σ α·c·V (mol)."""
    layers = grid.layers if layers is None else layers
    alphas = grid.alpha_field(layers)
    return float(np.sum(alphas * c * cell_volumes(grid)[np.newaxis, :]))


def injected_amount(grid) -> float:
    """Amount released by the main and additional sources over the run (mol)."""
    config = grid.config
    rate = config.source_amplitude + sum(
        s.current * config.transport_number / FARADAY for s in config.additional_sources
    )
    t_steps = grid.t[grid.nds:]
    additions = 1 + int(np.sum(t_steps + grid.dt / 2.0 < grid.delay + grid.duration))
    return rate * grid.dt * additions


def interface_flux_jump(grid, c: np.ndarray, layers: Optional[LayerSet] = None) -> Tuple[float, float]:
    """
    Largest relative mismatch of D*·α·∂c/∂z on the two sides of each interface.

    Uses one-sided differences through the interface value, so it is small
    for a field produced by the three-layer stepper.
    """
    layers = grid.layers if layers is None else layers
    dfree = grid.dfree
    jumps = []
    for iz, below, above in ((grid.iz1, layers.bottom, layers.middle),
                             (grid.iz2, layers.middle, layers.top)):
        wa = below.dstar(dfree) * below.alpha
        wb = above.dstar(dfree) * above.alpha
        cb = (wa * c[iz] + wb * c[iz + 1]) / (wa + wb)
        flux_below = wa * (cb - c[iz])
        flux_above = wb * (c[iz + 1] - cb)
        scale = np.max(np.abs(flux_below)) + 1e-300
        jumps.append(float(np.max(np.abs(flux_below - flux_above)) / scale))
    return jumps[0], jumps[1]


def run_diagnostics(grid, result):
    """
    Run diagnostics on a finished simulation.

    Checks:
    1. Time step stability per layer
    2. Axis symmetry of the final field
    3. Flux continuity at the layer interfaces
    4. Amount of substance in the volume vs amount injected
    5. Issues and recommendations

    Args:
        grid: CylinderGrid the run used
        result: SimulationResult with final_field

    Returns:
        issues: List of detected problems (empty if none)
    """
    print("\n" + "=" * 70)
    print("DIFFUSION SOLVER DIAGNOSTICS")
    print("=" * 70)

    c = result.final_field
    layers = result.layers
    issues = []

    # ========================================
    # 1. STABILITY
    # ========================================
    print("\n1. TIME STEP STABILITY")
    print("-" * 40)
    ratios = stability_ratios(grid, layers)
    for name, ratio in ratios.items():
        print(f"  {name:6s}: dt / (dr²/(6 D*)) = {ratio:.4f}")
    if max(ratios.values()) > 1.0:
        issues.append("- Time step above the von Neumann bound: decrease dt (nt_scale > 1)")

    if c is None:
        print("\n  No final field stored; skipping field checks")
        return issues

    if not np.all(np.isfinite(c)):
        print("\n  Field contains NaN/inf values")
        issues.append("- Non-finite concentrations: the run diverged")
        for issue in issues:
            print(issue)
        return issues

    # ========================================
    # 2. AXIS SYMMETRY
    # ========================================
    print("\n2. AXIS SYMMETRY")
    print("-" * 40)
    asym = axis_asymmetry(c)
    print(f"  max |c[:,0] - c[:,2]| (should be 0): {asym:.4e}")
    if asym > 0:
        issues.append("- Mirror column differs from column 2: axis condition not applied")

    # ========================================
    # 3. INTERFACE CONTINUITY
    # ========================================
    print("\n3. INTERFACE FLUX CONTINUITY")
    print("-" * 40)
    if result.nolayer:
        print("  One-layer model, no interfaces")
    else:
        lower, upper = interface_flux_jump(grid, c, layers)
        print(f"  Lower interface (iz1 = {grid.iz1}): relative jump {lower:.4e}")
        print(f"  Upper interface (iz2 = {grid.iz2}): relative jump {upper:.4e}")

    # ========================================
    # 4. AMOUNT OF SUBSTANCE
    # ========================================
    print("\n4. AMOUNT OF SUBSTANCE")
    print("-" * 40)
    amount = total_amount(grid, c, layers)
    injected = injected_amount(grid)
    print(f"  In volume:  {amount:.6e} mol")
    print(f"  Injected:   {injected:.6e} mol")
    print(f"  Recovered:  {amount / (injected + 1e-300):.2%} (clearance and the open boundaries remove substance)")
    if amount < 0:
        issues.append("- Negative total amount: check the time step")

    # ========================================
    # 5. RECOMMENDATIONS
    # ========================================
    print("\n5. RECOMMENDATIONS")
    print("-" * 40)
    if c.min() < 0:
        issues.append(f"- Negative concentrations (min {c.min():.3e}): time step close to unstable")

    if len(issues) == 0:
        print("  No obvious issues detected.")
    else:
        for issue in issues:
            print(issue)

    return issues
