"""
Parameter Fitting

Fits diffusion parameters by minimizing the mean squared error between a
model curve and a target curve with a Nelder-Mead simplex:

- Apparent parameters: (alpha, theta) of the homogeneous model fitted to a
  simulated curve (the "characteristic curve")
- Layer parameters: (alpha, theta[, kappa]) of the middle layer fitted to
  measured data, running the full layered simulation per evaluation

Parameters leaving their allowed range are pushed back with a linear
penalty added to the error.
"""

from layer_model import *

logger = logging.getLogger(__name__)

ALPHA_FLOOR = 0.001
THETA_FLOOR = 0.001


@dataclass
class FitBounds:
    """Allowed (min, max) range of each fitted parameter."""
    alpha: Tuple[float, float] = (0.001, 0.25)
    theta: Tuple[float, float] = (0.001, 0.75)
    kappa: Tuple[float, float] = (0.0, 0.1)

    def as_list(self, n: int = 3) -> List[Tuple[float, float]]:
        return [self.alpha, self.theta, self.kappa][:n]


@dataclass
class FitSettings:
    """
    Start values, step sizes and stopping criteria for the simplex fit.

    The initial simplex is the start point plus one vertex per parameter,
    displaced by that parameter's step.
    """
    # ========== START VALUES ==========
    alpha_start: float = 0.2
    theta_start: float = 0.4
    kappa_start: float = 0.01

    # ========== INITIAL SIMPLEX STEPS ==========
    alpha_step: float = 0.1
    theta_step: float = 0.2
    kappa_step: float = 0.002

    # ========== CONSTRAINTS ==========
    bounds: FitBounds = field(default_factory=FitBounds)
    penalty_factor: float = 10.0

    # ========== STOPPING ==========
    fit_tol: float = 1.0e-4   # Simplex size at which the fit has converged
    itermax: int = 100

    # ========== WHAT TO FIT ==========
    fit_kappa: bool = True
    global_kappa: bool = False

    @property
    def n_params(self) -> int:
        return 3 if self.fit_kappa else 2

    def start(self) -> np.ndarray:
        return np.array([self.alpha_start, self.theta_start, self.kappa_start][:self.n_params])

    def steps(self) -> np.ndarray:
        return np.array([self.alpha_step, self.theta_step, self.kappa_step][:self.n_params])


@dataclass
class FitStep:
    """One line of the simplex path: best vertex after an iteration."""
    iteration: int
    params: Tuple[float, ...]
    mse: float
    size: float


@dataclass
class FitResult:
    """
    Outcome of a simplex fit.

    Attributes:
        params: Best vertex found
        mse: Objective value at params (including any penalty)
        iterations: Number of simplex iterations
        converged: True if the simplex shrank below the tolerance
        size: Final simplex size
        names: Parameter names, in order
        trace: Best vertex after every iteration
        nfev: Number of objective evaluations
        message: Termination message
    """
    params: np.ndarray
    mse: float
    iterations: int
    converged: bool
    size: float
    names: Tuple[str, ...] = ('alpha', 'theta', 'kappa')
    trace: List[FitStep] = field(default_factory=list)
    nfev: int = 0
    message: str = ''

    def __getitem__(self, name: str) -> float:
        return float(self.params[self.names.index(name)])

    @property
    def alpha(self) -> float:
        return self['alpha']

    @property
    def theta(self) -> float:
        return self['theta']

    @property
    def kappa(self) -> Optional[float]:
        return self['kappa'] if 'kappa' in self.names else None

    @property
    def tortuosity(self) -> float:
        return 1.0 / np.sqrt(self.theta)


# ========== ERROR MEASURES ==========
def _lround(x: float) -> int:
    return int(np.floor(x + 0.5))


def resampled_mse(model: np.ndarray, target: np.ndarray) -> float:
    """
    Mean squared error between two curves sampled at different rates.

    Both curves span the same time interval. The longer curve is sampled at
    the nearest index i·scale (scale = len(longer)/len(shorter)) for every
    sample i >= 1 of the shorter one; sample 0 is skipped. The sum is
    divided by the length of the shorter curve.

    Args:
        model: Model curve, length nt
        target: Target curve, length nd

    Returns:
        mse: Mean squared error
    """
    model = np.asarray(model, dtype=float)
    target = np.asarray(target, dtype=float)
    nt, nd = len(model), len(target)
    if nt == 0 or nd == 0:
        raise ValueError("Cannot compare empty curves")

    if nt > nd:
        scale = nt / nd
        index = [_lround(i * scale) for i in range(1, nd)]
        return float(np.sum((model[index] - target[1:]) ** 2) / nd)

    scale = nd / nt
    index = [_lround(i * scale) for i in range(1, nt)]
    return float(np.sum((model[1:] - target[index]) ** 2) / nt)


def box_penalty(values: Sequence[float], bounds: Sequence[Tuple[float, float]],
                penalty_factor: float = 10.0) -> float:
    """
    Linear penalty for values outside their (min, max) bounds.

    Returns:
        penalty: penalty_factor times the summed distance outside the bounds
    """
    penalty = 0.0
    for value, (lo, hi) in zip(values, bounds):
        if value < lo:
            penalty += (lo - value) * penalty_factor
        if value > hi:
            penalty += (value - hi) * penalty_factor
    return penalty


def _floored(alpha: float, theta: float) -> Tuple[float, float]:
    if alpha <= ALPHA_FLOOR:
        alpha = ALPHA_FLOOR
    if theta <= THETA_FLOOR:
        theta = THETA_FLOOR
    return alpha, theta


# ========== OBJECTIVES ==========
class ApparentParameterObjective:
    """
    Error of the homogeneous model against a curve on the same time axis.

    Used to find the apparent alpha and theta that make a homogeneous
    environment reproduce a layered simulation.
    """
    names = ('alpha', 'theta')

    def __init__(self, curve: np.ndarray, model: HomogeneousModel):
        self.curve = np.asarray(curve, dtype=float)
        self.model = model
        if len(self.curve) != len(model.t):
            raise ValueError(f"Curve has {len(self.curve)} points, model time axis {len(model.t)}")
        self.evaluations = 0

    def theory(self, x) -> np.ndarray:
        alpha, theta = _floored(x[0], x[1])
        return self.model(alpha, theta)

    def mse(self, x) -> float:
        self.evaluations += 1
        p_theory = self.theory(x)
        nt = len(self.curve)
        return float(np.sum((self.curve[1:] - p_theory[1:]) ** 2) / nt)

    def __call__(self, x) -> float:
        return self.mse(x)


class LayerFitObjective:
    """
    Error of the layered simulation against target data, as a function of
    the middle layer's parameters.

    x = (alpha, theta) or (alpha, theta, kappa) of the middle layer. The
    other layers keep their configured values, except that with global
    kappa all three layers share the fitted kappa. Each call runs a full
    simulation; the source pattern stays the one of the configured layers.
    """

    def __init__(self, grid: CylinderGrid, target: np.ndarray,
                 settings: Optional[FitSettings] = None,
                 base_layers: Optional[LayerSet] = None,
                 nolayer: Optional[bool] = None):
        """
        Args:
            grid: CylinderGrid of the experiment
            target: Measured concentration curve spanning [0, tmax]
            settings: FitSettings (bounds, penalty, what to fit)
            base_layers: Layer parameters of the bottom and top layers (default: the grid's)
            nolayer: One-layer model (default: the grid's setting)
        """
        self.grid = grid
        self.target = np.asarray(target, dtype=float)
        self.settings = settings if settings is not None else FitSettings()
        self.base_layers = grid.layers if base_layers is None else base_layers
        self.nolayer = grid.nolayer if nolayer is None else nolayer
        self.names = ('alpha', 'theta', 'kappa')[:self.settings.n_params]
        self.pool = SubFieldPool(grid)
        self.evaluations = 0
        self.last_curve: Optional[np.ndarray] = None

    def _values(self, x) -> List[float]:
        alpha, theta = _floored(x[0], x[1])
        kappa = x[2] if self.settings.fit_kappa else self.base_layers.middle.kappa
        return [alpha, theta, kappa]

    def layers_for(self, x) -> LayerSet:
        """Layer set with the middle layer replaced by the (floored) parameters x."""
        alpha, theta, kappa = self._values(x)
        middle = Layer(alpha=alpha, theta=theta, kappa=kappa)
        return self.base_layers.with_middle(middle, global_kappa=self.settings.global_kappa)

    def curve(self, x) -> np.ndarray:
        """Simulated probe curve for parameters x."""
        solver = LayerSolver(self.grid, layers=self.layers_for(x), nolayer=self.nolayer, pool=self.pool)
        self.last_curve = solver.solve().probe
        return self.last_curve

    def mse(self, x) -> float:
        """Error without the bound penalty."""
        self.evaluations += 1
        return resampled_mse(self.curve(x), self.target)

    def penalty(self, x) -> float:
        values = self._values(x)[:self.settings.n_params]
        bounds = self.settings.bounds.as_list(self.settings.n_params)
        return box_penalty(values, bounds, self.settings.penalty_factor)

    def __call__(self, x) -> float:
        return self.mse(x) + self.penalty(x)


# ========== SIMPLEX MINIMIZER ==========
def _simplex_size(vertices: np.ndarray) -> float:
    """Mean distance of the vertices from their centroid."""
    center = vertices.mean(axis=0)
    return float(np.mean(np.linalg.norm(vertices - center, axis=1)))


def minimize_nmsimplex(fun, x0, args=(), steps=None, size_tol=1.0e-4, maxiter=100,
                       trace=None, **unknown_options):
    """
    Nelder-Mead simplex minimization with a size-based stopping rule.

    Usable as a custom method of scipy.optimize.minimize:

        minimize(f, x0, method=minimize_nmsimplex,
                 options=dict(steps=..., size_tol=1e-4, maxiter=100))

    The initial simplex is x0 and x0 + steps[i]·e_i. Each iteration
    reflects the worst vertex through the centroid of the others and then
    expands, accepts, contracts along the line or shrinks the whole simplex
    toward the best vertex. The search stops when the simplex size (mean
    vertex distance from the centroid) drops below size_tol or after
    maxiter iterations.

    Args:
        fun: Objective, fun(x, *args) -> float
        x0: Start point
        args: Extra arguments for fun
        steps: Initial displacement per parameter (default 0.1 for every parameter)
        size_tol: Simplex size at which the search has converged
        maxiter: Maximum number of iterations
        trace: Optional callable trace(iteration, x_best, f_best, size), also
               called once for the initial simplex with iteration 0

    Returns:
        result: OptimizeResult with x, fun, nit, nfev, success, status,
                message and final_simplex
    """
    x0 = np.asarray(x0, dtype=float).ravel()
    n = len(x0)
    steps = np.full(n, 0.1) if steps is None else np.asarray(steps, dtype=float)
    nfev = 0

    def f(x):
        nonlocal nfev
        nfev += 1
        return float(fun(x, *args))

    vertices = np.empty((n + 1, n))
    values = np.empty(n + 1)
    vertices[0] = x0
    values[0] = f(x0)
    for i in range(n):
        vertices[i + 1] = x0
        vertices[i + 1, i] += steps[i]
        values[i + 1] = f(vertices[i + 1])

    if not np.all(np.isfinite(values)):
        raise ValueError("Objective is not finite on the initial simplex")

    def move_corner(coeff, corner):
        # coeff -1 reflects, -2 expands, 0.5 contracts the corner about the others' centroid
        others = np.delete(vertices, corner, axis=0).mean(axis=0)
        x = others - coeff * (others - vertices[corner])
        return x, f(x)

    size = _simplex_size(vertices)
    if trace is not None:
        lo = int(np.argmin(values))
        trace(0, vertices[lo].copy(), values[lo], size)

    status, message = 1, "Maximum number of iterations reached"
    iteration = 0
    while iteration < maxiter:
        iteration += 1

        # ========== RANK VERTICES ==========
        hi = lo = 0
        dhi = dlo = values[0]
        s_hi, ds_hi = 1, values[1]
        for i in range(1, n + 1):
            val = values[i]
            if val < dlo:
                dlo, lo = val, i
            elif val > dhi:
                ds_hi, s_hi = dhi, hi
                dhi, hi = val, i
            elif val > ds_hi:
                ds_hi, s_hi = val, i

        # ========== REFLECT WORST VERTEX ==========
        xr, fr = move_corner(-1.0, hi)
        if np.isfinite(fr) and fr < values[lo]:
            xe, fe = move_corner(-2.0, hi)
            if np.isfinite(fe) and fe < values[lo]:
                vertices[hi], values[hi] = xe, fe
            else:
                vertices[hi], values[hi] = xr, fr
        elif not np.isfinite(fr) or fr > values[s_hi]:
            if np.isfinite(fr) and fr <= values[hi]:
                vertices[hi], values[hi] = xr, fr
            xc, fc = move_corner(0.5, hi)
            if np.isfinite(fc) and fc <= values[hi]:
                vertices[hi], values[hi] = xc, fc
            else:
                # Shrink toward the best vertex
                for i in range(n + 1):
                    if i != lo:
                        vertices[i] = 0.5 * (vertices[i] + vertices[lo])
                        values[i] = f(vertices[i])
                if not np.all(np.isfinite(values)):
                    status, message = 2, "Objective not finite after contracting the simplex"
                    break
        else:
            vertices[hi], values[hi] = xr, fr

        size = _simplex_size(vertices)
        lo = int(np.argmin(values))
        if trace is not None:
            trace(iteration, vertices[lo].copy(), values[lo], size)

        if size < size_tol:
            status, message = 0, "Simplex size below tolerance"
            break

    lo = int(np.nanargmin(values))
    return OptimizeResult(
        x=vertices[lo].copy(),
        fun=float(values[lo]),
        nit=iteration,
        nfev=nfev,
        success=status == 0,
        status=status,
        message=message,
        size=size,
        final_simplex=(vertices.copy(), values.copy()),
    )


class SimplexFitter:
    """
    Drives the simplex minimization of an objective and records its path.

    The objective is any callable f(x) -> float; if it has a `names`
    attribute, those label the parameters in the report and the trace.
    """

    def __init__(self, objective: Callable, steps: Sequence[float], tol: float = 1.0e-4,
                 itermax: int = 100, trace_sink: Optional[Callable] = None,
                 verbose: bool = False):
        """
        Args:
            objective: Function to minimize
            steps: Initial simplex displacement per parameter
            tol: Simplex size at which the fit has converged
            itermax: Maximum number of iterations
            trace_sink: Called with a FitStep after every iteration
            verbose: Print the iteration table
        """
        self.objective = objective
        self.steps = np.asarray(steps, dtype=float)
        self.tol = tol
        self.itermax = itermax
        self.trace_sink = trace_sink
        self.verbose = verbose
        self.names = tuple(getattr(objective, 'names', ())) or \
            tuple(f"x{i}" for i in range(len(self.steps)))
        self.trace: List[FitStep] = []

    def _record(self, iteration, x, fval, size):
        step = FitStep(iteration=iteration, params=tuple(float(v) for v in x), mse=float(fval), size=float(size))
        self.trace.append(step)
        if self.verbose:
            values = "\t".join(f"{v:f}" for v in step.params)
            print(f"{iteration}\t{values}\t{step.mse:g}\t{step.size:g}")
        if self.trace_sink is not None:
            self.trace_sink(step)

    def fit(self, x0: Sequence[float]) -> FitResult:
        """
        Minimize the objective starting from x0.

        Returns:
            result: FitResult with the best vertex; converged is False if
                    itermax was reached first
        """
        x0 = np.asarray(x0, dtype=float)
        if len(x0) != len(self.steps):
            raise ValueError(f"{len(x0)} start values but {len(self.steps)} steps")
        self.trace = []

        if self.verbose:
            print("\n" + "=" * 70)
            print(f"Simplex fit of {', '.join(self.names)}")
            print("=" * 70)
            print("Iter\t" + "\t".join(f"{name}_fit" for name in self.names) + "\tmse      \tfit size")

        res = minimize(
            self.objective, x0, method=minimize_nmsimplex,
            options=dict(steps=self.steps, size_tol=self.tol, maxiter=self.itermax, trace=self._record),
        )

        result = FitResult(
            params=res.x,
            mse=res.fun,
            iterations=res.nit,
            converged=bool(res.success),
            size=res.size,
            names=self.names,
            trace=list(self.trace),
            nfev=res.nfev,
            message=res.message,
        )

        if not result.converged:
            logger.warning("Failed to converge, status = %d, # iterations = %d: %s",
                           res.status, res.nit, res.message)

        if self.verbose:
            mark = "✓ Converged" if result.converged else "✗ Did not converge"
            print(f"\n{mark} after {result.iterations} iterations ({result.nfev} evaluations)")
            for name, value in zip(self.names, result.params):
                print(f"  Fitted {name} = {value:f}")
            if 'theta' in self.names:
                print(f"  (lambda = {result.tortuosity:f})")
        return result


class PathTraceWriter:
    """Writes the simplex path as a tab-separated text table."""

    def __init__(self, path: str, names: Sequence[str], title: str = "Simplex path"):
        self.path = path
        self.names = tuple(names)
        with open(self.path, 'w') as f:
            f.write(f"\n{title}:\n")
            f.write("Iter\t" + "\t".join(f"{name}_fit" for name in self.names) + "\tmse      \tfit size\n")

    def __call__(self, step: FitStep):
        values = "\t".join(f"{v:f}" for v in step.params)
        with open(self.path, 'a') as f:
            f.write(f"{step.iteration}\t{values}\t{step.mse:g}\t{step.size:g}\n")

    def finish(self, result: FitResult):
        """Append the non-convergence warning, if any."""
        if not result.converged:
            with open(self.path, 'a') as f:
                f.write(f"Warning: failed to converge, # iterations = {result.iterations}\n")


# ========== DATA ==========
def load_target_curve(path: str) -> Tuple[np.ndarray, np.ndarray]:
    """
    Read a measured curve from a data file.

    The file may start with a parameter header (lines of `key = value` and
    `#` comments) terminated by blank lines. The next line is the column
    header; after it each row holds time and concentration as the first two
    whitespace-separated columns.

    Args:
        path: Data file

    Returns:
        t, c: Time (s) and concentration arrays
    """
    with open(path, 'r') as f:
        lines = f.read().splitlines()

    start = 0
    for i, line in enumerate(lines):
        if len(line.strip()) == 0:
            start = i + 1
            break
    # The header may end with more than one blank line
    if start > 0:
        while start < len(lines) and len(lines[start].strip()) == 0:
            start += 1
    # Skip the column header
    start += 1
    if start > len(lines):
        raise ValueError(f"No data found in {path}")

    df = pd.read_csv(path, sep=r'\s+', header=None, skiprows=start, usecols=[0, 1],
                     comment='#', skip_blank_lines=True)
    if len(df) == 0:
        raise ValueError(f"No data found in {path}")
    df.columns = ['t', 'c']
    return df['t'].to_numpy(dtype=float), df['c'].to_numpy(dtype=float)
