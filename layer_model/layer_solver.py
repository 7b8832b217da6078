"""Solver for the Three-Layer Diffusion Model - time loop, persistence and plotting"""

from layer_model import *

logger = logging.getLogger(__name__)


@dataclass
class SimulationResult:
    """
    Output of one simulation run.

    Attributes:
        t: Time points (s), length nt
        probe: Concentration at the probe (mol/m³), length nt
        layers: Layer parameters used for the run
        nolayer: True if the one-layer model was used
        config: Configuration the grid was built from
        final_field: Concentration field after the last step (nz, nr+1)
        snapshots: Number of snapshots handed to the sink
        snapshot_failures: Number of snapshots the sink failed to write
    """
    t: np.ndarray
    probe: np.ndarray
    layers: LayerSet
    nolayer: bool
    config: SimulationConfig
    final_field: Optional[np.ndarray] = None
    snapshots: int = 0
    snapshot_failures: int = 0

    @property
    def peak(self) -> float:
        return float(np.max(self.probe))

    @property
    def t_peak(self) -> float:
        return float(self.t[int(np.argmax(self.probe))])


class LayerSolver:
    """
    Explicit finite-difference solver for diffusion from a point source
    through three stacked layers in a cylinder.

    Per time step k = nds..nt-1:
    1. Take a snapshot if one is due
    2. Record the probe concentration at t[k]
    3. Advance the field to t[k+1] (diffusion, source, clearance, axis condition)

    The probe reads 0 before the source delay. The field starts equal to the
    source pattern.
    """

    def __init__(self, grid: CylinderGrid, layers: Optional[LayerSet] = None,
                 nolayer: Optional[bool] = None, verbose: bool = False,
                 pool: Optional[SubFieldPool] = None):
        """
        Initialize solver for a validated grid.

        Args:
            grid: CylinderGrid object
            layers: Layer parameters (default: the grid's); the source field
                    stays the one computed from the grid's layers
            nolayer: One-layer model (default: the grid's setting)
            verbose: Print a banner and progress
            pool: Work buffers shared between runs on the same grid
        """
        self.grid = grid
        self.layers = grid.layers if layers is None else layers
        self.nolayer = grid.nolayer if nolayer is None else nolayer
        self.verbose = verbose
        self.pool = pool if pool is not None else SubFieldPool(grid)

    def solve(self, sink: Optional[Callable] = None) -> SimulationResult:
        """
        Run the simulation.

        Args:
            sink: Snapshot sink, called as sink(index, time, full_field, vmin, vmax)
                  every image_spacing seconds after the source starts

        Returns:
            result: SimulationResult with the probe curve

        Raises:
            ConfigurationError: Source delay not shorter than the experiment
        """
        grid = self.grid
        nt, nds = grid.nt, grid.nds
        if nds >= nt:
            raise ConfigurationError(f"nds={nds}, nt={nt}. Delay start should be < total expt time")

        self.pool.reset()
        stepper = make_stepper(grid, self.layers, self.nolayer, self.pool)
        schedule = SnapshotSchedule(grid.config.image_spacing, grid.dt, nds, sink)

        if self.verbose:
            print("\n" + "=" * 70)
            print(f"Starting time loop ({'one-layer' if self.nolayer else 'three-layer'} model)")
            print("=" * 70)

        c = grid.source.copy()
        probe = np.zeros(nt)
        report_every = max(1, (nt - nds) // 10)

        for k in range(nds, nt):
            schedule(k, c)
            probe[k] = c[grid.iprobe, grid.jprobe]
            stepper.step(c, grid.t[k])

            if self.verbose and (k - nds) % report_every == 0:
                print(f"Step {k:6d}  t = {grid.t[k]:8.3f} s  probe = {probe[k]:.6e}  "
                      f"c = [{c.min():.3e}, {c.max():.3e}]")

        if not np.all(np.isfinite(c)):
            logger.warning("Non-finite concentrations after %d steps; von Neumann ratio %.3f",
                           nt, grid.von_neumann_ratio)

        result = SimulationResult(
            t=grid.t.copy(),
            probe=probe,
            layers=self.layers,
            nolayer=self.nolayer,
            config=grid.config,
            final_field=c,
            snapshots=schedule.counter,
            snapshot_failures=schedule.failures,
        )

        if self.verbose:
            print(f"\n✓ Finished {nt - nds} steps")
            print(f"  Peak probe concentration: {result.peak:.6e} mol/m³ at t = {result.t_peak:.3f} s")
            if schedule.enabled:
                print(f"  Snapshots: {schedule.counter} ({schedule.failures} failed)")

        return result


# ========== PERSISTENCE ==========
def _config_from_dict(config_dict: dict) -> SimulationConfig:
    config_dict = dict(config_dict)
    for name in ('bottom', 'middle', 'top'):
        config_dict[name] = Layer(**config_dict[name])
    config_dict['additional_sources'] = tuple(
        ExtraSource(**s) for s in config_dict.get('additional_sources', ())
    )
    return SimulationConfig(**config_dict)


def save_run(result: SimulationResult, output_dir: str = 'Saved Runs',
             run_name: Optional[str] = None, grid: Optional[CylinderGrid] = None,
             reference: Optional[np.ndarray] = None) -> str:
    """
    Save a simulation run for later analysis.

    Creates a directory with:
    - config.json: Simulation configuration and the layers actually used
    - grid.json: Discretized geometry and time stepping
    - probe.csv: Time and probe concentration (plus the reference curve, if given)

    Args:
        result: SimulationResult to save
        output_dir: Directory to save runs (created if it doesn't exist)
        run_name: Optional name for this run (default: timestamp)
        grid: CylinderGrid of the run (rebuilt from the configuration if not given)
        reference: Optional curve of the same length, e.g. the characteristic curve

    Returns:
        save_path: Path to saved run directory

    Raises:
        OSError: The output directory cannot be created
    """
    if run_name is None:
        run_name = datetime.now().strftime("run_%Y%m%d_%H%M%S")
    save_path = os.path.join(output_dir, run_name)
    os.makedirs(save_path, exist_ok=True)

    print(f"\nSaving run to: {save_path}")

    # ========== SAVE CONFIGURATION ==========
    config_dict = {
        'config': asdict(result.config),
        'layers': asdict(result.layers),
        'nolayer': result.nolayer,
    }
    with open(os.path.join(save_path, 'config.json'), 'w') as f:
        json.dump(config_dict, f, indent=2)

    # ========== SAVE GRID ==========
    if grid is None:
        grid = CylinderGrid(result.config)
    grid_dict = {
        'nr': grid.nr, 'nz': grid.nz,
        'dr': grid.dr, 'dz': grid.dz,
        'rmax': grid.rmax, 'zmax': grid.zmax,
        'coord_shift': grid.coord_shift,
        'iz1': grid.iz1, 'iz2': grid.iz2,
        'isource': grid.isource, 'jsource': grid.jsource,
        'iprobe': grid.iprobe, 'jprobe': grid.jprobe,
        'spdist': grid.spdist,
        'dt': grid.dt, 'nt': grid.nt, 'nds': grid.nds, 'ns': grid.ns,
        'tmax': grid.tmax, 'delay': grid.delay, 'duration': grid.duration,
        'von_neumann_ratio': grid.von_neumann_ratio,
    }
    with open(os.path.join(save_path, 'grid.json'), 'w') as f:
        json.dump(grid_dict, f, indent=2)

    # ========== SAVE PROBE CURVE ==========
    probe_df = pd.DataFrame({'t': result.t, 'concentration': result.probe})
    if reference is not None:
        probe_df['reference'] = reference
    probe_df.to_csv(os.path.join(save_path, 'probe.csv'), index=False)
    print(f"  ✓ Saved probe curve ({len(probe_df)} points)")

    print(f"\n✓ Run saved successfully to: {save_path}\n")
    return save_path


def load_run(run_path: str, visualize_after_load: bool = False) -> SimulationResult:
    """
    Load a previously saved simulation run.

    Args:
        run_path: Path to saved run directory
        visualize_after_load: If True, plot the probe curve

    Returns:
        result: SimulationResult without the final field
    """
    print(f"\nLoading run from: {run_path}")

    if not os.path.exists(run_path):
        raise FileNotFoundError(f"Run directory not found: {run_path}")

    config_path = os.path.join(run_path, 'config.json')
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    with open(config_path, 'r') as f:
        saved = json.load(f)

    config = _config_from_dict(saved['config'])
    layers = LayerSet(**{name: Layer(**values) for name, values in saved['layers'].items()})
    print(f"  ✓ Loaded configuration")

    probe_path = os.path.join(run_path, 'probe.csv')
    if not os.path.exists(probe_path):
        raise FileNotFoundError(f"Probe file not found: {probe_path}")
    probe_df = pd.read_csv(probe_path)
    print(f"  ✓ Loaded probe curve ({len(probe_df)} points)")

    result = SimulationResult(
        t=probe_df['t'].to_numpy(),
        probe=probe_df['concentration'].to_numpy(),
        layers=layers,
        nolayer=saved['nolayer'],
        config=config,
    )

    if visualize_after_load:
        print("Generating visualization...")
        reference = probe_df['reference'].to_numpy() if 'reference' in probe_df else None
        visualize(result, reference=reference)

    return result


# ========== PLOTTING ==========
def visualize(result: SimulationResult, reference: Optional[np.ndarray] = None,
              target: Optional[Tuple[np.ndarray, np.ndarray]] = None,
              filename: Optional[str] = None, show: bool = False):
    """
    Plot the probe curve.

    Args:
        result: SimulationResult to plot
        reference: Optional curve on the same time axis (e.g. characteristic curve)
        target: Optional (time, concentration) data the model was fitted to
        filename: Save the figure to this path
        show: Call plt.show()

    Returns:
        fig: Matplotlib figure
    """
    fig, ax = plt.subplots(figsize=(8, 5))

    label = 'One-layer model' if result.nolayer else 'Three-layer model'
    ax.plot(result.t, result.probe, 'b-', linewidth=1.5, label=label)
    if reference is not None:
        ax.plot(result.t, np.asarray(reference), 'r--', linewidth=1.2, label='Homogeneous fit')
    if target is not None:
        t_data, c_data = target
        ax.plot(t_data, np.asarray(c_data), 'k.', markersize=2, label='Data')

    config = result.config
    ax.axvspan(config.delay, config.delay + config.duration, color='orange', alpha=0.1, label='Source on')
    ax.set_title('Concentration at Probe')
    ax.set_xlabel('Time (s)')
    ax.set_ylabel('Concentration (mM)')
    ax.grid(True, alpha=0.3)
    ax.legend(loc='upper right', fontsize=8, framealpha=0.9)

    fig.tight_layout()
    if filename is not None:
        fig.savefig(filename, dpi=150, bbox_inches='tight')
    if show:
        plt.show()
    return fig
