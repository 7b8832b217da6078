"""Concentration field snapshots during a run"""

from layer_model import *

logger = logging.getLogger(__name__)


def mirror_full_field(c: np.ndarray) -> np.ndarray:
    """
    Expand the half-domain field into a field symmetric about the axis.

    Column 1 of c (r = 0) becomes the center column; the result has
    2·nr - 1 columns covering -rmax < r < rmax.

    Args:
        c: Concentration field (nz, nr+1)

    Returns:
        full: Mirrored field (nz, 2·nr - 1)
    """
    nr = c.shape[1] - 1
    return np.hstack((c[:, nr:0:-1], c[:, 2:]))


class RawSnapshotSink:
    """
    Writes snapshots as raw float64 images plus a text info file.

    Files:
        <base>.<t>ms.raw   row-major doubles, nz x (2·nr - 1), t in ms since source start
        <base>.info.txt    image dimensions and one line per image with its min/max
    """

    def __init__(self, basename: str):
        self.basename = basename
        self.info_path = f"{basename}.info.txt"
        self.files: List[str] = []
        self._started = False

    def _start(self, shape):
        nz, width = shape
        with open(self.info_path, 'w') as f:
            f.write("Information about the images:\n"
                    f"\tImage dimensions: {width} x {nz}\n"
                    "\tPixels are 64-bit floating point (doubles)\n")
        self._started = True

    def __call__(self, index: int, time: float, full: np.ndarray, vmin: float, vmax: float):
        """
        Write one snapshot.

        Args:
            index: Snapshot counter, starting at 0
            time: Time since source start (s)
            full: Mirrored field (nz, 2·nr - 1)
            vmin, vmax: Extremes of the half-domain field

        Raises:
            OSError: The image or info file cannot be written
        """
        if not self._started:
            self._start(full.shape)

        ms = int(np.sign(time) * np.floor(abs(time) * 1000.0 + 0.5))
        filename = f"{self.basename}.{ms}ms.raw"
        np.ascontiguousarray(full, dtype=np.float64).tofile(filename)
        self.files.append(filename)

        with open(self.info_path, 'a') as f:
            f.write(f"Image file #{index}: {filename}: max = {vmax:f}, min = {vmin:f}\n")


class SnapshotSchedule:
    """Decides when to take a snapshot and hands it to the sink."""

    def __init__(self, spacing: float, dt: float, start_step: int,
                 sink: Optional[Callable] = None):
        self.spacing = spacing
        self.dt = dt
        self.start_step = start_step
        self.sink = sink
        self.counter = 0
        self.failures = 0

    @property
    def enabled(self) -> bool:
        return self.sink is not None and self.spacing > 0

    def __call__(self, k: int, c: np.ndarray):
        """Take a snapshot at step k if one is due."""
        if not self.enabled:
            return
        time = (k - self.start_step) * self.dt
        if time < self.counter * self.spacing:
            return

        full = mirror_full_field(c)
        try:
            self.sink(self.counter, time, full, float(c.min()), float(c.max()))
        except OSError as exc:
            self.failures += 1
            logger.warning("Snapshot %d at t = %g s not written: %s", self.counter, time, exc)
        self.counter += 1
