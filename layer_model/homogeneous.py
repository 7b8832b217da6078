"""
Diffusion curve for an isotropic, homogeneous environment

For a point source of strength Q (mol/s) switched on at t = delay, the
concentration at distance d is

    c(t) = Q / (4π α D* d) · erfc( d / (2 sqrt(D* (t - delay))) )

and after the source turns off at delay + duration the same term evaluated
at t - delay - duration is subtracted (superposition of an equal negative
source). Clearance is not included.
"""

from layer_model import *


def _erfc_term(t: np.ndarray, distance: float, dstar: float) -> np.ndarray:
    """erfc(d / (2 sqrt(D* t))) for t > 0, 0 elsewhere."""
    out = np.zeros_like(t)
    positive = t > 0
    out[positive] = erfc(distance / (2.0 * np.sqrt(dstar * t[positive])))
    return out


def homogeneous_curve(t, distance: float, amplitude: float, delay: float, duration: float,
                      alpha: float, theta: float, dfree: float) -> np.ndarray:
    """
    Calculate the concentration curve at the probe for a homogeneous volume.

    Args:
        t: Time points (s)
        distance: Source-probe distance (m)
        amplitude: Source strength (mol/s)
        delay: Time before the source turns on (s)
        duration: Time the source stays on (s)
        alpha: Extracellular volume fraction
        theta: Permeability
        dfree: Free diffusion coefficient (m²/s)

    Returns:
        c: Concentration at each time point (mol/m³)
    """
    t = np.asarray(t, dtype=float)
    dstar = theta * dfree
    A = amplitude / (4.0 * np.pi * alpha * dstar * distance)

    c = A * _erfc_term(t - delay, distance, dstar)
    off = t > delay + duration
    if np.any(off):
        c[off] -= A * _erfc_term(t[off] - delay - duration, distance, dstar)
    return c


@dataclass
class HomogeneousModel:
    """
    Homogeneous model for a fixed source and probe, evaluated for (alpha, theta).

    Attributes:
        t: Time points (s)
        distance: Source-probe distance (m)
        amplitude: Source strength (mol/s)
        delay: Source delay (s)
        duration: Source duration (s)
        dfree: Free diffusion coefficient (m²/s)
    """
    t: np.ndarray
    distance: float
    amplitude: float
    delay: float
    duration: float
    dfree: float

    @classmethod
    def from_grid(cls, grid) -> 'HomogeneousModel':
        """Model with the source, probe and time axis of a CylinderGrid."""
        return cls(
            t=grid.t,
            distance=grid.spdist,
            amplitude=grid.config.source_amplitude,
            delay=grid.delay,
            duration=grid.duration,
            dfree=grid.dfree,
        )

    def __call__(self, alpha: float, theta: float) -> np.ndarray:
        return homogeneous_curve(self.t, self.distance, self.amplitude, self.delay,
                                 self.duration, alpha, theta, self.dfree)
