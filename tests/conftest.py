"""
Pytest configuration and shared fixtures for the layered diffusion tests.

Grids are kept coarse (dr = dz = 20 microns) so a full run takes a few
hundred steps.
"""
import matplotlib
matplotlib.use("Agg")

import numpy as np
import pytest

from layer_model import CylinderGrid, Layer, LayerSolver, SimulationConfig


def make_config(**overrides):
    """
    Small cylinder: 40 x 20 points, 800 x 400 microns.

    Layer rows: bottom 0..19, middle 20..21, top 22..39. The source sits at
    row 20 (middle layer) on the axis, the probe 60 microns above it at row 23.
    """
    values = dict(
        nr=20, nz=40,
        rmax=400.0e-6, zmax=800.0e-6,
        lz1=-25.0e-6, lz2=25.0e-6,
        tmax=20.0, delay=1.0, duration=5.0,
        probe_z=60.0e-6,
    )
    values.update(overrides)
    return SimulationConfig(**values)


@pytest.fixture
def small_config():
    return make_config()


@pytest.fixture
def small_grid(small_config):
    return CylinderGrid(small_config)


@pytest.fixture
def small_result(small_grid):
    return LayerSolver(small_grid).solve()


@pytest.fixture
def unit_invr():
    """1/r lookup for dr = 1 and 6 columns."""
    invr = np.zeros(6)
    invr[0] = 1.0
    invr[2:] = 1.0 / (np.arange(2, 6) - 1.0)
    return invr


@pytest.fixture
def homogeneous_layer():
    return Layer(alpha=0.218, theta=0.447, kappa=0.0)
