"""
Tests for the layer steppers: interface matching, axis condition, clearance
and the one-layer/three-layer equivalence for identical layers.
"""
import numpy as np
import pytest

from layer_model import (
    AxisSymmetryCondition, ConfigurationError, CylinderGrid, InterfaceBoundaryConditions, Layer, LayerSet,
    LayerSolver, SingleLayerStepper, SubFieldPool, ThreeLayerStepper, make_stepper,
)
from tests.conftest import make_config


class TestSubFieldPool:

    def test_buffer_shapes(self, small_grid):
        pool = SubFieldPool(small_grid)
        assert pool.bottom.shape == (21, 21)
        assert pool.middle.shape == (4, 21)
        assert pool.top.shape == (19, 21)
        assert pool.delta.shape == small_grid.shape

    def test_reset_zeroes_buffers(self, small_grid):
        pool = SubFieldPool(small_grid)
        for buf in pool.buffers():
            buf.fill(3.0)
        pool.reset()
        assert all(not np.any(buf) for buf in pool.buffers())


class TestInterfaces:

    def test_equal_layers_average_rows(self, small_grid, homogeneous_layer):
        layers = LayerSet(homogeneous_layer, homogeneous_layer, homogeneous_layer)
        bc = InterfaceBoundaryConditions(small_grid, layers)
        c = np.random.default_rng(1).random(small_grid.shape)
        cb_lower = np.empty(small_grid.nr + 1)
        cb_upper = np.empty(small_grid.nr + 1)

        bc.interface_values(c, cb_lower, cb_upper)

        np.testing.assert_allclose(cb_lower, 0.5 * (c[19] + c[20]))
        np.testing.assert_allclose(cb_upper, 0.5 * (c[21] + c[22]))

    def test_flux_weighted_value(self, small_grid):
        layers = LayerSet(Layer(0.2, 0.4), Layer(0.1, 0.2), Layer(0.2, 0.4))
        bc = InterfaceBoundaryConditions(small_grid, layers)
        c = np.zeros(small_grid.shape)
        c[19] = 1.0
        cb_lower = np.empty(small_grid.nr + 1)
        cb_upper = np.empty(small_grid.nr + 1)

        bc.interface_values(c, cb_lower, cb_upper)

        # Weights D*·alpha are 0.08 and 0.02 (times D_free)
        np.testing.assert_allclose(cb_lower, 0.8)
        np.testing.assert_allclose(cb_upper, 0.0)

    def test_split_fills_ghost_rows(self, small_grid, homogeneous_layer):
        layers = LayerSet(homogeneous_layer, homogeneous_layer, homogeneous_layer)
        bc = InterfaceBoundaryConditions(small_grid, layers)
        pool = SubFieldPool(small_grid)
        c = np.random.default_rng(2).random(small_grid.shape)

        bc.split(c, pool.bottom, pool.middle, pool.top, pool.cb_lower, pool.cb_upper)

        np.testing.assert_array_equal(pool.bottom[:20], c[:20])
        np.testing.assert_array_equal(pool.middle[1:-1], c[20:22])
        np.testing.assert_array_equal(pool.top[1:], c[22:])
        # For equal layers the ghost rows continue the neighbouring layer
        np.testing.assert_allclose(pool.bottom[20], c[20], atol=1e-12)
        np.testing.assert_allclose(pool.middle[0], c[19], atol=1e-12)
        np.testing.assert_allclose(pool.middle[-1], c[22], atol=1e-12)
        np.testing.assert_allclose(pool.top[0], c[21], atol=1e-12)

    def test_recompose_drops_ghost_rows(self, small_grid, homogeneous_layer):
        layers = LayerSet(homogeneous_layer, homogeneous_layer, homogeneous_layer)
        bc = InterfaceBoundaryConditions(small_grid, layers)
        pool = SubFieldPool(small_grid)
        c = np.random.default_rng(3).random(small_grid.shape)
        bc.split(c, pool.bottom, pool.middle, pool.top, pool.cb_lower, pool.cb_upper)

        out = np.empty_like(c)
        bc.recompose(out, pool.bottom, pool.middle, pool.top,
                     np.zeros_like(pool.bottom), np.zeros_like(pool.middle), np.zeros_like(pool.top))

        np.testing.assert_array_equal(out, c)


def test_axis_condition_copies_column():
    c = np.arange(12.0).reshape(3, 4)
    AxisSymmetryCondition()(c)
    np.testing.assert_array_equal(c[:, 0], c[:, 2])


class TestSteppers:

    def test_make_stepper_variants(self, small_grid):
        assert isinstance(make_stepper(small_grid), ThreeLayerStepper)
        assert isinstance(make_stepper(small_grid, nolayer=True), SingleLayerStepper)

    def test_single_layer_uses_bottom_parameters(self, small_grid):
        layers = LayerSet(Layer(0.2, 0.4, 0.01), Layer(0.1, 0.1, 0.05), Layer(0.3, 0.6, 0.02))
        stepper = make_stepper(small_grid, layers, nolayer=True)
        s1 = 0.4 * small_grid.dfree * small_grid.dt / small_grid.dr ** 2
        assert stepper.s1 == pytest.approx(s1)
        assert stepper.clearance == pytest.approx((1 - 0.01 * small_grid.dt,) * 3)

    def test_step_keeps_axis_invariant(self, small_grid):
        stepper = make_stepper(small_grid)
        c = small_grid.source.copy()
        for k in range(small_grid.nds, small_grid.nds + 20):
            stepper.step(c, small_grid.t[k])
            np.testing.assert_array_equal(c[:, 0], c[:, 2])

    def test_source_added_only_while_on(self, small_grid):
        stepper = make_stepper(small_grid)
        t_off = small_grid.delay + small_grid.duration

        c = np.zeros(small_grid.shape)
        stepper.step(c, t_off - small_grid.dt)
        assert c[small_grid.isource, small_grid.jsource] > 0

        c = np.zeros(small_grid.shape)
        stepper.step(c, t_off)
        assert not np.any(c)

    def test_clearance_scales_layers(self, small_grid):
        kappa = 0.1
        layers = LayerSet(Layer(0.218, 0.447, kappa), Layer(0.2, 0.4, 0.0), Layer(0.218, 0.447, 0.0))
        stepper = make_stepper(small_grid, layers)
        c = np.ones(small_grid.shape)
        stepper._clear(c)

        assert np.all(c[:20] == pytest.approx(1.0 - kappa * small_grid.dt))
        assert np.all(c[20:] == 1.0)


def test_single_and_three_layer_agree_for_identical_layers(small_grid, homogeneous_layer):
    layers = LayerSet(homogeneous_layer, homogeneous_layer, homogeneous_layer)
    single = LayerSolver(small_grid, layers=layers, nolayer=True).solve()
    three = LayerSolver(small_grid, layers=layers, nolayer=False).solve()

    assert single.peak > 0
    np.testing.assert_allclose(three.probe, single.probe, rtol=1e-9, atol=1e-12 * single.peak)
    np.testing.assert_allclose(three.final_field, single.final_field,
                               rtol=1e-9, atol=1e-12 * np.max(single.final_field))


def test_clearance_lowers_curve(small_grid):
    kappa = 0.05
    cleared = small_grid.layers.with_middle(Layer(0.2, 0.4, kappa), global_kappa=True)
    base = LayerSolver(small_grid).solve()
    with_clearance = LayerSolver(small_grid, layers=cleared).solve()

    assert with_clearance.peak < base.peak
    assert np.all(with_clearance.probe <= base.probe + 1e-15)


def test_three_layer_stepper_requires_layer_rows():
    grid = CylinderGrid(make_config(lz1=-5.0e-6, lz2=5.0e-6, nolayer=True))
    with pytest.raises(ConfigurationError):
        make_stepper(grid, nolayer=False)
