"""
End-to-end tests of the time loop: probe curve shape, stability regimes,
snapshots and run persistence.
"""
import logging
import os

import matplotlib.pyplot as plt
import numpy as np
import pytest

from layer_model import (
    CylinderGrid, LayerSolver, RawSnapshotSink, load_run, make_stepper, mirror_full_field, save_run,
    visualize,
)
import layer_model.diagnostics as diag
from tests.conftest import make_config


class TestProbeCurve:

    def test_zero_before_delay(self, small_grid, small_result):
        assert small_grid.nds > 0
        assert not np.any(small_result.probe[:small_grid.nds])

    def test_first_sample_is_initial_field(self, small_grid, small_result):
        nds = small_grid.nds
        assert small_result.probe[nds] == small_grid.source[small_grid.iprobe, small_grid.jprobe]

    def test_rises_while_source_on(self, small_grid, small_result):
        nds, ns = small_grid.nds, small_grid.ns
        rising = np.diff(small_result.probe[nds:nds + ns + 1])
        assert np.all(rising >= -1e-12 * small_result.peak)
        assert small_result.probe[nds + ns] > 0

    def test_peak_and_decay(self, small_grid, small_result):
        probe = small_result.probe
        assert small_grid.delay < small_result.t_peak <= small_grid.delay + small_grid.duration + 2.0
        assert probe[-1] < 0.5 * small_result.peak
        assert probe[-1] > 0

    def test_field_stays_non_negative(self, small_result):
        c = small_result.final_field
        assert np.all(np.isfinite(c))
        assert c.min() >= -1e-12 * c.max()
        np.testing.assert_array_equal(c[:, 0], c[:, 2])

    def test_field_bounded_at_every_step(self, small_grid):
        stepper = make_stepper(small_grid)
        c = small_grid.source.copy()
        source_peak = np.max(small_grid.source)

        for k in range(small_grid.nds, small_grid.nt):
            stepper.step(c, small_grid.t[k])
            assert np.isfinite(c).all(), f"non-finite field after step {k}"
            # Explicit scheme with positive weights: at most one injection per step
            assert c.max() <= (small_grid.ns + 1) * source_peak
            assert c.max() <= 10.0 * source_peak
            assert c.min() >= -1e-12 * source_peak

    def test_peak_below_steady_state(self, small_grid, small_result):
        dfree = small_grid.dfree
        # Least mobile layer gives the highest steady-state level
        weight = min(layer.alpha * layer.dstar(dfree) for layer in small_grid.layers)
        steady = small_grid.config.source_amplitude / (4.0 * np.pi * weight * small_grid.spdist)

        assert small_result.peak < steady
        assert small_result.peak > 0.1 * steady

    def test_result_metadata(self, small_grid, small_result):
        assert len(small_result.t) == small_grid.nt
        assert len(small_result.probe) == small_grid.nt
        assert small_result.layers == small_grid.layers
        assert small_result.nolayer is False

    def test_repeat_runs_identical(self, small_grid):
        solver = LayerSolver(small_grid)
        first = solver.solve().probe.copy()
        second = solver.solve().probe
        np.testing.assert_array_equal(first, second)


class TestStability:

    def test_unstable_time_step_diverges(self, caplog):
        with caplog.at_level(logging.WARNING):
            grid = CylinderGrid(make_config(nt_scale=0.05))
            result = LayerSolver(grid).solve()

        assert grid.von_neumann_ratio > 1.0
        c = result.final_field
        assert not np.all(np.isfinite(c)) or (
            c.min() < 0 and np.max(np.abs(c)) > 1e3 * np.max(grid.source)
        )
        assert "von Neumann" in caplog.text

    def test_diagnostics_flag_unstable_step(self):
        grid = CylinderGrid(make_config(nt_scale=0.5))
        result = LayerSolver(grid).solve()
        issues = diag.run_diagnostics(grid, result)
        assert any("von Neumann" in issue for issue in issues)

    def test_diagnostics_for_stable_run(self, small_grid, small_result):
        issues = diag.run_diagnostics(small_grid, small_result)
        assert not any("von Neumann" in issue or "diverged" in issue for issue in issues)
        assert diag.axis_asymmetry(small_result.final_field) == 0.0
        lower, upper = diag.interface_flux_jump(small_grid, small_result.final_field)
        assert lower < 1e-10 and upper < 1e-10
        assert 0 < diag.total_amount(small_grid, small_result.final_field) < diag.injected_amount(small_grid)


class TestSnapshots:

    def test_mirror_full_field(self):
        c = np.array([[9.0, 1.0, 2.0, 3.0],
                      [9.0, 4.0, 5.0, 6.0]])
        full = mirror_full_field(c)
        np.testing.assert_array_equal(full, [[3.0, 2.0, 1.0, 2.0, 3.0],
                                             [6.0, 5.0, 4.0, 5.0, 6.0]])

    def test_snapshots_on_schedule(self):
        grid = CylinderGrid(make_config(image_spacing=1.0))
        calls = []

        def sink(index, time, full, vmin, vmax):
            calls.append((index, time, full.copy(), vmin, vmax))

        result = LayerSolver(grid).solve(sink=sink)

        expected = int(np.floor((grid.nt - 1 - grid.nds) * grid.dt / 1.0)) + 1
        assert result.snapshots == expected == len(calls)
        assert [call[0] for call in calls] == list(range(expected))
        index, time, full, vmin, vmax = calls[0]
        assert time == 0.0
        assert full.shape == (grid.nz, 2 * grid.nr - 1)
        # The first snapshot is the source pattern
        assert vmax == pytest.approx(np.max(grid.source))
        assert full[grid.isource, grid.nr - 1] == pytest.approx(vmax)
        for n, call in enumerate(calls):
            assert call[1] >= n * 1.0

    def test_no_snapshots_when_disabled(self, small_grid):
        calls = []
        result = LayerSolver(small_grid).solve(sink=lambda *args: calls.append(args))
        assert calls == []
        assert result.snapshots == 0

    def test_failed_snapshot_is_not_fatal(self, caplog):
        grid = CylinderGrid(make_config(image_spacing=5.0))

        def failing_sink(*args):
            raise OSError("disk full")

        with caplog.at_level(logging.WARNING):
            result = LayerSolver(grid).solve(sink=failing_sink)
        reference = LayerSolver(grid).solve()

        assert result.snapshots > 0
        assert result.snapshot_failures == result.snapshots
        np.testing.assert_array_equal(result.probe, reference.probe)
        assert "not written" in caplog.text

    def test_raw_snapshot_files(self, tmp_path):
        grid = CylinderGrid(make_config(image_spacing=5.0))
        base = str(tmp_path / "conc")
        sink = RawSnapshotSink(base)
        result = LayerSolver(grid).solve(sink=sink)

        assert len(sink.files) == result.snapshots
        assert sink.files[0] == f"{base}.0ms.raw"
        for filename in sink.files:
            assert os.path.getsize(filename) == grid.nz * (2 * grid.nr - 1) * 8

        image = np.fromfile(sink.files[0], dtype=np.float64).reshape(grid.nz, 2 * grid.nr - 1)
        np.testing.assert_array_equal(image, mirror_full_field(grid.source))

        with open(f"{base}.info.txt") as f:
            lines = f.read().splitlines()
        assert lines[1] == f"\tImage dimensions: {2 * grid.nr - 1} x {grid.nz}"
        assert len(lines) == 3 + result.snapshots
        assert lines[3].startswith(f"Image file #0: {base}.0ms.raw: max = ")


class TestPersistence:

    def test_save_and_load(self, small_grid, small_result, tmp_path):
        reference = 0.5 * small_result.probe
        path = save_run(small_result, output_dir=str(tmp_path), run_name="run1",
                        grid=small_grid, reference=reference)

        for name in ("config.json", "grid.json", "probe.csv"):
            assert os.path.exists(os.path.join(path, name))

        loaded = load_run(path)
        assert loaded.config == small_result.config
        assert loaded.layers == small_result.layers
        assert loaded.nolayer == small_result.nolayer
        np.testing.assert_allclose(loaded.t, small_result.t, rtol=1e-12)
        np.testing.assert_allclose(loaded.probe, small_result.probe, rtol=1e-12)

    def test_unwritable_output_dir_raises(self, small_result, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        with pytest.raises(OSError):
            save_run(small_result, output_dir=str(blocker), run_name="run1")

    def test_load_missing_run(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_run(str(tmp_path / "missing"))

    def test_visualize_saves_figure(self, small_result, tmp_path):
        filename = str(tmp_path / "curve.png")
        fig = visualize(small_result, reference=small_result.probe, filename=filename)
        assert os.path.exists(filename)
        plt.close(fig)
