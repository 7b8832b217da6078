"""Main script to run the three-layer diffusion model"""

import sys

from layer_model import *


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    config = SimulationConfig(
        nr=100, nz=200,
        rmax=1000.0e-6, zmax=2000.0e-6,
        lz1=-25.0e-6, lz2=25.0e-6,
        middle=Layer(alpha=0.2, theta=0.4, kappa=0.0),
        tmax=150.0, delay=10.0, duration=50.0,
        current=80.0e-9, transport_number=0.35,
        probe_z=120.0e-6,
    )

    try:
        grid = CylinderGrid(config, verbose=True)
        result = LayerSolver(grid, verbose=True).solve()
    except ConfigurationError as exc:
        print(f"3layer: {exc}", file=sys.stderr)
        sys.exit(1)

    # Apparent parameters: homogeneous model fitted to the layered curve
    settings = FitSettings(fit_kappa=False)
    model = HomogeneousModel.from_grid(grid)
    objective = ApparentParameterObjective(result.probe, model)
    fit = SimplexFitter(objective, settings.steps(), tol=settings.fit_tol,
                        itermax=settings.itermax, verbose=True).fit(settings.start())
    characteristic = model(fit.alpha, fit.theta)

    diag.run_diagnostics(grid, result)
    save_run(result, grid=grid, reference=characteristic)
    visualize(result, reference=characteristic, show=True)

    # Fitting the middle layer to measured data:
    # t_data, c_data = load_target_curve('data/experiment.dat')
    # objective = LayerFitObjective(grid, c_data, FitSettings())
    # SimplexFitter(objective, FitSettings().steps(), verbose=True).fit(FitSettings().start())


if __name__ == "__main__":
    main()
