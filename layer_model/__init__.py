"""All imports for the three-layer diffusion model"""

import os
import json
import logging
import numpy as np
import pandas as pd
from dataclasses import dataclass, field, asdict, replace
from typing import Callable, List, Optional, Sequence, Tuple
import matplotlib.pyplot as plt
from datetime import datetime
from scipy.special import erfc
from scipy.optimize import OptimizeResult, minimize

from layer_model.simulation_properties import (
    FARADAY, ConfigurationError, Layer, LayerSet, ExtraSource,
    SimulationConfig, CylinderGrid,
)
from layer_model.laplacian import CylindricalLaplacian
from layer_model.boundary_conditions import InterfaceBoundaryConditions, AxisSymmetryCondition
from layer_model.diffusion import SubFieldPool, LayerStepper, SingleLayerStepper, ThreeLayerStepper, make_stepper
from layer_model.snapshots import mirror_full_field, RawSnapshotSink, SnapshotSchedule
from layer_model.homogeneous import homogeneous_curve, HomogeneousModel
from layer_model.layer_solver import SimulationResult, LayerSolver, save_run, load_run, visualize
from layer_model.fitting import (
    FitBounds, FitSettings, FitStep, FitResult, PathTraceWriter,
    resampled_mse, box_penalty, ApparentParameterObjective, LayerFitObjective,
    SimplexFitter, minimize_nmsimplex, load_target_curve,
)
import layer_model.diagnostics as diag
