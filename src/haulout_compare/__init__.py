# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""
GLMM vs penalized GAM comparison for telemetry haul-out data.

This package provides:
- A penalized GAM estimator (binomial or Gaussian) with linear, factor,
  spline, cyclic and random-effect terms and optional AR(1) structure
- A synthetic prediction grid with smoothed weather covariates per category
- Linear-predictor forecasts with 95% confidence bounds for a persisted GLMM
  and for the GAM, built the same way so they can be compared
- Coefficient, forecast and AIC comparison tables
"""

from .compare import aic_table, compare_coefficients, compare_predictions, summarize_comparison
from .features import (
    CATEGORY_ORDER,
    add_derived_features,
    ar_start_from_blocks,
    cyclical_features,
    day_polynomial,
    order_categories,
    validate_blocks,
)
from .forecast import Z_95, add_confidence_bounds, forecast_gam, forecast_glmm, logistic, logit
from .gam_estimator import (
    # Main estimator class
    GamEstimator,
    # Configuration classes
    GamEstimatorConfig,
    GamLinearConfig,
    GamFactorConfig,
    GamSplineConfig,
    GamCyclicConfig,
    GamRandomEffectConfig,
    GamArConfig,
    GamSolverConfig,
    # Enums
    Family,
    # Utility functions
    estimate_rho,
)
from .glmm import GlmmArtifact
from .grid import GridConfig, GridCovariateConfig, build_prediction_grid

__all__ = [
    "GamEstimator",
    "GamEstimatorConfig",
    "GamLinearConfig",
    "GamFactorConfig",
    "GamSplineConfig",
    "GamCyclicConfig",
    "GamRandomEffectConfig",
    "GamArConfig",
    "GamSolverConfig",
    "Family",
    "estimate_rho",
    "GlmmArtifact",
    "GridConfig",
    "GridCovariateConfig",
    "build_prediction_grid",
    "CATEGORY_ORDER",
    "add_derived_features",
    "ar_start_from_blocks",
    "cyclical_features",
    "day_polynomial",
    "order_categories",
    "validate_blocks",
    "Z_95",
    "add_confidence_bounds",
    "forecast_gam",
    "forecast_glmm",
    "logistic",
    "logit",
    "aic_table",
    "compare_coefficients",
    "compare_predictions",
    "summarize_comparison",
]

__version__ = "0.1.0"
