# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""
Synthetic prediction grid: one row per category, day of year and hour, with
weather covariates taken from smooth per-category surfaces.
"""

import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from .features import CATEGORY_ORDER, add_derived_features, order_categories
from .gam_estimator import (
    Family,
    GamCyclicConfig,
    GamEstimator,
    GamEstimatorConfig,
    GamSolverConfig,
    GamSplineConfig,
)

logger = logging.getLogger(__name__)

HOURS = np.arange(24)


@dataclass
class GridCovariateConfig:
    """
    Smoothing of one weather covariate for the prediction grid.

    Parameters
    ----------
    column : str
        Covariate column in the training data.
    by_hour : bool, default=False
        If True, a cyclic smooth of the hour is added to the smooth of the
        day of year.
    n_knots : int, default=6
        Spline knots over the day-of-year range, capped at the number of
        distinct days observed for the category.
    num_harmonics : int, default=2
        Harmonics of the hour smooth (only if ``by_hour``).
    reg_weight : float, default=1.0e-4
        Regularization weight of both smooths.
    """
    column: str
    by_hour: bool = False
    n_knots: int = 6
    num_harmonics: int = 2
    reg_weight: float = 1.0e-4


def default_covariates() -> list[GridCovariateConfig]:
    return [
        GridCovariateConfig('pressure'),
        GridCovariateConfig('temp', by_hour=True),
        GridCovariateConfig('wind', by_hour=True),
        GridCovariateConfig('precip'),
    ]


@dataclass
class GridConfig:
    """
    Configuration for ``build_prediction_grid``.

    Parameters
    ----------
    category_column, day_column, hour_column : str
        Column names of the age/sex category, day of year and solar hour.
    covariates : list of GridCovariateConfig
        Weather covariates to smooth onto the grid.
    category_order : tuple, default=CATEGORY_ORDER
        Canonical order of the category levels in the output.
    max_day_power : int, default=4
        Highest power of the scaled day of year; at least 3.
    legacy_cos3 : bool, default=False
        Compute ``cos3`` with a sine, as some older fits did.
    solver_config : GamSolverConfig
        Solver settings for the smoothers.
    """
    category_column: str = 'agesex'
    day_column: str = 'yday'
    hour_column: str = 'hour'
    covariates: list[GridCovariateConfig] = field(default_factory=default_covariates)
    category_order: tuple = CATEGORY_ORDER
    max_day_power: int = 4
    legacy_cos3: bool = False
    solver_config: GamSolverConfig = field(default_factory=lambda: GamSolverConfig(fast=True))


def _fit_smoother(data: pd.DataFrame, covariate: GridCovariateConfig, config: GridConfig,
                  n_days: int) -> GamEstimator:
    terms = [GamSplineConfig(config.day_column, n_knots=min(covariate.n_knots, n_days),
                             reg_weight=covariate.reg_weight)]
    if covariate.by_hour:
        terms.append(GamCyclicConfig(config.hour_column, period=24,
                                     num_harmonics=covariate.num_harmonics,
                                     reg_weight=covariate.reg_weight))
    columns = [config.day_column, config.hour_column, covariate.column]
    train = data[columns].dropna()
    estimator = GamEstimator(GamEstimatorConfig(
        terms=terms,
        family=Family.GAUSSIAN,
        solver_config=config.solver_config,
    ))
    return estimator.fit(train, train[covariate.column].to_numpy())


def _category_grid(data: pd.DataFrame, category, config: GridConfig) -> pd.DataFrame:
    days_observed = data[config.day_column].dropna()
    n_days = days_observed.nunique()
    if n_days < 2:
        raise ValueError(
            f"Category {category!r} has {n_days} distinct day(s) of year; "
            "at least two are needed to smooth covariates"
        )
    days = np.arange(int(np.floor(days_observed.min())), int(np.ceil(days_observed.max())) + 1)
    grid = pd.DataFrame({
        config.category_column: category,
        config.day_column: np.repeat(days, len(HOURS)),
        config.hour_column: np.tile(HOURS, len(days)),
    })
    for covariate in config.covariates:
        try:
            smoother = _fit_smoother(data, covariate, config, n_days)
        except ValueError as e:
            raise ValueError(f"Smoothing {covariate.column!r} for category {category!r} failed: {e}") from e
        grid[covariate.column] = smoother.predict(grid)
    logger.debug("Grid for %r: days %d-%d, %d rows", category, days[0], days[-1], len(grid))
    return grid


def build_prediction_grid(data: pd.DataFrame, categories=None, config: GridConfig | None = None) -> pd.DataFrame:
    """
    Build the prediction grid from training data.

    Each category gets one row per integer day of year between its observed
    minimum and maximum and per hour 0-23. Weather covariates are evaluated
    from independent smooths fitted to that category's rows; derived
    cyclical, polynomial and wind x temperature columns are then added.

    Parameters
    ----------
    data : DataFrame
        Training observations.
    categories : sequence or None, default=None
        Category levels to include. If None, every level in ``data``.
    config : GridConfig or None, default=None
        Grid settings; defaults to ``GridConfig()``.

    Returns
    -------
    grid : DataFrame
        Rows ordered by category (canonical order, as an ordered
        Categorical), day and hour.

    Raises
    ------
    ValueError
        If columns or categories are missing, a category has fewer than two
        distinct days, or a smoother fails.
    """
    config = config or GridConfig()
    if config.max_day_power < 3:
        raise ValueError(f"max_day_power must be at least 3, got {config.max_day_power}")
    required = [config.category_column, config.day_column, config.hour_column]
    required += [c.column for c in config.covariates]
    missing = [c for c in required if c not in data.columns]
    if missing:
        raise ValueError(f"Training data is missing columns: {missing}")

    observed = set(data[config.category_column].dropna().unique())
    if categories is None:
        categories = list(observed)
    absent = [c for c in categories if c not in observed]
    if absent:
        raise ValueError(f"Categories not present in the training data: {absent}")
    if not categories:
        raise ValueError("No categories to build a grid for")
    ordered = order_categories(categories, config.category_order)

    grids = []
    for category in ordered:
        subset = data[data[config.category_column] == category]
        grids.append(_category_grid(subset, category, config))
    grid = pd.concat(grids, ignore_index=True)
    grid[config.category_column] = pd.Categorical(
        grid[config.category_column], categories=ordered, ordered=True
    )
    grid = add_derived_features(
        grid,
        hour_column=config.hour_column,
        day_column=config.day_column,
        max_day_power=config.max_day_power,
        legacy_cos3=config.legacy_cos3,
    )
    grid = grid.sort_values([config.category_column, config.day_column, config.hour_column],
                            kind='stable', ignore_index=True)
    logger.info("Built prediction grid with %d rows for categories %s", len(grid), ordered)
    return grid
