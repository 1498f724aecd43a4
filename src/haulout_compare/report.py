# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""
One-shot GLMM vs GAM comparison.

Usage:
    haulout-compare --glmm glmm.joblib --data haulout.csv --output-dir out/
    haulout-compare --glmm glmm.joblib --data haulout.csv --output-dir out/ --estimate-rho
"""

import argparse
import logging
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path

import pandas as pd

from .compare import aic_table, compare_coefficients, compare_predictions, summarize_comparison
from .features import CYCLICAL_PERIODS, add_derived_features, ar_start_from_blocks, validate_blocks
from .forecast import forecast_gam, forecast_glmm
from .gam_estimator import (
    GamArConfig,
    GamCyclicConfig,
    GamEstimator,
    GamEstimatorConfig,
    GamFactorConfig,
    GamLinearConfig,
    GamRandomEffectConfig,
    GamSolverConfig,
    GamSplineConfig,
    estimate_rho,
)
from .glmm import GlmmArtifact
from .grid import GridConfig, build_prediction_grid

logger = logging.getLogger(__name__)

WEATHER_TERMS = ['temp', 'wind', 'pressure', 'precip', 'windtemp']
CYCLICAL_TERMS = [f'{kind}{ix}' for ix in range(1, len(CYCLICAL_PERIODS) + 1) for kind in ('sin', 'cos')]


class ReportStepError(RuntimeError):
    """A pipeline step failed; ``step`` names it and the cause is chained."""
    def __init__(self, step: str, cause: Exception):
        super().__init__(f"{step} failed: {cause}")
        self.step = step


@dataclass
class GamSpec:
    name: str
    config: GamEstimatorConfig


def default_gam_specs(category_column='agesex', subject_column='subject',
                      solver_config: GamSolverConfig | None = None) -> list[GamSpec]:
    """
    The GAMs fitted by default.

    ``parametric`` mirrors the GLMM fixed effects with a random-effect smooth
    per subject; ``parametric_day4`` adds the quartic day term; ``smooth``
    replaces the polynomial and harmonic terms with smooths of day and hour.
    """
    solver_config = solver_config or GamSolverConfig()
    factor = GamFactorConfig(category_column)
    weather = [GamLinearConfig(c) for c in WEATHER_TERMS]
    cyclical = [GamLinearConfig(c) for c in CYCLICAL_TERMS]
    day3 = [GamLinearConfig(c) for c in ('day', 'day2', 'day3')]
    subject = GamRandomEffectConfig(subject_column)
    return [
        GamSpec('parametric', GamEstimatorConfig(
            terms=[factor, *weather, *cyclical, *day3, subject],
            solver_config=solver_config)),
        GamSpec('parametric_day4', GamEstimatorConfig(
            terms=[factor, *weather, *cyclical, *day3, GamLinearConfig('day4'), subject],
            solver_config=solver_config)),
        GamSpec('smooth', GamEstimatorConfig(
            terms=[factor, *weather,
                   GamCyclicConfig('hour', period=24, num_harmonics=3),
                   GamSplineConfig('yday', n_knots=8),
                   subject],
            solver_config=solver_config)),
    ]


@dataclass
class ReportConfig:
    """
    Configuration for ``run_report``.

    Parameters
    ----------
    glmm_path : Path
        Persisted GlmmArtifact (joblib).
    data_path : Path
        Training data, CSV or parquet, rows in time order within blocks.
    output_dir : Path
        Directory for the CSV outputs; created if missing.
    categories : list or None, default=None
        Categories on the prediction grid; all observed ones if None.
    grid_config : GridConfig
        Prediction grid settings.
    gam_specs : list of GamSpec or None, default=None
        GAMs to fit; ``default_gam_specs()`` if None.
    rho : float or None, default=None
        AR(1) correlation applied to every GAM. Ignored if ``estimate_rho``.
    estimate_rho : bool, default=False
        Estimate rho from an independent fit of the first GAM, then refit
        every GAM with it.
    primary_model : str or None, default=None
        GAM used for the forecast comparison; the lowest AIC if None.
    exclude : tuple of str, default=('s(subject)',)
        GAM terms excluded from the population-level forecast.
    term_map : dict, default={}
        GLMM coefficient term to design column renames, added to the
        artifact's own ``term_map``. Used for the GLMM forecast and the
        coefficient table.
    """
    glmm_path: Path
    data_path: Path
    output_dir: Path
    categories: list | None = None
    grid_config: GridConfig = field(default_factory=GridConfig)
    gam_specs: list[GamSpec] | None = None
    rho: float | None = None
    estimate_rho: bool = False
    primary_model: str | None = None
    exclude: tuple = ('s(subject)',)
    term_map: dict = field(default_factory=dict)
    response_column: str = 'dry'
    subject_column: str = 'subject'
    block_column: str = 'block'


@dataclass
class ReportResult:
    grid: pd.DataFrame
    glmm_forecast: pd.DataFrame
    gam_forecast: pd.DataFrame
    coefficients: pd.DataFrame
    predictions: pd.DataFrame
    summary: pd.DataFrame
    aic: pd.DataFrame
    models: dict[str, GamEstimator]
    rho: float | None


@contextmanager
def _step(name):
    logger.info("Starting %s", name)
    try:
        yield
    except ReportStepError:
        raise
    except Exception as e:
        raise ReportStepError(name, e) from e


def load_dataset(path) -> pd.DataFrame:
    path = Path(path)
    if path.suffix == '.parquet':
        return pd.read_parquet(path)
    if path.suffix == '.csv':
        return pd.read_csv(path)
    raise ValueError(f"Unsupported dataset format {path.suffix!r}; use .csv or .parquet")


def load_term_map(path) -> dict[str, str]:
    """
    Read a two-column CSV of GLMM coefficient term and design column name.
    """
    table = pd.read_csv(path)
    if table.shape[1] != 2:
        raise ValueError(f"Term map {path} must have two columns, got {list(table.columns)}")
    return dict(zip(table.iloc[:, 0].astype(str), table.iloc[:, 1].astype(str)))


def _fit_models(specs, data, y, ar_start, rho):
    models = {}
    for spec in specs:
        gam_config = spec.config
        if rho is not None:
            gam_config = replace(gam_config, ar_config=GamArConfig(rho=rho))
        models[spec.name] = GamEstimator(gam_config).fit(data, y, ar_start=ar_start)
    return models


def run_report(config: ReportConfig) -> ReportResult:
    """
    Run every step of the comparison and write the tables to ``output_dir``.

    Raises
    ------
    ReportStepError
        Naming the first step that failed; later steps are not run.
    """
    grid_config = config.grid_config
    with _step('data loading'):
        artifact = GlmmArtifact.load(config.glmm_path)
        if config.term_map:
            artifact = replace(artifact, term_map={**artifact.term_map, **config.term_map})
        data = load_dataset(config.data_path)
        derived = CYCLICAL_TERMS + ['day', 'day2', 'day3', 'day4', 'windtemp']
        if not set(derived) <= set(data.columns):
            data = add_derived_features(
                data,
                hour_column=grid_config.hour_column,
                day_column=grid_config.day_column,
                max_day_power=grid_config.max_day_power,
                legacy_cos3=grid_config.legacy_cos3,
            )
        if config.response_column not in data.columns:
            raise ValueError(f"Response column {config.response_column!r} not in the data")
        y = data[config.response_column].to_numpy(dtype=float)

    with _step('block validation'):
        validate_blocks(data, block_column=config.block_column, subject_column=config.subject_column,
                        time_columns=(grid_config.day_column, grid_config.hour_column))
        ar_start = ar_start_from_blocks(data[config.block_column])

    with _step('GAM fitting'):
        specs = config.gam_specs or default_gam_specs(
            category_column=grid_config.category_column, subject_column=config.subject_column)
        rho = config.rho
        if config.estimate_rho:
            first = _fit_models(specs[:1], data, y, ar_start, None)[specs[0].name]
            rho = estimate_rho(first, data, y, ar_start)
            logger.info("Estimated rho %.3f", rho)
        models = _fit_models(specs, data, y, ar_start, rho)
        aic = aic_table(models)
        primary = config.primary_model or aic.index[0]
        if primary not in models:
            raise ValueError(f"Unknown primary model {primary!r}; fitted {list(models)}")

    with _step('grid construction'):
        grid = build_prediction_grid(data, config.categories, grid_config)

    with _step('GLMM prediction'):
        glmm_forecast = forecast_glmm(artifact, grid)

    with _step('GAM prediction'):
        gam_forecast = forecast_gam(models[primary], grid, exclude=config.exclude)

    with _step('comparison'):
        keys = (grid_config.category_column, grid_config.day_column, grid_config.hour_column)
        coefficients = compare_coefficients(artifact, models[primary])
        predictions = compare_predictions(glmm_forecast, gam_forecast, keys=keys)
        summary = summarize_comparison(predictions, by=grid_config.category_column)

    with _step('writing outputs'):
        out = Path(config.output_dir)
        out.mkdir(parents=True, exist_ok=True)
        grid.to_csv(out / 'prediction_grid.csv', index=False)
        predictions.to_csv(out / 'prediction_comparison.csv', index=False)
        coefficients.to_csv(out / 'coefficient_comparison.csv')
        summary.to_csv(out / 'comparison_summary.csv')
        aic.to_csv(out / 'gam_aic.csv')
        for name, model in models.items():
            model.coef_table().to_csv(out / f'gam_{name}_coefficients.csv')
            model.smooth_table().to_csv(out / f'gam_{name}_smooths.csv')

    return ReportResult(
        grid=grid,
        glmm_forecast=glmm_forecast,
        gam_forecast=gam_forecast,
        coefficients=coefficients,
        predictions=predictions,
        summary=summary,
        aic=aic,
        models=models,
        rho=rho,
    )


def main(argv=None):
    parser = argparse.ArgumentParser(description="Compare a persisted GLMM with penalized GAMs")
    parser.add_argument("--glmm", type=Path, required=True, help="Persisted GLMM artifact (joblib)")
    parser.add_argument("--data", type=Path, required=True, help="Training data (.csv or .parquet)")
    parser.add_argument("--output-dir", type=Path, required=True, help="Directory for CSV outputs")
    parser.add_argument("--categories", nargs="+", default=None, help="Categories on the prediction grid")
    parser.add_argument("--rho", type=float, default=None, help="AR(1) correlation for the GAMs")
    parser.add_argument("--estimate-rho", action="store_true", help="Estimate rho from an independent fit")
    parser.add_argument("--primary-model", default=None, help="GAM used for the forecast comparison")
    parser.add_argument("--term-map", type=Path, default=None,
                        help="CSV of GLMM term and design column name pairs")
    parser.add_argument("--legacy-cos3", action="store_true", help="Compute cos3 with a sine, as older fits did")
    parser.add_argument("--fast", action="store_true", help="QR-compressed solver problems in the GAM fits")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    grid_config = GridConfig(legacy_cos3=args.legacy_cos3)
    try:
        term_map = load_term_map(args.term_map) if args.term_map else {}
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    config = ReportConfig(
        glmm_path=args.glmm,
        data_path=args.data,
        output_dir=args.output_dir,
        categories=args.categories,
        grid_config=grid_config,
        gam_specs=default_gam_specs(solver_config=GamSolverConfig(fast=args.fast)),
        rho=args.rho,
        estimate_rho=args.estimate_rho,
        primary_model=args.primary_model,
        term_map=term_map,
    )
    try:
        result = run_report(config)
    except ReportStepError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print("\nGAM models by AIC:")
    print(result.aic.to_string())
    print("\nCoefficients (GLMM vs GAM):")
    print(result.coefficients.to_string())
    print("\nForecast comparison by category:")
    print(result.summary.to_string())
    print(f"\nOutputs written to {config.output_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
