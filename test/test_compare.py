# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""
Test the GLMM vs GAM comparison tables.
"""

import numpy as np
import pandas as pd
import pytest

from haulout_compare import (
    GamEstimator,
    GamEstimatorConfig,
    GamFactorConfig,
    GamLinearConfig,
    GamRandomEffectConfig,
    GlmmArtifact,
    aic_table,
    build_prediction_grid,
    compare_coefficients,
    compare_predictions,
    forecast_gam,
    forecast_glmm,
    summarize_comparison,
)


@pytest.fixture(scope="module")
def glmm():
    terms = ['(Intercept)', 'agesex[T.AM]', 'agesex[T.SA]', 'agesex[T.YOY]', 'temp', 'wind', 'sin1', 'cos1']
    coefficients = pd.DataFrame({
        'estimate': [-0.3, 0.5, 0.1, -0.4, 0.1, 0.0, 1.2, 0.05],
        'std_error': [0.2, 0.25, 0.25, 0.25, 0.02, np.nan, 0.1, 0.1],
    }, index=terms)
    covariance = np.diag(coefficients['std_error'].fillna(0.0) ** 2)
    return GlmmArtifact(coefficients, covariance, "dry ~ agesex + temp + sin1 + cos1",
                        factor_levels={'agesex': ['AF', 'AM', 'SA', 'YOY']})


@pytest.fixture(scope="module")
def forecasts(telemetry, glmm, fitted_gam):
    grid = build_prediction_grid(telemetry, categories=['AF', 'AM'])
    return forecast_glmm(glmm, grid), forecast_gam(fitted_gam, grid)


def test_compare_coefficients(glmm, fitted_gam):
    table = compare_coefficients(glmm, fitted_gam)
    assert list(table.index) == ['Intercept', 'agesex[T.AM]', 'agesex[T.SA]', 'agesex[T.YOY]',
                                 'temp', 'sin1', 'cos1']
    assert table.index.name == 'term'
    assert table[['glmm_estimate', 'gam_estimate']].notna().all().all()

    gam = fitted_gam.coef_table()
    assert table.loc['temp', 'gam_estimate'] == gam.loc['temp', 'estimate']
    assert table.loc['Intercept', 'glmm_estimate'] == -0.3
    np.testing.assert_allclose(table['estimate_diff'], table['gam_estimate'] - table['glmm_estimate'])
    np.testing.assert_allclose(table['se_ratio'], table['gam_std_error'] / table['glmm_std_error'])


def test_compare_coefficients_keeps_unmatched_terms(glmm, fitted_gam):
    table = compare_coefficients(glmm, fitted_gam, term_map={'sin1': 'hour_sin'})
    assert 'hour_sin' in table.index
    assert np.isnan(table.loc['hour_sin', 'gam_estimate'])
    assert np.isnan(table.loc['sin1', 'glmm_estimate'])
    assert list(table.index[-1:]) == ['sin1']


def test_compare_predictions(forecasts):
    glmm_frame, gam_frame = forecasts
    table = compare_predictions(glmm_frame, gam_frame)
    assert len(table) == len(glmm_frame)
    np.testing.assert_allclose(table['prob_diff'], table['gam_prob'] - table['glmm_prob'])
    assert np.all(table['glmm_width'] > 0)
    assert np.all(table['gam_width'] > 0)
    assert np.all(table['se_ratio'] > 0)

    summary = summarize_comparison(table)
    assert list(summary.index) == ['AF', 'AM']
    assert summary['n'].sum() == len(table)
    assert np.all(summary['max_abs_prob_diff'] >= summary['mean_abs_prob_diff'])


def test_compare_predictions_requires_same_grid(forecasts):
    glmm_frame, gam_frame = forecasts
    with pytest.raises(ValueError, match="same grid"):
        compare_predictions(glmm_frame, gam_frame.iloc[1:])


def test_aic_table(telemetry, fitted_gam):
    smaller = GamEstimator(GamEstimatorConfig(terms=[
        GamFactorConfig('agesex'),
        GamLinearConfig('temp'),
        GamRandomEffectConfig('subject'),
    ])).fit(telemetry, telemetry['dry'])
    table = aic_table({'smaller': smaller, 'full': fitted_gam})
    assert list(table.columns) == ['edf', 'deviance', 'aic', 'delta_aic']
    assert table['delta_aic'].iloc[0] == 0
    assert np.all(np.diff(table['aic']) >= 0)
    # the diel cycle in the simulated data is strong, so the harmonics win
    assert table.index[0] == 'full'

    with pytest.raises(ValueError):
        aic_table({})


def test_compare_coefficients_maps_r_factor_names(glmm, fitted_gam):
    r_names = ['(Intercept)', 'agesexAM', 'agesexSA', 'agesexYOY', 'temp', 'wind', 'sin1', 'cos1']
    r_glmm = GlmmArtifact(glmm.coefficients.set_axis(r_names, axis=0), glmm.covariance, glmm.formula,
                          factor_levels=glmm.factor_levels)
    pd.testing.assert_frame_equal(compare_coefficients(r_glmm, fitted_gam), compare_coefficients(glmm, fitted_gam))
