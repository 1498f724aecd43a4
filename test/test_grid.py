# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""
Test the prediction grid builder.
"""

import numpy as np
import pandas as pd
import pytest

from haulout_compare import GridConfig, GridCovariateConfig, build_prediction_grid


@pytest.fixture(scope="module")
def grid(telemetry):
    return build_prediction_grid(telemetry)


def test_day_range_matches_observed_range(telemetry, grid):
    for category, rows in grid.groupby('agesex', observed=True):
        observed = telemetry.loc[telemetry['agesex'] == category, 'yday']
        assert rows['yday'].min() == observed.min()
        assert rows['yday'].max() == observed.max()
        n_days = observed.max() - observed.min() + 1
        assert len(rows) == n_days * 24
        assert set(rows['hour']) == set(range(24))
        assert not rows.duplicated(['yday', 'hour']).any()


def test_categories_follow_canonical_order(telemetry):
    grid = build_prediction_grid(telemetry, categories=['YOY', 'AF'])
    assert list(grid['agesex'].cat.categories) == ['AF', 'YOY']
    assert grid['agesex'].cat.ordered
    assert list(pd.unique(grid['agesex'].astype(str))) == ['AF', 'YOY']


def test_grid_columns_and_derived_features(grid):
    for column in ['pressure', 'temp', 'wind', 'precip', 'windtemp',
                   'sin1', 'cos1', 'sin2', 'cos2', 'sin3', 'cos3',
                   'day', 'day2', 'day3', 'day4']:
        assert column in grid.columns
        assert grid[column].notna().all()
    np.testing.assert_allclose(grid['windtemp'], grid['wind'] * grid['temp'])
    np.testing.assert_allclose(grid['day'], (grid['yday'] - 120) / 10)
    np.testing.assert_allclose(grid['cos3'], np.cos(np.pi * grid['hour'] / 4))


def test_smoothed_covariates_are_plausible(telemetry, grid):
    af_grid = grid[grid['agesex'] == 'AF']
    af_data = telemetry[telemetry['agesex'] == 'AF']
    # temperature has a diurnal cycle in the training data; the smooth keeps it
    by_hour = af_grid.groupby('hour')['temp'].mean()
    assert by_hour.idxmax() in range(12, 19)
    assert af_grid['pressure'].between(af_data['pressure'].min() - 5, af_data['pressure'].max() + 5).all()
    # pressure is smoothed on day only, so it is constant within a day
    assert (af_grid.groupby('yday')['pressure'].nunique() == 1).all()


def test_grid_is_deterministic(telemetry, grid):
    again = build_prediction_grid(telemetry)
    pd.testing.assert_frame_equal(grid, again)


def test_legacy_cos3(telemetry):
    config = GridConfig(legacy_cos3=True, max_day_power=3)
    grid = build_prediction_grid(telemetry, categories=['AM'], config=config)
    np.testing.assert_allclose(grid['cos3'], grid['sin3'])
    assert 'day4' not in grid.columns


def test_grid_failures(telemetry):
    with pytest.raises(ValueError, match="not present"):
        build_prediction_grid(telemetry, categories=['AF', 'XX'])

    single_day = telemetry[(telemetry['agesex'] != 'SA') | (telemetry['yday'] == 106)]
    with pytest.raises(ValueError, match="distinct day"):
        build_prediction_grid(single_day, categories=['SA'])

    with pytest.raises(ValueError, match="missing columns"):
        build_prediction_grid(telemetry.drop(columns='precip'))

    with pytest.raises(ValueError, match="at least 3"):
        build_prediction_grid(telemetry, config=GridConfig(max_day_power=2))


def test_custom_covariates(telemetry):
    config = GridConfig(covariates=[GridCovariateConfig('temp', by_hour=True, n_knots=3)])
    grid = build_prediction_grid(telemetry, categories=['AF'], config=config)
    assert 'pressure' not in grid.columns
    assert 'windtemp' not in grid.columns
    assert grid['temp'].notna().all()
