# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""
Test derived features and block helpers.
"""

import numpy as np
import pandas as pd
import pytest

from haulout_compare import (
    add_derived_features,
    ar_start_from_blocks,
    cyclical_features,
    day_polynomial,
    order_categories,
    validate_blocks,
)


def test_cyclical_features_match_definitions():
    hour = np.arange(24)
    features = cyclical_features(hour)
    np.testing.assert_allclose(features['sin1'], np.sin(np.pi * hour / 12))
    np.testing.assert_allclose(features['cos1'], np.cos(np.pi * hour / 12))
    np.testing.assert_allclose(features['sin2'], np.sin(np.pi * hour / 6))
    np.testing.assert_allclose(features['cos2'], np.cos(np.pi * hour / 6))
    np.testing.assert_allclose(features['sin3'], np.sin(np.pi * hour / 4))
    np.testing.assert_allclose(features['cos3'], np.cos(np.pi * hour / 4))
    assert list(features.columns) == ['sin1', 'cos1', 'sin2', 'cos2', 'sin3', 'cos3']


def test_legacy_cos3_uses_sine():
    hour = np.arange(24)
    legacy = cyclical_features(hour, legacy_cos3=True)
    np.testing.assert_allclose(legacy['cos3'], legacy['sin3'])
    np.testing.assert_allclose(legacy['cos2'], cyclical_features(hour)['cos2'])


def test_day_polynomial():
    features = day_polynomial(np.array([120, 130, 140]))
    np.testing.assert_allclose(features['day'], [0, 1, 2])
    np.testing.assert_allclose(features['day2'], [0, 1, 4])
    np.testing.assert_allclose(features['day3'], [0, 1, 8])
    np.testing.assert_allclose(features['day4'], [0, 1, 16])

    assert list(day_polynomial([120], max_power=3).columns) == ['day', 'day2', 'day3']
    with pytest.raises(ValueError):
        day_polynomial([120], max_power=0)


def test_add_derived_features_keeps_input_and_index():
    data = pd.DataFrame({'yday': [110, 111], 'hour': [0, 6], 'wind': [2.0, 3.0], 'temp': [5.0, -1.0]},
                        index=[10, 11])
    out = add_derived_features(data)
    assert 'sin1' not in data.columns
    assert list(out.index) == [10, 11]
    np.testing.assert_allclose(out['windtemp'], [10.0, -3.0])
    np.testing.assert_allclose(out['sin1'], [0.0, 1.0], atol=1e-12)
    np.testing.assert_allclose(out['day'], [-1.0, -0.9])

    with pytest.raises(ValueError, match="Missing columns"):
        add_derived_features(data.drop(columns='hour'))


def test_order_categories():
    assert order_categories(['YOY', 'AF', 'XX', 'AM', 'AF']) == ['AF', 'AM', 'YOY', 'XX']
    assert order_categories(['b', 'a'], order=()) == ['a', 'b']


def test_ar_start_from_blocks():
    starts = ar_start_from_blocks([1, 1, 2, 2, 2, 3])
    np.testing.assert_array_equal(starts, [True, False, True, False, False, True])
    assert ar_start_from_blocks([]).shape == (0,)


def test_validate_blocks(telemetry):
    validate_blocks(telemetry)

    interleaved = pd.DataFrame({'block': ['a', 'a', 'b', 'a'], 'subject': ['s'] * 4})
    with pytest.raises(ValueError, match="not contiguous"):
        validate_blocks(interleaved)

    shared = pd.DataFrame({'block': ['a', 'a', 'b'], 'subject': ['s', 't', 't']})
    with pytest.raises(ValueError, match="span subjects"):
        validate_blocks(shared)

    with pytest.raises(ValueError, match="Missing columns"):
        validate_blocks(interleaved.drop(columns='subject'))


def test_validate_blocks_rejects_rows_out_of_time_order(telemetry):
    block = telemetry[telemetry['block'] == 'S00-0']
    shuffled = pd.concat([block.iloc[[1, 0]], block.iloc[2:], telemetry[telemetry['block'] != 'S00-0']])
    with pytest.raises(ValueError, match="time order.*S00-0"):
        validate_blocks(shuffled)
    validate_blocks(shuffled, time_columns=None)

    # time may restart at a block boundary
    restart = pd.DataFrame({'block': ['a', 'a', 'b', 'b'], 'subject': ['s', 's', 't', 't'],
                            'yday': [101, 101, 100, 100], 'hour': [0, 1, 5, 6]})
    validate_blocks(restart)


def test_ar_start_from_series_is_writable():
    blocks = pd.Series(['a', 'a', 'b'])
    starts = ar_start_from_blocks(blocks)
    assert starts.flags.writeable
    np.testing.assert_array_equal(starts, [True, False, True])
