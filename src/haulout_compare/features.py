# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""
Derived covariates shared by the model fits and the prediction grid.
"""

import numpy as np
import pandas as pd

# adult female, adult male, subadult, young-of-year
CATEGORY_ORDER = ("AF", "AM", "SA", "YOY")

DAY_CENTER = 120.0
DAY_SCALE = 10.0

# hour periods of the three sine/cosine pairs
CYCLICAL_PERIODS = (24, 12, 8)


def cyclical_features(hour, legacy_cos3: bool = False) -> pd.DataFrame:
    """
    Sine/cosine pairs of the solar hour at periods of 24, 12 and 8 hours.

    Parameters
    ----------
    hour : array-like
        Solar hour, 0-23.
    legacy_cos3 : bool, default=False
        If True, ``cos3`` is computed as ``sin(pi * h / 4)``, matching older
        fits that defined it that way. The default is the cosine.

    Returns
    -------
    features : DataFrame
        Columns ``sin1, cos1, sin2, cos2, sin3, cos3``.
    """
    h = np.asarray(hour, dtype=float)
    out = {}
    for ix, period in enumerate(CYCLICAL_PERIODS, start=1):
        angle = 2 * np.pi * h / period
        out[f'sin{ix}'] = np.sin(angle)
        out[f'cos{ix}'] = np.cos(angle)
    if legacy_cos3:
        out['cos3'] = np.sin(2 * np.pi * h / CYCLICAL_PERIODS[2])
    index = hour.index if isinstance(hour, pd.Series) else None
    return pd.DataFrame(out, index=index)


def day_polynomial(yday, max_power: int = 4, center: float = DAY_CENTER,
                   scale: float = DAY_SCALE) -> pd.DataFrame:
    """
    Centered and scaled day of year with its integer powers.

    Columns are ``day`` for ``(yday - center) / scale`` and ``day2`` ..
    ``day{max_power}`` for its powers.
    """
    if max_power < 1:
        raise ValueError(f"max_power must be at least 1, got {max_power}")
    day = (np.asarray(yday, dtype=float) - center) / scale
    out = {'day': day}
    for power in range(2, max_power + 1):
        out[f'day{power}'] = day ** power
    index = yday.index if isinstance(yday, pd.Series) else None
    return pd.DataFrame(out, index=index)


def add_derived_features(data: pd.DataFrame, hour_column='hour', day_column='yday',
                         wind_column='wind', temp_column='temp',
                         max_day_power: int = 4, legacy_cos3: bool = False) -> pd.DataFrame:
    """
    Return a copy of ``data`` with cyclical, polynomial and wind x temperature
    columns added (or overwritten).
    """
    missing = [c for c in (hour_column, day_column) if c not in data.columns]
    if missing:
        raise ValueError(f"Missing columns for derived features: {missing}")
    out = data.copy()
    for name, values in cyclical_features(out[hour_column], legacy_cos3=legacy_cos3).items():
        out[name] = values
    for name, values in day_polynomial(out[day_column], max_power=max_day_power).items():
        out[name] = values
    if wind_column in out.columns and temp_column in out.columns:
        out['windtemp'] = out[wind_column] * out[temp_column]
    return out


def order_categories(levels, order=CATEGORY_ORDER) -> list:
    """
    Sort category levels by the canonical order; unknown levels follow, sorted.
    """
    levels = list(dict.fromkeys(levels))
    known = [c for c in order if c in levels]
    rest = sorted((c for c in levels if c not in order), key=str)
    return known + rest


def ar_start_from_blocks(blocks) -> np.ndarray:
    """
    Flag the first row of every contiguous run of block ids.

    Rows must already be in time order within each block.
    """
    blocks = pd.Series(np.asarray(blocks))
    if len(blocks) == 0:
        return np.zeros(0, dtype=bool)
    start = blocks.ne(blocks.shift()).to_numpy(dtype=bool, copy=True)
    start[0] = True
    return start


def validate_blocks(data: pd.DataFrame, block_column='block', subject_column='subject',
                    time_columns=('yday', 'hour')):
    """
    Check that block ids partition the rows into contiguous runs per subject,
    in time order.

    Parameters
    ----------
    data : DataFrame
        Observations in the order they will be fitted.
    block_column, subject_column : str
        Block and subject id columns.
    time_columns : tuple of str or None, default=('yday', 'hour')
        Day-of-year and hour columns. Time must strictly increase within each
        block. Skipped if None or if the columns are absent.

    Raises
    ------
    ValueError
        If a block id reappears after another block started, a block spans
        more than one subject, or rows are out of time order within a block.
    """
    missing = [c for c in (block_column, subject_column) if c not in data.columns]
    if missing:
        raise ValueError(f"Missing columns for block validation: {missing}")

    starts = ar_start_from_blocks(data[block_column])
    run_ids = data[block_column].to_numpy()[starts]
    counts = pd.Series(run_ids).value_counts()
    repeated = counts[counts > 1]
    if len(repeated):
        raise ValueError(
            f"Block ids are not contiguous; these appear in more than one run: "
            f"{list(repeated.index[:5])}"
        )

    subjects_per_block = data.groupby(block_column, sort=False)[subject_column].nunique()
    shared = subjects_per_block[subjects_per_block > 1]
    if len(shared):
        raise ValueError(
            f"Blocks must not span subjects; these contain several subjects: "
            f"{list(shared.index[:5])}"
        )

    if time_columns is None or not set(time_columns) <= set(data.columns):
        return
    day_column, hour_column = time_columns
    hours = data[day_column].to_numpy(dtype=float) * 24 + data[hour_column].to_numpy(dtype=float)
    backwards = ~starts[1:] & (np.diff(hours) <= 0)
    if np.any(backwards):
        blocks = pd.unique(data[block_column].to_numpy()[1:][backwards])[:5]
        raise ValueError(f"Rows are not in time order within blocks: {list(blocks)}")
