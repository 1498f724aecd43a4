# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""
Side-by-side tables of the GLMM and GAM fits.
"""

import numpy as np
import pandas as pd

from .gam_estimator import GamEstimator
from .glmm import ESTIMATE, STD_ERROR, GlmmArtifact


def compare_coefficients(glmm: GlmmArtifact, gam: GamEstimator, term_map=None) -> pd.DataFrame:
    """
    Join GLMM fixed effects and GAM parametric coefficients on term name.

    Parameters
    ----------
    glmm : GlmmArtifact
        Upstream GLMM. Aliased terms (no standard error) are left out.
    gam : GamEstimator
        Fitted GAM.
    term_map : dict or None, default=None
        Further renames applied after ``glmm.design_names``, which already
        maps ``(Intercept)`` and R factor terms such as ``agesexAM`` to the
        GAM naming.

    Returns
    -------
    table : DataFrame
        Indexed by term, with estimates and standard errors of both models,
        their difference and the GAM/GLMM standard-error ratio. Terms present
        in only one model have NaN for the other.
    """
    coefs = glmm.coefficients[glmm.coefficients[STD_ERROR].notna()]
    glmm_table = coefs[[ESTIMATE, STD_ERROR]].set_axis(glmm.design_names(coefs.index), axis=0)
    glmm_table = glmm_table.rename(index=term_map or {}).add_prefix('glmm_')
    gam_table = gam.coef_table()[[ESTIMATE, STD_ERROR]].add_prefix('gam_')

    table = glmm_table.join(gam_table, how='outer')
    table.index.name = 'term'
    table['estimate_diff'] = table[f'gam_{ESTIMATE}'] - table[f'glmm_{ESTIMATE}']
    table['se_ratio'] = table[f'gam_{STD_ERROR}'] / table[f'glmm_{STD_ERROR}']
    order = [t for t in glmm_table.index if t in table.index]
    order += [t for t in gam_table.index if t not in glmm_table.index]
    return table.loc[order]


def compare_predictions(glmm_frame: pd.DataFrame, gam_frame: pd.DataFrame,
                        keys=('agesex', 'yday', 'hour'),
                        glmm_prefix='glmm', gam_prefix='gam') -> pd.DataFrame:
    """
    Join the two forecasts row by row on the grid keys.

    Adds the probability difference (GAM minus GLMM), the width of each
    probability interval and the ratio of logit-scale standard errors, which
    is also the ratio of logit-scale interval widths.
    """
    keys = list(keys)
    glmm_cols = keys + [c for c in glmm_frame.columns if c.startswith(f'{glmm_prefix}_')]
    gam_cols = keys + [c for c in gam_frame.columns if c.startswith(f'{gam_prefix}_')]
    table = glmm_frame[glmm_cols].merge(gam_frame[gam_cols], on=keys, how='inner', validate='one_to_one')
    if len(table) != len(glmm_frame) or len(table) != len(gam_frame):
        raise ValueError(
            f"Forecasts do not cover the same grid: {len(glmm_frame)} GLMM rows, "
            f"{len(gam_frame)} GAM rows, {len(table)} matched"
        )
    table['prob_diff'] = table[f'{gam_prefix}_prob'] - table[f'{glmm_prefix}_prob']
    for prefix in (glmm_prefix, gam_prefix):
        table[f'{prefix}_width'] = table[f'{prefix}_upper95'] - table[f'{prefix}_lower95']
    table['se_ratio'] = table[f'{gam_prefix}_se'] / table[f'{glmm_prefix}_se']
    return table


def summarize_comparison(comparison: pd.DataFrame, by='agesex',
                         glmm_prefix='glmm', gam_prefix='gam') -> pd.DataFrame:
    """Per-group summary of a ``compare_predictions`` table."""
    grouped = comparison.groupby(by, observed=True, sort=True)
    return pd.DataFrame({
        'n': grouped.size(),
        'mean_abs_prob_diff': grouped['prob_diff'].apply(lambda s: np.mean(np.abs(s))),
        'max_abs_prob_diff': grouped['prob_diff'].apply(lambda s: np.max(np.abs(s))),
        f'{glmm_prefix}_mean_width': grouped[f'{glmm_prefix}_width'].mean(),
        f'{gam_prefix}_mean_width': grouped[f'{gam_prefix}_width'].mean(),
        'median_se_ratio': grouped['se_ratio'].median(),
    })


def aic_table(models: dict[str, GamEstimator]) -> pd.DataFrame:
    """
    Rank fitted GAMs by AIC.
    """
    if not models:
        raise ValueError("No models to compare")
    table = pd.DataFrame([
        {'model': name, 'edf': m.edf_, 'deviance': m.deviance_, 'aic': m.aic_}
        for name, m in models.items()
    ]).set_index('model').sort_values('aic')
    table['delta_aic'] = table['aic'] - table['aic'].iloc[0]
    return table
