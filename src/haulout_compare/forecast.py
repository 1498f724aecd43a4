# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""
Probability-scale forecasts with normal-approximation confidence bounds.

Both the GLMM and the GAM path go through ``add_confidence_bounds`` so their
intervals are built with the same multiplier and the same back-transform.
"""

import logging

import numpy as np
import pandas as pd
from scipy.special import expit, logit as _logit

from .gam_estimator import GamEstimator, GamRandomEffectConfig, GamFactorConfig
from .glmm import GlmmArtifact

logger = logging.getLogger(__name__)

Z_95 = 1.96


def logistic(x):
    """p = 1 / (1 + exp(-x))"""
    return expit(x)


def logit(p):
    """x = log(p / (1 - p)), the inverse of ``logistic``"""
    return _logit(p)


def add_confidence_bounds(frame: pd.DataFrame, fit, se, prefix: str, z: float = Z_95) -> pd.DataFrame:
    """
    Return a copy of ``frame`` with logit-scale fit and standard error, and
    probability-scale point estimate and bounds ``logistic(fit -/+ z * se)``.

    Columns added are ``{prefix}_fit``, ``{prefix}_se``, ``{prefix}_prob``,
    ``{prefix}_lower95`` and ``{prefix}_upper95``.
    """
    fit = np.asarray(fit, dtype=float)
    se = np.asarray(se, dtype=float)
    if fit.shape != (len(frame),) or se.shape != (len(frame),):
        raise ValueError(
            f"fit and se must have one value per row ({len(frame)}), "
            f"got shapes {fit.shape} and {se.shape}"
        )
    if np.any(se < 0):
        raise ValueError("Standard errors must be non-negative")
    out = frame.copy()
    out[f'{prefix}_fit'] = fit
    out[f'{prefix}_se'] = se
    out[f'{prefix}_prob'] = logistic(fit)
    out[f'{prefix}_lower95'] = logistic(fit - z * se)
    out[f'{prefix}_upper95'] = logistic(fit + z * se)
    return out


def forecast_glmm(artifact: GlmmArtifact, newdata: pd.DataFrame, prefix: str = 'glmm') -> pd.DataFrame:
    """
    Population-level GLMM forecast for every row of ``newdata``.
    """
    fit, se = artifact.predict_link(newdata)
    logger.info("GLMM forecast for %d rows", len(newdata))
    return add_confidence_bounds(newdata, fit, se, prefix)


def _default_placeholder(estimator: GamEstimator, label: str):
    for term, state in zip(estimator.config.terms, estimator.term_states_):
        if term.label == label and isinstance(term, (GamRandomEffectConfig, GamFactorConfig)):
            return term.column, state['levels'][0]
    for term in estimator.config.terms:
        if term.label == label:
            return term.column, None
    raise ValueError(f"Cannot exclude unknown term {label!r}")


def forecast_gam(estimator: GamEstimator, newdata: pd.DataFrame, exclude=('s(subject)',),
                 placeholder=None, prefix: str = 'gam') -> pd.DataFrame:
    """
    Population-level GAM forecast for every row of ``newdata``.

    Parameters
    ----------
    estimator : GamEstimator
        Fitted binomial GAM.
    newdata : DataFrame
        Rows to forecast. Not modified.
    exclude : sequence of str, default=('s(subject)',)
        Term labels left out of the prediction.
    placeholder : object or None, default=None
        Value written into the grouping column of each excluded term.
        Excluded terms contribute nothing, so any value of the right type
        gives the same result. If None, a column absent from ``newdata`` is
        filled with the first level seen during fit.
    prefix : str, default='gam'
        Prefix of the added columns.
    """
    data = newdata.copy()
    for label in exclude:
        column, default = _default_placeholder(estimator, label)
        if placeholder is not None:
            data[column] = placeholder
        elif column not in data.columns:
            data[column] = default
    fit, se = estimator.predict_link(data, exclude=list(exclude), se_fit=True)
    logger.info("GAM forecast for %d rows excluding %s", len(newdata), list(exclude))
    return add_confidence_bounds(newdata, fit, se, prefix)
