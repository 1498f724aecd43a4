# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""
Persisted GLMM fit and its linear predictor on new data.

The mixed model itself is fitted upstream; only the fixed effects are used
here: the coefficient table, the coefficient covariance and the fixed-effect
formula, in patsy syntax.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import joblib
import numpy as np
import pandas as pd
import patsy

logger = logging.getLogger(__name__)

ESTIMATE = 'estimate'
STD_ERROR = 'std_error'

# names R uses in summary(fit)$tTable
_TABLE_ALIASES = {
    'Value': ESTIMATE,
    'Estimate': ESTIMATE,
    'Std.Error': STD_ERROR,
    'Std. Error': STD_ERROR,
}


@dataclass
class GlmmArtifact:
    """
    Fixed-effects part of a fitted GLMM.

    Parameters
    ----------
    coefficients : DataFrame
        One row per fixed-effect term, indexed by term name, with columns
        ``estimate`` and ``std_error``. Rows without a standard error are
        aliased terms and are dropped at prediction time.
    covariance : DataFrame or ndarray
        Coefficient covariance, square, with one row and column per row of
        ``coefficients`` (including aliased ones).
    formula : str
        Fixed-effect formula in patsy syntax, e.g.
        ``"dry ~ agesex + temp + sin1 + cos1 + day + day2 + day3"``. The
        response, if present, is ignored.
    factor_levels : dict, default={}
        Level order of every factor column at fit time. New data is coded
        against these levels so the dummy columns match the coefficients.
    term_map : dict, default={}
        Renames coefficient terms to patsy design column names. R names
        ('(Intercept)', 'agesexAM') are mapped from ``factor_levels``
        without it; entries here take precedence.
    max_condition : float, default=1e12
        Largest accepted condition number of the filtered covariance.
    """
    coefficients: pd.DataFrame
    covariance: pd.DataFrame | np.ndarray
    formula: str
    factor_levels: dict[str, list] = field(default_factory=dict)
    term_map: dict[str, str] = field(default_factory=dict)
    max_condition: float = 1.0e12

    @property
    def rhs(self) -> str:
        """Right-hand side of the formula."""
        return self.formula.split('~', 1)[-1].strip()

    def design_names(self, terms) -> list[str]:
        """
        Patsy design column names of coefficient terms.

        ``(Intercept)`` becomes ``Intercept`` and R's factor spelling
        ``agesexAM`` becomes ``agesex[T.AM]``, also inside interactions.
        """
        mapping = {'(Intercept)': 'Intercept'}
        for column, levels in self.factor_levels.items():
            for level in list(levels)[1:]:
                mapping[f'{column}{level}'] = f'{column}[T.{level}]'
        names = []
        for term in terms:
            if term in self.term_map:
                names.append(self.term_map[term])
            elif term in mapping:
                names.append(mapping[term])
            else:
                names.append(':'.join(mapping.get(part, part) for part in str(term).split(':')))
        return names

    def filtered(self) -> tuple[pd.Series, np.ndarray]:
        """
        Coefficients with a standard error and the matching covariance block.

        Raises
        ------
        ValueError
            If the table lacks columns or the covariance is not a finite,
            symmetric, positive semi-definite, non-singular square matrix with
            one row per coefficient.
        """
        missing = [c for c in (ESTIMATE, STD_ERROR) if c not in self.coefficients.columns]
        if missing:
            raise ValueError(f"Coefficient table is missing columns {missing}")

        covariance = self.covariance
        if (isinstance(covariance, pd.DataFrame)
                and set(covariance.index) == set(self.coefficients.index)
                and set(covariance.columns) == set(self.coefficients.index)):
            covariance = covariance.loc[self.coefficients.index, self.coefficients.index]
        cov = np.asarray(covariance, dtype=float)
        n_coef = len(self.coefficients)
        if cov.ndim != 2 or cov.shape[0] != cov.shape[1]:
            raise ValueError(f"Covariance matrix must be square, got shape {cov.shape}")
        if cov.shape[0] != n_coef:
            raise ValueError(
                f"Covariance dimension {cov.shape[0]} does not match the "
                f"{n_coef} coefficients in the table"
            )

        keep = self.coefficients[STD_ERROR].notna().to_numpy()
        if not np.all(keep):
            logger.debug("Dropping aliased coefficients without standard error: %s",
                         list(self.coefficients.index[~keep]))
        beta = self.coefficients.loc[keep, ESTIMATE].astype(float)
        cov = cov[np.ix_(keep, keep)]

        if not np.all(np.isfinite(cov)) or not np.all(np.isfinite(beta)):
            raise ValueError("Coefficients and covariance must be finite")
        if not np.allclose(cov, cov.T, rtol=1e-8, atol=1e-12):
            raise ValueError("Covariance matrix is not symmetric")
        eigvals = np.linalg.eigvalsh(cov)
        if eigvals[0] < -1e-10 * max(abs(eigvals[-1]), 1.0):
            raise ValueError(f"Covariance matrix is not positive semi-definite (smallest eigenvalue {eigvals[0]:.3e})")
        if eigvals[0] <= 0 or eigvals[-1] / eigvals[0] > self.max_condition:
            raise ValueError("Covariance matrix is singular or nearly singular")
        return beta, cov

    def design_matrix(self, data: pd.DataFrame) -> pd.DataFrame:
        """
        Fixed-effect design matrix for new data, coded as at fit time.
        """
        data = data.copy()
        for column, levels in self.factor_levels.items():
            if column not in data.columns:
                continue
            coded = pd.Categorical(data[column], categories=list(levels))
            unseen = pd.isna(coded) & data[column].notna().to_numpy()
            if np.any(unseen):
                bad = pd.unique(data[column][unseen])[:5]
                raise ValueError(f"Values of {column!r} not seen during the GLMM fit: {list(bad)}")
            data[column] = coded
        try:
            return patsy.dmatrix(self.rhs, data, NA_action='raise', return_type='dataframe')
        except patsy.PatsyError as e:
            raise ValueError(f"Cannot build the GLMM design from {self.rhs!r}: {e}") from e

    def predict_link(self, data: pd.DataFrame) -> tuple[np.ndarray, np.ndarray]:
        """
        Linear predictor and its standard error for new data.

        The standard error is ``sqrt(diag(X V X^T))``, computed row by row.
        Coefficients are matched to design columns by name (see
        ``design_names``), whatever their order in the table.

        Returns
        -------
        fit : ndarray of shape (n_samples,)
            Logit-scale point estimates.
        se : ndarray of shape (n_samples,)
            Standard errors of ``fit``.
        """
        beta, cov = self.filtered()
        X = self.design_matrix(data)
        if X.shape[1] != len(beta):
            raise ValueError(
                f"Design matrix has {X.shape[1]} columns {list(X.columns)} but "
                f"{len(beta)} coefficients have standard errors {list(beta.index)}"
            )
        names = self.design_names(beta.index)
        if len(set(names)) != len(names):
            raise ValueError(f"Coefficient terms map to duplicate design columns: {names}")
        if set(names) != set(X.columns):
            raise ValueError(
                f"Coefficient terms {sorted(set(names) - set(X.columns))} have no design column and "
                f"design columns {sorted(set(X.columns) - set(names))} have no coefficient; "
                "pass a term_map"
            )
        order = [names.index(c) for c in X.columns]
        beta = beta.iloc[order]
        cov = cov[np.ix_(order, order)]
        X = X.to_numpy()
        fit = X @ beta.to_numpy()
        var = np.einsum('ij,jk,ik->i', X, cov, X)
        return fit, np.sqrt(np.clip(var, 0, None))

    @classmethod
    def from_tables(cls, coefficients, covariance, formula: str, factor_levels=None, term_map=None):
        """
        Build an artifact from exported tables.

        Parameters
        ----------
        coefficients : DataFrame or path
            Coefficient table indexed by term (first CSV column). R column
            names such as ``Value`` and ``Std.Error`` are accepted.
        covariance : DataFrame or path
            Covariance table, with the term names as index (first CSV column).
        formula : str
            Fixed-effect formula in patsy syntax.
        factor_levels : dict or None
            Factor level order at fit time.
        term_map : dict or None
            Coefficient term to design column renames.
        """
        if not isinstance(coefficients, pd.DataFrame):
            coefficients = pd.read_csv(coefficients, index_col=0)
        if not isinstance(covariance, pd.DataFrame):
            covariance = pd.read_csv(covariance, index_col=0)
        coefficients = coefficients.rename(columns=_TABLE_ALIASES)
        # R's vcov() omits aliased terms; pad them back as NaN so the
        # covariance lines up with the full table before filtering
        if (list(covariance.index) != list(coefficients.index)
                and set(covariance.index) <= set(coefficients.index)):
            covariance = covariance.reindex(index=coefficients.index, columns=coefficients.index)
        return cls(
            coefficients=coefficients[[ESTIMATE, STD_ERROR]],
            covariance=covariance,
            formula=formula,
            factor_levels=dict(factor_levels or {}),
            term_map=dict(term_map or {}),
        )

    def save(self, path):
        joblib.dump(self, Path(path))

    @classmethod
    def load(cls, path):
        artifact = joblib.load(Path(path))
        if not isinstance(artifact, cls):
            raise ValueError(f"{path} does not hold a {cls.__name__}, got {type(artifact).__name__}")
        return artifact
