# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

import cvxpy
import joblib
import numpy as np
import pandas as pd
from numpy import ndarray
from scipy import linalg, stats
from scipy.sparse import diags, spdiags
from scipy.special import expit, logit, xlogy
from sklearn.base import BaseEstimator, RegressorMixin
from sklearn.utils.validation import check_is_fitted, check_X_y
from spcqe import make_basis_matrix
from spcqe.functions import initialize_arrays

logger = logging.getLogger(__name__)


class Family(StrEnum):
    BINOMIAL = 'binomial'
    GAUSSIAN = 'gaussian'


@dataclass
class GamLinearConfig:
    """
    Parametric linear term for a numeric column.

    Parameters
    ----------
    column : str
        Column of X holding the covariate.
    reg_weight : float, default=0.0
        Ridge weight on the coefficient. Zero leaves the term unpenalized,
        which is what a GLM would estimate.
    """
    column: str
    reg_weight: float = 0.0

    @property
    def label(self) -> str:
        return self.column


@dataclass
class GamFactorConfig:
    """
    Parametric factor term with treatment (dummy) coding.

    The first level is the reference. Coefficients are named
    ``column[T.level]`` so that they line up with patsy-built GLMM designs.

    Parameters
    ----------
    column : str
        Column of X holding the factor.
    levels : list or None, default=None
        Level order. If None, the categories of a pandas Categorical column are
        used, otherwise the sorted unique values seen during fit.
    reg_weight : float, default=0.0
        Ridge weight on the dummy coefficients.
    """
    column: str
    levels: list | None = None
    reg_weight: float = 0.0

    @property
    def label(self) -> str:
        return f"C({self.column})"


@dataclass
class GamSplineConfig:
    """
    Cubic regression spline smooth of a numeric column.

    The column is rescaled to [0, 1] using its training range before the basis
    is built, so ``reg_weight`` does not depend on the units of the covariate.

    Parameters
    ----------
    column : str
        Column of X holding the covariate.
    n_knots : int or None, default=10
        Number of evenly spaced knots over the training range. Ignored if
        ``knots`` is non-empty.
    reg_weight : float, default=1.0e-4
        Ridge weight on the spline coefficients. Higher values give smoother
        curves. Typical range: 1e-5 to 1e-2.
    knots : list[float], default=[]
        Explicit knot locations in the units of the column.

    Examples
    --------
    >>> GamSplineConfig('yday', n_knots=8)
    >>> GamSplineConfig('temp', knots=[-5, 0, 5, 10, 15])
    """
    column: str
    n_knots: int | None = 10
    reg_weight: float = 1.0e-4
    knots: list[float] = field(default_factory=list)

    @property
    def label(self) -> str:
        return f"s({self.column})"


@dataclass
class GamCyclicConfig:
    """
    Cyclic Fourier smooth of a periodic column, e.g. hour of day.

    The basis is evaluated at integer positions ``floor(x) mod period``, so
    the column should hold whole steps of the cycle (hours 0-23).

    Parameters
    ----------
    column : str
        Column of X holding the periodic covariate.
    period : int, default=24
        Number of steps in one cycle.
    num_harmonics : int, default=3
        Number of sine/cosine pairs.
    reg_weight : float, default=1.0e-4
        Weight of the frequency-scaled ridge penalty; higher harmonics are
        penalized more.
    """
    column: str
    period: int = 24
    num_harmonics: int = 3
    reg_weight: float = 1.0e-4

    @property
    def label(self) -> str:
        return f"s({self.column})"


@dataclass
class GamRandomEffectConfig:
    """
    Random-effect smooth: one ridge-penalized indicator per level.

    Excluding this term at prediction time (``exclude=['s(subject)']``) gives
    the population-level mean.

    Parameters
    ----------
    column : str
        Column of X holding the grouping variable.
    reg_weight : float, default=1.0e-3
        Ridge weight; the inverse of the random-effect variance up to scale.
    """
    column: str
    reg_weight: float = 1.0e-3

    @property
    def label(self) -> str:
        return f"s({self.column})"


@dataclass
class GamArConfig:
    """
    First-order autoregressive structure of the working residuals.

    Rows are assumed to be in time order. Dependence is only modeled within a
    block; pass the per-row start-of-block flags to ``fit`` as ``ar_start``.

    Parameters
    ----------
    rho : float
        AR(1) correlation, strictly between -1 and 1.

    Examples
    --------
    >>> config = GamArConfig(rho=0.6)
    """
    rho: float

    def __post_init__(self):
        if not -1 < self.rho < 1:
            raise ValueError(f"rho must be strictly between -1 and 1, got {self.rho}")


@dataclass
class GamSolverConfig:
    """
    Configuration for the penalized IRLS solver.

    Each IRLS step is a CVXPY problem: the sum of squares of the weighted
    working residuals plus the sum of squares of the penalized coefficients.

    Parameters
    ----------
    solver : str, default='CLARABEL'
        CVXPY solver name, e.g. 'CLARABEL', 'OSQP', 'ECOS' or 'SCS'.
    verbose : bool, default=False
        Whether to print solver output at every IRLS step.
    fast : bool, default=False
        If True, the working residuals are compressed to one row per
        coefficient with a QR factorization before they are passed to the
        solver, so each step is a problem in p rather than n residuals.
    max_iter : int, default=50
        Maximum number of IRLS iterations.
    tol : float, default=1.0e-7
        Convergence tolerance on the relative change in deviance.

    Examples
    --------
    >>> config = GamSolverConfig(solver='CLARABEL', fast=True)
    """
    solver: str = 'CLARABEL'
    verbose: bool = False
    fast: bool = False
    max_iter: int = 50
    tol: float = 1.0e-7


@dataclass
class GamEstimatorConfig:
    """
    Main configuration for GamEstimator.

    Parameters
    ----------
    terms : list
        Model terms, any of GamLinearConfig, GamFactorConfig, GamSplineConfig,
        GamCyclicConfig and GamRandomEffectConfig. Labels must be unique.
    family : Family, default=Family.BINOMIAL
        Response distribution. Binomial uses the logit link, Gaussian the
        identity link.
    fit_intercept : bool, default=True
        Whether to include an unpenalized intercept column.
    ar_config : GamArConfig or None, default=None
        AR(1) residual structure. If None, rows are independent.
    solver_config : GamSolverConfig, default=GamSolverConfig()
        IRLS settings.

    Examples
    --------
    >>> config = GamEstimatorConfig(
    ...     terms=[
    ...         GamFactorConfig('agesex'),
    ...         GamLinearConfig('temp'),
    ...         GamCyclicConfig('hour', period=24, num_harmonics=3),
    ...         GamSplineConfig('yday', n_knots=8),
    ...         GamRandomEffectConfig('subject'),
    ...     ],
    ...     ar_config=GamArConfig(rho=0.6),
    ... )
    """
    terms: list[GamLinearConfig | GamFactorConfig | GamSplineConfig | GamCyclicConfig | GamRandomEffectConfig]
    family: Family = Family.BINOMIAL
    fit_intercept: bool = True
    ar_config: GamArConfig | None = None
    solver_config: GamSolverConfig = field(default_factory=GamSolverConfig)


PARAMETRIC_TERMS = (GamLinearConfig, GamFactorConfig)

INTERCEPT = 'Intercept'

_MU_EPS = 1.0e-10


class GamEstimator(RegressorMixin, BaseEstimator):
    """
    Penalized Generalized Additive Model (GAM) Estimator.

    The model combines parametric linear and factor terms with penalized
    smooths (cubic regression splines, cyclic Fourier smooths and
    random-effect smooths). It is fitted by penalized iteratively re-weighted
    least squares; with an AR(1) config the working model is whitened within
    blocks at every iteration.

    Parameters
    ----------
    config : GamEstimatorConfig
        Configuration object containing all model settings.

    Attributes
    ----------
    coef_ : ndarray
        Fitted coefficients, in the order of ``feature_names_``.
    Vp_ : ndarray
        Bayesian posterior covariance of the coefficients.
    feature_names_ : list[str]
        Design column names.
    term_spans_ : dict[str, slice]
        Design columns belonging to each term label.
    edf_ : float
        Total effective degrees of freedom.
    term_edf_ : dict[str, float]
        Effective degrees of freedom per term label.
    deviance_ : float
        Deviance at convergence.
    scale_ : float
        Scale parameter (1 for binomial).
    aic_ : float
        Akaike information criterion using ``edf_``.
    n_iter_ : int
        Number of IRLS iterations performed.

    Examples
    --------
    >>> estimator = GamEstimator(config=config)
    >>> estimator.fit(data, data['dry'], ar_start=ar_start_from_blocks(data['block']))
    >>> fit, se = estimator.predict_link(grid, exclude=['s(subject)'], se_fit=True)
    """
    def __init__(self, config: GamEstimatorConfig):
        self.config = config

    def _check_columns(self, X):
        if not isinstance(X, pd.DataFrame):
            raise ValueError(
                "X must be a pandas DataFrame holding the term columns. "
                f"Got {type(X)} instead."
            )
        missing = [t.column for t in self.config.terms if t.column not in X.columns]
        if missing:
            raise ValueError(f"X is missing columns required by the model terms: {missing}")

    def _make_H(self, x, knots, include_offset=False):
        """
        Create cubic spline basis matrix.

        Parameters
        ----------
        x : array-like
            Input values.
        knots : array-like
            Knot locations.
        include_offset : bool, default=False
            Whether to include constant term.

        Returns
        -------
        H : ndarray
            Basis matrix.
        """
        def d_func(x, k, k_max):
            n1 = np.clip(np.power(x - k, 3), 0, np.inf)
            n2 = np.clip(np.power(x - k_max, 3), 0, np.inf)
            d1 = k_max - k
            out = (n1 - n2) / d1
            return out

        nK = len(knots)
        H = np.ones((len(x), nK), dtype=float)
        H[:, 1] = x
        for _i in range(nK - 2):
            _j = _i + 2
            H[:, _j] = d_func(x, knots[_i], knots[-1]) - d_func(
                x, knots[-2], knots[-1]
            )
        if include_offset:
            return H
        else:
            return H[:, 1:]

    def _make_fourier(self, x, period, num_harmonics):
        """
        Fourier basis rows for the integer positions ``floor(x) mod period``,
        without the constant column.
        """
        positions = np.mod(np.floor(np.asarray(x, dtype=float)), period).astype(int)
        F_full = make_basis_matrix(
            num_harmonics=[num_harmonics],
            length=int(period),
            periods=[period]
        )
        return F_full[positions, 1:]

    def _make_regularization_matrix(self, num_harmonics, weight: float, periods: list[float]):
        """
        Create regularization matrix for Fourier coefficients.

        Parameters
        ----------
        num_harmonics : int or array-like
            Number of harmonics for each period.
        weight : float
            Regularization weight.
        periods : float or array-like
            Periods for each harmonic block.

        Returns
        -------
        D : sparse matrix
            Diagonal regularization matrix, growing with the harmonic. The
            constant column is not included.
        """
        _, Ps, num_harmonics, _ = initialize_arrays(num_harmonics, periods, False, None)
        ls = [weight * (2 * np.pi) / np.sqrt(P) for P in Ps]
        blocks = [np.repeat(np.arange(1, nh + 1), 2) * lx for nh, lx in zip(num_harmonics, ls)]
        coeff_i = np.concatenate(blocks)
        D = spdiags(coeff_i, 0, coeff_i.size, coeff_i.size)
        return D

    def _init_term_state(self, term, x):
        """
        Learn what a term needs from the training column: knots, scaling and
        levels. Reused unchanged in predict.
        """
        if isinstance(term, GamLinearConfig):
            return {'names': [term.column]}

        if isinstance(term, (GamFactorConfig, GamRandomEffectConfig)):
            levels = getattr(term, 'levels', None)
            if levels is None:
                if isinstance(x.dtype, pd.CategoricalDtype):
                    levels = list(x.cat.categories)
                else:
                    levels = sorted(pd.unique(x.dropna()), key=str)
            levels = list(levels)
            if isinstance(term, GamFactorConfig):
                if len(levels) < 2:
                    raise ValueError(f"Factor {term.column!r} needs at least two levels, got {levels}")
                names = [f"{term.column}[T.{lev}]" for lev in levels[1:]]
            else:
                if len(levels) < 1:
                    raise ValueError(f"Random effect {term.column!r} has no levels")
                names = [f"{term.label}.{ix + 1}" for ix in range(len(levels))]
            return {'names': names, 'levels': levels}

        if isinstance(term, GamSplineConfig):
            x = np.asarray(x, dtype=float)
            x_min = float(np.min(x))
            x_range = float(np.max(x) - x_min)
            if x_range <= 0:
                raise ValueError(f"Spline term {term.label} needs at least two distinct values of {term.column!r}")
            if not term.knots:
                if term.n_knots:
                    if term.n_knots < 2:
                        raise ValueError(f"n_knots must be at least 2 for {term.label}, got {term.n_knots}")
                    knots = np.linspace(0.0, 1.0, term.n_knots)
                else:
                    raise ValueError("Either knots or n_knots must be provided for GamSplineConfig")
            else:
                knots = (np.sort(np.asarray(term.knots, dtype=float)) - x_min) / x_range
                if len(knots) < 2:
                    raise ValueError(f"At least two knots are required for {term.label}")
            names = [f"{term.label}.{ix + 1}" for ix in range(len(knots) - 1)]
            return {'names': names, 'x_min': x_min, 'x_range': x_range, 'knots': knots}

        if isinstance(term, GamCyclicConfig):
            if term.num_harmonics < 1:
                raise ValueError(f"num_harmonics must be positive for {term.label}")
            if int(term.period) != term.period or term.period < 2:
                raise ValueError(f"period must be an integer of at least 2 for {term.label}, got {term.period}")
            names = [f"{term.label}.{ix + 1}" for ix in range(2 * term.num_harmonics)]
            return {'names': names}

        raise ValueError(f"Unsupported term configuration: {term!r}")

    def _term_basis(self, term, state, x) -> ndarray:
        if isinstance(term, GamLinearConfig):
            return np.asarray(x, dtype=float).reshape(-1, 1)

        if isinstance(term, (GamFactorConfig, GamRandomEffectConfig)):
            levels = state['levels']
            codes = pd.Categorical(x, categories=levels).codes
            unseen = codes < 0
            if np.any(unseen):
                bad = pd.unique(np.asarray(x)[unseen])[:5]
                raise ValueError(f"Values of {term.column!r} not seen during fit: {list(bad)}")
            B = np.eye(len(levels))[codes]
            if isinstance(term, GamFactorConfig):
                B = B[:, 1:]
            return B

        if isinstance(term, GamSplineConfig):
            x_scaled = (np.asarray(x, dtype=float) - state['x_min']) / state['x_range']
            return self._make_H(x_scaled, state['knots'], include_offset=False)

        if isinstance(term, GamCyclicConfig):
            return self._make_fourier(x, term.period, term.num_harmonics)

        raise ValueError(f"Unsupported term configuration: {term!r}")

    def _term_regularization(self, term, state):
        """Return (D, weight) so that the penalty is weight * ||D @ coef||^2."""
        k = len(state['names'])
        if isinstance(term, GamCyclicConfig):
            D = self._make_regularization_matrix(term.num_harmonics, weight=1.0, periods=[term.period])
            return D.toarray(), term.reg_weight
        return np.eye(k), term.reg_weight

    def _build_design(self, X, exclude=()) -> ndarray:
        """
        Assemble the design matrix. Columns of excluded terms are set to zero
        and their data columns are never read.
        """
        n = len(X)
        blocks = []
        if self.config.fit_intercept:
            blocks.append(np.ones((n, 1)))
        for term, state in zip(self.config.terms, self.term_states_):
            if term.label in exclude:
                blocks.append(np.zeros((n, len(state['names']))))
            else:
                blocks.append(self._term_basis(term, state, X[term.column]))
        return np.hstack(blocks) if blocks else np.zeros((n, 0))

    def _build_regularization(self):
        """
        Build the stacked penalty root L and penalty S = L.T @ L.
        """
        p = len(self.feature_names_)
        rows = []
        for term, state in zip(self.config.terms, self.term_states_):
            D, weight = self._term_regularization(term, state)
            if weight <= 0:
                continue
            span = self.term_spans_[term.label]
            L_term = np.zeros((D.shape[0], p))
            L_term[:, span] = np.sqrt(weight) * D
            rows.append(L_term)
        L = np.vstack(rows) if rows else np.zeros((0, p))
        return L, L.T @ L

    def _make_ar_operator(self, ar_start, n):
        """
        Sparse AR(1) whitening operator.

        A block-start row is left as is; every other row i becomes
        (r_i - rho * r_{i-1}) / sqrt(1 - rho^2).
        """
        if self.config.ar_config is None:
            return None
        rho = self.config.ar_config.rho
        if ar_start is None:
            ar_start = np.zeros(n, dtype=bool)
        ar_start = np.asarray(ar_start, dtype=bool)
        if ar_start.shape != (n,):
            raise ValueError(f"ar_start must have one flag per row ({n}), got shape {ar_start.shape}")
        ar_start = ar_start.copy()
        if n:
            ar_start[0] = True
        inner = 1.0 / np.sqrt(1.0 - rho ** 2)
        main = np.where(ar_start, 1.0, inner)
        sub = np.where(ar_start[1:], 0.0, -rho * inner)
        return diags([main, sub], [0, -1], shape=(n, n), format='csr')

    def _working(self, y, eta, mu):
        """IRLS working weights and response."""
        if self.config.family == Family.BINOMIAL:
            w = np.clip(mu * (1 - mu), _MU_EPS, None)
            z = eta + (y - mu) / w
        else:
            w = np.ones_like(y)
            z = y
        return w, z

    def _linkinv(self, eta):
        if self.config.family == Family.BINOMIAL:
            return np.clip(expit(eta), _MU_EPS, 1 - _MU_EPS)
        return eta

    def _deviance(self, y, mu):
        if self.config.family == Family.BINOMIAL:
            return float(2 * np.sum(xlogy(y, y / mu) + xlogy(1 - y, (1 - y) / (1 - mu))))
        return float(np.sum((y - mu) ** 2))

    def _check_rank(self, X_design, L, n):
        """
        Reject designs whose penalized columns are aliased; the IRLS weights
        are positive so the rank does not change between iterations.
        """
        A = np.vstack([X_design, np.sqrt(n) * L])
        rank = np.linalg.matrix_rank(A)
        if rank < A.shape[1]:
            raise ValueError(
                f"Penalized design is rank deficient (rank {rank} < {A.shape[1]}); "
                "the design may contain aliased columns."
            )

    def _solve_penalized(self, Xw, zw, L, n):
        """
        Minimize ||zw - Xw @ b||^2 / n + ||L @ b||^2 with CVXPY.
        """
        solver_config = self.config.solver_config
        if solver_config.fast:
            Q, upper = linalg.qr(Xw, mode='economic')
            Xw, zw = upper, Q.T @ zw
        coef = cvxpy.Variable(Xw.shape[1])
        error = cvxpy.sum_squares(zw - Xw @ coef) / n
        objective = error
        if L.shape[0]:
            objective = error + cvxpy.sum_squares(L @ coef)
        problem = cvxpy.Problem(cvxpy.Minimize(objective))
        problem.solve(solver=solver_config.solver, verbose=solver_config.verbose)
        if problem.status not in (cvxpy.OPTIMAL, cvxpy.OPTIMAL_INACCURATE) or coef.value is None:
            raise ValueError(f"Solver {solver_config.solver} failed with status {problem.status!r}")
        if problem.status == cvxpy.OPTIMAL_INACCURATE:
            logger.warning("Solver %s returned an inaccurate solution", solver_config.solver)
        return np.asarray(coef.value)

    def fit(self, X, y, ar_start=None):
        """
        Fit the GAM by penalized IRLS.

        Parameters
        ----------
        X : DataFrame
            Covariates; must contain every column named by the terms.
        y : array-like of shape (n_samples,)
            Response. For the binomial family, values must lie in [0, 1].
        ar_start : array-like of bool or None, default=None
            Start-of-block flags for the AR(1) structure. Ignored without an
            ar_config. If None, the rows form a single block.

        Returns
        -------
        self : GamEstimator
            Returns self for method chaining.

        Raises
        ------
        ValueError
            If columns are missing, the response is invalid, the design is
            degenerate, or IRLS does not converge.
        """
        self._check_columns(X)
        labels = [t.label for t in self.config.terms]
        duplicated = sorted({lab for lab in labels if labels.count(lab) > 1})
        if duplicated:
            raise ValueError(f"Term labels must be unique, got duplicates: {duplicated}")

        y = np.asarray(y, dtype=float)
        if self.config.family == Family.BINOMIAL and np.any((y < 0) | (y > 1)):
            raise ValueError("Binomial response must lie in [0, 1]")

        self.term_states_ = [self._init_term_state(t, X[t.column]) for t in self.config.terms]
        self.feature_names_ = [INTERCEPT] if self.config.fit_intercept else []
        self.term_spans_ = {}
        for term, state in zip(self.config.terms, self.term_states_):
            start = len(self.feature_names_)
            self.feature_names_.extend(state['names'])
            self.term_spans_[term.label] = slice(start, len(self.feature_names_))

        X_design, y = check_X_y(self._build_design(X), y, y_numeric=True)
        n = len(y)
        L, S = self._build_regularization()
        self._check_rank(X_design, L, n)
        R = self._make_ar_operator(ar_start, n)

        if self.config.family == Family.BINOMIAL:
            mu = (y + 0.5) / 2
            eta = logit(mu)
        else:
            mu = np.full(n, np.mean(y))
            eta = mu.copy()

        solver_config = self.config.solver_config
        deviance = np.inf
        converged = False
        for it in range(1, solver_config.max_iter + 1):
            w, z = self._working(y, eta, mu)
            sw = np.sqrt(w)
            Xw = sw[:, None] * X_design
            zw = sw * z
            if R is not None:
                Xw = R @ Xw
                zw = R @ zw
            beta = self._solve_penalized(Xw, zw, L, n)
            eta = X_design @ beta
            mu = self._linkinv(eta)
            new_deviance = self._deviance(y, mu)
            logger.debug("IRLS iteration %d: deviance %.6f", it, new_deviance)
            if abs(new_deviance - deviance) < solver_config.tol * (abs(new_deviance) + 0.1):
                converged = True
                deviance = new_deviance
                break
            deviance = new_deviance
        if not converged:
            raise ValueError(f"IRLS did not converge in {solver_config.max_iter} iterations")

        self.n_iter_ = it
        self.coef_ = beta
        self.deviance_ = deviance
        self._fit_inference(X_design, y, eta, mu, R, S, n)
        logger.info("Fitted %s GAM with %d coefficients in %d iterations (edf %.2f, AIC %.2f)",
                    self.config.family, len(beta), it, self.edf_, self.aic_)
        return self

    def _fit_inference(self, X_design, y, eta, mu, R, S, n):
        """
        Posterior covariance, effective degrees of freedom and AIC at the
        converged fit.
        """
        w, z = self._working(y, eta, mu)
        sw = np.sqrt(w)
        Xw = sw[:, None] * X_design
        zw = sw * z
        if R is not None:
            Xw = R @ Xw
            zw = R @ zw
        H = Xw.T @ Xw
        try:
            c = linalg.cho_factor(H + n * S)
        except linalg.LinAlgError as e:
            raise ValueError(
                "Penalized information matrix is singular; the design may contain aliased columns."
            ) from e
        A_inv = linalg.cho_solve(c, np.eye(H.shape[0]))
        F_diag = np.einsum('ij,ji->i', A_inv, H)

        self.edf_ = float(np.sum(F_diag))
        self.term_edf_ = {label: float(np.sum(F_diag[span])) for label, span in self.term_spans_.items()}

        if self.config.family == Family.BINOMIAL:
            self.scale_ = 1.0
            self.aic_ = self.deviance_ + 2 * self.edf_
        else:
            rss = float(np.sum((zw - Xw @ self.coef_) ** 2))
            resid_df = n - self.edf_
            if resid_df <= 0:
                raise ValueError(f"No residual degrees of freedom left (n={n}, edf={self.edf_:.2f})")
            self.scale_ = rss / resid_df
            self.aic_ = n * (np.log(2 * np.pi * rss / n) + 1) + 2 * (self.edf_ + 1)
        self.Vp_ = A_inv * self.scale_

    def predict_link(self, X, exclude=None, se_fit=False):
        """
        Linear predictor for new data.

        Parameters
        ----------
        X : DataFrame
            New covariates. Columns of excluded terms must be present but their
            values are ignored.
        exclude : list of str or None, default=None
            Term labels to drop from the prediction, e.g. ``['s(subject)']``.
        se_fit : bool, default=False
            Whether to also return standard errors.

        Returns
        -------
        fit : ndarray of shape (n_samples,)
            Link-scale fitted values.
        se : ndarray of shape (n_samples,)
            Standard errors from the posterior covariance; only if se_fit.
        """
        check_is_fitted(self, ['coef_', 'Vp_'])
        self._check_columns(X)
        exclude = list(exclude or [])
        unknown = [lab for lab in exclude if lab not in self.term_spans_]
        if unknown:
            raise ValueError(f"Cannot exclude unknown terms {unknown}; model terms are {list(self.term_spans_)}")

        X_design = self._build_design(X, exclude=exclude)
        fit = X_design @ self.coef_
        if not se_fit:
            return fit
        var = np.einsum('ij,jk,ik->i', X_design, self.Vp_, X_design)
        return fit, np.sqrt(np.clip(var, 0, None))

    def predict(self, X, exclude=None):
        """
        Response-scale predictions (probabilities for the binomial family).
        """
        return self._linkinv(self.predict_link(X, exclude=exclude))

    def coef_table(self) -> pd.DataFrame:
        """
        Parametric coefficients with standard errors, z values and p values.
        """
        check_is_fitted(self, ['coef_', 'Vp_'])
        index = []
        if self.config.fit_intercept:
            index.append(0)
        for term in self.config.terms:
            if isinstance(term, PARAMETRIC_TERMS):
                index.extend(range(self.term_spans_[term.label].start, self.term_spans_[term.label].stop))
        estimate = self.coef_[index]
        std_error = np.sqrt(np.diag(self.Vp_)[index])
        z = estimate / std_error
        return pd.DataFrame({
            'estimate': estimate,
            'std_error': std_error,
            'z': z,
            'p_value': 2 * stats.norm.sf(np.abs(z)),
        }, index=pd.Index([self.feature_names_[i] for i in index], name='term'))

    def smooth_table(self) -> pd.DataFrame:
        """Number of coefficients and effective degrees of freedom per smooth."""
        check_is_fitted(self, ['coef_', 'term_edf_'])
        rows = [
            {'term': t.label, 'n_coef': len(self.feature_names_[self.term_spans_[t.label]]),
             'edf': self.term_edf_[t.label]}
            for t in self.config.terms if not isinstance(t, PARAMETRIC_TERMS)
        ]
        return pd.DataFrame(rows, columns=['term', 'n_coef', 'edf']).set_index('term')

    def save(self, path):
        joblib.dump(self, Path(path))

    @classmethod
    def load(cls, path):
        estimator = joblib.load(Path(path))
        if not isinstance(estimator, cls):
            raise ValueError(f"{path} does not hold a {cls.__name__}, got {type(estimator).__name__}")
        return estimator


def estimate_rho(estimator: GamEstimator, X, y, ar_start=None) -> float:
    """
    Lag-1 autocorrelation of Pearson residuals, counted within blocks only.

    Typically applied to a fit without AR structure to pick ``rho`` for a
    refit with ``GamArConfig``.
    """
    y = np.asarray(y, dtype=float)
    mu = estimator.predict(X)
    if estimator.config.family == Family.BINOMIAL:
        resid = (y - mu) / np.sqrt(mu * (1 - mu))
    else:
        resid = y - mu
    if ar_start is None:
        ar_start = np.zeros(len(y), dtype=bool)
    ar_start = np.asarray(ar_start, dtype=bool).copy()
    if len(ar_start):
        ar_start[0] = True
    pairs = ~ar_start[1:]
    if not np.any(pairs):
        raise ValueError("No within-block neighbours to estimate rho from")
    current = resid[1:][pairs]
    previous = resid[:-1][pairs]
    return float(np.sum(current * previous) / np.sqrt(np.sum(current ** 2) * np.sum(previous ** 2)))
