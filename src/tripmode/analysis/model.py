"""Logistic regression of active-mode choice with heteroskedasticity-robust standard errors."""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

import numpy as np
import pandas as pd
import polars as pl
import statsmodels.api as sm
from scipy import stats
from scipy.special import expit
from statsmodels.tools.sm_exceptions import PerfectSeparationError, PerfectSeparationWarning

from tripmode.errors import ModelFitError

logger = logging.getLogger(__name__)

CONST = "const"


def _to_pandas(df: pl.DataFrame | pd.DataFrame) -> pd.DataFrame:
    return df.to_pandas() if isinstance(df, pl.DataFrame) else df


def design_matrix(df: pl.DataFrame | pd.DataFrame, terms: Sequence[str]) -> pd.DataFrame:
    """Float design matrix with an intercept column first."""
    pdf = _to_pandas(df)
    missing = [t for t in terms if t not in pdf.columns]
    if missing:
        raise ModelFitError(f"Model terms not found in data: {missing}")
    X = pdf[list(terms)].astype(float).reset_index(drop=True)
    return sm.add_constant(X, has_constant="add")


@dataclass
class ModelResult:
    outcome: str
    terms: List[str]
    results: Any  # statsmodels BinaryResultsWrapper
    cov_type: str

    @property
    def n_obs(self) -> int:
        return int(self.results.nobs)

    @property
    def params(self) -> pd.Series:
        return self.results.params

    @property
    def robust_se(self) -> pd.Series:
        return self.results.bse

    def coefficient_table(self, alpha: float = 0.05) -> pd.DataFrame:
        """Coefficients, robust SEs, z, p and odds ratios with confidence limits."""
        ci = self.results.conf_int(alpha=alpha)
        table = pd.DataFrame({
            "term": self.params.index,
            "coef": self.params.values,
            "robust_se": self.robust_se.values,
            "z": self.results.tvalues.values,
            "p_value": self.results.pvalues.values,
            "ci_low": ci.iloc[:, 0].values,
            "ci_high": ci.iloc[:, 1].values,
        })
        table["odds_ratio"] = np.exp(table["coef"])
        table["or_ci_low"] = np.exp(table["ci_low"])
        table["or_ci_high"] = np.exp(table["ci_high"])
        return table

    def fit_statistics(self) -> Dict[str, float]:
        return {
            "n_obs": float(self.n_obs),
            "log_likelihood": float(self.results.llf),
            "null_log_likelihood": float(self.results.llnull),
            "pseudo_r2": float(self.results.prsquared),
            "aic": float(self.results.aic),
        }

    def predict_with_ci(self, profiles: pl.DataFrame | pd.DataFrame, alpha: float = 0.05) -> pd.DataFrame:
        """
        Predicted probabilities for covariate profiles, with delta-method
        confidence limits computed on the logit scale from the robust covariance.
        """
        X = design_matrix(profiles, self.terms)
        beta = self.params[X.columns].to_numpy()
        V = self.results.cov_params().loc[X.columns, X.columns].to_numpy()
        Xm = X.to_numpy()
        eta = Xm @ beta
        se = np.sqrt(np.einsum("ij,jk,ik->i", Xm, V, Xm))
        z = stats.norm.ppf(1 - alpha / 2)
        out = _to_pandas(profiles).reset_index(drop=True).copy()
        out["probability"] = expit(eta)
        out["ci_low"] = expit(eta - z * se)
        out["ci_high"] = expit(eta + z * se)
        return out


def fit_logit(
    df: pl.DataFrame | pd.DataFrame,
    outcome: str,
    terms: Sequence[str],
    cov_type: str = "HC1",
    maxiter: int = 100,
) -> ModelResult:
    """
    Fit outcome ~ terms by maximum likelihood.

    Raises ModelFitError when the outcome does not vary, a term is constant,
    the likelihood does not converge, or the design is singular/separated.
    """
    pdf = _to_pandas(df)
    if outcome not in pdf.columns:
        raise ModelFitError(f"Outcome '{outcome}' not found in data")
    y = pdf[outcome].astype(float).reset_index(drop=True)
    if y.nunique() < 2:
        raise ModelFitError(f"Outcome '{outcome}' has no variation ({int(y.sum())} of {len(y)} positive)")

    X = design_matrix(pdf, terms)
    constant = [t for t in terms if X[t].nunique() < 2]
    if constant:
        raise ModelFitError(f"Model terms with no variation: {constant}")

    logger.info(f"Model: fitting logit {outcome} ~ {' + '.join(terms)} on {len(y):,} trips ({cov_type} SEs)")
    # statsmodels >= 0.14 only warns on perfect separation
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("error", PerfectSeparationWarning)
            results = sm.Logit(y, X).fit(disp=0, maxiter=maxiter, cov_type=cov_type)
    except (np.linalg.LinAlgError, PerfectSeparationError, PerfectSeparationWarning) as e:
        raise ModelFitError(f"Logit fit failed: {e}") from e

    if not results.mle_retvals.get("converged", False):
        raise ModelFitError(f"Logit did not converge in {maxiter} iterations")

    logger.info(f"Model: completed, pseudo R2 = {results.prsquared:.4f}, log-likelihood = {results.llf:,.2f}")
    return ModelResult(outcome=outcome, terms=list(terms), results=results, cov_type=cov_type)


def effect_profiles(
    df: pl.DataFrame | pd.DataFrame,
    terms: Sequence[str],
    vary: str,
    values: Sequence[float],
) -> pd.DataFrame:
    """
    Covariate profiles that vary one term over values and hold every other
    term at its sample mean.
    """
    pdf = _to_pandas(df)
    if vary not in terms:
        raise ModelFitError(f"'{vary}' is not a model term")
    means = pdf[list(terms)].astype(float).mean()
    profiles = pd.DataFrame({t: np.repeat(means[t], len(values)) for t in terms})
    profiles[vary] = np.asarray(values, dtype=float)
    return profiles
