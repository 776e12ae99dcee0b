"""
Model Diagnostics
=================

Read-only reports over a fitted trajectory model:

- check_basis        : optimizer convergence + k-index test per smooth
- concurvity         : non-linear collinearity between model terms
- variance_components: SD of each penalized term with confidence interval
- summarize_model    : parametric / smooth term tables and fit overview
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Union

import numpy as np
import pandas as pd
from scipy import stats
from scipy.linalg import orth

from ._constants import (
    AGE_COL,
    DEFAULT_K_CHECK_REPS,
    DEFAULT_SEED,
    PARAMETRIC_NAMES,
    PENALIZED_TERMS,
    SMOOTH_TERMS,
    TERM_AGE,
    TERM_INDIVIDUAL,
    TERM_PARAMETRIC,
    TERM_YEAR,
)
from .trajectory import FittedTrajectoryModel

CONCURVITY_MEASURES = ("worst", "observed", "estimate")


# =============================================================================
# BASIS DIMENSION CHECK
# =============================================================================

@dataclass(frozen=True)
class BasisCheck:
    """Convergence summary of the fit plus the per-smooth k-index table."""

    converged: bool
    message: str
    n_evaluations: int
    n_failed: int
    table: pd.DataFrame

    @property
    def actionable(self) -> pd.DataFrame:
        return self.table[self.table["actionable"]]


def _k_index(x: np.ndarray, resid: np.ndarray, n_rep: int, rng: np.random.Generator):
    order = np.argsort(x, kind="mergesort")
    v_obs = np.mean(np.diff(resid[order]) ** 2) / 2
    v_perm = np.empty(n_rep)
    for i in range(n_rep):
        shuffled = resid[rng.permutation(len(resid))]
        v_perm[i] = np.mean(np.diff(shuffled) ** 2) / 2
    p_value = float(np.mean(v_perm < v_obs))
    return float(v_obs / np.mean(resid ** 2)), p_value


def check_basis(
    model: FittedTrajectoryModel,
    n_rep: int = DEFAULT_K_CHECK_REPS,
    seed: int = DEFAULT_SEED,
    alpha: float = 0.05,
) -> BasisCheck:
    """
    Test whether each smooth's basis dimension is adequate.

    Deviance residuals are ordered by the term's covariate; the mean squared
    difference of neighbouring residuals is compared with its distribution
    under random orderings. A low k-index (< 1) with p < alpha flags a basis
    that may be too small. For age, k cannot exceed the number of distinct
    ages minus the margin, so a flag at that ceiling is reported but not
    actionable.
    """
    rng = np.random.default_rng(seed)
    resid = np.asarray(model.family.resid_dev(model.endog, model.fitted_values()), dtype=float)

    rows = []
    for name in SMOOTH_TERMS:
        info = model.term(name)
        x = model.frame[info.column].to_numpy(dtype=float)
        k_index, p_value = _k_index(x, resid, n_rep, rng)
        n_distinct = int(model.frame[info.column].nunique())
        ceiling = model.spec.age_ceiling(n_distinct) if name == TERM_AGE else n_distinct
        at_ceiling = info.k >= ceiling
        flagged = p_value < alpha and k_index < 1
        rows.append(
            {
                "term": name,
                "k": info.k,
                "k_prime": len(info.columns),
                "edf": float(model.edf[info.columns].sum()),
                "k_index": k_index,
                "p_value": p_value,
                "ceiling": ceiling,
                "at_ceiling": bool(at_ceiling),
                "flagged": bool(flagged),
                "actionable": bool(flagged and not at_ceiling),
            }
        )

    opt = model.optimizer
    return BasisCheck(
        converged=bool(opt.get("converged", False)),
        message=str(opt.get("message", "")),
        n_evaluations=int(opt.get("n_evaluations", 0)),
        n_failed=int(opt.get("n_failed", 0)),
        table=pd.DataFrame(rows),
    )


# =============================================================================
# CONCURVITY
# =============================================================================

def _projection_measures(block: np.ndarray, fitted: np.ndarray, other: np.ndarray) -> Dict[str, float]:
    basis_other = orth(other)
    proj_fit = basis_other @ (basis_other.T @ fitted)
    proj_block = basis_other @ (basis_other.T @ block)

    fit_ss = float(fitted @ fitted)
    observed = float(proj_fit @ proj_fit) / fit_ss if fit_ss > 0 else 0.0
    estimate = float(np.sum(proj_block ** 2) / np.sum(block ** 2))
    basis_block = orth(block)
    singular = np.linalg.svd(basis_other.T @ basis_block, compute_uv=False)
    worst = float(singular.max() ** 2) if singular.size else 0.0
    return {
        "worst": min(max(worst, 0.0), 1.0),
        "observed": min(max(observed, 0.0), 1.0),
        "estimate": min(max(estimate, 0.0), 1.0),
    }


def concurvity(model: FittedTrajectoryModel, full: bool = True) -> Union[pd.DataFrame, Dict[str, pd.DataFrame]]:
    """
    Concurvity of each term with the rest of the model, as in mgcv.

    Parameters
    ----------
    full : bool
        True: one row per measure ("worst", "observed", "estimate") and one
        column per term, each term compared with all other terms together.
        False: dict of term-by-term matrices, one per measure, where entry
        (i, j) measures how much of term i lies in the span of term j.

    All values lie in [0, 1]; 0 means no concurvity.
    """
    exog = model.exog
    params = model.params
    names = [TERM_PARAMETRIC] + list(PENALIZED_TERMS)
    blocks = {name: model.term_columns(name) for name in names}

    if full:
        table = {}
        for name in names:
            cols = blocks[name]
            others = np.setdiff1d(np.arange(exog.shape[1]), cols)
            block = exog[:, cols]
            table[name] = _projection_measures(block, block @ params[cols], exog[:, others])
        return pd.DataFrame(table).loc[list(CONCURVITY_MEASURES)]

    matrices = {m: pd.DataFrame(np.nan, index=names, columns=names) for m in CONCURVITY_MEASURES}
    for name in names:
        block = exog[:, blocks[name]]
        fitted = block @ params[blocks[name]]
        for other in names:
            if other == name:
                values = dict.fromkeys(CONCURVITY_MEASURES, 1.0)
            else:
                values = _projection_measures(block, fitted, exog[:, blocks[other]])
            for measure in CONCURVITY_MEASURES:
                matrices[measure].loc[name, other] = values[measure]
    return matrices


# =============================================================================
# VARIANCE COMPONENTS
# =============================================================================

def variance_components(model: FittedTrajectoryModel, level: float = 0.95) -> pd.DataFrame:
    """
    Standard deviation implied by each smoothing parameter, ``1/sqrt(lambda)``.

    Confidence limits come from the numerical Hessian of the restricted
    likelihood in log-lambda. Random effects come first and are ranked by SD
    so the dominant source of between-group variation is explicit.
    """
    z = stats.norm.ppf(0.5 + level / 2)
    cov = model.log_param_cov

    rows = []
    for i, name in enumerate(PENALIZED_TERMS):
        lam = model.smoothing_params[name]
        sd = 1.0 / np.sqrt(lam)
        lower = upper = np.nan
        if cov is not None and np.isfinite(cov[i, i]) and cov[i, i] > 0:
            half_width = z * np.sqrt(cov[i, i]) / 2
            lower, upper = sd * np.exp(-half_width), sd * np.exp(half_width)
        rows.append(
            {
                "term": name,
                "kind": model.term(name).kind,
                "lambda": lam,
                "sd": sd,
                "lower": lower,
                "upper": upper,
            }
        )

    table = pd.DataFrame(rows)
    table["_order"] = (table["kind"] != "random").astype(int)
    table = table.sort_values(["_order", "sd"], ascending=[True, False]).drop(columns="_order")
    table["rank"] = table.groupby("kind").cumcount() + 1
    return table.reset_index(drop=True)


# =============================================================================
# SUMMARY
# =============================================================================

@dataclass(frozen=True)
class ModelSummary:
    parametric: pd.DataFrame
    smooth: pd.DataFrame
    overview: pd.DataFrame


def _wald_chi2(beta: np.ndarray, cov: np.ndarray, rank: int):
    u, s, vt = np.linalg.svd(cov)
    rank = max(1, min(rank, int(np.sum(s > s.max() * 1e-12))))
    inv = (vt[:rank].T / s[:rank]) @ u[:, :rank].T
    chi2 = float(beta @ inv @ beta)
    return chi2, rank


def summarize_model(model: FittedTrajectoryModel) -> ModelSummary:
    params = model.params
    cov = model.cov_params()

    cols = model.term_columns(TERM_PARAMETRIC)
    est = params[cols]
    se = np.sqrt(np.diag(cov)[cols])
    parametric = pd.DataFrame(
        {
            "term": PARAMETRIC_NAMES,
            "estimate": est,
            "se": se,
            "z": est / se,
            "p_value": 2 * stats.norm.sf(np.abs(est / se)),
        }
    )

    rows = []
    for name in PENALIZED_TERMS:
        info = model.term(name)
        edf = float(model.edf[info.columns].sum())
        beta = params[info.columns]
        chi2, df = _wald_chi2(beta, cov[np.ix_(info.columns, info.columns)], int(round(edf)))
        rows.append(
            {
                "term": name,
                "kind": info.kind,
                "edf": edf,
                "k_prime": len(info.columns),
                "chi2": chi2,
                "ref_df": df,
                "p_value": float(stats.chi2.sf(chi2, df)),
            }
        )
    smooth = pd.DataFrame(rows)

    y = model.endog
    mu = model.fitted_values()
    family = model.family
    deviance = float(family.deviance(y, mu, scale=1.0))
    null_deviance = float(family.deviance(y, np.full_like(y, y.mean()), scale=1.0))
    overview = pd.DataFrame(
        [
            {
                "n": model.nobs,
                "n_individuals": int(model.frame[model.term(TERM_INDIVIDUAL).column].nunique()),
                "n_years": int(model.frame[model.term(TERM_YEAR).column].nunique()),
                "n_ages": int(model.frame[AGE_COL].nunique()),
                "family": model.spec.family,
                "k_age": model.spec.k_age,
                "k_date": model.spec.k_date,
                "reml": model.reml,
                "deviance": deviance,
                "deviance_explained": 1 - deviance / null_deviance if null_deviance > 0 else np.nan,
                "dispersion": model.dispersion,
                "theta": model.theta,
                "scale": model.scale,
                "total_edf": float(model.edf.sum()),
            }
        ]
    )
    return ModelSummary(parametric=parametric, smooth=smooth, overview=overview)


def print_summary(summary: ModelSummary, basis: Optional[BasisCheck] = None) -> None:
    row = summary.overview.iloc[0]
    print(
        f"    N={row['n']}, individuals={row['n_individuals']}, years={row['n_years']}, "
        f"deviance explained={row['deviance_explained']:.1%}, theta={row['theta']:.3g}"
    )
    for _, r in summary.parametric.iterrows():
        print(f"    {r['term']:<10} b={r['estimate']:.4f}, SE={r['se']:.4f}, p={r['p_value']:.4f}")
    for _, r in summary.smooth.iterrows():
        print(f"    s({r['term']:<10}) edf={r['edf']:.2f}, chi2={r['chi2']:.2f}, p={r['p_value']:.4f}")
    if basis is not None:
        for _, r in basis.table.iterrows():
            status = "OK"
            if r["flagged"]:
                status = "k may be too low" if r["actionable"] else "k at ceiling (not actionable)"
            print(f"    k-check {r['term']:<6} k'={r['k_prime']}, k-index={r['k_index']:.3f}, p={r['p_value']:.3f} [{status}]")
