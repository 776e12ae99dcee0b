"""
Breakpoint Analyzer
===================

Works on the per-age estimates (columns ``age``, ``xz``, ``se``):

1. fit_weighted_trend : single-slope WLS of xz on age, weights 1/se
2. davies_test        : test for a change in slope (Davies 1987 bound)
3. fit_segmented      : two-segment continuous regression, breakpoint by
                        iterative linearization with bootstrap restarts
4. analyze_breakpoint : runs 1-3, fitting the segmented model only when the
                        Davies test supports a change in slope
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from scipy import stats

from ._constants import AGE_COL, DEFAULT_ALPHA, DEFAULT_N_BOOT, DEFAULT_SEED
from .errors import ConvergenceError, InsufficientDataError

VALID_ALTERNATIVES = ("two.sided", "greater", "less")

# 1 - weighted R^2 below this is treated as an exact straight line
_EXACT_LINE_TOL = 1e-9

MIN_SEGMENT_AGES = 2


def _validated(estimates: pd.DataFrame, min_ages: int = 3) -> pd.DataFrame:
    missing = [col for col in (AGE_COL, "xz", "se") if col not in estimates.columns]
    if missing:
        raise InsufficientDataError("Per-age estimates lack required columns", column=missing[0])

    df = estimates[[AGE_COL, "xz", "se"]].astype(float).sort_values(AGE_COL).reset_index(drop=True)
    se = df["se"].to_numpy()
    if not np.all(np.isfinite(se)) or np.any(se <= 0):
        raise InsufficientDataError(
            "Standard errors must be positive and finite to form 1/se weights",
            column="se",
        )
    if df[AGE_COL].nunique() < min_ages:
        raise InsufficientDataError(
            f"At least {min_ages} distinct ages are required (found {df[AGE_COL].nunique()})",
            column=AGE_COL,
        )
    df["weight"] = 1.0 / df["se"]
    return df


def fit_weighted_trend(estimates: pd.DataFrame):
    """WLS fit of ``xz ~ age`` with weights ``1/se`` (statsmodels results)."""
    df = _validated(estimates)
    return smf.wls("xz ~ age", data=df, weights=df["weight"]).fit()


# =============================================================================
# DAVIES TEST
# =============================================================================

@dataclass(frozen=True)
class DaviesTest:
    statistic: float
    p_value: float
    psi_best: float
    k: int
    alternative: str
    candidates: np.ndarray
    t_values: np.ndarray


def _hinge_t(age: np.ndarray, y: np.ndarray, w: np.ndarray, psi: float) -> float:
    X = np.column_stack([np.ones_like(age), age, np.maximum(age - psi, 0.0)])
    res = sm.WLS(y, X, weights=w).fit()
    return float(res.tvalues[2])


def davies_test(
    estimates: pd.DataFrame,
    k: Optional[int] = None,
    alternative: str = "two.sided",
) -> DaviesTest:
    """
    Test for a non-zero difference in slope at an unknown breakpoint.

    The hinge ``(age - psi)+`` is added to the weighted trend at ``k``
    evenly spaced interior points; the t statistics of the hinge enter the
    Davies (1987) upper bound:

        p = Phi(-M) + V * exp(-M^2 / 2) / sqrt(8 pi)

    with M the maximum statistic and V the total variation of the statistic
    over the grid (doubled for the two-sided alternative). With consecutive
    integer ages and the default ``k = n_ages - 2`` the grid is the interior
    ages. An exactly straight line reports p = 1.
    """
    if alternative not in VALID_ALTERNATIVES:
        raise ValueError(f"alternative must be one of {VALID_ALTERNATIVES} (got {alternative!r})")

    df = _validated(estimates, min_ages=4)
    age = df[AGE_COL].to_numpy()
    y = df["xz"].to_numpy()
    w = df["weight"].to_numpy()

    if k is None:
        k = len(df) - 2
    if k < 1:
        raise ValueError(f"k must be at least 1 (got {k})")
    candidates = np.linspace(age.min(), age.max(), k + 2)[1:-1]

    trend = sm.WLS(y, np.column_stack([np.ones_like(age), age]), weights=w).fit()
    if 1.0 - trend.rsquared < _EXACT_LINE_TOL:
        nan = np.full(k, np.nan)
        return DaviesTest(0.0, 1.0, float("nan"), k, alternative, candidates, nan)

    t_values = np.array([_hinge_t(age, y, w, psi) for psi in candidates])
    # a hinge that fits exactly gives an infinite statistic
    z = np.nan_to_num(t_values, nan=0.0, posinf=1e6, neginf=-1e6)
    if alternative == "two.sided":
        z = np.abs(z)
    elif alternative == "less":
        z = -z

    best = int(np.argmax(z))
    M = float(z[best])
    V = float(np.sum(np.abs(np.diff(z))))
    p = stats.norm.sf(M) + V * np.exp(-0.5 * M ** 2) / np.sqrt(8 * np.pi)
    if alternative == "two.sided":
        p *= 2
    return DaviesTest(
        statistic=M,
        p_value=float(min(1.0, p)),
        psi_best=float(candidates[best]),
        k=k,
        alternative=alternative,
        candidates=candidates,
        t_values=t_values,
    )


# =============================================================================
# SEGMENTED REGRESSION
# =============================================================================

@dataclass(frozen=True)
class SegmentedFit:
    breakpoint: float
    breakpoint_se: float
    breakpoint_lower: float
    breakpoint_upper: float
    slope1: float
    slope1_se: float
    slope1_t: float
    slope1_p: float
    slope2: float
    slope2_se: float
    slope2_t: float
    slope2_p: float
    slope_difference: float
    intercept: float
    rss: float
    df_resid: int
    n_boot: int
    converged: bool

    def predict(self, age) -> np.ndarray:
        age = np.asarray(age, dtype=float)
        return self.intercept + self.slope1 * age + self.slope_difference * np.maximum(age - self.breakpoint, 0.0)


@dataclass
class _Iteration:
    psi: float
    rss: float
    result: object
    converged: bool


def _linearized_fit(age, y, w, psi):
    U = np.maximum(age - psi, 0.0)
    V = -(age > psi).astype(float)
    X = np.column_stack([np.ones_like(age), age, U, V])
    return sm.WLS(y, X, weights=w).fit()


def _segments_supported(age: np.ndarray, psi: float) -> bool:
    """Each slope must rest on at least two ages strictly on its own side of psi."""
    return bool(np.sum(age < psi) >= MIN_SEGMENT_AGES and np.sum(age > psi) >= MIN_SEGMENT_AGES)


def _muggeo(age, y, w, psi0, max_iter: int = 50, tol: float = 1e-7) -> Optional[_Iteration]:
    """Iterate psi <- psi + gamma / beta, keeping psi strictly inside the age range."""
    lo, hi = age.min(), age.max()
    psi = float(psi0)
    if not lo < psi < hi:
        return None

    converged = False
    for _ in range(max_iter):
        res = _linearized_fit(age, y, w, psi)
        beta, gamma = res.params[2], res.params[3]
        if not np.isfinite(beta) or abs(beta) < 1e-12:
            return None
        step = gamma / beta
        h = 1.0
        new = psi + step
        while not lo < new < hi:
            h /= 2
            if h < 1e-6:
                return None
            new = psi + h * step
        if abs(new - psi) < tol * max(1.0, abs(psi)):
            psi = new
            converged = True
            break
        psi = new

    if not _segments_supported(age, psi):
        return None
    res = _linearized_fit(age, y, w, psi)
    return _Iteration(psi=psi, rss=float(res.ssr), result=res, converged=converged)


def fit_segmented(
    estimates: pd.DataFrame,
    psi0: Optional[float] = None,
    n_boot: int = DEFAULT_N_BOOT,
    seed: int = DEFAULT_SEED,
    level: float = 0.95,
) -> SegmentedFit:
    """
    Continuous two-segment WLS of ``xz`` on ``age`` with weights ``1/se``.

    Parameters
    ----------
    psi0 : float, optional
        Starting breakpoint; defaults to the midpoint of the age range.
    n_boot : int
        Bootstrap restarts. Each resamples the per-age points, re-estimates
        the breakpoint on the resample and uses it as a new start on the
        full data; the solution with the lowest weighted RSS is kept.
    seed : int
        Seed for the resampling.
    """
    df = _validated(estimates, min_ages=5)
    age = df[AGE_COL].to_numpy()
    y = df["xz"].to_numpy()
    w = df["weight"].to_numpy()
    n = len(df)

    if psi0 is None or not np.isfinite(psi0):
        psi0 = float(age.min() + age.max()) / 2
    best = _muggeo(age, y, w, psi0)

    rng = np.random.default_rng(seed)
    for _ in range(n_boot):
        idx = rng.integers(0, n, n)
        if np.unique(age[idx]).size < 4:
            continue
        start = best.psi if best is not None else psi0
        boot = _muggeo(age[idx], y[idx], w[idx], start)
        if boot is None:
            continue
        candidate = _muggeo(age, y, w, boot.psi)
        if candidate is not None and (best is None or candidate.rss < best.rss - 1e-12):
            best = candidate

    if best is None:
        raise ConvergenceError(
            "Breakpoint iteration left the observed age range from every start",
            column=AGE_COL,
            stage="breakpoint",
        )

    res = best.result
    params = np.asarray(res.params)
    cov = np.asarray(res.cov_params())
    df_resid = n - 4
    slope1, slope_diff = params[1], params[2]
    slope2 = slope1 + slope_diff
    se1 = np.sqrt(cov[1, 1])
    se2 = np.sqrt(cov[1, 1] + cov[2, 2] + 2 * cov[1, 2])
    t1, t2 = slope1 / se1, slope2 / se2
    psi_se = np.sqrt(cov[3, 3]) / abs(slope_diff)
    crit = stats.t.ppf(0.5 + level / 2, df_resid)

    # intercept of the continuous fit at the final breakpoint
    X = np.column_stack([np.ones_like(age), age, np.maximum(age - best.psi, 0.0)])
    continuous = sm.WLS(y, X, weights=w).fit()

    return SegmentedFit(
        breakpoint=best.psi,
        breakpoint_se=float(psi_se),
        breakpoint_lower=float(best.psi - crit * psi_se),
        breakpoint_upper=float(best.psi + crit * psi_se),
        slope1=float(slope1),
        slope1_se=float(se1),
        slope1_t=float(t1),
        slope1_p=float(2 * stats.t.sf(abs(t1), df_resid)),
        slope2=float(slope2),
        slope2_se=float(se2),
        slope2_t=float(t2),
        slope2_p=float(2 * stats.t.sf(abs(t2), df_resid)),
        slope_difference=float(slope_diff),
        intercept=float(continuous.params[0]),
        rss=best.rss,
        df_resid=df_resid,
        n_boot=n_boot,
        converged=best.converged,
    )


# =============================================================================
# ANALYSIS
# =============================================================================

@dataclass(frozen=True)
class BreakpointAnalysis:
    trend: object
    davies: DaviesTest
    segmented: Optional[SegmentedFit]
    justified: bool
    alpha: float

    def to_frame(self) -> pd.DataFrame:
        row = {
            "trend_slope": float(self.trend.params["age"]),
            "trend_slope_se": float(self.trend.bse["age"]),
            "trend_slope_p": float(self.trend.pvalues["age"]),
            "trend_r_squared": float(self.trend.rsquared),
            "davies_k": self.davies.k,
            "davies_statistic": self.davies.statistic,
            "davies_p": self.davies.p_value,
            "davies_psi": self.davies.psi_best,
            "alpha": self.alpha,
            "breakpoint_justified": self.justified,
        }
        if self.segmented is not None:
            seg = self.segmented
            row.update(
                {
                    "breakpoint": seg.breakpoint,
                    "breakpoint_se": seg.breakpoint_se,
                    "breakpoint_lower": seg.breakpoint_lower,
                    "breakpoint_upper": seg.breakpoint_upper,
                    "slope1": seg.slope1,
                    "slope1_se": seg.slope1_se,
                    "slope1_p": seg.slope1_p,
                    "slope2": seg.slope2,
                    "slope2_se": seg.slope2_se,
                    "slope2_p": seg.slope2_p,
                    "slope_difference": seg.slope_difference,
                    "weighted_rss": seg.rss,
                    "n_boot": seg.n_boot,
                    "segmented_converged": seg.converged,
                }
            )
        return pd.DataFrame([row])


def analyze_breakpoint(
    estimates: pd.DataFrame,
    alpha: float = DEFAULT_ALPHA,
    require_significant: bool = True,
    k: Optional[int] = None,
    n_boot: int = DEFAULT_N_BOOT,
    seed: int = DEFAULT_SEED,
    verbose: bool = False,
) -> BreakpointAnalysis:
    """
    Weighted trend, Davies test and (when justified) the segmented fit.

    With ``require_significant=True`` the segmented model is only fitted
    when the Davies p-value is below ``alpha``; otherwise ``segmented`` is
    None. Setting it to False always fits the segmented model, but
    ``justified`` still reflects the test.
    """
    trend = fit_weighted_trend(estimates)
    davies = davies_test(estimates, k=k)
    justified = davies.p_value < alpha

    if verbose:
        print(
            f"[INFO] Weighted trend: slope={trend.params['age']:.4f} (p={trend.pvalues['age']:.4f}); "
            f"Davies test: k={davies.k}, p={davies.p_value:.4g}"
        )

    segmented = None
    if justified or not require_significant:
        if not justified and verbose:
            print("[WARN] Fitting segmented model although the Davies test is not significant")
        segmented = fit_segmented(estimates, psi0=davies.psi_best, n_boot=n_boot, seed=seed)
        if verbose:
            print(
                f"[INFO] Breakpoint at age {segmented.breakpoint:.2f} "
                f"[{segmented.breakpoint_lower:.2f}, {segmented.breakpoint_upper:.2f}]; "
                f"slope1={segmented.slope1:.4f} (p={segmented.slope1_p:.4f}), "
                f"slope2={segmented.slope2:.4f} (p={segmented.slope2_p:.4f})"
            )
    elif verbose:
        print(f"[INFO] No breakpoint: Davies p={davies.p_value:.4g} >= alpha={alpha}")

    return BreakpointAnalysis(trend=trend, davies=davies, segmented=segmented, justified=justified, alpha=alpha)
