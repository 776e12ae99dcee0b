"""
Trajectory Model Fitter
=======================

Additive mixed model of clutch size on age:

    log(E[clutch_size]) = f_age(age) + f_date(julian_date) + b * lifespan
                          + u_individual + u_year

Smooth terms are centered cubic B-splines with an integrated squared
second-derivative penalty. Random intercepts are one-hot blocks with an
identity (ridge) penalty, so a penalty weight ``lam`` corresponds to a
random-effect SD of ``1 / sqrt(lam)`` on the link scale.

Penalized fits at fixed smoothing parameters use statsmodels' ``GLMGam``
(penalized IRLS). Smoothing parameters and the dispersion (negative
binomial alpha or quasi-Poisson scale) are chosen by maximizing a
Laplace-approximate restricted likelihood with ``scipy.optimize.minimize``.

Clutch sizes usually vary less than a Poisson count would. With
``family="auto"`` a Poisson screening fit decides: Pearson chi2/df below 1
selects quasi-Poisson (variance ``phi * mu`` with ``phi`` estimated, so
``phi < 1`` is allowed), otherwise the negative binomial
(variance ``mu + alpha * mu**2``).
"""

from __future__ import annotations

import warnings
from dataclasses import asdict, dataclass, field, replace
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.linalg import block_diag
from scipy.optimize import minimize
from statsmodels.gam.api import GLMGam
from statsmodels.gam.smooth_basis import (
    GenericSmoothers,
    UnivariateBSplines,
    UnivariateGenericSmoother,
)
from statsmodels.tools.numdiff import approx_hess
from statsmodels.tools.sm_exceptions import ConvergenceWarning, PerfectSeparationError

from ._constants import (
    AGE_COL,
    CLUTCH_COL,
    DATE_COL,
    DEFAULT_FAMILY,
    DEFAULT_K_AGE_MARGIN,
    DEFAULT_K_DATE,
    DEFAULT_SPLINE_DEGREE,
    INDIVIDUAL_COL,
    LIFESPAN_COL,
    PENALIZED_TERMS,
    RANDOM_TERMS,
    TERM_AGE,
    TERM_COLUMNS,
    TERM_DATE,
    TERM_PARAMETRIC,
    VALID_FAMILIES,
    YEAR_COL,
)
from .errors import ConvergenceError, InsufficientDataError
from .loaders import eligible_records

MODEL_COLUMNS = [INDIVIDUAL_COL, AGE_COL, CLUTCH_COL, DATE_COL, LIFESPAN_COL, YEAR_COL]

# Objective value returned for parameter points where the inner fit fails
_FAILED_FIT = 1e12


# =============================================================================
# MODEL SPECIFICATION
# =============================================================================

@dataclass(frozen=True)
class ModelSpec:
    """
    Model and optimizer settings for the trajectory model.

    Attributes
    ----------
    k_age : int, optional
        Basis dimension of the age smooth. None derives it from the data as
        ``n_distinct_ages - k_age_margin`` (never below 3).
    k_age_margin : int
        Margin below the number of distinct ages used when ``k_age`` is None.
    k_date : int
        Basis dimension of the laying-date smooth (capped at the number of
        distinct dates).
    spline_degree : int
        B-spline degree; lowered automatically for small ``k``.
    family : str
        "auto" (default; chosen from the Pearson dispersion of a Poisson
        screening fit), "negative_binomial", "quasi_poisson" or "poisson".
    """

    k_age: Optional[int] = None
    k_age_margin: int = DEFAULT_K_AGE_MARGIN
    k_date: int = DEFAULT_K_DATE
    spline_degree: int = DEFAULT_SPLINE_DEGREE
    family: str = DEFAULT_FAMILY
    log_lambda_bounds: Tuple[float, float] = (-12.0, 18.0)
    log_dispersion_bounds: Tuple[float, float] = (-15.0, 3.0)
    start_log_lambda: Tuple[float, float, float, float] = (0.0, 0.0, 4.0, 4.0)
    start_log_dispersion: float = -3.0
    log_scale_bounds: Tuple[float, float] = (-6.0, 3.0)
    start_log_scale: float = 0.0
    simplex_step: float = 2.0
    max_evaluations: int = 3000
    xatol: float = 1e-2
    tol: float = 1e-5
    pirls_maxiter: int = 200
    pirls_tol: float = 1e-9
    hessian_step: float = 0.1
    variance_hessian: bool = True

    def __post_init__(self):
        if self.family not in VALID_FAMILIES:
            raise ValueError(f"Unknown family: {self.family}. Valid families: {sorted(VALID_FAMILIES)}")
        if self.k_age is not None and self.k_age < 3:
            raise ValueError(f"k_age must be at least 3 (got {self.k_age})")
        if self.k_date < 3:
            raise ValueError(f"k_date must be at least 3 (got {self.k_date})")

    def resolve(self, n_ages: int, n_dates: int) -> "ModelSpec":
        """Return a copy with data-dependent basis dimensions filled in."""
        if self.k_age is None:
            k_age = max(3, n_ages - self.k_age_margin)
        else:
            k_age = self.k_age
        if k_age > n_ages:
            raise ValueError(
                f"k_age={k_age} exceeds the number of distinct ages ({n_ages}); "
                "the age smooth cannot be more flexible than the age classes allow."
            )
        return replace(self, k_age=k_age, k_date=min(self.k_date, n_dates))

    def age_ceiling(self, n_ages: int) -> int:
        return max(3, n_ages - self.k_age_margin)

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# MODEL FRAME
# =============================================================================

def build_model_frame(records: pd.DataFrame, verbose: bool = True) -> pd.DataFrame:
    """
    Select eligible records (known lifespan, complete model columns).

    Raises InsufficientDataError when the remaining data cannot identify the
    model: no rows, fewer than three ages or laying dates, a grouping factor
    with fewer than two levels, or a grouping factor whose levels all hold a
    single observation.
    """
    eligible = eligible_records(records)
    frame = eligible.dropna(subset=MODEL_COLUMNS)
    n_dropped = len(eligible) - len(frame)
    if n_dropped and verbose:
        print(f"[WARN] Dropped {n_dropped} eligible records with missing model columns")

    if frame.empty:
        raise InsufficientDataError("No records with known lifespan available for model fitting")

    frame = frame[MODEL_COLUMNS].reset_index(drop=True)
    frame[INDIVIDUAL_COL] = frame[INDIVIDUAL_COL].astype(str)
    frame[YEAR_COL] = frame[YEAR_COL].astype(str)

    if frame[AGE_COL].nunique() < 3:
        raise InsufficientDataError(
            f"At least 3 distinct ages are required (found {frame[AGE_COL].nunique()})",
            column=AGE_COL,
        )
    if frame[DATE_COL].nunique() < 3:
        raise InsufficientDataError(
            f"At least 3 distinct laying dates are required (found {frame[DATE_COL].nunique()})",
            column=DATE_COL,
        )
    for term in RANDOM_TERMS:
        col = TERM_COLUMNS[term]
        counts = frame[col].value_counts()
        if len(counts) < 2:
            raise InsufficientDataError(
                f"Random effect needs at least 2 levels (found {len(counts)})",
                column=col,
                term=term,
            )
        if counts.max() < 2:
            raise InsufficientDataError(
                "Every level holds a single observation; the random-effect variance "
                "is not identifiable",
                column=col,
                term=term,
            )
    return frame


# =============================================================================
# DESIGN
# =============================================================================

@dataclass(frozen=True)
class TermInfo:
    """Explicit mapping from a logical term name to its coefficient columns."""

    name: str
    kind: str
    column: Optional[str]
    columns: np.ndarray
    smoother_index: Optional[int] = None
    k: Optional[int] = None


def _spline_smoother(x: np.ndarray, k: int, degree: int, name: str) -> UnivariateBSplines:
    degree = min(degree, k - 1)
    n_inner = k - degree - 1
    # equal spacing needs two inner knots to define the knot step
    spacing = "equal" if n_inner >= 2 else "quantile"
    return UnivariateBSplines(
        x,
        df=k,
        degree=degree,
        include_intercept=True,
        constraints="center",
        variable_name=name,
        spacing=spacing,
    )


def _random_effect_smoother(values: pd.Series, name: str) -> Tuple[UnivariateGenericSmoother, pd.Index]:
    codes, levels = pd.factorize(values, sort=True)
    basis = np.zeros((len(codes), len(levels)))
    basis[np.arange(len(codes)), codes] = 1.0
    smoother = UnivariateGenericSmoother(
        codes.astype(float),
        basis,
        None,
        None,
        np.eye(len(levels)),
        variable_name=name,
    )
    return smoother, pd.Index(levels)


@dataclass
class _Design:
    endog: np.ndarray
    exog_linear: np.ndarray
    smoother: GenericSmoothers
    terms: Dict[str, TermInfo]
    levels: Dict[str, pd.Index]
    penalty_scale: np.ndarray
    penalty_rank: np.ndarray
    penalty_logdet: np.ndarray
    null_dim: int

    @property
    def penalties(self) -> List[np.ndarray]:
        return [s.cov_der2 for s in self.smoother.smoothers]

    def penalty_weights(self, log_lambda: np.ndarray) -> np.ndarray:
        return np.exp(log_lambda) * self.penalty_scale

    def penalty_matrix(self, weights: np.ndarray) -> np.ndarray:
        blocks = [np.zeros((self.exog_linear.shape[1], self.exog_linear.shape[1]))]
        blocks += [w * pen for w, pen in zip(weights, self.penalties)]
        return block_diag(*blocks)

    def log_det_penalty(self, weights: np.ndarray) -> float:
        return float(np.sum(self.penalty_rank * np.log(weights) + self.penalty_logdet))


def _build_design(frame: pd.DataFrame, spec: ModelSpec) -> _Design:
    endog = frame[CLUTCH_COL].to_numpy(dtype=float)
    lifespan = frame[LIFESPAN_COL].to_numpy(dtype=float)
    exog_linear = np.column_stack([np.ones(len(frame)), lifespan])

    age_smoother = _spline_smoother(frame[AGE_COL].to_numpy(dtype=float), spec.k_age, spec.spline_degree, "age")
    date_smoother = _spline_smoother(frame[DATE_COL].to_numpy(dtype=float), spec.k_date, spec.spline_degree, "date")
    ind_smoother, ind_levels = _random_effect_smoother(frame[INDIVIDUAL_COL], "individual")
    year_smoother, year_levels = _random_effect_smoother(frame[YEAR_COL], "year")

    smoothers = [age_smoother, date_smoother, ind_smoother, year_smoother]
    x = np.column_stack([s.x for s in smoothers])
    smoother = GenericSmoothers(x, smoothers)

    k_linear = exog_linear.shape[1]
    terms: Dict[str, TermInfo] = {
        TERM_PARAMETRIC: TermInfo(TERM_PARAMETRIC, "parametric", None, np.arange(k_linear)),
    }
    scale, rank, logdet = [], [], []
    for index, (name, sm_obj) in enumerate(zip(PENALIZED_TERMS, smoothers)):
        kind = "random" if name in RANDOM_TERMS else "smooth"
        columns = k_linear + np.nonzero(smoother.mask[index])[0]
        k = {TERM_AGE: spec.k_age, TERM_DATE: spec.k_date}.get(name)
        terms[name] = TermInfo(name, kind, TERM_COLUMNS[name], columns, index, k)

        penalty = np.asarray(sm_obj.cov_der2, dtype=float)
        if kind == "smooth":
            basis = np.asarray(sm_obj.basis)
            pen_norm = np.linalg.norm(penalty)
            scale.append(np.linalg.norm(basis.T @ basis) / pen_norm if pen_norm > 0 else 1.0)
        else:
            scale.append(1.0)
        eig = np.linalg.eigvalsh(penalty)
        positive = eig > eig.max() * 1e-10
        rank.append(int(positive.sum()))
        logdet.append(float(np.sum(np.log(eig[positive]))))

    n_params = k_linear + smoother.dim_basis
    return _Design(
        endog=endog,
        exog_linear=exog_linear,
        smoother=smoother,
        terms=terms,
        levels={"individual": ind_levels, "year": year_levels},
        penalty_scale=np.asarray(scale),
        penalty_rank=np.asarray(rank),
        penalty_logdet=np.asarray(logdet),
        null_dim=int(n_params - np.sum(rank)),
    )


# =============================================================================
# PENALIZED FIT + RESTRICTED LIKELIHOOD
# =============================================================================

@dataclass
class _InnerFit:
    result: object
    weights: np.ndarray
    dispersion: float
    laml: float
    converged: bool
    hessian: np.ndarray
    penalty: np.ndarray


class _RemlObjective:
    """Negative Laplace-approximate REML as a function of log parameters."""

    def __init__(self, design: _Design, spec: ModelSpec):
        self.design = design
        self.spec = spec
        self.n_penalties = len(PENALIZED_TERMS)
        self.n_evaluations = 0
        self.n_failed = 0
        self._start: Optional[np.ndarray] = None

    def family(self, rho: np.ndarray):
        """Return (statsmodels family, dispersion, scale) at the log parameters."""
        if self.spec.family == "poisson":
            return sm.families.Poisson(), 0.0, 1.0
        dispersion = float(np.exp(rho[self.n_penalties]))
        if self.spec.family == "quasi_poisson":
            return sm.families.Poisson(), dispersion, dispersion
        return sm.families.NegativeBinomial(alpha=dispersion), dispersion, 1.0

    def loglike(self, family, mu: np.ndarray, scale: float) -> float:
        y = self.design.endog
        if self.spec.family != "quasi_poisson":
            return float(family.loglike(y, mu, scale=1.0))
        # extended quasi-likelihood; V(y) is offset by 1/6 so zero counts stay finite
        deviance = float(family.deviance(y, mu, scale=1.0))
        return -0.5 * deviance / scale - 0.5 * float(np.sum(np.log(2 * np.pi * scale * (y + 1.0 / 6))))

    def fit(self, rho: np.ndarray) -> _InnerFit:
        design = self.design
        weights = design.penalty_weights(rho[: self.n_penalties])
        family, dispersion, scale = self.family(rho)

        # penalized IRLS maximizes loglike/scale - b'Sb/2, i.e. loglike - scale*b'Sb/2
        model = GLMGam(
            design.endog,
            exog=design.exog_linear,
            smoother=design.smoother,
            alpha=weights * scale,
            family=family,
        )
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", ConvergenceWarning)
            result = model.fit(
                start_params=self._start,
                maxiter=self.spec.pirls_maxiter,
                tol=self.spec.pirls_tol,
                scale=scale,
            )
        converged = bool(getattr(result, "converged", True)) and not any(
            issubclass(w.category, ConvergenceWarning) for w in caught
        )

        exog = np.asarray(model.exog)
        params = np.asarray(result.params)
        eta = exog @ params
        mu = family.link.inverse(eta)
        loglike = self.loglike(family, mu, scale)
        w = family.weights(mu) / scale
        hessian = exog.T @ (exog * w[:, None])
        penalty = design.penalty_matrix(weights)
        sign, logdet = np.linalg.slogdet(hessian + penalty)
        if sign <= 0:
            raise np.linalg.LinAlgError("Penalized Hessian is not positive definite")

        laml = (
            loglike
            - 0.5 * float(params @ penalty @ params)
            + 0.5 * design.log_det_penalty(weights)
            - 0.5 * logdet
            + 0.5 * design.null_dim * np.log(2 * np.pi)
        )
        return _InnerFit(result, weights, dispersion, laml, converged, hessian, penalty)

    def __call__(self, rho: np.ndarray) -> float:
        self.n_evaluations += 1
        try:
            inner = self.fit(np.asarray(rho, dtype=float))
        except (np.linalg.LinAlgError, PerfectSeparationError):
            self.n_failed += 1
            return _FAILED_FIT
        if not inner.converged or not np.isfinite(inner.laml):
            self.n_failed += 1
            return _FAILED_FIT
        self._start = np.asarray(inner.result.params)
        return -inner.laml


# =============================================================================
# FITTED MODEL
# =============================================================================

@dataclass(frozen=True)
class FittedTrajectoryModel:
    """
    Immutable result of the trajectory fit.

    ``terms`` maps logical names ("para", "age", "date", "individual", "year")
    to coefficient columns; downstream stages look terms up by these names
    rather than by library-generated column labels.
    """

    result: object
    frame: pd.DataFrame
    spec: ModelSpec
    terms: Dict[str, TermInfo]
    levels: Dict[str, pd.Index]
    smoothing_params: Dict[str, float]
    dispersion: float
    reml: float
    edf: np.ndarray
    log_param_cov: Optional[np.ndarray]
    optimizer: Dict[str, object] = field(default_factory=dict)

    @property
    def params(self) -> np.ndarray:
        return np.asarray(self.result.params)

    @property
    def exog(self) -> np.ndarray:
        return np.asarray(self.result.model.exog)

    @property
    def endog(self) -> np.ndarray:
        return np.asarray(self.result.model.endog)

    @property
    def family(self):
        return self.result.model.family

    @property
    def theta(self) -> float:
        """Negative binomial size parameter; inf for the Poisson-variance families."""
        if self.spec.family != "negative_binomial" or self.dispersion <= 0:
            return np.inf
        return 1.0 / self.dispersion

    @property
    def scale(self) -> float:
        return float(self.result.scale)

    @property
    def nobs(self) -> int:
        return len(self.frame)

    @property
    def converged(self) -> bool:
        return bool(self.optimizer.get("converged", False))

    def cov_params(self) -> np.ndarray:
        return np.asarray(self.result.cov_params())

    def term(self, name: str) -> TermInfo:
        if name not in self.terms:
            raise KeyError(f"Unknown term: {name}. Available terms: {list(self.terms)}")
        return self.terms[name]

    def term_columns(self, name: str) -> np.ndarray:
        return self.term(name).columns

    def partial_effect(self, name: str) -> pd.DataFrame:
        """Per-observation link-scale contribution of a penalized term and its SE."""
        info = self.term(name)
        if info.smoother_index is None:
            raise KeyError(f"Term {name!r} is parametric; partial effects exist for {list(PENALIZED_TERMS)}")
        fit, se = self.result.partial_values(info.smoother_index, include_constant=False)
        return pd.DataFrame({"fit": np.asarray(fit), "se": np.asarray(se)}, index=self.frame.index)

    def linear_predictor(self) -> np.ndarray:
        return self.exog @ self.params

    def fitted_values(self) -> np.ndarray:
        return self.family.link.inverse(self.linear_predictor())

    def design_matrix(self, frame: pd.DataFrame) -> np.ndarray:
        """Model matrix for new records; unseen grouping levels get zero effect."""
        smoothers = self.result.model.smoother.smoothers
        blocks = [np.column_stack([np.ones(len(frame)), frame[LIFESPAN_COL].to_numpy(dtype=float)])]
        for name in PENALIZED_TERMS:
            info = self.terms[name]
            values = frame[info.column]
            if info.kind == "smooth":
                x = values.to_numpy(dtype=float)
                lo, hi = self.frame[info.column].min(), self.frame[info.column].max()
                if np.any(x < lo) or np.any(x > hi):
                    raise ValueError(f"{info.column} outside the fitted range [{lo}, {hi}]")
                blocks.append(np.asarray(smoothers[info.smoother_index].transform(x)))
            else:
                levels = self.levels[name]
                codes = levels.get_indexer(values.astype(str))
                basis = np.zeros((len(frame), len(levels)))
                seen = codes >= 0
                basis[np.nonzero(seen)[0], codes[seen]] = 1.0
                blocks.append(basis)
        return np.hstack(blocks)

    def predict(self, frame: pd.DataFrame, which: str = "response") -> np.ndarray:
        eta = self.design_matrix(frame) @ self.params
        if which == "link":
            return eta
        if which == "response":
            return self.family.link.inverse(eta)
        raise ValueError(f"which must be 'link' or 'response' (got {which!r})")


# =============================================================================
# FITTING
# =============================================================================

def _pearson_dispersion(design: _Design, spec: ModelSpec) -> float:
    """
    Pearson chi2 / residual df of a Poisson fit at the starting smoothing parameters.

    Values below 1 mean the counts vary less than Poisson allows.
    """
    weights = design.penalty_weights(np.asarray(spec.start_log_lambda, dtype=float))
    model = GLMGam(
        design.endog,
        exog=design.exog_linear,
        smoother=design.smoother,
        alpha=weights,
        family=sm.families.Poisson(),
    )
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        result = model.fit(maxiter=spec.pirls_maxiter, tol=spec.pirls_tol, scale=1.0)
    mu = np.asarray(result.fittedvalues)
    chi2 = float(np.sum((design.endog - mu) ** 2 / mu))
    return chi2 / float(result.df_resid)


def _log_param_cov(objective: _RemlObjective, rho: np.ndarray, step: float) -> Optional[np.ndarray]:
    hess = approx_hess(rho, objective, epsilon=step)
    if not np.all(np.isfinite(hess)):
        return None
    try:
        cov = np.linalg.inv(hess)
    except np.linalg.LinAlgError:
        return None
    return cov


def fit_trajectory_model(
    records: pd.DataFrame,
    spec: Optional[ModelSpec] = None,
    verbose: bool = True,
) -> FittedTrajectoryModel:
    """
    Fit the clutch-size trajectory model by restricted maximum likelihood.

    Parameters
    ----------
    records : pd.DataFrame
        Breeding records (see loaders.prepare_records). Records with unknown
        lifespan are excluded here.
    spec : ModelSpec, optional
        Model settings; defaults to ``ModelSpec()``.
    verbose : bool
        Print progress.

    Raises
    ------
    InsufficientDataError
        The eligible data cannot identify the model.
    ConvergenceError
        The smoothing-parameter search or the final penalized fit did not
        converge. No retry is attempted.
    """
    spec = spec or ModelSpec()
    frame = build_model_frame(records, verbose=verbose)
    spec = spec.resolve(frame[AGE_COL].nunique(), frame[DATE_COL].nunique())

    design = _build_design(frame, spec)
    screening = _pearson_dispersion(design, spec)
    if spec.family == "auto":
        spec = replace(spec, family="quasi_poisson" if screening < 1 else "negative_binomial")

    if verbose:
        print(
            f"[INFO] Fitting trajectory model: N={len(frame)}, "
            f"individuals={frame[INDIVIDUAL_COL].nunique()}, years={frame[YEAR_COL].nunique()}, "
            f"k_age={spec.k_age}, k_date={spec.k_date}, family={spec.family}"
        )
        print(f"[INFO] Pearson dispersion of Poisson screening fit: {screening:.3f}")
        if screening < 1 and spec.family in ("negative_binomial", "poisson"):
            print(f"[WARN] Counts are under-dispersed; family={spec.family} will overstate standard errors")

    objective = _RemlObjective(design, spec)

    x0 = list(spec.start_log_lambda)
    bounds = [spec.log_lambda_bounds] * len(PENALIZED_TERMS)
    if spec.family == "negative_binomial":
        x0.append(spec.start_log_dispersion)
        bounds.append(spec.log_dispersion_bounds)
    elif spec.family == "quasi_poisson":
        x0.append(spec.start_log_scale)
        bounds.append(spec.log_scale_bounds)
    x0 = np.asarray(x0, dtype=float)
    simplex = np.vstack([x0] + [x0 + spec.simplex_step * row for row in np.eye(len(x0))])
    simplex = np.clip(simplex, [b[0] for b in bounds], [b[1] for b in bounds])

    opt = minimize(
        objective,
        x0,
        method="Nelder-Mead",
        bounds=bounds,
        options={
            "maxfev": spec.max_evaluations,
            "maxiter": spec.max_evaluations,
            "xatol": spec.xatol,
            "fatol": spec.tol,
            "initial_simplex": simplex,
        },
    )
    if not opt.success:
        raise ConvergenceError(
            f"Smoothing-parameter search did not converge after {objective.n_evaluations} "
            f"evaluations: {opt.message}"
        )

    rho = np.asarray(opt.x, dtype=float)
    try:
        final = objective.fit(rho)
    except (np.linalg.LinAlgError, PerfectSeparationError) as exc:
        raise ConvergenceError(f"Final penalized fit failed: {exc}") from exc
    if not final.converged:
        raise ConvergenceError("Final penalized IRLS fit did not converge")

    edf_matrix = np.linalg.solve(final.hessian + final.penalty, final.hessian)
    log_param_cov = _log_param_cov(objective, rho, spec.hessian_step) if spec.variance_hessian else None

    model = FittedTrajectoryModel(
        result=final.result,
        frame=frame,
        spec=spec,
        terms=design.terms,
        levels=design.levels,
        smoothing_params=dict(zip(PENALIZED_TERMS, final.weights.tolist())),
        dispersion=final.dispersion,
        reml=final.laml,
        edf=np.diag(edf_matrix).copy(),
        log_param_cov=log_param_cov,
        optimizer={
            "converged": True,
            "message": str(opt.message),
            "n_evaluations": int(objective.n_evaluations),
            "n_failed": int(objective.n_failed),
            "pirls_iterations": int(final.result.fit_history.get("iteration", 0))
            if hasattr(final.result, "fit_history")
            else 0,
            "log_params": rho.tolist(),
            "pearson_dispersion": screening,
        },
    )

    if verbose:
        print(
            f"[INFO] REML={model.reml:.3f}, evaluations={objective.n_evaluations} "
            f"(failed={objective.n_failed}), edf(age)={model.edf[design.terms[TERM_AGE].columns].sum():.2f}"
        )
        if objective.n_failed:
            print(f"[WARN] {objective.n_failed} inner fits failed during the smoothing-parameter search")
    return model
