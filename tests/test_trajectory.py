"""Trajectory model fitting tests."""

import numpy as np
import pandas as pd
import pytest

from life_history import (
    ConvergenceError,
    InsufficientDataError,
    ModelSpec,
    build_model_frame,
    eligible_records,
    fit_trajectory_model,
)
from life_history._constants import PENALIZED_TERMS

from conftest import PEAK_AGE, make_linear_records


def test_model_uses_only_eligible_records(peak_model, peak_records):
    assert peak_model.nobs == len(eligible_records(peak_records))
    assert peak_model.converged


def test_term_table_partitions_coefficients(peak_model):
    columns = np.concatenate([peak_model.term_columns(name) for name in peak_model.terms])
    assert sorted(columns.tolist()) == list(range(len(peak_model.params)))
    assert len(peak_model.term_columns("individual")) == 60
    assert len(peak_model.term_columns("age")) == peak_model.spec.k_age - 1


def test_default_k_age_is_distinct_ages_minus_margin(peak_model):
    assert peak_model.spec.k_age == 9 - 1


def test_partial_effects_sum_to_linear_predictor(peak_model):
    para = peak_model.term_columns("para")
    eta = peak_model.exog[:, para] @ peak_model.params[para]
    for name in PENALIZED_TERMS:
        partial = peak_model.partial_effect(name)
        assert len(partial) == peak_model.nobs
        assert (partial["se"] >= 0).all()
        eta = eta + partial["fit"].to_numpy()
    np.testing.assert_allclose(eta, peak_model.linear_predictor(), rtol=1e-8, atol=1e-8)
    np.testing.assert_allclose(peak_model.fitted_values(), np.exp(eta), rtol=1e-8)


def test_age_effect_peaks_near_true_peak(peak_model):
    partial = peak_model.partial_effect("age")
    by_age = partial.groupby(peak_model.frame["age"].to_numpy())["fit"].mean()
    assert abs(int(by_age.idxmax()) - PEAK_AGE) <= 1


def test_linear_age_effect_is_linear(linear_model):
    partial = linear_model.partial_effect("age")
    age = linear_model.frame["age"].to_numpy(dtype=float)
    slope, intercept = np.polyfit(age, partial["fit"].to_numpy(), 1)
    assert slope == pytest.approx(np.log(2), rel=1e-3)


def test_dispersion_and_smoothing_parameters(peak_model):
    assert peak_model.dispersion > 0
    assert set(peak_model.smoothing_params) == set(PENALIZED_TERMS)
    assert all(lam > 0 for lam in peak_model.smoothing_params.values())


def test_predict_on_training_frame_matches_linear_predictor(peak_model):
    np.testing.assert_allclose(
        peak_model.predict(peak_model.frame, which="link"),
        peak_model.linear_predictor(),
        rtol=1e-6,
        atol=1e-8,
    )


def test_predict_unseen_individual_gets_zero_effect(peak_model):
    frame = peak_model.frame.iloc[:5].copy()
    known = peak_model.predict(frame, which="link")
    individual = peak_model.partial_effect("individual")["fit"].to_numpy()[:5]

    frame["individual_id"] = "never-seen"
    unseen = peak_model.predict(frame, which="link")
    np.testing.assert_allclose(unseen, known - individual, atol=1e-8)


def test_predict_outside_age_range_raises(peak_model):
    frame = peak_model.frame.iloc[:1].copy()
    frame["age"] = 15
    with pytest.raises(ValueError):
        peak_model.predict(frame)


def test_too_few_ages_raise():
    records = make_linear_records()
    records = records[records["age"] <= 2]
    with pytest.raises(InsufficientDataError):
        fit_trajectory_model(records, verbose=False)


def test_singleton_individuals_raise():
    records = make_linear_records()
    records["individual_id"] = [f"X{i}" for i in range(len(records))]
    with pytest.raises(InsufficientDataError) as excinfo:
        build_model_frame(records, verbose=False)
    assert excinfo.value.term == "individual"


def test_single_year_raises():
    records = make_linear_records()
    records["year"] = pd.Categorical(["2001"] * len(records))
    with pytest.raises(InsufficientDataError) as excinfo:
        build_model_frame(records, verbose=False)
    assert excinfo.value.term == "year"


def test_no_eligible_records_raise():
    records = make_linear_records()
    records["lifespan"] = np.nan
    with pytest.raises(InsufficientDataError):
        build_model_frame(records, verbose=False)


def test_k_age_above_distinct_ages_is_rejected():
    with pytest.raises(ValueError):
        fit_trajectory_model(make_linear_records(), ModelSpec(k_age=12), verbose=False)


def test_invalid_family_is_rejected():
    with pytest.raises(ValueError):
        ModelSpec(family="gaussian")


def test_optimizer_evaluation_limit_raises_convergence_error():
    with pytest.raises(ConvergenceError):
        fit_trajectory_model(make_linear_records(), ModelSpec(max_evaluations=5), verbose=False)


def test_default_family_is_chosen_from_the_data():
    assert ModelSpec().family == "auto"


def test_small_clutches_are_fitted_as_under_dispersed(small_clutch_model, small_clutch_records):
    assert set(small_clutch_records["clutch_size"].unique()) <= {2, 3, 4}
    assert small_clutch_model.optimizer["pearson_dispersion"] < 1
    assert small_clutch_model.spec.family == "quasi_poisson"
    assert 0 < small_clutch_model.dispersion < 1
    assert small_clutch_model.scale == pytest.approx(small_clutch_model.dispersion)
    assert np.isinf(small_clutch_model.theta)


def test_estimated_scale_shrinks_age_standard_errors(small_clutch_model, small_clutch_records):
    poisson = fit_trajectory_model(
        small_clutch_records, ModelSpec(family="poisson", variance_hessian=False), verbose=False
    )
    assert poisson.scale == 1.0
    quasi_se = small_clutch_model.partial_effect("age")["se"].mean()
    poisson_se = poisson.partial_effect("age")["se"].mean()
    assert quasi_se < poisson_se
