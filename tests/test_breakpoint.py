"""Breakpoint analysis tests on hand-built per-age estimates."""

import numpy as np
import pandas as pd
import pytest

import life_history.breakpoint as breakpoint_module
from life_history import (
    InsufficientDataError,
    analyze_breakpoint,
    davies_test,
    fit_segmented,
    fit_weighted_trend,
)

AGES = np.arange(1, 10, dtype=float)
NOISE = np.array([0.05, -0.03, 0.02, -0.04, 0.01, 0.03, -0.02, 0.04, -0.05])


def _estimates(xz, se=0.2):
    return pd.DataFrame(
        {
            "age": AGES[: len(xz)].astype(int),
            "n": 50,
            "x": xz,
            "se": np.broadcast_to(se, len(xz)).astype(float),
            "xz": xz,
        }
    )


@pytest.fixture
def tent():
    xz = np.where(AGES <= 4, 2.0 * (AGES - 4), -1.5 * (AGES - 4)) + NOISE
    return _estimates(xz)


@pytest.fixture
def line():
    return _estimates(0.5 + 1.25 * AGES)


def test_trend_uses_inverse_se_weights():
    se = np.array([0.1, 0.2, 0.4, 0.5, 0.25])
    estimates = _estimates(np.array([0.0, 1.1, 1.9, 3.2, 4.0]), se=se)
    trend = fit_weighted_trend(estimates)
    np.testing.assert_allclose(trend.model.weights, 1 / se)
    assert trend.params["age"] > 0


def test_zero_se_raises(tent):
    bad = tent.copy()
    bad.loc[3, "se"] = 0.0
    with pytest.raises(InsufficientDataError) as excinfo:
        analyze_breakpoint(bad)
    assert excinfo.value.column == "se"


def test_davies_candidates_are_interior_ages(tent):
    result = davies_test(tent)
    assert result.k == 7
    np.testing.assert_allclose(result.candidates, np.arange(2, 9))


def test_davies_detects_tent(tent):
    result = davies_test(tent)
    assert result.p_value < 0.05
    assert result.psi_best == pytest.approx(4.0)


def test_davies_is_deterministic(tent):
    assert davies_test(tent).p_value == davies_test(tent).p_value


def test_exact_line_has_no_breakpoint(line):
    result = analyze_breakpoint(line)
    assert result.davies.p_value == 1.0
    assert not result.justified
    assert result.segmented is None


def test_segmented_recovers_tent(tent):
    fit = fit_segmented(tent, psi0=5.0, n_boot=10, seed=3)

    assert AGES.min() < fit.breakpoint < AGES.max()
    assert fit.breakpoint == pytest.approx(4.0, abs=0.5)
    assert fit.slope1 > 0 and fit.slope1_p < 0.05
    assert fit.slope2 < 0 and fit.slope2_p < 0.05
    assert fit.df_resid == len(AGES) - 4
    assert fit.breakpoint_lower < fit.breakpoint < fit.breakpoint_upper


def test_segmented_is_reproducible_with_seed(tent):
    a = fit_segmented(tent, n_boot=10, seed=11)
    b = fit_segmented(tent, n_boot=10, seed=11)
    assert a.breakpoint == b.breakpoint
    assert a.rss == b.rss


def test_gate_skips_segmented_when_not_significant(tent, monkeypatch):
    real = breakpoint_module.davies_test

    def not_significant(estimates, k=None):
        result = real(estimates, k=k)
        return breakpoint_module.DaviesTest(
            statistic=result.statistic,
            p_value=0.5,
            psi_best=result.psi_best,
            k=result.k,
            alternative=result.alternative,
            candidates=result.candidates,
            t_values=result.t_values,
        )

    monkeypatch.setattr(breakpoint_module, "davies_test", not_significant)

    gated = analyze_breakpoint(tent)
    assert gated.segmented is None and not gated.justified

    ungated = analyze_breakpoint(tent, require_significant=False)
    assert ungated.segmented is not None
    assert not ungated.justified


def test_summary_frame_has_breakpoint_columns(tent):
    frame = analyze_breakpoint(tent).to_frame()
    assert len(frame) == 1
    assert bool(frame.loc[0, "breakpoint_justified"])
    for col in ("davies_p", "breakpoint", "slope1", "slope2", "slope1_p", "slope2_p"):
        assert col in frame.columns


def test_segments_need_two_ages_on_each_side():
    supported = breakpoint_module._segments_supported
    assert supported(AGES, 2.5) and supported(AGES, 7.5)
    assert not supported(AGES, 1.5)
    assert not supported(AGES, 8.5)
    # mirrored ages give the same verdict
    for psi in np.arange(1.25, 9.0, 0.5):
        assert supported(AGES, psi) == supported(10 - AGES, 10 - psi)
