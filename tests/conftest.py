"""
Shared fixtures for the clutch-size trajectory test suite.

Two synthetic populations are used throughout:

- peak: clutch size rises by ~10% per year up to age 4 and declines by ~8%
  per year afterwards (log scale), with small multiplicative noise.
- small clutches: 150 females laying 2-4 eggs, with a Poisson mean that
  peaks at age 4 and draws clipped to the 2-4 range, so the counts vary far
  less than a Poisson count would.
- linear: every individual breeds at ages 1-8 with clutch size
  4 * 2**age + d, where d in {-1, 0, +1} is fixed per individual and
  balanced across individuals. Non-age covariates are individual-level, so
  the age effect on the log scale is exactly linear.

Fitted models are session-scoped; each scenario is fitted once.
"""

import numpy as np
import pandas as pd
import pytest

from life_history import PipelineConfig, prepare_records, run_pipeline

PEAK_AGE = 4
PEAK_AGES = range(1, 10)
LINEAR_AGES = range(1, 9)
SMALL_PEAK_AGE = 4


# ---------------------------------------------------------------------------
# Synthetic populations
# ---------------------------------------------------------------------------

def make_peak_records(n_individuals: int = 60, n_living: int = 5, seed: int = 7) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    rows = []
    for i in range(n_individuals):
        lifespan = float(9 + rng.integers(0, 4))
        for age in PEAK_AGES:
            log_mu = np.log(20.0) + 0.10 * min(age - PEAK_AGE, 0) - 0.08 * max(age - PEAK_AGE, 0)
            rows.append(
                {
                    "individual_id": f"F{i:03d}",
                    "age": age,
                    "clutch_size": int(round(np.exp(log_mu + rng.normal(0.0, 0.03)))),
                    "julian_date": float(rng.integers(100, 161)),
                    "lifespan": lifespan,
                    "year": str(2000 + int(rng.integers(0, 6))),
                }
            )
    # birds still alive: lifespan unknown, used descriptively only
    for j in range(n_living):
        for age in (1, 2, 3):
            rows.append(
                {
                    "individual_id": f"L{j:03d}",
                    "age": age,
                    "clutch_size": 18,
                    "julian_date": 130.0,
                    "lifespan": np.nan,
                    "year": "2005",
                }
            )
    return prepare_records(pd.DataFrame(rows))


def make_small_clutch_records(n_individuals: int = 150, seed: int = 11) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    rows = []
    for i in range(n_individuals):
        lifespan = float(9 + rng.integers(0, 3))
        for age in PEAK_AGES:
            log_mu = np.log(3.2) + 0.12 * min(age - SMALL_PEAK_AGE, 0) - 0.10 * max(age - SMALL_PEAK_AGE, 0)
            rows.append(
                {
                    "individual_id": f"S{i:03d}",
                    "age": age,
                    "clutch_size": int(np.clip(rng.poisson(np.exp(log_mu)), 2, 4)),
                    "julian_date": float(rng.integers(100, 161)),
                    "lifespan": lifespan,
                    "year": str(2000 + int(rng.integers(0, 6))),
                }
            )
    return prepare_records(pd.DataFrame(rows))


def make_linear_records(n_individuals: int = 30) -> pd.DataFrame:
    rows = []
    for i in range(n_individuals):
        offset = (-1, 0, 1)[i % 3]
        for age in LINEAR_AGES:
            rows.append(
                {
                    "individual_id": f"F{i:03d}",
                    "age": age,
                    "clutch_size": 4 * 2 ** age + offset,
                    "julian_date": float(100 + 2 * i),
                    "lifespan": float(8 + i % 4),
                    "year": str(2000 + i % 5),
                }
            )
    return prepare_records(pd.DataFrame(rows))


def write_records(records: pd.DataFrame, path, sep: str = ",") -> None:
    records.to_csv(path, index=False, sep=sep, encoding="utf-8-sig")


# ---------------------------------------------------------------------------
# Session fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def peak_records():
    return make_peak_records()


@pytest.fixture(scope="session")
def linear_records():
    return make_linear_records()


def _run(records, output_dir):
    config = PipelineConfig(output_dir=output_dir, cache_dir=None, k_check_reps=100, verbose=False)
    return run_pipeline(config, records=records)


@pytest.fixture(scope="session")
def peak_run(peak_records, tmp_path_factory):
    return _run(peak_records, tmp_path_factory.mktemp("peak_outputs"))


@pytest.fixture(scope="session")
def linear_run(linear_records, tmp_path_factory):
    return _run(linear_records, tmp_path_factory.mktemp("linear_outputs"))


@pytest.fixture(scope="session")
def small_clutch_records():
    return make_small_clutch_records()


@pytest.fixture(scope="session")
def small_clutch_run(small_clutch_records, tmp_path_factory):
    return _run(small_clutch_records, tmp_path_factory.mktemp("small_clutch_outputs"))


@pytest.fixture(scope="session")
def peak_model(peak_run):
    return peak_run.model


@pytest.fixture(scope="session")
def linear_model(linear_run):
    return linear_run.model


@pytest.fixture(scope="session")
def small_clutch_model(small_clutch_run):
    return small_clutch_run.model
