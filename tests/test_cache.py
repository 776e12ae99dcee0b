"""Model cache tests."""

import numpy as np
import pytest

import life_history.cache as cache_module
from life_history import ModelCache, ModelSpec, build_model_frame, fit_or_load


@pytest.fixture
def frame(peak_records):
    return build_model_frame(peak_records, verbose=False)


def test_key_is_stable(frame):
    spec = ModelSpec(k_age=8)
    assert ModelCache.key_for(frame, spec) == ModelCache.key_for(frame.copy(), spec)


def test_key_changes_with_data(frame):
    spec = ModelSpec(k_age=8)
    changed = frame.copy()
    changed.loc[0, "clutch_size"] = changed.loc[0, "clutch_size"] + 1
    assert ModelCache.key_for(frame, spec) != ModelCache.key_for(changed, spec)


def test_key_changes_with_spec(frame):
    assert ModelCache.key_for(frame, ModelSpec(k_age=8)) != ModelCache.key_for(frame, ModelSpec(k_age=7))


def test_store_load_invalidate(tmp_path, peak_model):
    cache = ModelCache(tmp_path / "cache")
    key = "abc123"
    assert cache.load(key) is None

    cache.store(key, peak_model)
    loaded = cache.load(key)
    np.testing.assert_allclose(loaded.params, peak_model.params)
    assert loaded.spec == peak_model.spec
    assert cache.keys() == [key]

    assert cache.invalidate(key)
    assert cache.load(key) is None
    assert not cache.invalidate(key)


def test_clear_removes_all_entries(tmp_path):
    cache = ModelCache(tmp_path)
    for key in ("a", "b", "c"):
        cache.store(key, {"key": key})
    assert cache.clear() == 3
    assert cache.keys() == []


def test_fit_or_load_reuses_cached_model(tmp_path, peak_records, peak_model, monkeypatch):
    cache = ModelCache(tmp_path)
    frame = build_model_frame(peak_records, verbose=False)
    key = cache.key_for(frame, peak_model.spec)
    cache.store(key, peak_model)

    def refit(*args, **kwargs):
        raise AssertionError("model should come from the cache")

    monkeypatch.setattr(cache_module, "fit_trajectory_model", refit)
    loaded = fit_or_load(peak_records, ModelSpec(), cache=cache, verbose=False)
    np.testing.assert_allclose(loaded.params, peak_model.params)


def test_fit_or_load_invalidate_forces_refit(tmp_path, peak_records, peak_model, monkeypatch):
    cache = ModelCache(tmp_path)
    frame = build_model_frame(peak_records, verbose=False)
    key = cache.key_for(frame, peak_model.spec)
    cache.store(key, peak_model)

    calls = []

    def refit(records, spec, verbose=True):
        calls.append(spec)
        return peak_model

    monkeypatch.setattr(cache_module, "fit_trajectory_model", refit)
    fit_or_load(peak_records, ModelSpec(), cache=cache, invalidate=True, verbose=False)
    assert len(calls) == 1
    assert cache.keys() == [key]
