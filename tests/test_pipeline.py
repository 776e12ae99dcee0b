"""End-to-end pipeline tests on the synthetic populations."""

import json

import pandas as pd
import pytest

import life_history.pipeline as pipeline_module
from life_history import DataFormatError, PipelineConfig, run_pipeline
from life_history.__main__ import main
from life_history._constants import OUTPUT_FILES

from conftest import PEAK_AGE, SMALL_PEAK_AGE, write_records


def test_peak_is_recovered(peak_run):
    analysis = peak_run.breakpoint
    assert analysis.justified
    assert analysis.davies.p_value < 0.05

    seg = analysis.segmented
    assert seg is not None
    assert abs(seg.breakpoint - PEAK_AGE) <= 1
    assert seg.slope1 > 0 and seg.slope1_p < 0.05
    assert seg.slope2 < 0 and seg.slope2_p < 0.05


def test_linear_trait_has_no_breakpoint(linear_run):
    analysis = linear_run.breakpoint
    assert analysis.davies.p_value > 0.05
    assert not analysis.justified
    assert analysis.segmented is None
    assert analysis.trend.params["age"] > 0


def test_all_outputs_written(peak_run):
    assert set(peak_run.outputs) == set(OUTPUT_FILES)
    for path in peak_run.outputs.values():
        assert path.exists()

    estimates = pd.read_csv(peak_run.outputs["age_estimates"], encoding="utf-8-sig")
    assert list(estimates.columns) == ["age", "n", "x", "se", "xz"]
    breakpoint_row = pd.read_csv(peak_run.outputs["breakpoint"], encoding="utf-8-sig").iloc[0]
    assert bool(breakpoint_row["breakpoint_justified"])


def test_missing_lifespan_fails_before_fitting(tmp_path, peak_records, monkeypatch):
    path = tmp_path / "records.csv"
    write_records(peak_records.drop(columns="lifespan"), path)

    def never(*args, **kwargs):
        raise AssertionError("fitting must not start")

    monkeypatch.setattr(pipeline_module, "fit_or_load", never)
    config = PipelineConfig(input_path=path, output_dir=tmp_path / "out", cache_dir=None, verbose=False)
    with pytest.raises(DataFormatError) as excinfo:
        run_pipeline(config)
    assert excinfo.value.column == "lifespan"


def test_config_from_json_with_overrides(tmp_path):
    path = tmp_path / "run.json"
    path.write_text(json.dumps({"input_path": "records.csv", "k_date": 6, "n_boot": 4}), encoding="utf-8")

    config = PipelineConfig.from_json(path, n_boot=12, seed=None)
    assert config.k_date == 6
    assert config.n_boot == 12
    assert config.seed == 42
    assert config.to_model_spec().k_date == 6


def test_config_rejects_unknown_keys(tmp_path):
    path = tmp_path / "run.json"
    path.write_text(json.dumps({"k_dates": 6}), encoding="utf-8")
    with pytest.raises(ValueError):
        PipelineConfig.from_json(path)


def test_cli_exits_nonzero_on_bad_input(tmp_path, peak_records, capsys):
    path = tmp_path / "records.csv"
    write_records(peak_records.drop(columns="lifespan"), path)

    code = main(["--input", str(path), "--output-dir", str(tmp_path / "out"), "--no-cache", "--quiet"])
    assert code == 1
    assert "lifespan" in capsys.readouterr().err


def test_default_directories_follow_working_directory(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = PipelineConfig()
    assert config.output_dir == tmp_path / "outputs"
    assert config.cache_dir == tmp_path / "outputs" / "cache"


def test_small_clutches_give_significant_age_effect(small_clutch_run):
    smooth = small_clutch_run.summary.smooth.set_index("term")
    assert smooth.loc["age", "p_value"] < 0.05

    analysis = small_clutch_run.breakpoint
    assert analysis.justified
    assert abs(analysis.segmented.breakpoint - SMALL_PEAK_AGE) <= 1.5
    assert small_clutch_run.age_estimates["age"].tolist() == list(range(1, 10))
