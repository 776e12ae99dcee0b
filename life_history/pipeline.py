"""
Clutch-size trajectory pipeline
===============================

Runs the five stages in order and writes one CSV per report:

    1. load breeding records      -> descriptives_by_age.csv, sample_overview.csv
    2. fit trajectory model       -> (optional model cache)
    3. diagnostics                -> parametric_terms.csv, smooth_terms.csv,
                                     basis_check.csv, concurvity.csv,
                                     variance_components.csv
    4. per-age estimates          -> age_estimates.csv
    5. breakpoint analysis        -> breakpoint.csv
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import pandas as pd

from ._constants import OUTPUT_FILES
from .breakpoint import BreakpointAnalysis, analyze_breakpoint
from .cache import ModelCache, fit_or_load
from .config import PipelineConfig
from .diagnostics import (
    BasisCheck,
    ModelSummary,
    check_basis,
    concurvity,
    print_summary,
    summarize_model,
    variance_components,
)
from .estimates import extract_age_estimates
from .loaders import describe_records, load_breeding_records, sample_overview
from .trajectory import FittedTrajectoryModel


@dataclass
class PipelineResult:
    records: pd.DataFrame
    model: FittedTrajectoryModel
    summary: ModelSummary
    basis: BasisCheck
    concurvity: pd.DataFrame
    variance_components: pd.DataFrame
    age_estimates: pd.DataFrame
    breakpoint: BreakpointAnalysis
    outputs: Dict[str, Path] = field(default_factory=dict)


def _banner(title: str, verbose: bool) -> None:
    if verbose:
        print("\n" + "=" * 70)
        print(title)
        print("=" * 70)


def _save(df: pd.DataFrame, output_dir: Path, key: str, outputs: Dict[str, Path], verbose: bool, index: bool = False) -> None:
    path = output_dir / OUTPUT_FILES[key]
    df.to_csv(path, index=index, encoding="utf-8-sig")
    outputs[key] = path
    if verbose:
        print(f"Saved: {path}")


def run_pipeline(
    config: PipelineConfig,
    records: Optional[pd.DataFrame] = None,
    invalidate_cache: bool = False,
) -> PipelineResult:
    """
    Run the full workflow.

    Parameters
    ----------
    config : PipelineConfig
        Run settings. ``config.input_path`` is read unless ``records`` is given.
    records : pd.DataFrame, optional
        Already prepared breeding records (see loaders.prepare_records).
    invalidate_cache : bool
        Drop the cached model for this dataset/specification before fitting.
    """
    verbose = config.verbose
    output_dir = config.output_dir
    output_dir.mkdir(parents=True, exist_ok=True)
    outputs: Dict[str, Path] = {}

    _banner("[1/5] BREEDING RECORDS", verbose)
    if records is None:
        if config.input_path is None:
            raise ValueError("PipelineConfig.input_path is required when no records are supplied")
        records = load_breeding_records(config.input_path, sep=config.sep, verbose=verbose)
    _save(describe_records(records), output_dir, "descriptives", outputs, verbose)
    _save(sample_overview(records), output_dir, "overview", outputs, verbose)

    _banner("[2/5] TRAJECTORY MODEL", verbose)
    cache = ModelCache(config.cache_dir) if config.cache_dir is not None else None
    model = fit_or_load(
        records,
        config.to_model_spec(),
        cache=cache,
        invalidate=invalidate_cache,
        verbose=verbose,
    )

    _banner("[3/5] MODEL DIAGNOSTICS", verbose)
    summary = summarize_model(model)
    basis = check_basis(model, n_rep=config.k_check_reps, seed=config.seed)
    concurvity_table = concurvity(model, full=True)
    vcomp = variance_components(model)
    if verbose:
        print_summary(summary, basis)
        if not basis.actionable.empty:
            print(f"[WARN] Basis dimension may be too low for: {basis.actionable['term'].tolist()}")
        top = vcomp[vcomp["kind"] == "random"].iloc[0]
        print(f"    Largest random-effect SD: {top['term']} ({top['sd']:.4f})")

    _save(summary.parametric, output_dir, "parametric", outputs, verbose)
    _save(summary.smooth, output_dir, "smooth", outputs, verbose)
    _save(basis.table, output_dir, "basis_check", outputs, verbose)
    _save(concurvity_table.rename_axis("measure"), output_dir, "concurvity", outputs, verbose, index=True)
    _save(vcomp, output_dir, "variance_components", outputs, verbose)

    _banner("[4/5] PER-AGE ESTIMATES", verbose)
    estimates = extract_age_estimates(model, scale=config.scale_constant, verbose=verbose)
    _save(estimates, output_dir, "age_estimates", outputs, verbose)

    _banner("[5/5] BREAKPOINT ANALYSIS", verbose)
    analysis = analyze_breakpoint(
        estimates,
        alpha=config.alpha,
        require_significant=config.require_significant_break,
        k=config.davies_k,
        n_boot=config.n_boot,
        seed=config.seed,
        verbose=verbose,
    )
    _save(analysis.to_frame(), output_dir, "breakpoint", outputs, verbose)

    if verbose:
        print("\n" + "=" * 70)
        print("PIPELINE COMPLETE")
        print(f"Output: {output_dir}")
        print("=" * 70)

    return PipelineResult(
        records=records,
        model=model,
        summary=summary,
        basis=basis,
        concurvity=concurvity_table,
        variance_components=vcomp,
        age_estimates=estimates,
        breakpoint=analysis,
        outputs=outputs,
    )
