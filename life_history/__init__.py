"""
Clutch-size Age Trajectory
==========================

Models how clutch size changes with female age in a longitudinal breeding
record: an additive mixed model isolates the age effect, which is collapsed
to one standardized estimate per age and tested for a change in slope.

Usage:
    python -m life_history --input data/breeding_records.csv
    python -m life_history --input data/breeding_records.csv --no-gate
    python -m life_history --config run.json --invalidate-cache
"""

from __future__ import annotations

import sys
if sys.platform.startswith("win") and hasattr(sys.stdout, "reconfigure"):
    sys.stdout.reconfigure(encoding='utf-8')

from .breakpoint import (
    BreakpointAnalysis,
    DaviesTest,
    SegmentedFit,
    analyze_breakpoint,
    davies_test,
    fit_segmented,
    fit_weighted_trend,
)
from .cache import ModelCache, fit_or_load
from .config import PipelineConfig
from .diagnostics import (
    BasisCheck,
    ModelSummary,
    check_basis,
    concurvity,
    summarize_model,
    variance_components,
)
from .errors import AnalysisError, ConvergenceError, DataFormatError, InsufficientDataError
from .estimates import extract_age_estimates, standardize_effects
from .loaders import (
    describe_records,
    eligible_records,
    load_breeding_records,
    prepare_records,
    sample_overview,
)
from .pipeline import PipelineResult, run_pipeline
from .trajectory import FittedTrajectoryModel, ModelSpec, build_model_frame, fit_trajectory_model


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    # Errors
    'AnalysisError',
    'DataFormatError',
    'ConvergenceError',
    'InsufficientDataError',
    # Stage 1
    'load_breeding_records',
    'prepare_records',
    'eligible_records',
    'describe_records',
    'sample_overview',
    # Stage 2
    'ModelSpec',
    'FittedTrajectoryModel',
    'build_model_frame',
    'fit_trajectory_model',
    'ModelCache',
    'fit_or_load',
    # Stage 3
    'BasisCheck',
    'ModelSummary',
    'check_basis',
    'concurvity',
    'variance_components',
    'summarize_model',
    # Stage 4
    'extract_age_estimates',
    'standardize_effects',
    # Stage 5
    'DaviesTest',
    'SegmentedFit',
    'BreakpointAnalysis',
    'fit_weighted_trend',
    'davies_test',
    'fit_segmented',
    'analyze_breakpoint',
    # Pipeline
    'PipelineConfig',
    'PipelineResult',
    'run_pipeline',
]
