"""
Pipeline Configuration
======================

Run settings for the clutch-size trajectory pipeline. Defaults come from
``_constants``; a JSON file can override any field and CLI flags override
the JSON file.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Optional, Union

from ._constants import (
    CACHE_DIRNAME,
    DEFAULT_ALPHA,
    DEFAULT_FAMILY,
    DEFAULT_K_AGE_MARGIN,
    DEFAULT_K_CHECK_REPS,
    DEFAULT_K_DATE,
    DEFAULT_N_BOOT,
    DEFAULT_SCALE_CONSTANT,
    DEFAULT_SEED,
    OUTPUTS_DIRNAME,
)
from .trajectory import ModelSpec


def default_output_dir() -> Path:
    return Path.cwd() / OUTPUTS_DIRNAME


def default_cache_dir() -> Path:
    return Path.cwd() / OUTPUTS_DIRNAME / CACHE_DIRNAME


@dataclass
class PipelineConfig:
    """
    Settings for one pipeline run.

    Attributes
    ----------
    input_path : Path, optional
        Breeding record table.
    sep : str, optional
        Field delimiter; sniffed when None.
    output_dir : Path
        Directory receiving the CSV outputs; defaults to ./outputs under the
        current working directory.
    cache_dir : Path, optional
        Model cache directory (default ./outputs/cache); caching is disabled
        when None.
    k_age, k_age_margin, k_date, family :
        Model settings, see ``trajectory.ModelSpec``.
    scale_constant : float
        Multiplier in the per-age standardization.
    davies_k : int, optional
        Number of Davies test evaluation points; None uses n_ages - 2.
    alpha : float
        Significance level for the breakpoint gate.
    require_significant_break : bool
        Skip the segmented fit when the Davies test is not significant.
    n_boot : int
        Bootstrap restarts of the segmented fit.
    seed : int
        Seed for bootstrap restarts and the k-index permutations.
    k_check_reps : int
        Permutations per smooth in the basis dimension check.
    verbose : bool
        Print progress.
    """

    input_path: Optional[Path] = None
    sep: Optional[str] = None
    output_dir: Path = field(default_factory=default_output_dir)
    cache_dir: Optional[Path] = field(default_factory=default_cache_dir)
    k_age: Optional[int] = None
    k_age_margin: int = DEFAULT_K_AGE_MARGIN
    k_date: int = DEFAULT_K_DATE
    family: str = DEFAULT_FAMILY
    scale_constant: float = DEFAULT_SCALE_CONSTANT
    davies_k: Optional[int] = None
    alpha: float = DEFAULT_ALPHA
    require_significant_break: bool = True
    n_boot: int = DEFAULT_N_BOOT
    seed: int = DEFAULT_SEED
    k_check_reps: int = DEFAULT_K_CHECK_REPS
    verbose: bool = True

    def __post_init__(self):
        if self.input_path is not None:
            self.input_path = Path(self.input_path)
        self.output_dir = Path(self.output_dir)
        if self.cache_dir is not None:
            self.cache_dir = Path(self.cache_dir)
        if not 0 < self.alpha < 1:
            raise ValueError(f"alpha must lie in (0, 1) (got {self.alpha})")
        if self.scale_constant <= 0:
            raise ValueError(f"scale_constant must be positive (got {self.scale_constant})")

    def to_model_spec(self) -> ModelSpec:
        return ModelSpec(
            k_age=self.k_age,
            k_age_margin=self.k_age_margin,
            k_date=self.k_date,
            family=self.family,
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Path):
                data[key] = str(value)
        return data

    @classmethod
    def from_json(cls, path: Union[str, Path], **overrides) -> "PipelineConfig":
        """Load settings from a JSON object; keyword overrides that are not None win."""
        path = Path(path)
        with open(path, "r", encoding="utf-8-sig") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{path.name} must contain a JSON object")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys in {path.name}: {unknown}")

        data.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**data)
