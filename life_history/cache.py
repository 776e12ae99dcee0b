"""
Model cache
===========

Fitted trajectory models are expensive to refit. The cache stores pickled
models keyed by a hash of the model frame and the resolved model settings,
so a changed dataset or specification never returns a stale fit. Entries
are removed only by explicit invalidation.
"""

from __future__ import annotations

import hashlib
import json
import pickle
from pathlib import Path
from typing import List, Optional, Union

import pandas as pd

from ._constants import AGE_COL, DATE_COL
from .trajectory import FittedTrajectoryModel, ModelSpec, build_model_frame, fit_trajectory_model


class ModelCache:
    """Directory of ``<key>.pkl`` files holding FittedTrajectoryModel objects."""

    suffix = ".pkl"

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}{self.suffix}"

    @staticmethod
    def key_for(frame: pd.DataFrame, spec: ModelSpec) -> str:
        digest = hashlib.sha256()
        row_hashes = pd.util.hash_pandas_object(frame, index=False)
        digest.update(row_hashes.to_numpy().tobytes())
        digest.update(json.dumps(list(frame.columns)).encode("utf-8"))
        digest.update(json.dumps(spec.to_dict(), sort_keys=True, default=str).encode("utf-8"))
        return digest.hexdigest()

    def load(self, key: str) -> Optional[FittedTrajectoryModel]:
        path = self.path_for(key)
        if not path.exists():
            return None
        with open(path, "rb") as f:
            return pickle.load(f)

    def store(self, key: str, model: FittedTrajectoryModel) -> Path:
        path = self.path_for(key)
        tmp = path.with_suffix(".tmp")
        with open(tmp, "wb") as f:
            pickle.dump(model, f, protocol=pickle.HIGHEST_PROTOCOL)
        tmp.replace(path)
        return path

    def invalidate(self, key: str) -> bool:
        path = self.path_for(key)
        if path.exists():
            path.unlink()
            return True
        return False

    def keys(self) -> List[str]:
        return sorted(p.stem for p in self.directory.glob(f"*{self.suffix}"))

    def clear(self) -> int:
        removed = 0
        for key in self.keys():
            removed += int(self.invalidate(key))
        return removed


def fit_or_load(
    records: pd.DataFrame,
    spec: Optional[ModelSpec] = None,
    cache: Optional[ModelCache] = None,
    invalidate: bool = False,
    verbose: bool = True,
) -> FittedTrajectoryModel:
    """
    Return a cached fit for (records, spec) or fit and store a new one.

    ``invalidate=True`` drops the matching entry before looking it up.
    """
    spec = spec or ModelSpec()
    if cache is None:
        return fit_trajectory_model(records, spec, verbose=verbose)

    frame = build_model_frame(records, verbose=False)
    resolved = spec.resolve(frame[AGE_COL].nunique(), frame[DATE_COL].nunique())
    key = cache.key_for(frame, resolved)

    if invalidate and cache.invalidate(key):
        if verbose:
            print(f"[INFO] Invalidated cached model {key[:12]}")

    model = cache.load(key)
    if model is not None:
        if verbose:
            print(f"[INFO] Loaded cached model {key[:12]} from {cache.directory}")
        return model

    model = fit_trajectory_model(records, resolved, verbose=verbose)
    path = cache.store(key, model)
    if verbose:
        print(f"Saved: {path}")
    return model
