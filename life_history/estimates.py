"""
Per-age estimates
=================

Collapse the partial age effect of the fitted model to one standardized
estimate per age class:

    xz = (x - mean(x)) / (max(link) - min(link)) * scale

where ``x`` is the mean partial effect within an age class and ``link`` is
the full link-scale prediction over all modelled observations. Dividing by
the range of the whole prediction puts the age effect on a scale relative
to total predicted variation, comparable across traits.
"""

from __future__ import annotations

import numpy as np
import pandas as pd

from ._constants import AGE_COL, AGE_ESTIMATE_COLUMNS, DEFAULT_SCALE_CONSTANT, TERM_AGE
from .errors import InsufficientDataError
from .trajectory import FittedTrajectoryModel


def standardize_effects(x, link, scale: float = DEFAULT_SCALE_CONSTANT) -> np.ndarray:
    """Center ``x`` and divide by the range of ``link``, times ``scale``."""
    x = np.asarray(x, dtype=float)
    link = np.asarray(link, dtype=float)
    link_range = float(np.max(link) - np.min(link))
    if not np.isfinite(link_range) or link_range <= 0:
        raise InsufficientDataError(
            "Link-scale predictions have zero range; cannot standardize age effects",
            term=TERM_AGE,
        )
    return (x - x.mean()) / link_range * scale


def extract_age_estimates(
    model: FittedTrajectoryModel,
    scale: float = DEFAULT_SCALE_CONSTANT,
    verbose: bool = False,
) -> pd.DataFrame:
    """
    One standardized age estimate per distinct age.

    Returns
    -------
    pd.DataFrame
        Columns ``age``, ``n`` (observations), ``x`` (mean partial age effect),
        ``se`` (mean SE of the partial effect) and ``xz``, sorted by age.
    """
    partial = model.partial_effect(TERM_AGE)
    partial[AGE_COL] = model.frame[AGE_COL].to_numpy(dtype=int)

    grouped = partial.groupby(AGE_COL)
    per_age = pd.DataFrame(
        {
            "n": grouped.size(),
            "x": grouped["fit"].mean(),
            "se": grouped["se"].mean(),
        }
    ).reset_index()

    per_age["xz"] = standardize_effects(per_age["x"], model.linear_predictor(), scale)
    per_age = per_age.sort_values(AGE_COL).reset_index(drop=True)[AGE_ESTIMATE_COLUMNS]

    if verbose:
        print(f"[INFO] Extracted {len(per_age)} per-age estimates (ages {per_age[AGE_COL].min()}-{per_age[AGE_COL].max()})")
    return per_age
