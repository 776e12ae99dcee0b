"""
Breeding record loading
=======================

Reads a delimited table of breeding records (one row per clutch), maps the
header onto the canonical schema and coerces column types. Records with an
unknown lifespan are kept here; they are dropped only for model fitting.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

import numpy as np
import pandas as pd

from ._constants import (
    AGE_COL,
    CLUTCH_COL,
    COLUMN_ALIASES,
    DATE_COL,
    INDIVIDUAL_COL,
    INTEGER_COLUMNS,
    LIFESPAN_COL,
    REQUIRED_COLUMNS,
    YEAR_COL,
)
from .errors import DataFormatError


def _normalize_header(name: object) -> str:
    token = str(name).strip().lower()
    for char in ("_", "-", " ", "."):
        token = token.replace(char, "")
    return token


def ensure_canonical_columns(df: pd.DataFrame) -> pd.DataFrame:
    """
    Rename aliased headers to the canonical schema.

    Raises DataFormatError naming the first required column that cannot be
    found under any alias.
    """
    rename_map = {}
    taken = set()
    for canonical in REQUIRED_COLUMNS:
        if canonical in df.columns:
            taken.add(canonical)
            continue
        aliases = COLUMN_ALIASES.get(canonical, set())
        for col in df.columns:
            if col in rename_map or col in REQUIRED_COLUMNS:
                continue
            if _normalize_header(col) in aliases:
                rename_map[col] = canonical
                taken.add(canonical)
                break

    df = df.rename(columns=rename_map)
    missing = [col for col in REQUIRED_COLUMNS if col not in taken]
    if missing:
        raise DataFormatError(
            f"Required column missing from input table; found {list(df.columns)}",
            column=missing[0],
        )
    return df


def _strip(value: object) -> object:
    return value.strip() if isinstance(value, str) else value


def _coerce_integer(series: pd.Series, column: str) -> pd.Series:
    raw = series.astype(object).map(_strip)
    values = pd.to_numeric(raw, errors="coerce").astype(float)
    blank = raw.map(lambda v: isinstance(v, str) and v == "")
    malformed = raw.notna() & ~blank & values.isna()
    if malformed.any():
        examples = raw[malformed].unique()[:3].tolist()
        raise DataFormatError(
            f"Non-numeric values found (e.g. {examples}) in {int(malformed.sum())} rows",
            column=column,
        )
    fractional = values.notna() & (np.mod(values, 1) != 0)
    if fractional.any():
        examples = raw[fractional].unique()[:3].tolist()
        raise DataFormatError(
            f"Non-integer values found (e.g. {examples}) in {int(fractional.sum())} rows",
            column=column,
        )
    return values.astype("Int64")


def prepare_records(df: pd.DataFrame) -> pd.DataFrame:
    """
    Canonicalize headers and coerce types of an in-memory record table.

    Returns
    -------
    pd.DataFrame
        Columns: individual_id (str), age (Int64), clutch_size (Int64),
        julian_date (float), lifespan (float, NaN when unknown),
        year (category), plus any extra input columns untouched.
    """
    df = ensure_canonical_columns(df.copy())

    for col in INTEGER_COLUMNS:
        df[col] = _coerce_integer(df[col], col)

    df[DATE_COL] = pd.to_numeric(df[DATE_COL], errors="coerce").astype(float)
    df[LIFESPAN_COL] = pd.to_numeric(df[LIFESPAN_COL], errors="coerce").astype(float)
    df[INDIVIDUAL_COL] = df[INDIVIDUAL_COL].astype("string").str.strip()
    df[YEAR_COL] = df[YEAR_COL].astype("string").str.strip().astype("category")
    return df.reset_index(drop=True)


def load_breeding_records(
    path: Union[str, Path],
    sep: Optional[str] = None,
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Load breeding records from a delimited text file with a header row.

    Parameters
    ----------
    path : str or Path
        Input table.
    sep : str, optional
        Field delimiter. Sniffed from the file when None.
    verbose : bool
        Print a one-line summary.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Breeding record file not found: {path}")

    read_kwargs = {"encoding": "utf-8-sig", "dtype": str}
    if sep is None:
        read_kwargs.update(sep=None, engine="python")
    else:
        read_kwargs["sep"] = sep

    try:
        raw = pd.read_csv(path, **read_kwargs)
    except pd.errors.ParserError as exc:
        raise DataFormatError(f"Could not parse {path.name}: {exc}") from exc
    except pd.errors.EmptyDataError as exc:
        raise DataFormatError(f"{path.name} is empty") from exc

    records = prepare_records(raw)
    if verbose:
        n_known = int(records[LIFESPAN_COL].notna().sum())
        print(
            f"[INFO] Loaded {len(records)} breeding records from {path.name} "
            f"({records[INDIVIDUAL_COL].nunique()} individuals, {n_known} with known lifespan)"
        )
    return records


def eligible_records(records: pd.DataFrame) -> pd.DataFrame:
    """Return the records with a known lifespan (idempotent)."""
    return records[records[LIFESPAN_COL].notna()].copy()


# =============================================================================
# DESCRIPTIVES
# =============================================================================

def describe_records(records: pd.DataFrame) -> pd.DataFrame:
    """
    Per-age descriptive table over all records, known lifespan or not.
    """
    df = records.dropna(subset=[AGE_COL]).copy()
    df["known_lifespan"] = df[LIFESPAN_COL].notna()
    clutch = df[CLUTCH_COL].astype(float)
    grouped = df.assign(_clutch=clutch).groupby(AGE_COL, observed=True)
    table = pd.DataFrame(
        {
            "n_clutches": grouped.size(),
            "n_known_lifespan": grouped["known_lifespan"].sum().astype(int),
            "n_individuals": grouped[INDIVIDUAL_COL].nunique(),
            "mean_clutch_size": grouped["_clutch"].mean(),
            "sd_clutch_size": grouped["_clutch"].std(),
        }
    )
    return table.reset_index().sort_values(AGE_COL).reset_index(drop=True)


def sample_overview(records: pd.DataFrame) -> pd.DataFrame:
    known = records[LIFESPAN_COL].notna()
    return pd.DataFrame(
        [
            {
                "n_records": int(len(records)),
                "n_individuals": int(records[INDIVIDUAL_COL].nunique()),
                "n_years": int(records[YEAR_COL].nunique()),
                "n_records_known_lifespan": int(known.sum()),
                "n_individuals_known_lifespan": int(records.loc[known, INDIVIDUAL_COL].nunique()),
                "age_min": records[AGE_COL].min(),
                "age_max": records[AGE_COL].max(),
            }
        ]
    )
