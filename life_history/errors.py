"""Exception taxonomy for the trajectory workflow."""

from __future__ import annotations

from typing import Optional


class AnalysisError(Exception):
    """Base error; message is prefixed with the pipeline stage."""

    stage = "analysis"

    def __init__(
        self,
        message: str,
        column: Optional[str] = None,
        term: Optional[str] = None,
        stage: Optional[str] = None,
    ):
        if stage is not None:
            self.stage = stage
        self.column = column
        self.term = term
        context = []
        if column is not None:
            context.append(f"column={column!r}")
        if term is not None:
            context.append(f"term={term!r}")
        suffix = f" ({', '.join(context)})" if context else ""
        super().__init__(f"[{self.stage}] {message}{suffix}")


class DataFormatError(AnalysisError):
    """Input table is missing required columns or holds malformed values."""

    stage = "load"


class ConvergenceError(AnalysisError):
    """Model fitting did not converge."""

    stage = "fit"


class InsufficientDataError(AnalysisError):
    """Too few observations or levels to estimate a quantity."""

    stage = "data"
