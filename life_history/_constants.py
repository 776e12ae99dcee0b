"""
Shared constants
================

Column names, header aliases, model term table and default paths used across
the clutch-size trajectory workflow.
"""

# =============================================================================
# PATHS
# =============================================================================

# Relative to the working directory of the run, never the installed package
OUTPUTS_DIRNAME = "outputs"
CACHE_DIRNAME = "cache"

# =============================================================================
# BREEDING RECORD SCHEMA
# =============================================================================

INDIVIDUAL_COL = "individual_id"
AGE_COL = "age"
CLUTCH_COL = "clutch_size"
DATE_COL = "julian_date"
LIFESPAN_COL = "lifespan"
YEAR_COL = "year"

REQUIRED_COLUMNS = [INDIVIDUAL_COL, AGE_COL, CLUTCH_COL, DATE_COL, LIFESPAN_COL, YEAR_COL]
INTEGER_COLUMNS = [AGE_COL, CLUTCH_COL]

# Header aliases, compared after lower-casing and stripping "_", "-", " "
COLUMN_ALIASES = {
    INDIVIDUAL_COL: {"individualid", "id", "femaleid", "female", "ring", "birdid", "individual"},
    AGE_COL: {"age", "femaleage"},
    CLUTCH_COL: {"clutchsize", "clutch", "cs", "eggs"},
    DATE_COL: {"juliandate", "julian", "laydate", "layingdate", "date"},
    LIFESPAN_COL: {"lifespan", "longevity", "ageatdeath"},
    YEAR_COL: {"year", "season", "breedingyear"},
}

# =============================================================================
# MODEL TERMS
# =============================================================================

# Logical term name -> data column. Order matches the smoother order in the
# fitted model; "para" is the parametric block (intercept + lifespan).
TERM_AGE = "age"
TERM_DATE = "date"
TERM_INDIVIDUAL = "individual"
TERM_YEAR = "year"
TERM_PARAMETRIC = "para"

SMOOTH_TERMS = (TERM_AGE, TERM_DATE)
RANDOM_TERMS = (TERM_INDIVIDUAL, TERM_YEAR)
PENALIZED_TERMS = SMOOTH_TERMS + RANDOM_TERMS

TERM_COLUMNS = {
    TERM_AGE: AGE_COL,
    TERM_DATE: DATE_COL,
    TERM_INDIVIDUAL: INDIVIDUAL_COL,
    TERM_YEAR: YEAR_COL,
}

PARAMETRIC_NAMES = ["Intercept", LIFESPAN_COL]

# =============================================================================
# ANALYSIS DEFAULTS
# =============================================================================

DEFAULT_K_DATE = 10
DEFAULT_K_AGE_MARGIN = 1
DEFAULT_SPLINE_DEGREE = 3
DEFAULT_SCALE_CONSTANT = 10.0
DEFAULT_ALPHA = 0.05
DEFAULT_N_BOOT = 10
DEFAULT_SEED = 42
DEFAULT_K_CHECK_REPS = 400

VALID_FAMILIES = {"auto", "negative_binomial", "poisson", "quasi_poisson"}
DEFAULT_FAMILY = "auto"

AGE_ESTIMATE_COLUMNS = ["age", "n", "x", "se", "xz"]

# Output file names
OUTPUT_FILES = {
    "descriptives": "descriptives_by_age.csv",
    "overview": "sample_overview.csv",
    "parametric": "parametric_terms.csv",
    "smooth": "smooth_terms.csv",
    "basis_check": "basis_check.csv",
    "concurvity": "concurvity.csv",
    "variance_components": "variance_components.csv",
    "age_estimates": "age_estimates.csv",
    "breakpoint": "breakpoint.csv",
}
