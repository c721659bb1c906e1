"""Reference-sample acquisition, survey cleaning and income imputation."""

from tripmode.data.brackets import (
    BRACKET_CODES,
    BRACKET_SCHEME_VERSION,
    BRACKET_UPPER_BOUNDS,
    BracketMedianTable,
    assign_bracket,
    build_bracket_median_table,
    impute,
    impute_frame,
)

__all__ = [
    "BRACKET_CODES",
    "BRACKET_SCHEME_VERSION",
    "BRACKET_UPPER_BOUNDS",
    "BracketMedianTable",
    "assign_bracket",
    "build_bracket_median_table",
    "impute",
    "impute_frame",
]
