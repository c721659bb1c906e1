"""
Household income brackets and bracket-to-continuous income imputation.

The NHTS household income item (HHFAMINC) is an ordinal code over eleven
annual-income ranges. The same threshold table classifies ACS reference
records, validates trip bracket codes and labels report tables, so it is
defined once here and versioned.

Thresholds are exclusive upper bounds applied in ascending order; the first
match wins, so an income of exactly 10,000 falls in bracket 2.
"""

from __future__ import annotations

import math
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import polars as pl

from tripmode.errors import BracketLookupError, SurveyDataError

logger = logging.getLogger(__name__)

BRACKET_SCHEME_VERSION = "hhfaminc-2017.1"

# Exclusive upper bounds for brackets 1..10; bracket 11 is unbounded above
BRACKET_UPPER_BOUNDS: Tuple[int, ...] = (
    10_000, 15_000, 25_000, 35_000, 50_000, 75_000, 100_000, 125_000, 150_000, 200_000,
)
BRACKET_CODES: Tuple[int, ...] = tuple(range(1, len(BRACKET_UPPER_BOUNDS) + 2))
MIN_BRACKET = BRACKET_CODES[0]
MAX_BRACKET = BRACKET_CODES[-1]


def _label(code: int) -> str:
    if code == MIN_BRACKET:
        return f"< ${BRACKET_UPPER_BOUNDS[0]:,}"
    if code == MAX_BRACKET:
        return f">= ${BRACKET_UPPER_BOUNDS[-1]:,}"
    return f"${BRACKET_UPPER_BOUNDS[code - 2]:,} - ${BRACKET_UPPER_BOUNDS[code - 1] - 1:,}"


BRACKET_LABELS: Dict[int, str] = {code: _label(code) for code in BRACKET_CODES}


def is_valid_bracket_code(code) -> bool:
    """True for integer codes inside the bracket enumeration."""
    if code is None or isinstance(code, bool):
        return False
    try:
        as_int = int(code)
    except (TypeError, ValueError):
        return False
    return as_int == code and MIN_BRACKET <= as_int <= MAX_BRACKET


def assign_bracket(income: float) -> int:
    """Return the bracket code for a non-negative continuous income."""
    if income is None or (isinstance(income, float) and math.isnan(income)):
        raise ValueError("income is missing")
    if income < 0:
        raise ValueError(f"income must be non-negative, got {income}")
    for code, upper in zip(BRACKET_CODES, BRACKET_UPPER_BOUNDS):
        if income < upper:
            return code
    return MAX_BRACKET


def bracket_expr(col: str | pl.Expr) -> pl.Expr:
    """Polars expression assigning bracket codes; null for missing, NaN or negative incomes."""
    c = pl.col(col) if isinstance(col, str) else col
    expr = pl.when(c.is_null() | c.cast(pl.Float64).is_nan() | (c < 0)).then(pl.lit(None, dtype=pl.Int64))
    for code, upper in zip(BRACKET_CODES, BRACKET_UPPER_BOUNDS):
        expr = expr.when(c < upper).then(pl.lit(code, dtype=pl.Int64))
    return expr.otherwise(pl.lit(MAX_BRACKET, dtype=pl.Int64))


def valid_bracket_expr(col: str) -> pl.Expr:
    """Polars predicate: the column holds a code from the bracket enumeration."""
    return pl.col(col).is_not_null() & pl.col(col).is_between(MIN_BRACKET, MAX_BRACKET)


@dataclass
class BracketMedianTable:
    """Median reference income per bracket, with the group sizes behind each median."""

    medians: Dict[int, float]
    counts: Dict[int, int] = field(default_factory=dict)
    scheme_version: str = BRACKET_SCHEME_VERSION

    def __contains__(self, code) -> bool:
        return is_valid_bracket_code(code) and int(code) in self.medians

    def __len__(self) -> int:
        return len(self.medians)

    @property
    def brackets(self) -> List[int]:
        return sorted(self.medians)

    @property
    def missing_brackets(self) -> List[int]:
        return [c for c in BRACKET_CODES if c not in self.medians]

    def monotonic_violations(self) -> List[Tuple[int, int]]:
        """Pairs of successive populated brackets whose median decreases."""
        codes = self.brackets
        return [
            (lo, hi) for lo, hi in zip(codes, codes[1:])
            if self.medians[hi] < self.medians[lo]
        ]

    def to_frame(self) -> pl.DataFrame:
        codes = self.brackets
        return pl.DataFrame({
            "bracket": pl.Series(codes, dtype=pl.Int64),
            "label": [BRACKET_LABELS[c] for c in codes],
            "n": pl.Series([self.counts.get(c, 0) for c in codes], dtype=pl.Int64),
            "median_income": pl.Series([self.medians[c] for c in codes], dtype=pl.Float64),
            "scheme_version": [self.scheme_version] * len(codes),
        })

    def write_csv(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.to_frame().write_csv(str(path))
        return path

    @classmethod
    def read_csv(cls, path: Path) -> "BracketMedianTable":
        df = pl.read_csv(str(path))
        versions = set(df["scheme_version"].unique().to_list()) if "scheme_version" in df.columns else set()
        if versions and versions != {BRACKET_SCHEME_VERSION}:
            raise ValueError(
                f"{path} was built with bracket scheme {sorted(versions)}, expected {BRACKET_SCHEME_VERSION}"
            )
        return cls(
            medians={int(b): float(m) for b, m in zip(df["bracket"], df["median_income"])},
            counts={int(b): int(n) for b, n in zip(df["bracket"], df["n"])} if "n" in df.columns else {},
        )


def build_bracket_median_table(reference: pl.DataFrame, income_col: str = "income") -> BracketMedianTable:
    """
    Group reference records by bracket and take the median income of each group.

    Records with missing, NaN or negative income are ignored. A bracket with no
    members gets no entry, so later lookups for it fail.
    """
    if income_col not in reference.columns:
        raise KeyError(f"reference sample has no '{income_col}' column")

    grouped = (
        reference
        .filter(
            pl.col(income_col).is_not_null()
            & pl.col(income_col).cast(pl.Float64).is_not_nan()
            & (pl.col(income_col) >= 0)
        )
        .with_columns(bracket_expr(income_col).alias("__bracket"))
        .group_by("__bracket")
        .agg([
            pl.col(income_col).cast(pl.Float64).median().alias("median_income"),
            pl.len().alias("n"),
        ])
        .sort("__bracket")
    )

    table = BracketMedianTable(
        medians={int(b): float(m) for b, m in zip(grouped["__bracket"], grouped["median_income"])},
        counts={int(b): int(n) for b, n in zip(grouped["__bracket"], grouped["n"])},
    )

    logger.info(f"Brackets: built median table for {len(table)}/{len(BRACKET_CODES)} brackets "
                f"from {int(grouped['n'].sum()):,} reference records")
    if table.missing_brackets:
        logger.warning(f"Brackets: no reference support for bracket(s) {table.missing_brackets}")
    violations = table.monotonic_violations()
    if violations:
        logger.warning(f"Brackets: medians decrease between bracket pairs {violations}")
    return table


def impute(bracket_code: int, table: BracketMedianTable) -> float:
    """Continuous income for a bracket code. Raises BracketLookupError when the table has no entry."""
    if bracket_code not in table:
        raise BracketLookupError([bracket_code], available=table.brackets)
    return table.medians[int(bracket_code)]


def impute_frame(
    df: pl.DataFrame,
    table: BracketMedianTable,
    code_col: str,
    out_col: str = "income",
) -> pl.DataFrame:
    """
    Attach imputed income for every row of df.

    Fails for the whole frame when any code lacks a table entry; never fills
    a default value.
    """
    nulls = df[code_col].null_count()
    if nulls:
        raise SurveyDataError(f"{nulls:,} rows have no '{code_col}' value; exclude them before imputing")

    present = df[code_col].unique().to_list()
    unsupported = [c for c in present if c not in table]
    if unsupported:
        raise BracketLookupError(unsupported, available=table.brackets)

    out = df.with_columns(
        pl.col(code_col).cast(pl.Int64)
          .replace_strict(table.medians, return_dtype=pl.Float64)
          .alias(out_col)
    )
    logger.info(f"Brackets: imputed '{out_col}' for {out.height:,} rows across {len(present)} brackets")
    return out
