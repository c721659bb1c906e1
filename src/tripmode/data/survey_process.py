"""
Trip/person survey processing (Polars)

- Loads the NHTS trip and person public-use files.
- Applies the cleaning filters in a fixed order; every step is recorded in an
  exclusion ledger so dropped rows can be reconciled against the raw count.
- Joins person-level safety perceptions onto trips.
- Derives the model covariates and attaches the imputed household income.

Negative codes (-1, -7, -8, -9) are survey "missing" sentinels and are removed
by the filters below, never treated as values.
"""

from __future__ import annotations

import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Tuple

import polars as pl

from tripmode.config import SurveyConfig
from tripmode.errors import SurveyDataError
from tripmode.data.brackets import BracketMedianTable, impute_frame, valid_bracket_expr

logger = logging.getLogger(__name__)

TRIP_KEYS = ("household_id", "person_id", "purpose", "age", "distance", "mode",
             "state", "vehicles", "worker", "income_bracket")


# ---------------- Exclusion accounting ---------------- #

@dataclass
class ExclusionStep:
    name: str
    reason: str
    rows_in: int
    rows_out: int

    @property
    def excluded(self) -> int:
        return self.rows_in - self.rows_out


@dataclass
class ExclusionLedger:
    """Ordered record of how many rows each cleaning step removed."""

    steps: List[ExclusionStep] = field(default_factory=list)

    def record(self, name: str, reason: str, rows_in: int, rows_out: int) -> None:
        step = ExclusionStep(name=name, reason=reason, rows_in=rows_in, rows_out=rows_out)
        self.steps.append(step)
        share = step.excluded / rows_in if rows_in else 0.0
        logger.info(f"Survey: {name}: excluded {step.excluded:,} rows ({share:.2%}), {rows_out:,} remain")

    def apply(self, df: pl.DataFrame, name: str, keep: pl.Expr, reason: str) -> pl.DataFrame:
        """Filter df to rows where keep holds (null counts as excluded) and record the step."""
        out = df.filter(keep.fill_null(False))
        self.record(name, reason, df.height, out.height)
        return out

    @property
    def rows_in(self) -> int:
        return self.steps[0].rows_in if self.steps else 0

    @property
    def rows_out(self) -> int:
        return self.steps[-1].rows_out if self.steps else 0

    @property
    def total_excluded(self) -> int:
        return sum(s.excluded for s in self.steps)

    def to_frame(self) -> pl.DataFrame:
        return pl.DataFrame({
            "step": [s.name for s in self.steps],
            "reason": [s.reason for s in self.steps],
            "rows_in": pl.Series([s.rows_in for s in self.steps], dtype=pl.Int64),
            "rows_out": pl.Series([s.rows_out for s in self.steps], dtype=pl.Int64),
            "excluded": pl.Series([s.excluded for s in self.steps], dtype=pl.Int64),
        })


# ---------------- Loading ---------------- #

def _require(columns: List[str], cols: List[str], what: str) -> None:
    missing = [c for c in cols if c not in columns]
    if missing:
        raise SurveyDataError(f"{what} missing required columns: {missing}")


def load_trips(path: Path, sv: SurveyConfig) -> pl.DataFrame:
    path = Path(path)
    if not path.exists():
        raise SurveyDataError(f"Trip file not found: {path}")
    cols = [sv.col(k) for k in TRIP_KEYS]
    header = pl.read_csv(str(path), n_rows=0).columns
    _require(header, cols, f"Trip file {path.name}")
    df = pl.read_csv(str(path), columns=cols, infer_schema_length=10000,
                     schema_overrides={sv.col("state"): pl.Utf8})
    logger.info(f"Survey: loaded {df.height:,} trips from {path}")
    return df


def load_persons(path: Path, sv: SurveyConfig) -> pl.DataFrame:
    path = Path(path)
    if not path.exists():
        raise SurveyDataError(f"Person file not found: {path}")
    cols = [sv.col("household_id"), sv.col("person_id")] + [item.column for item in sv.safety.values()]
    header = pl.read_csv(str(path), n_rows=0).columns
    _require(header, cols, f"Person file {path.name}")
    df = pl.read_csv(str(path), columns=cols, infer_schema_length=10000)
    logger.info(f"Survey: loaded {df.height:,} persons from {path}")
    return df


# ---------------- Cleaning ---------------- #

def _id_key(col: str) -> pl.Expr:
    return pl.col(col).cast(pl.Utf8).str.strip_chars()


def filter_trips(trips: pl.DataFrame, sv: SurveyConfig, ledger: ExclusionLedger) -> pl.DataFrame:
    """Apply the trip-level exclusion filters in order."""
    _require(trips.columns, [sv.col(k) for k in TRIP_KEYS], "Trip data")
    c = sv.col

    df = ledger.apply(trips, "age", pl.col(c("age")).is_between(sv.age_min, sv.age_max),
                      f"respondent age outside {sv.age_min}-{sv.age_max} or missing")

    keep_purpose = pl.col(c("purpose")) >= 0
    reason = "trip purpose missing"
    if sv.purposes_keep:
        keep_purpose = keep_purpose & pl.col(c("purpose")).is_in(sv.purposes_keep)
        reason = f"trip purpose missing or not in {sv.purposes_keep}"
    df = ledger.apply(df, "purpose", keep_purpose, reason)

    keep_dist = pl.col(c("distance")) >= 0
    reason = "trip distance missing"
    if sv.max_trip_miles is not None:
        keep_dist = keep_dist & (pl.col(c("distance")) <= sv.max_trip_miles)
        reason = f"trip distance missing or above {sv.max_trip_miles} miles"
    df = ledger.apply(df, "distance", keep_dist, reason)

    df = ledger.apply(df, "mode", pl.col(c("mode")) > 0, "transportation mode missing")
    df = ledger.apply(df, "vehicles", pl.col(c("vehicles")) >= 0, "household vehicle count missing")
    df = ledger.apply(df, "worker", pl.col(c("worker")).is_in([sv.worker_yes, sv.worker_no]),
                      "worker status missing")
    df = ledger.apply(df, "income_bracket", valid_bracket_expr(c("income_bracket")),
                      "household income bracket missing or out of range")
    return df


def join_persons(trips: pl.DataFrame, persons: pl.DataFrame, sv: SurveyConfig,
                 ledger: ExclusionLedger) -> pl.DataFrame:
    """Attach person safety-perception codes; trips without a person record are excluded."""
    hh, pid = sv.col("household_id"), sv.col("person_id")
    safety_cols = [item.column for item in sv.safety.values()]
    _require(persons.columns, [hh, pid] + safety_cols, "Person data")

    dupes = persons.select([hh, pid]).is_duplicated().sum()
    if dupes:
        raise SurveyDataError(f"Person data has {dupes:,} rows with duplicated {hh}/{pid}")

    right = persons.select([
        _id_key(hh).alias("__hh"),
        _id_key(pid).alias("__pid"),
        *[pl.col(col) for col in safety_cols if col not in trips.columns],
    ])
    joined = (
        trips.with_columns([_id_key(hh).alias("__hh"), _id_key(pid).alias("__pid")])
             .join(right, on=["__hh", "__pid"], how="inner")
             .drop(["__hh", "__pid"])
    )
    ledger.record("person_join", "no matching person record", trips.height, joined.height)

    keep = pl.lit(True)
    for col in safety_cols:
        keep = keep & (pl.col(col) > 0)
    return ledger.apply(joined, "safety", keep, "safety perception missing")


def derive_covariates(df: pl.DataFrame, sv: SurveyConfig) -> pl.DataFrame:
    """Model covariates as 0/1 flags plus trip distance and bracket code."""
    c = sv.col
    exprs = [
        pl.col(c("mode")).is_in(sv.active_modes).cast(pl.Int8).alias("active"),
        (pl.col(c("vehicles")) > 0).cast(pl.Int8).alias("has_vehicle"),
        (pl.col(c("worker")) == sv.worker_yes).cast(pl.Int8).alias("is_worker"),
        pl.col(c("distance")).cast(pl.Float64).alias("trip_miles"),
        pl.col(c("income_bracket")).cast(pl.Int64).alias("income_bracket"),
        pl.col(c("state")).cast(pl.Utf8).str.strip_chars().str.to_uppercase().alias("state"),
    ]
    for name, item in sv.safety.items():
        exprs.append(pl.col(item.column).is_in(item.concerned).cast(pl.Int8).alias(name))
    return df.with_columns(exprs)


def clean_survey(trips: pl.DataFrame, persons: pl.DataFrame, sv: SurveyConfig) -> Tuple[pl.DataFrame, ExclusionLedger]:
    """Run every cleaning step and derive covariates. Returns the sample and its ledger."""
    ledger = ExclusionLedger()
    df = filter_trips(trips, sv, ledger)
    df = join_persons(df, persons, sv, ledger)
    if df.height == 0:
        raise SurveyDataError("No trips left after cleaning")
    df = derive_covariates(df, sv)
    logger.info(f"Survey: cleaning completed, {df.height:,} of {ledger.rows_in:,} trips kept "
                f"({ledger.total_excluded:,} excluded)")
    return df, ledger


def survey_states(df: pl.DataFrame) -> List[str]:
    """Postal abbreviations of the household states present in the cleaned sample."""
    return sorted(df["state"].drop_nulls().unique().to_list())


def attach_income(df: pl.DataFrame, table: BracketMedianTable) -> pl.DataFrame:
    """Impute continuous household income from the bracket code; adds income and income_10k."""
    out = impute_frame(df, table, code_col="income_bracket", out_col="income")
    return out.with_columns((pl.col("income") / 10_000).alias("income_10k"))
