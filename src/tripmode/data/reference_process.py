"""
Reference-sample processing: ACS person records -> bracket median table.

Steps:
1) Harmonize IPUMS names (HHINCOME, AGE, STATEFIP) and treat the N/A code as missing.
2) Keep the states that appear in the trip survey.
3) Keep ages in [age_min, age_max] and non-negative household income.
4) Assign brackets with the shared threshold table and take the median per bracket.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List

import polars as pl
import us

from tripmode.config import Config
from tripmode.errors import ReferenceDataError
from tripmode.data.brackets import BracketMedianTable, build_bracket_median_table

logger = logging.getLogger(__name__)

# IPUMS HHINCOME universe code for group quarters / vacant units
HHINCOME_NA = 9_999_999

# State FIPS codes keyed by postal abbreviation
STATE_FIPS_MAP = {s.abbr: s.fips for s in us.states.STATES}
STATE_FIPS_MAP['DC'] = '11'


def state_fips_for(abbrs: Iterable[str]) -> List[str]:
    """Two-digit FIPS codes for postal abbreviations; unknown abbreviations raise."""
    out, unknown = set(), []
    for a in abbrs:
        if a is None:
            continue
        key = str(a).strip().upper()
        fips = STATE_FIPS_MAP.get(key)
        if fips is None:
            unknown.append(key)
        else:
            out.add(fips)
    if unknown:
        raise ReferenceDataError(f"Unknown state abbreviation(s): {sorted(set(unknown))}")
    return sorted(out)


def load_reference_sample(path: Path) -> pl.DataFrame:
    path = Path(path)
    if not path.exists():
        raise ReferenceDataError(f"Reference sample not found: {path}")
    df = pl.read_csv(str(path), infer_schema_length=10000)
    logger.info(f"Reference: loaded {df.height:,} rows from {path}")
    return df


def harmonize_reference(df: pl.DataFrame) -> pl.DataFrame:
    """Rename IPUMS columns to income/age/state_fips; HHINCOME N/A becomes null."""
    missing = [c for c in ("HHINCOME", "AGE", "STATEFIP") if c not in df.columns]
    if missing:
        raise ReferenceDataError(f"Reference sample missing columns: {missing}")
    return df.with_columns([
        pl.when(pl.col("HHINCOME") == HHINCOME_NA).then(None)
          .otherwise(pl.col("HHINCOME")).cast(pl.Float64).alias("income"),
        pl.col("AGE").cast(pl.Int64).alias("age"),
        pl.col("STATEFIP").cast(pl.Utf8).str.pad_start(2, "0").alias("state_fips"),
    ])


def restrict_reference(
    df: pl.DataFrame,
    state_fips: Iterable[str] | None,
    age_min: int,
    age_max: int,
) -> pl.DataFrame:
    """Apply the geography, age and income filters, logging counts after each."""
    if state_fips is not None:
        wanted = sorted({str(s).zfill(2) for s in state_fips})
        df = df.filter(pl.col("state_fips").is_in(wanted))
        logger.info(f"Reference: after keeping {len(wanted)} survey states: {df.height:,} rows")
    df = df.filter(pl.col("age").is_between(age_min, age_max))
    logger.info(f"Reference: after filtering for ages {age_min}-{age_max}: {df.height:,} rows")
    df = df.filter(pl.col("income").is_not_null() & pl.col("income").is_not_nan() & (pl.col("income") >= 0))
    logger.info(f"Reference: after filtering for non-negative income: {df.height:,} rows")
    if df.height == 0:
        raise ReferenceDataError("Reference sample is empty after filtering")
    return df


def build_reference_table(cfg: Config, state_fips: Iterable[str] | None, path: Path | None = None) -> BracketMedianTable:
    """Load, harmonize and restrict the reference sample, then build the bracket median table."""
    ref = cfg.reference
    df = harmonize_reference(load_reference_sample(path or cfg.reference_path))
    df = restrict_reference(df, state_fips, ref.age_min, ref.age_max)
    table = build_bracket_median_table(df, income_col="income")

    out_path = cfg.processed_dir / "acs" / "bracket_medians.csv"
    table.write_csv(out_path)
    logger.info(f"Reference: bracket medians saved to {out_path}")
    return table
