"""
Report rendering: descriptive tables, coefficient table, effect plots and a
Markdown report tying them together.

Outputs (under the report directory):
- summary_<variable>.csv, coefficients.csv, bracket_medians.csv, exclusions.csv
- effect_distance.png, effect_<term>.png for each binary effect
- report.md
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
import polars as pl
import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt

from tripmode.config import ReportConfig
from tripmode.analysis.model import ModelResult, effect_profiles
from tripmode.data.brackets import BRACKET_LABELS, BracketMedianTable
from tripmode.data.survey_process import ExclusionLedger

logger = logging.getLogger(__name__)

TERM_LABELS = {
    "const": "Intercept",
    "trip_miles": "Trip distance (miles)",
    "has_vehicle": "Household has a vehicle",
    "is_worker": "Worker",
    "income_10k": "Household income ($10k)",
    "walk_safety_concern": "Walking safety concern",
    "bike_safety_concern": "Biking safety concern",
    "active": "Active mode (walk/bike)",
    "income_bracket": "Household income bracket",
}


def label_for(term: str) -> str:
    return TERM_LABELS.get(term, term.replace("_", " ").capitalize())


# ---------------- Tables ---------------- #

def summary_table(df: pl.DataFrame, variable: str, outcome: Optional[str] = "active") -> pl.DataFrame:
    """Counts and percentages per category, plus the outcome share within each category."""
    aggs = [pl.len().alias("n")]
    if outcome and outcome in df.columns and outcome != variable:
        aggs.append((pl.col(outcome).cast(pl.Float64).mean() * 100).alias(f"pct_{outcome}"))
    out = (
        df.group_by(variable)
          .agg(aggs)
          .sort(variable)
          .with_columns((pl.col("n") / pl.col("n").sum() * 100).alias("percent"))
    )
    if variable == "income_bracket":
        out = out.with_columns(
            pl.col(variable).replace_strict(BRACKET_LABELS, default=None, return_dtype=pl.Utf8).alias("label")
        )
    cols = [variable] + (["label"] if "label" in out.columns else []) + ["n", "percent"]
    cols += [c for c in out.columns if c.startswith("pct_")]
    return out.select(cols)


def _markdown(df: pl.DataFrame | pd.DataFrame, floatfmt: str = ".3f") -> str:
    pdf = df.to_pandas() if isinstance(df, pl.DataFrame) else df
    return pdf.to_markdown(index=False, floatfmt=floatfmt)


# ---------------- Plots ---------------- #

def _annotate(ax, text: str) -> None:
    ax.text(0.98, 0.95, text, transform=ax.transAxes, ha="right", va="top", fontsize=9,
            bbox=dict(boxstyle="round", facecolor="white", alpha=0.8))


def plot_distance_effect(result: ModelResult, df: pl.DataFrame, report: ReportConfig,
                         output_path: Path, term: str = "trip_miles") -> Path:
    """Predicted probability of the outcome over trip distance, others at their means."""
    grid = np.linspace(0.0, report.distance_grid_max, report.distance_grid_points)
    pred = result.predict_with_ci(effect_profiles(df, result.terms, term, grid))
    coef = result.coefficient_table().set_index("term").loc[term]

    fig, ax = plt.subplots(figsize=(8, 5))
    ax.plot(pred[term], pred["probability"], color="tab:blue", lw=2)
    ax.fill_between(pred[term], pred["ci_low"], pred["ci_high"], color="tab:blue", alpha=0.2,
                    label="95% CI (robust)")
    ax.set_xlabel(label_for(term))
    ax.set_ylabel(f"P({label_for(result.outcome)})")
    ax.set_ylim(0, 1)
    ax.set_title(f"{label_for(result.outcome)} by {label_for(term).lower()}")
    _annotate(ax, f"OR per mile = {coef['odds_ratio']:.3f}\np = {coef['p_value']:.3g}")
    ax.legend(loc="lower left")
    ax.grid(alpha=0.3)
    plt.tight_layout()
    fig.savefig(output_path, dpi=report.dpi)
    plt.close(fig)
    return output_path


def plot_binary_effect(result: ModelResult, df: pl.DataFrame, term: str, report: ReportConfig,
                       output_path: Path) -> Path:
    """Predicted probability at term = 0 and term = 1, others at their means."""
    pred = result.predict_with_ci(effect_profiles(df, result.terms, term, [0.0, 1.0]))
    coef = result.coefficient_table().set_index("term").loc[term]

    fig, ax = plt.subplots(figsize=(6, 5))
    yerr = np.vstack([pred["probability"] - pred["ci_low"], pred["ci_high"] - pred["probability"]])
    ax.errorbar([0, 1], pred["probability"], yerr=yerr, fmt="o", color="tab:orange", capsize=6, ms=8)
    for x, p in zip([0, 1], pred["probability"]):
        ax.annotate(f"{p:.3f}", (x, p), textcoords="offset points", xytext=(12, 0), va="center")
    ax.set_xticks([0, 1])
    ax.set_xticklabels(["No", "Yes"])
    ax.set_xlim(-0.5, 1.5)
    ax.set_xlabel(label_for(term))
    ax.set_ylabel(f"P({label_for(result.outcome)})")
    ax.set_title(f"{label_for(result.outcome)} by {label_for(term).lower()}")
    _annotate(ax, f"OR = {coef['odds_ratio']:.3f}\np = {coef['p_value']:.3g}")
    ax.grid(alpha=0.3, axis="y")
    plt.tight_layout()
    fig.savefig(output_path, dpi=report.dpi)
    plt.close(fig)
    return output_path


# ---------------- Report ---------------- #

def write_report(
    df: pl.DataFrame,
    result: ModelResult,
    table: BracketMedianTable,
    ledger: ExclusionLedger,
    report: ReportConfig,
    report_dir: Path,
) -> Dict[str, Path]:
    """Write every table, figure and report.md into report_dir; returns the written paths."""
    report_dir = Path(report_dir)
    report_dir.mkdir(parents=True, exist_ok=True)
    out: Dict[str, Path] = {}

    summaries: Dict[str, pl.DataFrame] = {}
    for var in report.summary_variables:
        if var not in df.columns:
            logger.warning(f"Report: summary variable '{var}' missing from the sample; skipped")
            continue
        summaries[var] = summary_table(df, var, outcome=result.outcome)
        out[f"summary_{var}"] = report_dir / f"summary_{var}.csv"
        summaries[var].write_csv(str(out[f"summary_{var}"]))

    coefs = result.coefficient_table()
    out["coefficients"] = report_dir / "coefficients.csv"
    coefs.to_csv(out["coefficients"], index=False)

    out["bracket_medians"] = table.write_csv(report_dir / "bracket_medians.csv")
    out["exclusions"] = report_dir / "exclusions.csv"
    ledger.to_frame().write_csv(str(out["exclusions"]))

    figures: List[tuple[str, Path]] = []
    if "trip_miles" in result.terms:
        out["effect_distance"] = plot_distance_effect(result, df, report, report_dir / "effect_distance.png")
        figures.append((label_for("trip_miles"), out["effect_distance"]))
    for term in report.binary_effects:
        if term not in result.terms:
            logger.warning(f"Report: binary effect '{term}' is not a model term; skipped")
            continue
        key = f"effect_{term}"
        out[key] = plot_binary_effect(result, df, term, report, report_dir / f"{key}.png")
        figures.append((label_for(term), out[key]))

    stats = result.fit_statistics()
    lines = [
        f"# {label_for(result.outcome)}: logistic regression report",
        "",
        f"Generated {datetime.now().strftime('%Y-%m-%d %H:%M')}.",
        "",
        "## Sample",
        "",
        f"{ledger.rows_out:,} of {ledger.rows_in:,} trips retained "
        f"({ledger.total_excluded:,} excluded).",
        "",
        _markdown(ledger.to_frame()),
        "",
        "## Imputed household income",
        "",
        "Bracket medians from the ACS reference sample (scheme "
        f"`{table.scheme_version}`).",
        "",
        _markdown(table.to_frame().drop("scheme_version"), floatfmt=",.0f"),
        "",
        "## Descriptive statistics",
        "",
    ]
    for var, tbl in summaries.items():
        lines += [f"### {label_for(var)}", "", _markdown(tbl, floatfmt=".2f"), ""]

    coef_view = coefs.assign(term=coefs["term"].map(label_for))
    lines += [
        f"## Model ({result.cov_type} robust standard errors)",
        "",
        _markdown(coef_view, floatfmt=".4f"),
        "",
        f"N = {int(stats['n_obs']):,}; log-likelihood = {stats['log_likelihood']:,.2f}; "
        f"McFadden pseudo R2 = {stats['pseudo_r2']:.4f}; AIC = {stats['aic']:,.2f}",
        "",
        "## Effect plots",
        "",
    ]
    for title, path in figures:
        lines += [f"![{title}]({path.name})", ""]

    out["report"] = report_dir / "report.md"
    out["report"].write_text("\n".join(lines))
    logger.info(f"Report: saved {out['report']} with {len(figures)} figures")
    return out
