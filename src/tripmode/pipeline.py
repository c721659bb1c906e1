"""
End-to-end run: survey cleaning -> ACS reference sample -> income imputation
-> logit fit -> report.

    tripmode --config config.yml
    python -m tripmode --reference-csv data/raw/acs/acs_2017_reference.csv.gz
"""

from __future__ import annotations

import gzip
import logging
import argparse
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from tripmode.config import Config, load_config
from tripmode.errors import TripModeError
from tripmode.logs import setup_logging
from tripmode.data.reference_acquire import acquire_reference_sample
from tripmode.data.reference_process import build_reference_table, state_fips_for
from tripmode.data.survey_process import (
    attach_income,
    clean_survey,
    load_persons,
    load_trips,
    survey_states,
)
from tripmode.analysis.model import fit_logit
from tripmode.analysis.report import write_report

logger = logging.getLogger("tripmode")


def run_pipeline(
    cfg: Config,
    reference_path: Optional[Path] = None,
    refresh_reference: bool = False,
    client=None,
) -> Dict[str, Path]:
    """
    Run every stage and return the written artifacts.

    When reference_path is given the IPUMS API is not contacted; otherwise the
    reference sample is downloaded (or reused from the raw directory).
    """
    sv = cfg.survey
    trips = load_trips(cfg.trips_path, sv)
    persons = load_persons(cfg.persons_path, sv)
    sample, ledger = clean_survey(trips, persons, sv)

    fips = state_fips_for(survey_states(sample))
    logger.info(f"Survey: sample covers {len(fips)} states")

    if reference_path is None:
        reference_path = acquire_reference_sample(cfg, fips, client=client, refresh=refresh_reference)
    table = build_reference_table(cfg, fips, path=reference_path)

    sample = attach_income(sample, table)
    sample_path = cfg.processed_dir / "analysis_sample.csv.gz"
    sample_path.parent.mkdir(parents=True, exist_ok=True)
    with gzip.open(sample_path, "wb") as f:
        sample.write_csv(f)
    logger.info(f"Survey: analysis sample saved to {sample_path}")

    result = fit_logit(sample, cfg.model.outcome, cfg.model.terms,
                       cov_type=cfg.model.cov_type, maxiter=cfg.model.maxiter)
    out = write_report(sample, result, table, ledger, cfg.report, cfg.report_dir)
    out["analysis_sample"] = sample_path
    return out


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Young-adult active travel: income imputation, logit and report.")
    parser.add_argument("--config", type=str, default=None, help="Path to config file (YAML, optional)")
    parser.add_argument("--reference-csv", type=str, default=None,
                        help="Use this ACS reference extract instead of querying the IPUMS API")
    parser.add_argument("--refresh-reference", action="store_true",
                        help="Download the reference sample again even if a cached copy exists")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level")
    parser.add_argument("--no-color", action="store_true", help="Plain console logging")
    return parser


def main(argv: List[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        cfg = load_config(args.config)
    except TripModeError as e:
        setup_logging(color=not args.no_color)
        logger.error(f"Configuration error: {e}")
        return 2

    log_file = cfg.report_dir / f"tripmode_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    setup_logging(log_file=log_file, level=getattr(logging, args.log_level.upper(), logging.INFO),
                  color=not args.no_color)
    logger.info(f"Logging to file: {log_file}")

    try:
        out = run_pipeline(
            cfg,
            reference_path=Path(args.reference_csv) if args.reference_csv else None,
            refresh_reference=args.refresh_reference,
        )
    except TripModeError as e:
        logger.error(f"Run failed: {e}")
        return 1

    logger.info("Run completed. Outputs:")
    for k, p in out.items():
        logger.info(f" - {k}: {p}")
    return 0
