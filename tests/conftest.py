"""Shared fixtures: synthetic NHTS trips/persons and an ACS reference extract."""

import numpy as np
import polars as pl
import pytest
import yaml
from scipy.special import expit

from tripmode.config import SurveyConfig, load_config
from tripmode.data.brackets import BRACKET_CODES, BRACKET_UPPER_BOUNDS

STATES = ["CA", "NY"]
STATE_FIPS = {"CA": "06", "NY": "36"}


def make_reference(n_per_bracket: int = 5, seed: int = 0) -> pl.DataFrame:
    """IPUMS-style person rows with incomes spread over every bracket in both states."""
    rng = np.random.default_rng(seed)
    lows = (0,) + BRACKET_UPPER_BOUNDS
    highs = BRACKET_UPPER_BOUNDS + (400_000,)
    rows = []
    serial = 1
    for fips in STATE_FIPS.values():
        for lo, hi in zip(lows, highs):
            for _ in range(n_per_bracket):
                rows.append({
                    "YEAR": 2017, "SERIAL": serial, "PERNUM": 1, "HHWT": 100, "PERWT": 100,
                    "STATEFIP": int(fips), "AGE": int(rng.integers(18, 36)),
                    "HHINCOME": int(rng.integers(lo, hi)),
                })
                serial += 1
    # Rows that the restrictions must drop
    rows.append({"YEAR": 2017, "SERIAL": serial, "PERNUM": 1, "HHWT": 1, "PERWT": 1,
                 "STATEFIP": 6, "AGE": 60, "HHINCOME": 5_000_000})
    rows.append({"YEAR": 2017, "SERIAL": serial + 1, "PERNUM": 1, "HHWT": 1, "PERWT": 1,
                 "STATEFIP": 6, "AGE": 25, "HHINCOME": 9_999_999})
    rows.append({"YEAR": 2017, "SERIAL": serial + 2, "PERNUM": 1, "HHWT": 1, "PERWT": 1,
                 "STATEFIP": 48, "AGE": 25, "HHINCOME": 1})
    return pl.DataFrame(rows)


def make_survey(n_persons: int = 600, trips_per_person: int = 3, seed: int = 1):
    """Trip and person frames with a distance-driven active-mode outcome."""
    rng = np.random.default_rng(seed)
    persons, trips = [], []
    for i in range(n_persons):
        hh, pid = 30000000 + i, 1
        persons.append({
            "HOUSEID": hh, "PERSONID": pid,
            "WALK_GKQ": int(rng.integers(1, 6)), "BIKE_GKP": int(rng.integers(1, 6)),
        })
        age = int(rng.integers(18, 36))
        vehicles = int(rng.integers(0, 3))
        worker = int(rng.choice([1, 2]))
        bracket = int(rng.choice(BRACKET_CODES))
        state = STATES[i % 2]
        for _ in range(trips_per_person):
            miles = float(np.round(rng.exponential(1.5), 2))
            eta = 1.0 - 1.4 * miles - 0.8 * (vehicles > 0)
            trips.append({
                "HOUSEID": hh, "PERSONID": pid, "WHYTRP1S": int(rng.choice([1, 10, 20, 40, 50])),
                "R_AGE": age, "TRPMILES": miles,
                "TRPTRANS": int(rng.choice([1, 2])) if rng.random() < expit(eta) else 3,
                "HHSTATE": state, "HHVEHCNT": vehicles, "WORKER": worker, "HHFAMINC": bracket,
            })
    return pl.DataFrame(trips), pl.DataFrame(persons)


@pytest.fixture
def survey_cfg():
    return SurveyConfig()


@pytest.fixture
def reference_df():
    return make_reference()


@pytest.fixture
def survey_frames():
    return make_survey()


@pytest.fixture
def project(tmp_path, reference_df, survey_frames):
    """A project directory with input files and a config.yml pointing at them."""
    trips, persons = survey_frames
    nhts = tmp_path / "data" / "raw" / "nhts"
    nhts.mkdir(parents=True)
    trips.write_csv(str(nhts / "trippub.csv"))
    persons.write_csv(str(nhts / "perpub.csv"))
    ref_path = tmp_path / "acs_reference.csv"
    reference_df.write_csv(str(ref_path))

    cfg_path = tmp_path / "config.yml"
    cfg_path.write_text(yaml.safe_dump({
        "paths": {
            "root": str(tmp_path),
            "raw_dir": "data/raw",
            "processed_dir": "data/processed",
            "report_dir": "reports",
            "trips": "data/raw/nhts/trippub.csv",
            "persons": "data/raw/nhts/perpub.csv",
        },
        "ipums": {"api_key": "test-key"},
        "reference": {"year": 2017, "poll_interval_seconds": 1, "max_wait_seconds": 3},
        "report": {"dpi": 40, "distance_grid_points": 21},
    }))
    cfg = load_config(cfg_path, project_root=tmp_path)
    return cfg, cfg_path, ref_path
