"""Tests for trip/person cleaning, the exclusion ledger and covariate derivation."""

import polars as pl
import pytest

from tripmode.config import SafetyItem, SurveyConfig
from tripmode.data.brackets import BracketMedianTable
from tripmode.data.survey_process import (
    ExclusionLedger,
    attach_income,
    clean_survey,
    derive_covariates,
    filter_trips,
    join_persons,
    load_persons,
    load_trips,
    survey_states,
)
from tripmode.errors import BracketLookupError, SurveyDataError

BASE_TRIP = {
    "HOUSEID": 1, "PERSONID": 1, "WHYTRP1S": 10, "R_AGE": 25, "TRPMILES": 1.0,
    "TRPTRANS": 1, "HHSTATE": "CA", "HHVEHCNT": 1, "WORKER": 1, "HHFAMINC": 5,
}


def trips_with(**variants):
    """One trip per value of a single varied column; other columns take the base values."""
    (col, values), = variants.items()
    rows = []
    for i, v in enumerate(values):
        row = dict(BASE_TRIP, HOUSEID=i + 1)
        row[col] = v
        rows.append(row)
    return pl.DataFrame(rows)


def persons_for(trips, walk=3, bike=3):
    return pl.DataFrame({
        "HOUSEID": trips["HOUSEID"].unique().sort(),
        "PERSONID": [1] * trips["HOUSEID"].n_unique(),
        "WALK_GKQ": [walk] * trips["HOUSEID"].n_unique(),
        "BIKE_GKP": [bike] * trips["HOUSEID"].n_unique(),
    })


class TestFilters:
    """Each trip-level filter removes its sentinels and nothing else."""

    def test_age_window_inclusive(self, survey_cfg):
        ledger = ExclusionLedger()
        out = filter_trips(trips_with(R_AGE=[17, 18, 35, 36, -9]), survey_cfg, ledger)
        assert out["R_AGE"].to_list() == [18, 35]
        assert ledger.steps[0].name == "age"
        assert ledger.steps[0].excluded == 3

    def test_missing_purpose_removed(self, survey_cfg):
        out = filter_trips(trips_with(WHYTRP1S=[-9, -7, 1, 20]), survey_cfg, ExclusionLedger())
        assert out["WHYTRP1S"].to_list() == [1, 20]

    def test_purpose_subset(self):
        sv = SurveyConfig(purposes_keep=[20, 40])
        out = filter_trips(trips_with(WHYTRP1S=[1, 20, 40, 50]), sv, ExclusionLedger())
        assert out["WHYTRP1S"].to_list() == [20, 40]

    def test_missing_distance_removed(self, survey_cfg):
        out = filter_trips(trips_with(TRPMILES=[-9.0, 0.0, 0.4, 12.0]), survey_cfg, ExclusionLedger())
        assert out["TRPMILES"].to_list() == [0.0, 0.4, 12.0]

    def test_distance_cap(self):
        sv = SurveyConfig(max_trip_miles=5.0)
        out = filter_trips(trips_with(TRPMILES=[0.5, 5.0, 5.1]), sv, ExclusionLedger())
        assert out["TRPMILES"].to_list() == [0.5, 5.0]

    def test_missing_mode_removed(self, survey_cfg):
        out = filter_trips(trips_with(TRPTRANS=[-7, -8, 1, 3]), survey_cfg, ExclusionLedger())
        assert out["TRPTRANS"].to_list() == [1, 3]

    def test_zero_vehicles_kept(self, survey_cfg):
        out = filter_trips(trips_with(HHVEHCNT=[-8, 0, 2]), survey_cfg, ExclusionLedger())
        assert out["HHVEHCNT"].to_list() == [0, 2]

    def test_worker_status_required(self, survey_cfg):
        out = filter_trips(trips_with(WORKER=[-1, 1, 2, 9]), survey_cfg, ExclusionLedger())
        assert out["WORKER"].to_list() == [1, 2]

    def test_invalid_income_brackets_removed(self, survey_cfg):
        out = filter_trips(trips_with(HHFAMINC=[-7, -8, -9, 0, 1, 11, 12]), survey_cfg, ExclusionLedger())
        assert out["HHFAMINC"].to_list() == [1, 11]

    def test_missing_column_rejected(self, survey_cfg):
        with pytest.raises(SurveyDataError, match="HHFAMINC"):
            filter_trips(trips_with(R_AGE=[25]).drop("HHFAMINC"), survey_cfg, ExclusionLedger())


class TestLedger:
    """Row accounting across all steps."""

    def test_counts_reconcile(self, survey_frames, survey_cfg):
        trips, persons = survey_frames
        dirty = pl.concat([
            trips,
            trips.head(5).with_columns(pl.lit(-9, dtype=pl.Int64).alias("HHFAMINC")),
            trips.head(3).with_columns(pl.lit(-7, dtype=pl.Int64).alias("TRPTRANS")),
        ])
        df, ledger = clean_survey(dirty, persons, survey_cfg)
        assert ledger.rows_in == dirty.height
        assert ledger.rows_out == df.height
        assert ledger.rows_in - ledger.total_excluded == ledger.rows_out
        for prev, step in zip(ledger.steps, ledger.steps[1:]):
            assert step.rows_in == prev.rows_out

    def test_step_order(self, survey_frames, survey_cfg):
        _, ledger = clean_survey(*survey_frames, survey_cfg)
        assert [s.name for s in ledger.steps] == [
            "age", "purpose", "distance", "mode", "vehicles", "worker",
            "income_bracket", "person_join", "safety",
        ]

    def test_to_frame(self):
        ledger = ExclusionLedger()
        ledger.record("age", "out of range", 10, 7)
        ledger.record("mode", "missing", 7, 7)
        frame = ledger.to_frame()
        assert frame.columns == ["step", "reason", "rows_in", "rows_out", "excluded"]
        assert frame["excluded"].to_list() == [3, 0]

    def test_null_counts_as_excluded(self):
        ledger = ExclusionLedger()
        out = ledger.apply(pl.DataFrame({"x": [1, None, 3]}), "x", pl.col("x") > 0, "x missing")
        assert out["x"].to_list() == [1, 3]
        assert ledger.total_excluded == 1


class TestJoin:
    """Person-level safety perceptions."""

    def test_trips_without_person_excluded(self, survey_cfg):
        trips = trips_with(R_AGE=[20, 21, 22])
        persons = persons_for(trips).filter(pl.col("HOUSEID") != 2)
        ledger = ExclusionLedger()
        out = join_persons(trips, persons, survey_cfg, ledger)
        assert sorted(out["HOUSEID"].to_list()) == [1, 3]
        assert ledger.steps[0].name == "person_join"
        assert ledger.steps[0].excluded == 1

    def test_string_and_integer_ids_match(self, survey_cfg):
        trips = trips_with(R_AGE=[20, 21]).with_columns(pl.col("HOUSEID").cast(pl.Utf8))
        out = join_persons(trips, persons_for(trips_with(R_AGE=[20, 21])), survey_cfg, ExclusionLedger())
        assert out.height == 2

    def test_missing_safety_perception_excluded(self, survey_cfg):
        trips = trips_with(R_AGE=[20, 21])
        persons = persons_for(trips).with_columns(
            pl.when(pl.col("HOUSEID") == 1).then(-9).otherwise(pl.col("BIKE_GKP")).alias("BIKE_GKP")
        )
        ledger = ExclusionLedger()
        out = join_persons(trips, persons, survey_cfg, ledger)
        assert out["HOUSEID"].to_list() == [2]
        assert ledger.steps[-1].name == "safety"

    def test_duplicate_person_rejected(self, survey_cfg):
        trips = trips_with(R_AGE=[20])
        persons = pl.concat([persons_for(trips), persons_for(trips)])
        with pytest.raises(SurveyDataError, match="duplicated"):
            join_persons(trips, persons, survey_cfg, ExclusionLedger())


class TestCovariates:
    """Model flags derived from the raw codes."""

    def test_flags(self, survey_cfg):
        df = pl.DataFrame([
            dict(BASE_TRIP, TRPTRANS=1, HHVEHCNT=0, WORKER=2, HHSTATE=" ny", WALK_GKQ=1, BIKE_GKP=5),
            dict(BASE_TRIP, TRPTRANS=2, HHVEHCNT=2, WORKER=1, HHSTATE="CA", WALK_GKQ=3, BIKE_GKP=2),
            dict(BASE_TRIP, TRPTRANS=3, HHVEHCNT=1, WORKER=1, HHSTATE="CA", WALK_GKQ=2, BIKE_GKP=4),
        ])
        out = derive_covariates(df, survey_cfg)
        assert out["active"].to_list() == [1, 1, 0]
        assert out["has_vehicle"].to_list() == [0, 1, 1]
        assert out["is_worker"].to_list() == [0, 1, 1]
        assert out["walk_safety_concern"].to_list() == [1, 0, 1]
        assert out["bike_safety_concern"].to_list() == [0, 1, 0]
        assert out["state"].to_list() == ["NY", "CA", "CA"]
        assert out["trip_miles"].dtype == pl.Float64

    def test_configured_concern_codes(self):
        sv = SurveyConfig(safety={"walk_safety_concern": SafetyItem(column="WALK_GKQ", concerned=[1])})
        df = pl.DataFrame([dict(BASE_TRIP, WALK_GKQ=1), dict(BASE_TRIP, WALK_GKQ=2)])
        assert derive_covariates(df, sv)["walk_safety_concern"].to_list() == [1, 0]

    def test_survey_states(self, survey_frames, survey_cfg):
        df, _ = clean_survey(*survey_frames, survey_cfg)
        assert survey_states(df) == ["CA", "NY"]


class TestCleanAndImpute:
    """Whole-sample cleaning and income attachment."""

    def test_all_rows_excluded(self, survey_cfg):
        trips = trips_with(R_AGE=[60, 70])
        with pytest.raises(SurveyDataError, match="No trips"):
            clean_survey(trips, persons_for(trips), survey_cfg)

    def test_attach_income(self, survey_cfg):
        trips = trips_with(HHFAMINC=[3, 5])
        df, _ = clean_survey(trips, persons_for(trips), survey_cfg)
        table = BracketMedianTable(medians={3: 20_000.0, 5: 42_000.0})
        out = attach_income(df, table).sort("HOUSEID")
        assert out["income"].to_list() == [20_000.0, 42_000.0]
        assert out["income_10k"].to_list() == [2.0, 4.2]

    def test_unsupported_bracket_fails_run(self, survey_cfg):
        trips = trips_with(HHFAMINC=[3, 7])
        df, _ = clean_survey(trips, persons_for(trips), survey_cfg)
        with pytest.raises(BracketLookupError):
            attach_income(df, BracketMedianTable(medians={3: 20_000.0}))


class TestLoading:
    """CSV readers."""

    def test_load_roundtrip(self, tmp_path, survey_frames, survey_cfg):
        trips, persons = survey_frames
        trips.write_csv(str(tmp_path / "trips.csv"))
        persons.write_csv(str(tmp_path / "persons.csv"))
        loaded = load_trips(tmp_path / "trips.csv", survey_cfg)
        assert loaded.height == trips.height
        assert loaded["HHSTATE"].dtype == pl.Utf8
        assert load_persons(tmp_path / "persons.csv", survey_cfg).height == persons.height

    def test_missing_file(self, tmp_path, survey_cfg):
        with pytest.raises(SurveyDataError, match="not found"):
            load_trips(tmp_path / "nope.csv", survey_cfg)

    def test_missing_person_column(self, tmp_path, survey_frames, survey_cfg):
        _, persons = survey_frames
        persons.drop("BIKE_GKP").write_csv(str(tmp_path / "persons.csv"))
        with pytest.raises(SurveyDataError, match="BIKE_GKP"):
            load_persons(tmp_path / "persons.csv", survey_cfg)
