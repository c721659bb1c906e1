"""
Configuration loading for the tripmode pipeline.

All paths, reference-sample extract settings, survey code sets and model terms
come from a single YAML file (default: ``config.yml`` at the project root, or
the copy shipped inside the package).
"""

from __future__ import annotations

import os
import json
from pathlib import Path
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field

import yaml

from tripmode.errors import ConfigError

REPO_ROOT = Path(__file__).resolve().parents[2]
# Default config search paths
_PACKAGED_CFG = Path(__file__).resolve().parent / "config.yml"
_CFG_SEARCH = [
    REPO_ROOT / "config.yml",
    _PACKAGED_CFG,
]


# ---------------- Configuration object model ---------------- #

@dataclass
class ReferenceConfig:
    collection: str = "usa"  # IPUMS collection (ACS lives in IPUMS USA)
    year: int = 2017  # Survey year of the 1-year ACS sample
    sample: Optional[str] = None  # Explicit sample id; overrides sample_pattern
    sample_pattern: str = "us{year}a"
    variables: List[str] = field(default_factory=lambda: [
        "YEAR", "SERIAL", "PERNUM", "HHWT", "PERWT", "STATEFIP", "AGE", "HHINCOME",
    ])
    age_min: int = 18
    age_max: int = 35
    poll_interval_seconds: int = 30
    max_wait_seconds: int = 3600
    output_filename: str = "acs_{year}_reference.csv.gz"

    @property
    def sample_id(self) -> str:
        return self.sample or self.sample_pattern.format(year=self.year)

    @property
    def output_name(self) -> str:
        return self.output_filename.format(year=self.year)


@dataclass
class SafetyItem:
    column: str  # Person-file column holding the perception code
    concerned: List[int]  # Codes that count as "concerned"


@dataclass
class SurveyConfig:
    columns: Dict[str, str] = field(default_factory=lambda: {
        "household_id": "HOUSEID",
        "person_id": "PERSONID",
        "purpose": "WHYTRP1S",
        "age": "R_AGE",
        "distance": "TRPMILES",
        "mode": "TRPTRANS",
        "state": "HHSTATE",
        "vehicles": "HHVEHCNT",
        "worker": "WORKER",
        "income_bracket": "HHFAMINC",
    })
    purposes_keep: List[int] = field(default_factory=list)
    active_modes: List[int] = field(default_factory=lambda: [1, 2])
    worker_yes: int = 1
    worker_no: int = 2
    age_min: int = 18
    age_max: int = 35
    max_trip_miles: Optional[float] = None
    safety: Dict[str, SafetyItem] = field(default_factory=lambda: {
        "walk_safety_concern": SafetyItem(column="WALK_GKQ", concerned=[1, 2]),
        "bike_safety_concern": SafetyItem(column="BIKE_GKP", concerned=[1, 2]),
    })

    def col(self, key: str) -> str:
        try:
            return self.columns[key]
        except KeyError:
            raise ConfigError(f"survey.columns is missing the '{key}' entry") from None


@dataclass
class ModelConfig:
    outcome: str = "active"
    terms: List[str] = field(default_factory=lambda: [
        "trip_miles", "has_vehicle", "is_worker", "income_10k",
        "walk_safety_concern", "bike_safety_concern",
    ])
    cov_type: str = "HC1"
    maxiter: int = 100


@dataclass
class ReportConfig:
    dpi: int = 150
    distance_grid_max: float = 5.0
    distance_grid_points: int = 101
    binary_effects: List[str] = field(default_factory=lambda: [
        "walk_safety_concern", "bike_safety_concern",
    ])
    summary_variables: List[str] = field(default_factory=lambda: [
        "active", "has_vehicle", "is_worker", "income_bracket",
        "walk_safety_concern", "bike_safety_concern",
    ])


@dataclass
class Config:
    # API auth (optional)
    api_key: Optional[str]
    api_key_path: Optional[str]
    api_key_json_field: Optional[str]
    # Paths
    raw_dir: Path
    processed_dir: Path
    report_dir: Path
    trips_path: Path
    persons_path: Path
    # Sections
    reference: ReferenceConfig = field(default_factory=ReferenceConfig)
    survey: SurveyConfig = field(default_factory=SurveyConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    report: ReportConfig = field(default_factory=ReportConfig)
    project_root: Path = field(default=REPO_ROOT)

    @property
    def reference_path(self) -> Path:
        return self.raw_dir / "acs" / self.reference.output_name


def _coerce_to_path(p: Any, base: Path) -> Path:
    if isinstance(p, Path):
        return p
    if p is None:
        return base
    return (base / str(p)).resolve() if not str(p).startswith("/") else Path(str(p)).resolve()


def _int_list(values: Any, name: str) -> List[int]:
    if values is None:
        return []
    if not isinstance(values, (list, tuple)):
        raise ConfigError(f"{name} must be a list, got {values!r}")
    try:
        return [int(v) for v in values]
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must contain integer codes, got {values!r}") from None


def _parse_reference(d: Dict[str, Any]) -> ReferenceConfig:
    ref = ReferenceConfig()
    for key in ("collection", "sample", "sample_pattern", "output_filename"):
        if d.get(key) is not None:
            setattr(ref, key, str(d[key]))
    for key in ("year", "age_min", "age_max", "poll_interval_seconds", "max_wait_seconds"):
        if d.get(key) is not None:
            setattr(ref, key, int(d[key]))
    if d.get("variables"):
        ref.variables = [str(v) for v in d["variables"]]
    if ref.age_min > ref.age_max:
        raise ConfigError(f"reference.age_min ({ref.age_min}) exceeds reference.age_max ({ref.age_max})")
    return ref


def _parse_survey(d: Dict[str, Any]) -> SurveyConfig:
    sv = SurveyConfig()
    sv.columns.update({k: str(v) for k, v in (d.get("columns", {}) or {}).items()})
    sv.purposes_keep = _int_list((d.get("purposes", {}) or {}).get("keep"), "survey.purposes.keep")
    if d.get("active_modes") is not None:
        sv.active_modes = _int_list(d["active_modes"], "survey.active_modes")
    # Keys are employed/not_employed: YAML 1.1 reads bare yes/no as booleans
    worker = d.get("worker", {}) or {}
    sv.worker_yes = int(worker.get("employed", sv.worker_yes))
    sv.worker_no = int(worker.get("not_employed", sv.worker_no))
    ages = d.get("ages", {}) or {}
    sv.age_min = int(ages.get("min", sv.age_min))
    sv.age_max = int(ages.get("max", sv.age_max))
    if d.get("max_trip_miles") is not None:
        sv.max_trip_miles = float(d["max_trip_miles"])
    if d.get("safety") is not None:
        sv.safety = {}
        for name, item in (d["safety"] or {}).items():
            if not isinstance(item, dict) or "column" not in item:
                raise ConfigError(f"survey.safety.{name} needs a 'column' entry")
            sv.safety[name] = SafetyItem(
                column=str(item["column"]),
                concerned=_int_list(item.get("concerned", [1]), f"survey.safety.{name}.concerned"),
            )
    if sv.age_min > sv.age_max:
        raise ConfigError(f"survey.ages.min ({sv.age_min}) exceeds survey.ages.max ({sv.age_max})")
    return sv


def load_config(config_path: Optional[str | Path] = None, project_root: Optional[Path] = None) -> Config:
    """
    Load configuration from YAML and return a Config object.

    If config_path is None, searches the project root and then the package
    directory for ``config.yml``. Relative paths resolve against project_root
    (default: ``paths.root`` when the YAML sets it, else the repository root,
    or the current directory when only the packaged config was found).
    """
    cfg_path: Optional[Path] = None
    if config_path is not None:
        cfg_path = Path(config_path)
        if not cfg_path.exists():
            raise ConfigError(f"Config file not found: {cfg_path}")
    else:
        for p in _CFG_SEARCH:
            if p.exists():
                cfg_path = p
                break
    if cfg_path is None:
        raise ConfigError("config.yml not found in expected locations.")

    with open(cfg_path, "r") as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Could not parse {cfg_path}: {e}") from e

    paths = raw.get("paths", {}) or {}
    # The packaged copy means no project config exists; work relative to the caller
    default_root = Path.cwd() if cfg_path.resolve() == _PACKAGED_CFG else REPO_ROOT
    root = project_root or (_coerce_to_path(paths["root"], default_root) if paths.get("root") else default_root)
    raw_dir = _coerce_to_path(paths.get("raw_dir", "data/raw"), root)
    processed_dir = _coerce_to_path(paths.get("processed_dir", "data/processed"), root)
    report_dir = _coerce_to_path(paths.get("report_dir", "reports"), root)
    trips_path = _coerce_to_path(paths.get("trips", "data/raw/nhts/trippub.csv"), root)
    persons_path = _coerce_to_path(paths.get("persons", "data/raw/nhts/perpub.csv"), root)

    # API config: support both authentication and ipums sections
    auth_cfg = raw.get("authentication", {}) or {}
    ipums_cfg = raw.get("ipums", {}) or {}
    api_key = ipums_cfg.get("api_key") or auth_cfg.get("api_key")
    api_key_path = auth_cfg.get("api_key_path") or ipums_cfg.get("api_key_path")
    api_key_json_field = auth_cfg.get("ipums_api_key_field") or ipums_cfg.get("api_key_json_field", "ipums")

    model_raw = raw.get("model", {}) or {}
    model = ModelConfig()
    if model_raw.get("outcome"):
        model.outcome = str(model_raw["outcome"])
    if model_raw.get("terms"):
        model.terms = [str(t) for t in model_raw["terms"]]
    model.cov_type = str(model_raw.get("cov_type", model.cov_type))
    model.maxiter = int(model_raw.get("maxiter", model.maxiter))

    report_raw = raw.get("report", {}) or {}
    report = ReportConfig()
    report.dpi = int(report_raw.get("dpi", report.dpi))
    report.distance_grid_max = float(report_raw.get("distance_grid_max", report.distance_grid_max))
    report.distance_grid_points = int(report_raw.get("distance_grid_points", report.distance_grid_points))
    if report_raw.get("binary_effects") is not None:
        report.binary_effects = [str(b) for b in report_raw["binary_effects"]]
    if report_raw.get("summary_variables") is not None:
        report.summary_variables = [str(v) for v in report_raw["summary_variables"]]

    return Config(
        api_key=api_key,
        api_key_path=api_key_path,
        api_key_json_field=api_key_json_field,
        raw_dir=raw_dir,
        processed_dir=processed_dir,
        report_dir=report_dir,
        trips_path=trips_path,
        persons_path=persons_path,
        reference=_parse_reference(raw.get("reference", {}) or {}),
        survey=_parse_survey(raw.get("survey", {}) or {}),
        model=model,
        report=report,
        project_root=root,
    )


def resolve_api_key(cfg: Config) -> str:
    """
    Resolve the IPUMS API key from config, file, environment variable, or default location.

    Priority:
    1. Directly from config.api_key
    2. From config.api_key_path (plain text or JSON)
    3. From environment variable IPUMS_API_KEY
    4. From default api_keys.json in the project root
    """
    if cfg.api_key:
        return cfg.api_key
    if cfg.api_key_path:
        path = _coerce_to_path(cfg.api_key_path, cfg.project_root)
        if not path.exists():
            raise ConfigError(f"API key file not found: {path}")
        if path.suffix.lower() == ".json":
            with open(path, "r") as f:
                data = json.load(f)
            key = data.get(cfg.api_key_json_field or "ipums")
            if not key:
                raise ConfigError(f"API key field '{cfg.api_key_json_field}' not found in {path}")
            return key
        return path.read_text().strip()
    env_key = os.getenv("IPUMS_API_KEY")
    if env_key:
        return env_key
    default_json = cfg.project_root / "api_keys.json"
    if default_json.exists():
        with open(default_json, "r") as f:
            key = json.load(f).get(cfg.api_key_json_field or "ipums")
        if key:
            return key
    raise ConfigError("No IPUMS API key provided. Set in YAML, env, or api_keys.json.")
