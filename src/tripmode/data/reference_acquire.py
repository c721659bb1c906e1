"""
ACS reference-sample acquisition from the IPUMS USA API.

Submits one extract for a single 1-year ACS sample with the household income,
age and state variables needed to estimate bracket medians, waits for it,
parses the fixed-width file with its DDI, keeps the states present in the trip
survey and saves the result as a compressed CSV:

- data/raw/acs/acs_<year>_reference.csv.gz

Any failure here is fatal to the run (ReferenceDataError); there is no retry.

Requirements:
- ipumspy, polars, pandas
"""

from __future__ import annotations

import time
import gzip
import shutil
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Tuple

import pandas as pd
import polars as pl
from ipumspy import IpumsApiClient, MicrodataExtract, readers

from tripmode.config import Config, ReferenceConfig, resolve_api_key
from tripmode.errors import ConfigError, ReferenceDataError

LOGGER = logging.getLogger(__name__)


# --------------- Helpers --------------- #
def ensure_dir(path: Path) -> None:
    """Ensure that a directory exists."""
    path.mkdir(parents=True, exist_ok=True)


def clean_download_folder(output_dir: Path) -> None:
    """Remove leftovers of a previous (possibly incomplete) download."""
    if not output_dir.exists():
        return
    existing = list(output_dir.iterdir())
    if not existing:
        return
    LOGGER.info(f"Reference: cleaning {len(existing)} items from download directory {output_dir}")
    for item in existing:
        if item.is_dir():
            shutil.rmtree(item)
        else:
            item.unlink()


def _resolve_ipums_data_path(output_dir: Path, ddi) -> Path | None:
    """
    Given a DDI, find the corresponding data file in output_dir, trying
    .dat.gz, .dat, .csv.gz, .csv (in that order).
    """
    stem = Path(ddi.file_description.filename).stem  # e.g. usa_00021.dat -> usa_00021
    candidates = [
        output_dir / f"{stem}.dat.gz",
        output_dir / f"{stem}.dat",
        output_dir / f"{stem}.csv.gz",
        output_dir / f"{stem}.csv",
    ]
    for p in candidates:
        if p.exists():
            return p
    return None


# --------------- Extract lifecycle --------------- #
def build_extract(ref: ReferenceConfig, description: Optional[str] = None) -> MicrodataExtract:
    """Person-level rectangular extract for the configured ACS sample."""
    if description is None:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        description = f"tripmode ACS reference sample {ref.sample_id} - {timestamp}"
    return MicrodataExtract(
        collection=ref.collection,
        samples=[ref.sample_id],
        variables=list(ref.variables),
        description=description,
        data_format="fixed_width",
        data_structure={"rectangular": {"on": "P"}},
    )


def submit_extract(client: IpumsApiClient, ref: ReferenceConfig) -> Tuple[Any, str]:
    """
    Submits the reference extract request and returns (extract, description).

    Args:
        client (IpumsApiClient): Authenticated IPUMS API client.
        ref (ReferenceConfig): Reference sample settings.

    Returns:
        Tuple[Any, str]: The submitted extract handle and its description.
    """
    ext = build_extract(ref)
    try:
        extract = client.submit_extract(ext)
    except Exception as e:
        raise ReferenceDataError(f"IPUMS rejected the {ref.sample_id} extract: {e}") from e
    LOGGER.info(f"Reference: submitted {ref.collection} extract for sample {ref.sample_id}")
    LOGGER.info(f"   Variables: {list(ref.variables)}")
    return extract, ext.description


def download_when_ready(
    client: IpumsApiClient,
    extract: Any,
    output_dir: Path,
    poll_interval: int = 30,
    max_wait: int = 3600,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Waits for an extract to be ready and downloads it into output_dir.

    Polls by attempting the download; "not finished/not ready" responses wait
    poll_interval seconds, anything else is fatal.

    Raises:
        ReferenceDataError: On a download error or when max_wait is exceeded.
    """
    ensure_dir(output_dir)
    elapsed = 0
    while elapsed < max_wait:
        try:
            client.download_extract(extract, download_dir=str(output_dir))
            LOGGER.info(f"Reference: downloaded extract files {[f.name for f in output_dir.glob('*')]}")
            return
        except Exception as e:
            msg = str(e).lower()
            if "not finished" in msg or "not ready" in msg:
                LOGGER.info(f"Reference: extract still processing... waiting {poll_interval}s "
                            f"(elapsed: {elapsed // 60}m {elapsed % 60}s)")
                sleep(poll_interval)
                elapsed += poll_interval
            else:
                raise ReferenceDataError(f"Error downloading reference extract: {e}") from e
    raise ReferenceDataError(f"Reference extract not ready after {max_wait} seconds")


def read_downloaded_extract(output_dir: Path) -> pd.DataFrame:
    """Parse the single DDI + data file pair found in output_dir."""
    ddi_paths = sorted(output_dir.glob("*.xml"))
    if len(ddi_paths) != 1:
        raise ReferenceDataError(f"Expected one DDI file in {output_dir}, found {len(ddi_paths)}")
    ddi = readers.read_ipums_ddi(ddi_paths[0])
    data_path = _resolve_ipums_data_path(output_dir, ddi)
    if data_path is None:
        raise ReferenceDataError(f"Data file not found for {ddi_paths[0].name}")

    if data_path.name.endswith((".csv", ".csv.gz")):
        df = pd.read_csv(data_path)
    else:
        LOGGER.info(f"Reference: parsing fixed-width data {data_path.name} using DDI schema...")
        df = readers.read_microdata(ddi, data_path)
    LOGGER.info(f"Reference: loaded {len(df):,} rows, {len(df.columns)} columns")
    return df


def _fips(state_fips: Iterable[str]) -> List[str]:
    return sorted({str(s).zfill(2) for s in state_fips})


def cached_states(path: Path) -> List[str]:
    """Two-digit state FIPS codes present in a saved reference sample."""
    try:
        col = pl.read_csv(str(path), columns=["STATEFIP"], infer_schema_length=0)["STATEFIP"]
    except (pl.exceptions.PolarsError, OSError) as e:
        LOGGER.warning(f"Reference: could not read states from cached sample {path}: {e}")
        return []
    return _fips(col.drop_nulls().str.strip_chars().unique().to_list())


def keep_states(df: pl.DataFrame, state_fips: Iterable[str]) -> pl.DataFrame:
    """Restrict an extract to the given two-digit state FIPS codes."""
    wanted = _fips(state_fips)
    if "STATEFIP" not in df.columns:
        raise ReferenceDataError("Reference extract has no STATEFIP column")
    out = df.filter(pl.col("STATEFIP").cast(pl.Utf8).str.pad_start(2, "0").is_in(wanted))
    LOGGER.info(f"Reference: kept {out.height:,} of {df.height:,} rows in {len(wanted)} states")
    return out


def acquire_reference_sample(
    cfg: Config,
    state_fips: List[str],
    client: Optional[IpumsApiClient] = None,
    refresh: bool = False,
) -> Path:
    """
    Make sure the reference sample exists on disk and return its path.

    Reuses a previous download unless refresh is set. The IPUMS client is
    created from the resolved API key when not supplied.
    """
    out_path = cfg.reference_path
    if out_path.exists() and not refresh:
        missing = sorted(set(_fips(state_fips)) - set(cached_states(out_path)))
        if not missing:
            LOGGER.info(f"Reference: using cached sample {out_path}")
            return out_path
        LOGGER.warning(f"Reference: cached sample {out_path} lacks states {missing}; downloading again")
    if not state_fips:
        raise ReferenceDataError("No states to request; the trip sample is empty")

    if client is None:
        try:
            client = IpumsApiClient(api_key=resolve_api_key(cfg))
        except ConfigError as e:
            raise ReferenceDataError(str(e)) from e

    download_dir = out_path.parent / "_download"
    clean_download_folder(download_dir)

    ref = cfg.reference
    extract, description = submit_extract(client, ref)
    LOGGER.info(f"Reference: waiting for '{description}'")
    download_when_ready(
        client, extract, download_dir,
        poll_interval=ref.poll_interval_seconds,
        max_wait=ref.max_wait_seconds,
    )

    df = pl.from_pandas(read_downloaded_extract(download_dir))
    df = keep_states(df, state_fips)

    ensure_dir(out_path.parent)
    with gzip.open(out_path, "wb") as f:
        df.write_csv(f)
    shutil.rmtree(download_dir, ignore_errors=True)
    LOGGER.info(f"Reference: saved {df.height:,} rows to {out_path}")
    return out_path
