"""Crime record ingestion from police.uk-style street-level CSV exports.

Directory layout expected under CRIME_DATA_DIR:
  2024-01/2024-01-metropolitan-street.csv
  2024-02/2024-02-metropolitan-street.csv
  ...

Only the most recent CRIME_DATA_MONTHS month directories are read, and within
each month only the files whose name contains CRIME_FILE_MATCH. Rows are
validated one at a time and yielded lazily; a bad row is counted and skipped,
never fatal to the batch.
"""

import csv
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Mapping, Optional

from pydantic import ValidationError

from streetwise.config import (
    CRIME_DATA_MONTHS, CRIME_FILE_MATCH, CRIME_SEVERITY_WEIGHTS,
    DEFAULT_CRIME_SEVERITY, STUDY_AREA,
)
from streetwise.models import CrimeRecord

logger = logging.getLogger("streetwise.crime_data")


class CrimeRowError(ValueError):
    """A CSV row that cannot become a CrimeRecord."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass
class IngestStats:
    rows: int = 0
    accepted: int = 0
    skipped: int = 0
    reasons: Counter = field(default_factory=Counter)

    def reject(self, reason: str):
        self.skipped += 1
        self.reasons[reason] += 1


def crime_severity(
    crime_type: str,
    overrides: Optional[Mapping[str, float]] = None,
    defaults: Mapping[str, float] = CRIME_SEVERITY_WEIGHTS,
) -> float:
    """Severity for a crime category: override first, then defaults, then 0.5."""
    if overrides and crime_type in overrides:
        return overrides[crime_type]
    return defaults.get(crime_type, DEFAULT_CRIME_SEVERITY)


def _in_study_area(lat: float, lon: float, area: tuple[float, float, float, float]) -> bool:
    lat_min, lat_max, lon_min, lon_max = area
    return lat_min <= lat <= lat_max and lon_min <= lon <= lon_max


def parse_crime_row(
    row: Mapping[str, str],
    study_area: tuple[float, float, float, float] = STUDY_AREA,
) -> CrimeRecord:
    try:
        lon = float(row.get("Longitude") or "")
        lat = float(row.get("Latitude") or "")
    except ValueError:
        raise CrimeRowError("bad_coordinates") from None
    if lat != lat or lon != lon:  # NaN
        raise CrimeRowError("bad_coordinates")

    crime_type = (row.get("Crime type") or "").strip()
    if not crime_type:
        raise CrimeRowError("missing_crime_type")

    if not _in_study_area(lat, lon, study_area):
        raise CrimeRowError("outside_study_area")

    try:
        return CrimeRecord(
            lat=lat,
            lon=lon,
            crime_type=crime_type,
            severity=crime_severity(crime_type),
            month=(row.get("Month") or "").strip(),
        )
    except ValidationError:
        raise CrimeRowError("invalid_record") from None


def iter_csv_records(
    path: Path,
    study_area: tuple[float, float, float, float] = STUDY_AREA,
    stats: Optional[IngestStats] = None,
) -> Iterator[CrimeRecord]:
    stats = stats if stats is not None else IngestStats()
    # Undecodable bytes become U+FFFD and NULs are dropped, so the row still
    # reaches validation instead of aborting the file
    with open(path, newline="", encoding="utf-8-sig", errors="replace") as f:
        for row in csv.DictReader(line.replace("\0", "") for line in f):
            stats.rows += 1
            try:
                record = parse_crime_row(row, study_area)
            except CrimeRowError as e:
                stats.reject(e.reason)
                continue
            stats.accepted += 1
            yield record


def recent_month_files(
    data_dir: Path,
    months: int = CRIME_DATA_MONTHS,
    match: str = CRIME_FILE_MATCH,
) -> list[Path]:
    """CSV files for the most recent `months` YYYY-MM directories, oldest first."""
    data_dir = Path(data_dir)
    if not data_dir.is_dir():
        logger.warning(f"Crime data directory not found: {data_dir}")
        return []
    month_dirs = sorted(d for d in data_dir.iterdir() if d.is_dir() and d.name.startswith("20"))
    files = []
    for month_dir in month_dirs[-months:] if months > 0 else []:
        matches = sorted(p for p in month_dir.glob("*.csv") if match in p.name)
        if not matches:
            logger.info(f"No '{match}' CSV in {month_dir.name}, skipping")
        files.extend(matches)
    return files


def iter_crime_files(
    paths: Iterable[Path],
    study_area: tuple[float, float, float, float] = STUDY_AREA,
    stats: Optional[IngestStats] = None,
) -> Iterator[CrimeRecord]:
    stats = stats if stats is not None else IngestStats()
    for path in paths:
        before = stats.accepted
        try:
            yield from iter_csv_records(Path(path), study_area, stats)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to read crime CSV {path}: {e}")
            stats.reject("unreadable_file")
            continue
        except csv.Error as e:
            logger.warning(f"Malformed crime CSV {path}, rest of file skipped: {e}")
            stats.reject("malformed_file")
            continue
        logger.info(f"Loaded {stats.accepted - before} crime records from {Path(path).name}")
    if stats.skipped:
        logger.info(f"Skipped {stats.skipped} crime rows: {dict(stats.reasons)}")


def iter_crime_directory(
    data_dir: Path,
    months: int = CRIME_DATA_MONTHS,
    match: str = CRIME_FILE_MATCH,
    study_area: tuple[float, float, float, float] = STUDY_AREA,
    stats: Optional[IngestStats] = None,
) -> Iterator[CrimeRecord]:
    return iter_crime_files(recent_month_files(data_dir, months, match), study_area, stats)
