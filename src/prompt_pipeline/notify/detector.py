"""Classify filesystem paths into job-scoped change categories."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path, PurePath

from prompt_pipeline.core.models import JobLocation

JOB_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_JOB_PATH_RE = re.compile(r"^(?:.*/)?(pending|current|complete|rejected)/([^/]+)(?:/(.*))?$")
_FILES_PATH_RE = re.compile(r"(?:^|/)(?:pending|current|complete|rejected)/[^/]+/files/")


@dataclass(slots=True, frozen=True)
class JobChange:
    """Job-scoped change: ``category`` is ``status``, ``seed`` or ``task``."""

    job_id: str
    location: JobLocation
    category: str
    path: str


def normalize_path(path: str | PurePath) -> str:
    text = str(path).replace("\\", "/")
    return re.sub(r"/{2,}", "/", text)


def get_job_location(path: str | PurePath) -> JobLocation | None:
    """Return the lifecycle location a job path lives under, if any."""

    match = _JOB_PATH_RE.match(normalize_path(path))
    if match is None:
        return None
    return JobLocation(match.group(1))


def detect_job_change(path: str | PurePath) -> JobChange | None:
    """Map a path to a job change or None when it is not job-relevant."""

    normalized = normalize_path(path)
    match = _JOB_PATH_RE.match(normalized)
    if match is None:
        return None
    location, job_id, rest = match.group(1), match.group(2), match.group(3)
    if rest is None or not JOB_ID_RE.match(job_id):
        return None

    if rest == "tasks-status.json":
        category = "status"
    elif rest == "seed.json":
        category = "seed"
    elif rest.startswith("tasks/"):
        category = "task"
    else:
        return None
    return JobChange(
        job_id=job_id,
        location=JobLocation(location),
        category=category,
        path=f"{location}/{job_id}/{rest}",
    )


def job_key(relative: str | PurePath) -> tuple[JobLocation, str] | None:
    """``(location, job_id)`` for any path inside a job working directory."""

    parts = Path(normalize_path(relative)).parts
    if len(parts) < 3:  # noqa: PLR2004
        return None
    try:
        location = JobLocation(parts[0])
    except ValueError:
        return None
    if not JOB_ID_RE.match(parts[1]):
        return None
    return location, parts[1]


def is_files_path(path: str | PurePath) -> bool:
    return _FILES_PATH_RE.search(normalize_path(path)) is not None
