"""Change notification hub and polling directory watcher."""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from prompt_pipeline.core.models import JobLocation
from prompt_pipeline.notify.detector import detect_job_change, is_files_path, job_key
from prompt_pipeline.storage.common import utc_now_iso

logger = logging.getLogger(__name__)

Subscriber = Callable[["ChangeEvent"], None]


class EventType(str, Enum):
    """Typed events delivered to live-status subscribers."""

    STATE_CHANGE = "state:change"
    JOB_CREATED = "job:created"
    JOB_UPDATED = "job:updated"
    JOB_REMOVED = "job:removed"
    HEARTBEAT = "heartbeat"


@dataclass(slots=True, frozen=True)
class ChangeEvent:
    """One notification; consumers re-fetch authoritative state by job id."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "data": dict(self.data), "timestamp": self.timestamp}


class ChangeNotifier:
    """In-process subscriber registry with best-effort delivery."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(subscriber)
        return lambda: self.unsubscribe(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:  # noqa: BLE001
                logger.exception("Subscriber failed for event %s", event.type.value)

    def publish_path(self, event_type: EventType, path: Path | str, *, change_type: str) -> None:
        timestamp = utc_now_iso()
        self.publish(
            ChangeEvent(
                type=event_type,
                data={"path": str(path), "type": change_type, "timestamp": timestamp},
                timestamp=timestamp,
            ),
        )


# (mtime_ns, size) per relative file path
Snapshot = dict[str, tuple[int, int]]


def take_snapshot(root: Path) -> Snapshot:
    """Relative POSIX path -> (mtime_ns, size) for every file under ``root``."""

    snapshot: Snapshot = {}
    if not root.exists():
        return snapshot
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [name for name in dirnames if not name.startswith(".")]
        for filename in filenames:
            if filename.startswith("."):
                continue
            full_path = Path(dirpath) / filename
            try:
                stat = full_path.stat()
            except FileNotFoundError:
                continue
            relative = full_path.relative_to(root).as_posix()
            snapshot[relative] = (stat.st_mtime_ns, stat.st_size)
    return snapshot


class DirectoryWatcher:
    """Polls the data directory and publishes change events.

    Each poll is one debounce window: every raw change found since the
    previous poll is published as ``state:change`` (``files/`` modifications
    excluded) and job-scoped changes collapse into at most one
    ``job:created``/``job:updated``/``job:removed`` per job.
    """

    def __init__(  # noqa: PLR0913
        self,
        root: Path,
        notifier: ChangeNotifier,
        *,
        poll_interval_seconds: float = 0.5,
        heartbeat_interval_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.root = root
        self.notifier = notifier
        self.poll_interval_seconds = poll_interval_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self._clock = clock
        self._snapshot: Snapshot = take_snapshot(root)
        self._last_heartbeat = clock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def poll_once(self) -> list[ChangeEvent]:
        """Diff the directory against the previous snapshot and publish events."""

        current = take_snapshot(self.root)
        previous = self._snapshot
        self._snapshot = current

        changes: list[tuple[str, str]] = []
        for path in sorted(current.keys() - previous.keys()):
            changes.append((path, "created"))
        for path in sorted(current.keys() & previous.keys()):
            if current[path] != previous[path] and not is_files_path(path):
                changes.append((path, "modified"))
        for path in sorted(previous.keys() - current.keys()):
            changes.append((path, "deleted"))

        events: list[ChangeEvent] = []
        for path, change_type in changes:
            timestamp = utc_now_iso()
            events.append(
                ChangeEvent(
                    type=EventType.STATE_CHANGE,
                    data={"path": path, "type": change_type, "timestamp": timestamp},
                    timestamp=timestamp,
                ),
            )

        jobs_before = {key for key in map(job_key, previous) if key is not None}
        jobs_after = {key for key in map(job_key, current) if key is not None}
        for location, job_id in sorted(jobs_after - jobs_before):
            events.append(
                ChangeEvent(
                    type=EventType.JOB_CREATED,
                    data={"jobId": job_id, "location": location.value},
                ),
            )
        updated: dict[tuple[JobLocation, str], list[str]] = {}
        for path, change_type in changes:
            change = detect_job_change(path)
            if change is None or change_type == "deleted":
                continue
            key = (change.location, change.job_id)
            if key in jobs_before and key in jobs_after:
                updated.setdefault(key, []).append(change.category)
        for (location, job_id), categories in sorted(updated.items()):
            events.append(
                ChangeEvent(
                    type=EventType.JOB_UPDATED,
                    data={
                        "jobId": job_id,
                        "location": location.value,
                        "categories": sorted(set(categories)),
                    },
                ),
            )
        for location, job_id in sorted(jobs_before - jobs_after):
            events.append(
                ChangeEvent(
                    type=EventType.JOB_REMOVED,
                    data={"jobId": job_id, "location": location.value},
                ),
            )

        now = self._clock()
        if now - self._last_heartbeat >= self.heartbeat_interval_seconds:
            self._last_heartbeat = now
            events.append(ChangeEvent(type=EventType.HEARTBEAT))

        for event in events:
            self.notifier.publish(event)
        return events

    def run(self, *, max_polls: int | None = None) -> None:
        """Poll until stopped or ``max_polls`` polls were made."""

        polls = 0
        while not self._stop.is_set():
            try:
                self.poll_once()
            except OSError:
                logger.warning("Directory watcher poll failed for %s", self.root, exc_info=True)
            polls += 1
            if max_polls is not None and polls >= max_polls:
                return
            self._stop.wait(timeout=self.poll_interval_seconds)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, daemon=True, name="pipeline-watcher")
        self._thread.start()
        logger.info("Directory watcher started for %s", self.root)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=5)
        self._thread = None
        logger.info("Directory watcher stopped for %s", self.root)
