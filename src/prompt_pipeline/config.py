"""Runtime configuration for the pipeline orchestrator and batch executor."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

PROVIDER_KINDS = frozenset({"openai", "scripted"})


@dataclass(slots=True)
class PathSettings:
    """Filesystem locations consumed by the job lifecycle."""

    root: Path = Path()
    data_dir: Path = Path("pipeline-data")
    pending_dir: Path | None = None
    current_dir: Path | None = None
    complete_dir: Path | None = None
    rejected_dir: Path | None = None
    pipeline_path: Path | None = None
    task_registry: str | None = None

    def resolved_data_dir(self) -> Path:
        if self.data_dir.is_absolute():
            return self.data_dir
        return self.root / self.data_dir


@dataclass(slots=True)
class OrchestratorSettings:
    """Pending-queue watcher and runner-process settings."""

    poll_interval_seconds: float = 1.0
    spawn_retries: int = 3
    spawn_retry_delay_seconds: float = 1.0
    shutdown_grace_seconds: float = 2.0
    clean_slate_restart: bool = False
    max_relaunches: int = 1


@dataclass(slots=True)
class TaskRunnerSettings:
    """Stage engine defaults used when a pipeline carries no retry policy."""

    max_refinement_attempts: int = 2
    default_model: str = "default"


@dataclass(slots=True)
class BatchSettings:
    """Batch execution engine settings."""

    db_path: Path = Path(".prompt_pipeline.db")
    busy_timeout_ms: int = 5_000
    concurrency: int = 10
    max_retries: int = 3


@dataclass(slots=True)
class NotifierSettings:
    """Change notification watcher settings."""

    poll_interval_seconds: float = 0.5
    heartbeat_interval_seconds: float = 30.0


@dataclass(slots=True)
class ProviderSettings:
    """Inference provider settings.

    ``kind`` selects the adapter: ``openai`` talks to an OpenAI-compatible
    endpoint, ``scripted`` answers every call with ``scripted_reply`` and
    needs no network, for dry runs of a pipeline.
    """

    kind: str = "openai"
    scripted_reply: str = "{}"
    base_url: str = "https://api.openai.com/v1"
    api_key: str | None = None
    default_model: str = "gpt-4o-mini"
    request_timeout_seconds: float = 60.0
    max_retries: int = 3
    retry_initial_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    paths: PathSettings = field(default_factory=PathSettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    task_runner: TaskRunnerSettings = field(default_factory=TaskRunnerSettings)
    batch: BatchSettings = field(default_factory=BatchSettings)
    notifier: NotifierSettings = field(default_factory=NotifierSettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, root: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        resolved_root = root or Path(os.getenv("PROMPT_PIPELINE_ROOT", os.getcwd()))
        return cls(
            paths=PathSettings(
                root=resolved_root,
                data_dir=Path(os.getenv("PROMPT_PIPELINE_DATA_DIR", "pipeline-data")),
                pending_dir=_env_path("PROMPT_PIPELINE_PENDING_DIR"),
                current_dir=_env_path("PROMPT_PIPELINE_CURRENT_DIR"),
                complete_dir=_env_path("PROMPT_PIPELINE_COMPLETE_DIR"),
                rejected_dir=_env_path("PROMPT_PIPELINE_REJECTED_DIR"),
                pipeline_path=_env_path("PROMPT_PIPELINE_PIPELINE_PATH"),
                task_registry=os.getenv("PROMPT_PIPELINE_TASK_REGISTRY") or None,
            ),
            orchestrator=OrchestratorSettings(
                poll_interval_seconds=float(
                    os.getenv("PROMPT_PIPELINE_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                spawn_retries=int(os.getenv("PROMPT_PIPELINE_SPAWN_RETRIES", "3")),
                spawn_retry_delay_seconds=float(
                    os.getenv("PROMPT_PIPELINE_SPAWN_RETRY_DELAY_SECONDS", "1.0"),
                ),
                shutdown_grace_seconds=float(
                    os.getenv("PROMPT_PIPELINE_SHUTDOWN_GRACE_SECONDS", "2.0"),
                ),
                clean_slate_restart=_env_bool(
                    "PROMPT_PIPELINE_CLEAN_SLATE_RESTART",
                    default=False,
                ),
                max_relaunches=int(os.getenv("PROMPT_PIPELINE_MAX_RELAUNCHES", "1")),
            ),
            task_runner=TaskRunnerSettings(
                max_refinement_attempts=int(
                    os.getenv("PROMPT_PIPELINE_MAX_REFINEMENT_ATTEMPTS", "2"),
                ),
                default_model=os.getenv("PROMPT_PIPELINE_DEFAULT_MODEL", "default"),
            ),
            batch=BatchSettings(
                db_path=Path(os.getenv("PROMPT_PIPELINE_DB_PATH", ".prompt_pipeline.db")),
                busy_timeout_ms=int(os.getenv("PROMPT_PIPELINE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
                concurrency=int(os.getenv("PROMPT_PIPELINE_BATCH_CONCURRENCY", "10")),
                max_retries=int(os.getenv("PROMPT_PIPELINE_BATCH_MAX_RETRIES", "3")),
            ),
            notifier=NotifierSettings(
                poll_interval_seconds=float(
                    os.getenv("PROMPT_PIPELINE_WATCH_POLL_INTERVAL_SECONDS", "0.5"),
                ),
                heartbeat_interval_seconds=float(
                    os.getenv("PROMPT_PIPELINE_HEARTBEAT_INTERVAL_SECONDS", "30"),
                ),
            ),
            provider=ProviderSettings(
                kind=os.getenv("PROMPT_PIPELINE_PROVIDER", "openai").strip().lower(),
                scripted_reply=os.getenv("PROMPT_PIPELINE_PROVIDER_SCRIPTED_REPLY", "{}"),
                base_url=os.getenv(
                    "PROMPT_PIPELINE_PROVIDER_BASE_URL",
                    "https://api.openai.com/v1",
                ),
                api_key=os.getenv("PROMPT_PIPELINE_PROVIDER_API_KEY") or None,
                default_model=os.getenv("PROMPT_PIPELINE_PROVIDER_MODEL", "gpt-4o-mini"),
                request_timeout_seconds=float(
                    os.getenv("PROMPT_PIPELINE_PROVIDER_TIMEOUT_SECONDS", "60"),
                ),
                max_retries=int(os.getenv("PROMPT_PIPELINE_PROVIDER_MAX_RETRIES", "3")),
            ),
            log_level=os.getenv("PROMPT_PIPELINE_LOG_LEVEL", "INFO").upper(),
        )

    def validate(self) -> None:
        """Raise configuration error if numeric settings are out of range."""

        if self.orchestrator.poll_interval_seconds < 0:
            raise ValueError("PROMPT_PIPELINE_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.orchestrator.spawn_retries < 1:
            raise ValueError("PROMPT_PIPELINE_SPAWN_RETRIES must be >= 1.")
        if self.orchestrator.shutdown_grace_seconds < 0:
            raise ValueError("PROMPT_PIPELINE_SHUTDOWN_GRACE_SECONDS must be >= 0.")
        if self.orchestrator.max_relaunches < 0:
            raise ValueError("PROMPT_PIPELINE_MAX_RELAUNCHES must be >= 0.")
        if self.task_runner.max_refinement_attempts < 0:
            raise ValueError("PROMPT_PIPELINE_MAX_REFINEMENT_ATTEMPTS must be >= 0.")
        if self.batch.concurrency < 1:
            raise ValueError("PROMPT_PIPELINE_BATCH_CONCURRENCY must be a positive integer.")
        if self.batch.max_retries < 0:
            raise ValueError("PROMPT_PIPELINE_BATCH_MAX_RETRIES must be >= 0.")
        if self.notifier.heartbeat_interval_seconds <= 0:
            raise ValueError("PROMPT_PIPELINE_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.provider.max_retries < 0:
            raise ValueError("PROMPT_PIPELINE_PROVIDER_MAX_RETRIES must be >= 0.")
        if self.provider.kind not in PROVIDER_KINDS:
            raise ValueError(
                f"PROMPT_PIPELINE_PROVIDER must be one of {sorted(PROVIDER_KINDS)}, "
                f"got {self.provider.kind!r}.",
            )


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    return Path(value) if value else None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
