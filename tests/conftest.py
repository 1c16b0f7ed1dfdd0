"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from pipeline_tasks import PIPELINE, TASKS

from prompt_pipeline.core.contracts import parse_pipeline_definition
from prompt_pipeline.core.lifecycle import JobLifecycle, LifecyclePaths
from prompt_pipeline.core.models import PipelineDefinition
from prompt_pipeline.core.stages import TaskRegistry


@pytest.fixture()
def pipeline() -> PipelineDefinition:
    return parse_pipeline_definition(PIPELINE)


@pytest.fixture()
def registry() -> TaskRegistry:
    return TaskRegistry.from_mapping(TASKS)


@pytest.fixture()
def lifecycle(tmp_path: Path, pipeline: PipelineDefinition) -> JobLifecycle:
    """Lifecycle over a temp data dir where no runner pid is ever alive."""

    return JobLifecycle(
        LifecyclePaths.from_data_dir(tmp_path / "data"),
        pipeline=pipeline,
        is_alive=lambda _pid: False,
    )


@pytest.fixture()
def promote_job(lifecycle: JobLifecycle) -> Callable[..., str]:
    """Submit a seed and promote it to ``current``; return the job id."""

    def _promote(name: str = "tides", **data: Any) -> str:
        payload = {"name": name, "id": f"job-{name}", "data": data or {"text": "tides rise"}}
        job_id = lifecycle.promote(lifecycle.submit_seed(payload))
        assert job_id is not None
        return job_id

    return _promote
