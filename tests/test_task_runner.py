from __future__ import annotations

from collections import Counter
from pathlib import Path
from typing import Any

import allure
import pytest

from prompt_pipeline.core.artifacts import OUTPUT_FILE, TaskArtifacts
from prompt_pipeline.core.contracts import JobStatusRecord, write_json
from prompt_pipeline.core.errors import (
    JobCancelledError,
    PolicyExhaustedError,
    ProviderAuthError,
    ProviderParseError,
    ValidationError,
)
from prompt_pipeline.core.models import RetryPolicy
from prompt_pipeline.core.stages import Stage, StageContext, TaskDefinition
from prompt_pipeline.core.status import STATUS_FILE, StatusWriter
from prompt_pipeline.core.task_runner import TaskStageEngine, inference_checkpoint_name

pytestmark = [
    allure.epic("Pipeline Core"),
    allure.feature("Task Stage Engine"),
]


def _context(tmp_path: Path, task_name: str = "draft") -> StageContext:
    job_dir = tmp_path / "job-1"
    (job_dir / "tasks").mkdir(parents=True, exist_ok=True)
    if not (job_dir / STATUS_FILE).exists():
        write_json(job_dir / STATUS_FILE, JobStatusRecord(job_id="job-1", name="job").to_dict())
    return StageContext(
        job_id="job-1",
        task_name=task_name,
        seed={"name": "job", "data": {"topic": "tides"}},
        artifacts=TaskArtifacts(job_dir, task_name, StatusWriter(job_dir)),
        model="test-model",
    )


class _Recorder:
    """Stage callables that count calls and fail validation on demand."""

    def __init__(self, *, validation_failures: int = 0) -> None:
        self.calls: Counter[str] = Counter()
        self.validation_failures = validation_failures

    def stage(self, name: str, result: dict[str, Any] | None = None):
        def _run(context: StageContext) -> dict[str, Any] | None:
            self.calls[name] += 1
            return result

        return _run

    def validate(self, context: StageContext) -> None:
        self.calls["validateStructure"] += 1
        if self.calls["validateStructure"] <= self.validation_failures:
            context.flags.fail_validation(f"missing field (try {self.calls['validateStructure']})")

    def definition(self, **overrides: Any) -> TaskDefinition:
        stages = {
            Stage.INGESTION: self.stage("ingestion", {"topic": "tides"}),
            Stage.PROMPT_TEMPLATING: self.stage("promptTemplating", {"prompt": "write"}),
            Stage.INFERENCE: self.stage("inference", {"draft": "text"}),
            Stage.VALIDATE_STRUCTURE: self.validate,
            Stage.CRITIQUE: self.stage("critique", {"hint": "add the field"}),
            Stage.REFINE: self.stage("refine", {"draft": "better text"}),
            Stage.INTEGRATION: self.stage("integration"),
        }
        stages.update(overrides)
        return TaskDefinition(name="draft", stages=stages)


def test_linear_pass_skips_remediation_stages_and_writes_output(tmp_path: Path) -> None:
    recorder = _Recorder()
    context = _context(tmp_path)

    result = TaskStageEngine(retry_policy=RetryPolicy()).run(recorder.definition(), context)

    assert result.ok
    assert result.attempts == 0
    assert recorder.calls["critique"] == 0
    assert recorder.calls["refine"] == 0
    skipped = {entry.stage: entry.skipped for entry in result.logs if entry.skipped}
    assert skipped["critique"] == "remediation-only"
    assert skipped["refine"] == "remediation-only"
    assert skipped["parsing"] == "not-implemented"
    assert context.artifacts.read_json(OUTPUT_FILE) == {
        "draft": "text",
        "prompt": "write",
        "topic": "tides",
    }


def test_single_refinement_cycle_restarts_from_prompt_templating(tmp_path: Path) -> None:
    recorder = _Recorder(validation_failures=1)
    context = _context(tmp_path)

    result = TaskStageEngine(retry_policy=RetryPolicy(max_retries=2)).run(
        recorder.definition(),
        context,
    )

    assert result.ok
    assert result.attempts == 1
    assert recorder.calls["ingestion"] == 1
    assert recorder.calls["promptTemplating"] == 2
    assert recorder.calls["critique"] == 1
    assert recorder.calls["refine"] == 1
    assert context.flags.refined is True
    assert context.flags.critique == {"hint": "add the field"}
    assert context.output.history("draft")[:2] == [
        ("inference", "text"),
        ("refine", "better text"),
    ]
    assert {entry.refinement_cycle for entry in result.logs} == {0, 1}
    assert context.artifacts.exists(inference_checkpoint_name(0))
    assert context.artifacts.exists(inference_checkpoint_name(1))


def test_remediation_is_bounded_by_max_retries(tmp_path: Path) -> None:
    recorder = _Recorder(validation_failures=100)

    result = TaskStageEngine(retry_policy=RetryPolicy(max_retries=2)).run(
        recorder.definition(),
        _context(tmp_path),
    )

    assert not result.ok
    assert result.attempts == 2
    assert isinstance(result.error, PolicyExhaustedError)
    assert "validateStructure failed after 2 refinement attempt(s)" in str(result.error)
    assert result.failed_stage == "validateStructure"
    assert recorder.calls["validateStructure"] == 3
    assert recorder.calls["critique"] == 2
    assert recorder.calls["refine"] == 2


def test_zero_max_retries_fails_on_first_validation_error(tmp_path: Path) -> None:
    recorder = _Recorder(validation_failures=1)

    result = TaskStageEngine(retry_policy=RetryPolicy(max_retries=0)).run(
        recorder.definition(),
        _context(tmp_path),
    )

    assert not result.ok
    assert result.attempts == 0
    assert isinstance(result.error, PolicyExhaustedError)
    assert recorder.calls["critique"] == 0


def test_recoverable_failure_outside_retryable_stages_is_fatal(tmp_path: Path) -> None:
    recorder = _Recorder()

    def _quality(context: StageContext) -> None:
        raise ValidationError("too short")

    result = TaskStageEngine(
        retry_policy=RetryPolicy(retryable_stages=frozenset({"validateStructure"})),
    ).run(recorder.definition(**{Stage.VALIDATE_QUALITY: _quality}), _context(tmp_path))

    assert not result.ok
    assert result.attempts == 0
    assert isinstance(result.error, ValidationError)
    assert result.failed_stage == "validateQuality"
    assert recorder.calls["critique"] == 0


def test_parse_error_in_retryable_parsing_stage_drives_remediation(tmp_path: Path) -> None:
    recorder = _Recorder()
    parse_calls: list[int] = []

    def _parsing(context: StageContext) -> dict[str, Any]:
        parse_calls.append(context.cycle)
        if len(parse_calls) == 1:
            raise ProviderParseError("not json")
        return {"parsed": True}

    result = TaskStageEngine(
        retry_policy=RetryPolicy(retryable_stages=frozenset({"parsing"})),
    ).run(recorder.definition(**{Stage.PARSING: _parsing}), _context(tmp_path))

    assert result.ok
    assert result.attempts == 1
    assert parse_calls == [0, 1]


def test_non_recoverable_provider_error_skips_remediation(tmp_path: Path) -> None:
    recorder = _Recorder()

    def _inference(context: StageContext) -> None:
        raise ProviderAuthError("bad key", status_code=401)

    result = TaskStageEngine(retry_policy=RetryPolicy()).run(
        recorder.definition(**{Stage.INFERENCE: _inference}),
        _context(tmp_path),
    )

    assert not result.ok
    assert isinstance(result.error, ProviderAuthError)
    assert result.failed_stage == "inference"
    assert recorder.calls["critique"] == 0
    assert recorder.calls["validateStructure"] == 0


def test_final_validation_failure_is_never_remediated(tmp_path: Path) -> None:
    recorder = _Recorder()

    def _final(context: StageContext) -> None:
        raise ValidationError("rejected by final check")

    result = TaskStageEngine(
        retry_policy=RetryPolicy(retryable_stages=frozenset({"finalValidation"})),
    ).run(recorder.definition(**{Stage.FINAL_VALIDATION: _final}), _context(tmp_path))

    assert not result.ok
    assert result.failed_stage == "finalValidation"
    assert recorder.calls["critique"] == 0


def test_critique_failure_aborts_the_task(tmp_path: Path) -> None:
    recorder = _Recorder(validation_failures=1)

    def _critique(context: StageContext) -> None:
        raise ProviderParseError("critique reply unreadable")

    result = TaskStageEngine(retry_policy=RetryPolicy()).run(
        recorder.definition(**{Stage.CRITIQUE: _critique}),
        _context(tmp_path),
    )

    assert not result.ok
    assert result.failed_stage == "critique"
    assert result.attempts == 1
    assert recorder.calls["refine"] == 0


def test_stop_request_cancels_before_next_stage(tmp_path: Path) -> None:
    recorder = _Recorder()

    result = TaskStageEngine(
        retry_policy=RetryPolicy(),
        should_stop=lambda: recorder.calls["ingestion"] > 0,
    ).run(recorder.definition(), _context(tmp_path))

    assert not result.ok
    assert result.cancelled
    assert isinstance(result.error, JobCancelledError)
    assert result.failed_stage == "promptTemplating"
    assert recorder.calls["promptTemplating"] == 0


def test_inference_checkpoint_is_reused(tmp_path: Path) -> None:
    recorder = _Recorder()
    context = _context(tmp_path)
    context.artifacts.write_json(
        inference_checkpoint_name(0),
        {"cycle": 0, "output": {"draft": "from checkpoint"}},
    )

    result = TaskStageEngine(retry_policy=RetryPolicy()).run(recorder.definition(), context)

    assert result.ok
    assert recorder.calls["inference"] == 0
    assert context.artifacts.read_json(OUTPUT_FILE)["draft"] == "from checkpoint"


def test_stage_returning_non_mapping_fails_the_task(tmp_path: Path) -> None:
    recorder = _Recorder()

    result = TaskStageEngine(retry_policy=RetryPolicy()).run(
        recorder.definition(**{Stage.INGESTION: lambda context: ["not", "a", "mapping"]}),
        _context(tmp_path),
    )

    assert not result.ok
    assert isinstance(result.error, TypeError)
    assert result.failed_stage == "ingestion"


def test_integration_mapping_result_becomes_output_file(tmp_path: Path) -> None:
    recorder = _Recorder()
    context = _context(tmp_path)

    TaskStageEngine(retry_policy=RetryPolicy()).run(
        recorder.definition(**{Stage.INTEGRATION: lambda context: {"final": 1}}),
        context,
    )

    assert context.artifacts.read_json(OUTPUT_FILE) == {"final": 1}


def test_rerun_after_crash_rewrites_identical_output(tmp_path: Path) -> None:
    engine = TaskStageEngine(retry_policy=RetryPolicy())
    first = _Recorder()
    first_context = _context(tmp_path)
    assert engine.run(first.definition(), first_context).ok
    output_path = first_context.artifacts.path(OUTPUT_FILE)
    written = output_path.read_bytes()

    # A re-run after a crash must not call the provider again: the inference
    # checkpoint from the first run supplies the model output.
    second = _Recorder()
    second_context = _context(tmp_path)
    result = engine.run(
        second.definition(**{Stage.INFERENCE: second.stage("inference", {"draft": "other"})}),
        second_context,
    )

    assert result.ok
    assert first.calls["inference"] == 1
    assert second.calls["inference"] == 0
    assert second.calls["integration"] == 1
    assert output_path.read_bytes() == written


def test_task_definition_accepts_both_stage_spellings() -> None:
    definition = TaskDefinition.from_object(
        "mixed",
        {"prompt_templating": lambda context: None, "validateQuality": lambda context: None},
    )

    assert definition.provides(Stage.PROMPT_TEMPLATING)
    assert definition.provides(Stage.VALIDATE_QUALITY)
    assert not definition.provides(Stage.INFERENCE)


def test_task_definition_without_stages_is_rejected() -> None:
    with pytest.raises(ValueError, match="provides no stages"):
        TaskDefinition.from_object("empty", {})
