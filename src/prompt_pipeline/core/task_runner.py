"""Task stage engine: linear stage pass plus bounded critique/refine remediation."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from prompt_pipeline.core.artifacts import OUTPUT_FILE
from prompt_pipeline.core.errors import (
    JobCancelledError,
    PolicyExhaustedError,
    ValidationError,
    is_recoverable,
    normalize_error,
)
from prompt_pipeline.core.models import RetryPolicy
from prompt_pipeline.core.stages import (
    REFINEMENT_RESTART_STAGE,
    REMEDIATION_STAGES,
    STAGE_ORDER,
    Stage,
    StageContext,
    TaskDefinition,
)

logger = logging.getLogger(__name__)


def inference_checkpoint_name(cycle: int) -> str:
    return f"inference-{cycle}.json"


@dataclass(slots=True)
class StageLogEntry:
    """One stage execution (or skip) for ``execution-logs.json``."""

    stage: str
    ok: bool
    ms: int = 0
    refinement_cycle: int = 0
    skipped: str | None = None
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "stage": self.stage,
            "ok": self.ok,
            "ms": self.ms,
            "refinementCycle": self.refinement_cycle,
        }
        if self.skipped is not None:
            payload["skipped"] = self.skipped
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class TaskRunResult:
    """Outcome of one task execution."""

    ok: bool
    attempts: int
    execution_time_ms: int
    output: dict[str, Any] = field(default_factory=dict)
    logs: list[StageLogEntry] = field(default_factory=list)
    failed_stage: str | None = None
    error: BaseException | None = None

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, JobCancelledError)


@dataclass(slots=True)
class _StageFailure:
    stage: Stage
    error: BaseException
    recoverable: bool


class TaskStageEngine:
    """Runs one task's stages as a bounded state machine.

    Linear phase: stages run in ``STAGE_ORDER``; ``critique`` and ``refine``
    only run during remediation. Remediation: a recoverable failure in a
    stage listed in ``RetryPolicy.retryable_stages`` runs critique then
    refine, bumps ``attempts`` and restarts the linear phase from
    ``promptTemplating``, at most ``max_retries`` times.
    """

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy,
        should_stop: Callable[[], bool] | None = None,
        on_stage: Callable[[Stage], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.retry_policy = retry_policy
        self._should_stop = should_stop or (lambda: False)
        self._on_stage = on_stage or (lambda _stage: None)
        self._clock = clock

    def run(self, definition: TaskDefinition, context: StageContext) -> TaskRunResult:
        started = self._clock()
        logs: list[StageLogEntry] = []
        attempts = 0
        start_index = 0

        while True:
            failure = self._linear_pass(definition, context, start_index, logs)
            if failure is None:
                return TaskRunResult(
                    ok=True,
                    attempts=attempts,
                    execution_time_ms=self._elapsed_ms(started),
                    output=context.output.snapshot(),
                    logs=logs,
                )

            error = self._remediation_verdict(failure, attempts)
            if error is not None:
                logger.warning(
                    "Task %s failed at %s: %s",
                    context.task_name,
                    failure.stage.value,
                    error,
                )
                return TaskRunResult(
                    ok=False,
                    attempts=attempts,
                    execution_time_ms=self._elapsed_ms(started),
                    output=context.output.snapshot(),
                    logs=logs,
                    failed_stage=failure.stage.value,
                    error=error,
                )

            logger.info(
                "Task %s: refinement cycle %d after %s failed: %s",
                context.task_name,
                attempts + 1,
                failure.stage.value,
                context.flags.last_validation_error,
            )
            remediation_failure = self._remediate(definition, context, logs)
            attempts += 1
            context.cycle = attempts
            if remediation_failure is not None:
                return TaskRunResult(
                    ok=False,
                    attempts=attempts,
                    execution_time_ms=self._elapsed_ms(started),
                    output=context.output.snapshot(),
                    logs=logs,
                    failed_stage=remediation_failure.stage.value,
                    error=remediation_failure.error,
                )
            context.flags.validation_failed = False
            start_index = STAGE_ORDER.index(REFINEMENT_RESTART_STAGE)

    def _remediation_verdict(
        self,
        failure: _StageFailure,
        attempts: int,
    ) -> BaseException | None:
        """Return the terminal error, or None when another refine cycle is allowed."""

        if not failure.recoverable:
            return failure.error
        if failure.stage is Stage.FINAL_VALIDATION:
            return failure.error
        if not self.retry_policy.is_retryable(failure.stage.value):
            return failure.error
        if attempts >= self.retry_policy.max_retries:
            return PolicyExhaustedError(
                f"{failure.stage.value} failed after {attempts} refinement attempt(s): "
                f"{failure.error}",
                stage=failure.stage.value,
                attempts=attempts,
            )
        return None

    def _linear_pass(
        self,
        definition: TaskDefinition,
        context: StageContext,
        start_index: int,
        logs: list[StageLogEntry],
    ) -> _StageFailure | None:
        for stage in STAGE_ORDER[start_index:]:
            if stage in REMEDIATION_STAGES:
                if definition.provides(stage):
                    logs.append(self._skip(stage, context, "remediation-only"))
                continue
            if not definition.provides(stage):
                logs.append(self._skip(stage, context, "not-implemented"))
                continue
            failure = self._run_stage(definition, context, stage, logs)
            if failure is not None:
                return failure
        return None

    def _remediate(
        self,
        definition: TaskDefinition,
        context: StageContext,
        logs: list[StageLogEntry],
    ) -> _StageFailure | None:
        for stage in (Stage.CRITIQUE, Stage.REFINE):
            if not definition.provides(stage):
                logs.append(self._skip(stage, context, "not-implemented"))
                continue
            failure = self._run_stage(definition, context, stage, logs)
            if failure is not None:
                # Remediation stages cannot trigger further remediation.
                failure.recoverable = False
                return failure
        return None

    def _run_stage(
        self,
        definition: TaskDefinition,
        context: StageContext,
        stage: Stage,
        logs: list[StageLogEntry],
    ) -> _StageFailure | None:
        if self._should_stop():
            error = JobCancelledError(f"Stop requested before {stage.value}")
            logs.append(
                StageLogEntry(
                    stage=stage.value,
                    ok=False,
                    refinement_cycle=context.cycle,
                    skipped="cancelled",
                    error=normalize_error(error),
                ),
            )
            return _StageFailure(stage=stage, error=error, recoverable=False)

        stage_fn = definition.get(stage)
        if stage_fn is None:
            raise RuntimeError(f"Stage {stage.value} is not provided by {definition.name}")

        context.current_stage = stage
        self._on_stage(stage)
        started = self._clock()
        checkpoint = inference_checkpoint_name(context.cycle)
        try:
            if stage is Stage.INFERENCE and context.artifacts.exists(checkpoint):
                result = context.artifacts.read_json(checkpoint).get("output")
                logger.info(
                    "Task %s: reusing inference checkpoint %s",
                    context.task_name,
                    checkpoint,
                )
            else:
                result = stage_fn(context)
                if stage is Stage.INFERENCE:
                    context.artifacts.write_json(
                        checkpoint,
                        {"cycle": context.cycle, "output": _as_mapping(stage, result)},
                    )
            self._apply_result(context, stage, result)
            if stage is Stage.INTEGRATION:
                context.artifacts.write_json(
                    OUTPUT_FILE,
                    self._integration_output(context, result),
                )
        except Exception as error:  # noqa: BLE001
            recoverable = is_recoverable(error)
            if recoverable:
                context.flags.fail_validation(str(error))
            logs.append(
                StageLogEntry(
                    stage=stage.value,
                    ok=False,
                    ms=self._elapsed_ms(started),
                    refinement_cycle=context.cycle,
                    error=normalize_error(error),
                ),
            )
            if not recoverable:
                logger.exception("Task %s: stage %s raised", context.task_name, stage.value)
            return _StageFailure(stage=stage, error=error, recoverable=recoverable)

        if stage.is_validation and context.flags.validation_failed:
            error = ValidationError(context.flags.last_validation_error or "validation failed")
            logs.append(
                StageLogEntry(
                    stage=stage.value,
                    ok=False,
                    ms=self._elapsed_ms(started),
                    refinement_cycle=context.cycle,
                    error=normalize_error(error),
                ),
            )
            return _StageFailure(stage=stage, error=error, recoverable=True)

        logs.append(
            StageLogEntry(
                stage=stage.value,
                ok=True,
                ms=self._elapsed_ms(started),
                refinement_cycle=context.cycle,
            ),
        )
        return None

    def _apply_result(self, context: StageContext, stage: Stage, result: Any) -> None:
        values = _as_mapping(stage, result)
        if stage is Stage.CRITIQUE:
            context.flags.critique = dict(values)
            return
        context.output.merge(stage.value, values)
        if stage is Stage.REFINE:
            context.flags.refined = True

    @staticmethod
    def _integration_output(context: StageContext, result: Any) -> dict[str, Any]:
        if isinstance(result, Mapping):
            return dict(result)
        return context.output.snapshot()

    @staticmethod
    def _skip(stage: Stage, context: StageContext, reason: str) -> StageLogEntry:
        return StageLogEntry(
            stage=stage.value,
            ok=True,
            refinement_cycle=context.cycle,
            skipped=reason,
        )

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)


def _as_mapping(stage: Stage, result: Any) -> Mapping[str, Any]:
    if result is None:
        return {}
    if not isinstance(result, Mapping):
        raise TypeError(f"Stage {stage.value} must return a mapping or None")
    return result
