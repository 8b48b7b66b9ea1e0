"""
Explicit step list with forward and compensating actions.

Steps run in order against a shared context dict. When a critical step fails,
completed steps are compensated in reverse order. A step without a
compensation (an external effect that cannot be undone, e.g. money sent back
to a card) is a pivot: compensation stops there and the saga is reported as
halted for an operator to finish.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from boxoffice.core.errors import safe_error_summary
from boxoffice.core.logging import get_logger

logger = get_logger(__name__)

StepAction = Callable[[dict], Awaitable[Any]]

COMPLETED = "completed"
COMPENSATED = "compensated"
COMPENSATION_FAILED = "compensation_failed"
HALTED = "halted"


@dataclass
class SagaStep:
    name: str
    execute: StepAction
    compensate: StepAction | None = None
    # Non-critical failures are logged and the saga carries on
    critical: bool = True


@dataclass
class SagaResult:
    saga: str
    status: str
    completed_steps: list[str] = field(default_factory=list)
    skipped_steps: list[str] = field(default_factory=list)
    failed_step: str | None = None
    error: BaseException | None = None
    compensated_steps: list[str] = field(default_factory=list)
    compensation_errors: list[tuple[str, BaseException]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "saga": self.saga,
            "status": self.status,
            "completed_steps": self.completed_steps,
            "skipped_steps": self.skipped_steps,
            "failed_step": self.failed_step,
            "error": safe_error_summary(self.error),
            "compensated_steps": self.compensated_steps,
            "compensation_errors": [
                {"step": name, "error": safe_error_summary(err)} for name, err in self.compensation_errors
            ],
        }


class SagaOrchestrator:
    def __init__(self, name: str, steps: list[SagaStep]):
        self.name = name
        self.steps = steps

    async def run(self, context: dict) -> SagaResult:
        result = SagaResult(saga=self.name, status=COMPLETED)
        completed: list[SagaStep] = []

        for step in self.steps:
            try:
                await step.execute(context)
            except Exception as e:
                if not step.critical:
                    logger.warning("%s: non-critical step %s failed: %s", self.name, step.name, e)
                    result.skipped_steps.append(step.name)
                    continue

                logger.error("%s: step %s failed: %s", self.name, step.name, e)
                result.failed_step = step.name
                result.error = e
                await self._compensate(completed, context, result)
                return result

            completed.append(step)
            result.completed_steps.append(step.name)

        return result

    async def _compensate(self, completed: list[SagaStep], context: dict, result: SagaResult) -> None:
        result.status = COMPENSATED
        for step in reversed(completed):
            if step.compensate is None:
                logger.error(
                    "%s: cannot roll back past %s; manual follow-up required", self.name, step.name
                )
                result.status = HALTED
                return
            try:
                await step.compensate(context)
                result.compensated_steps.append(step.name)
            except Exception as e:
                logger.error("%s: compensation for %s failed: %s", self.name, step.name, e)
                result.compensation_errors.append((step.name, e))
                result.status = COMPENSATION_FAILED
