"""
Saga orchestration for multi-step bookings.

Each step pairs a forward action with a compensating action. When a step
fails, the completed steps are compensated in reverse order and the
original exception is re-raised to the caller.
"""
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

ForwardAction = Callable[[Dict[str, Any]], Awaitable[Any]]
CompensatingAction = Callable[[Dict[str, Any], Any], Awaitable[None]]


class SagaState(Enum):
    """Saga execution states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"


class StepStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATED = "compensated"


class SagaStep:
    """
    A single step in a saga.

    Each step has:
    - Forward action (the main operation)
    - Compensating action (undo, receives the forward result)
    """

    def __init__(
        self,
        name: str,
        forward_action: ForwardAction,
        compensating_action: Optional[CompensatingAction] = None,
    ):
        self.name = name
        self.forward_action = forward_action
        self.compensating_action = compensating_action
        self.status = StepStatus.PENDING
        self.result: Optional[Any] = None
        self.error: Optional[str] = None

    async def execute(self, context: Dict[str, Any]) -> Any:
        logger.debug("saga_step_executing", step=self.name)
        try:
            self.result = await self.forward_action(context)
        except Exception as e:
            self.status = StepStatus.FAILED
            self.error = str(e)
            logger.warning("saga_step_failed", step=self.name, error=str(e))
            raise
        self.status = StepStatus.COMPLETED
        return self.result

    async def compensate(self, context: Dict[str, Any]) -> bool:
        """
        Run the compensating action. Returns False if it failed.

        Failures are logged for manual cleanup and do not stop the
        remaining compensations.
        """
        if self.compensating_action is None or self.status != StepStatus.COMPLETED:
            return True

        try:
            await self.compensating_action(context, self.result)
        except Exception as e:
            logger.error("saga_step_compensation_failed", step=self.name, error=str(e))
            return False
        self.status = StepStatus.COMPENSATED
        logger.info("saga_step_compensated", step=self.name)
        return True


class Saga:
    """Ordered steps with reverse-order compensation on failure."""

    def __init__(self, name: str, saga_id: Optional[str] = None):
        self.saga_id = saga_id or str(uuid.uuid4())
        self.name = name
        self.steps: List[SagaStep] = []
        self.state = SagaState.PENDING
        self.context: Dict[str, Any] = {}

    def add_step(
        self,
        name: str,
        forward_action: ForwardAction,
        compensating_action: Optional[CompensatingAction] = None,
    ) -> "Saga":
        self.steps.append(SagaStep(name, forward_action, compensating_action))
        return self

    async def execute(self) -> Dict[str, Any]:
        """
        Execute all steps in order and return the shared context.

        Each step's result is stored in the context as `<step>_result`.
        """
        logger.info("saga_execution_started", saga_id=self.saga_id, name=self.name)
        self.state = SagaState.IN_PROGRESS
        completed: List[SagaStep] = []

        try:
            for step in self.steps:
                result = await step.execute(self.context)
                completed.append(step)
                self.context[f"{step.name}_result"] = result
        except Exception as e:
            logger.warning(
                "saga_execution_failed",
                saga_id=self.saga_id,
                name=self.name,
                failed_step=self.steps[len(completed)].name,
                error=str(e),
            )
            self.state = SagaState.COMPENSATING
            await self._compensate(completed)
            self.state = SagaState.COMPENSATED
            raise

        self.state = SagaState.COMPLETED
        logger.info(
            "saga_completed_successfully",
            saga_id=self.saga_id,
            name=self.name,
            steps_completed=len(completed),
        )
        return self.context

    async def _compensate(self, completed_steps: List[SagaStep]) -> None:
        failures = 0
        for step in reversed(completed_steps):
            if not await step.compensate(self.context):
                failures += 1
        logger.info(
            "saga_compensation_finished",
            saga_id=self.saga_id,
            steps_compensated=len(completed_steps) - failures,
            failures=failures,
        )
