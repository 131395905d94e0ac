"""Composite operations: dependent commands run as one logical operation.

Each step builds its command from the full result of the step before it,
so authorize-then-capture can thread the authorization token and amount
into the capture, and authorize-then-void can release a verification hold.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from .models import CanonicalResult, TransactionCommand

logger = logging.getLogger(__name__)

StepBuilder = Callable[[Optional[CanonicalResult]], TransactionCommand]
Executor = Callable[[TransactionCommand], CanonicalResult]


class CompositePolicy(str, enum.Enum):
    """Which step's result the caller sees."""
    STOP_AND_REPORT = "stop_and_report"
    USE_FIRST_RESPONSE = "use_first_response"


class CompositeState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class CompositeStep:
    """One step of a composite operation.

    ``ignore_result`` steps run for their side effects only: they never
    become the visible result and a failure does not stop the run.
    """
    build: StepBuilder
    ignore_result: bool = False
    name: Optional[str] = None


@dataclass
class CompositeResult:
    primary: Optional[CanonicalResult] = None
    responses: List[CanonicalResult] = field(default_factory=list)
    state: CompositeState = CompositeState.PENDING
    failed_step: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.primary is not None and self.primary.success


class CompositeOperation:
    """Run steps strictly in order under a result policy.

    Exceptions raised while executing a step are not declines; they
    propagate to the caller immediately whatever the policy.
    """

    def __init__(self, execute: Executor, policy: CompositePolicy = CompositePolicy.STOP_AND_REPORT):
        self.execute = execute
        self.policy = CompositePolicy(policy)

    def run(self, steps: Sequence[CompositeStep]) -> CompositeResult:
        if not steps:
            raise ValueError("A composite operation needs at least one step")

        outcome = CompositeResult(state=CompositeState.RUNNING)
        previous: Optional[CanonicalResult] = None

        for index, step in enumerate(steps):
            command = step.build(previous)
            result = self.execute(command)
            outcome.responses.append(result)
            previous = result
            logger.info(
                f"Composite step {index} ({step.name or command.action.value}) "
                f"{'succeeded' if result.success else 'failed'}"
            )

            if self.policy == CompositePolicy.USE_FIRST_RESPONSE:
                if index == 0:
                    outcome.primary = result
                    if not result.success:
                        return self._finish(outcome, failed_step=0)
                continue

            if step.ignore_result:
                continue
            if not result.success:
                outcome.primary = result
                return self._finish(outcome, failed_step=index)
            outcome.primary = self._with_inherited_authorization(result, outcome.responses)

        if outcome.primary is None:
            # Only ignored steps ran; nothing stopped the run.
            outcome.primary = outcome.responses[-1]
        return self._finish(outcome)

    @staticmethod
    def _with_inherited_authorization(
        result: CanonicalResult, responses: List[CanonicalResult]
    ) -> CanonicalResult:
        """Keep the latest earlier token when a later step issues none."""
        if result.authorization is not None:
            return result
        for earlier in reversed(responses[:-1]):
            if earlier.authorization is not None:
                return result.model_copy(update={"authorization": earlier.authorization})
        return result

    @staticmethod
    def _finish(outcome: CompositeResult, failed_step: Optional[int] = None) -> CompositeResult:
        outcome.failed_step = failed_step
        outcome.state = (
            CompositeState.SUCCEEDED
            if failed_step is None and outcome.primary.success
            else CompositeState.FAILED
        )
        return outcome
