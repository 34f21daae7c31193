import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from eventchain.application.adapter import (
    ConditionEvaluator,
    ExecutionContext,
    InputMappingResolver,
    VariableResolver,
)
from eventchain.application.port import ActionHandlerRegistry, TaskRunner
from eventchain.application.tracker import EntityMappingTracker
from eventchain.domain.entity import ChainDefinitionStep, ChainExecution, StepExecution
from eventchain.domain.error import ExpressionError, HandlerNotFoundError, PermanentActionError
from eventchain.domain.port import ActionHandler
from eventchain.domain.service import retry_delay, utcnow
from eventchain.domain.value_object import (
    ActionFailure,
    ActionKey,
    ActionResult,
    ActionSuccess,
    DispatchOutcome,
    DispatchStatus,
    EngineOptions,
)

logger = logging.getLogger("eventchain.dispatcher")


class StepDispatcher:
    """Runs a single step: guard condition, input mapping, handler invocation.

    Whatever the handler does, the caller gets a DispatchOutcome back and the
    step execution has been moved to the matching status. Handler exceptions
    never escape; they are classified as retryable or terminal failures. A
    retryable failure comes back with its due time; the caller arms the retry
    job once the Retrying step has been stored.
    """

    def __init__(
        self,
        registry: ActionHandlerRegistry,
        task_runner: TaskRunner,
        tracker: EntityMappingTracker,
        options: EngineOptions | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.task_runner = task_runner
        self.tracker = tracker
        self.options = options if options is not None else EngineOptions()
        self.clock = clock

    def dispatch(
        self,
        execution: ChainExecution,
        step_execution: StepExecution,
        step_definition: ChainDefinitionStep,
    ) -> DispatchOutcome:
        """
        Dispatches one step of an execution.

        :param execution: The owning execution; supplies trigger payload and prior outputs
        :type execution: ChainExecution
        :param step_execution: The runtime record of the step, mutated in place
        :type step_execution: StepExecution
        :param step_definition: The step as authored in the chain definition
        :type step_definition: ChainDefinitionStep
        :returns: What happened to the step
        :rtype: DispatchOutcome
        """
        alias = step_definition.alias
        extra = {
            "structured": {
                "correlation_id": execution.correlation_id,
                "execution_id": execution.id,
                "step_alias": alias,
            }
        }

        try:
            values = VariableResolver(
                ExecutionContext.for_execution(execution, self.tracker.as_namespace(execution.id))
            )
            if not ConditionEvaluator(values).evaluate(step_definition.condition_expression):
                step_execution.mark_skipped()
                logger.info("Skipped step %s: condition not met", alias, extra=extra)
                return DispatchOutcome(status=DispatchStatus.SKIPPED, step_alias=alias)
            payload = InputMappingResolver(values).resolve(step_definition.input_mappings)
        except ExpressionError as e:
            return self._fail(step_execution, f"Expression error: {e}", extra)

        step_execution.mark_running(payload)
        key = ActionKey(
            action_type=step_definition.action_type,
            module=step_definition.module,
            action_version=step_definition.action_version,
        )
        try:
            handler = self.registry.resolve(key)
        except HandlerNotFoundError as e:
            return self._fail(step_execution, str(e), extra)

        logger.info("Dispatching step %s to %s (attempt %d)", alias, key, step_execution.retry_count + 1, extra=extra)
        result = self._invoke(handler, key, payload, extra)

        if isinstance(result, ActionSuccess):
            step_execution.mark_completed(result.output)
            self.tracker.record(execution.id, alias, result.created_entities)
            logger.info("Step %s completed", alias, extra=extra)
            return DispatchOutcome(status=DispatchStatus.COMPLETED, step_alias=alias, output=result.output)

        if result.is_retryable and step_execution.can_retry:
            delay = retry_delay(
                step_execution.retry_count + 1,
                self.options.retry_base_delay,
                self.options.retry_max_delay,
            )
            retry_at = self.clock() + delay
            step_execution.mark_retrying(result.error, retry_at)
            logger.warning(
                "Step %s failed (%s); retry %d/%d due at %s",
                alias,
                result.error,
                step_execution.retry_count,
                step_execution.max_retries,
                retry_at.isoformat(),
                extra=extra,
            )
            return DispatchOutcome(
                status=DispatchStatus.RETRY_SCHEDULED,
                step_alias=alias,
                error=result.error,
                retry_at=retry_at,
            )

        return self._fail(step_execution, result.error, extra)

    def _invoke(self, handler: ActionHandler, key: ActionKey, payload: dict[str, Any], extra: dict) -> ActionResult:
        timeout = self.options.action_timeout
        try:
            result = self.task_runner.run(handler, payload, timeout=timeout)
        except TimeoutError:
            return ActionFailure(error=f"Action {key} timed out after {timeout}s", is_retryable=True)
        except PermanentActionError as e:
            return ActionFailure(error=str(e), is_retryable=False)
        except Exception as e:
            logger.warning("Action %s raised %s", key, type(e).__name__, exc_info=True, extra=extra)
            return ActionFailure(error=str(e) or type(e).__name__, is_retryable=True)

        if isinstance(result, (ActionSuccess, ActionFailure)):
            return result
        if result is None:
            return ActionSuccess()
        if isinstance(result, dict):
            return ActionSuccess(output=result)
        return ActionFailure(error=f"Action {key} returned unsupported result type {type(result).__name__}")

    def _fail(self, step_execution: StepExecution, error: str, extra: dict) -> DispatchOutcome:
        step_execution.mark_failed(error)
        logger.error("Step %s failed: %s", step_execution.step_alias, error, extra=extra)
        return DispatchOutcome(status=DispatchStatus.FAILED, step_alias=step_execution.step_alias, error=error)
