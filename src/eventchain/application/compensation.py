import logging

from eventchain.application.port import ActionHandlerRegistry, TaskRunner
from eventchain.domain.entity import ChainDefinition, ChainDefinitionStep, ChainExecution, StepExecution
from eventchain.domain.error import HandlerNotFoundError
from eventchain.domain.value_object import (
    ActionFailure,
    ActionKey,
    CompensationOutcome,
    EngineOptions,
    StepExecutionStatus,
)

logger = logging.getLogger("eventchain.compensation")


class CompensationCoordinator:
    """Undoes completed compensatable steps of a failed execution, newest first.

    Compensation is attempted exactly once per step. The first failure stops the
    walk and leaves the execution Compensating with the error recorded, for an
    operator to resolve.
    """

    def __init__(
        self,
        registry: ActionHandlerRegistry,
        task_runner: TaskRunner,
        options: EngineOptions | None = None,
    ):
        self.registry = registry
        self.task_runner = task_runner
        self.options = options if options is not None else EngineOptions()

    def compensable_steps(
        self, execution: ChainExecution, definition: ChainDefinition
    ) -> list[tuple[StepExecution, ChainDefinitionStep]]:
        """
        Completed steps whose definition marks them compensatable, in descending step order.

        :param execution: The failed execution
        :type execution: ChainExecution
        :param definition: The definition the execution was started from
        :type definition: ChainDefinition
        :returns: Pairs of runtime step and authored step
        :rtype: list[tuple[StepExecution, ChainDefinitionStep]]
        """
        pairs = []
        for step_execution in execution.step_executions:
            if step_execution.status != StepExecutionStatus.COMPLETED:
                continue
            step_definition = definition.step_by_alias(step_execution.step_alias)
            if step_definition is not None and step_definition.is_compensatable:
                pairs.append((step_execution, step_definition))
        return sorted(pairs, key=lambda pair: pair[0].step_order, reverse=True)

    def compensate(self, execution: ChainExecution, definition: ChainDefinition) -> CompensationOutcome:
        """
        Moves a Failed execution to Compensating and walks its completed steps backward.

        :param execution: The failed execution, mutated in place
        :type execution: ChainExecution
        :param definition: The definition the execution was started from
        :type definition: ChainDefinition
        :returns: The aliases compensated and, on failure, the step and error that stopped the walk
        :rtype: CompensationOutcome
        :raises InvalidTransitionError: If the execution is not Failed
        """
        extra = {"structured": {"correlation_id": execution.correlation_id, "execution_id": execution.id}}
        execution.mark_compensating()
        logger.info("Compensating execution %s", execution.id, extra=extra)

        compensated = []
        for step_execution, step_definition in self.compensable_steps(execution, definition):
            error = self._compensate_step(step_execution, step_definition)
            if error is not None:
                execution.record_compensation_failure(step_execution.step_alias, error)
                logger.error(
                    "Compensation of step %s failed: %s",
                    step_execution.step_alias,
                    error,
                    extra=extra,
                )
                return CompensationOutcome(
                    compensated=compensated,
                    failed_step_alias=step_execution.step_alias,
                    error=error,
                )
            step_execution.mark_compensated()
            compensated.append(step_execution.step_alias)
            logger.info("Compensated step %s", step_execution.step_alias, extra=extra)

        execution.mark_compensated()
        return CompensationOutcome(compensated=compensated)

    def _compensate_step(self, step_execution: StepExecution, step_definition: ChainDefinitionStep) -> str | None:
        key = ActionKey(
            action_type=step_definition.compensation_action_type,
            module=step_definition.module,
            action_version=step_definition.action_version,
        )
        try:
            handler = self.registry.resolve(key)
            result = self.task_runner.run(
                handler,
                dict(step_execution.output_payload or {}),
                timeout=self.options.action_timeout,
            )
        except HandlerNotFoundError as e:
            return str(e)
        except TimeoutError:
            return f"Compensation action {key} timed out"
        except Exception as e:
            logger.warning("Compensation action %s raised %s", key, type(e).__name__, exc_info=True)
            return str(e) or type(e).__name__
        if isinstance(result, ActionFailure):
            return result.error
        return None
