import logging
import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any

from eventchain.application.service import ChainEngine, decode_payload, load_chain_definition, load_chain_step
from eventchain.domain.entity import ChainDefinition, ChainDefinitionStep, ChainEntityMapping, ChainExecution, new_id
from eventchain.domain.port import ActionHandler
from eventchain.domain.value_object import (
    ActionDescriptor,
    ChainExecutionStatus,
    ChainLifecycleEvent,
    TriggerDescriptor,
)
from eventchain.infrastructure.provider import load_handlers

logger = logging.getLogger("eventchain.client")


class Client:
    """
    Unified client façade for chain authoring and execution.

    The Client is the only thing users interact with. It holds a ChainEngine
    wired to the chosen backend and exposes definition management, triggering,
    queries and the retry poller.
    """

    def __init__(self, engine: ChainEngine):
        """
        Initialize the client with a wired engine.

        :param engine: The engine built by a backend's ``create()``
        :type engine: ChainEngine
        """
        self._engine = engine
        self._poller: threading.Thread | None = None
        self._stop = threading.Event()

    @property
    def engine(self) -> ChainEngine:
        return self._engine

    def handler(self, handler: type[ActionHandler]) -> "Client":
        """
        Register an action handler class.

        :param handler: The handler class
        :type handler: type[ActionHandler]
        :returns: The client, for chaining
        :rtype: Client
        """
        self._engine.registry.register(handler)
        return self

    def load_handlers(self) -> list[type[ActionHandler]]:
        """
        Register every ActionHandler subclass defined so far.

        :returns: The handler classes registered
        :rtype: list[type[ActionHandler]]
        """
        handlers = load_handlers()
        for handler in handlers:
            self._engine.registry.register(handler)
        return handlers

    def action_catalog(self, compatible_with_trigger: str | None = None) -> list[ActionDescriptor]:
        """
        Descriptors of registered action handlers.

        :param compatible_with_trigger: Only actions usable in a chain listening for this event type
        :type compatible_with_trigger: str | None
        :returns: The matching descriptors
        :rtype: list[ActionDescriptor]
        """
        return self._engine.registry.catalog(compatible_with_trigger)

    def register_trigger(
        self, event_type: str, module: str = "", name: str | None = None, description: str = ""
    ) -> "Client":
        """
        List a domain event in the trigger catalog.

        :param event_type: The domain event type chains can listen for
        :type event_type: str
        :param module: The module raising the event
        :type module: str
        :param name: Display name; defaults to the event type
        :type name: str | None
        :param description: What the event means
        :type description: str
        :returns: The client, for chaining
        :rtype: Client
        """
        self._engine.triggers.register(
            TriggerDescriptor(event_type=event_type, module=module, name=name or event_type, description=description)
        )
        return self

    def trigger_catalog(self) -> list[TriggerDescriptor]:
        return self._engine.triggers.catalog()

    def subscribe(self, callback: Callable[[ChainLifecycleEvent], None]) -> None:
        """
        Receive lifecycle notifications.

        :param callback: Called with each ChainStarted, ChainCompleted and ChainFailed event
        :type callback: Callable[[ChainLifecycleEvent], None]
        """
        self._engine.publisher.subscribe(callback)

    # Definitions

    def add_definition(self, definition: dict | str | bytes | ChainDefinition) -> ChainDefinition:
        """
        Validate and store a new chain definition.

        :param definition: The definition as a dictionary, JSON/YAML document or ChainDefinition
        :type definition: dict | str | bytes | ChainDefinition
        :returns: The stored definition
        :rtype: ChainDefinition
        :raises DefinitionError: If the definition is invalid
        """
        definition = load_chain_definition(definition)
        self._engine.definitions.add(definition)
        logger.info("Added chain definition %s (%s)", definition.id, definition.name)
        return definition

    def get_definition(self, definition_id: str) -> ChainDefinition:
        return self._engine.definitions.get(definition_id)

    def list_definitions(self, family_id: str | None = None, is_enabled: bool | None = None) -> list[ChainDefinition]:
        return self._engine.definitions.find(family_id=family_id, is_enabled=is_enabled)

    def update_definition(
        self,
        definition_id: str,
        name: str | None = None,
        description: str | None = None,
        steps: list[ChainDefinitionStep | dict] | None = None,
    ) -> ChainDefinition:
        """
        Edit a definition's metadata and, optionally, replace its steps.

        In-flight executions keep running against the steps they were started with
        as long as the aliases still exist.

        :param definition_id: The definition identifier
        :type definition_id: str
        :param name: New name
        :type name: str | None
        :param description: New description
        :type description: str | None
        :param steps: New step list, replacing the current one
        :type steps: list[ChainDefinitionStep | dict] | None
        :returns: The updated definition
        :rtype: ChainDefinition
        :raises DefinitionError: If the edit leaves the definition invalid
        """
        definition = self._engine.definitions.get(definition_id)
        definition.update_metadata(name=name, description=description)
        if steps is not None:
            definition.replace_steps([load_chain_step(s) for s in steps])
        definition = load_chain_definition(definition)
        self._engine.definitions.update(definition)
        return definition

    def enable(self, definition_id: str) -> ChainDefinition:
        definition = self._engine.definitions.get(definition_id)
        definition.enable()
        self._engine.definitions.update(definition)
        return definition

    def disable(self, definition_id: str) -> ChainDefinition:
        """Stop new executions of a chain. Executions already running are not affected."""
        definition = self._engine.definitions.get(definition_id)
        definition.disable()
        self._engine.definitions.update(definition)
        return definition

    def instantiate_template(
        self, template_id: str, family_id: str, created_by_user_id: str | None = None, name: str | None = None
    ) -> ChainDefinition:
        """
        Create and store a family-owned chain from a template.

        :param template_id: The template definition identifier
        :type template_id: str
        :param family_id: The family that will own the chain
        :type family_id: str
        :param created_by_user_id: The user creating the chain
        :type created_by_user_id: str | None
        :param name: Optional name overriding the template's
        :type name: str | None
        :returns: The stored chain
        :rtype: ChainDefinition
        :raises DefinitionError: If the definition is not a template
        """
        template = self._engine.definitions.get(template_id)
        definition = template.instantiate(family_id, created_by_user_id=created_by_user_id, name=name)
        return self.add_definition(definition)

    # Execution

    def trigger(
        self,
        event_type: str,
        module: str | None = None,
        event_id: str | None = None,
        payload: dict[str, Any] | str | bytes | None = None,
        family_id: str | None = None,
    ) -> list[ChainExecution]:
        """
        Start and run one execution per enabled chain listening for the event.

        :param event_type: The domain event type
        :type event_type: str
        :param module: The module that raised the event; None matches any
        :type module: str | None
        :param event_id: Identifier of the event; generated when omitted
        :type event_id: str | None
        :param payload: Event payload as a dictionary or JSON text
        :type payload: dict[str, Any] | str | bytes | None
        :param family_id: Only start chains owned by this family
        :type family_id: str | None
        :returns: The executions started, in their state after running
        :rtype: list[ChainExecution]
        """
        trigger_payload = decode_payload(payload)
        event_id = event_id or new_id()
        executions = []
        for definition in self._engine.definitions.find_enabled_by_trigger(event_type, module):
            if family_id is not None and definition.family_id != family_id:
                continue
            execution = self._engine.coordinator.start(
                definition,
                family_id=definition.family_id,
                trigger_event_type=event_type,
                trigger_event_id=event_id,
                trigger_payload=trigger_payload,
            )
            executions.append(self._engine.coordinator.run(execution.id))
        if not executions:
            logger.debug("No enabled chain listens for %s", event_type)
        return executions

    def execute(
        self,
        definition_id: str,
        family_id: str | None = None,
        payload: dict[str, Any] | str | bytes | None = None,
    ) -> ChainExecution:
        """
        Start and run a chain manually, outside of any trigger event.

        :param definition_id: The definition identifier
        :type definition_id: str
        :param family_id: The family to run for; defaults to the chain's owner
        :type family_id: str | None
        :param payload: Payload exposed to steps as ``trigger``
        :type payload: dict[str, Any] | str | bytes | None
        :returns: The execution in its state after running
        :rtype: ChainExecution
        :raises DefinitionError: If the chain is disabled or a template
        """
        definition = self._engine.definitions.get(definition_id)
        execution = self._engine.coordinator.start(
            definition,
            family_id=family_id or definition.family_id,
            trigger_event_type=definition.trigger_event_type,
            trigger_event_id=f"manual-{new_id()}",
            trigger_payload=decode_payload(payload),
        )
        return self._engine.coordinator.run(execution.id)

    def poll_retries(self, now: datetime | None = None) -> int:
        """
        Run one pass of the retry poller.

        :param now: Reference time; defaults to the current time
        :type now: datetime | None
        :returns: Number of jobs processed
        :rtype: int
        """
        self._engine.scheduler.reset_stale(now)
        return len(self._engine.scheduler.poll_once(self._engine.coordinator, now))

    def start_poller(self) -> None:
        """Run the retry poller in a daemon thread until ``stop_poller`` is called."""
        if self._poller is not None and self._poller.is_alive():
            return
        self._stop.clear()
        self._poller = threading.Thread(
            target=self._engine.scheduler.run,
            args=(self._engine.coordinator, self._stop),
            name="eventchain-retry-poller",
            daemon=True,
        )
        self._poller.start()

    def stop_poller(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._poller is not None:
            self._poller.join(timeout)
            self._poller = None

    # Queries

    def get_execution(self, execution_id: str) -> ChainExecution:
        return self._engine.executions.get(execution_id)

    def list_executions(
        self,
        definition_id: str | None = None,
        family_id: str | None = None,
        status: ChainExecutionStatus | str | None = None,
    ) -> list[ChainExecution]:
        """
        List executions, most recent first.

        :param definition_id: Only executions of this chain
        :type definition_id: str | None
        :param family_id: Only executions for this family
        :type family_id: str | None
        :param status: Only executions in this status
        :type status: ChainExecutionStatus | str | None
        :returns: Matching executions
        :rtype: list[ChainExecution]
        """
        if status is not None:
            status = ChainExecutionStatus(status)
        return self._engine.executions.find(definition_id=definition_id, family_id=family_id, status=status)

    def execution_count(self, definition_id: str) -> int:
        return len(self._engine.executions.find(definition_id=definition_id))

    def last_executed_at(self, definition_id: str) -> datetime | None:
        executions = self._engine.executions.find(definition_id=definition_id)
        return executions[0].started_at if executions else None

    def entity_mappings(self, execution_id: str) -> list[ChainEntityMapping]:
        return self._engine.tracker.for_execution(execution_id)

    def find_entity_mappings(self, entity_id: str, entity_type: str | None = None) -> list[ChainEntityMapping]:
        """
        Find the chain steps that created an entity.

        :param entity_id: The entity identifier
        :type entity_id: str
        :param entity_type: Only mappings of this entity type
        :type entity_type: str | None
        :returns: Matching mappings, oldest first
        :rtype: list[ChainEntityMapping]
        """
        return self._engine.tracker.find_by_entity(entity_id, entity_type)
