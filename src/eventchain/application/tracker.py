import logging

from eventchain.application.port import EntityMappingRepository
from eventchain.domain.entity import ChainEntityMapping
from eventchain.domain.value_object import CreatedEntity

logger = logging.getLogger("eventchain.tracker")


class EntityMappingTracker:
    """Records which entities each step created, keyed by step alias."""

    def __init__(self, repository: EntityMappingRepository):
        self.repository = repository

    def record(
        self, execution_id: str, step_alias: str, created_entities: list[CreatedEntity]
    ) -> list[ChainEntityMapping]:
        """
        Appends one mapping per created entity.

        :param execution_id: The owning execution
        :type execution_id: str
        :param step_alias: The step that created the entities
        :type step_alias: str
        :param created_entities: Entities reported by the action handler
        :type created_entities: list[CreatedEntity]
        :returns: The stored mappings
        :rtype: list[ChainEntityMapping]
        """
        mappings = []
        for entity in created_entities:
            mapping = ChainEntityMapping(
                chain_execution_id=execution_id,
                step_alias=step_alias,
                entity_type=entity.entity_type,
                entity_id=entity.entity_id,
                module=entity.module,
            )
            self.repository.add(mapping)
            mappings.append(mapping)
        if mappings:
            logger.debug(
                "Recorded %d entity mapping(s) for step %s of execution %s",
                len(mappings),
                step_alias,
                execution_id,
            )
        return mappings

    def for_execution(self, execution_id: str) -> list[ChainEntityMapping]:
        return self.repository.for_execution(execution_id)

    def for_step(self, execution_id: str, step_alias: str) -> list[ChainEntityMapping]:
        return [m for m in self.repository.for_execution(execution_id) if m.step_alias == step_alias]

    def find_by_entity(self, entity_id: str, entity_type: str | None = None) -> list[ChainEntityMapping]:
        return self.repository.find_by_entity(entity_id, entity_type)

    def as_namespace(self, execution_id: str) -> dict[str, dict[str, str]]:
        """Entities of an execution as alias -> entity type -> entity id, for ``${entities...}`` lookups."""
        namespace: dict[str, dict[str, str]] = {}
        for mapping in self.repository.for_execution(execution_id):
            namespace.setdefault(mapping.step_alias, {})[mapping.entity_type] = mapping.entity_id
        return namespace
