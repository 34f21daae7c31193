from eventchain.application.port import TriggerRegistry
from eventchain.domain.value_object import TriggerDescriptor


class InMemoryTriggerRegistry(TriggerRegistry):
    """Keeps the trigger catalog in memory."""

    def __init__(self, triggers: list[TriggerDescriptor] | None = None):
        self._registry: dict[tuple[str, str], TriggerDescriptor] = {}
        for trigger in triggers or []:
            self.register(trigger)

    def register(self, trigger: TriggerDescriptor) -> None:
        self._registry[(trigger.module, trigger.event_type)] = trigger

    def catalog(self) -> list[TriggerDescriptor]:
        return sorted(self._registry.values(), key=lambda t: (t.module, t.event_type))
