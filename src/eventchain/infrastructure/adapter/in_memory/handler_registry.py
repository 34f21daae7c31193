from eventchain.application.port import ActionHandlerRegistry
from eventchain.domain.error import HandlerNotFoundError
from eventchain.domain.port import ActionHandler
from eventchain.domain.value_object import ActionDescriptor, ActionKey


class InMemoryActionHandlerRegistry(ActionHandlerRegistry):
    """Resolves action handlers from an in-memory registry."""

    def __init__(self, handlers: list[type[ActionHandler]] | None = None):
        """
        Initializes registry with optional handler list.

        :param handlers: List of handler classes to register
        :type handlers: list[type[ActionHandler]] | None
        """
        self._registry: dict[ActionKey, type[ActionHandler]] = {}
        for cls in handlers or []:
            self.register(cls)

    def register(self, handler: type[ActionHandler]) -> None:
        self._registry[handler.key()] = handler

    def resolve(self, key: ActionKey) -> ActionHandler:
        """
        Returns a handler instance registered under the given key.

        :param key: The composite action key
        :type key: ActionKey
        :returns: Handler instance
        :rtype: ActionHandler
        :raises HandlerNotFoundError: If no handler is registered for the key
        """
        try:
            cls = self._registry[key]
        except KeyError:
            raise HandlerNotFoundError(f"No action handler registered for '{key}'") from None
        return cls()

    def catalog(self, compatible_with_trigger: str | None = None) -> list[ActionDescriptor]:
        descriptors = [cls.descriptor() for cls in self._registry.values()]
        if compatible_with_trigger is not None:
            descriptors = [d for d in descriptors if d.is_compatible_with(compatible_with_trigger)]
        return sorted(descriptors, key=lambda d: (d.module, d.action_type, d.version))
