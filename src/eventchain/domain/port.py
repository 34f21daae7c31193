import threading
from typing import Any

from eventchain.domain.value_object import ActionDescriptor, ActionKey, ActionResult


class ActionHandler:
    """Base class for all action handlers. Enforces 'execute' method and registers subclasses.

    Subclasses identify themselves with the ``action_type``, ``module`` and
    ``action_version`` class attributes; together they form the handler's ActionKey.
    """

    _handlers = []

    action_type: str = ""
    module: str = ""
    action_version: str = "1.0"
    description: str = ""
    is_compensatable: bool = False
    # event types this action makes sense after; empty means any
    compatible_triggers: tuple[str, ...] = ()

    def __init_subclass__(cls, **kwargs):
        """
        Registers subclass and ensures 'execute' method is defined.

        :param kwargs: Additional keyword arguments passed to super().__init_subclass__
        :raises TypeError: If the subclass doesn't define an 'execute' method
        """
        super().__init_subclass__(**kwargs)

        if "execute" not in cls.__dict__:
            raise TypeError(f"{cls.__name__} must define a 'execute' method")

        ActionHandler._handlers.append(cls)

    @classmethod
    def key(cls) -> ActionKey:
        return ActionKey(
            action_type=cls.action_type or cls.__name__,
            module=cls.module,
            action_version=cls.action_version,
        )

    @classmethod
    def descriptor(cls) -> ActionDescriptor:
        key = cls.key()
        doc = (cls.__doc__ or "").strip()
        return ActionDescriptor(
            action_type=key.action_type,
            module=key.module,
            version=key.action_version,
            name=cls.__name__,
            description=cls.description or (doc.splitlines()[0] if doc else ""),
            is_compensatable=cls.is_compensatable,
            compatible_triggers=tuple(cls.compatible_triggers),
        )

    def execute(self, payload: dict[str, Any], cancel: threading.Event) -> ActionResult:
        """
        Abstract execute method to be implemented by handlers.

        A handler may return a coroutine; the task runner awaits it.

        :param payload: The resolved input payload for the step
        :type payload: dict[str, Any]
        :param cancel: Set when the dispatcher gives up waiting for the handler
        :type cancel: threading.Event
        :returns: ActionSuccess or ActionFailure
        :rtype: ActionResult
        :raises NotImplementedError: Must be implemented by subclasses
        """
        raise NotImplementedError("Action handlers must implement the execute method")
