from eventchain.domain.port import ActionHandler


def load_handlers() -> list[type[ActionHandler]]:
    """Returns a list of all action handler classes defined so far."""
    return list(ActionHandler._handlers)
