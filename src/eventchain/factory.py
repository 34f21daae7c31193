from eventchain.backend import BackendType
from eventchain.client import Client
from eventchain.config import load_options
from eventchain.domain.port import ActionHandler
from eventchain.domain.value_object import EngineOptions
from eventchain.infrastructure.adapter.in_memory.engine import create as create_in_memory_engine
from eventchain.infrastructure.adapter.sqlite.engine import create as create_sqlite_engine


def create(
    backend: BackendType | str = BackendType.IN_MEMORY,
    handlers: list[type[ActionHandler]] | None = None,
    **kwargs,
) -> Client:
    """
    Factory function to create a Client with the specified backend.

    :param backend: The persistence backend to use
    :type backend: BackendType | str
    :param handlers: Optional list of action handler classes to pre-register
    :type handlers: list[type[ActionHandler]] | None
    :param kwargs: ``options`` (an EngineOptions), ``clock``, ``db_path`` for SQLite,
        or individual option values such as ``max_retries``
    :returns: A configured Client instance
    :rtype: Client
    :raises ValueError: If the backend type is unsupported
    """
    handlers = handlers or []
    backend = BackendType(backend)
    db_path = kwargs.pop("db_path", ":memory:")
    options = kwargs.pop("options", None)
    engine_kwargs = {"clock": kwargs.pop("clock")} if "clock" in kwargs else {}
    if options is None:
        options = load_options(**kwargs)
    elif kwargs:
        raise ValueError("Pass either options or individual option values, not both")
    if not isinstance(options, EngineOptions):
        raise TypeError(f"options must be EngineOptions, got {type(options).__name__}")

    if backend == BackendType.IN_MEMORY:
        engine = create_in_memory_engine(handlers, options=options, **engine_kwargs)
    elif backend == BackendType.SQLITE:
        engine = create_sqlite_engine(handlers, db_path=db_path, options=options, **engine_kwargs)
    else:
        raise ValueError(f"Unsupported backend: {backend}")

    return Client(engine)
