from enum import Enum


class BackendType(Enum):
    """Supported persistence backends."""

    IN_MEMORY = "in_memory"
    SQLITE = "sqlite"
