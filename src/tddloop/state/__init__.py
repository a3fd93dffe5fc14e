from tddloop.state.store import (
    StateParseError,
    StateStoreError,
    TaskNotFoundError,
    TaskState,
    TaskStateStore,
)

__all__ = [
    "StateParseError",
    "StateStoreError",
    "TaskNotFoundError",
    "TaskState",
    "TaskStateStore",
]
