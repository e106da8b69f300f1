from waveline.state.store import (
    MAX_EVENTS,
    TaskStore,
    Transaction,
    Update,
    add_verified,
    append_event,
    append_state,
    apply_updates,
    empty_document,
    put_task,
    put_tasks,
    reset_verified,
    set_state,
    set_task,
    set_waves,
)

__all__ = [
    "MAX_EVENTS",
    "TaskStore",
    "Transaction",
    "Update",
    "add_verified",
    "append_event",
    "append_state",
    "apply_updates",
    "empty_document",
    "put_task",
    "put_tasks",
    "reset_verified",
    "set_state",
    "set_task",
    "set_waves",
]
