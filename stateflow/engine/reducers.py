"""
Reducers define how a step's partial update is merged into a state field.

A reducer is a pure function ``(current, incoming) -> merged``. It must not
mutate either argument; the engine relies on that to keep snapshots
immutable.
"""

from typing import Any, Callable, Dict, Optional


Reducer = Callable[[Any, Any], Any]


def replace(current: Any, incoming: Any) -> Any:
    """Default reducer: the incoming value wins."""
    return incoming


def append(current: Any, incoming: Any) -> list:
    """
    Append-only reducer for ordered sequences (message logs, audit trails).

    Lists and tuples are concatenated in arrival order; any other value is
    appended as a single item. Nothing is deduplicated.
    """
    items = list(current or [])
    if isinstance(incoming, (list, tuple)):
        items.extend(incoming)
    elif incoming is not None:
        items.append(incoming)
    return items


def merge_dicts(current: Optional[Dict[str, Any]], incoming: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Shallow dict merge (incoming wins on key collision)."""
    if not current:
        return dict(incoming or {})
    if not incoming:
        return dict(current)
    return {**current, **incoming}


def add(current: Any, incoming: Any) -> Any:
    """Numeric accumulator, e.g. for counters."""
    return (current or 0) + incoming


# Named reducers, used when schemas are declared as JSON
REDUCERS: Dict[str, Reducer] = {
    "replace": replace,
    "append": append,
    "merge": merge_dicts,
    "add": add,
}


def get_reducer(name: str) -> Optional[Reducer]:
    """Get a named reducer."""
    return REDUCERS.get(name)
