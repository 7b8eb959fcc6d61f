"""
State Management for the StateFlow engine.

The state schema declares every field of the shared state together with the
reducer used to merge partial updates into it. State snapshots are immutable:
each step produces a new snapshot and never touches the previous one.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import (
    Annotated,
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)
from pydantic import BaseModel, Field
from datetime import datetime
from copy import deepcopy
import uuid

from stateflow.engine.errors import SchemaViolation
from stateflow.engine.reducers import Reducer, get_reducer, replace


@dataclass(frozen=True)
class Channel:
    """
    A single field of the state schema.

    Attributes:
        name: Field name
        type: Declared value type (informational)
        reducer: Merge function applied to updates of this field
        default: Initial value when the caller does not provide one
        default_factory: Factory for mutable initial values
    """
    name: str
    type: Any = Any
    reducer: Reducer = replace
    default: Any = None
    default_factory: Optional[Callable[[], Any]] = None

    def initial_value(self) -> Any:
        if self.default_factory is not None:
            return self.default_factory()
        return deepcopy(self.default)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": getattr(self.type, "__name__", str(self.type)),
            "reducer": getattr(self.reducer, "__name__", str(self.reducer)),
        }


class State(Mapping):
    """
    An immutable snapshot of the shared state.

    Behaves like a read-only dict. ``version`` counts the steps whose updates
    have been applied to produce this snapshot.
    """

    __slots__ = ("_data", "_version")

    def __init__(self, data: Mapping, version: int = 0):
        self._data = dict(data)
        self._version = version

    @property
    def version(self) -> int:
        return self._version

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"State({self._data!r}, version={self._version})"

    def to_dict(self) -> Dict[str, Any]:
        """Return a deep copy of the state as a plain dictionary."""
        return deepcopy(self._data)

    def copy(self) -> "State":
        """A detached snapshot; nested values share nothing with this one."""
        return State(deepcopy(self._data), version=self._version)


class StateSchema:
    """
    Declares the shape of the shared state.

    Usage:
        schema = StateSchema([
            Channel("messages", list, reducer=append, default_factory=list),
            Channel("answer", str),
        ])
        state = schema.create({"answer": None})
        state = schema.apply(state, {"messages": ["hi"]})
    """

    def __init__(self, channels: Union[Mapping, Iterable[Channel]] = ()):
        if isinstance(channels, Mapping):
            channels = channels.values()
        self._channels: Dict[str, Channel] = {}
        for channel in channels:
            if channel.name in self._channels:
                raise ValueError(f"Field '{channel.name}' declared twice in schema")
            self._channels[channel.name] = channel

    @classmethod
    def from_typed_dict(cls, typed_dict: type) -> "StateSchema":
        """
        Build a schema from a TypedDict.

        Reducers are attached with ``Annotated[T, reducer]``. Fields whose type
        is a list, dict or set start as an empty container, others as None.
        """
        hints = get_type_hints(typed_dict, include_extras=True)
        channels = []
        for name, hint in hints.items():
            reducer = replace
            value_type = hint
            if get_origin(hint) is Annotated:
                value_type, *extras = get_args(hint)
                for extra in extras:
                    if callable(extra):
                        reducer = extra
                        break
            origin = get_origin(value_type) or value_type
            factory = origin if origin in (list, dict, set) else None
            channels.append(Channel(
                name=name,
                type=value_type,
                reducer=reducer,
                default_factory=factory,
            ))
        return cls(channels)

    @classmethod
    def from_definition(cls, fields: Dict[str, Dict[str, Any]]) -> "StateSchema":
        """
        Build a schema from a JSON-friendly definition.

        ``{"log": {"reducer": "append", "default": []}, "answer": {}}``
        """
        channels = []
        for name, declaration in fields.items():
            declaration = declaration or {}
            reducer_name = declaration.get("reducer", "replace")
            reducer = get_reducer(reducer_name)
            if reducer is None:
                raise ValueError(f"Unknown reducer '{reducer_name}' for field '{name}'")
            channels.append(Channel(name=name, reducer=reducer, default=declaration.get("default")))
        return cls(channels)

    @property
    def fields(self) -> List[str]:
        return list(self._channels)

    def channel(self, name: str) -> Channel:
        return self._channels[name]

    def __contains__(self, name: object) -> bool:
        return name in self._channels

    def __iter__(self) -> Iterator[Channel]:
        return iter(self._channels.values())

    def __len__(self) -> int:
        return len(self._channels)

    def _check_fields(self, values: Mapping, node_name: Optional[str], what: str) -> None:
        unknown = [key for key in values if key not in self._channels]
        if unknown:
            source = f"Node '{node_name}'" if node_name else "Initial state"
            raise SchemaViolation(
                f"{source} {what} unknown field(s) {sorted(unknown)}. "
                f"Declared fields: {self.fields}",
                fields=unknown,
                node_name=node_name,
            )

    def create(self, values: Optional[Mapping] = None) -> State:
        """Create the initial snapshot; missing fields take their defaults."""
        values = values or {}
        self._check_fields(values, None, "references")
        data = {}
        for name, channel in self._channels.items():
            if name in values:
                data[name] = deepcopy(values[name])
            else:
                data[name] = channel.initial_value()
        return State(data, version=0)

    def apply(self, state: State, update: Mapping, node_name: Optional[str] = None) -> State:
        """
        Merge a partial update into ``state`` and return the next snapshot.

        Each touched field goes through its reducer with
        ``(current, incoming)``; untouched fields carry over unchanged.
        """
        self._check_fields(update, node_name, "returned")
        # Each snapshot owns its nested values
        data = state.to_dict()
        for name, value in update.items():
            reducer = self._channels[name].reducer
            data[name] = reducer(data[name], deepcopy(value))
        return State(data, version=state.version + 1)

    def to_dict(self) -> Dict[str, Any]:
        return {name: channel.to_dict() for name, channel in self._channels.items()}


class StateSnapshot(BaseModel):
    """A snapshot of state after a specific step."""

    timestamp: datetime = Field(default_factory=datetime.now)
    step: int
    node_name: str
    update: Dict[str, Any]
    state_data: Dict[str, Any]


class StateManager:
    """
    Owns the evolving state of one run and records its history.

    Only the executor driving the run calls ``apply``; everyone else reads
    the immutable snapshots it hands out.
    """

    def __init__(self, schema: StateSchema, run_id: Optional[str] = None):
        self.schema = schema
        self.run_id = run_id or str(uuid.uuid4())
        self.history: List[StateSnapshot] = []
        self._current_state: Optional[State] = None
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None

    @property
    def current_state(self) -> Optional[State]:
        """Get the current state."""
        return self._current_state

    def initialize(self, initial_data: Optional[Mapping] = None) -> State:
        """Initialize the manager with the caller's initial data."""
        self._current_state = self.schema.create(initial_data)
        self.started_at = datetime.now()
        return self._current_state

    def apply(self, node_name: str, update: Mapping) -> State:
        """Merge a node's update, record a snapshot and return the new state."""
        new_state = self.schema.apply(self._current_state, update, node_name)
        self.history.append(StateSnapshot(
            step=new_state.version,
            node_name=node_name,
            update=deepcopy(dict(update)),
            state_data=new_state.to_dict(),
        ))
        self._current_state = new_state
        return new_state

    def finalize(self) -> Optional[State]:
        """Mark the run as complete."""
        self.completed_at = datetime.now()
        return self._current_state

    def get_history(self) -> List[Dict[str, Any]]:
        """Get the state history as a list of dictionaries."""
        return [
            {
                "timestamp": s.timestamp.isoformat(),
                "step": s.step,
                "node": s.node_name,
                "update": s.update,
                "state": s.state_data,
            }
            for s in self.history
        ]
