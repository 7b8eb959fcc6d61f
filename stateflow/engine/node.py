"""
Node Definition for the StateFlow engine.

Nodes are the building blocks of a graph. Each node is a function that
receives the current (read-only) state and returns a partial update, or
signals that the run should terminate after this step.
"""

from typing import Any, Callable, Dict, Mapping, Optional
from dataclasses import dataclass, field
from enum import Enum
import asyncio
import functools
import inspect

from stateflow.engine.errors import (
    InvalidNodeName,
    NodeError,
    SchemaViolation,
    StateFlowError,
)


# Reserved node names, shared by the graph module
START = "__start__"
END = "__end__"
RESERVED_NAMES = frozenset({START, END})


class ResultKind(str, Enum):
    """Shapes a node's result can take."""
    UPDATE = "update"        # Merge the update, then follow the outgoing edge
    TERMINATE = "terminate"  # Merge the update, then end the run


@dataclass(frozen=True)
class NodeResult:
    """Normalised result of one node invocation."""
    kind: ResultKind
    update: Mapping[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.kind is ResultKind.TERMINATE

    @classmethod
    def from_value(cls, value: Any, node_name: str) -> "NodeResult":
        """Normalise whatever a handler returned."""
        if isinstance(value, NodeResult):
            return value
        if value is None:
            return cls(ResultKind.UPDATE, {})
        if isinstance(value, Mapping):
            return cls(ResultKind.UPDATE, dict(value))
        raise SchemaViolation(
            f"Node '{node_name}' must return a mapping, None or terminate(), "
            f"got {type(value).__name__}",
            node_name=node_name,
        )


def terminate(update: Optional[Mapping[str, Any]] = None) -> NodeResult:
    """
    Signal from inside a node that the run ends after this step.

    Usage:
        def finish(state):
            return terminate({"answer": 42})
    """
    return NodeResult(ResultKind.TERMINATE, dict(update or {}))


def _accepts_config(handler: Callable) -> bool:
    """Whether a handler takes a second (config) argument."""
    try:
        params = list(inspect.signature(handler).parameters.values())
    except (TypeError, ValueError):
        return False
    if any(p.kind is inspect.Parameter.VAR_POSITIONAL for p in params):
        return True
    positional = [
        p for p in params
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    return len(positional) >= 2


@dataclass(frozen=True)
class Node:
    """
    A node in the workflow graph.

    Attributes:
        name: Unique identifier for the node
        handler: Function that processes state (sync or async)
        description: Human-readable description
        metadata: Additional node metadata
    """

    name: str
    handler: Callable[..., Any]
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Validate the node after initialization."""
        if not self.name:
            raise InvalidNodeName(self.name, "name cannot be empty")
        if self.name in RESERVED_NAMES:
            raise InvalidNodeName(self.name, "name is reserved")
        if not callable(self.handler):
            raise ValueError(f"Handler for node '{self.name}' must be callable")

    @property
    def is_async(self) -> bool:
        """Check if the handler is an async function."""
        return inspect.iscoroutinefunction(self.handler)

    @property
    def accepts_config(self) -> bool:
        return _accepts_config(self.handler)

    async def execute(self, state: Mapping[str, Any], config: Optional[Dict[str, Any]] = None) -> NodeResult:
        """
        Execute the node handler with the given state.

        Handles both sync and async handlers transparently. Sync handlers
        run in the loop's default executor so they do not block other runs.

        Args:
            state: The current state snapshot
            config: Per-run configuration, passed if the handler accepts it

        Returns:
            The normalised NodeResult

        Raises:
            NodeError: If the handler raises
            SchemaViolation: If the handler returns an unsupported value
        """
        args = (state, config or {}) if self.accepts_config else (state,)
        try:
            if self.is_async:
                result = await self.handler(*args)
            else:
                loop = asyncio.get_running_loop()
                result = await loop.run_in_executor(
                    None,
                    functools.partial(self.handler, *args)
                )
                if inspect.isawaitable(result):
                    result = await result
        except StateFlowError:
            raise
        except Exception as e:
            raise NodeError(self.name, e) from e

        return NodeResult.from_value(result, self.name)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the node to a dictionary."""
        return {
            "name": self.name,
            "description": self.description,
            "handler": getattr(self.handler, "__name__", str(self.handler)),
            "metadata": self.metadata,
        }


# Registry to hold decorated node functions
_node_registry: Dict[str, Callable] = {}


def node(name: Optional[str] = None, description: str = "") -> Callable:
    """
    Decorator to register a function as a reusable node handler.

    Registered handlers can be referenced by name when graphs are built
    from JSON definitions.

    Usage:
        @node(name="summarize", description="Summarize the conversation")
        def summarize(state):
            return {"summary": ...}
    """
    def decorator(func: Callable) -> Callable:
        node_name = name or func.__name__
        func._node_metadata = {
            "name": node_name,
            "description": description or (func.__doc__ or "").strip(),
        }
        _node_registry[node_name] = func
        return func

    return decorator


def get_registered_node(name: str) -> Optional[Callable]:
    """Get a registered node function by name."""
    return _node_registry.get(name)


def list_registered_nodes() -> Dict[str, Dict[str, Any]]:
    """List all registered nodes and their metadata."""
    return {
        name: func._node_metadata
        for name, func in _node_registry.items()
    }


def create_node_from_function(
    func: Callable,
    name: Optional[str] = None,
    description: str = ""
) -> Node:
    """Create a Node instance from a function."""
    metadata = getattr(func, "_node_metadata", {})
    return Node(
        name=name or metadata.get("name") or func.__name__,
        handler=func,
        description=description or metadata.get("description") or (func.__doc__ or "").strip(),
    )
