"""
Graph Definition for the StateFlow engine.

``StateGraph`` is the mutable builder: register nodes and edges, pick an
entry point, then ``compile()``. Compilation validates the definition once
and returns a frozen ``CompiledGraph`` that can be shared by any number of
concurrent runs.
"""

from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    FrozenSet,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Union,
)
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
import asyncio
import logging
import uuid

from stateflow.engine.errors import (
    DanglingEdge,
    DuplicateEdge,
    DuplicateNode,
    GraphConstructionError,
    InvalidEntry,
    InvalidRouteTarget,
    NodeError,
    StateFlowError,
    UnknownNode,
)
from stateflow.engine.node import (
    END,
    START,
    Node,
    create_node_from_function,
    get_registered_node,
)
from stateflow.engine.state import State, StateSchema


logger = logging.getLogger(__name__)

Router = Callable[[State], Any]
RouteTargets = Union[Sequence[str], Mapping[Any, str]]


class EdgeType(str, Enum):
    """Types of edges between nodes."""
    DIRECT = "direct"           # Always follow this edge
    CONDITIONAL = "conditional"  # Choose based on the router


@dataclass(frozen=True)
class Edge:
    """A fixed edge connecting two nodes."""
    source: str
    target: str
    edge_type: EdgeType = EdgeType.DIRECT

    def to_dict(self) -> Dict[str, str]:
        return {
            "source": self.source,
            "target": self.target,
            "type": self.edge_type.value
        }


@dataclass(frozen=True)
class Route:
    """
    Where a run goes after a step.

    ``target`` is a node name or END; ``key`` is the raw router output that
    selected it (None for fixed edges).
    """
    target: str
    key: Any = None

    @property
    def terminal(self) -> bool:
        return self.target == END

    @classmethod
    def end(cls, key: Any = None) -> "Route":
        return cls(END, key)


@dataclass(frozen=True)
class ConditionalEdge:
    """
    A conditional edge that routes to different nodes based on the state.

    The router receives the post-merge state and returns either a route key
    (looked up in ``routes``) or, when no routes were declared, a node name
    or END directly.
    """
    source: str
    router: Router
    routes: Optional[Mapping[Any, str]] = None

    @property
    def targets(self) -> Optional[FrozenSet[str]]:
        """Declared targets, or None if the router may pick any node."""
        if self.routes is None:
            return None
        return frozenset(self.routes.values())

    def evaluate(self, state: State, known_nodes: Mapping[str, Node]) -> Route:
        """Evaluate the router and return the chosen route."""
        try:
            key = self.router(state)
        except StateFlowError:
            raise
        except Exception as e:
            raise NodeError(self.source, e) from e

        if self.routes is not None:
            try:
                target = self.routes.get(key)
            except TypeError:
                target = None
            if target is None:
                raise InvalidRouteTarget(self.source, key, self.routes.keys())
            return Route(target, key)

        if isinstance(key, str) and (key == END or key in known_nodes):
            return Route(key, key)
        raise InvalidRouteTarget(self.source, key, [*known_nodes, END])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "router": getattr(self.router, "__name__", str(self.router)),
            "routes": {str(k): v for k, v in self.routes.items()} if self.routes is not None else None,
        }


# Registry to hold named routers
_router_registry: Dict[str, Router] = {}


def register_router(name: Optional[str] = None) -> Callable:
    """
    Decorator to register a router function by name.

    Usage:
        @register_router("has_tool_calls")
        def has_tool_calls(state):
            return "tools" if state["tool_calls"] else END
    """
    def decorator(func: Router) -> Router:
        _router_registry[name or func.__name__] = func
        return func
    return decorator


def get_router(name: str) -> Optional[Router]:
    """Get a registered router by name."""
    return _router_registry.get(name)


def list_routers() -> List[str]:
    return sorted(_router_registry)


def _coerce_schema(schema: Any) -> StateSchema:
    if isinstance(schema, StateSchema):
        return schema
    if isinstance(schema, type) and hasattr(schema, "__annotations__"):
        return StateSchema.from_typed_dict(schema)
    raise TypeError(
        f"Graph schema must be a StateSchema or a TypedDict, got {type(schema).__name__}"
    )


class StateGraph:
    """
    Mutable builder for a workflow graph.

    The builder checks only what it can check locally (duplicate names,
    unknown sources, one outgoing edge per node). Everything that depends on
    the whole definition is checked by ``compile()``.

    Usage:
        graph = StateGraph(MyState)
        graph.add_node("agent", agent)
        graph.add_node("tools", tools)
        graph.set_entry_point("agent")
        graph.add_conditional_edge("agent", should_continue, ["tools", END])
        graph.add_edge("tools", "agent")
        app = graph.compile()
    """

    def __init__(self, schema: Any, name: str = "Unnamed Workflow", description: str = ""):
        self.schema = _coerce_schema(schema)
        self.name = name
        self.description = description
        self.nodes: Dict[str, Node] = {}
        self.edges: Dict[str, str] = {}  # source -> target for direct edges
        self.conditional_edges: Dict[str, ConditionalEdge] = {}
        self.entry_points: List[str] = []

    def add_node(
        self,
        name: str,
        handler: Optional[Callable] = None,
        description: str = ""
    ) -> "StateGraph":
        """
        Add a node to the graph.

        If handler is not provided, looks up a handler registered with
        the ``@node`` decorator under the same name.

        Returns:
            Self for chaining
        """
        if name in self.nodes:
            raise DuplicateNode(name)

        if handler is None:
            handler = get_registered_node(name)
            if handler is None:
                raise GraphConstructionError(
                    f"No handler provided for node '{name}' and no registered "
                    f"node found with that name"
                )

        self.nodes[name] = create_node_from_function(handler, name, description)
        return self

    def _check_source(self, source: str) -> None:
        if source not in self.nodes:
            raise UnknownNode(source)
        if source in self.edges or source in self.conditional_edges:
            raise DuplicateEdge(source)

    def add_edge(self, source: str, target: str) -> "StateGraph":
        """
        Add a direct edge from source to target.

        ``add_edge(START, name)`` declares the entry point. The target may be
        registered later; it is resolved by ``compile()``.
        """
        if source == START:
            return self.set_entry_point(target)
        if target == START:
            raise DanglingEdge(source, target)
        self._check_source(source)
        self.edges[source] = target
        return self

    def add_conditional_edge(
        self,
        source: str,
        router: Router,
        targets: Optional[RouteTargets] = None
    ) -> "StateGraph":
        """
        Add a conditional edge from source node.

        Args:
            source: Source node name
            router: Function of the post-merge state
            targets: Declared targets. A sequence of node names (or END) means
                the router returns one of them; a mapping translates router
                outputs to node names. When omitted, the router may return
                any registered node or END.

        Returns:
            Self for chaining
        """
        self._check_source(source)
        if not callable(router):
            raise GraphConstructionError(f"Router for node '{source}' must be callable")

        routes = None
        if targets is not None:
            if isinstance(targets, Mapping):
                routes = dict(targets)
            else:
                routes = {target: target for target in targets}
            if START in routes.values():
                raise DanglingEdge(source, START)

        self.conditional_edges[source] = ConditionalEdge(
            source=source,
            router=router,
            routes=MappingProxyType(routes) if routes is not None else None,
        )
        return self

    def set_entry_point(self, node_name: str) -> "StateGraph":
        """Set the entry point of the graph."""
        if node_name not in self.entry_points:
            self.entry_points.append(node_name)
        return self

    def validate(self) -> List[GraphConstructionError]:
        """
        Validate the graph structure.

        Returns:
            List of validation errors (empty if valid), in a stable order
        """
        errors: List[GraphConstructionError] = []

        if not self.entry_points:
            errors.append(InvalidEntry("Graph must have an entry point"))
        elif len(self.entry_points) > 1:
            errors.append(InvalidEntry(
                f"Graph must have exactly one entry point, got {self.entry_points}",
                self.entry_points,
            ))
        elif self.entry_points[0] not in self.nodes:
            errors.append(InvalidEntry(
                f"Entry point '{self.entry_points[0]}' not found in nodes",
                self.entry_points,
            ))

        for source, target in self.edges.items():
            if target != END and target not in self.nodes:
                errors.append(DanglingEdge(source, target))

        for source, cond in self.conditional_edges.items():
            for target in (cond.routes or {}).values():
                if target != END and target not in self.nodes:
                    errors.append(DanglingEdge(source, target))

        return errors

    def compile(self) -> "CompiledGraph":
        """
        Validate the definition and freeze it.

        Raises:
            InvalidEntry: Missing, duplicate or unknown entry point
            DanglingEdge: An edge target that is not a registered node or END
        """
        errors = self.validate()
        if errors:
            raise errors[0]

        compiled = CompiledGraph(
            name=self.name,
            description=self.description,
            schema=self.schema,
            nodes=MappingProxyType(dict(self.nodes)),
            edges=MappingProxyType(dict(self.edges)),
            conditional_edges=MappingProxyType(dict(self.conditional_edges)),
            entry_point=self.entry_points[0],
        )
        if compiled.unreachable:
            logger.warning(
                f"Graph '{self.name}' has nodes not reachable from "
                f"'{compiled.entry_point}': {sorted(compiled.unreachable)}"
            )
        return compiled


@dataclass(frozen=True, eq=False)
class CompiledGraph:
    """
    An immutable, validated workflow graph.

    Holds no per-run data; every run gets its own Executor.
    """

    name: str
    schema: StateSchema
    nodes: Mapping[str, Node]
    edges: Mapping[str, str]
    conditional_edges: Mapping[str, ConditionalEdge]
    entry_point: str
    description: str = ""
    graph_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def unreachable(self) -> FrozenSet[str]:
        """Nodes that can never run, given the declared edges."""
        return frozenset(self.nodes) - self._get_reachable_nodes()

    def _get_reachable_nodes(self) -> Set[str]:
        """Get all nodes reachable from the entry point."""
        reachable: Set[str] = set()
        to_visit = [self.entry_point]

        while to_visit:
            node = to_visit.pop()
            if node in reachable or node == END:
                continue

            reachable.add(node)

            if node in self.edges:
                to_visit.append(self.edges[node])

            if node in self.conditional_edges:
                targets = self.conditional_edges[node].targets
                # An undeclared router may pick any node
                to_visit.extend(targets if targets is not None else self.nodes)

        return reachable

    def next_route(self, current_node: str, state: State) -> Route:
        """
        Get the route to follow after ``current_node`` ran.

        A node without any outgoing edge is an implicit end.
        """
        if current_node in self.conditional_edges:
            return self.conditional_edges[current_node].evaluate(state, self.nodes)
        if current_node in self.edges:
            return Route(self.edges[current_node])
        return Route.end()

    async def astream(
        self,
        initial_state: Optional[Mapping[str, Any]] = None,
        stream_mode: Any = "values",
        *,
        step_limit: Optional[int] = None,
        cancel_token: Any = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[Any]:
        """
        Run the graph and yield one chunk per step.

        In ``values`` mode each chunk is the accumulated State; in ``updates``
        mode it is ``{node_name: update}``. Errors are raised after the chunks
        of the steps that completed.
        """
        from stateflow.engine.executor import Executor, StepEvent

        executor = Executor(
            self,
            stream_mode=stream_mode,
            step_limit=step_limit,
            cancel_token=cancel_token,
            config=config,
        )
        async for event in executor.astream(initial_state):
            if isinstance(event, StepEvent):
                yield event.data

    async def ainvoke(
        self,
        initial_state: Optional[Mapping[str, Any]] = None,
        *,
        step_limit: Optional[int] = None,
        cancel_token: Any = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Run the graph to completion and return the final state."""
        from stateflow.engine.executor import EndOfRun, Executor

        executor = Executor(
            self,
            step_limit=step_limit,
            cancel_token=cancel_token,
            config=config,
        )
        final: Dict[str, Any] = {}
        async for event in executor.astream(initial_state):
            if isinstance(event, EndOfRun):
                final = event.final_state.to_dict()
        return final

    def invoke(
        self,
        initial_state: Optional[Mapping[str, Any]] = None,
        *,
        step_limit: Optional[int] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Synchronous ``ainvoke`` for scripts; not usable inside a running loop."""
        return asyncio.run(self.ainvoke(initial_state, step_limit=step_limit, config=config))

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the graph to a dictionary."""
        return {
            "graph_id": self.graph_id,
            "name": self.name,
            "description": self.description,
            "schema": self.schema.to_dict(),
            "nodes": {name: node.to_dict() for name, node in self.nodes.items()},
            "edges": dict(self.edges),
            "conditional_edges": {
                name: edge.to_dict()
                for name, edge in self.conditional_edges.items()
            },
            "entry_point": self.entry_point,
            "unreachable": sorted(self.unreachable),
        }

    def to_mermaid(self) -> str:
        """Generate a Mermaid diagram of the graph."""
        lines = ["graph TD"]

        lines.append(f'    {START}(("START"))')
        for name in self.nodes:
            label = name.replace("_", " ").title()
            lines.append(f'    {name}["{label}"]')

        has_end = END in self.edges.values() or any(
            cond.targets is None or END in cond.targets
            for cond in self.conditional_edges.values()
        )
        has_implicit_end = any(
            name not in self.edges and name not in self.conditional_edges
            for name in self.nodes
        )
        if has_end or has_implicit_end:
            lines.append(f'    {END}(("END"))')

        lines.append(f"    {START} --> {self.entry_point}")

        for source, target in self.edges.items():
            lines.append(f"    {source} --> {target}")

        for source, cond in self.conditional_edges.items():
            if cond.routes is None:
                # Undeclared router: any node or END may follow
                for target in [*self.nodes, END]:
                    lines.append(f"    {source} -.-> {target}")
                continue
            for route_key, target in cond.routes.items():
                lines.append(f"    {source} -->|{route_key}| {target}")

        for name in self.nodes:
            if name not in self.edges and name not in self.conditional_edges:
                lines.append(f"    {name} --> {END}")

        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"CompiledGraph(name='{self.name}', nodes={list(self.nodes)}, "
            f"entry='{self.entry_point}')"
        )
