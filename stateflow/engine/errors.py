"""
Error taxonomy for the StateFlow engine.

Errors fall into three families:

- Construction errors are raised while building or compiling a graph.
  They subclass ValueError so callers validating user input can treat
  them like any other bad value.
- Run errors are fatal to the run in progress (status FAILED).
- Control conditions end a run on purpose (status CANCELLED).
"""

from typing import Any, Iterable, Optional


class StateFlowError(Exception):
    """Base class for every error raised by the engine."""


# ============================================================
# Construction errors
# ============================================================

class GraphConstructionError(StateFlowError, ValueError):
    """Raised when a graph definition is inconsistent."""


class DuplicateNode(GraphConstructionError):
    def __init__(self, node_name: str):
        self.node_name = node_name
        super().__init__(f"Node '{node_name}' already exists in the graph")


class InvalidNodeName(GraphConstructionError):
    def __init__(self, node_name: str, reason: str):
        self.node_name = node_name
        super().__init__(f"Invalid node name '{node_name}': {reason}")


class UnknownNode(GraphConstructionError):
    def __init__(self, node_name: str):
        self.node_name = node_name
        super().__init__(f"Source node '{node_name}' not found in graph")


class DuplicateEdge(GraphConstructionError):
    def __init__(self, source: str):
        self.source = source
        super().__init__(
            f"Node '{source}' already has an outgoing edge. "
            f"A node may have at most one fixed or conditional edge."
        )


class DanglingEdge(GraphConstructionError):
    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(
            f"Edge '{source}' -> '{target}' points to a node that is not registered"
        )


class InvalidEntry(GraphConstructionError):
    def __init__(self, message: str, entry_points: Iterable[str] = ()):
        self.entry_points = list(entry_points)
        super().__init__(message)


# ============================================================
# Run errors
# ============================================================

class GraphRunError(StateFlowError):
    """Raised when a run fails; the run ends with status FAILED."""


class SchemaViolation(GraphRunError):
    def __init__(
        self,
        message: str,
        fields: Iterable[str] = (),
        node_name: Optional[str] = None,
    ):
        self.fields = sorted(fields)
        self.node_name = node_name
        super().__init__(message)


class InvalidRouteTarget(GraphRunError):
    def __init__(self, source: str, target: Any, allowed: Iterable[Any]):
        self.source = source
        self.target = target
        self.allowed = sorted(str(a) for a in allowed)
        super().__init__(
            f"Router of node '{source}' returned unknown route '{target}'. "
            f"Available routes: {self.allowed}"
        )


class NodeError(GraphRunError):
    """Wraps an exception raised by a node's work function or router."""

    def __init__(self, node_name: str, original: BaseException):
        self.node_name = node_name
        self.original = original
        super().__init__(f"Error in node '{node_name}': {original}")


# ============================================================
# Control conditions
# ============================================================

class ControlCondition(StateFlowError):
    """Raised when a run is stopped on purpose; the run ends CANCELLED."""


class Cancelled(ControlCondition):
    def __init__(self, node_name: Optional[str] = None, reason: Optional[str] = None):
        self.node_name = node_name
        self.reason = reason
        message = "Run cancelled"
        if node_name:
            message += f" at node '{node_name}'"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class StepLimitExceeded(ControlCondition):
    def __init__(self, limit: int, node_name: Optional[str] = None):
        self.limit = limit
        self.node_name = node_name
        super().__init__(f"Step limit ({limit}) exceeded before node '{node_name}'")
