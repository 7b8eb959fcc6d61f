"""
Engine package - Core graph orchestration components.
"""

from stateflow.engine.errors import (
    StateFlowError,
    GraphConstructionError,
    DuplicateNode,
    InvalidNodeName,
    UnknownNode,
    DuplicateEdge,
    DanglingEdge,
    InvalidEntry,
    GraphRunError,
    SchemaViolation,
    InvalidRouteTarget,
    NodeError,
    ControlCondition,
    Cancelled,
    StepLimitExceeded,
)
from stateflow.engine.reducers import replace, append, merge_dicts, add
from stateflow.engine.state import Channel, State, StateSchema, StateManager
from stateflow.engine.node import Node, NodeResult, ResultKind, node, terminate, START, END
from stateflow.engine.graph import StateGraph, CompiledGraph, Route, register_router
from stateflow.engine.executor import (
    Executor,
    ExecutionResult,
    ExecutionStatus,
    StreamMode,
    StepEvent,
    EndOfRun,
    CancellationToken,
    execute_graph,
)

__all__ = [
    "StateFlowError",
    "GraphConstructionError",
    "DuplicateNode",
    "InvalidNodeName",
    "UnknownNode",
    "DuplicateEdge",
    "DanglingEdge",
    "InvalidEntry",
    "GraphRunError",
    "SchemaViolation",
    "InvalidRouteTarget",
    "NodeError",
    "ControlCondition",
    "Cancelled",
    "StepLimitExceeded",
    "replace",
    "append",
    "merge_dicts",
    "add",
    "Channel",
    "State",
    "StateSchema",
    "StateManager",
    "Node",
    "NodeResult",
    "ResultKind",
    "node",
    "terminate",
    "START",
    "END",
    "StateGraph",
    "CompiledGraph",
    "Route",
    "register_router",
    "Executor",
    "ExecutionResult",
    "ExecutionStatus",
    "StreamMode",
    "StepEvent",
    "EndOfRun",
    "CancellationToken",
    "execute_graph",
]
