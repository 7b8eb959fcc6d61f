"""
Pydantic Schemas for API Request/Response Models.

These schemas define the structure of data flowing through the API,
providing automatic validation and documentation.
"""

from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field
from enum import Enum


# ============================================================
# Enums
# ============================================================

class ExecutionStatus(str, Enum):
    """Status of a workflow execution."""
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StreamModeName(str, Enum):
    """Stream modes accepted by the API."""
    VALUES = "values"
    UPDATES = "updates"
    FULL = "full"
    DELTA = "delta"


# ============================================================
# Graph Definition Schemas
# ============================================================

class FieldDefinition(BaseModel):
    """Declaration of one state field."""
    reducer: str = Field("replace", description="replace, append, merge or add")
    default: Any = Field(None, description="Initial value when none is given")


class NodeDefinition(BaseModel):
    """Definition of a node in the graph."""
    name: str = Field(..., description="Unique name for the node")
    handler: str = Field(..., description="Registered node handler or tool name")
    description: Optional[str] = Field(None, description="Human-readable description")

    class Config:
        json_schema_extra = {
            "example": {
                "name": "calc",
                "handler": "calculate",
                "description": "Evaluate the expression in state"
            }
        }


class ConditionalRoutes(BaseModel):
    """Routes for a conditional edge."""
    router: str = Field(..., description="Name of a registered router")
    routes: Optional[Union[Dict[str, str], List[str]]] = Field(
        None,
        description="Router output -> target node, or a list of allowed targets"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "router": "should_continue",
                "routes": ["tools", "__end__"]
            }
        }


class GraphCreateRequest(BaseModel):
    """Request to create a new graph."""
    name: str = Field(..., description="Name of the workflow")
    description: Optional[str] = Field(None, description="Description of what this workflow does")
    state_fields: Dict[str, FieldDefinition] = Field(
        ...,
        description="State schema: field name -> reducer and default"
    )
    nodes: List[NodeDefinition] = Field(..., description="List of nodes in the graph")
    edges: Dict[str, str] = Field(
        default_factory=dict,
        description="Direct edges: source -> target (or __end__)"
    )
    conditional_edges: Dict[str, ConditionalRoutes] = Field(
        default_factory=dict,
        description="Conditional edges with routing logic"
    )
    entry_point: str = Field(..., description="Entry node")

    class Config:
        json_schema_extra = {
            "example": {
                "name": "calculator",
                "state_fields": {
                    "expression": {},
                    "result": {},
                },
                "nodes": [{"name": "calc", "handler": "calculate"}],
                "edges": {"calc": "__end__"},
                "entry_point": "calc"
            }
        }


class GraphCreateResponse(BaseModel):
    """Response after creating a graph."""
    graph_id: str = Field(..., description="Unique identifier for the created graph")
    name: str = Field(..., description="Name of the workflow")
    message: str = Field(default="Graph created successfully")
    node_count: int = Field(..., description="Number of nodes in the graph")
    unreachable: List[str] = Field(default_factory=list, description="Nodes that can never run")


class GraphInfoResponse(BaseModel):
    """Response with graph information."""
    graph_id: str
    name: str
    description: Optional[str]
    node_count: int
    nodes: List[str]
    state_fields: Dict[str, Dict[str, Any]]
    entry_point: str
    created_at: str
    mermaid_diagram: Optional[str] = Field(None, description="Mermaid diagram of the graph")


class GraphListResponse(BaseModel):
    """Response listing all graphs."""
    graphs: List[GraphInfoResponse]
    total: int


# ============================================================
# Run Schemas
# ============================================================

class GraphRunRequest(BaseModel):
    """Request to run a graph."""
    graph_id: str = Field(..., description="ID of the graph to run")
    initial_state: Dict[str, Any] = Field(
        default_factory=dict,
        description="Initial state data for the run"
    )
    stream_mode: Optional[StreamModeName] = Field(None, description="values/full or updates/delta")
    step_limit: Optional[int] = Field(None, description="Maximum number of steps", ge=1)
    config: Dict[str, Any] = Field(default_factory=dict, description="Per-run node configuration")
    async_execution: bool = Field(
        False,
        description="If true, run in background and return immediately"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "graph_id": "agent-loop-demo",
                "initial_state": {
                    "messages": [{"role": "user", "content": "calculate 2 * (3 + 4)"}]
                },
                "stream_mode": "updates",
                "async_execution": False
            }
        }


class ExecutionLogEntry(BaseModel):
    """A single entry in the execution log."""
    step: int
    node: str
    started_at: str
    completed_at: Optional[str]
    duration_ms: Optional[float]
    result: str
    error: Optional[str]
    route_taken: Optional[str]


class GraphRunResponse(BaseModel):
    """Response after running a graph."""
    run_id: str = Field(..., description="Unique identifier for this run")
    graph_id: str
    status: ExecutionStatus
    stream_mode: str
    final_state: Dict[str, Any]
    events: List[Dict[str, Any]]
    execution_log: List[ExecutionLogEntry]
    started_at: Optional[str]
    completed_at: Optional[str]
    total_duration_ms: Optional[float]
    steps: int
    error: Optional[str] = None
    error_type: Optional[str] = None


class RunStateResponse(BaseModel):
    """Response with current run state."""
    run_id: str
    graph_id: str
    status: ExecutionStatus
    stream_mode: str
    current_node: Optional[str]
    current_state: Dict[str, Any]
    steps: int
    events: List[Dict[str, Any]]
    execution_log: List[ExecutionLogEntry]
    started_at: str
    completed_at: Optional[str]
    error: Optional[str]
    error_type: Optional[str]


class RunListResponse(BaseModel):
    """Response listing runs."""
    runs: List[RunStateResponse]
    total: int


class RunCancelResponse(BaseModel):
    """Response after requesting cancellation of a run."""
    run_id: str
    message: str


# ============================================================
# Tool Schemas
# ============================================================

class ToolInfo(BaseModel):
    """Information about a registered tool."""
    name: str
    description: str
    parameters: Dict[str, str]


class ToolListResponse(BaseModel):
    """Response listing all registered tools."""
    tools: List[ToolInfo]
    total: int


# ============================================================
# Error Schemas
# ============================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: Optional[str] = None
    status_code: int
