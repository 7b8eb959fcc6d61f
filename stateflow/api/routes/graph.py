"""
Graph API Routes.

Endpoints for creating, inspecting and running graphs.
"""

from typing import Any, Callable, Dict, Optional
from fastapi import APIRouter, HTTPException, BackgroundTasks, status
from uuid import uuid4
import asyncio
import logging

from stateflow.api.schemas import (
    GraphCreateRequest,
    GraphCreateResponse,
    GraphRunRequest,
    GraphRunResponse,
    GraphInfoResponse,
    GraphListResponse,
    RunStateResponse,
    RunListResponse,
    RunCancelResponse,
    ExecutionLogEntry,
    ExecutionStatus,
    ErrorResponse,
)
from stateflow.api.connections import manager
from stateflow.config import settings
from stateflow.engine.errors import GraphConstructionError
from stateflow.engine.executor import Executor, ExecutionResult, StepEvent
from stateflow.engine.graph import CompiledGraph, StateGraph, get_router, list_routers
from stateflow.engine.node import get_registered_node, list_registered_nodes
from stateflow.engine.state import StateSchema
from stateflow.storage.memory import StoredGraph, StoredRun, graph_storage, run_storage
from stateflow.tools.registry import tool_registry


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/graph", tags=["Graph"])


# ============================================================
# Graph Construction
# ============================================================

def _create_node_handler_from_tool(tool_name: str) -> Callable:
    """
    Create a node handler that calls a tool with arguments taken from state.

    The tool's returned mapping is the node's partial update.
    """
    tool = tool_registry.get(tool_name)

    def handler(state) -> Dict[str, Any]:
        result = tool.invoke(dict(state))
        if result is None:
            return {}
        if not isinstance(result, dict):
            raise ValueError(f"Tool '{tool_name}' returned {type(result).__name__}, expected a dict")
        return result

    handler.__name__ = f"{tool_name}_handler"
    return handler


def _resolve_handler(handler_name: str) -> Callable:
    handler = get_registered_node(handler_name)
    if handler is not None:
        return handler
    if tool_registry.get(handler_name) is not None:
        return _create_node_handler_from_tool(handler_name)
    raise HTTPException(
        status_code=404,
        detail=f"Handler '{handler_name}' not found. "
               f"Available handlers: {sorted(list_registered_nodes())}, "
               f"tools: {[t['name'] for t in tool_registry.list_tools()]}"
    )


def build_graph_from_request(request: GraphCreateRequest) -> CompiledGraph:
    """Build and compile a graph from an API definition."""
    try:
        schema = StateSchema.from_definition(
            {name: field.model_dump() for name, field in request.state_fields.items()}
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    graph = StateGraph(schema, name=request.name, description=request.description or "")

    try:
        for node_def in request.nodes:
            graph.add_node(
                name=node_def.name,
                handler=_resolve_handler(node_def.handler),
                description=node_def.description or "",
            )

        for source, target in request.edges.items():
            graph.add_edge(source, target)

        for source, cond in request.conditional_edges.items():
            router_func = get_router(cond.router)
            if router_func is None:
                raise HTTPException(
                    status_code=404,
                    detail=f"Router '{cond.router}' not found. Available: {list_routers()}"
                )
            graph.add_conditional_edge(source, router_func, cond.routes)

        graph.set_entry_point(request.entry_point)
        return graph.compile()
    except GraphConstructionError as e:
        raise HTTPException(
            status_code=400,
            detail=f"{type(e).__name__}: {e}"
        )


def _graph_info(stored: StoredGraph, with_diagram: bool = True) -> GraphInfoResponse:
    graph = stored.graph
    return GraphInfoResponse(
        graph_id=stored.graph_id,
        name=stored.name,
        description=graph.description,
        node_count=len(graph.nodes),
        nodes=list(graph.nodes),
        state_fields=graph.schema.to_dict(),
        entry_point=graph.entry_point,
        created_at=stored.created_at.isoformat(),
        mermaid_diagram=graph.to_mermaid() if with_diagram else None,
    )


@router.post(
    "/create",
    response_model=GraphCreateResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid graph definition"},
        404: {"model": ErrorResponse, "description": "Handler or router not found"},
    }
)
async def create_graph(request: GraphCreateRequest) -> GraphCreateResponse:
    """
    Create a new graph.

    Declare the state fields with their reducers, nodes with their handlers,
    edges for flow control and conditional edges for branching. The graph is
    compiled once; every run reuses the compiled graph.
    """
    graph_id = str(uuid4())
    graph = build_graph_from_request(request)

    await graph_storage.save(graph_id=graph_id, name=request.name, graph=graph)
    logger.info(f"Created graph: {graph_id} ({request.name})")

    return GraphCreateResponse(
        graph_id=graph_id,
        name=request.name,
        node_count=len(graph.nodes),
        unreachable=sorted(graph.unreachable),
    )


@router.get(
    "/",
    response_model=GraphListResponse,
)
async def list_graphs() -> GraphListResponse:
    """List all available graphs."""
    graphs = await graph_storage.list_all()
    infos = [_graph_info(stored, with_diagram=False) for stored in graphs]
    return GraphListResponse(graphs=infos, total=len(infos))


# ============================================================
# Run State Endpoints
# ============================================================

def _run_state_response(stored: StoredRun) -> RunStateResponse:
    return RunStateResponse(
        run_id=stored.run_id,
        graph_id=stored.graph_id,
        status=ExecutionStatus(stored.status),
        stream_mode=stored.stream_mode,
        current_node=stored.current_node,
        current_state=stored.current_state,
        steps=stored.steps,
        events=stored.events,
        execution_log=[ExecutionLogEntry(**entry) for entry in stored.execution_log],
        started_at=stored.started_at.isoformat(),
        completed_at=stored.completed_at.isoformat() if stored.completed_at else None,
        error=stored.error,
        error_type=stored.error_type,
    )


@router.get(
    "/runs",
    response_model=RunListResponse,
)
async def list_runs(graph_id: Optional[str] = None) -> RunListResponse:
    """List all runs, optionally filtered by graph_id."""
    if graph_id:
        runs = await run_storage.list_by_graph(graph_id)
    else:
        runs = await run_storage.list_all()

    run_states = [_run_state_response(stored) for stored in runs]
    return RunListResponse(runs=run_states, total=len(run_states))


@router.get(
    "/state/{run_id}",
    response_model=RunStateResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_run_state(run_id: str) -> RunStateResponse:
    """
    Get the current state of a run.

    Use this to poll the status of background runs.
    """
    stored = await run_storage.get(run_id)
    if not stored:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    return _run_state_response(stored)


@router.post(
    "/runs/{run_id}/cancel",
    response_model=RunCancelResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def cancel_run(run_id: str) -> RunCancelResponse:
    """Request cancellation of a running background run."""
    stored = await run_storage.get(run_id)
    if not stored:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")

    executor = await run_storage.get_executor(run_id)
    if executor is None:
        raise HTTPException(
            status_code=409,
            detail=f"Run '{run_id}' is not active (status: {stored.status})"
        )

    executor.cancel("cancelled via API")
    logger.info(f"Cancellation requested for run {run_id}")
    return RunCancelResponse(run_id=run_id, message="Cancellation requested")


# ============================================================
# Graph Lookup Endpoints
# ============================================================

@router.get(
    "/{graph_id}",
    response_model=GraphInfoResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_graph(graph_id: str) -> GraphInfoResponse:
    """Get information about a specific graph."""
    stored = await graph_storage.get(graph_id)
    if not stored:
        raise HTTPException(status_code=404, detail=f"Graph '{graph_id}' not found")
    return _graph_info(stored)


@router.delete(
    "/{graph_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_graph(graph_id: str):
    """Delete a graph."""
    deleted = await graph_storage.delete(graph_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Graph '{graph_id}' not found")
    logger.info(f"Deleted graph: {graph_id}")


# ============================================================
# Execution Endpoints
# ============================================================

def create_executor(graph: CompiledGraph, run_id: str, request: GraphRunRequest) -> Executor:
    """Build the executor for one run, applying service defaults."""
    stream_mode = request.stream_mode.value if request.stream_mode else settings.DEFAULT_STREAM_MODE
    return Executor(
        graph,
        run_id=run_id,
        stream_mode=stream_mode,
        step_limit=request.step_limit or settings.DEFAULT_STEP_LIMIT,
        config=request.config,
    )


async def record_step(executor: Executor, event: StepEvent) -> Dict[str, Any]:
    """Store a completed step and broadcast it to the run's subscribers."""
    message = event.to_dict()
    state = executor.current_state
    await run_storage.record_step(
        executor.run_id,
        message,
        state.to_dict() if state is not None else {},
        executor.execution_log[-1].to_dict(),
    )
    await manager.broadcast(executor.run_id, message)
    return message


async def record_run_end(
    executor: Executor,
    error: Optional[BaseException] = None,
    status: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Store the outcome of a run, release its executor and tell subscribers.

    ``status`` overrides the executor's own status for runs that stopped
    before the executor could finish them (crash, disconnect, task cancel).
    Returns the closing message sent to subscribers.
    """
    status = status or executor.status.value
    error = error or executor.error
    state = executor.current_state
    final_state = state.to_dict() if state is not None else {}

    await run_storage.finish(
        executor.run_id,
        status=status,
        final_state=final_state,
        execution_log=[s.to_dict() for s in executor.execution_log],
        error=str(error) if error else None,
        error_type=type(error).__name__ if error else None,
    )

    message_types = {
        ExecutionStatus.DONE.value: "end",
        ExecutionStatus.CANCELLED.value: "cancelled",
    }
    message = {
        "type": message_types.get(status, "error"),
        "run_id": executor.run_id,
        "status": status,
        "final_state": final_state,
        "steps": executor.steps,
        "error": str(error) if error else None,
        "error_type": type(error).__name__ if error else None,
    }
    await manager.broadcast(executor.run_id, message)
    return message


async def execute_and_record(executor: Executor, initial_state: Dict[str, Any]) -> ExecutionResult:
    """
    Run an executor to the end, recording every step in run storage.

    The run is always closed in storage, even when it dies on something
    other than an engine error.
    """
    async def on_step(event: StepEvent):
        await record_step(executor, event)

    try:
        result = await executor.run(initial_state, on_step=on_step)
    except asyncio.CancelledError:
        await record_run_end(executor, status=ExecutionStatus.CANCELLED.value)
        raise
    except Exception as e:
        logger.exception(f"Run {executor.run_id} crashed: {e}")
        await record_run_end(executor, e, status=ExecutionStatus.FAILED.value)
        raise

    await record_run_end(executor)
    return result


async def _execute_in_background(executor: Executor, initial_state: Dict[str, Any]):
    """Execute a run in the background."""
    try:
        await execute_and_record(executor, initial_state)
    except Exception as e:
        # Already closed as failed by execute_and_record
        logger.error(f"Background run {executor.run_id} failed: {e}")


def _result_to_response(result: ExecutionResult) -> GraphRunResponse:
    """Convert ExecutionResult to API response."""
    data = result.to_dict()
    return GraphRunResponse(
        run_id=result.run_id,
        graph_id=result.graph_id,
        status=ExecutionStatus(result.status.value),
        stream_mode=data["stream_mode"],
        final_state=data["final_state"],
        events=data["events"],
        execution_log=[ExecutionLogEntry(**entry) for entry in data["execution_log"]],
        started_at=data["started_at"],
        completed_at=data["completed_at"],
        total_duration_ms=result.total_duration_ms,
        steps=result.steps,
        error=result.error,
        error_type=result.error_type,
    )


@router.post(
    "/run",
    response_model=GraphRunResponse,
    responses={404: {"model": ErrorResponse}},
)
async def run_graph(
    request: GraphRunRequest,
    background_tasks: BackgroundTasks,
) -> GraphRunResponse:
    """
    Execute a graph with the given initial state.

    The response carries one event per completed step in the requested
    stream mode. Run errors are reported in ``status``/``error`` rather than
    as an HTTP error. If `async_execution` is True, the run happens in the
    background; poll GET /graph/state/{run_id} or cancel it with
    POST /graph/runs/{run_id}/cancel.
    """
    stored = await graph_storage.get(request.graph_id)
    if not stored:
        raise HTTPException(
            status_code=404,
            detail=f"Graph '{request.graph_id}' not found"
        )

    run_id = str(uuid4())
    executor = create_executor(stored.graph, run_id, request)
    await run_storage.create(
        run_id,
        request.graph_id,
        request.initial_state,
        stream_mode=executor.stream_mode.value,
        executor=executor,
    )

    if request.async_execution:
        background_tasks.add_task(_execute_in_background, executor, request.initial_state)
        return GraphRunResponse(
            run_id=run_id,
            graph_id=request.graph_id,
            status=ExecutionStatus.PENDING,
            stream_mode=executor.stream_mode.value,
            final_state={},
            events=[],
            execution_log=[],
            started_at=None,
            completed_at=None,
            total_duration_ms=None,
            steps=0,
        )

    result = await execute_and_record(executor, request.initial_state)
    return _result_to_response(result)
