"""
WebSocket Routes for Real-time Execution Streaming.

Events are forwarded as the engine produces them, one message per
completed step. Any number of clients can also watch an existing run.
"""

from typing import Any, Awaitable, Callable, Dict, Optional
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from uuid import uuid4
import logging

from stateflow.api.connections import END_TYPES, manager
from stateflow.api.routes.graph import record_run_end, record_step
from stateflow.api.schemas import ExecutionStatus
from stateflow.config import settings
from stateflow.engine.errors import StateFlowError
from stateflow.engine.executor import Executor, StepEvent
from stateflow.storage.memory import graph_storage, run_storage


logger = logging.getLogger(__name__)

router = APIRouter(tags=["WebSocket"])

Send = Callable[[Dict[str, Any]], Awaitable[None]]

_END_TYPE_BY_STATUS = {
    ExecutionStatus.DONE.value: "end",
    ExecutionStatus.FAILED.value: "error",
    ExecutionStatus.CANCELLED.value: "cancelled",
}
_FINISHED = frozenset(_END_TYPE_BY_STATUS)


async def stream_run(executor: Executor, initial_state: Dict[str, Any], send: Send) -> None:
    """
    Drive a run, sending each step event through ``send`` as it completes.

    The run is closed in storage however it ends. If the client goes away
    the run is stopped and recorded as cancelled.
    """
    stream = executor.astream(initial_state)
    error: Optional[BaseException] = None
    status: Optional[str] = None
    client_gone = False
    try:
        async for event in stream:
            if isinstance(event, StepEvent):
                await send(await record_step(executor, event))
    except StateFlowError as e:
        error = e
    except WebSocketDisconnect:
        client_gone = True
        executor.cancel("client disconnected")
        logger.info(f"Client disconnected from run {executor.run_id}")
    finally:
        await stream.aclose()
        if executor.status.value not in _FINISHED:
            status = ExecutionStatus.CANCELLED.value
        message = await record_run_end(executor, error, status=status)

    if not client_gone:
        await send(message)


@router.websocket("/ws/run/{graph_id}")
async def websocket_run(websocket: WebSocket, graph_id: str):
    """
    WebSocket endpoint for real-time graph execution.

    Message format (client -> server):
    ```json
    {"action": "start", "initial_state": {...}, "stream_mode": "updates", "step_limit": 10}
    ```

    Message format (server -> client), one per completed step:
    ```json
    {"type": "step", "step": 1, "node": "agent", "mode": "updates", "data": {...}}
    ```
    followed by a single `end`, `cancelled` or `error` message.
    """
    stored = await graph_storage.get(graph_id)
    if not stored:
        await websocket.close(code=4004, reason=f"Graph '{graph_id}' not found")
        return

    await websocket.accept()
    run_id = str(uuid4())
    logger.info(f"WebSocket connected for run: {run_id}")

    try:
        data = await websocket.receive_json()
        if data.get("action") != "start":
            await websocket.send_json({
                "type": "error",
                "error": "Expected 'start' action"
            })
            return

        initial_state = data.get("initial_state", {})
        try:
            executor = Executor(
                stored.graph,
                run_id=run_id,
                stream_mode=data.get("stream_mode") or settings.DEFAULT_STREAM_MODE,
                step_limit=data.get("step_limit") or settings.DEFAULT_STEP_LIMIT,
                config=data.get("config"),
            )
        except ValueError as e:
            await websocket.send_json({"type": "error", "error": str(e)})
            return

        await run_storage.create(
            run_id, graph_id, initial_state,
            stream_mode=executor.stream_mode.value,
            executor=executor,
        )
        try:
            await websocket.send_json({
                "type": "started",
                "run_id": run_id,
                "graph_id": graph_id,
                "stream_mode": executor.stream_mode.value,
            })
        except WebSocketDisconnect:
            await record_run_end(executor, status=ExecutionStatus.CANCELLED.value)
            raise

        await stream_run(executor, initial_state, websocket.send_json)

    except WebSocketDisconnect:
        logger.info(f"Client disconnected from run {run_id}")
    finally:
        logger.info(f"WebSocket closed for run: {run_id}")


@router.websocket("/ws/subscribe/{run_id}")
async def websocket_subscribe(websocket: WebSocket, run_id: str):
    """
    Subscribe to updates for an existing run.

    Use this to watch a background run started via POST /graph/run. The
    first message is the run's current state; step messages follow as the
    run advances, then the closing `end`, `cancelled` or `error` message.
    """
    stored = await run_storage.get(run_id)
    if not stored:
        await websocket.close(code=4004, reason=f"Run '{run_id}' not found")
        return

    await websocket.accept()
    connection_id = str(uuid4())
    queue = manager.subscribe(run_id, connection_id)

    try:
        stored = await run_storage.get(run_id)
        await websocket.send_json({
            "type": "current_state",
            "run_id": run_id,
            "status": stored.status,
            "current_node": stored.current_node,
            "steps": stored.steps,
            "state": stored.current_state,
        })

        if stored.status in _FINISHED:
            await websocket.send_json({
                "type": _END_TYPE_BY_STATUS[stored.status],
                "run_id": run_id,
                "status": stored.status,
                "final_state": stored.final_state,
                "steps": stored.steps,
                "error": stored.error,
                "error_type": stored.error_type,
            })
            return

        while True:
            message = await queue.get()
            await websocket.send_json(message)
            if message["type"] in END_TYPES:
                break

    except WebSocketDisconnect:
        logger.info(f"Subscriber disconnected from run {run_id}")
    finally:
        manager.disconnect(connection_id, run_id)
