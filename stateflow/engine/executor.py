"""
Async Workflow Executor.

The executor drives one run of a compiled graph: it invokes nodes one at a
time, merges their updates through the schema reducers, follows edges, and
produces a lazy stream of events in one of two modes.
"""

from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Union
from dataclasses import dataclass, field
from datetime import datetime
from copy import deepcopy
from enum import Enum
import asyncio
import inspect
import logging
import time
import uuid

from stateflow.engine.errors import (
    Cancelled,
    ControlCondition,
    StateFlowError,
    StepLimitExceeded,
)
from stateflow.engine.graph import CompiledGraph, Route
from stateflow.engine.node import Node, NodeResult
from stateflow.engine.state import State, StateManager


logger = logging.getLogger(__name__)


class ExecutionStatus(str, Enum):
    """Status of a workflow execution."""
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StreamMode(str, Enum):
    """What each step event carries."""
    VALUES = "values"    # Accumulated state after the step
    UPDATES = "updates"  # {node_name: raw partial update}

    @classmethod
    def _missing_(cls, value):
        if not isinstance(value, str):
            return None
        value = value.lower()
        for member in cls:
            if member.value == value:
                return member
        return {"full": cls.VALUES, "delta": cls.UPDATES}.get(value)


class CancellationToken:
    """
    A cancellation signal scoped to one run.

    Cancelling while a node is in flight stops the run without merging that
    node's update.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class StepEvent:
    """
    The event emitted after one completed step.

    ``data`` is the accumulated State in ``values`` mode and
    ``{node: update}`` in ``updates`` mode.
    """
    step: int
    node: str
    mode: StreamMode
    data: Any

    def to_dict(self) -> Dict[str, Any]:
        data = self.data.to_dict() if isinstance(self.data, State) else deepcopy(self.data)
        return {
            "type": "step",
            "step": self.step,
            "node": self.node,
            "mode": self.mode.value,
            "data": data,
        }


@dataclass(frozen=True)
class EndOfRun:
    """Marker emitted once a run reaches END."""
    run_id: str
    status: ExecutionStatus
    final_state: State
    steps: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "end",
            "run_id": self.run_id,
            "status": self.status.value,
            "final_state": self.final_state.to_dict(),
            "steps": self.steps,
        }


RunEvent = Union[StepEvent, EndOfRun]


@dataclass
class ExecutionStep:
    """A single step in the execution log."""
    step: int
    node: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    result: str = "running"
    error: Optional[str] = None
    route_taken: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "node": self.node,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "result": self.result,
            "error": self.error,
            "route_taken": self.route_taken,
        }


@dataclass
class ExecutionResult:
    """Result of a workflow execution."""
    run_id: str
    graph_id: str
    status: ExecutionStatus
    final_state: Dict[str, Any]
    stream_mode: StreamMode = StreamMode.VALUES
    events: List[Any] = field(default_factory=list)
    execution_log: List[ExecutionStep] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_duration_ms: Optional[float] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    steps: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "graph_id": self.graph_id,
            "status": self.status.value,
            "stream_mode": self.stream_mode.value,
            "final_state": self.final_state,
            "events": [
                e.to_dict() if isinstance(e, State) else deepcopy(e)
                for e in self.events
            ],
            "execution_log": [step.to_dict() for step in self.execution_log],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "total_duration_ms": self.total_duration_ms,
            "error": self.error,
            "error_type": self.error_type,
            "steps": self.steps,
        }


class Executor:
    """
    Async workflow executor for a single run.

    Executes a compiled graph with a given initial state, handling:
    - Sequential node execution, one step at a time
    - Reducer-based merging of partial updates
    - Conditional routing and cycles, bounded by an optional step limit
    - Cancellation while a node is in flight
    - Detailed execution logging

    An Executor is single-use; the compiled graph it runs can be shared.

    Usage:
        executor = Executor(graph, stream_mode="updates")
        async for event in executor.astream({"messages": []}):
            ...
    """

    def __init__(
        self,
        graph: CompiledGraph,
        run_id: Optional[str] = None,
        stream_mode: Union[StreamMode, str] = StreamMode.VALUES,
        step_limit: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize the executor.

        Args:
            graph: The compiled graph to execute
            run_id: Optional run ID (generated if not provided)
            stream_mode: "values"/"full" or "updates"/"delta"
            step_limit: Maximum number of steps; None means unbounded
            cancel_token: Cancellation signal for this run
            config: Opaque per-run configuration passed to nodes that accept it
        """
        if step_limit is not None and step_limit < 1:
            raise ValueError(f"step_limit must be a positive integer, got {step_limit}")

        self.graph = graph
        self.run_id = run_id or str(uuid.uuid4())
        self.stream_mode = StreamMode(stream_mode)
        self.step_limit = step_limit
        self.cancel_token = cancel_token or CancellationToken()
        self.config = dict(config or {})

        # Execution state
        self._state_manager = StateManager(graph.schema, self.run_id)
        self._execution_log: List[ExecutionStep] = []
        self._step_counter = 0
        self._status = ExecutionStatus.PENDING
        self._current_node: Optional[str] = None
        self._error: Optional[StateFlowError] = None

    @property
    def status(self) -> ExecutionStatus:
        """Get the current execution status."""
        return self._status

    @property
    def current_state(self) -> Optional[State]:
        """Get the latest state snapshot."""
        return self._state_manager.current_state

    @property
    def current_node(self) -> Optional[str]:
        """Get the node being executed (or about to be)."""
        return self._current_node

    @property
    def steps(self) -> int:
        return self._step_counter

    @property
    def error(self) -> Optional[StateFlowError]:
        return self._error

    @property
    def execution_log(self) -> List[ExecutionStep]:
        return list(self._execution_log)

    @property
    def history(self) -> List[Dict[str, Any]]:
        return self._state_manager.get_history()

    def cancel(self, reason: Optional[str] = None) -> None:
        """Cancel the execution."""
        self.cancel_token.cancel(reason)

    async def astream(self, initial_state: Optional[Mapping[str, Any]] = None) -> AsyncIterator[RunEvent]:
        """
        Execute the graph and yield events as steps complete.

        Yields one StepEvent per completed step, then an EndOfRun marker when
        the run reaches END. A failing or cancelled run raises its error
        instead of yielding the marker.

        Raises:
            SchemaViolation, InvalidRouteTarget, NodeError: The run failed
            Cancelled, StepLimitExceeded: The run was stopped
        """
        if self._status is not ExecutionStatus.PENDING:
            raise RuntimeError(f"Executor for run '{self.run_id}' has already been started")

        self._status = ExecutionStatus.RUNNING
        logger.info(f"Starting run {self.run_id} of graph '{self.graph.name}'")

        try:
            state = self._state_manager.initialize(initial_state)
            current_node = self.graph.entry_point

            while True:
                self._current_node = current_node

                if self.cancel_token.cancelled:
                    raise Cancelled(current_node, self.cancel_token.reason)

                if self.step_limit is not None and self._step_counter >= self.step_limit:
                    raise StepLimitExceeded(self.step_limit, current_node)

                node = self.graph.nodes[current_node]
                step = self._start_step(node)
                try:
                    result = await self._invoke_node(node, state)
                    state = self._state_manager.apply(node.name, result.update)
                except StateFlowError as e:
                    self._finish_step(step, e)
                    raise
                self._finish_step(step)

                yield self._make_event(step.step, node.name, result, state)

                if result.terminal:
                    route = Route.end()
                else:
                    route = self.graph.next_route(current_node, state.copy())
                step.route_taken = route.target if route.key is None else str(route.key)
                logger.debug(f"Route from '{current_node}': {route.key!r} -> {route.target}")

                if route.terminal:
                    break
                current_node = route.target

        except ControlCondition as e:
            self._status = ExecutionStatus.CANCELLED
            self._error = e
            logger.warning(f"Run {self.run_id} stopped: {e}")
            raise
        except StateFlowError as e:
            self._status = ExecutionStatus.FAILED
            self._error = e
            logger.error(f"Run {self.run_id} failed: {e}")
            raise
        except (asyncio.CancelledError, GeneratorExit):
            self._status = ExecutionStatus.CANCELLED
            raise

        self._status = ExecutionStatus.DONE
        self._current_node = None
        final_state = self._state_manager.finalize()
        logger.info(f"Run {self.run_id} completed after {self._step_counter} step(s)")

        yield EndOfRun(
            run_id=self.run_id,
            status=self._status,
            final_state=final_state,
            steps=self._step_counter,
        )

    async def run(
        self,
        initial_state: Optional[Mapping[str, Any]] = None,
        on_step: Optional[Callable[[StepEvent], Any]] = None,
    ) -> ExecutionResult:
        """
        Execute the workflow to the end and collect the result.

        Unlike ``astream``, run errors are reported in the result instead of
        being raised.

        Args:
            initial_state: Initial state data
            on_step: Optional callback (sync or async) for each step event

        Returns:
            ExecutionResult with final state, events and logs
        """
        start_time = time.perf_counter()
        started_at = datetime.now()
        events: List[Any] = []

        try:
            async for event in self.astream(initial_state):
                if not isinstance(event, StepEvent):
                    continue
                events.append(event.data)
                if on_step:
                    try:
                        outcome = on_step(event)
                        if inspect.isawaitable(outcome):
                            await outcome
                    except Exception as e:
                        logger.exception(f"Step callback failed: {e}")
        except StateFlowError:
            # Already recorded on the executor
            pass

        final_state = self.current_state
        return ExecutionResult(
            run_id=self.run_id,
            graph_id=self.graph.graph_id,
            status=self._status,
            final_state=final_state.to_dict() if final_state is not None else {},
            stream_mode=self.stream_mode,
            events=events,
            execution_log=list(self._execution_log),
            started_at=started_at,
            completed_at=datetime.now(),
            total_duration_ms=(time.perf_counter() - start_time) * 1000,
            error=str(self._error) if self._error else None,
            error_type=type(self._error).__name__ if self._error else None,
            steps=self._step_counter,
        )

    async def _invoke_node(self, node: Node, state: State) -> NodeResult:
        """Run a node, racing it against the cancellation token."""
        work = asyncio.ensure_future(node.execute(state.copy(), self.config))
        waiter = asyncio.ensure_future(self.cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work in done:
            return work.result()

        work.cancel()
        logger.info(f"Cancelled in-flight node '{node.name}' (step {self._step_counter})")
        raise Cancelled(node.name, self.cancel_token.reason)

    def _start_step(self, node: Node) -> ExecutionStep:
        self._step_counter += 1
        step = ExecutionStep(
            step=self._step_counter,
            node=node.name,
            started_at=datetime.now(),
        )
        self._execution_log.append(step)
        logger.info(f"Executing node: {node.name} (step {self._step_counter})")
        return step

    def _finish_step(self, step: ExecutionStep, error: Optional[StateFlowError] = None) -> None:
        step.completed_at = datetime.now()
        step.duration_ms = (step.completed_at - step.started_at).total_seconds() * 1000
        if error is None:
            step.result = "success"
        elif isinstance(error, ControlCondition):
            step.result = "cancelled"
            step.error = str(error)
        else:
            step.result = "error"
            step.error = str(error)

    def _make_event(self, step: int, node_name: str, result: NodeResult, state: State) -> StepEvent:
        if self.stream_mode is StreamMode.UPDATES:
            data: Any = {node_name: deepcopy(dict(result.update))}
        else:
            data = state
        return StepEvent(step=step, node=node_name, mode=self.stream_mode, data=data)

    def get_execution_summary(self) -> Dict[str, Any]:
        """Get a summary of the current execution."""
        state = self.current_state
        return {
            "run_id": self.run_id,
            "graph_id": self.graph.graph_id,
            "status": self._status.value,
            "current_node": self._current_node,
            "current_state": state.to_dict() if state is not None else None,
            "step_count": self._step_counter,
            "step_limit": self.step_limit,
        }


async def execute_graph(
    graph: CompiledGraph,
    initial_state: Optional[Mapping[str, Any]] = None,
    run_id: Optional[str] = None,
    stream_mode: Union[StreamMode, str] = StreamMode.VALUES,
    step_limit: Optional[int] = None,
    cancel_token: Optional[CancellationToken] = None,
    config: Optional[Dict[str, Any]] = None,
    on_step: Optional[Callable[[StepEvent], Any]] = None,
) -> ExecutionResult:
    """
    Convenience function to execute a graph.

    Returns:
        ExecutionResult
    """
    executor = Executor(
        graph,
        run_id=run_id,
        stream_mode=stream_mode,
        step_limit=step_limit,
        cancel_token=cancel_token,
        config=config,
    )
    return await executor.run(initial_state, on_step)
