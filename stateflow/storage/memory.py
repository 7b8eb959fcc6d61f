"""
In-Memory Storage for the StateFlow service.

Holds compiled graphs and run records for the lifetime of the process.
Nothing survives a restart.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime
import asyncio
from dataclasses import dataclass, field

from stateflow.engine.graph import CompiledGraph


@dataclass
class StoredGraph:
    """A stored compiled graph."""
    graph_id: str
    name: str
    graph: CompiledGraph
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def definition(self) -> Dict[str, Any]:
        return self.graph.to_dict()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "graph_id": self.graph_id,
            "name": self.name,
            "definition": self.definition,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class StoredRun:
    """A stored execution run."""
    run_id: str
    graph_id: str
    status: str
    stream_mode: str
    initial_state: Dict[str, Any]
    current_state: Dict[str, Any] = field(default_factory=dict)
    final_state: Optional[Dict[str, Any]] = None
    events: List[Any] = field(default_factory=list)
    execution_log: List[Dict[str, Any]] = field(default_factory=list)
    current_node: Optional[str] = None
    steps: int = 0
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "graph_id": self.graph_id,
            "status": self.status,
            "stream_mode": self.stream_mode,
            "initial_state": self.initial_state,
            "current_state": self.current_state,
            "final_state": self.final_state,
            "events": self.events,
            "execution_log": self.execution_log,
            "current_node": self.current_node,
            "steps": self.steps,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "error_type": self.error_type,
        }


class GraphStorage:
    """
    In-memory storage for compiled graphs.

    Compiled graphs are immutable, so a stored graph can be handed to any
    number of concurrent runs.
    """

    def __init__(self):
        self._graphs: Dict[str, StoredGraph] = {}
        self._lock = asyncio.Lock()

    async def save(self, graph_id: str, name: str, graph: CompiledGraph) -> StoredGraph:
        """Save (or replace) a compiled graph."""
        async with self._lock:
            stored = StoredGraph(graph_id=graph_id, name=name, graph=graph)
            self._graphs[graph_id] = stored
            return stored

    async def get(self, graph_id: str) -> Optional[StoredGraph]:
        """Get a graph by ID."""
        async with self._lock:
            return self._graphs.get(graph_id)

    async def delete(self, graph_id: str) -> bool:
        """Delete a graph."""
        async with self._lock:
            if graph_id in self._graphs:
                del self._graphs[graph_id]
                return True
            return False

    async def list_all(self) -> List[StoredGraph]:
        """List all stored graphs."""
        async with self._lock:
            return list(self._graphs.values())

    def __len__(self) -> int:
        return len(self._graphs)


class RunStorage:
    """
    In-memory storage for execution runs.

    Also keeps the executor of each active run so it can be cancelled.
    """

    def __init__(self):
        self._runs: Dict[str, StoredRun] = {}
        self._executors: Dict[str, Any] = {}
        self._lock = asyncio.Lock()

    async def create(
        self,
        run_id: str,
        graph_id: str,
        initial_state: Dict[str, Any],
        stream_mode: str,
        executor: Any = None,
    ) -> StoredRun:
        """Create a new pending run."""
        async with self._lock:
            stored = StoredRun(
                run_id=run_id,
                graph_id=graph_id,
                status="pending",
                stream_mode=stream_mode,
                initial_state=initial_state,
                current_state=dict(initial_state),
            )
            self._runs[run_id] = stored
            if executor is not None:
                self._executors[run_id] = executor
            return stored

    async def get(self, run_id: str) -> Optional[StoredRun]:
        """Get a run by ID."""
        async with self._lock:
            return self._runs.get(run_id)

    async def get_executor(self, run_id: str) -> Any:
        """Get the executor of an active run."""
        async with self._lock:
            return self._executors.get(run_id)

    async def record_step(
        self,
        run_id: str,
        event: Dict[str, Any],
        current_state: Dict[str, Any],
        log_entry: Optional[Dict[str, Any]] = None,
    ) -> Optional[StoredRun]:
        """Record one step event of a running run."""
        async with self._lock:
            if run_id not in self._runs:
                return None
            stored = self._runs[run_id]
            stored.status = "running"
            stored.events.append(event)
            stored.current_state = current_state
            stored.current_node = event.get("node")
            stored.steps = event.get("step", stored.steps)
            if log_entry is not None:
                stored.execution_log.append(log_entry)
            return stored

    async def finish(
        self,
        run_id: str,
        status: str,
        final_state: Dict[str, Any],
        execution_log: List[Dict[str, Any]],
        error: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> Optional[StoredRun]:
        """Mark a run as done, failed or cancelled."""
        async with self._lock:
            self._executors.pop(run_id, None)
            if run_id not in self._runs:
                return None
            stored = self._runs[run_id]
            stored.status = status
            stored.final_state = final_state
            stored.current_state = final_state
            stored.execution_log = execution_log
            stored.error = error
            stored.error_type = error_type
            stored.completed_at = datetime.now()
            return stored

    async def list_all(self) -> List[StoredRun]:
        """List all runs."""
        async with self._lock:
            return list(self._runs.values())

    async def list_by_graph(self, graph_id: str) -> List[StoredRun]:
        """List all runs for a specific graph."""
        async with self._lock:
            return [r for r in self._runs.values() if r.graph_id == graph_id]

    def __len__(self) -> int:
        return len(self._runs)


# Global storage instances
graph_storage = GraphStorage()
run_storage = RunStorage()
