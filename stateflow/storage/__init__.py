"""
Storage package - In-memory storage for graphs and runs.
"""

from stateflow.storage.memory import (
    GraphStorage,
    RunStorage,
    graph_storage,
    run_storage,
)

__all__ = [
    "GraphStorage",
    "RunStorage",
    "graph_storage",
    "run_storage",
]
