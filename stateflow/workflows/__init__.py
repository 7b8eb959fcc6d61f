"""
Workflows package - Sample workflow implementations.
"""

from stateflow.workflows.agent_loop import (
    AGENT_LOOP_GRAPH_ID,
    AgentState,
    create_agent_workflow,
    register_agent_workflow,
)

__all__ = [
    "AGENT_LOOP_GRAPH_ID",
    "AgentState",
    "create_agent_workflow",
    "register_agent_workflow",
]
