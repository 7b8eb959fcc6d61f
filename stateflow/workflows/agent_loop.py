"""
Agent Loop Workflow.

The sample workflow for the engine: an ``agent`` node decides whether a
tool is needed, a ``tools`` node executes the requested calls, and the two
alternate until the agent answers without requesting a tool.

```
agent ─┬─→ END    (no tool calls)
       └─→ tools → agent
```

The agent here is a small scripted planner standing in for a chat model;
the engine only sees the partial updates it returns.
"""

from typing import Annotated, Any, Dict, List, TypedDict
import itertools
import logging
import re

from stateflow.engine.graph import CompiledGraph, StateGraph, register_router
from stateflow.engine.node import END, node
from stateflow.engine.reducers import add, append
from stateflow.tools.registry import tool_registry

# Import builtin tools to register them
import stateflow.tools.builtin  # noqa: F401


logger = logging.getLogger(__name__)

AGENT_LOOP_GRAPH_ID = "agent-loop-demo"


class AgentState(TypedDict):
    messages: Annotated[List[Dict[str, Any]], append]
    tool_calls: List[Dict[str, Any]]
    turns: Annotated[int, add]


_CALCULATE = re.compile(r"^\s*(?:calculate|compute|what is)\s+(.+?)\s*\??\s*$", re.IGNORECASE)
_WORD_COUNT = re.compile(r"^\s*count (?:the )?words in\s+(.+?)\s*$", re.IGNORECASE)

_call_ids = itertools.count(1)


def plan_tool_calls(request: str) -> List[Dict[str, Any]]:
    """Turn a user request into tool-call records (possibly none)."""
    calls = []
    for part in re.split(r"\s+and then\s+", request):
        match = _CALCULATE.match(part)
        if match:
            calls.append({
                "id": f"call_{next(_call_ids)}",
                "name": "calculate",
                "arguments": {"expression": match.group(1)},
            })
            continue
        match = _WORD_COUNT.match(part)
        if match:
            calls.append({
                "id": f"call_{next(_call_ids)}",
                "name": "word_count",
                "arguments": {"text": match.group(1).strip("\"'")},
            })
    return calls


def _summarize(results: List[Dict[str, Any]]) -> str:
    parts = []
    for message in results:
        content = message["content"]
        if message.get("status") == "error":
            parts.append(f"{message['name']} failed ({content})")
        elif isinstance(content, dict):
            parts.append(", ".join(f"{k} = {v}" for k, v in content.items()))
        else:
            parts.append(str(content))
    return "; ".join(parts)


@node(name="agent", description="Decide whether to call a tool or answer")
def agent_node(state: AgentState) -> Dict[str, Any]:
    """
    Plan tool calls for the latest user message, or answer from tool output.

    Uses state:
    - messages: the conversation so far

    Returns update with:
    - messages: [assistant message]
    - tool_calls: calls to execute next (empty when answering)
    - turns: 1
    """
    messages = state["messages"]
    if not messages:
        return {
            "messages": [{"role": "assistant", "content": "How can I help?"}],
            "tool_calls": [],
            "turns": 1,
        }

    last = messages[-1]
    if last["role"] == "tool":
        results = list(itertools.takewhile(
            lambda m: m["role"] == "tool", reversed(messages)
        ))[::-1]
        answer = f"Here is what I found: {_summarize(results)}."
        logger.info(f"Agent answering from {len(results)} tool result(s)")
        return {
            "messages": [{"role": "assistant", "content": answer}],
            "tool_calls": [],
            "turns": 1,
        }

    calls = plan_tool_calls(str(last.get("content", "")))
    if calls:
        logger.info(f"Agent requested {len(calls)} tool call(s)")
        return {
            "messages": [{"role": "assistant", "content": "", "tool_calls": calls}],
            "tool_calls": calls,
            "turns": 1,
        }

    return {
        "messages": [{
            "role": "assistant",
            "content": "I can calculate expressions or count words.",
        }],
        "tool_calls": [],
        "turns": 1,
    }


@node(name="tools", description="Execute pending tool calls")
def tools_node(state: AgentState) -> Dict[str, Any]:
    """Execute every pending tool call and append the tool messages."""
    results = [tool_registry.execute_call(call) for call in state["tool_calls"]]
    return {"messages": results, "tool_calls": []}


@register_router("should_continue")
def should_continue(state: AgentState) -> str:
    """Route to tools while the agent has pending tool calls."""
    return "tools" if state["tool_calls"] else END


def create_agent_workflow() -> CompiledGraph:
    """
    Create the agent/tools loop graph.

    Returns:
        Compiled graph
    """
    graph = StateGraph(
        AgentState,
        name="Agent Loop",
        description="A scripted agent that calls tools until it can answer.",
    )

    graph.add_node("agent", handler=agent_node, description="Plan or answer")
    graph.add_node("tools", handler=tools_node, description="Execute tool calls")

    graph.set_entry_point("agent")
    graph.add_conditional_edge("agent", should_continue, ["tools", END])
    graph.add_edge("tools", "agent")

    return graph.compile()


async def register_agent_workflow() -> CompiledGraph:
    """
    Register the agent loop in storage under a fixed ID.

    Makes the workflow available immediately via the API.
    """
    from stateflow.storage.memory import graph_storage

    workflow = create_agent_workflow()
    await graph_storage.save(
        graph_id=AGENT_LOOP_GRAPH_ID,
        name="Agent Loop Demo",
        graph=workflow,
    )
    logger.info(f"Registered agent loop workflow with ID: {AGENT_LOOP_GRAPH_ID}")
    return workflow
