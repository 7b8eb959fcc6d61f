"""
Tests for the built-in tools and the agent loop workflow.
"""

import pytest

from stateflow.engine.node import END
from stateflow.engine.executor import ExecutionStatus, execute_graph
from stateflow.tools.builtin import calculate, word_count
from stateflow.tools.registry import ToolRegistry, tool_registry
from stateflow.workflows.agent_loop import (
    create_agent_workflow,
    plan_tool_calls,
    should_continue,
)


class TestTools:
    """Tests for the tool registry and built-in tools."""

    def test_calculate(self):
        assert calculate("2 * (3 + 4)") == {"result": 14}
        assert calculate("7 / 2") == {"result": 3.5}
        assert calculate("-2 ** 2") == {"result": -4}

    def test_calculate_rejects_code(self):
        with pytest.raises(ValueError):
            calculate("__import__('os')")
        with pytest.raises(ValueError):
            calculate("2 +")
        with pytest.raises(ValueError, match="too large"):
            calculate("2 ** 1000")

    def test_word_count(self):
        assert word_count("the quick  brown fox") == {"word_count": 4}
        assert word_count("") == {"word_count": 0}

    def test_registry(self):
        registry = ToolRegistry()

        @registry.register("shout")
        def shout(text: str) -> dict:
            """Upper-case the text."""
            return {"text": text.upper()}

        assert "shout" in registry
        assert registry.get("shout").description == "Upper-case the text."
        assert registry.call("shout", text="hi", ignored=1) == {"text": "HI"}

        with pytest.raises(KeyError):
            registry.call("missing")

    def test_execute_call(self):
        message = tool_registry.execute_call({
            "id": "call_a",
            "name": "calculate",
            "arguments": {"expression": "1 + 1"},
        })
        assert message == {
            "role": "tool",
            "tool_call_id": "call_a",
            "name": "calculate",
            "content": {"result": 2},
            "status": "ok",
        }

    def test_execute_call_reports_tool_errors(self):
        message = tool_registry.execute_call({
            "id": "call_b",
            "name": "calculate",
            "arguments": {"expression": "1 / 0"},
        })
        assert message["status"] == "error"
        assert message["content"].startswith("error:")

    def test_execute_call_unknown_tool(self):
        with pytest.raises(KeyError):
            tool_registry.execute_call({"id": "call_c", "name": "missing"})


class TestAgentLoop:
    """Tests for the agent/tools demo workflow."""

    def test_plan_tool_calls(self):
        calls = plan_tool_calls("calculate 3 * 3 and then count the words in 'a b'")

        assert [c["name"] for c in calls] == ["calculate", "word_count"]
        assert calls[0]["arguments"] == {"expression": "3 * 3"}
        assert calls[1]["arguments"] == {"text": "a b"}
        assert calls[0]["id"] != calls[1]["id"]

    def test_plan_without_tools(self):
        assert plan_tool_calls("tell me a joke") == []

    def test_router(self):
        assert should_continue({"tool_calls": [{"name": "calculate"}]}) == "tools"
        assert should_continue({"tool_calls": []}) == END

    def test_workflow_structure(self):
        workflow = create_agent_workflow()

        assert workflow.entry_point == "agent"
        assert workflow.edges == {"tools": "agent"}
        assert workflow.conditional_edges["agent"].targets == frozenset({"tools", END})
        assert workflow.unreachable == frozenset()

    @pytest.mark.asyncio
    async def test_answer_without_tools(self):
        workflow = create_agent_workflow()
        chunks = [
            chunk async for chunk in workflow.astream(
                {"messages": [{"role": "user", "content": "hello"}]},
                stream_mode="updates",
            )
        ]

        assert len(chunks) == 1
        assert chunks[0]["agent"]["tool_calls"] == []

    @pytest.mark.asyncio
    async def test_tool_round_trip(self):
        workflow = create_agent_workflow()
        final = await workflow.ainvoke(
            {"messages": [{"role": "user", "content": "calculate 2 * (3 + 4)"}]}
        )

        roles = [m["role"] for m in final["messages"]]
        assert roles == ["user", "assistant", "tool", "assistant"]
        assert final["messages"][2]["content"] == {"result": 14}
        assert final["messages"][-1]["content"] == "Here is what I found: result = 14."
        assert final["tool_calls"] == []
        assert final["turns"] == 2

    @pytest.mark.asyncio
    async def test_chained_tool_calls(self):
        result = await execute_graph(
            create_agent_workflow(),
            {"messages": [{
                "role": "user",
                "content": "calculate 10 - 4 and then count the words in hello big world",
            }]},
        )

        assert result.status is ExecutionStatus.DONE
        assert [s.node for s in result.execution_log] == ["agent", "tools", "agent"]
        answer = result.final_state["messages"][-1]["content"]
        assert "result = 6" in answer
        assert "word_count = 3" in answer

    @pytest.mark.asyncio
    async def test_tool_failure_is_reported(self):
        final = await create_agent_workflow().ainvoke(
            {"messages": [{"role": "user", "content": "calculate 1 / 0"}]}
        )

        assert final["messages"][2]["status"] == "error"
        assert "calculate failed" in final["messages"][-1]["content"]
