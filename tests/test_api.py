"""
Tests for the FastAPI endpoints.
"""

import pytest
from fastapi.testclient import TestClient
from httpx import AsyncClient, ASGITransport
from starlette.websockets import WebSocketDisconnect

from stateflow.api.connections import manager
from stateflow.api.routes.graph import execute_and_record
from stateflow.api.routes.websocket import stream_run
from stateflow.engine.executor import Executor
from stateflow.main import app
from stateflow.storage.memory import run_storage
from stateflow.workflows.agent_loop import (
    AGENT_LOOP_GRAPH_ID,
    create_agent_workflow,
    register_agent_workflow,
)


CALCULATION_REQUEST = {
    "messages": [{"role": "user", "content": "calculate 2 * (3 + 4)"}]
}

CALCULATOR_GRAPH = {
    "name": "Calculator",
    "state_fields": {
        "expression": {},
        "result": {},
    },
    "nodes": [{"name": "calc", "handler": "calculate"}],
    "edges": {"calc": "__end__"},
    "entry_point": "calc",
}


# ============================================================
# Sync Test Client (for simple tests)
# ============================================================

@pytest.fixture(scope="module")
def client():
    # Entering the client runs the lifespan, which registers the demo workflow
    with TestClient(app) as test_client:
        yield test_client


def create_calculator(client) -> str:
    response = client.post("/graph/create", json=CALCULATOR_GRAPH)
    assert response.status_code == 201
    return response.json()["graph_id"]


class TestRootEndpoints:
    """Tests for root endpoints."""

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200

        data = response.json()
        assert "name" in data
        assert "version" in data
        assert "endpoints" in data
        assert data["demo_workflow"] == AGENT_LOOP_GRAPH_ID

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["graphs_count"] >= 1


class TestToolsEndpoints:
    """Tests for tools endpoints."""

    def test_list_tools(self, client):
        response = client.get("/tools/")
        assert response.status_code == 200

        data = response.json()
        assert data["total"] > 0

        tool_names = [t["name"] for t in data["tools"]]
        assert "calculate" in tool_names
        assert "word_count" in tool_names

    def test_get_tool(self, client):
        response = client.get("/tools/calculate")
        assert response.status_code == 200

        data = response.json()
        assert data["name"] == "calculate"
        assert data["parameters"] == {"expression": "str"}

    def test_get_nonexistent_tool(self, client):
        response = client.get("/tools/nonexistent_tool")
        assert response.status_code == 404


class TestGraphEndpoints:
    """Tests for graph endpoints."""

    def test_list_graphs(self, client):
        response = client.get("/graph/")
        assert response.status_code == 200

        graph_ids = [g["graph_id"] for g in response.json()["graphs"]]
        assert AGENT_LOOP_GRAPH_ID in graph_ids

    def test_get_demo_graph(self, client):
        response = client.get(f"/graph/{AGENT_LOOP_GRAPH_ID}")
        assert response.status_code == 200

        data = response.json()
        assert data["entry_point"] == "agent"
        assert set(data["nodes"]) == {"agent", "tools"}
        assert data["state_fields"]["messages"]["reducer"] == "append"
        assert "graph TD" in data["mermaid_diagram"]

    def test_get_nonexistent_graph(self, client):
        response = client.get("/graph/nonexistent-id")
        assert response.status_code == 404

    def test_create_graph(self, client):
        response = client.post("/graph/create", json=CALCULATOR_GRAPH)
        assert response.status_code == 201

        data = response.json()
        assert data["name"] == "Calculator"
        assert data["node_count"] == 1
        assert data["unreachable"] == []

    def test_create_graph_with_router(self, client):
        response = client.post("/graph/create", json={
            "name": "Custom Agent",
            "state_fields": {
                "messages": {"reducer": "append", "default": []},
                "tool_calls": {"default": []},
                "turns": {"reducer": "add", "default": 0},
            },
            "nodes": [
                {"name": "agent", "handler": "agent"},
                {"name": "tools", "handler": "tools"},
            ],
            "edges": {"tools": "agent"},
            "conditional_edges": {
                "agent": {"router": "should_continue", "routes": ["tools", "__end__"]},
            },
            "entry_point": "agent",
        })
        assert response.status_code == 201

    def test_create_graph_unknown_handler(self, client):
        payload = dict(CALCULATOR_GRAPH, nodes=[{"name": "calc", "handler": "nonexistent"}])
        response = client.post("/graph/create", json=payload)
        assert response.status_code == 404

    def test_create_graph_unknown_router(self, client):
        payload = dict(
            CALCULATOR_GRAPH,
            edges={},
            conditional_edges={"calc": {"router": "nonexistent"}},
        )
        response = client.post("/graph/create", json=payload)
        assert response.status_code == 404

    def test_create_graph_dangling_edge(self, client):
        payload = dict(CALCULATOR_GRAPH, edges={"calc": "missing"})
        response = client.post("/graph/create", json=payload)
        assert response.status_code == 400
        assert response.json()["detail"].startswith("DanglingEdge")

    def test_create_graph_unknown_entry(self, client):
        payload = dict(CALCULATOR_GRAPH, entry_point="missing")
        response = client.post("/graph/create", json=payload)
        assert response.status_code == 400
        assert response.json()["detail"].startswith("InvalidEntry")

    def test_create_graph_duplicate_node(self, client):
        payload = dict(CALCULATOR_GRAPH, nodes=CALCULATOR_GRAPH["nodes"] * 2)
        response = client.post("/graph/create", json=payload)
        assert response.status_code == 400
        assert response.json()["detail"].startswith("DuplicateNode")

    def test_create_graph_unknown_reducer(self, client):
        payload = dict(CALCULATOR_GRAPH, state_fields={"expression": {"reducer": "shuffle"}})
        response = client.post("/graph/create", json=payload)
        assert response.status_code == 400

    def test_delete_graph(self, client):
        graph_id = create_calculator(client)

        assert client.delete(f"/graph/{graph_id}").status_code == 204
        assert client.get(f"/graph/{graph_id}").status_code == 404
        assert client.delete(f"/graph/{graph_id}").status_code == 404


class TestRunEndpoints:
    """Tests for running graphs."""

    def test_run_demo_workflow(self, client):
        response = client.post("/graph/run", json={
            "graph_id": AGENT_LOOP_GRAPH_ID,
            "initial_state": {
                "messages": [{"role": "user", "content": "calculate 2 * (3 + 4)"}]
            },
            "stream_mode": "updates",
        })
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "done"
        assert data["stream_mode"] == "updates"
        assert data["steps"] == 3
        assert [list(event) for event in data["events"]] == [["agent"], ["tools"], ["agent"]]

        messages = data["final_state"]["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant", "tool", "assistant"]
        assert messages[2]["content"] == {"result": 14}
        assert "14" in messages[-1]["content"]
        assert data["final_state"]["turns"] == 2

        assert [entry["node"] for entry in data["execution_log"]] == ["agent", "tools", "agent"]

    def test_run_with_values_mode(self, client):
        graph_id = create_calculator(client)

        response = client.post("/graph/run", json={
            "graph_id": graph_id,
            "initial_state": {"expression": "2 * (3 + 4)"},
            "stream_mode": "full",
        })
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "done"
        assert data["stream_mode"] == "values"
        assert data["events"] == [{"expression": "2 * (3 + 4)", "result": 14}]
        assert data["final_state"]["result"] == 14

    def test_run_node_failure(self, client):
        graph_id = create_calculator(client)

        response = client.post("/graph/run", json={
            "graph_id": graph_id,
            "initial_state": {"expression": "2 +"},
        })
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "failed"
        assert data["error_type"] == "NodeError"
        assert data["events"] == []
        assert data["execution_log"][0]["result"] == "error"

    def test_run_unknown_state_field(self, client):
        graph_id = create_calculator(client)

        response = client.post("/graph/run", json={
            "graph_id": graph_id,
            "initial_state": {"bogus": 1},
        })
        data = response.json()
        assert data["status"] == "failed"
        assert data["error_type"] == "SchemaViolation"
        assert data["steps"] == 0

    def test_run_step_limit(self, client):
        response = client.post("/graph/run", json={
            "graph_id": AGENT_LOOP_GRAPH_ID,
            "initial_state": {
                "messages": [{"role": "user", "content": "calculate 1 + 1"}]
            },
            "step_limit": 1,
        })
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "cancelled"
        assert data["error_type"] == "StepLimitExceeded"
        assert data["steps"] == 1
        assert len(data["events"]) == 1

    def test_run_invalid_step_limit(self, client):
        response = client.post("/graph/run", json={
            "graph_id": AGENT_LOOP_GRAPH_ID,
            "step_limit": 0,
        })
        assert response.status_code == 422

    def test_run_nonexistent_graph(self, client):
        response = client.post("/graph/run", json={
            "graph_id": "nonexistent-id",
            "initial_state": {},
        })
        assert response.status_code == 404

    def test_run_state_and_list(self, client):
        response = client.post("/graph/run", json={
            "graph_id": AGENT_LOOP_GRAPH_ID,
            "initial_state": {"messages": [{"role": "user", "content": "hello"}]},
        })
        run_id = response.json()["run_id"]

        state = client.get(f"/graph/state/{run_id}")
        assert state.status_code == 200

        data = state.json()
        assert data["status"] == "done"
        assert data["steps"] == 1
        assert data["events"][0]["type"] == "step"
        assert data["events"][0]["node"] == "agent"
        assert data["current_state"]["turns"] == 1

        runs = client.get("/graph/runs", params={"graph_id": AGENT_LOOP_GRAPH_ID})
        assert runs.status_code == 200
        assert run_id in [r["run_id"] for r in runs.json()["runs"]]

    def test_run_state_not_found(self, client):
        assert client.get("/graph/state/nonexistent-run").status_code == 404

    def test_async_execution(self, client):
        response = client.post("/graph/run", json={
            "graph_id": AGENT_LOOP_GRAPH_ID,
            "initial_state": {
                "messages": [{"role": "user", "content": "count the words in one two three"}]
            },
            "async_execution": True,
        })
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "pending"

        state = client.get(f"/graph/state/{data['run_id']}").json()
        assert state["status"] in ("pending", "running", "done")

    def test_cancel_finished_run(self, client):
        response = client.post("/graph/run", json={
            "graph_id": AGENT_LOOP_GRAPH_ID,
            "initial_state": {},
        })
        run_id = response.json()["run_id"]

        response = client.post(f"/graph/runs/{run_id}/cancel")
        assert response.status_code == 409

    def test_cancel_unknown_run(self, client):
        response = client.post("/graph/runs/nonexistent-run/cancel")
        assert response.status_code == 404


class TestWebSocket:
    """Tests for live streaming over WebSocket."""

    def test_websocket_run(self, client):
        with client.websocket_connect(f"/ws/run/{AGENT_LOOP_GRAPH_ID}") as websocket:
            websocket.send_json({
                "action": "start",
                "initial_state": {
                    "messages": [{"role": "user", "content": "what is 6 * 7"}]
                },
                "stream_mode": "delta",
            })

            started = websocket.receive_json()
            assert started["type"] == "started"
            assert started["stream_mode"] == "updates"

            messages = []
            while True:
                message = websocket.receive_json()
                messages.append(message)
                if message["type"] != "step":
                    break

        assert [m["node"] for m in messages[:-1]] == ["agent", "tools", "agent"]
        assert messages[1]["data"]["tools"]["messages"][0]["content"] == {"result": 42}

        end = messages[-1]
        assert end["type"] == "end"
        assert end["status"] == "done"
        assert end["steps"] == 3

    def test_websocket_step_limit(self, client):
        with client.websocket_connect(f"/ws/run/{AGENT_LOOP_GRAPH_ID}") as websocket:
            websocket.send_json({
                "action": "start",
                "initial_state": {
                    "messages": [{"role": "user", "content": "calculate 1 + 1"}]
                },
                "step_limit": 2,
            })
            websocket.receive_json()

            assert websocket.receive_json()["type"] == "step"
            assert websocket.receive_json()["type"] == "step"

            stopped = websocket.receive_json()
            assert stopped["type"] == "cancelled"
            assert stopped["error_type"] == "StepLimitExceeded"

    def test_websocket_bad_action(self, client):
        with client.websocket_connect(f"/ws/run/{AGENT_LOOP_GRAPH_ID}") as websocket:
            websocket.send_json({"action": "stop"})
            assert websocket.receive_json()["type"] == "error"

    def test_websocket_unknown_graph(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/run/nonexistent-id"):
                pass


# ============================================================
# Async Tests
# ============================================================

class TestAsyncEndpoints:
    """Async tests using httpx AsyncClient."""

    @pytest.mark.asyncio
    async def test_async_root(self):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.get("/")
            assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_async_run(self):
        await register_agent_workflow()

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post("/graph/run", json={
                "graph_id": AGENT_LOOP_GRAPH_ID,
                "initial_state": {
                    "messages": [{"role": "user", "content": "count the words in a b c d"}]
                },
            })
            assert response.status_code == 200

            data = response.json()
            assert data["status"] == "done"
            assert data["final_state"]["messages"][2]["content"] == {"word_count": 4}


class TestRunLifecycle:
    """Runs are always closed in storage, and can be watched by several clients."""

    async def _start(self, stream_mode: str = "updates") -> Executor:
        await register_agent_workflow()
        executor = Executor(create_agent_workflow(), stream_mode=stream_mode)
        await run_storage.create(
            executor.run_id,
            AGENT_LOOP_GRAPH_ID,
            CALCULATION_REQUEST,
            stream_mode=stream_mode,
            executor=executor,
        )
        return executor

    @staticmethod
    def _drain(queue) -> list:
        return [queue.get_nowait() for _ in range(queue.qsize())]

    @pytest.mark.asyncio
    async def test_client_disconnect_cancels_run(self):
        executor = await self._start()
        sent = []

        async def send(message):
            if message["type"] == "step":
                raise WebSocketDisconnect(code=1001)
            sent.append(message)

        await stream_run(executor, CALCULATION_REQUEST, send)

        stored = await run_storage.get(executor.run_id)
        assert stored.status == "cancelled"
        assert stored.completed_at is not None
        assert stored.steps == 1
        assert await run_storage.get_executor(executor.run_id) is None
        assert executor.status.value == "cancelled"
        assert executor.steps == 1
        assert sent == []

    @pytest.mark.asyncio
    async def test_stream_run_sends_closing_message(self):
        executor = await self._start()
        sent = []

        async def send(message):
            sent.append(message)

        await stream_run(executor, CALCULATION_REQUEST, send)

        assert [m["type"] for m in sent] == ["step", "step", "step", "end"]
        assert (await run_storage.get(executor.run_id)).status == "done"

    @pytest.mark.asyncio
    async def test_crashed_run_is_closed(self, monkeypatch):
        executor = await self._start()

        async def crash(initial_state, on_step=None):
            raise RuntimeError("worker died")

        monkeypatch.setattr(executor, "run", crash)

        with pytest.raises(RuntimeError):
            await execute_and_record(executor, CALCULATION_REQUEST)

        stored = await run_storage.get(executor.run_id)
        assert stored.status == "failed"
        assert stored.error_type == "RuntimeError"
        assert await run_storage.get_executor(executor.run_id) is None

    @pytest.mark.asyncio
    async def test_every_subscriber_receives_each_step(self):
        executor = await self._start()
        first = manager.subscribe(executor.run_id, "first")
        second = manager.subscribe(executor.run_id, "second")
        try:
            await execute_and_record(executor, CALCULATION_REQUEST)
        finally:
            manager.disconnect("first", executor.run_id)
            manager.disconnect("second", executor.run_id)

        first_messages = self._drain(first)
        assert first_messages == self._drain(second)
        assert [m["type"] for m in first_messages] == ["step", "step", "step", "end"]
        assert [m["node"] for m in first_messages[:3]] == ["agent", "tools", "agent"]
        assert first_messages[-1]["status"] == "done"
        assert manager.subscriber_count(executor.run_id) == 0

    @pytest.mark.asyncio
    async def test_subscribers_see_failures(self):
        executor = await self._start()
        executor.step_limit = 1
        watcher = manager.subscribe(executor.run_id, "watcher")
        try:
            await execute_and_record(executor, CALCULATION_REQUEST)
        finally:
            manager.disconnect("watcher", executor.run_id)

        closing = self._drain(watcher)[-1]
        assert closing["type"] == "cancelled"
        assert closing["error_type"] == "StepLimitExceeded"

    def test_subscribe_to_finished_run(self, client):
        response = client.post("/graph/run", json={
            "graph_id": AGENT_LOOP_GRAPH_ID,
            "initial_state": CALCULATION_REQUEST,
            "async_execution": True,
        })
        run_id = response.json()["run_id"]

        with client.websocket_connect(f"/ws/subscribe/{run_id}") as websocket:
            current = websocket.receive_json()
            assert current["type"] == "current_state"
            assert current["run_id"] == run_id

            if current["status"] != "done":
                message = websocket.receive_json()
                while message["type"] == "step":
                    message = websocket.receive_json()
            else:
                message = websocket.receive_json()

        assert message["type"] == "end"
        assert message["status"] == "done"
        assert message["final_state"]["messages"][2]["content"] == {"result": 14}

    def test_subscribe_unknown_run(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/subscribe/nonexistent-run"):
                pass
