"""One-off エージェント管理ツールのテスト。"""

import pytest
from mcp.server.fastmcp import FastMCP

from src.tools.one_off import register_tools
from tests.conftest import get_tool_fn, init_event, wait_until


@pytest.fixture
def mcp():
    server = FastMCP("test")
    register_tools(server)
    return server


class TestOneOffTools:
    """One-off ツールのテスト。"""

    async def test_start_and_status(self, mcp, mock_mcp_context, spawner):
        """起動して状態を取得できることをテスト。"""
        result = await get_tool_fn(mcp, "start_one_off_agent")(
            "proj-a", "summarize the repo", label="summary", ctx=mock_mcp_context
        )

        assert result["success"] is True
        assert result["status"] == "running"
        assert spawner.last.user_texts == ["summarize the repo"]
        one_off_id = result["one_off_id"]

        status = await get_tool_fn(mcp, "get_one_off_status")(one_off_id, ctx=mock_mcp_context)
        assert status["success"] is True
        assert status["meta"]["label"] == "summary"
        assert status["meta"]["project_id"] == "proj-a"

    async def test_start_does_not_count_against_limit(self, mcp, mock_mcp_context, app_ctx):
        """同時実行数の上限に含まれないことをテスト。"""
        start = get_tool_fn(mcp, "start_one_off_agent")
        for _ in range(3):
            result = await start("proj-a", "task", ctx=mock_mcp_context)
            assert result["status"] == "running"

        assert app_ctx.agent_manager.running_count == 0
        listed = await get_tool_fn(mcp, "list_one_off_agents")(ctx=mock_mcp_context)
        assert listed["count"] == 3

    async def test_permission_mode(self, mcp, mock_mcp_context, spawner):
        await get_tool_fn(mcp, "start_one_off_agent")(
            "proj-a", "task", permission_mode="plan", ctx=mock_mcp_context
        )

        argv, _ = spawner.calls[-1]
        assert "--dangerously-skip-permissions" not in argv
        assert "plan" in argv

    async def test_unknown_project(self, mcp, mock_mcp_context):
        result = await get_tool_fn(mcp, "start_one_off_agent")("missing", "task", ctx=mock_mcp_context)
        assert result["success"] is False

    async def test_send_input_and_stop(self, mcp, mock_mcp_context, spawner):
        """入力の送信と停止をテスト。"""
        result = await get_tool_fn(mcp, "start_one_off_agent")("proj-a", "first", ctx=mock_mcp_context)
        one_off_id = result["one_off_id"]
        spawner.last.emit(init_event("sess-1"))

        sent = await get_tool_fn(mcp, "send_one_off_input")(one_off_id, "second", ctx=mock_mcp_context)
        assert sent["success"] is True

        stopped = await get_tool_fn(mcp, "stop_one_off_agent")(one_off_id, ctx=mock_mcp_context)
        assert stopped["success"] is True
        await wait_until(lambda: spawner.last.terminated)

        status = await get_tool_fn(mcp, "get_one_off_status")(one_off_id, ctx=mock_mcp_context)
        assert status["success"] is False

    async def test_unknown_one_off(self, mcp, mock_mcp_context):
        for name in ("stop_one_off_agent", "get_one_off_status"):
            result = await get_tool_fn(mcp, name)("oneoff-missing", ctx=mock_mcp_context)
            assert result["success"] is False
        result = await get_tool_fn(mcp, "send_one_off_input")("oneoff-missing", "hi", ctx=mock_mcp_context)
        assert result["success"] is False
