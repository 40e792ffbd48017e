"""MCP Tools モジュール。"""

from mcp.server.fastmcp import FastMCP

from src.tools import agent, loop, one_off, ralph_loop


def register_all_tools(mcp: FastMCP) -> None:
    """全ツールをMCPサーバーに登録する。

    Args:
        mcp: FastMCPインスタンス
    """
    # エージェント管理
    agent.register_tools(mcp)

    # 自律ループ
    loop.register_tools(mcp)

    # One-off エージェント
    one_off.register_tools(mcp)

    # Ralph Loop
    ralph_loop.register_tools(mcp)
