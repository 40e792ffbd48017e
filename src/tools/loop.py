"""自律ループ管理ツール。"""

from typing import Any

from mcp.server.fastmcp import Context, FastMCP

from src.context import AppContext
from src.managers.autonomous_loop import AutonomousLoopDriver
from src.tools.helpers import error_response, get_app_ctx, to_dict


def _require_driver(app_ctx: AppContext) -> tuple[AutonomousLoopDriver | None, dict[str, Any] | None]:
    """自律ループドライバーを取得する。未設定の場合はエラーを返す。"""
    if app_ctx.loop_driver is None:
        return None, error_response(
            "自律ループは無効です（ロードマップと指示生成のコラボレーターが設定されていません）"
        )
    return app_ctx.loop_driver, None


def register_tools(mcp: FastMCP) -> None:
    """自律ループ管理ツールを登録する。"""

    @mcp.tool()
    async def start_autonomous_loop(project_id: str, ctx: Context = None) -> dict[str, Any]:
        """自律ループを開始する。

        ロードマップの次の未完了項目から作業を始め、ターンが終わるたびに次の項目を送信する。

        Args:
            project_id: プロジェクトID

        Returns:
            開始結果（success, message, loop_state または error）
        """
        driver, error = _require_driver(get_app_ctx(ctx))
        if error:
            return error

        success, message = await driver.start_autonomous_loop(project_id)
        if not success:
            return error_response(message)
        return {
            "success": True,
            "message": message,
            "loop_state": to_dict(driver.get_loop_state(project_id)),
        }

    @mcp.tool()
    async def stop_autonomous_loop(project_id: str, ctx: Context = None) -> dict[str, Any]:
        """自律ループとエージェントを停止する。ロードマップ上の位置は変わらない。"""
        driver, error = _require_driver(get_app_ctx(ctx))
        if error:
            return error

        if not await driver.stop_autonomous_loop(project_id):
            return error_response(f"プロジェクト {project_id} の自律ループは実行されていません")
        return {"success": True, "message": f"プロジェクト {project_id} の自律ループを停止しました"}

    @mcp.tool()
    async def get_loop_state(project_id: str, ctx: Context = None) -> dict[str, Any]:
        """自律ループの状態を取得する。

        Returns:
            状態（success, loop_state）。ループが存在しない場合 loop_state は None
        """
        driver, error = _require_driver(get_app_ctx(ctx))
        if error:
            return error
        return {"success": True, "loop_state": to_dict(driver.get_loop_state(project_id))}
