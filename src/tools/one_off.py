"""One-off エージェント管理ツール。"""

from typing import Any

from mcp.server.fastmcp import Context, FastMCP

from src.tools.helpers import error_response, get_app_ctx, parse_images, to_dict


def register_tools(mcp: FastMCP) -> None:
    """One-off エージェント管理ツールを登録する。"""

    @mcp.tool()
    async def start_one_off_agent(
        project_id: str,
        message: str,
        permission_mode: str | None = None,
        label: str | None = None,
        images: list[dict[str, str]] | None = None,
        ctx: Context = None,
    ) -> dict[str, Any]:
        """一時的なタスク用のエージェントを起動する。

        同時実行数の上限には含まれない。

        Args:
            project_id: 作業ディレクトリとして使うプロジェクトのID
            message: 最初に送信するメッセージ
            permission_mode: パーミッションモード（省略時は全ツール許可）
            label: 表示用のラベル
            images: 添付画像（media_type, data）のリスト

        Returns:
            起動結果（success, one_off_id, status または error）
        """
        app_ctx = get_app_ctx(ctx)
        try:
            attachments = parse_images(images)
        except ValueError as e:
            return error_response(str(e))

        manager = app_ctx.one_off_manager
        one_off_id = await manager.start_one_off_agent(
            project_id, message, permission_mode=permission_mode, label=label, images=attachments
        )
        if one_off_id is None:
            return error_response(f"プロジェクト {project_id} が見つかりません")
        return {
            "success": True,
            "one_off_id": one_off_id,
            "status": manager.get_one_off_status(one_off_id),
        }

    @mcp.tool()
    async def send_one_off_input(
        one_off_id: str,
        text: str,
        images: list[dict[str, str]] | None = None,
        ctx: Context = None,
    ) -> dict[str, Any]:
        """One-off エージェントに入力を送信する。"""
        app_ctx = get_app_ctx(ctx)
        try:
            attachments = parse_images(images)
        except ValueError as e:
            return error_response(str(e))

        if not await app_ctx.one_off_manager.send_one_off_input(one_off_id, text, attachments):
            return error_response(f"One-off エージェント {one_off_id} に入力を送信できません")
        return {"success": True}

    @mcp.tool()
    async def stop_one_off_agent(one_off_id: str, ctx: Context = None) -> dict[str, Any]:
        """One-off エージェントを停止する。"""
        if not await get_app_ctx(ctx).one_off_manager.stop_one_off_agent(one_off_id):
            return error_response(f"One-off エージェント {one_off_id} が見つかりません")
        return {"success": True}

    @mcp.tool()
    async def get_one_off_status(one_off_id: str, ctx: Context = None) -> dict[str, Any]:
        """One-off エージェントの状態を取得する。

        Returns:
            状態（success, status, waiting, context_usage, meta または error）
        """
        manager = get_app_ctx(ctx).one_off_manager
        status = manager.get_one_off_status(one_off_id)
        if status is None:
            return error_response(f"One-off エージェント {one_off_id} が見つかりません")
        return {
            "success": True,
            "status": status,
            "waiting": to_dict(manager.get_one_off_waiting(one_off_id)),
            "context_usage": to_dict(manager.get_one_off_context_usage(one_off_id)),
            "meta": to_dict(manager.get_one_off_meta(one_off_id)),
        }

    @mcp.tool()
    async def list_one_off_agents(project_id: str | None = None, ctx: Context = None) -> dict[str, Any]:
        """One-off エージェント一覧を取得する。"""
        agents = get_app_ctx(ctx).one_off_manager.list_one_off_agents(project_id)
        return {"success": True, "agents": [to_dict(meta) for meta in agents], "count": len(agents)}
