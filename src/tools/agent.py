"""エージェント管理ツール。"""

from typing import Any

from mcp.server.fastmcp import Context, FastMCP

from src.config.settings import PermissionConfig
from src.tools.helpers import error_response, get_app_ctx, parse_images, to_dict


def register_tools(mcp: FastMCP) -> None:
    """エージェント管理ツールを登録する。"""

    @mcp.tool()
    async def start_agent(
        project_id: str,
        instructions: str | None = None,
        images: list[dict[str, str]] | None = None,
        ctx: Context = None,
    ) -> dict[str, Any]:
        """自律モードのエージェントを起動する。

        同時実行数の上限に達している場合はキューに追加される。

        Args:
            project_id: プロジェクトID
            instructions: 起動時に送信する指示
            images: 添付画像（media_type, data）のリスト

        Returns:
            起動結果（success, message, is_queued または error）
        """
        app_ctx = get_app_ctx(ctx)
        try:
            attachments = parse_images(images)
        except ValueError as e:
            return error_response(str(e))

        manager = app_ctx.agent_manager
        success, message = await manager.start_agent(project_id, instructions, attachments)
        if not success:
            return error_response(message)
        return {"success": True, "message": message, "is_queued": manager.is_queued(project_id)}

    @mcp.tool()
    async def start_interactive_agent(
        project_id: str,
        session_id: str | None = None,
        permission_mode: str | None = None,
        instructions: str | None = None,
        images: list[dict[str, str]] | None = None,
        ctx: Context = None,
    ) -> dict[str, Any]:
        """対話モードのエージェントを起動する。

        Args:
            project_id: プロジェクトID
            session_id: 再開するセッションID（省略時は新規セッション）
            permission_mode: パーミッションモード（default/acceptEdits/plan/bypassPermissions）
            instructions: 最初に送信するメッセージ
            images: 添付画像（media_type, data）のリスト

        Returns:
            起動結果（success, message, is_queued または error）
        """
        app_ctx = get_app_ctx(ctx)
        try:
            attachments = parse_images(images)
        except ValueError as e:
            return error_response(str(e))

        manager = app_ctx.agent_manager
        success, message = await manager.start_interactive_agent(
            project_id,
            session_id=session_id,
            permission_mode=permission_mode,
            instructions=instructions,
            images=attachments,
        )
        if not success:
            return error_response(message)
        return {"success": True, "message": message, "is_queued": manager.is_queued(project_id)}

    @mcp.tool()
    async def stop_agent(project_id: str, ctx: Context = None) -> dict[str, Any]:
        """エージェントを停止する。キュー待ちの場合はキューから取り除く。

        Args:
            project_id: プロジェクトID

        Returns:
            停止結果（success, message または error）
        """
        manager = get_app_ctx(ctx).agent_manager
        if await manager.stop_agent(project_id):
            return {"success": True, "message": f"プロジェクト {project_id} のエージェントを停止しました"}
        if await manager.remove_from_queue(project_id):
            return {"success": True, "message": f"プロジェクト {project_id} をキューから削除しました"}
        return error_response(f"プロジェクト {project_id} のエージェントは実行されていません")

    @mcp.tool()
    async def send_input(
        project_id: str,
        text: str,
        images: list[dict[str, str]] | None = None,
        ctx: Context = None,
    ) -> dict[str, Any]:
        """エージェントに入力を送信する。処理中の場合はキューに入り、ターン終了後に送信される。

        Args:
            project_id: プロジェクトID
            text: 入力テキスト
            images: 添付画像（media_type, data）のリスト

        Returns:
            送信結果（success, queued_message_count または error）
        """
        app_ctx = get_app_ctx(ctx)
        try:
            attachments = parse_images(images)
        except ValueError as e:
            return error_response(str(e))

        manager = app_ctx.agent_manager
        if not await manager.send_input(project_id, text, attachments):
            return error_response(f"プロジェクト {project_id} のエージェントに入力を送信できません")
        return {"success": True, "queued_message_count": len(manager.get_queued_messages(project_id))}

    @mcp.tool()
    async def send_tool_result(
        project_id: str,
        tool_use_id: str,
        payload: Any,
        ctx: Context = None,
    ) -> dict[str, Any]:
        """ツール呼び出し（AskUserQuestion など）への応答を送信する。

        Args:
            project_id: プロジェクトID
            tool_use_id: 応答する tool_use の ID
            payload: 応答内容

        Returns:
            送信結果（success または error）
        """
        manager = get_app_ctx(ctx).agent_manager
        if not await manager.send_tool_result(project_id, tool_use_id, payload):
            return error_response(f"プロジェクト {project_id} のエージェントにツール結果を送信できません")
        return {"success": True}

    @mcp.tool()
    async def get_queued_messages(project_id: str, ctx: Context = None) -> dict[str, Any]:
        """送信待ちの入力一覧を取得する。"""
        manager = get_app_ctx(ctx).agent_manager
        messages = manager.get_queued_messages(project_id)
        return {"success": True, "messages": [to_dict(m) for m in messages]}

    @mcp.tool()
    async def remove_queued_message(project_id: str, index: int, ctx: Context = None) -> dict[str, Any]:
        """送信待ちの入力を削除する。

        Args:
            project_id: プロジェクトID
            index: 削除する入力のインデックス（0始まり）

        Returns:
            削除結果（success または error）
        """
        manager = get_app_ctx(ctx).agent_manager
        if not manager.remove_queued_message(project_id, index):
            return error_response(f"インデックス {index} の入力は存在しません")
        return {"success": True}

    @mcp.tool()
    async def get_full_status(project_id: str, ctx: Context = None) -> dict[str, Any]:
        """プロジェクトのエージェント状態を取得する。

        Returns:
            状態（success, status）
        """
        manager = get_app_ctx(ctx).agent_manager
        return {"success": True, "status": to_dict(manager.get_full_status(project_id))}

    @mcp.tool()
    async def get_agent_output(project_id: str, ctx: Context = None) -> dict[str, Any]:
        """エージェントの収集済み出力を取得する。"""
        agent = get_app_ctx(ctx).agent_manager.get_agent(project_id)
        if agent is None:
            return error_response(f"プロジェクト {project_id} のエージェントは実行されていません")
        return {"success": True, "output": agent.collected_output, "session_error": agent.session_error}

    @mcp.tool()
    async def get_resource_status(ctx: Context = None) -> dict[str, Any]:
        """実行中エージェント数とキューの状態を取得する。

        Returns:
            リソース状況（success, running_count, max_concurrent, queued_count, queued_projects）
        """
        manager = get_app_ctx(ctx).agent_manager
        return {"success": True, **to_dict(manager.get_resource_status())}

    @mcp.tool()
    async def set_max_concurrent_agents(value: int, ctx: Context = None) -> dict[str, Any]:
        """同時実行数の上限を変更する（最小1）。"""
        manager = get_app_ctx(ctx).agent_manager
        applied = await manager.set_max_concurrent_agents(value)
        return {"success": True, "max_concurrent": applied}

    @mcp.tool()
    async def set_project_permissions(
        project_id: str,
        skip_permissions: bool = False,
        permission_mode: str | None = None,
        allowed_tools: list[str] | None = None,
        disallowed_tools: list[str] | None = None,
        append_system_prompt: str | None = None,
        clear: bool = False,
        ctx: Context = None,
    ) -> dict[str, Any]:
        """プロジェクト別のパーミッション設定を登録する（次回起動から反映）。

        Args:
            project_id: プロジェクトID
            skip_permissions: 全ツールを許可するか
            permission_mode: パーミッションモード
            allowed_tools: 許可するツール
            disallowed_tools: 禁止するツール
            append_system_prompt: 追加のシステムプロンプト
            clear: True の場合は設定を削除する

        Returns:
            登録結果（success, permission）
        """
        manager = get_app_ctx(ctx).agent_manager
        if clear:
            manager.set_project_permissions(project_id, None)
            return {"success": True}
        permission = PermissionConfig(
            skip_permissions=skip_permissions,
            permission_mode=permission_mode,
            allowed_tools=allowed_tools or [],
            disallowed_tools=disallowed_tools or [],
            append_system_prompt=append_system_prompt,
        )
        manager.set_project_permissions(project_id, permission)
        return {"success": True, "permission": to_dict(permission)}

    @mcp.tool()
    async def restart_agent(project_id: str, ctx: Context = None) -> dict[str, Any]:
        """エージェントを停止し、同じセッションで再開する。"""
        manager = get_app_ctx(ctx).agent_manager
        success, message = await manager.restart_project_agent(project_id)
        if not success:
            return error_response(message)
        return {"success": True, "message": message}

    @mcp.tool()
    async def restart_all_agents(ctx: Context = None) -> dict[str, Any]:
        """実行中の全エージェントを再起動する。"""
        results = await get_app_ctx(ctx).agent_manager.restart_all_running_agents()
        return {"success": all(results.values()), "results": results}

    @mcp.tool()
    async def cleanup_orphan_processes(ctx: Context = None) -> dict[str, Any]:
        """管理外になった CLI プロセスを停止する。"""
        result = await get_app_ctx(ctx).agent_manager.cleanup_orphan_processes()
        return {"success": True, **to_dict(result)}
