"""Ralph Loop 管理ツール。"""

from typing import Any

from mcp.server.fastmcp import Context, FastMCP
from pydantic import ValidationError

from src.tools.helpers import error_response, get_app_ctx, to_dict


def register_tools(mcp: FastMCP) -> None:
    """Ralph Loop 管理ツールを登録する。"""

    @mcp.tool()
    async def start_ralph_loop(
        project_id: str,
        task_description: str,
        max_turns: int | None = None,
        worker_model: str | None = None,
        reviewer_model: str | None = None,
        worker_prompt_template: str | None = None,
        reviewer_prompt_template: str | None = None,
        worker_system_prompt: str | None = None,
        reviewer_system_prompt: str | None = None,
        ctx: Context = None,
    ) -> dict[str, Any]:
        """Worker/Reviewer のループを開始する。

        Reviewer が承認するか、max_turns に達するまでイテレーションを繰り返す。
        省略した値は設定のデフォルトを使う。

        Args:
            project_id: プロジェクトID
            task_description: Worker が実装するタスクの説明
            max_turns: 最大イテレーション数
            worker_model: Worker のモデル
            reviewer_model: Reviewer のモデル
            worker_prompt_template: Worker プロンプトテンプレート（${task_description} などを置換）
            reviewer_prompt_template: Reviewer プロンプトテンプレート
            worker_system_prompt: Worker に追加するシステムプロンプト
            reviewer_system_prompt: Reviewer に追加するシステムプロンプト

        Returns:
            開始結果（success, task_id, state または error）
        """
        service = get_app_ctx(ctx).ralph_service
        try:
            config = service.build_config(
                task_description,
                max_turns=max_turns,
                worker_model=worker_model,
                reviewer_model=reviewer_model,
                worker_prompt_template=worker_prompt_template,
                reviewer_prompt_template=reviewer_prompt_template,
                worker_system_prompt=worker_system_prompt,
                reviewer_system_prompt=reviewer_system_prompt,
            )
        except ValidationError as e:
            return error_response(f"ループ設定が不正です: {e.errors()[0]['msg']}")

        state = await service.start(project_id, config)
        if state is None:
            return error_response(f"プロジェクト {project_id} が見つかりません")
        return {"success": True, "task_id": state.task_id, "state": to_dict(state)}

    @mcp.tool()
    async def pause_ralph_loop(project_id: str, task_id: str, ctx: Context = None) -> dict[str, Any]:
        """ループを一時停止する。実行中のフェーズは最後まで実行される。"""
        if not await get_app_ctx(ctx).ralph_service.pause(project_id, task_id):
            return error_response(f"Ralph Loop {task_id} は一時停止できません")
        return {"success": True}

    @mcp.tool()
    async def resume_ralph_loop(project_id: str, task_id: str, ctx: Context = None) -> dict[str, Any]:
        """一時停止中、または再起動で中断されたループを保存済みの地点から再開する。"""
        if not await get_app_ctx(ctx).ralph_service.resume(project_id, task_id):
            return error_response(f"Ralph Loop {task_id} は再開できません（存在しない、終了済み、または実行中です）")
        return {"success": True}

    @mcp.tool()
    async def stop_ralph_loop(project_id: str, task_id: str, ctx: Context = None) -> dict[str, Any]:
        """ループを停止する。保存済みのサマリーとフィードバックは残る。"""
        if not await get_app_ctx(ctx).ralph_service.stop(project_id, task_id):
            return error_response(f"Ralph Loop {task_id} が見つかりません")
        return {"success": True}

    @mcp.tool()
    async def get_ralph_loop_state(project_id: str, task_id: str, ctx: Context = None) -> dict[str, Any]:
        """ループの状態を取得する。"""
        state = await get_app_ctx(ctx).ralph_service.get_state(project_id, task_id)
        if state is None:
            return error_response(f"Ralph Loop {task_id} が見つかりません")
        return {"success": True, "state": to_dict(state)}

    @mcp.tool()
    async def list_ralph_loops(project_id: str, ctx: Context = None) -> dict[str, Any]:
        """プロジェクトのループ一覧を新しい順に取得する。"""
        states = await get_app_ctx(ctx).ralph_service.list_by_project(project_id)
        return {"success": True, "loops": [to_dict(s) for s in states], "count": len(states)}

    @mcp.tool()
    async def delete_ralph_loop(project_id: str, task_id: str, ctx: Context = None) -> dict[str, Any]:
        """ループを停止して削除する。"""
        if not await get_app_ctx(ctx).ralph_service.delete(project_id, task_id):
            return error_response(f"Ralph Loop {task_id} が見つかりません")
        return {"success": True}
