"""Agent Supervisor MCP Server エントリーポイント。"""

import logging
import os
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager

from mcp.server.fastmcp import FastMCP

from src.config.settings import Settings
from src.context import AppContext, create_app_context
from src.managers.collaborators import ConversationStore, InstructionGenerator, RoadmapProvider
from src.tools import register_all_tools

# ログ設定（stderrに出力）
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_lifespan(
    roadmap: RoadmapProvider | None = None,
    instructions: InstructionGenerator | None = None,
    conversation_store: ConversationStore | None = None,
) -> Callable[[FastMCP], AbstractAsyncContextManager[AppContext]]:
    """外部コラボレーターを組み込んだライフスパンを作成する。

    コラボレーターを省略した場合は設定（SUPERVISOR_ROADMAP_PROVIDER など）から読み込む。
    """

    @asynccontextmanager
    async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
        """サーバーライフサイクルを管理する。

        起動時に前回の異常終了で残った CLI プロセスを停止し、
        終了時に全てのエージェントとループを停止する。

        Args:
            server: FastMCPサーバーインスタンス

        Yields:
            アプリケーションコンテキスト
        """
        logger.info("Agent Supervisor を起動しています...")

        settings = Settings()
        os.makedirs(settings.data_dir, exist_ok=True)
        app_ctx = create_app_context(
            settings,
            roadmap=roadmap,
            instructions=instructions,
            conversation_store=conversation_store,
        )
        if app_ctx.loop_driver is None:
            logger.info("ロードマップが設定されていないため自律ループは無効です")

        result = await app_ctx.agent_manager.cleanup_orphan_processes()
        if result.found_count:
            logger.info(
                f"孤児プロセスを {result.killed_count}/{result.found_count} 件停止しました"
                f"（失敗: {result.failed_pids}）"
            )

        try:
            yield app_ctx
        finally:
            logger.info("サーバーをシャットダウンしています...")
            if app_ctx.loop_driver is not None:
                await app_ctx.loop_driver.stop_all()
            await app_ctx.ralph_service.stop_all()
            await app_ctx.one_off_manager.stop_all()
            count = await app_ctx.agent_manager.stop_all_agents()
            logger.info(f"{count} 件のエージェントを停止しました")

    return app_lifespan


def create_server(
    roadmap: RoadmapProvider | None = None,
    instructions: InstructionGenerator | None = None,
    conversation_store: ConversationStore | None = None,
) -> FastMCP:
    """ツールを登録した FastMCP サーバーを作成する。

    別のアプリケーションに組み込む場合は、ロードマップなどの実装を渡して呼び出す。
    """
    server = FastMCP("Agent Supervisor", lifespan=create_lifespan(roadmap, instructions, conversation_store))
    register_all_tools(server)
    return server


# FastMCPサーバーを作成
mcp = create_server()


def main() -> None:
    """MCPサーバーを起動する。"""
    mcp.run()


if __name__ == "__main__":
    main()
