"""One-off エージェント管理モジュール。

ブレインストーミングなどの一時的なタスク用のエージェントを管理する。
プロジェクトのエージェントとは独立しており、同時実行数の上限には含めない。
"""

import functools
import logging
import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from src.config.settings import PermissionConfig, Settings
from src.managers.claude_agent import ClaudeAgent
from src.managers.collaborators import DirectoryProjectResolver, ProjectResolver
from src.managers.event_channel import AgentEvent, EventChannel
from src.managers.pid_tracker import PidTracker
from src.managers.process_runner import ProcessSpawner
from src.models.agent import (
    AgentConfig,
    AgentMode,
    AgentStatus,
    ContextUsage,
    ImageAttachment,
    WaitingStatus,
)

logger = logging.getLogger(__name__)


class OneOffEvent:
    """One-off エージェントのイベント名（プロジェクトのイベントとは別の名前空間）。"""

    MESSAGE = "one_off_message"
    STATUS = "one_off_status"
    WAITING = "one_off_waiting"
    CONTEXT_USAGE = "one_off_context_usage"
    EXIT = "one_off_exit"


_EVENT_MAP = {
    AgentEvent.MESSAGE: OneOffEvent.MESSAGE,
    AgentEvent.STATUS: OneOffEvent.STATUS,
    AgentEvent.WAITING: OneOffEvent.WAITING,
    AgentEvent.CONTEXT_USAGE: OneOffEvent.CONTEXT_USAGE,
}


class OneOffMeta(BaseModel):
    """One-off エージェントのメタ情報。"""

    one_off_id: str
    project_id: str
    label: str | None = None
    permission_mode: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)


class OneOffManager:
    """One-off エージェントを ID で管理するクラス。"""

    def __init__(
        self,
        settings: Settings,
        project_resolver: ProjectResolver | None = None,
        spawner: ProcessSpawner | None = None,
        pid_tracker: PidTracker | None = None,
    ) -> None:
        self.settings = settings
        self.project_resolver = project_resolver or DirectoryProjectResolver(settings.projects_base_dir)
        self.spawner = spawner
        self.pid_tracker = pid_tracker
        self.agents: dict[str, ClaudeAgent] = {}
        self.meta: dict[str, OneOffMeta] = {}
        self.events = EventChannel("one_off")
        self._pids: dict[str, int] = {}

    async def start_one_off_agent(
        self,
        project_id: str,
        message: str,
        permission_mode: str | None = None,
        label: str | None = None,
        images: list[ImageAttachment] | None = None,
    ) -> str | None:
        """One-off エージェントを起動し、最初のメッセージを送信する。

        Args:
            project_id: 作業ディレクトリとして使うプロジェクトのID
            message: 最初に送信するメッセージ
            permission_mode: パーミッションモード（None の場合は全ツール許可）
            label: 表示用のラベル
            images: メッセージに添付する画像

        Returns:
            one-off ID。プロジェクトが見つからない場合は None
        """
        project_path = self.project_resolver.get_project_path(project_id)
        if project_path is None:
            logger.warning(f"プロジェクト {project_id} が見つかりません")
            return None

        one_off_id = f"oneoff-{uuid.uuid4().hex[:12]}"
        if permission_mode:
            permission = PermissionConfig(skip_permissions=False, permission_mode=permission_mode)
        else:
            permission = PermissionConfig(skip_permissions=True)

        config = AgentConfig(
            agent_id=one_off_id,
            project_path=project_path,
            mode=AgentMode.INTERACTIVE,
            permission=permission,
        )
        agent = ClaudeAgent(config, self.settings, spawner=self.spawner)
        self.agents[one_off_id] = agent
        self.meta[one_off_id] = OneOffMeta(
            one_off_id=one_off_id,
            project_id=project_id,
            label=label,
            permission_mode=agent.permission_mode,
        )

        for source, target in _EVENT_MAP.items():
            agent.events.subscribe(source, functools.partial(self.events.emit, target, one_off_id))
        agent.events.subscribe(AgentEvent.EXIT, functools.partial(self._on_exit, one_off_id))

        if await agent.start(message, images):
            if agent.pid is not None:
                self._pids[one_off_id] = agent.pid
                if self.pid_tracker is not None:
                    self.pid_tracker.add_process(agent.pid, one_off_id)
            logger.info(f"One-off エージェント {one_off_id} を起動しました（project={project_id}）")
        else:
            logger.error(f"One-off エージェント {one_off_id} の起動に失敗しました")
        return one_off_id

    async def send_one_off_input(
        self, one_off_id: str, text: str, images: list[ImageAttachment] | None = None
    ) -> bool:
        """One-off エージェントに入力を送信する（同じプロセスで複数ターンを続ける）。"""
        agent = self.agents.get(one_off_id)
        if agent is None:
            return False
        return await agent.send_input(text, images)

    async def stop_one_off_agent(self, one_off_id: str) -> bool:
        """One-off エージェントを停止して破棄する。"""
        agent = self.agents.pop(one_off_id, None)
        if agent is None:
            return False
        await agent.stop()
        self._forget(one_off_id)
        agent.events.clear()
        logger.info(f"One-off エージェント {one_off_id} を停止しました")
        return True

    async def stop_all(self) -> int:
        """全ての One-off エージェントを停止する。"""
        ids = list(self.agents.keys())
        for one_off_id in ids:
            await self.stop_one_off_agent(one_off_id)
        return len(ids)

    def get_one_off_status(self, one_off_id: str) -> AgentStatus | None:
        """ステータスを返す。存在しない場合は None。"""
        agent = self.agents.get(one_off_id)
        return agent.status if agent else None

    def get_one_off_waiting(self, one_off_id: str) -> WaitingStatus | None:
        """入力待ち状態を返す。"""
        agent = self.agents.get(one_off_id)
        return agent.waiting_status if agent else None

    def get_one_off_context_usage(self, one_off_id: str) -> ContextUsage | None:
        """コンテキスト使用量を返す。"""
        agent = self.agents.get(one_off_id)
        return agent.context_usage if agent else None

    def get_one_off_meta(self, one_off_id: str) -> OneOffMeta | None:
        """メタ情報を返す。"""
        return self.meta.get(one_off_id)

    def list_one_off_agents(self, project_id: str | None = None) -> list[OneOffMeta]:
        """One-off エージェント一覧を返す。"""
        return [m for m in self.meta.values() if project_id is None or m.project_id == project_id]

    async def _on_exit(self, one_off_id: str, code: int | None) -> None:
        agent = self.agents.pop(one_off_id, None)
        self._forget(one_off_id)
        await self.events.emit(OneOffEvent.EXIT, one_off_id, code)
        if agent is not None:
            agent.events.clear()

    def _forget(self, one_off_id: str) -> None:
        self.meta.pop(one_off_id, None)
        pid = self._pids.pop(one_off_id, None)
        if pid is not None and self.pid_tracker is not None:
            self.pid_tracker.remove_process(pid)
