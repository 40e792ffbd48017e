"""エージェント管理モジュール。

プロジェクトごとのエージェントを保持し、同時実行数の上限（admission control）と
超過分の FIFO キューを管理する。
"""

import asyncio
import functools
import logging

from src.config.settings import PermissionConfig, Settings
from src.managers.agent_queue import AgentQueue
from src.managers.claude_agent import ClaudeAgent
from src.managers.collaborators import ConversationStore, DirectoryProjectResolver, ProjectResolver
from src.managers.event_channel import AgentEvent, EventChannel
from src.managers.pid_tracker import OrphanCleanupResult, PidTracker
from src.managers.process_runner import ProcessSpawner
from src.models.agent import (
    AgentConfig,
    AgentMode,
    AgentStatus,
    ContextUsage,
    FullStatus,
    ImageAttachment,
    QueuedMessage,
    QueuedProject,
    ResourceStatus,
    WaitingStatus,
)

logger = logging.getLogger(__name__)

QUEUE_CHANGE_EVENT = "queue_change"

# エージェントからマネージャーへ転送するイベント
_FORWARDED_EVENTS = (
    AgentEvent.STATUS,
    AgentEvent.MESSAGE,
    AgentEvent.WAITING,
    AgentEvent.CONTEXT_USAGE,
    AgentEvent.TURN_COMPLETE,
    AgentEvent.SESSION_ID,
)


class AgentManager:
    """プロジェクトのエージェントと起動キューを管理するクラス。

    イベントは events チャネルから (project_id, payload) の形で購読できる。
    """

    def __init__(
        self,
        settings: Settings,
        project_resolver: ProjectResolver | None = None,
        spawner: ProcessSpawner | None = None,
        pid_tracker: PidTracker | None = None,
        conversation_store: ConversationStore | None = None,
    ) -> None:
        """AgentManagerを初期化する。

        Args:
            settings: アプリケーション設定
            project_resolver: プロジェクトIDからパスを解決するオブジェクト
            spawner: プロセス起動関数（テスト時に差し替える）
            pid_tracker: PID 追跡（None の場合は追跡しない）
            conversation_store: 出力メッセージの保存先（オプション）
        """
        self.settings = settings
        self.project_resolver = project_resolver or DirectoryProjectResolver(settings.projects_base_dir)
        self.spawner = spawner
        self.pid_tracker = pid_tracker
        self.conversation_store = conversation_store
        self.max_concurrent_agents = settings.max_concurrent_agents

        self.agents: dict[str, ClaudeAgent] = {}
        self.queue = AgentQueue()
        self.events = EventChannel("agent_manager")

        self._last_status: dict[str, AgentStatus] = {}
        self._last_session_ids: dict[str, str] = {}
        self._pids: dict[str, int] = {}
        self._permission_overrides: dict[str, PermissionConfig] = {}
        self._admission_lock = asyncio.Lock()
        self._project_locks: dict[str, asyncio.Lock] = {}
        self._shutting_down = False

    # ========== 参照系 ==========

    def get_agent(self, project_id: str) -> ClaudeAgent | None:
        """エージェントを取得する。

        Args:
            project_id: プロジェクトID

        Returns:
            ClaudeAgent、見つからない場合はNone
        """
        return self.agents.get(project_id)

    @property
    def running_count(self) -> int:
        """実行中のエージェント数。"""
        return len(self.agents)

    def is_running(self, project_id: str) -> bool:
        """エージェントが実行中か。"""
        agent = self.agents.get(project_id)
        return agent is not None and agent.is_running

    def is_queued(self, project_id: str) -> bool:
        """起動キューに存在するか。"""
        return self.queue.is_queued(project_id)

    def get_full_status(self, project_id: str) -> FullStatus:
        """プロジェクトのエージェント状態を1つのスナップショットとして返す。"""
        agent = self.agents.get(project_id)
        if agent is None:
            return FullStatus(
                project_id=project_id,
                status=self._last_status.get(project_id, AgentStatus.STOPPED),
                is_queued=self.queue.is_queued(project_id),
                session_id=self._last_session_ids.get(project_id),
            )
        return FullStatus(
            project_id=project_id,
            status=agent.status,
            mode=agent.mode,
            is_queued=self.queue.is_queued(project_id),
            queued_message_count=len(agent.queued_messages),
            is_waiting_for_input=agent.is_waiting_for_input,
            waiting_version=agent.waiting_version,
            session_id=agent.session_id,
            permission_mode=agent.permission_mode,
            context_usage=agent.context_usage,
        )

    def get_resource_status(self) -> ResourceStatus:
        """リソース使用状況を返す。"""
        return ResourceStatus(
            running_count=self.running_count,
            max_concurrent=self.max_concurrent_agents,
            queued_count=len(self.queue),
            queued_projects=self.queue.snapshot(),
        )

    def get_context_usage(self, project_id: str) -> ContextUsage | None:
        """コンテキスト使用量を返す。"""
        agent = self.agents.get(project_id)
        return agent.context_usage if agent else None

    def get_waiting_status(self, project_id: str) -> WaitingStatus:
        """入力待ち状態を返す。"""
        agent = self.agents.get(project_id)
        if agent is None:
            return WaitingStatus(is_waiting=False, version=0)
        return agent.waiting_status

    def get_queued_messages(self, project_id: str) -> list[QueuedMessage]:
        """キュー済みの入力一覧を返す。"""
        agent = self.agents.get(project_id)
        return list(agent.queued_messages) if agent else []

    def set_project_permissions(self, project_id: str, permission: PermissionConfig | None) -> None:
        """プロジェクト別のパーミッション設定を登録する（次回起動から反映）。"""
        if permission is None:
            self._permission_overrides.pop(project_id, None)
        else:
            self._permission_overrides[project_id] = permission

    # ========== 起動 ==========

    async def start_agent(
        self,
        project_id: str,
        instructions: str | None = None,
        images: list[ImageAttachment] | None = None,
    ) -> tuple[bool, str]:
        """自律モードのエージェントを起動する。

        同時実行数が上限に達している場合はキューに追加して返る。

        Args:
            project_id: プロジェクトID
            instructions: 起動時に送信する指示
            images: 指示に添付する画像

        Returns:
            (成功フラグ, メッセージ) のタプル
        """
        request = QueuedProject(
            project_id=project_id,
            instructions=instructions,
            images=images or [],
            mode=AgentMode.AUTONOMOUS,
        )
        return await self._request_start(request)

    async def start_interactive_agent(
        self,
        project_id: str,
        session_id: str | None = None,
        permission_mode: str | None = None,
        instructions: str | None = None,
        images: list[ImageAttachment] | None = None,
    ) -> tuple[bool, str]:
        """対話モードのエージェントを起動する。

        Args:
            project_id: プロジェクトID
            session_id: 再開するセッションID（None の場合は新規セッション）
            permission_mode: パーミッションモード
            instructions: 起動時に送信する最初のメッセージ
            images: メッセージに添付する画像

        Returns:
            (成功フラグ, メッセージ) のタプル
        """
        request = QueuedProject(
            project_id=project_id,
            instructions=instructions,
            images=images or [],
            mode=AgentMode.INTERACTIVE,
            session_id=session_id,
            permission_mode=permission_mode,
        )
        return await self._request_start(request)

    async def _request_start(self, request: QueuedProject) -> tuple[bool, str]:
        project_id = request.project_id
        async with self._project_lock(project_id):
            async with self._admission_lock:
                if project_id in self.agents:
                    return False, f"プロジェクト {project_id} のエージェントは既に実行中です"
                if self.queue.is_queued(project_id):
                    return False, f"プロジェクト {project_id} は既にキューに存在します"

                project_path = self.project_resolver.get_project_path(project_id)
                if project_path is None:
                    return False, f"プロジェクト {project_id} が見つかりません"

                if self.running_count >= self.max_concurrent_agents:
                    position = self.queue.enqueue(request)
                    queued = True
                else:
                    agent = self._create_agent(request, project_path)
                    self.agents[project_id] = agent
                    queued = False

            if queued:
                await self._emit_queue_change()
                return True, f"同時実行数の上限に達しているためキューに追加しました（{position}番目）"

            started = await self._launch(agent, request)

        if not started:
            await self._process_queue()
            return False, f"プロジェクト {project_id} のエージェントの起動に失敗しました"
        return True, f"プロジェクト {project_id} のエージェントを起動しました"

    def _create_agent(self, request: QueuedProject, project_path: str) -> ClaudeAgent:
        """起動要求からエージェントを生成する。"""
        config = AgentConfig(
            agent_id=request.project_id,
            project_path=project_path,
            mode=request.mode,
            session_id=request.session_id,
            resume_session=request.session_id is not None,
            permission=self._resolve_permission(request),
        )
        return ClaudeAgent(config, self.settings, spawner=self.spawner)

    def _resolve_permission(self, request: QueuedProject) -> PermissionConfig:
        """起動要求に対応するパーミッション設定を決定する。"""
        override = self._permission_overrides.get(request.project_id)
        if override is not None:
            if request.permission_mode:
                return override.model_copy(
                    update={"skip_permissions": False, "permission_mode": request.permission_mode}
                )
            return override
        if request.mode == AgentMode.AUTONOMOUS:
            return PermissionConfig(skip_permissions=True)
        return PermissionConfig(
            skip_permissions=False,
            permission_mode=request.permission_mode or self.settings.default_permission_mode,
        )

    async def _launch(self, agent: ClaudeAgent, request: QueuedProject) -> bool:
        """登録済みのエージェントを起動する。失敗した場合はテーブルから外す。"""
        self._wire_agent(agent)
        started = await agent.start(request.instructions, request.images or None)

        if started:
            self._last_status.pop(agent.id, None)
            if agent.pid is not None:
                self._pids[agent.id] = agent.pid
                if self.pid_tracker is not None:
                    self.pid_tracker.add_process(agent.pid, agent.id)
            return True

        async with self._admission_lock:
            if self.agents.get(agent.id) is agent:
                del self.agents[agent.id]
        self._last_status[agent.id] = AgentStatus.ERROR
        agent.events.clear()
        return False

    def _wire_agent(self, agent: ClaudeAgent) -> None:
        """エージェントのイベントをマネージャーのチャネルへ転送する。"""
        for event in _FORWARDED_EVENTS:
            agent.events.subscribe(event, functools.partial(self.events.emit, event, agent.id))
        agent.events.subscribe(AgentEvent.EXIT, functools.partial(self._on_agent_exit, agent))
        if self.conversation_store is not None:
            agent.events.subscribe(
                AgentEvent.MESSAGE,
                functools.partial(self.conversation_store.append_message, agent.id),
            )

    async def _on_agent_exit(self, agent: ClaudeAgent, code: int | None) -> None:
        """エージェントが終了した際に呼ばれる。キューの次の要求を起動する。"""
        async with self._admission_lock:
            if self.agents.get(agent.id) is agent:
                del self.agents[agent.id]
        self._forget_agent(agent)
        await self.events.emit(AgentEvent.EXIT, agent.id, code)

        if not self._shutting_down:
            await self._process_queue()

    async def _process_queue(self) -> None:
        """空きがある限りキューの先頭から起動する。"""
        while True:
            async with self._admission_lock:
                if len(self.queue) == 0 or self.running_count >= self.max_concurrent_agents:
                    return
                request = self.queue.dequeue()
                if request is None:
                    return
                project_path = self.project_resolver.get_project_path(request.project_id)
                if project_path is None:
                    logger.warning(f"キューのプロジェクト {request.project_id} が見つからないためスキップします")
                    agent = None
                else:
                    agent = self._create_agent(request, project_path)
                    self.agents[request.project_id] = agent

            await self._emit_queue_change()
            if agent is not None:
                logger.info(f"キューからプロジェクト {request.project_id} を起動します")
                await self._launch(agent, request)

    # ========== 停止 ==========

    async def stop_agent(self, project_id: str) -> bool:
        """エージェントを停止する。

        停止後、キューに待機中の要求があれば1件起動する。

        Returns:
            停止した場合 True（エージェントが存在しない場合 False）
        """
        async with self._project_lock(project_id):
            agent = self.agents.get(project_id)
            if agent is None:
                return False
            await self._stop(agent)

        if not self._shutting_down:
            await self._process_queue()
        return True

    async def _stop(self, agent: ClaudeAgent) -> None:
        """エージェントを停止し、終了状態になってからテーブルから外す。"""
        await agent.stop()
        async with self._admission_lock:
            if self.agents.get(agent.id) is agent:
                del self.agents[agent.id]
        self._forget_agent(agent)
        logger.info(f"プロジェクト {agent.id} のエージェントを停止しました")

    def _forget_agent(self, agent: ClaudeAgent) -> None:
        """停止したエージェントの後始末をする。"""
        if agent.session_id:
            self._last_session_ids[agent.id] = agent.session_id
        pid = self._pids.pop(agent.id, None)
        if pid is not None and self.pid_tracker is not None:
            self.pid_tracker.remove_process(pid)
        agent.events.clear()

    def _live_pids(self) -> set[int]:
        return {a.pid for a in self.agents.values() if a.pid is not None}

    async def stop_all_agents(self) -> int:
        """全エージェントを停止し、キューを空にする（シャットダウン用）。

        Returns:
            停止したエージェント数
        """
        self._shutting_down = True
        try:
            if self.queue.clear():
                await self._emit_queue_change()
            project_ids = list(self.agents.keys())
            results = await asyncio.gather(*(self.stop_agent(pid) for pid in project_ids))
        finally:
            self._shutting_down = False
        count = sum(1 for r in results if r)
        logger.info(f"{count} 件のエージェントを停止しました")
        return count

    async def remove_from_queue(self, project_id: str) -> bool:
        """キュー待ちの起動要求を取り消す。"""
        removed = self.queue.remove(project_id)
        if removed:
            await self._emit_queue_change()
        return removed

    async def set_max_concurrent_agents(self, value: int) -> int:
        """同時実行数の上限を変更する（最小1）。上限が増えた場合はキューを進める。"""
        self.max_concurrent_agents = max(1, value)
        logger.info(f"同時実行数の上限を {self.max_concurrent_agents} に変更しました")
        await self._process_queue()
        return self.max_concurrent_agents

    # ========== 入力 ==========

    async def send_input(
        self, project_id: str, text: str, images: list[ImageAttachment] | None = None
    ) -> bool:
        """エージェントに入力を送信する。処理中の場合はキューに入る。"""
        agent = self.agents.get(project_id)
        if agent is None:
            return False
        return await agent.send_input(text, images)

    async def send_tool_result(self, project_id: str, tool_use_id: str, payload: object) -> bool:
        """エージェントにツール実行結果を送信する。"""
        agent = self.agents.get(project_id)
        if agent is None:
            return False
        return await agent.send_tool_result(tool_use_id, payload)

    def remove_queued_message(self, project_id: str, index: int) -> bool:
        """キュー済みの入力を削除する。"""
        agent = self.agents.get(project_id)
        if agent is None:
            return False
        return agent.remove_queued_message(index)

    # ========== 復旧 ==========

    async def cleanup_orphan_processes(self) -> OrphanCleanupResult:
        """管理外になった CLI プロセスを停止する。"""
        if self.pid_tracker is None:
            return OrphanCleanupResult()
        return await self.pid_tracker.cleanup_orphan_processes(exclude_pids=self._live_pids())

    async def restart_project_agent(self, project_id: str) -> tuple[bool, str]:
        """エージェントを停止し、保存済みのセッションIDで再開する。

        再起動は自身の実行枠を引き継ぐため、キューの順番待ちはしない。
        """
        async with self._project_lock(project_id):
            agent = self.agents.get(project_id)
            if agent is None:
                return False, f"プロジェクト {project_id} のエージェントは実行されていません"

            session_id = agent.session_id
            config = agent.config.model_copy(
                update={"session_id": session_id, "resume_session": session_id is not None}
            )
            await self._stop(agent)

            new_agent = ClaudeAgent(config, self.settings, spawner=self.spawner)
            async with self._admission_lock:
                self.agents[project_id] = new_agent
            started = await self._launch(new_agent, QueuedProject(project_id=project_id, mode=config.mode))

        if not started:
            await self._process_queue()
            return False, f"プロジェクト {project_id} のエージェントの再起動に失敗しました"
        logger.info(f"プロジェクト {project_id} のエージェントを再起動しました（session={session_id}）")
        return True, f"プロジェクト {project_id} のエージェントを再起動しました"

    async def restart_all_running_agents(self) -> dict[str, bool]:
        """実行中の全エージェントを再起動する。

        Returns:
            プロジェクトID -> 再起動に成功したか
        """
        results: dict[str, bool] = {}
        for project_id in list(self.agents.keys()):
            ok, _ = await self.restart_project_agent(project_id)
            results[project_id] = ok
        return results

    # ========== 内部 ==========

    def _project_lock(self, project_id: str) -> asyncio.Lock:
        """プロジェクト単位のロック（停止と起動の順序を保証する）。"""
        lock = self._project_locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._project_locks[project_id] = lock
        return lock

    async def _emit_queue_change(self) -> None:
        await self.events.emit(QUEUE_CHANGE_EVENT, self.queue.snapshot())
