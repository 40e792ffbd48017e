"""自律ループドライバー。

自律モードのエージェントがターンを終えるたびに、ロードマップから次の未完了項目を
取得して指示を送り続ける。ロードマップの位置は外部のロードマッププロバイダーが
保持するため、ループを停止しても位置は変わらない。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from src.managers.agent_manager import AgentManager
from src.managers.collaborators import InstructionGenerator, RoadmapProvider
from src.managers.event_channel import AgentEvent, EventChannel
from src.managers.message_builder import parse_completion_response
from src.models.loop import AgentLoopState, MilestoneRef

logger = logging.getLogger(__name__)


class LoopEvent:
    """自律ループが発行するイベント名。"""

    MILESTONE_STARTED = "milestone_started"
    MILESTONE_COMPLETED = "milestone_completed"
    MILESTONE_FAILED = "milestone_failed"
    LOOP_COMPLETED = "loop_completed"


@dataclass
class _LoopState:
    is_looping: bool = True
    should_continue: bool = True
    current_milestone: MilestoneRef | None = None
    current_conversation_id: str | None = None
    unsubscribers: list[Callable[[], None]] = field(default_factory=list)


class AutonomousLoopDriver:
    """プロジェクトごとの自律ループを駆動するクラス。"""

    def __init__(
        self,
        agent_manager: AgentManager,
        roadmap: RoadmapProvider,
        instructions: InstructionGenerator,
    ) -> None:
        """AutonomousLoopDriver を初期化する。

        Args:
            agent_manager: エージェントマネージャー
            roadmap: 次の未完了項目を返すロードマッププロバイダー
            instructions: マイルストーンから指示を生成するジェネレーター
        """
        self.agent_manager = agent_manager
        self.roadmap = roadmap
        self.instructions = instructions
        self.events = EventChannel("autonomous_loop")
        self._loops: dict[str, _LoopState] = {}
        self._background: set[asyncio.Task] = set()

    def is_looping(self, project_id: str) -> bool:
        """ループが実行中かどうか。"""
        state = self._loops.get(project_id)
        return state is not None and state.is_looping

    def get_loop_state(self, project_id: str) -> AgentLoopState | None:
        """ループの状態を返す。ループが存在しない場合は None。"""
        state = self._loops.get(project_id)
        if state is None:
            return None
        return AgentLoopState(
            is_looping=state.is_looping,
            current_milestone=state.current_milestone,
            current_conversation_id=state.current_conversation_id,
        )

    def get_running_project_ids(self) -> list[str]:
        """ループ実行中のプロジェクトID一覧。"""
        return [pid for pid, state in self._loops.items() if state.is_looping]

    async def start_autonomous_loop(self, project_id: str) -> tuple[bool, str]:
        """自律ループを開始する。

        次の未完了項目がない場合はループを開始せずに成功を返す。

        Args:
            project_id: プロジェクトID

        Returns:
            (成功フラグ, メッセージ) のタプル
        """
        if self.is_looping(project_id):
            return False, f"プロジェクト {project_id} の自律ループは既に実行中です"
        if self.agent_manager.get_agent(project_id) is not None:
            return False, f"プロジェクト {project_id} のエージェントは既に実行中です"

        state = _LoopState()
        self._loops[project_id] = state

        try:
            milestone = await self.roadmap.get_next_item(project_id)
            if milestone is None:
                logger.info(f"プロジェクト {project_id} に未完了のマイルストーンはありません")
                self._cleanup(project_id)
                return True, "未完了のマイルストーンはありません"
            instructions = await self.instructions.generate(project_id, milestone)
        except Exception as e:
            logger.error(f"自律ループの準備に失敗しました（{project_id}）: {e}")
            self._cleanup(project_id)
            return False, f"自律ループの開始に失敗しました: {e}"

        events = self.agent_manager.events
        state.unsubscribers = [
            events.subscribe(AgentEvent.TURN_COMPLETE, _for_project(project_id, self._on_turn_complete)),
            events.subscribe(AgentEvent.EXIT, _for_project(project_id, self._on_exit)),
            events.subscribe(AgentEvent.SESSION_ID, _for_project(project_id, self._on_session_id)),
        ]

        success, message = await self.agent_manager.start_agent(project_id, instructions)
        if not success:
            self._cleanup(project_id)
            return False, message

        agent = self.agent_manager.get_agent(project_id)
        self._set_current_milestone(project_id, milestone, agent.session_id if agent else None)
        await self.events.emit(LoopEvent.MILESTONE_STARTED, project_id, milestone)
        logger.info(f"プロジェクト {project_id} の自律ループを開始しました（{milestone.milestone_id}）")
        return True, message

    async def stop_autonomous_loop(self, project_id: str) -> bool:
        """自律ループを停止し、エージェントも停止する。

        Returns:
            ループが存在して停止した場合 True
        """
        state = self._loops.get(project_id)
        if state is None:
            return False
        logger.info(
            f"プロジェクト {project_id} の自律ループを停止します"
            f"（milestone={state.current_milestone.milestone_id if state.current_milestone else None}）"
        )
        state.should_continue = False
        self._cleanup(project_id)
        await self.agent_manager.stop_agent(project_id)
        if self.agent_manager.is_queued(project_id):
            await self.agent_manager.remove_from_queue(project_id)
        return True

    async def stop_all(self) -> None:
        """全てのループを停止する。"""
        for project_id in list(self._loops.keys()):
            await self.stop_autonomous_loop(project_id)

    # ========== イベントハンドラ ==========

    async def _on_turn_complete(self, project_id: str, output: str) -> None:
        """ターン終了時に次の項目を送信する。"""
        state = self._loops.get(project_id)
        if state is None or not state.is_looping:
            return

        milestone = state.current_milestone
        completion = parse_completion_response(output)
        if completion is not None and milestone is not None:
            if not completion.is_complete:
                logger.error(f"マイルストーン {milestone.milestone_id} が失敗しました: {completion.reason}")
                await self.events.emit(LoopEvent.MILESTONE_FAILED, project_id, milestone, completion.reason)
                self._finish(project_id)
                return
            logger.info(f"マイルストーン {milestone.milestone_id} が完了しました: {completion.reason}")
            await self.events.emit(LoopEvent.MILESTONE_COMPLETED, project_id, milestone, completion.reason)

        if not state.should_continue:
            self._finish(project_id)
            return

        try:
            next_item = await self.roadmap.get_next_item(project_id)
            if next_item is None:
                logger.info(f"プロジェクト {project_id} のロードマップが完了しました")
                await self.events.emit(LoopEvent.LOOP_COMPLETED, project_id)
                self._finish(project_id)
                return
            instructions = await self.instructions.generate(project_id, next_item)
        except Exception as e:
            logger.error(f"次の項目の取得に失敗しました（{project_id}）: {e}")
            await self.events.emit(LoopEvent.MILESTONE_FAILED, project_id, milestone, str(e))
            self._finish(project_id)
            return

        # 停止要求がハンドラ実行中に来た場合は送信しない
        if self._loops.get(project_id) is not state:
            return

        if next_item != milestone:
            self._set_current_milestone(project_id, next_item, state.current_conversation_id)
            await self.events.emit(LoopEvent.MILESTONE_STARTED, project_id, next_item)

        if not await self.agent_manager.send_input(project_id, instructions):
            logger.warning(f"プロジェクト {project_id} への指示の送信に失敗しました")

    async def _on_exit(self, project_id: str, code: int | None) -> None:
        """エージェントが終了した場合はループを終了する。"""
        state = self._loops.get(project_id)
        if state is None:
            return
        reason = f"Agent exited with code {code}"
        logger.warning(f"自律ループ中のエージェントが終了しました（{project_id}）: {reason}")
        await self.events.emit(LoopEvent.MILESTONE_FAILED, project_id, state.current_milestone, reason)
        self._cleanup(project_id)

    async def _on_session_id(self, project_id: str, session_id: str) -> None:
        state = self._loops.get(project_id)
        if state is not None:
            state.current_conversation_id = session_id

    # ========== 内部 ==========

    def _set_current_milestone(
        self, project_id: str, milestone: MilestoneRef, conversation_id: str | None
    ) -> None:
        state = self._loops.get(project_id)
        if state is not None:
            state.current_milestone = milestone
            state.current_conversation_id = conversation_id

    def _finish(self, project_id: str) -> None:
        """ループを終了し、エージェントを別タスクで停止する。

        ハンドラはエージェントの読み取りタスク上で呼ばれるため、
        停止（読み取りタスクのキャンセルを含む）は別タスクで行う。
        """
        self._cleanup(project_id)
        task = asyncio.create_task(self.agent_manager.stop_agent(project_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _cleanup(self, project_id: str) -> None:
        state = self._loops.pop(project_id, None)
        if state is None:
            return
        state.is_looping = False
        for unsubscribe in state.unsubscribers:
            unsubscribe()
        logger.debug(f"プロジェクト {project_id} のループ状態を破棄しました")


def _for_project(project_id: str, handler: Callable[[str, Any], Awaitable[None]]) -> Callable:
    """指定プロジェクトのイベントだけをハンドラに渡すラッパーを返す。"""

    async def _handler(source_id: str, payload: Any) -> None:
        if source_id == project_id:
            await handler(source_id, payload)

    return _handler
