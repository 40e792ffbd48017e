"""Ralph Loop サービス。

Worker と Reviewer を交互に実行し、Reviewer が承認するか最大ターン数に達するまで
イテレーションを繰り返す。各フェーズの結果はリポジトリに逐次保存されるため、
Worker と Reviewer の間でプロセスが落ちても失うのは最大でレビュー1回分となる。
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from src.config.settings import Settings
from src.managers.collaborators import ProjectResolver
from src.managers.event_channel import EventChannel
from src.managers.process_runner import ProcessSpawner
from src.models.ralph_loop import (
    IterationSummary,
    RalphLoopConfig,
    RalphLoopFinalStatus,
    RalphLoopState,
    RalphLoopStatus,
    ReviewDecision,
    ReviewerFeedback,
)

from .context_initializer import ContextInitializer
from .repository import RalphLoopRepository
from .reviewer_agent import ReviewerAgent
from .worker_agent import AgentStoppedError, SingleTurnAgent, WorkerAgent

logger = logging.getLogger(__name__)

# Worker/Reviewer を生成する関数（テスト時に差し替える）
AgentFactory = Callable[..., SingleTurnAgent]

# 履歴の掃除で削除しない状態
_IN_PROGRESS_STATUSES = (
    RalphLoopStatus.WORKER_RUNNING,
    RalphLoopStatus.REVIEWER_RUNNING,
    RalphLoopStatus.PAUSED,
)


class RalphLoopEvent:
    """Ralph Loop が発行するイベント名。引数は (project_id, task_id, ...) の形。"""

    STATUS_CHANGE = "status_change"
    ITERATION_START = "iteration_start"
    OUTPUT = "output"
    TOOL_USE = "tool_use"
    WORKER_COMPLETE = "worker_complete"
    REVIEWER_COMPLETE = "reviewer_complete"
    LOOP_COMPLETE = "loop_complete"
    LOOP_ERROR = "loop_error"
    LOOP_DELETED = "loop_deleted"


@dataclass
class _ActiveLoop:
    project_id: str
    task_id: str
    should_continue: bool = True
    phase: RalphLoopStatus | None = None
    agent: SingleTurnAgent | None = None
    task: asyncio.Task | None = None
    unsubscribers: list[Callable[[], None]] = field(default_factory=list)


class RalphLoopService:
    """Ralph Loop の実行と状態管理を行うクラス。"""

    def __init__(
        self,
        settings: Settings,
        project_resolver: ProjectResolver,
        repository: RalphLoopRepository | None = None,
        context_initializer: ContextInitializer | None = None,
        worker_factory: AgentFactory | None = None,
        reviewer_factory: AgentFactory | None = None,
        spawner: ProcessSpawner | None = None,
    ) -> None:
        """RalphLoopService を初期化する。

        Args:
            settings: アプリケーション設定
            project_resolver: プロジェクトIDからパスを解決するオブジェクト
            repository: 状態の保存先
            context_initializer: プロンプト生成
            worker_factory: Worker の生成関数
            reviewer_factory: Reviewer の生成関数
            spawner: プロセス起動関数
        """
        self.settings = settings
        self.project_resolver = project_resolver
        self.repository = repository or RalphLoopRepository(project_resolver, settings)
        self.context_initializer = context_initializer or ContextInitializer(settings.ralph_history_window)
        self.worker_factory = worker_factory or WorkerAgent
        self.reviewer_factory = reviewer_factory or ReviewerAgent
        self.spawner = spawner
        self.events = EventChannel("ralph_loop")
        self._active: dict[tuple[str, str], _ActiveLoop] = {}

    def build_config(
        self,
        task_description: str,
        max_turns: int | None = None,
        worker_model: str | None = None,
        reviewer_model: str | None = None,
        **overrides: str | None,
    ) -> RalphLoopConfig:
        """設定のデフォルト値を使ってループ設定を作る。"""
        return RalphLoopConfig(
            task_description=task_description,
            max_turns=max_turns or self.settings.ralph_default_max_turns,
            worker_model=worker_model or self.settings.ralph_default_worker_model,
            reviewer_model=reviewer_model or self.settings.ralph_default_reviewer_model,
            **{k: v for k, v in overrides.items() if v is not None},
        )

    # ========== コマンド ==========

    async def start(self, project_id: str, config: RalphLoopConfig) -> RalphLoopState | None:
        """新しいループを作成し、バックグラウンドで実行を開始する。

        Args:
            project_id: プロジェクトID
            config: ループ設定

        Returns:
            作成した状態。プロジェクトが見つからない場合は None
        """
        if self.project_resolver.get_project_path(project_id) is None:
            logger.warning(f"プロジェクト {project_id} が見つかりません")
            return None

        task_id = str(uuid.uuid4())
        state = await self.repository.create(
            RalphLoopState(task_id=task_id, project_id=project_id, config=config)
        )
        logger.info(f"Ralph Loop を開始します: project={project_id} task={task_id} max_turns={config.max_turns}")

        await self._cleanup_old_loops(project_id, exclude_task_id=task_id)
        self._launch(project_id, task_id)
        return state

    async def pause(self, project_id: str, task_id: str) -> bool:
        """ループを一時停止する。実行中のフェーズは最後まで実行される。"""
        state = await self.repository.find_by_id(project_id, task_id)
        if state is None or state.is_terminal:
            return False
        active = self._active.get((project_id, task_id))
        if active is not None:
            active.should_continue = False
        await self._update_status(project_id, task_id, RalphLoopStatus.PAUSED)
        logger.info(f"Ralph Loop を一時停止しました: task={task_id}")
        return True

    async def resume(self, project_id: str, task_id: str) -> bool:
        """一時停止中、または中断されたループを再開する。

        再起動などで実行が途切れたループは worker_running / reviewer_running のまま
        保存されている。このサービスで実行中でなければ、保存済みの地点から再開する。
        レビュー前のサマリーが残っている場合は Reviewer から始める。

        Returns:
            再開した場合 True（存在しない、終了済み、または実行中の場合 False）
        """
        state = await self.repository.find_by_id(project_id, task_id)
        if state is None:
            return False
        if state.is_terminal:
            logger.warning(f"終了済みのため再開できません: task={task_id} status={state.status}")
            return False

        active = self._active.get((project_id, task_id))
        if active is not None:
            if state.status != RalphLoopStatus.PAUSED:
                logger.warning(f"既に実行中のため再開できません: task={task_id} status={state.status}")
                return False
            # 実行中のフェーズがまだ終わっていない場合はそのまま続行させる
            active.should_continue = True
            await self._update_status(project_id, task_id, active.phase or RalphLoopStatus.IDLE)
        else:
            if state.status != RalphLoopStatus.PAUSED:
                logger.info(f"中断されたループを再開します: task={task_id} status={state.status}")
            await self._update_status(project_id, task_id, RalphLoopStatus.IDLE)
            self._launch(project_id, task_id)
        logger.info(f"Ralph Loop を再開しました: task={task_id}")
        return True

    async def stop(self, project_id: str, task_id: str) -> bool:
        """ループを停止する。保存済みのサマリーとフィードバックは残る。"""
        active = self._active.pop((project_id, task_id), None)
        if active is not None:
            active.should_continue = False
            if active.agent is not None:
                await active.agent.stop()

        state = await self.repository.find_by_id(project_id, task_id)
        if state is None:
            return False
        if not state.is_terminal:
            await self.repository.update(
                project_id,
                task_id,
                status=RalphLoopStatus.COMPLETED,
                final_status=RalphLoopFinalStatus.CRITICAL_FAILURE,
                error="Loop stopped by user",
            )
            await self._emit_status(project_id, task_id)
        logger.info(f"Ralph Loop を停止しました: task={task_id}")
        return True

    async def get_state(self, project_id: str, task_id: str) -> RalphLoopState | None:
        """ループの状態を返す。"""
        return await self.repository.find_by_id(project_id, task_id)

    async def list_by_project(self, project_id: str) -> list[RalphLoopState]:
        """プロジェクトのループ一覧を新しい順に返す。"""
        return await self.repository.find_by_project(project_id)

    async def delete(self, project_id: str, task_id: str) -> bool:
        """ループを停止して削除する。"""
        await self.stop(project_id, task_id)
        deleted = await self.repository.delete(project_id, task_id)
        if deleted:
            await self.events.emit(RalphLoopEvent.LOOP_DELETED, project_id, task_id)
        return deleted

    async def stop_all(self) -> None:
        """実行中の全ループを停止する（シャットダウン用）。"""
        for project_id, task_id in list(self._active.keys()):
            await self.stop(project_id, task_id)

    def is_active(self, project_id: str, task_id: str) -> bool:
        return (project_id, task_id) in self._active

    # ========== ループ本体 ==========

    def _launch(self, project_id: str, task_id: str) -> None:
        active = _ActiveLoop(project_id=project_id, task_id=task_id)
        self._active[(project_id, task_id)] = active
        active.task = asyncio.create_task(self._drive(active))

    async def _drive(self, active: _ActiveLoop) -> None:
        """一時停止・停止・終了までイテレーションを進める。"""
        project_id, task_id = active.project_id, active.task_id
        try:
            while active.should_continue:
                state = await self.repository.find_by_id(project_id, task_id)
                if state is None or state.is_terminal:
                    break

                # Worker のサマリーに対するレビューが未実施
                if len(state.summaries) == len(state.feedback) + 1:
                    feedback = await self._run_reviewer_phase(active, state)
                    if feedback is None or not active.should_continue:
                        break
                    if await self._apply_decision(project_id, task_id, feedback):
                        break
                    continue

                if state.feedback and state.feedback[-1].decision != ReviewDecision.NEEDS_CHANGES:
                    await self._apply_decision(project_id, task_id, state.feedback[-1])
                    break

                if len(state.summaries) >= state.current_iteration:
                    if state.current_iteration >= state.config.max_turns:
                        await self._complete(
                            project_id, task_id, RalphLoopStatus.FAILED, RalphLoopFinalStatus.MAX_TURNS_REACHED
                        )
                        break
                    state = await self.repository.update(
                        project_id, task_id, current_iteration=state.current_iteration + 1
                    )
                    if state is None:
                        break
                    await self.events.emit(
                        RalphLoopEvent.ITERATION_START, project_id, task_id, state.current_iteration
                    )

                await self._run_worker_phase(active, state)
        except AgentStoppedError:
            logger.info(f"Ralph Loop の実行中のエージェントを停止しました: task={task_id}")
        except Exception as e:
            if active.should_continue:
                await self._handle_error(project_id, task_id, e)
            else:
                logger.info(f"停止後のエラーを無視します: task={task_id}: {e}")
        finally:
            if self._active.get((project_id, task_id)) is active:
                del self._active[(project_id, task_id)]

    async def _run_worker_phase(self, active: _ActiveLoop, state: RalphLoopState) -> IterationSummary | None:
        """Worker を実行し、サマリーを保存する。"""
        if not await self._enter_phase(active, RalphLoopStatus.WORKER_RUNNING):
            return None
        state = await self.repository.find_by_id(state.project_id, state.task_id) or state

        worker = self._create_agent(self.worker_factory, active, state, "worker")
        try:
            summary = await worker.run(state)
        finally:
            self._leave_phase(active)

        await self.repository.add_summary(state.project_id, state.task_id, summary)
        await self.events.emit(RalphLoopEvent.WORKER_COMPLETE, state.project_id, state.task_id, summary)
        logger.info(f"Worker イテレーション {summary.iteration_number} が完了しました: task={state.task_id}")
        return summary

    async def _run_reviewer_phase(self, active: _ActiveLoop, state: RalphLoopState) -> ReviewerFeedback | None:
        """Reviewer を実行し、フィードバックを保存する。"""
        if not await self._enter_phase(active, RalphLoopStatus.REVIEWER_RUNNING):
            return None
        state = await self.repository.find_by_id(state.project_id, state.task_id) or state

        reviewer = self._create_agent(self.reviewer_factory, active, state, "reviewer")
        try:
            feedback = await reviewer.run(state, state.summaries[-1].worker_output)
        finally:
            self._leave_phase(active)

        await self.repository.add_feedback(state.project_id, state.task_id, feedback)
        await self.events.emit(RalphLoopEvent.REVIEWER_COMPLETE, state.project_id, state.task_id, feedback)
        logger.info(
            f"Reviewer イテレーション {feedback.iteration_number} が完了しました: "
            f"task={state.task_id} decision={feedback.decision}"
        )
        return feedback

    async def _apply_decision(self, project_id: str, task_id: str, feedback: ReviewerFeedback) -> bool:
        """レビュー結果に応じてループを終了する。終了した場合 True。"""
        if feedback.decision == ReviewDecision.APPROVED:
            await self._complete(project_id, task_id, RalphLoopStatus.COMPLETED, RalphLoopFinalStatus.APPROVED)
            return True
        if feedback.decision == ReviewDecision.REJECTED:
            await self._complete(project_id, task_id, RalphLoopStatus.FAILED, RalphLoopFinalStatus.CRITICAL_FAILURE)
            return True
        return False

    async def _enter_phase(self, active: _ActiveLoop, phase: RalphLoopStatus) -> bool:
        if not active.should_continue:
            return False
        active.phase = phase
        await self._update_status(active.project_id, active.task_id, phase)
        return True

    def _leave_phase(self, active: _ActiveLoop) -> None:
        active.agent = None
        active.phase = None
        for unsubscribe in active.unsubscribers:
            unsubscribe()
        active.unsubscribers = []

    def _create_agent(
        self, factory: AgentFactory, active: _ActiveLoop, state: RalphLoopState, role: str
    ) -> SingleTurnAgent:
        project_path = self.project_resolver.get_project_path(state.project_id)
        if project_path is None:
            raise RuntimeError(f"Project path not found for: {state.project_id}")

        config = state.config
        agent = factory(
            agent_id=f"ralph-{role}-{state.task_id}",
            project_path=project_path,
            model=config.worker_model if role == "worker" else config.reviewer_model,
            settings=self.settings,
            context_initializer=self.context_initializer,
            append_system_prompt=(
                config.worker_system_prompt if role == "worker" else config.reviewer_system_prompt
            ),
            spawner=self.spawner,
        )
        project_id, task_id = state.project_id, state.task_id

        async def _on_output(content: str) -> None:
            await self.events.emit(RalphLoopEvent.OUTPUT, project_id, task_id, role, content)

        async def _on_tool_use(tool_info: object) -> None:
            await self.events.emit(RalphLoopEvent.TOOL_USE, project_id, task_id, role, tool_info)

        active.unsubscribers = [
            agent.events.subscribe("output", _on_output),
            agent.events.subscribe("tool_use", _on_tool_use),
        ]
        active.agent = agent
        return agent

    async def _complete(
        self,
        project_id: str,
        task_id: str,
        status: RalphLoopStatus,
        final_status: RalphLoopFinalStatus,
    ) -> None:
        await self.repository.update(project_id, task_id, status=status, final_status=final_status)
        await self._emit_status(project_id, task_id)
        await self.events.emit(RalphLoopEvent.LOOP_COMPLETE, project_id, task_id, final_status)
        logger.info(f"Ralph Loop が終了しました: task={task_id} status={status.value} final={final_status.value}")

    async def _handle_error(self, project_id: str, task_id: str, error: Exception) -> None:
        message = str(error)
        logger.error(f"Ralph Loop でエラーが発生しました: task={task_id}: {message}")
        await self.repository.update(
            project_id,
            task_id,
            status=RalphLoopStatus.FAILED,
            final_status=RalphLoopFinalStatus.CRITICAL_FAILURE,
            error=message,
        )
        await self._emit_status(project_id, task_id)
        await self.events.emit(RalphLoopEvent.LOOP_ERROR, project_id, task_id, message)

    async def _update_status(self, project_id: str, task_id: str, status: RalphLoopStatus) -> None:
        await self.repository.update(project_id, task_id, status=status)
        await self._emit_status(project_id, task_id)

    async def _emit_status(self, project_id: str, task_id: str) -> None:
        state = await self.repository.find_by_id(project_id, task_id)
        if state is None:
            return
        await self.events.emit(
            RalphLoopEvent.STATUS_CHANGE,
            project_id,
            task_id,
            state.status,
            state.current_iteration,
            state.config.max_turns,
        )

    async def _cleanup_old_loops(self, project_id: str, exclude_task_id: str) -> None:
        """履歴の上限を超えた古いループを削除する（実行中のものは残す）。"""
        limit = self.settings.ralph_history_limit
        try:
            loops = await self.repository.find_by_project(project_id)
            for old in loops[limit:]:
                if old.task_id == exclude_task_id or old.status in _IN_PROGRESS_STATUSES:
                    continue
                if self.is_active(project_id, old.task_id):
                    continue
                await self.repository.delete(project_id, old.task_id)
                logger.debug(f"古い Ralph Loop を削除しました: task={old.task_id}")
        except OSError as e:
            logger.error(f"古い Ralph Loop の削除に失敗しました: project={project_id}: {e}")
