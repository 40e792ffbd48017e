"""RalphLoopService のテスト（Worker/Reviewer はフェイク）。"""

import asyncio

import pytest

from src.managers.event_channel import EventChannel
from src.managers.ralph_loop import RalphLoopEvent, RalphLoopService
from src.managers.ralph_loop.repository import RalphLoopRepository
from src.managers.ralph_loop.worker_agent import AgentStoppedError
from src.models.ralph_loop import (
    IterationSummary,
    RalphLoopConfig,
    RalphLoopFinalStatus,
    RalphLoopState,
    RalphLoopStatus,
    ReviewDecision,
    ReviewerFeedback,
)
from tests.conftest import settle, wait_until


class Script:
    """フェイクエージェントの振る舞いを決める台本。"""

    def __init__(self, decisions: list[ReviewDecision] | None = None) -> None:
        self.decisions = list(decisions or [])
        self.worker_gate: asyncio.Event | None = None
        self.worker_error: Exception | None = None
        self.workers: list["FakeWorker"] = []
        self.reviewers: list["FakeReviewer"] = []


class _FakeAgent:
    def __init__(self, script: Script, **kwargs) -> None:
        self.script = script
        self.kwargs = kwargs
        self.events = EventChannel(kwargs["agent_id"])
        self._stopped = asyncio.Event()

    async def stop(self) -> None:
        self._stopped.set()

    async def _wait(self, gate: asyncio.Event | None) -> None:
        if gate is None:
            return
        waiters = [asyncio.ensure_future(gate.wait()), asyncio.ensure_future(self._stopped.wait())]
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for waiter in waiters:
            waiter.cancel()
        if self._stopped.is_set():
            raise AgentStoppedError("stopped")


class FakeWorker(_FakeAgent):
    async def run(self, state: RalphLoopState) -> IterationSummary:
        await self.events.emit("output", f"working on {state.current_iteration}")
        await self._wait(self.script.worker_gate)
        if self.script.worker_error is not None:
            raise self.script.worker_error
        return IterationSummary(iteration_number=state.current_iteration, worker_output=f"work {state.current_iteration}")


class FakeReviewer(_FakeAgent):
    async def run(self, state: RalphLoopState, worker_output: str) -> ReviewerFeedback:
        decision = self.script.decisions.pop(0) if self.script.decisions else ReviewDecision.NEEDS_CHANGES
        return ReviewerFeedback(
            iteration_number=state.current_iteration,
            decision=decision,
            feedback=f"review of {worker_output}",
        )


class _EventRecorder:
    def __init__(self, service: RalphLoopService) -> None:
        self.events: list[tuple] = []
        for name in (
            RalphLoopEvent.STATUS_CHANGE,
            RalphLoopEvent.ITERATION_START,
            RalphLoopEvent.OUTPUT,
            RalphLoopEvent.WORKER_COMPLETE,
            RalphLoopEvent.REVIEWER_COMPLETE,
            RalphLoopEvent.LOOP_COMPLETE,
            RalphLoopEvent.LOOP_ERROR,
            RalphLoopEvent.LOOP_DELETED,
        ):
            service.events.subscribe(name, self._make_handler(name))

    def _make_handler(self, name: str):
        def _handler(*args):
            self.events.append((name, *args))

        return _handler

    def of(self, name: str) -> list[tuple]:
        return [e for e in self.events if e[0] == name]


@pytest.fixture
def script():
    return Script()


def _make_service(settings, project_resolver, script: Script) -> RalphLoopService:
    def _worker(**kwargs):
        worker = FakeWorker(script, **kwargs)
        script.workers.append(worker)
        return worker

    def _reviewer(**kwargs):
        reviewer = FakeReviewer(script, **kwargs)
        script.reviewers.append(reviewer)
        return reviewer

    return RalphLoopService(settings, project_resolver, worker_factory=_worker, reviewer_factory=_reviewer)


@pytest.fixture
async def service(settings, project_resolver, script):
    service = _make_service(settings, project_resolver, script)
    try:
        yield service
    finally:
        await service.stop_all()
        await settle()


async def _run_to_end(service: RalphLoopService, state: RalphLoopState) -> RalphLoopState:
    await wait_until(lambda: not service.is_active(state.project_id, state.task_id))
    return await service.get_state(state.project_id, state.task_id)


class TestBuildConfig:
    """build_config のテスト。"""

    def test_defaults_from_settings(self, service, settings):
        """省略した値は設定のデフォルトになることをテスト。"""
        config = service.build_config("task", worker_system_prompt=None, reviewer_system_prompt="strict")
        assert config.max_turns == settings.ralph_default_max_turns
        assert config.worker_model == settings.ralph_default_worker_model
        assert config.reviewer_model == settings.ralph_default_reviewer_model
        assert config.worker_system_prompt is None
        assert config.reviewer_system_prompt == "strict"

    def test_explicit_values(self, service):
        config = service.build_config("task", max_turns=9, worker_model="haiku", reviewer_model="opus")
        assert (config.max_turns, config.worker_model, config.reviewer_model) == (9, "haiku", "opus")


class TestRalphLoopRun:
    """ループの実行のテスト。"""

    async def test_max_turns_reached(self, service, script):
        """承認されないまま最大ターンに達すると失敗することをテスト。"""
        recorder = _EventRecorder(service)
        state = await service.start("proj-a", service.build_config("task", max_turns=2))

        final = await _run_to_end(service, state)

        assert final.status == RalphLoopStatus.FAILED
        assert final.final_status == RalphLoopFinalStatus.MAX_TURNS_REACHED
        assert final.current_iteration == 2
        assert [s.iteration_number for s in final.summaries] == [1, 2]
        assert [f.iteration_number for f in final.feedback] == [1, 2]
        assert [e[3] for e in recorder.of(RalphLoopEvent.ITERATION_START)] == [1, 2]
        assert len(recorder.of(RalphLoopEvent.WORKER_COMPLETE)) == 2
        assert len(recorder.of(RalphLoopEvent.REVIEWER_COMPLETE)) == 2
        assert recorder.of(RalphLoopEvent.LOOP_COMPLETE)[-1][3] == RalphLoopFinalStatus.MAX_TURNS_REACHED

    async def test_approved(self, service, script):
        """承認されると完了することをテスト。"""
        script.decisions = [ReviewDecision.NEEDS_CHANGES, ReviewDecision.APPROVED]
        state = await service.start("proj-a", service.build_config("task", max_turns=5))

        final = await _run_to_end(service, state)

        assert final.status == RalphLoopStatus.COMPLETED
        assert final.final_status == RalphLoopFinalStatus.APPROVED
        assert len(final.summaries) == 2
        assert final.feedback[0].feedback == "review of work 1"

    async def test_rejected(self, service, script):
        """却下されると致命的な失敗になることをテスト。"""
        script.decisions = [ReviewDecision.REJECTED]
        state = await service.start("proj-a", service.build_config("task"))

        final = await _run_to_end(service, state)

        assert final.status == RalphLoopStatus.FAILED
        assert final.final_status == RalphLoopFinalStatus.CRITICAL_FAILURE
        assert len(final.summaries) == 1

    async def test_worker_error(self, service, script):
        """Worker のエラーでループが失敗することをテスト。"""
        recorder = _EventRecorder(service)
        script.worker_error = RuntimeError("Worker process exited with code 1")
        state = await service.start("proj-a", service.build_config("task"))

        final = await _run_to_end(service, state)

        assert final.status == RalphLoopStatus.FAILED
        assert final.final_status == RalphLoopFinalStatus.CRITICAL_FAILURE
        assert final.error == "Worker process exited with code 1"
        assert recorder.of(RalphLoopEvent.LOOP_ERROR)[-1][3] == "Worker process exited with code 1"

    async def test_agents_receive_role_settings(self, service, script):
        """Worker/Reviewer にそれぞれのモデルとシステムプロンプトが渡ることをテスト。"""
        script.decisions = [ReviewDecision.APPROVED]
        config = service.build_config(
            "task", worker_model="opus", reviewer_model="sonnet", worker_system_prompt="w", reviewer_system_prompt="r"
        )
        state = await service.start("proj-a", config)
        await _run_to_end(service, state)

        worker_kwargs = script.workers[0].kwargs
        reviewer_kwargs = script.reviewers[0].kwargs
        assert (worker_kwargs["model"], worker_kwargs["append_system_prompt"]) == ("opus", "w")
        assert (reviewer_kwargs["model"], reviewer_kwargs["append_system_prompt"]) == ("sonnet", "r")
        assert worker_kwargs["project_path"].endswith("proj-a")
        assert worker_kwargs["agent_id"] == f"ralph-worker-{state.task_id}"

    async def test_output_is_forwarded(self, service, script):
        """Worker の出力がロールと共に転送されることをテスト。"""
        recorder = _EventRecorder(service)
        script.decisions = [ReviewDecision.APPROVED]
        state = await service.start("proj-a", service.build_config("task"))
        await _run_to_end(service, state)

        assert recorder.of(RalphLoopEvent.OUTPUT) == [
            (RalphLoopEvent.OUTPUT, "proj-a", state.task_id, "worker", "working on 1")
        ]

    async def test_unknown_project(self, service):
        """存在しないプロジェクトでは開始しないことをテスト。"""
        assert await service.start("missing", service.build_config("task")) is None


class TestPauseResumeStop:
    """一時停止・再開・停止のテスト。"""

    async def test_pause_then_resume_runs_pending_review(self, service, script):
        """一時停止中に終わった Worker の結果は再開後にレビューされることをテスト。"""
        script.worker_gate = asyncio.Event()
        script.decisions = [ReviewDecision.APPROVED]
        state = await service.start("proj-a", service.build_config("task"))
        await wait_until(lambda: script.workers)

        assert await service.pause("proj-a", state.task_id) is True
        script.worker_gate.set()
        paused = await _run_to_end(service, state)

        assert paused.status == RalphLoopStatus.PAUSED
        assert len(paused.summaries) == 1
        assert paused.feedback == []
        assert script.reviewers == []

        assert await service.resume("proj-a", state.task_id) is True
        final = await _run_to_end(service, state)

        assert final.status == RalphLoopStatus.COMPLETED
        assert len(script.workers) == 1
        assert len(final.feedback) == 1

    async def test_resume_while_phase_running(self, service, script):
        """フェーズの実行中に再開した場合はそのまま続行することをテスト。"""
        script.worker_gate = asyncio.Event()
        script.decisions = [ReviewDecision.APPROVED]
        state = await service.start("proj-a", service.build_config("task"))
        await wait_until(lambda: script.workers)

        await service.pause("proj-a", state.task_id)
        assert await service.resume("proj-a", state.task_id) is True
        current = await service.get_state("proj-a", state.task_id)
        assert current.status == RalphLoopStatus.WORKER_RUNNING

        script.worker_gate.set()
        final = await _run_to_end(service, state)
        assert final.status == RalphLoopStatus.COMPLETED
        assert len(script.workers) == 1

    async def test_resume_rejects_running_loop(self, service, script):
        """実行中のループは再開できないことをテスト。"""
        script.worker_gate = asyncio.Event()
        state = await service.start("proj-a", service.build_config("task"))
        await wait_until(lambda: script.workers)

        assert await service.resume("proj-a", state.task_id) is False
        assert len(script.workers) == 1

    async def test_resume_rejects_terminal_loop(self, service, script):
        """終了済みのループは再開できないことをテスト。"""
        script.decisions = [ReviewDecision.APPROVED]
        state = await service.start("proj-a", service.build_config("task"))
        await _run_to_end(service, state)

        assert await service.resume("proj-a", state.task_id) is False
        assert await service.pause("proj-a", state.task_id) is False
        assert await service.resume("proj-a", "missing") is False

    async def test_stop_interrupts_worker(self, service, script):
        """停止すると実行中の Worker が止まり、停止理由が記録されることをテスト。"""
        script.worker_gate = asyncio.Event()
        state = await service.start("proj-a", service.build_config("task"))
        await wait_until(lambda: script.workers)

        assert await service.stop("proj-a", state.task_id) is True
        await settle()

        final = await service.get_state("proj-a", state.task_id)
        assert final.status == RalphLoopStatus.COMPLETED
        assert final.final_status == RalphLoopFinalStatus.CRITICAL_FAILURE
        assert final.error == "Loop stopped by user"
        assert final.summaries == []
        assert not service.is_active("proj-a", state.task_id)

    async def test_stop_terminal_loop_keeps_result(self, service, script):
        """終了済みのループを停止しても結果は変わらないことをテスト。"""
        script.decisions = [ReviewDecision.APPROVED]
        state = await service.start("proj-a", service.build_config("task"))
        await _run_to_end(service, state)

        assert await service.stop("proj-a", state.task_id) is True
        final = await service.get_state("proj-a", state.task_id)
        assert final.final_status == RalphLoopFinalStatus.APPROVED

    async def test_stop_missing(self, service):
        assert await service.stop("proj-a", "missing") is False


class TestHistory:
    """一覧・削除・履歴の掃除のテスト。"""

    async def test_delete(self, service, script):
        """削除で状態が消え、イベントが発行されることをテスト。"""
        recorder = _EventRecorder(service)
        script.worker_gate = asyncio.Event()
        state = await service.start("proj-a", service.build_config("task"))
        await wait_until(lambda: script.workers)

        assert await service.delete("proj-a", state.task_id) is True
        await settle()

        assert await service.get_state("proj-a", state.task_id) is None
        assert recorder.of(RalphLoopEvent.LOOP_DELETED) == [(RalphLoopEvent.LOOP_DELETED, "proj-a", state.task_id)]
        assert await service.delete("proj-a", state.task_id) is False

    async def test_list_by_project(self, service, script):
        """プロジェクトのループ一覧をテスト。"""
        script.decisions = [ReviewDecision.APPROVED, ReviewDecision.APPROVED]
        first = await service.start("proj-a", service.build_config("one"))
        await _run_to_end(service, first)
        second = await service.start("proj-a", service.build_config("two"))
        await _run_to_end(service, second)

        loops = await service.list_by_project("proj-a")
        assert [s.task_id for s in loops] == [second.task_id, first.task_id]
        assert await service.list_by_project("proj-b") == []

    async def test_old_loops_are_cleaned_up(self, settings, project_resolver, script):
        """履歴の上限を超えた終了済みループが削除されることをテスト。"""
        settings = settings.model_copy(update={"ralph_history_limit": 1})

        def _worker(**kwargs):
            return FakeWorker(script, **kwargs)

        def _reviewer(**kwargs):
            return FakeReviewer(script, **kwargs)

        service = RalphLoopService(settings, project_resolver, worker_factory=_worker, reviewer_factory=_reviewer)
        script.decisions = [ReviewDecision.APPROVED, ReviewDecision.APPROVED]

        first = await service.start("proj-a", service.build_config("one"))
        await _run_to_end(service, first)
        second = await service.start("proj-a", service.build_config("two"))
        await _run_to_end(service, second)

        assert [s.task_id for s in await service.list_by_project("proj-a")] == [second.task_id]


class TestCrashRecovery:
    """再起動で中断されたループの再開のテスト。"""

    async def _persist_crashed(self, settings, project_resolver, status: RalphLoopStatus, summaries: int) -> None:
        """別プロセスが実行途中で落ちた状態を保存する。"""
        repository = RalphLoopRepository(project_resolver, settings)
        config = RalphLoopConfig(
            task_description="task",
            max_turns=3,
            worker_model=settings.ralph_default_worker_model,
            reviewer_model=settings.ralph_default_reviewer_model,
        )
        await repository.create(RalphLoopState(task_id="crashed", project_id="proj-a", config=config))
        await repository.update("proj-a", "crashed", current_iteration=1)
        for number in range(1, summaries + 1):
            await repository.add_summary(
                "proj-a", "crashed", IterationSummary(iteration_number=number, worker_output="saved work")
            )
        await repository.update("proj-a", "crashed", status=status)

    async def test_resume_reviews_unreviewed_summary(self, settings, project_resolver, script):
        """レビュー中に中断した場合は Worker を再実行せずにレビューすることをテスト。"""
        await self._persist_crashed(settings, project_resolver, RalphLoopStatus.REVIEWER_RUNNING, summaries=1)
        script.decisions = [ReviewDecision.APPROVED]
        service = _make_service(settings, project_resolver, script)
        try:
            assert await service.resume("proj-a", "crashed") is True
            final = await _run_to_end(service, await service.get_state("proj-a", "crashed"))
        finally:
            await service.stop_all()

        assert final.status == RalphLoopStatus.COMPLETED
        assert final.final_status == RalphLoopFinalStatus.APPROVED
        assert script.workers == []
        assert len(script.reviewers) == 1
        assert final.feedback[0].feedback == "review of saved work"

    async def test_resume_reruns_unfinished_iteration(self, settings, project_resolver, script):
        """Worker の実行中に中断した場合は同じイテレーションを再実行することをテスト。"""
        await self._persist_crashed(settings, project_resolver, RalphLoopStatus.WORKER_RUNNING, summaries=0)
        script.decisions = [ReviewDecision.APPROVED]
        service = _make_service(settings, project_resolver, script)
        try:
            assert await service.resume("proj-a", "crashed") is True
            final = await _run_to_end(service, await service.get_state("proj-a", "crashed"))
        finally:
            await service.stop_all()

        assert final.status == RalphLoopStatus.COMPLETED
        assert final.current_iteration == 1
        assert [s.iteration_number for s in final.summaries] == [1]
        assert len(script.workers) == 1
