"""モデルのテスト。"""

from datetime import datetime

import pytest
from pydantic import ValidationError

from src.config.settings import PermissionConfig
from src.models.agent import (
    AgentConfig,
    AgentMessage,
    AgentMode,
    AgentStatus,
    FullStatus,
    MessageType,
    QueuedProject,
)
from src.models.loop import AgentLoopState, CompletionResponse
from src.models.ralph_loop import (
    IterationSummary,
    RalphLoopConfig,
    RalphLoopState,
    RalphLoopStatus,
    ReviewDecision,
    ReviewerFeedback,
)


class TestAgentModels:
    """エージェント関連モデルのテスト。"""

    def test_agent_config_defaults(self):
        """AgentConfig のデフォルト値をテスト。"""
        config = AgentConfig(agent_id="proj-a", project_path="/tmp/proj-a")

        assert config.mode == AgentMode.INTERACTIVE
        assert config.session_id is None
        assert config.resume_session is False
        assert config.single_turn is False
        assert isinstance(config.permission, PermissionConfig)
        assert config.permission.skip_permissions is True

    def test_agent_message_stores_enum_value(self):
        """AgentMessage の type が文字列として保存されることをテスト。"""
        message = AgentMessage(type=MessageType.STDOUT, content="hello")

        assert message.type == "stdout"
        assert message.tool_info is None
        assert isinstance(message.timestamp, datetime)

    def test_queued_project_defaults(self):
        """QueuedProject のデフォルト値をテスト。"""
        queued = QueuedProject(project_id="proj-a")

        assert queued.mode == AgentMode.AUTONOMOUS
        assert queued.reason == "max_concurrent_agents"
        assert queued.images == []

    def test_full_status_defaults(self):
        """FullStatus のデフォルトは停止中であることをテスト。"""
        status = FullStatus(project_id="proj-a")

        assert status.status == AgentStatus.STOPPED
        assert status.is_queued is False
        assert status.context_usage is None

    def test_status_enum_values(self):
        assert AgentStatus.RUNNING.value == "running"
        assert AgentMode.AUTONOMOUS.value == "autonomous"
        assert MessageType.QUESTION.value == "question"


class TestLoopModels:
    """自律ループモデルのテスト。"""

    def test_completion_response(self):
        """COMPLETE のみ完了と判定されることをテスト。"""
        assert CompletionResponse(status="COMPLETE").is_complete is True
        assert CompletionResponse(status="FAILED", reason="tests fail").is_complete is False

    def test_loop_state_defaults(self):
        state = AgentLoopState()
        assert state.is_looping is False
        assert state.current_milestone is None


class TestRalphLoopModels:
    """Ralph Loop モデルのテスト。"""

    @staticmethod
    def _config(**kwargs) -> RalphLoopConfig:
        values = {"max_turns": 3, "worker_model": "opus", "reviewer_model": "sonnet", "task_description": "task"}
        values.update(kwargs)
        return RalphLoopConfig(**values)

    def test_max_turns_must_be_positive(self):
        """max_turns は 1 以上であることをテスト。"""
        with pytest.raises(ValidationError):
            self._config(max_turns=0)

    def test_state_defaults(self):
        """RalphLoopState のデフォルト値をテスト。"""
        state = RalphLoopState(task_id="t1", project_id="proj-a", config=self._config())

        assert state.status == RalphLoopStatus.IDLE
        assert state.current_iteration == 0
        assert state.summaries == []
        assert state.feedback == []
        assert state.final_status is None
        assert state.is_terminal is False

    @pytest.mark.parametrize(
        ("status", "terminal"),
        [
            (RalphLoopStatus.COMPLETED, True),
            (RalphLoopStatus.FAILED, True),
            (RalphLoopStatus.PAUSED, False),
            (RalphLoopStatus.WORKER_RUNNING, False),
        ],
    )
    def test_is_terminal(self, status, terminal):
        """終了状態の判定をテスト。"""
        state = RalphLoopState(task_id="t1", project_id="proj-a", config=self._config(), status=status)
        assert state.is_terminal is terminal

    def test_summary_and_feedback_are_frozen(self):
        """追加済みのサマリーとフィードバックは変更できないことをテスト。"""
        summary = IterationSummary(iteration_number=1, worker_output="done")
        feedback = ReviewerFeedback(iteration_number=1, decision=ReviewDecision.APPROVED)

        with pytest.raises(ValidationError):
            summary.worker_output = "changed"
        with pytest.raises(ValidationError):
            feedback.feedback = "changed"

    def test_state_json_round_trip(self):
        """JSON に変換して復元できることをテスト。"""
        state = RalphLoopState(
            task_id="t1",
            project_id="proj-a",
            config=self._config(worker_system_prompt="be brief"),
            current_iteration=1,
            summaries=[IterationSummary(iteration_number=1, files_modified=["a.py"], tokens_used=10)],
            feedback=[ReviewerFeedback(iteration_number=1, decision=ReviewDecision.NEEDS_CHANGES)],
        )

        restored = RalphLoopState.model_validate(state.model_dump(mode="json"))

        assert restored.config.worker_system_prompt == "be brief"
        assert restored.summaries[0].files_modified == ["a.py"]
        assert restored.feedback[0].decision == ReviewDecision.NEEDS_CHANGES
