"""Ralph Loop モデル定義。

Worker と Reviewer を交互に実行し、レビューで承認されるまで
（または最大ターン数に達するまで）反復するループの状態。
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class RalphLoopStatus(str, Enum):
    """Ralph Loop の状態。"""

    IDLE = "idle"
    """開始前、またはイテレーション間"""

    WORKER_RUNNING = "worker_running"
    """Worker 実行中"""

    REVIEWER_RUNNING = "reviewer_running"
    """Reviewer 実行中"""

    PAUSED = "paused"
    """一時停止中（イテレーション間でのみ停止する）"""

    COMPLETED = "completed"
    """完了（承認、またはユーザーによる停止）"""

    FAILED = "failed"
    """失敗（最大ターン到達、却下、エラー）"""


class RalphLoopFinalStatus(str, Enum):
    """Ralph Loop の最終結果。"""

    APPROVED = "approved"
    MAX_TURNS_REACHED = "max_turns_reached"
    CRITICAL_FAILURE = "critical_failure"


class ReviewDecision(str, Enum):
    """Reviewer の判定。"""

    APPROVED = "approved"
    """承認（ループ完了）"""

    NEEDS_CHANGES = "needs_changes"
    """修正が必要（次のイテレーションへ）"""

    REJECTED = "rejected"
    """却下（致命的な失敗としてループ終了）"""


TERMINAL_STATUSES = (RalphLoopStatus.COMPLETED, RalphLoopStatus.FAILED)


class RalphLoopConfig(BaseModel):
    """Ralph Loop の実行設定。"""

    max_turns: int = Field(ge=1, description="Worker/Reviewer の最大イテレーション数")
    worker_model: str = Field(description="Worker が使用するモデル")
    reviewer_model: str = Field(description="Reviewer が使用するモデル")
    task_description: str = Field(description="Worker が実装するタスクの説明")
    worker_prompt_template: str | None = Field(
        default=None, description="Worker プロンプトテンプレートの上書き"
    )
    reviewer_prompt_template: str | None = Field(
        default=None, description="Reviewer プロンプトテンプレートの上書き"
    )
    worker_system_prompt: str | None = Field(
        default=None, description="Worker に追加するシステムプロンプト"
    )
    reviewer_system_prompt: str | None = Field(
        default=None, description="Reviewer に追加するシステムプロンプト"
    )


class IterationSummary(BaseModel):
    """Worker イテレーションのサマリー。追加後は変更しない。"""

    model_config = ConfigDict(frozen=True)

    iteration_number: int
    timestamp: datetime = Field(default_factory=datetime.now)
    worker_output: str = ""
    files_modified: list[str] = Field(default_factory=list)
    tokens_used: int = 0
    duration_ms: int = 0


class ReviewerFeedback(BaseModel):
    """Reviewer のフィードバック。追加後は変更しない。"""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    iteration_number: int
    timestamp: datetime = Field(default_factory=datetime.now)
    decision: ReviewDecision
    feedback: str = ""
    specific_issues: list[str] = Field(default_factory=list)
    suggested_improvements: list[str] = Field(default_factory=list)


class RalphLoopState(BaseModel):
    """Ralph Loop の永続化される状態。"""

    model_config = ConfigDict(use_enum_values=True)

    task_id: str
    project_id: str
    config: RalphLoopConfig
    current_iteration: int = 0
    status: RalphLoopStatus = RalphLoopStatus.IDLE
    summaries: list[IterationSummary] = Field(default_factory=list)
    feedback: list[ReviewerFeedback] = Field(default_factory=list)
    final_status: RalphLoopFinalStatus | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_terminal(self) -> bool:
        """終了状態かどうか。"""
        return self.status in TERMINAL_STATUSES
