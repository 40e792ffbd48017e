"""自律ループモデル定義。"""

from pydantic import BaseModel, Field


class MilestoneRef(BaseModel):
    """ロードマップ上のマイルストーンへの参照。"""

    phase_id: str = Field(description="フェーズID")
    phase_title: str = Field(default="", description="フェーズ名")
    milestone_id: str = Field(description="マイルストーンID")
    milestone_title: str = Field(default="", description="マイルストーン名")
    pending_tasks: list[str] = Field(default_factory=list, description="未完了タスク")


class CompletionResponse(BaseModel):
    """エージェントがターン終了時に報告する完了ステータス。"""

    status: str = Field(description="COMPLETE または FAILED")
    reason: str = Field(default="", description="理由")

    @property
    def is_complete(self) -> bool:
        """マイルストーンが完了したかどうか。"""
        return self.status == "COMPLETE"


class AgentLoopState(BaseModel):
    """自律ループの公開状態。"""

    is_looping: bool = False
    current_milestone: MilestoneRef | None = None
    current_conversation_id: str | None = None
