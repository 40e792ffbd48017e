"""エージェントモデル定義。"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.config.settings import PermissionConfig


class AgentStatus(str, Enum):
    """エージェントの状態。"""

    STOPPED = "stopped"
    """停止中（未起動、正常終了、クラッシュ後を含む）"""

    RUNNING = "running"
    """プロセス実行中"""

    ERROR = "error"
    """起動失敗"""


class AgentMode(str, Enum):
    """エージェントの実行モード。"""

    INTERACTIVE = "interactive"
    """オペレーターとの対話モード"""

    AUTONOMOUS = "autonomous"
    """自律ループから指示を受けるモード"""


class MessageType(str, Enum):
    """エージェントから出力されるメッセージの種類。"""

    STDOUT = "stdout"  # アシスタントのテキスト出力
    STDERR = "stderr"  # 診断出力
    SYSTEM = "system"  # スーパーバイザーからの通知
    TOOL_USE = "tool_use"  # ツール呼び出し
    TOOL_RESULT = "tool_result"  # ツール実行結果
    QUESTION = "question"  # AskUserQuestion によるユーザーへの質問


class ToolInfo(BaseModel):
    """ツール呼び出し・結果の情報。"""

    tool_name: str | None = Field(default=None, description="ツール名")
    tool_id: str | None = Field(default=None, description="tool_use ID")
    parameters: dict[str, Any] = Field(default_factory=dict, description="ツールの入力")
    output: str | None = Field(default=None, description="ツールの実行結果")
    is_error: bool = Field(default=False, description="ツール実行がエラーだったか")


class AgentMessage(BaseModel):
    """パース済みの出力単位。"""

    model_config = ConfigDict(use_enum_values=True)

    type: MessageType = Field(description="メッセージ種類")
    content: str = Field(default="", description="メッセージ本文")
    timestamp: datetime = Field(default_factory=datetime.now, description="生成日時")
    tool_info: ToolInfo | None = Field(default=None, description="ツール情報")


class ImageAttachment(BaseModel):
    """入力に添付する画像。"""

    media_type: str = Field(description="MIME タイプ（image/png など）")
    data: str = Field(description="base64 エンコード済みの画像データ")


class QueuedMessage(BaseModel):
    """処理中に送られ、後で送信される入力。"""

    text: str = Field(description="入力テキスト")
    images: list[ImageAttachment] = Field(default_factory=list, description="添付画像")


class ContextUsage(BaseModel):
    """コンテキストウィンドウの使用状況。"""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    total_tokens: int = 0
    max_context_tokens: int = 200000
    percentage_used: float = 0.0


class WaitingStatus(BaseModel):
    """入力待ち状態のスナップショット。"""

    is_waiting: bool = Field(description="オペレーターの入力を待っているか")
    version: int = Field(description="入力待ち状態の切り替えごとに増加するカウンタ")


class AgentConfig(BaseModel):
    """エージェント起動設定。"""

    model_config = ConfigDict(use_enum_values=True)

    agent_id: str = Field(description="プロジェクトID または one-off ID")
    project_path: str = Field(description="作業ディレクトリ")
    mode: AgentMode = Field(default=AgentMode.INTERACTIVE, description="実行モード")
    session_id: str | None = Field(default=None, description="CLI のセッションID")
    resume_session: bool = Field(
        default=False, description="True の場合 --resume で既存セッションを再開する"
    )
    permission: PermissionConfig = Field(
        default_factory=PermissionConfig, description="パーミッション設定"
    )
    model: str | None = Field(default=None, description="使用するモデル")
    single_turn: bool = Field(
        default=False, description="最初の入力の後に stdin を閉じるか"
    )


class QueuedProject(BaseModel):
    """同時実行数の上限により待機中の起動要求。"""

    model_config = ConfigDict(use_enum_values=True)

    project_id: str = Field(description="プロジェクトID")
    instructions: str | None = Field(default=None, description="起動時に送信する指示")
    images: list[ImageAttachment] = Field(default_factory=list, description="指示に添付する画像")
    mode: AgentMode = Field(default=AgentMode.AUTONOMOUS, description="起動モード")
    session_id: str | None = Field(default=None, description="再開するセッションID")
    permission_mode: str | None = Field(default=None, description="パーミッションモード")
    queued_at: datetime = Field(default_factory=datetime.now, description="キュー投入日時")
    reason: str = Field(default="max_concurrent_agents", description="キューに入った理由")


class FullStatus(BaseModel):
    """プロジェクトのエージェント状態の一貫したスナップショット。"""

    model_config = ConfigDict(use_enum_values=True)

    project_id: str
    status: AgentStatus = AgentStatus.STOPPED
    mode: AgentMode | None = None
    is_queued: bool = False
    queued_message_count: int = 0
    is_waiting_for_input: bool = False
    waiting_version: int = 0
    session_id: str | None = None
    permission_mode: str | None = None
    context_usage: ContextUsage | None = None


class ResourceStatus(BaseModel):
    """リソース使用状況。"""

    running_count: int
    max_concurrent: int
    queued_count: int
    queued_projects: list[QueuedProject] = Field(default_factory=list)
