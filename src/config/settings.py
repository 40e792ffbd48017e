"""設定管理モジュール。"""

import os
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings


def resolve_project_env_file(project_root: str | os.PathLike[str] | None) -> str | None:
    """指定した project_root から .env ファイルを解決する。

    Args:
        project_root: プロジェクトルートパス

    Returns:
        .env ファイルのパス（存在する場合）、または None
    """
    if not project_root:
        return None

    env_file = Path(project_root) / ".agent-supervisor" / ".env"
    if env_file.exists():
        return str(env_file)
    return None


def get_project_env_file() -> str | None:
    """プロジェクト別 .env ファイルのパスを取得。

    SUPERVISOR_PROJECT_ROOT 環境変数が設定されている場合、
    {project_root}/.agent-supervisor/.env を返す。

    Returns:
        .env ファイルのパス（存在する場合）、または None
    """
    return resolve_project_env_file(os.getenv("SUPERVISOR_PROJECT_ROOT"))


class PermissionMode(str, Enum):
    """CLI のパーミッションモード。"""

    DEFAULT = "default"
    """ツール実行ごとに確認する"""

    ACCEPT_EDITS = "acceptEdits"
    """ファイル編集を自動承認する"""

    PLAN = "plan"
    """計画のみ（変更は行わない）"""

    BYPASS = "bypassPermissions"
    """全てのツール実行を自動承認する"""


# モデル定数（重複を避けるため一元管理）
class ModelDefaults:
    """デフォルトモデル名の定数。"""

    OPUS = "opus"
    """Claude Opus モデル（Claude CLI が最新バージョンに自動解決）"""

    SONNET = "sonnet"
    """Claude Sonnet モデル（Claude CLI が最新バージョンに自動解決）"""


class PermissionConfig(BaseModel):
    """プロジェクト別のパーミッション設定。

    内容は解釈せず、そのまま CLI 引数に変換する。
    """

    skip_permissions: bool = Field(
        default=True, description="--dangerously-skip-permissions を付与するか"
    )
    permission_mode: str | None = Field(default=None, description="--permission-mode の値")
    allowed_tools: list[str] = Field(default_factory=list, description="許可ツール一覧")
    disallowed_tools: list[str] = Field(default_factory=list, description="禁止ツール一覧")
    append_system_prompt: str | None = Field(
        default=None, description="--append-system-prompt に渡す追加プロンプト"
    )


class Settings(BaseSettings):
    """スーパーバイザーの設定。

    環境変数で上書き可能。プレフィックスは SUPERVISOR_。
    例: SUPERVISOR_MAX_CONCURRENT_AGENTS=5

    優先順位:
    1. 環境変数（最優先）
    2. プロジェクト別 .env ファイル（{project}/.agent-supervisor/.env）
    3. デフォルト値
    """

    model_config = ConfigDict(
        env_prefix="SUPERVISOR_",
        env_file=get_project_env_file(),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ディレクトリ設定
    data_dir: str = Field(
        default=os.path.expanduser("~/.agent-supervisor"),
        description="スーパーバイザー全体のデータディレクトリ",
    )
    """pids.json などを保存するディレクトリ"""

    project_data_dir_name: str = ".agent-supervisor"
    """プロジェクト内のデータディレクトリ名（Ralph Loop の状態を保存）"""

    projects_base_dir: str = Field(
        default=os.path.expanduser("~/projects"),
        description="プロジェクトのベースディレクトリ",
    )
    """プロジェクトIDからパスを解決する際のベースディレクトリ"""

    # CLI 設定
    cli_command: str = "claude"
    """起動する AI CLI のコマンド名"""

    # エージェント設定
    max_concurrent_agents: int = 3
    """同時に実行できるエージェントの最大数（超過分はキューに入る）"""

    max_context_tokens: int = 200000
    """コンテキストウィンドウの最大トークン数"""

    collected_output_max_chars: int = 100000
    """collected_output に保持する最大文字数"""

    stop_grace_seconds: float = 5.0
    """SIGTERM 送信後、SIGKILL に切り替えるまでの待機秒数"""

    orphan_kill_wait_seconds: float = 1.0
    """孤児プロセスに SIGTERM を送った後の待機秒数"""

    default_permission_mode: str = PermissionMode.ACCEPT_EDITS.value
    """対話モードのデフォルトのパーミッションモード"""

    # Ralph Loop 設定
    ralph_default_max_turns: int = 5
    """Ralph Loop の最大イテレーション数（デフォルト）"""

    ralph_default_worker_model: str = ModelDefaults.OPUS
    """Worker が使用するモデル（デフォルト）"""

    ralph_default_reviewer_model: str = ModelDefaults.SONNET
    """Reviewer が使用するモデル（デフォルト）"""

    ralph_history_window: int = 3
    """プロンプトに含める直近のサマリー・フィードバック数"""

    ralph_history_limit: int = 5
    """プロジェクトごとに保持する Ralph Loop の履歴数"""

    ralph_summary_max_chars: int = 8000
    """IterationSummary に保存する Worker 出力の最大文字数"""

    # 自律ループ設定
    roadmap_provider: str | None = None
    """RoadmapProvider の実装（module:attribute 形式）。未設定の場合、自律ループは無効"""

    instruction_generator: str | None = None
    """InstructionGenerator の実装（module:attribute 形式）"""

    @field_validator("max_concurrent_agents", "ralph_history_window", "ralph_default_max_turns")
    @classmethod
    def _validate_positive(cls, v: int) -> int:
        """1 以上であることを検証する。"""
        if v < 1:
            raise ValueError("1 以上の値を指定してください")
        return v

    @field_validator("ralph_history_limit")
    @classmethod
    def _validate_history_limit(cls, v: int) -> int:
        """0 以上であることを検証する。"""
        if v < 0:
            raise ValueError("0 以上の値を指定してください")
        return v

    def get_pid_file_path(self) -> Path:
        """pids.json のパスを返す。"""
        return Path(self.data_dir) / "pids.json"
