"""外部コラボレーターのインターフェース。

プロジェクトの解決、会話ログ、ロードマップ、指示生成はこのパッケージの外で
実装される。ここではマネージャーが利用する最小限のインターフェースのみ定義する。
"""

import importlib
import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from src.models.agent import AgentMessage
from src.models.loop import MilestoneRef

logger = logging.getLogger(__name__)


@runtime_checkable
class ProjectResolver(Protocol):
    """プロジェクトIDから作業ディレクトリを解決する。"""

    def get_project_path(self, project_id: str) -> str | None: ...


@runtime_checkable
class ConversationStore(Protocol):
    """プロジェクトごとの追記型メッセージログ。"""

    async def append_message(self, project_id: str, message: AgentMessage) -> None: ...


@runtime_checkable
class RoadmapProvider(Protocol):
    """ロードマップ上の次の未完了項目を返す。"""

    async def get_next_item(self, project_id: str) -> MilestoneRef | None: ...


@runtime_checkable
class InstructionGenerator(Protocol):
    """マイルストーンからエージェントへの指示文を生成する。"""

    async def generate(self, project_id: str, milestone: MilestoneRef) -> str: ...


class DirectoryProjectResolver:
    """ベースディレクトリ直下のディレクトリをプロジェクトとして扱う。"""

    def __init__(self, base_dir: str) -> None:
        self.base_dir = Path(base_dir)
        self._overrides: dict[str, str] = {}

    def register(self, project_id: str, project_path: str) -> None:
        """プロジェクトのパスを明示的に登録する。"""
        self._overrides[project_id] = project_path

    def get_project_path(self, project_id: str) -> str | None:
        if project_id in self._overrides:
            return self._overrides[project_id]
        path = self.base_dir / project_id
        # パストラバーサル防止
        try:
            path.resolve().relative_to(self.base_dir.resolve())
        except ValueError:
            logger.warning(f"不正なプロジェクトIDです: {project_id}")
            return None
        if not path.is_dir():
            return None
        return str(path)


def load_collaborator(target: str, protocol: type) -> Any:
    """module:attribute 形式の指定からコラボレーターを読み込む。

    属性がクラスの場合は引数なしでインスタンス化する。

    Args:
        target: 読み込み対象（例: "my_roadmap.provider:RoadmapProvider"）
        protocol: 満たすべきインターフェース

    Returns:
        コラボレーターのインスタンス

    Raises:
        ValueError: 指定が不正、読み込みに失敗、またはインターフェースを満たさない場合
    """
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"'module:attribute' 形式で指定してください: {target}")
    try:
        obj = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as e:
        raise ValueError(f"コラボレーターを読み込めません: {target}: {e}") from e

    if isinstance(obj, type):
        obj = obj()
    if not isinstance(obj, protocol):
        raise ValueError(f"{target} は {protocol.__name__} を実装していません")
    logger.info(f"コラボレーターを読み込みました: {protocol.__name__}={target}")
    return obj
