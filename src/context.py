"""アプリケーションコンテキストの定義。

サーバーのライフサイクル中に共有するマネージャーを保持する。
自律ループはロードマップと指示生成のコラボレーターが与えられた場合のみ有効。
コラボレーターは引数で直接渡すか、設定の roadmap_provider / instruction_generator で指定する。
"""

from dataclasses import dataclass
from pathlib import Path

from src.config.settings import Settings
from src.managers.agent_manager import AgentManager
from src.managers.autonomous_loop import AutonomousLoopDriver
from src.managers.collaborators import (
    ConversationStore,
    DirectoryProjectResolver,
    InstructionGenerator,
    ProjectResolver,
    RoadmapProvider,
    load_collaborator,
)
from src.managers.one_off_manager import OneOffManager
from src.managers.pid_tracker import PidTracker
from src.managers.process_runner import ProcessSpawner
from src.managers.ralph_loop import RalphLoopService


@dataclass
class AppContext:
    """アプリケーションコンテキスト。"""

    settings: Settings
    project_resolver: ProjectResolver
    agent_manager: AgentManager
    one_off_manager: OneOffManager
    ralph_service: RalphLoopService
    pid_tracker: PidTracker | None = None
    loop_driver: AutonomousLoopDriver | None = None


def create_app_context(
    settings: Settings,
    project_resolver: ProjectResolver | None = None,
    roadmap: RoadmapProvider | None = None,
    instructions: InstructionGenerator | None = None,
    conversation_store: ConversationStore | None = None,
    spawner: ProcessSpawner | None = None,
    track_pids: bool = True,
) -> AppContext:
    """設定からマネージャー一式を組み立てる。

    Args:
        settings: アプリケーション設定
        project_resolver: プロジェクトの解決方法（デフォルトは projects_base_dir 直下）
        roadmap: 自律ループ用のロードマッププロバイダー（省略時は設定から読み込む）
        instructions: 自律ループ用の指示ジェネレーター（省略時は設定から読み込む）
        conversation_store: エージェント出力の保存先
        spawner: プロセス起動関数
        track_pids: PID を pids.json に記録するか

    Returns:
        アプリケーションコンテキスト

    Raises:
        ValueError: 設定で指定したコラボレーターを読み込めない場合
    """
    resolver = project_resolver or DirectoryProjectResolver(settings.projects_base_dir)
    if roadmap is None and settings.roadmap_provider:
        roadmap = load_collaborator(settings.roadmap_provider, RoadmapProvider)
    if instructions is None and settings.instruction_generator:
        instructions = load_collaborator(settings.instruction_generator, InstructionGenerator)
    pid_tracker = None
    if track_pids:
        pid_tracker = PidTracker(
            Path(settings.get_pid_file_path()),
            command_name=settings.cli_command,
            kill_wait_seconds=settings.orphan_kill_wait_seconds,
        )

    agent_manager = AgentManager(
        settings,
        project_resolver=resolver,
        spawner=spawner,
        pid_tracker=pid_tracker,
        conversation_store=conversation_store,
    )
    loop_driver = None
    if roadmap is not None and instructions is not None:
        loop_driver = AutonomousLoopDriver(agent_manager, roadmap, instructions)

    return AppContext(
        settings=settings,
        project_resolver=resolver,
        agent_manager=agent_manager,
        one_off_manager=OneOffManager(settings, resolver, spawner=spawner, pid_tracker=pid_tracker),
        ralph_service=RalphLoopService(settings, resolver, spawner=spawner),
        pid_tracker=pid_tracker,
        loop_driver=loop_driver,
    )
