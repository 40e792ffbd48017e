"""pytest設定とフィクスチャ。"""

import asyncio
import json
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from src.config.settings import Settings
from src.context import AppContext, create_app_context
from src.managers.agent_manager import AgentManager
from src.managers.collaborators import DirectoryProjectResolver
from src.models.loop import MilestoneRef

PROJECT_IDS = ("proj-a", "proj-b", "proj-c")


# ========== プロセスのフェイク ==========


class FakeStdin:
    """書き込まれた stream-json メッセージを記録する stdin。"""

    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("stdin is closed")
        self.messages.append(json.loads(data.decode("utf-8")))

    async def drain(self) -> None:
        return None

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True


class FakeStream:
    """テストから行を流し込める stdout/stderr。"""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()
        self._eof = False

    def feed(self, line: str | dict[str, Any]) -> None:
        if isinstance(line, dict):
            line = json.dumps(line)
        self._queue.put_nowait((line + "\n").encode("utf-8"))

    def feed_eof(self) -> None:
        if not self._eof:
            self._eof = True
            self._queue.put_nowait(b"")

    async def readline(self) -> bytes:
        data = await self._queue.get()
        if not data:
            # EOF 以降の読み取りも空を返す
            self._queue.put_nowait(b"")
        return data


class FakeProcess:
    """CLI プロセスのフェイク。"""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.stdin = FakeStdin()
        self.stdout = FakeStream()
        self.stderr = FakeStream()
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()

    def emit(self, event: dict[str, Any] | str) -> None:
        """stdout に1行出力する。"""
        self.stdout.feed(event)

    def emit_stderr(self, line: str) -> None:
        self.stderr.feed(line)

    def exit(self, code: int = 0) -> None:
        """出力を閉じてプロセスを終了させる。"""
        if self.returncode is not None:
            return
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self.returncode = code
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    @property
    def user_texts(self) -> list[Any]:
        """stdin に送信されたユーザーメッセージの content 一覧。"""
        return [m["message"]["content"] for m in self.stdin.messages if m.get("type") == "user"]


class FakeSpawner:
    """ProcessSpawner のフェイク。起動したプロセスを記録する。"""

    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []
        self.calls: list[tuple[list[str], str]] = []
        self.fail = False
        self.on_spawn: Callable[[FakeProcess], None] | None = None
        self._next_pid = 40000

    async def __call__(self, argv: list[str], cwd: str) -> FakeProcess:
        self.calls.append((argv, cwd))
        if self.fail:
            raise FileNotFoundError("claude: command not found")
        process = FakeProcess(self._next_pid)
        self._next_pid += 1
        self.processes.append(process)
        if self.on_spawn is not None:
            self.on_spawn(process)
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


# ========== stream-json イベント ==========


def init_event(session_id: str = "session-1") -> dict[str, Any]:
    return {"type": "system", "subtype": "init", "session_id": session_id}


def text_event(text: str, usage: dict[str, int] | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": [{"type": "text", "text": text}]}
    if usage is not None:
        message["usage"] = usage
    return {"type": "assistant", "message": message}


def tool_use_event(name: str, tool_id: str, tool_input: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "type": "assistant",
        "message": {
            "role": "assistant",
            "content": [{"type": "tool_use", "id": tool_id, "name": name, "input": tool_input or {}}],
        },
    }


def result_event(is_error: bool = False, **extra: Any) -> dict[str, Any]:
    return {"type": "result", "subtype": "success", "is_error": is_error, **extra}


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """predicate が True になるまでイベントループを回す。"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("条件が満たされないままタイムアウトしました")
        await asyncio.sleep(0.005)


async def settle(rounds: int = 20) -> None:
    """保留中のタスクを進める。"""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ========== コラボレーターのフェイク ==========


class StaticRoadmap:
    """常に同じマイルストーンを返すロードマップ。"""

    async def get_next_item(self, project_id: str) -> MilestoneRef | None:
        return MilestoneRef(phase_id="p1", milestone_id="m1", milestone_title="First")


class TemplateInstructions:
    async def generate(self, project_id: str, milestone: MilestoneRef) -> str:
        return f"implement {milestone.milestone_id}"


def get_tool_fn(mcp: Any, name: str) -> Callable:
    """FastMCP に登録されたツール関数を取得する。"""
    for tool in mcp._tool_manager._tools.values():
        if tool.name == name:
            return tool.fn
    raise KeyError(f"ツール {name} が登録されていません")


# ========== フィクスチャ ==========


@pytest.fixture
def temp_dir():
    """一時ディレクトリを作成する。"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(temp_dir):
    """テスト用の設定を作成する。"""
    projects_dir = temp_dir / "projects"
    for project_id in PROJECT_IDS:
        (projects_dir / project_id).mkdir(parents=True)
    return Settings(
        data_dir=str(temp_dir / "data"),
        projects_base_dir=str(projects_dir),
        max_concurrent_agents=2,
        stop_grace_seconds=0.1,
        orphan_kill_wait_seconds=0.01,
    )


@pytest.fixture
def project_resolver(settings):
    """projects_base_dir 直下をプロジェクトとして扱うリゾルバー。"""
    return DirectoryProjectResolver(settings.projects_base_dir)


@pytest.fixture
def spawner():
    """プロセス起動のフェイク。"""
    return FakeSpawner()


@pytest.fixture
async def agent_manager(settings, project_resolver, spawner):
    """AgentManagerインスタンスを作成する。テスト後に全エージェントを停止する。"""
    manager = AgentManager(settings, project_resolver=project_resolver, spawner=spawner)
    try:
        yield manager
    finally:
        await manager.stop_all_agents()


@pytest.fixture
async def app_ctx(settings, project_resolver, spawner):
    """テスト用のAppContextを作成する。"""
    ctx = create_app_context(settings, project_resolver=project_resolver, spawner=spawner, track_pids=False)
    try:
        yield ctx
    finally:
        await ctx.ralph_service.stop_all()
        await ctx.one_off_manager.stop_all()
        await ctx.agent_manager.stop_all_agents()


@pytest.fixture
def mock_mcp_context(app_ctx: AppContext):
    """MCPツールのContextをモックする。"""
    mock_ctx = MagicMock()
    mock_ctx.request_context.lifespan_context = app_ctx
    return mock_ctx
