"""Ralph Loop の Worker エージェント。

1イテレーション分のプロンプトを送り、プロセスが終了するまでの出力を集めて
IterationSummary を作る。
"""

import asyncio
import logging
import time

from src.config.settings import PermissionConfig, Settings
from src.managers.claude_agent import ClaudeAgent
from src.managers.event_channel import AgentEvent, EventChannel
from src.managers.process_runner import ProcessSpawner
from src.models.agent import AgentConfig, AgentMessage, AgentMode, ContextUsage, MessageType
from src.models.ralph_loop import IterationSummary, RalphLoopState

from .context_initializer import ContextInitializer

logger = logging.getLogger(__name__)

# files_modified に記録するツール
FILE_MODIFYING_TOOLS = ("Write", "Edit")


class AgentStoppedError(RuntimeError):
    """実行中に stop() が呼ばれた。"""


class SingleTurnAgent:
    """プロンプトを1回送り、プロセスの終了を待つエージェントの基底クラス。

    events チャネルから "output"（テキスト）と "tool_use"（ToolInfo）を購読できる。
    """

    role = "agent"

    def __init__(
        self,
        agent_id: str,
        project_path: str,
        model: str,
        settings: Settings,
        context_initializer: ContextInitializer,
        append_system_prompt: str | None = None,
        spawner: ProcessSpawner | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.project_path = project_path
        self.model = model
        self.settings = settings
        self.context_initializer = context_initializer
        self.append_system_prompt = append_system_prompt
        self.spawner = spawner
        self.events = EventChannel(agent_id)

        self.collected_output = ""
        self.files_modified: list[str] = []
        self._agent: ClaudeAgent | None = None
        self._exited: asyncio.Future | None = None

    @property
    def is_running(self) -> bool:
        return self._agent is not None

    async def _run_prompt(self, prompt: str) -> tuple[int | None, ContextUsage]:
        """プロンプトを送信し、プロセスの終了を待つ。

        Returns:
            (終了コード, コンテキスト使用量) のタプル

        Raises:
            RuntimeError: 既に実行中、または起動に失敗した場合
            AgentStoppedError: 実行中に停止された場合
        """
        if self._agent is not None:
            raise RuntimeError(f"{self.role} は既に実行中です")

        self.collected_output = ""
        self.files_modified = []
        config = AgentConfig(
            agent_id=self.agent_id,
            project_path=self.project_path,
            mode=AgentMode.AUTONOMOUS,
            permission=PermissionConfig(
                skip_permissions=True, append_system_prompt=self.append_system_prompt
            ),
            model=self.model,
            single_turn=True,
        )
        agent = ClaudeAgent(config, self.settings, spawner=self.spawner)
        self._exited = asyncio.get_running_loop().create_future()
        agent.events.subscribe(AgentEvent.MESSAGE, self._on_message)
        agent.events.subscribe(AgentEvent.EXIT, self._on_exit)
        self._agent = agent

        try:
            if not await agent.start(prompt):
                raise RuntimeError(f"{self.role} プロセスの起動に失敗しました")
            logger.info(f"{self.role} を起動しました（pid={agent.pid}, model={self.model}）")
            code = await self._exited
        finally:
            self._agent = None
            self._exited = None
            agent.events.clear()
        return code, agent.context_usage

    async def stop(self) -> None:
        """実行中のプロセスを停止する。待機中の run() は AgentStoppedError になる。"""
        agent = self._agent
        if agent is None:
            return
        logger.info(f"{self.role} を停止します")
        if self._exited is not None and not self._exited.done():
            self._exited.set_exception(AgentStoppedError(f"{self.role} was stopped"))
        await agent.stop()

    async def _on_message(self, message: AgentMessage) -> None:
        if message.type == MessageType.STDOUT:
            self.collected_output += message.content
            await self.events.emit("output", message.content)
        elif message.type == MessageType.TOOL_USE and message.tool_info is not None:
            info = message.tool_info
            file_path = info.parameters.get("file_path")
            if info.tool_name in FILE_MODIFYING_TOOLS and isinstance(file_path, str):
                if file_path not in self.files_modified:
                    self.files_modified.append(file_path)
            await self.events.emit("tool_use", info)

    def _on_exit(self, code: int | None) -> None:
        if self._exited is not None and not self._exited.done():
            self._exited.set_result(code)


class WorkerAgent(SingleTurnAgent):
    """タスクを1イテレーション分進める Worker。"""

    role = "worker"

    async def run(self, state: RalphLoopState) -> IterationSummary:
        """Worker を1回実行する。

        Args:
            state: 現在のループ状態（current_iteration は実行中のイテレーション）

        Returns:
            イテレーションサマリー

        Raises:
            RuntimeError: プロセスが 0 以外で終了した場合
            AgentStoppedError: 実行中に停止された場合
        """
        context = self.context_initializer.build_worker_context(state)
        logger.info(
            f"Worker イテレーションを開始します: task={state.task_id} "
            f"iteration={state.current_iteration} context_length={len(context)}"
        )
        started = time.monotonic()
        code, usage = await self._run_prompt(context)
        duration_ms = int((time.monotonic() - started) * 1000)

        if code != 0:
            raise RuntimeError(f"Worker process exited with code {code}")

        output = self.collected_output
        limit = self.settings.ralph_summary_max_chars
        if len(output) > limit:
            output = output[-limit:]

        return IterationSummary(
            iteration_number=state.current_iteration,
            worker_output=output,
            files_modified=list(self.files_modified),
            tokens_used=usage.input_tokens + usage.output_tokens,
            duration_ms=duration_ms,
        )
