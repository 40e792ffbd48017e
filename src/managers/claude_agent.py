"""エージェントプロセスのラッパー。

1つの CLI プロセスを起動し、stream-json 出力をイベントに変換する。
状態遷移（出力のパース、キュー済み入力の送信、ステータス変更）は
エージェントごとのロックで直列化する。
"""

import asyncio
import json
import logging
import uuid
from typing import Any

from src.config.settings import Settings
from src.managers.event_channel import AgentEvent, EventChannel
from src.managers.message_builder import (
    build_cli_args,
    build_tool_result_message,
    build_user_message,
    encode_line,
)
from src.managers.process_runner import ProcessHandle, ProcessSpawner, spawn_process, terminate_process
from src.managers.stream_parser import parse_stream_line
from src.models.agent import (
    AgentConfig,
    AgentMessage,
    AgentMode,
    AgentStatus,
    ContextUsage,
    ImageAttachment,
    MessageType,
    QueuedMessage,
    ToolInfo,
    WaitingStatus,
)
from src.models.stream import (
    AssistantEvent,
    ContentBlock,
    ContentBlockDeltaEvent,
    ContentBlockStartEvent,
    ResultEvent,
    StreamEvent,
    SystemEvent,
    Usage,
    UserEvent,
)

logger = logging.getLogger(__name__)

ASK_USER_QUESTION_TOOL = "AskUserQuestion"


def is_waiting_for_input(mode: str, status: str, is_processing: bool) -> bool:
    """オペレーターの入力を待っているかを判定する。

    対話モードで実行中かつ処理中でない場合のみ True。
    """
    return mode == AgentMode.INTERACTIVE and status == AgentStatus.RUNNING and not is_processing


class ClaudeAgent:
    """CLI プロセス1つを管理するエージェント。"""

    def __init__(
        self,
        config: AgentConfig,
        settings: Settings,
        spawner: ProcessSpawner | None = None,
    ) -> None:
        """ClaudeAgent を初期化する。

        Args:
            config: エージェント起動設定
            settings: アプリケーション設定
            spawner: プロセス起動関数（テスト時に差し替える）
        """
        if not config.session_id:
            config = config.model_copy(update={"session_id": str(uuid.uuid4())})
        self.config = config
        self.settings = settings
        self.events = EventChannel(config.agent_id)
        self._spawner = spawner or spawn_process

        self.status: AgentStatus = AgentStatus.STOPPED
        self.session_id: str | None = config.session_id
        self.session_error: str | None = None
        self.collected_output = ""
        self.context_usage = ContextUsage(max_context_tokens=settings.max_context_tokens)
        self.queued_messages: list[QueuedMessage] = []
        self.waiting_version = 0
        self.last_exit_code: int | None = None

        self._is_processing = False
        self._turn_output: list[str] = []
        self._seen_tool_ids: set[str] = set()
        self._process: ProcessHandle | None = None
        self._tasks: list[asyncio.Task] = []
        self._exit_detached = False
        self._lock = asyncio.Lock()
        self._pending_events: list[tuple[AgentEvent, Any]] = []
        self._dispatch_lock = asyncio.Lock()
        self._dispatch_owner: asyncio.Task | None = None

    # ========== プロパティ ==========

    @property
    def id(self) -> str:
        """プロジェクトID または one-off ID。"""
        return self.config.agent_id

    @property
    def mode(self) -> str:
        """実行モード。"""
        return self.config.mode

    @property
    def permission_mode(self) -> str | None:
        """パーミッションモード。"""
        permission = self.config.permission
        if permission.skip_permissions:
            return "bypassPermissions"
        return permission.permission_mode

    @property
    def pid(self) -> int | None:
        """プロセスID。"""
        return self._process.pid if self._process else None

    @property
    def is_processing(self) -> bool:
        """ターンを処理中かどうか。"""
        return self._is_processing

    @property
    def is_running(self) -> bool:
        """プロセスが実行中かどうか。"""
        return self.status == AgentStatus.RUNNING

    @property
    def is_waiting_for_input(self) -> bool:
        """オペレーターの入力を待っているかどうか。"""
        return is_waiting_for_input(self.mode, self.status, self._is_processing)

    @property
    def waiting_status(self) -> WaitingStatus:
        """入力待ち状態のスナップショット。"""
        return WaitingStatus(is_waiting=self.is_waiting_for_input, version=self.waiting_version)

    # ========== コマンド ==========

    async def start(
        self,
        instructions: str | None = None,
        images: list[ImageAttachment] | None = None,
    ) -> bool:
        """プロセスを起動する。

        起動に失敗した場合は status=error となり、再試行はしない。

        Args:
            instructions: 起動直後に送信する指示
            images: 指示に添付する画像

        Returns:
            起動に成功した場合 True

        Raises:
            RuntimeError: 既に実行中の場合
        """
        if self._process is not None:
            raise RuntimeError(f"エージェント {self.id} は既に実行中です")

        argv = build_cli_args(self.settings.cli_command, self.config)
        logger.info(f"エージェント {self.id} を起動します（mode={self.mode}）")

        try:
            process = await self._spawner(argv, self.config.project_path)
        except OSError as e:
            logger.error(f"エージェント {self.id} の起動に失敗しました: {e}")
            async with self._lock:
                self._set_status(AgentStatus.ERROR)
                self._add_message(MessageType.SYSTEM, f"Failed to start agent: {e}")
            await self._dispatch_pending()
            return False

        async with self._lock:
            self._process = process
            self._exit_detached = False
            self.last_exit_code = None
            self.session_error = None
            self._set_status(AgentStatus.RUNNING)
            self._tasks = [
                asyncio.create_task(self._read_stdout(process)),
                asyncio.create_task(self._read_stderr(process)),
            ]
            self._tasks.append(asyncio.create_task(self._watch_exit(process, list(self._tasks))))

            if instructions:
                if await self._write(build_user_message(instructions, images)):
                    self._set_processing(True)
                if self.config.single_turn:
                    self._close_stdin()

        await self._dispatch_pending()
        return True

    async def send_input(self, text: str, images: list[ImageAttachment] | None = None) -> bool:
        """入力を送信する。

        処理中の場合はキューに追加し、ターン終了時に送信する。

        Returns:
            送信またはキュー追加に成功した場合 True
        """
        async with self._lock:
            if self.status != AgentStatus.RUNNING or self._process is None:
                logger.warning(f"エージェント {self.id} は実行中でないため入力を破棄します")
                return False

            if self._is_processing:
                self.queued_messages.append(QueuedMessage(text=text, images=images or []))
                self._add_message(MessageType.SYSTEM, f"Queued (#{len(self.queued_messages)})")
                success = True
            else:
                success = await self._write(build_user_message(text, images))
                if success:
                    self._set_processing(True)

        await self._dispatch_pending()
        return success

    async def send_tool_result(self, tool_use_id: str, payload: Any) -> bool:
        """ツール実行結果を送信する。

        CLI はこの応答を待ってブロックしているため、キューには入れず即座に書き込む。
        """
        async with self._lock:
            if self._process is None:
                return False
            success = await self._write(build_tool_result_message(tool_use_id, payload))
            if success:
                self._set_processing(True)

        await self._dispatch_pending()
        return success

    def remove_queued_message(self, index: int) -> bool:
        """キュー済みの入力を削除する。

        Returns:
            インデックスが範囲内で削除できた場合 True
        """
        if index < 0 or index >= len(self.queued_messages):
            return False
        self.queued_messages.pop(index)
        return True

    async def stop(self) -> None:
        """プロセスを停止する。

        終了ハンドラを先に切り離すため、要求による停止では exit イベントは発行されない。
        """
        async with self._lock:
            self._exit_detached = True
            process = self._process
            tasks = self._tasks
            self._process = None
            self._tasks = []
            self._is_processing = False
            self.queued_messages.clear()
            self._set_status(AgentStatus.STOPPED)

        if process is not None:
            for task in tasks[:2]:
                task.cancel()
            self._close_stdin(process)
            code = await terminate_process(process, self.settings.stop_grace_seconds)
            logger.info(f"エージェント {self.id} を停止しました（code={code}）")

        await self._dispatch_pending()

    # ========== 読み取りループ ==========

    async def _read_stdout(self, process: ProcessHandle) -> None:
        """stdout を1行ずつ読み取ってイベントを処理する。"""
        if process.stdout is None:
            return
        while True:
            try:
                raw = await process.stdout.readline()
            except ValueError as e:
                logger.debug(f"長すぎる行を破棄しました ({self.id}): {e}")
                continue
            if not raw:
                break
            event = parse_stream_line(raw.decode("utf-8", errors="replace"))
            if event is None:
                continue
            async with self._lock:
                if self._exit_detached:
                    return
                await self._handle_event(event)
            await self._dispatch_pending()

    async def _read_stderr(self, process: ProcessHandle) -> None:
        """stderr を1行ずつ読み取る。"""
        if process.stderr is None:
            return
        while True:
            try:
                raw = await process.stderr.readline()
            except ValueError:
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            logger.warning(f"エージェント {self.id} stderr: {line[:500]}")
            async with self._lock:
                if self._exit_detached:
                    return
                if "Session ID" in line and "already in use" in line:
                    self.session_error = line
                    self._add_message(MessageType.SYSTEM, f"Session error: {line}")
                self._add_message(MessageType.STDERR, line)
            await self._dispatch_pending()

    async def _watch_exit(self, process: ProcessHandle, readers: list[asyncio.Task]) -> None:
        """出力を読み切った後にプロセス終了を処理する。"""
        await asyncio.gather(*readers, return_exceptions=True)
        code = await process.wait()

        async with self._lock:
            if self._exit_detached or self._process is not process:
                return
            self._exit_detached = True
            self._process = None
            self._tasks = []
            self._is_processing = False
            self.last_exit_code = code
            self._set_status(AgentStatus.STOPPED)
            self._add_message(MessageType.SYSTEM, f"Agent exited with code {code}")
            self._queue_event(AgentEvent.EXIT, code)

        if code != 0:
            logger.warning(f"エージェント {self.id} が異常終了しました（code={code}）")
        else:
            logger.info(f"エージェント {self.id} が終了しました")
        await self._dispatch_pending()

    # ========== イベント処理（ロック内で呼ぶ） ==========

    async def _handle_event(self, event: StreamEvent | str) -> None:
        """パース済みイベントを状態に反映する。"""
        if isinstance(event, str):
            self._append_output(event + "\n")
            self._add_message(MessageType.STDOUT, event)
            return

        if isinstance(event, SystemEvent):
            if event.subtype == "init":
                if event.session_id and event.session_id != self.session_id:
                    self.session_id = event.session_id
                    self._queue_event(AgentEvent.SESSION_ID, event.session_id)
                self._set_processing(True)

        elif isinstance(event, AssistantEvent):
            self._update_usage(event.usage or event.message.usage)
            for block in event.message.blocks:
                if block.type == "text" and block.text:
                    self._append_output(block.text)
                    self._add_message(MessageType.STDOUT, block.text)
                elif block.type == "tool_use":
                    self._handle_tool_use(block)

        elif isinstance(event, ContentBlockDeltaEvent):
            if event.delta.text:
                self._append_output(event.delta.text)
                self._add_message(MessageType.STDOUT, event.delta.text)

        elif isinstance(event, ContentBlockStartEvent):
            if event.content_block is not None and event.content_block.type == "tool_use":
                self._handle_tool_use(event.content_block)

        elif isinstance(event, UserEvent):
            for block in event.message.blocks:
                if block.type == "tool_result":
                    self._add_message(
                        MessageType.TOOL_RESULT,
                        _stringify_content(block.content),
                        ToolInfo(
                            tool_id=block.tool_use_id,
                            output=_stringify_content(block.content),
                            is_error=block.is_error,
                        ),
                    )

        elif isinstance(event, ResultEvent):
            self._update_usage(event.usage)
            if event.is_error:
                detail = "; ".join(event.errors) or event.result or "unknown error"
                self._add_message(MessageType.SYSTEM, f"Turn failed: {detail}")
            await self._end_turn()

    def _handle_tool_use(self, block: ContentBlock) -> None:
        """ツール呼び出しを処理する。"""
        if block.id:
            if block.id in self._seen_tool_ids:
                return
            self._seen_tool_ids.add(block.id)

        info = ToolInfo(tool_name=block.name, tool_id=block.id, parameters=block.input)
        if block.name == ASK_USER_QUESTION_TOOL:
            self._add_message(MessageType.QUESTION, _stringify_content(block.input), info)
            self.waiting_version += 1
            self._queue_event(AgentEvent.WAITING, self.waiting_status)
            return
        self._add_message(MessageType.TOOL_USE, block.name or "", info)

    async def _end_turn(self) -> None:
        """ターン終了を処理し、キュー済みの入力があれば次を送信する。"""
        self._set_processing(False)
        turn_output = "".join(self._turn_output)
        self._turn_output = []
        self._queue_event(AgentEvent.TURN_COMPLETE, turn_output)

        if self.queued_messages and self._process is not None:
            queued = self.queued_messages.pop(0)
            if await self._write(build_user_message(queued.text, queued.images)):
                self._set_processing(True)

    def _set_processing(self, value: bool) -> None:
        """処理中フラグを更新する。変化した場合は waiting_version を進める。"""
        if self._is_processing == value:
            return
        self._is_processing = value
        self.waiting_version += 1
        self._queue_event(AgentEvent.WAITING, self.waiting_status)

    def _set_status(self, status: AgentStatus) -> None:
        """ステータスを更新する。"""
        if self.status == status:
            return
        self.status = status
        self._queue_event(AgentEvent.STATUS, status)

    def _update_usage(self, usage: Usage | None) -> None:
        """トークン使用量を更新する（以前の値との最大値を採用）。"""
        if usage is None:
            return
        current = self.context_usage
        input_tokens = max(current.input_tokens, usage.input_tokens)
        output_tokens = max(current.output_tokens, usage.output_tokens)
        cache_creation = max(current.cache_creation_input_tokens, usage.cache_creation_input_tokens)
        cache_read = max(current.cache_read_input_tokens, usage.cache_read_input_tokens)
        total = input_tokens + output_tokens + cache_creation + cache_read
        max_tokens = current.max_context_tokens or self.settings.max_context_tokens

        updated = ContextUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cache_creation_input_tokens=cache_creation,
            cache_read_input_tokens=cache_read,
            total_tokens=total,
            max_context_tokens=max_tokens,
            percentage_used=round(total / max_tokens * 100, 1) if max_tokens else 0.0,
        )
        if updated != current:
            self.context_usage = updated
            self._queue_event(AgentEvent.CONTEXT_USAGE, updated)

    def _append_output(self, text: str) -> None:
        """collected_output とターン出力に追記する。"""
        self._turn_output.append(text)
        self.collected_output += text
        limit = self.settings.collected_output_max_chars
        if len(self.collected_output) > limit:
            self.collected_output = self.collected_output[-limit:]

    def _add_message(
        self, message_type: MessageType, content: str, tool_info: ToolInfo | None = None
    ) -> None:
        self._queue_event(
            AgentEvent.MESSAGE,
            AgentMessage(type=message_type, content=content, tool_info=tool_info),
        )

    # ========== I/O ==========

    async def _write(self, message: dict[str, Any]) -> bool:
        """stdin に1メッセージ書き込む。"""
        process = self._process
        if process is None or process.stdin is None or process.stdin.is_closing():
            logger.warning(f"エージェント {self.id} の stdin が利用できません")
            return False
        try:
            process.stdin.write(encode_line(message))
            await process.stdin.drain()
            return True
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"エージェント {self.id} への書き込みに失敗しました: {e}")
            return False

    def _close_stdin(self, process: ProcessHandle | None = None) -> None:
        process = process or self._process
        if process is not None and process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

    # ========== イベント発行 ==========

    def _queue_event(self, event: AgentEvent, payload: Any) -> None:
        self._pending_events.append((event, payload))

    async def _dispatch_pending(self) -> None:
        """ロック解放後に、溜まったイベントを発行順に配信する。

        配信は1タスクずつ行い、ハンドラが完了するまで次のイベントは配信しない。
        ハンドラ内からエージェントを操作した場合に積まれたイベントは、
        配信中のループがそのまま続けて配信する。
        """
        current = asyncio.current_task()
        if self._dispatch_owner is not None and self._dispatch_owner is current:
            return
        async with self._dispatch_lock:
            self._dispatch_owner = current
            try:
                while self._pending_events:
                    event, payload = self._pending_events.pop(0)
                    await self.events.emit(event, payload)
            finally:
                self._dispatch_owner = None


def _stringify_content(content: Any) -> str:
    """ツール入力・結果を文字列に変換する。"""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        return json.dumps(content, ensure_ascii=False)
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
            else:
                parts.append(str(item))
        return "\n".join(parts)
    return str(content)
