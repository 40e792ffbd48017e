"""子プロセスの起動・停止ヘルパー。"""

import asyncio
import logging
import os
import signal
from collections.abc import Awaitable, Callable
from typing import Protocol

logger = logging.getLogger(__name__)

# stream-json の1行はツール結果を含むため大きくなりうる
STREAM_LINE_LIMIT = 16 * 1024 * 1024


class ProcessHandle(Protocol):
    """エージェントが扱うプロセスのインターフェース。"""

    pid: int | None
    returncode: int | None
    stdin: asyncio.StreamWriter | None
    stdout: asyncio.StreamReader | None
    stderr: asyncio.StreamReader | None

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


ProcessSpawner = Callable[[list[str], str], Awaitable[ProcessHandle]]
"""(argv, cwd) を受け取り、起動済みのプロセスを返す関数"""


class SubprocessHandle:
    """asyncio サブプロセスのラッパー。

    プロセスは新しいセッションで起動し、停止時はプロセスグループ全体に
    シグナルを送る（CLI が起動した子プロセスも含めて停止するため）。
    """

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def stdin(self) -> asyncio.StreamWriter | None:
        return self._process.stdin

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self._process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self._process.stderr

    async def wait(self) -> int:
        return await self._process.wait()

    def terminate(self) -> None:
        self._signal(signal.SIGTERM)

    def kill(self) -> None:
        self._signal(signal.SIGKILL)

    def _signal(self, sig: signal.Signals) -> None:
        if self._process.returncode is not None:
            return
        try:
            os.killpg(self._process.pid, sig)
        except (ProcessLookupError, PermissionError):
            try:
                self._process.send_signal(sig)
            except ProcessLookupError:
                pass


async def spawn_process(argv: list[str], cwd: str) -> ProcessHandle:
    """CLI プロセスを起動する。

    Raises:
        FileNotFoundError: コマンドが見つからない場合
        OSError: 起動に失敗した場合
    """
    process = await asyncio.create_subprocess_exec(
        *argv,
        cwd=cwd,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
        limit=STREAM_LINE_LIMIT,
    )
    logger.info(f"プロセスを起動しました: pid={process.pid} cwd={cwd}")
    return SubprocessHandle(process)


async def terminate_process(process: ProcessHandle, grace_seconds: float) -> int | None:
    """プロセスを停止する。

    SIGTERM を送り、grace_seconds 以内に終了しなければ SIGKILL を送る。

    Returns:
        終了コード
    """
    if process.returncode is not None:
        return process.returncode

    process.terminate()
    try:
        return await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except asyncio.TimeoutError:
        logger.warning(f"プロセス {process.pid} が終了しないため SIGKILL を送信します")
        process.kill()
        return await process.wait()


async def run_command(*args: str, timeout: float = 5.0) -> tuple[int, str, str]:
    """コマンドを実行する。

    Args:
        *args: コマンドと引数
        timeout: タイムアウト秒数

    Returns:
        (リターンコード, stdout, stderr) のタプル
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        return proc.returncode or 0, stdout.decode(), stderr.decode()
    except FileNotFoundError:
        logger.error(f"{args[0]} が見つかりません")
        return 1, "", f"{args[0]} not found"
    except Exception as e:
        logger.error(f"コマンド実行エラー: {e}")
        return 1, "", str(e)
