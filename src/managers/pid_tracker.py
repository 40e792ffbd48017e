"""起動したエージェントプロセスの PID 追跡。

スーパーバイザーが異常終了した後でも、起動済みの CLI プロセスを
孤児として検出・停止できるよう pids.json に記録する。
"""

import asyncio
import json
import logging
import os
import signal
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field

from src.managers.persistence import atomic_write_json, file_lock, read_json
from src.managers.process_runner import run_command

logger = logging.getLogger(__name__)


class TrackedProcess(BaseModel):
    """追跡中のプロセス。"""

    pid: int
    project_id: str
    started_at: datetime = Field(default_factory=datetime.now)


class OrphanCleanupResult(BaseModel):
    """孤児プロセス掃除の結果。"""

    found_count: int = 0
    killed_count: int = 0
    killed_pids: list[int] = Field(default_factory=list)
    failed_pids: list[int] = Field(default_factory=list)
    skipped_pids: list[int] = Field(default_factory=list)
    """PID が別のプロセスに再利用されていたためスキップしたもの"""


def is_process_running(pid: int) -> bool:
    """プロセスが生存しているか。"""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # 存在するが別ユーザーのプロセス
        return True
    return True


def _signal_group(pid: int, sig: signal.Signals) -> None:
    """PID をリーダーとするプロセスグループにシグナルを送る。

    エージェントは新しいセッションで起動するため PID がグループIDになる。
    グループが存在しない場合は PID のみに送る。
    """
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        os.kill(pid, sig)


async def get_process_command_line(pid: int) -> str | None:
    """プロセスのコマンドラインを取得する。"""
    code, stdout, _ = await run_command("ps", "-p", str(pid), "-o", "args=")
    if code != 0:
        return None
    return stdout.strip() or None


class PidTracker:
    """PID を pids.json に記録する。"""

    def __init__(self, file_path: Path, command_name: str = "claude", kill_wait_seconds: float = 1.0) -> None:
        """PidTracker を初期化する。

        Args:
            file_path: pids.json のパス
            command_name: 追跡対象 CLI のコマンド名（PID 再利用の判定に使う）
            kill_wait_seconds: SIGTERM 後に待つ秒数
        """
        self.file_path = file_path
        self.command_name = command_name
        self.kill_wait_seconds = kill_wait_seconds
        self._processes: list[TrackedProcess] = self._load()

    def _load(self) -> list[TrackedProcess]:
        try:
            data = read_json(self.file_path)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"PID ファイルの読み込みに失敗しました。空の状態で開始します: {e}")
            return []
        if not isinstance(data, list):
            return []
        processes = []
        for item in data:
            try:
                processes.append(TrackedProcess.model_validate(item))
            except ValueError:
                logger.warning(f"不正な PID エントリを無視します: {item}")
        return processes

    def _save(self) -> None:
        try:
            with file_lock(self.file_path):
                atomic_write_json(self.file_path, [p.model_dump(mode="json") for p in self._processes])
        except OSError as e:
            logger.error(f"PID ファイルの保存に失敗しました: {e}")

    def add_process(self, pid: int, project_id: str) -> None:
        """プロセスを追跡対象に追加する。"""
        self._processes = [p for p in self._processes if p.pid != pid]
        self._processes.append(TrackedProcess(pid=pid, project_id=project_id))
        self._save()
        logger.debug(f"プロセスを追跡します: pid={pid} project={project_id}")

    def remove_process(self, pid: int) -> None:
        """プロセスを追跡対象から外す。"""
        before = len(self._processes)
        self._processes = [p for p in self._processes if p.pid != pid]
        if len(self._processes) != before:
            self._save()
            logger.debug(f"プロセスの追跡を終了しました: pid={pid}")

    def get_tracked_processes(self) -> list[TrackedProcess]:
        """追跡中のプロセス一覧を返す。"""
        return list(self._processes)

    async def _is_agent_process(self, pid: int) -> bool:
        """PID が追跡対象 CLI のプロセスか（PID の再利用を除外する）。"""
        command_line = await get_process_command_line(pid)
        if not command_line:
            return False
        lowered = command_line.lower()
        return self.command_name.lower() in lowered

    async def _kill(self, pid: int) -> bool:
        """SIGTERM → SIGKILL の順でプロセスグループごと停止する。"""
        try:
            _signal_group(pid, signal.SIGTERM)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False

        await asyncio.sleep(self.kill_wait_seconds)
        if not is_process_running(pid):
            return True

        try:
            _signal_group(pid, signal.SIGKILL)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        await asyncio.sleep(0.5)
        return not is_process_running(pid)

    async def cleanup_orphan_processes(self, exclude_pids: set[int] | None = None) -> OrphanCleanupResult:
        """記録上は存在するが管理外になったプロセスを停止する。

        例外は送出せず、結果に停止できた/できなかった PID を含める。

        Args:
            exclude_pids: 現在管理中のため停止しない PID

        Returns:
            掃除の結果
        """
        exclude_pids = exclude_pids or set()
        result = OrphanCleanupResult()
        remaining: list[TrackedProcess] = []

        for tracked in self._processes:
            if tracked.pid in exclude_pids:
                remaining.append(tracked)
                continue
            if not is_process_running(tracked.pid):
                continue

            result.found_count += 1
            if not await self._is_agent_process(tracked.pid):
                logger.info(f"PID {tracked.pid} は別のプロセスに再利用されているためスキップします")
                result.skipped_pids.append(tracked.pid)
                continue

            if await self._kill(tracked.pid):
                logger.info(f"孤児プロセスを停止しました: pid={tracked.pid} project={tracked.project_id}")
                result.killed_count += 1
                result.killed_pids.append(tracked.pid)
            else:
                logger.warning(f"孤児プロセスを停止できませんでした: pid={tracked.pid}")
                result.failed_pids.append(tracked.pid)
                remaining.append(tracked)

        self._processes = remaining
        self._save()
        return result
