"""Ralph Loop の状態の永続化。

{project}/{project_data_dir_name}/ralph/{task_id}/state.json に保存する。
書き込みは一時ファイル経由の rename で行い、タスクごとのロックで直列化する。
"""

import asyncio
import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from src.config.settings import Settings
from src.managers.collaborators import ProjectResolver
from src.managers.persistence import atomic_write_json, read_json
from src.models.ralph_loop import IterationSummary, RalphLoopState, ReviewerFeedback

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "state.json"

# update() で変更できないフィールド
_IMMUTABLE_FIELDS = ("task_id", "project_id", "created_at")


class RalphLoopRepository:
    """Ralph Loop の状態をファイルに保存するリポジトリ。"""

    def __init__(self, project_resolver: ProjectResolver, settings: Settings) -> None:
        self.project_resolver = project_resolver
        self.settings = settings
        self._cache: dict[tuple[str, str], RalphLoopState] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    # ========== パス ==========

    def get_ralph_dir(self, project_id: str) -> Path | None:
        project_path = self.project_resolver.get_project_path(project_id)
        if project_path is None:
            return None
        return Path(project_path) / self.settings.project_data_dir_name / "ralph"

    def _task_dir(self, project_id: str, task_id: str) -> Path | None:
        ralph_dir = self.get_ralph_dir(project_id)
        return ralph_dir / task_id if ralph_dir is not None else None

    def _state_path(self, project_id: str, task_id: str) -> Path | None:
        task_dir = self._task_dir(project_id, task_id)
        return task_dir / STATE_FILE_NAME if task_dir is not None else None

    def _lock(self, project_id: str, task_id: str) -> asyncio.Lock:
        key = (project_id, task_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # ========== 読み書き ==========

    async def create(self, state: RalphLoopState) -> RalphLoopState:
        """新しいループ状態を保存する。

        Raises:
            ValueError: プロジェクトが見つからない場合
        """
        task_dir = self._task_dir(state.project_id, state.task_id)
        if task_dir is None:
            raise ValueError(f"プロジェクトが見つかりません: {state.project_id}")

        now = datetime.now()
        state = state.model_copy(update={"created_at": now, "updated_at": now})
        async with self._lock(state.project_id, state.task_id):
            (task_dir / "summaries").mkdir(parents=True, exist_ok=True)
            (task_dir / "feedback").mkdir(parents=True, exist_ok=True)
            self._write(state)

        logger.info(f"Ralph Loop を作成しました: project={state.project_id} task={state.task_id}")
        return state.model_copy(deep=True)

    async def find_by_id(self, project_id: str, task_id: str) -> RalphLoopState | None:
        """ループ状態を取得する。存在しない場合は None。"""
        state = self._read(project_id, task_id)
        return state.model_copy(deep=True) if state else None

    async def find_by_project(self, project_id: str) -> list[RalphLoopState]:
        """プロジェクトのループ状態を新しい順に返す。"""
        ralph_dir = self.get_ralph_dir(project_id)
        if ralph_dir is None or not ralph_dir.is_dir():
            return []

        states = []
        for entry in ralph_dir.iterdir():
            if not entry.is_dir() or entry.name.endswith(".tmp"):
                continue
            state = self._read(project_id, entry.name)
            if state is not None:
                states.append(state.model_copy(deep=True))
        return sorted(states, key=lambda s: s.created_at, reverse=True)

    async def update(self, project_id: str, task_id: str, /, **updates: Any) -> RalphLoopState | None:
        """ループ状態の一部を更新する。

        Args:
            project_id: プロジェクトID
            task_id: タスクID
            **updates: 更新するフィールド

        Returns:
            更新後の状態。存在しない場合は None
        """
        async with self._lock(project_id, task_id):
            return self._update_locked(project_id, task_id, updates)

    async def add_summary(self, project_id: str, task_id: str, summary: IterationSummary) -> RalphLoopState:
        """イテレーションサマリーを追加して保存する。

        Raises:
            ValueError: タスクが存在しない場合、またはサマリーとフィードバックの件数が合わない場合
        """
        async with self._lock(project_id, task_id):
            state = self._read(project_id, task_id)
            if state is None:
                raise ValueError(f"タスクが見つかりません: {task_id}")
            if len(state.summaries) != len(state.feedback):
                raise ValueError(
                    f"前のイテレーションのフィードバックがありません（task={task_id}, "
                    f"summaries={len(state.summaries)}, feedback={len(state.feedback)}）"
                )
            self._write_entry(project_id, task_id, "summaries", summary.iteration_number, summary)
            updated = self._update_locked(project_id, task_id, {"summaries": [*state.summaries, summary]})
            logger.debug(f"サマリーを追加しました: task={task_id} iteration={summary.iteration_number}")
            return updated

    async def add_feedback(self, project_id: str, task_id: str, feedback: ReviewerFeedback) -> RalphLoopState:
        """レビューフィードバックを追加して保存する。

        Raises:
            ValueError: タスクが存在しない場合、または対応するサマリーがない場合
        """
        async with self._lock(project_id, task_id):
            state = self._read(project_id, task_id)
            if state is None:
                raise ValueError(f"タスクが見つかりません: {task_id}")
            if len(state.summaries) != len(state.feedback) + 1:
                raise ValueError(
                    f"対応するサマリーがありません（task={task_id}, "
                    f"summaries={len(state.summaries)}, feedback={len(state.feedback)}）"
                )
            self._write_entry(project_id, task_id, "feedback", feedback.iteration_number, feedback)
            updated = self._update_locked(project_id, task_id, {"feedback": [*state.feedback, feedback]})
            logger.debug(
                f"フィードバックを追加しました: task={task_id} "
                f"iteration={feedback.iteration_number} decision={feedback.decision}"
            )
            return updated

    async def delete(self, project_id: str, task_id: str) -> bool:
        """ループ状態を削除する。"""
        task_dir = self._task_dir(project_id, task_id)
        if task_dir is None or not task_dir.exists():
            return False
        async with self._lock(project_id, task_id):
            try:
                shutil.rmtree(task_dir)
            except OSError as e:
                logger.error(f"Ralph Loop の削除に失敗しました: task={task_id}: {e}")
                return False
            self._cache.pop((project_id, task_id), None)
        self._locks.pop((project_id, task_id), None)
        logger.info(f"Ralph Loop を削除しました: project={project_id} task={task_id}")
        return True

    async def flush(self) -> None:
        """保留中の書き込みを完了させる。書き込みは同期的に行うため何もしない。"""

    # ========== 内部 ==========

    def _update_locked(self, project_id: str, task_id: str, updates: dict[str, Any]) -> RalphLoopState | None:
        existing = self._read(project_id, task_id)
        if existing is None:
            return None
        data = existing.model_dump()
        data.update({k: v for k, v in updates.items() if k not in _IMMUTABLE_FIELDS})
        data["updated_at"] = datetime.now()
        updated = RalphLoopState.model_validate(data)
        self._write(updated)
        return updated.model_copy(deep=True)

    def _read(self, project_id: str, task_id: str) -> RalphLoopState | None:
        key = (project_id, task_id)
        if key in self._cache:
            return self._cache[key]

        state_path = self._state_path(project_id, task_id)
        if state_path is None:
            return None
        try:
            data = read_json(state_path)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Ralph Loop の状態の読み込みに失敗しました: {state_path}: {e}")
            return None
        if data is None:
            return None
        try:
            state = RalphLoopState.model_validate(data)
        except ValidationError as e:
            logger.error(f"Ralph Loop の状態が不正です: {state_path}: {e}")
            return None
        self._cache[key] = state
        return state

    def _write(self, state: RalphLoopState) -> None:
        state_path = self._state_path(state.project_id, state.task_id)
        if state_path is None:
            raise ValueError(f"プロジェクトが見つかりません: {state.project_id}")
        atomic_write_json(state_path, state.model_dump(mode="json"))
        self._cache[(state.project_id, state.task_id)] = state

    def _write_entry(
        self,
        project_id: str,
        task_id: str,
        kind: str,
        iteration: int,
        entry: IterationSummary | ReviewerFeedback,
    ) -> None:
        task_dir = self._task_dir(project_id, task_id)
        if task_dir is None:
            raise ValueError(f"タスクが見つかりません: {task_id}")
        atomic_write_json(task_dir / kind / f"iteration-{iteration}.json", entry.model_dump(mode="json"))
