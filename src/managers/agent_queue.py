"""エージェント起動要求の待機キュー。

同時実行数の上限に達している間の起動要求を FIFO で保持する。
"""

import logging
from collections import deque

from src.models.agent import QueuedProject

logger = logging.getLogger(__name__)


class AgentQueue:
    """起動要求の FIFO キュー。"""

    def __init__(self) -> None:
        self._queue: deque[QueuedProject] = deque()
        self._project_ids: set[str] = set()

    def __len__(self) -> int:
        return len(self._queue)

    def enqueue(self, request: QueuedProject) -> int:
        """起動要求を末尾に追加する。

        Returns:
            キュー内の位置（1始まり）

        Raises:
            ValueError: 同じプロジェクトが既にキューにある場合
        """
        if request.project_id in self._project_ids:
            raise ValueError(f"プロジェクト {request.project_id} は既にキューに存在します")
        self._queue.append(request)
        self._project_ids.add(request.project_id)
        logger.info(f"プロジェクト {request.project_id} をキューに追加しました（{len(self._queue)}件待機中）")
        return len(self._queue)

    def dequeue(self) -> QueuedProject | None:
        """先頭の起動要求を取り出す。"""
        if not self._queue:
            return None
        request = self._queue.popleft()
        self._project_ids.discard(request.project_id)
        return request

    def remove(self, project_id: str) -> bool:
        """指定プロジェクトの起動要求を取り消す。"""
        if project_id not in self._project_ids:
            return False
        self._queue = deque(r for r in self._queue if r.project_id != project_id)
        self._project_ids.discard(project_id)
        logger.info(f"プロジェクト {project_id} をキューから削除しました")
        return True

    def is_queued(self, project_id: str) -> bool:
        """キューに存在するか。"""
        return project_id in self._project_ids

    def position(self, project_id: str) -> int | None:
        """キュー内の位置（1始まり）を返す。"""
        for i, request in enumerate(self._queue, start=1):
            if request.project_id == project_id:
                return i
        return None

    def clear(self) -> int:
        """キューを空にする。

        Returns:
            削除した件数
        """
        count = len(self._queue)
        self._queue.clear()
        self._project_ids.clear()
        return count

    def snapshot(self) -> list[QueuedProject]:
        """キューの内容をコピーして返す。"""
        return list(self._queue)
