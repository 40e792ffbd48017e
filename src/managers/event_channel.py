"""エージェント単位のイベントチャネル。

1つの送信元に対して複数の購読者を登録できる。
"""

import inspect
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class AgentEvent(str, Enum):
    """エージェントが発行するイベント。"""

    STATUS = "status"
    """AgentStatus が変化した"""

    MESSAGE = "message"
    """パース済みの出力単位（AgentMessage）"""

    WAITING = "waiting"
    """入力待ち状態が切り替わった（WaitingStatus）"""

    CONTEXT_USAGE = "context_usage"
    """コンテキスト使用量が更新された（ContextUsage）"""

    EXIT = "exit"
    """プロセスが終了した（終了コード）"""

    TURN_COMPLETE = "turn_complete"
    """ターンが終了した（ターン中のテキスト出力）"""

    SESSION_ID = "session_id"
    """CLI がセッションIDを通知した"""


Handler = Callable[..., Any]


class EventChannel:
    """型付きイベントチャネル。

    ハンドラはイベント名ごとに登録順で呼び出される。
    emit 時にハンドラ一覧のスナップショットを取るため、
    ディスパッチ中の購読解除も安全に行える。
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._handlers: dict[str, list[Handler]] = {}

    def subscribe(self, event: AgentEvent | str, handler: Handler) -> Callable[[], None]:
        """ハンドラを登録する。

        Args:
            event: イベント名
            handler: ハンドラ（同期関数または async 関数）

        Returns:
            購読を解除する関数
        """
        key = _event_key(event)
        self._handlers.setdefault(key, []).append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(key, handler)

        return _unsubscribe

    def unsubscribe(self, event: AgentEvent | str, handler: Handler) -> bool:
        """ハンドラの登録を解除する。"""
        handlers = self._handlers.get(_event_key(event), [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def clear(self) -> None:
        """全てのハンドラを解除する。"""
        self._handlers.clear()

    def handler_count(self, event: AgentEvent | str) -> int:
        """登録済みハンドラ数を返す。"""
        return len(self._handlers.get(_event_key(event), []))

    async def emit(self, event: AgentEvent | str, *args: Any) -> None:
        """イベントを発行する。

        ハンドラの例外はログに記録し、他のハンドラの呼び出しは継続する。
        """
        key = _event_key(event)
        for handler in list(self._handlers.get(key, [])):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"イベントハンドラでエラーが発生しました ({self.name}:{key}): {e}")


def _event_key(event: AgentEvent | str) -> str:
    """イベント名を文字列に正規化する。"""
    return event.value if isinstance(event, AgentEvent) else str(event)
