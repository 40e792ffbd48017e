"""stream-json 出力のパーサー。

stdout の1行をイベントモデルに変換する。
"""

import json
import logging

from pydantic import ValidationError

from src.models.stream import EVENT_TYPES, StreamEvent, UnknownEvent

logger = logging.getLogger(__name__)


def parse_stream_line(line: str) -> StreamEvent | str | None:
    """stdout の1行をパースする。

    Args:
        line: stdout の1行（改行なし）

    Returns:
        - 既知の type を持つ JSON: 対応するイベントモデル
        - 未知の type を持つ JSON: UnknownEvent
        - JSON ではないテキスト: そのままの文字列
        - 空行、壊れた JSON、検証エラー: None（破棄）
    """
    stripped = line.strip()
    if not stripped:
        return None

    try:
        data = json.loads(stripped)
    except json.JSONDecodeError as e:
        if stripped.startswith("{") or stripped.startswith("["):
            # 途中で切れた JSON 行
            logger.debug(f"不正な JSON 行を破棄しました: {e} ({stripped[:200]})")
            return None
        return stripped

    if not isinstance(data, dict):
        return stripped

    event_type = data.get("type")
    if not isinstance(event_type, str):
        logger.debug(f"type を持たないイベントを破棄しました: {stripped[:200]}")
        return None

    model = EVENT_TYPES.get(event_type)
    if model is None:
        return UnknownEvent(type=event_type)

    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.debug(f"イベントの検証に失敗したため破棄しました ({event_type}): {e}")
        return None
