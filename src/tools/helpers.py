"""MCPツール用共通ヘルパー関数。"""

from typing import Any

from pydantic import BaseModel, ValidationError

from src.context import AppContext
from src.models.agent import ImageAttachment


def get_app_ctx(ctx: Any) -> AppContext:
    """MCP Context から AppContext を取得する。"""
    return ctx.request_context.lifespan_context


def to_dict(model: BaseModel | None) -> dict[str, Any] | None:
    """pydantic モデルを JSON 互換の dict に変換する。"""
    if model is None:
        return None
    return model.model_dump(mode="json")


def parse_images(images: list[dict[str, str]] | None) -> list[ImageAttachment] | None:
    """ツール引数の画像リストを ImageAttachment に変換する。

    Raises:
        ValueError: media_type または data が欠けている場合
    """
    if not images:
        return None
    try:
        return [ImageAttachment.model_validate(image) for image in images]
    except ValidationError as e:
        raise ValueError(f"画像の形式が不正です: {e.errors()[0]['msg']}") from e


def error_response(message: str) -> dict[str, Any]:
    """失敗レスポンスを作る。"""
    return {"success": False, "error": message}
