"""CLI の stream-json 出力イベントモデル。

stdout の1行が1イベントに対応する。type フィールドで判別する。
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class _StreamModel(BaseModel):
    """未知のフィールドを無視する基底モデル。"""

    model_config = ConfigDict(extra="ignore")


class Usage(_StreamModel):
    """トークン使用量。"""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0


class ContentBlock(_StreamModel):
    """メッセージのコンテンツブロック（text / tool_use / tool_result）。"""

    type: str
    text: str | None = None
    id: str | None = None
    name: str | None = None
    input: dict[str, Any] = Field(default_factory=dict)
    tool_use_id: str | None = None
    content: Any = None
    is_error: bool = False


class StreamMessage(_StreamModel):
    """assistant / user イベントの message 部分。"""

    role: str | None = None
    content: list[ContentBlock] | str = Field(default_factory=list)
    usage: Usage | None = None

    @property
    def blocks(self) -> list[ContentBlock]:
        """コンテンツブロックのリストを返す（文字列の場合は text ブロックに変換）。"""
        if isinstance(self.content, str):
            return [ContentBlock(type="text", text=self.content)]
        return self.content


class TextDelta(_StreamModel):
    """content_block_delta の差分。"""

    type: str | None = None
    text: str | None = None


class SystemEvent(_StreamModel):
    """system イベント（subtype=init でターン開始・セッションID通知）。"""

    type: Literal["system"] = "system"
    subtype: str | None = None
    session_id: str | None = None


class AssistantEvent(_StreamModel):
    """アシスタントのテキスト・ツール呼び出し。"""

    type: Literal["assistant"] = "assistant"
    message: StreamMessage = Field(default_factory=StreamMessage)
    usage: Usage | None = None


class UserEvent(_StreamModel):
    """ツール実行結果（CLI がツールを実行した結果のエコー）。"""

    type: Literal["user"] = "user"
    message: StreamMessage = Field(default_factory=StreamMessage)


class ContentBlockStartEvent(_StreamModel):
    """ストリーミング中のブロック開始。"""

    type: Literal["content_block_start"] = "content_block_start"
    content_block: ContentBlock | None = None


class ContentBlockDeltaEvent(_StreamModel):
    """ストリーミング中のテキスト差分。"""

    type: Literal["content_block_delta"] = "content_block_delta"
    delta: TextDelta = Field(default_factory=TextDelta)


class ResultEvent(_StreamModel):
    """ターン終了のサマリー。"""

    type: Literal["result"] = "result"
    subtype: str | None = None
    is_error: bool = False
    result: str | None = None
    errors: list[str] = Field(default_factory=list)
    session_id: str | None = None
    usage: Usage | None = None


class UnknownEvent(_StreamModel):
    """未知の type を持つイベント（何もしない）。"""

    type: str


StreamEvent = (
    SystemEvent
    | AssistantEvent
    | UserEvent
    | ContentBlockStartEvent
    | ContentBlockDeltaEvent
    | ResultEvent
    | UnknownEvent
)

EVENT_TYPES: dict[str, type[BaseModel]] = {
    "system": SystemEvent,
    "assistant": AssistantEvent,
    "user": UserEvent,
    "content_block_start": ContentBlockStartEvent,
    "content_block_delta": ContentBlockDeltaEvent,
    "result": ResultEvent,
}
