"""CLI 引数と stdin メッセージの生成。"""

import json
import re
from typing import Any

from src.models.agent import AgentConfig, ImageAttachment
from src.models.loop import CompletionResponse

# 自律モードの完了報告 JSON（最後に出現したものを採用する）
_COMPLETION_JSON_PATTERN = re.compile(
    r'\{[^{}]*"status"\s*:\s*"(?:COMPLETE|FAILED)"[^{}]*\}', re.DOTALL
)
_COMPLETE_MARKER = re.compile(r"MILESTONE_COMPLETE:\s*(.+)")
_FAILED_MARKER = re.compile(r"MILESTONE_FAILED:\s*(.+)")


def build_cli_args(command: str, config: AgentConfig) -> list[str]:
    """エージェント起動用のコマンドライン引数を生成する。

    パーミッション設定は解釈せず、そのまま引数に変換する。

    Args:
        command: CLI コマンド名
        config: エージェント起動設定

    Returns:
        argv（先頭はコマンド名）
    """
    args = [command, "--print"]

    if config.model:
        args.extend(["--model", config.model])

    permission = config.permission
    if permission.skip_permissions:
        args.append("--dangerously-skip-permissions")
    else:
        if permission.permission_mode:
            args.extend(["--permission-mode", permission.permission_mode])
        if permission.allowed_tools:
            args.extend(["--allowedTools", " ".join(permission.allowed_tools)])
    if permission.disallowed_tools:
        args.extend(["--disallowedTools", " ".join(permission.disallowed_tools)])
    if permission.append_system_prompt:
        args.extend(["--append-system-prompt", permission.append_system_prompt])

    if config.session_id:
        flag = "--resume" if config.resume_session else "--session-id"
        args.extend([flag, config.session_id])

    args.extend(["--input-format", "stream-json", "--output-format", "stream-json", "--verbose"])
    return args


def build_user_message(text: str, images: list[ImageAttachment] | None = None) -> dict[str, Any]:
    """ユーザー入力メッセージを生成する。

    画像がある場合は画像ブロックの後にテキストブロックを置く。
    """
    content: str | list[dict[str, Any]]
    if images:
        content = [
            {
                "type": "image",
                "source": {"type": "base64", "media_type": image.media_type, "data": image.data},
            }
            for image in images
        ]
        content.append({"type": "text", "text": text})
    else:
        content = text
    return {"type": "user", "message": {"role": "user", "content": content}}


def build_tool_result_message(tool_use_id: str, payload: Any) -> dict[str, Any]:
    """ツール実行結果メッセージを生成する。"""
    if not isinstance(payload, str):
        payload = json.dumps(payload, ensure_ascii=False)
    return {
        "type": "user",
        "message": {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": tool_use_id, "content": payload}],
        },
    }


def encode_line(message: dict[str, Any]) -> bytes:
    """stdin に書き込む1行に変換する。"""
    return (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")


def parse_completion_response(output: str) -> CompletionResponse | None:
    """自律モードのターン出力から完了報告を取り出す。

    優先順位:
    1. {"status": "COMPLETE"|"FAILED", "reason": "..."} 形式の JSON（最後のもの）
    2. MILESTONE_COMPLETE: / MILESTONE_FAILED: マーカー

    Returns:
        完了報告。見つからない場合は None
    """
    for candidate in reversed(_COMPLETION_JSON_PATTERN.findall(output)):
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict) and data.get("status") in ("COMPLETE", "FAILED"):
            return CompletionResponse(
                status=data["status"],
                reason=str(data.get("reason") or "No reason provided"),
            )

    failed = _FAILED_MARKER.search(output)
    if failed:
        return CompletionResponse(status="FAILED", reason=failed.group(1).strip())
    complete = _COMPLETE_MARKER.search(output)
    if complete:
        return CompletionResponse(status="COMPLETE", reason=complete.group(1).strip())
    return None
