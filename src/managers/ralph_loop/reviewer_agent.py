"""Ralph Loop の Reviewer エージェント。

Worker の出力をレビューし、JSON 形式の判定をパースして ReviewerFeedback を作る。
"""

import json
import logging
import re
from typing import Any

from src.models.ralph_loop import RalphLoopState, ReviewDecision, ReviewerFeedback

from .worker_agent import SingleTurnAgent

logger = logging.getLogger(__name__)

FALLBACK_FEEDBACK_MAX_CHARS = 1000

_CODE_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_RAW_JSON_RE = re.compile(r"\{[\s\S]*\"decision\"[\s\S]*\}")

_DECISION_ALIASES = {
    "approve": ReviewDecision.APPROVED,
    "approved": ReviewDecision.APPROVED,
    "reject": ReviewDecision.REJECTED,
    "rejected": ReviewDecision.REJECTED,
    "needs_changes": ReviewDecision.NEEDS_CHANGES,
    "needs-changes": ReviewDecision.NEEDS_CHANGES,
    "needschanges": ReviewDecision.NEEDS_CHANGES,
    "changes_needed": ReviewDecision.NEEDS_CHANGES,
    "revise": ReviewDecision.NEEDS_CHANGES,
}


def normalize_decision(decision: str) -> ReviewDecision | None:
    """判定の表記揺れを正規化する。未知の値は None。"""
    return _DECISION_ALIASES.get(decision.strip().lower())


def _extract_json(output: str) -> str | None:
    match = _CODE_BLOCK_RE.search(output)
    if match and match.group(1).strip():
        return match.group(1).strip()
    match = _RAW_JSON_RE.search(output)
    if match:
        return match.group(0)
    return None


def _string_list(data: dict[str, Any], *keys: str) -> list[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, list):
            return [item for item in value if isinstance(item, str)]
    return []


def _parse_json_feedback(raw: str, iteration_number: int) -> ReviewerFeedback | None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"フィードバック JSON のパースに失敗しました: {e}")
        return None
    if not isinstance(data, dict) or not isinstance(data.get("decision"), str):
        logger.warning("フィードバック JSON に decision がありません")
        return None

    decision = normalize_decision(data["decision"])
    if decision is None:
        logger.warning(f"不正な decision です: {data['decision']}")
        return None

    feedback = data.get("feedback")
    return ReviewerFeedback(
        iteration_number=iteration_number,
        decision=decision,
        feedback=feedback if isinstance(feedback, str) else "",
        specific_issues=_string_list(data, "specificIssues", "specific_issues"),
        suggested_improvements=_string_list(data, "suggestedImprovements", "suggested_improvements"),
    )


def _fallback_feedback(output: str, iteration_number: int) -> ReviewerFeedback:
    lowered = output.lower()
    if "approved" in lowered or "looks good" in lowered:
        decision = ReviewDecision.APPROVED
    elif "rejected" in lowered or "critical" in lowered:
        decision = ReviewDecision.REJECTED
    else:
        decision = ReviewDecision.NEEDS_CHANGES
    return ReviewerFeedback(
        iteration_number=iteration_number,
        decision=decision,
        feedback=output[:FALLBACK_FEEDBACK_MAX_CHARS],
    )


def parse_reviewer_output(output: str, iteration_number: int) -> ReviewerFeedback:
    """Reviewer の出力からフィードバックを取り出す。

    1. ```json のコードブロック
    2. "decision" を含む JSON オブジェクト
    3. 上記がない、またはパースできない場合はテキストから判定を推定する

    Args:
        output: Reviewer の出力テキスト
        iteration_number: イテレーション番号

    Returns:
        パースしたフィードバック
    """
    output = output.strip()
    raw = _extract_json(output)
    if raw is not None:
        parsed = _parse_json_feedback(raw, iteration_number)
        if parsed is not None:
            return parsed
    return _fallback_feedback(output, iteration_number)


class ReviewerAgent(SingleTurnAgent):
    """Worker の出力をレビューする Reviewer。"""

    role = "reviewer"

    async def run(self, state: RalphLoopState, worker_output: str) -> ReviewerFeedback:
        """Reviewer を1回実行する。

        Raises:
            RuntimeError: プロセスが 0 以外で終了した場合
            AgentStoppedError: 実行中に停止された場合
        """
        context = self.context_initializer.build_reviewer_context(state, worker_output)
        logger.info(f"Reviewer を開始します: task={state.task_id} iteration={state.current_iteration}")
        code, _ = await self._run_prompt(context)
        if code != 0:
            raise RuntimeError(f"Reviewer process exited with code {code}")
        return parse_reviewer_output(self.collected_output, state.current_iteration)
