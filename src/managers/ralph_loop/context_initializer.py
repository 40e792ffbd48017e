"""Ralph Loop のプロンプト生成。

各イテレーションで Worker/Reviewer に渡すプロンプトを、直近の履歴だけを
含めた形で毎回作り直す。履歴は history_window 件に制限される。
"""

from src.config.template_loader import TemplateLoader, get_template_loader, interpolate
from src.models.ralph_loop import IterationSummary, RalphLoopState, ReviewDecision, ReviewerFeedback

NO_SUMMARIES_TEXT = "No previous iterations yet. This is the first iteration."
NO_FEEDBACK_TEXT = "No previous feedback yet. This is the first iteration."
ENTRY_SEPARATOR = "\n\n---\n\n"


def _decision_label(decision: ReviewDecision | str) -> str:
    return ReviewDecision(decision).value.upper()


def format_summary(summary: IterationSummary) -> str:
    """イテレーションサマリーを1件分のテキストにする。"""
    lines = [
        f"### Iteration {summary.iteration_number}",
        f"**Timestamp:** {summary.timestamp.isoformat()}",
        f"**Duration:** {round(summary.duration_ms / 1000)}s",
        f"**Tokens Used:** {summary.tokens_used}",
    ]
    if summary.files_modified:
        lines.append(f"**Files Modified:** {', '.join(summary.files_modified)}")
    lines.extend(["", "**Output:**", summary.worker_output])
    return "\n".join(lines)


def format_feedback(feedback: ReviewerFeedback) -> str:
    """レビューフィードバックを1件分のテキストにする。"""
    lines = [
        f"### Iteration {feedback.iteration_number} Review",
        f"**Decision:** {_decision_label(feedback.decision)}",
        f"**Timestamp:** {feedback.timestamp.isoformat()}",
        "",
        "**Feedback:**",
        feedback.feedback,
    ]
    if feedback.specific_issues:
        lines.extend(["", "**Specific Issues:**"])
        lines.extend(f"- {issue}" for issue in feedback.specific_issues)
    if feedback.suggested_improvements:
        lines.extend(["", "**Suggested Improvements:**"])
        lines.extend(f"- {item}" for item in feedback.suggested_improvements)
    return "\n".join(lines)


class ContextInitializer:
    """Worker/Reviewer のプロンプトを組み立てるクラス。"""

    def __init__(self, history_window: int = 3, template_loader: TemplateLoader | None = None) -> None:
        """ContextInitializer を初期化する。

        Args:
            history_window: プロンプトに含める直近の履歴件数
            template_loader: デフォルトテンプレートの読み込みに使うローダー
        """
        self.history_window = max(1, history_window)
        self.template_loader = template_loader or get_template_loader()

    def _recent(self, items: list) -> list:
        return items[-self.history_window:]

    def format_summaries(self, summaries: list[IterationSummary]) -> str:
        recent = self._recent(summaries)
        if not recent:
            return NO_SUMMARIES_TEXT
        return ENTRY_SEPARATOR.join(format_summary(s) for s in recent)

    def format_feedback_history(self, feedback: list[ReviewerFeedback]) -> str:
        recent = self._recent(feedback)
        if not recent:
            return NO_FEEDBACK_TEXT
        return ENTRY_SEPARATOR.join(format_feedback(f) for f in recent)

    def build_worker_context(self, state: RalphLoopState) -> str:
        """Worker のプロンプトを生成する。

        2回目以降のイテレーションでは、最新のフィードバックを
        必ず対応すべき指摘として先頭に強調表示する。

        Args:
            state: Ralph Loop の状態

        Returns:
            Worker に送るプロンプト
        """
        template = state.config.worker_prompt_template or self.template_loader.load("ralph", "worker")
        feedback_section = self.format_feedback_history(state.feedback)

        latest = state.feedback[-1] if state.feedback else None
        if latest is not None and state.current_iteration > 1:
            feedback_section = self._emphasize_latest(latest, feedback_section)

        return interpolate(
            template,
            task_description=state.config.task_description,
            previous_summaries=self.format_summaries(state.summaries),
            previous_feedback=feedback_section,
        )

    def build_reviewer_context(self, state: RalphLoopState, worker_output: str) -> str:
        """Reviewer のプロンプトを生成する。"""
        template = state.config.reviewer_prompt_template or self.template_loader.load("ralph", "reviewer")
        return interpolate(
            template,
            task_description=state.config.task_description,
            worker_output=worker_output,
            previous_feedback=self.format_feedback_history(state.feedback),
        )

    @staticmethod
    def _emphasize_latest(latest: ReviewerFeedback, full_history: str) -> str:
        lines = [
            "## IMPORTANT: Address This Feedback First",
            "",
            f"The reviewer's decision was: **{_decision_label(latest.decision)}**",
            "",
            latest.feedback,
        ]
        if latest.specific_issues:
            lines.extend(["", "**You MUST address these issues:**"])
            lines.extend(f"{i}. {issue}" for i, issue in enumerate(latest.specific_issues, start=1))
        lines.extend(["", "---", "", "## Full Feedback History", "", full_history])
        return "\n".join(lines)
