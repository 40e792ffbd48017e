"""ContextInitializer のテスト。"""

from datetime import datetime

import pytest

from src.config.template_loader import TemplateLoader
from src.managers.ralph_loop.context_initializer import (
    ENTRY_SEPARATOR,
    NO_FEEDBACK_TEXT,
    NO_SUMMARIES_TEXT,
    ContextInitializer,
    format_feedback,
    format_summary,
)
from src.models.ralph_loop import (
    IterationSummary,
    RalphLoopConfig,
    RalphLoopState,
    ReviewDecision,
    ReviewerFeedback,
)

FIXED_TIME = datetime(2026, 1, 2, 3, 4, 5)


def _summary(n: int, **kwargs) -> IterationSummary:
    return IterationSummary(iteration_number=n, timestamp=FIXED_TIME, worker_output=f"output {n}", **kwargs)


def _feedback(n: int, decision=ReviewDecision.NEEDS_CHANGES, **kwargs) -> ReviewerFeedback:
    return ReviewerFeedback(
        iteration_number=n, timestamp=FIXED_TIME, decision=decision, feedback=f"feedback {n}", **kwargs
    )


def _state(iteration: int, summaries=(), feedback=(), **config) -> RalphLoopState:
    return RalphLoopState(
        task_id="task-1",
        project_id="proj-a",
        config=RalphLoopConfig(
            max_turns=5,
            worker_model="opus",
            reviewer_model="sonnet",
            task_description="Add a login page",
            **config,
        ),
        current_iteration=iteration,
        summaries=list(summaries),
        feedback=list(feedback),
    )


@pytest.fixture
def initializer():
    return ContextInitializer(history_window=3, template_loader=TemplateLoader())


class TestFormatting:
    """履歴の整形のテスト。"""

    def test_format_summary(self):
        """サマリーの整形をテスト。"""
        text = format_summary(_summary(2, files_modified=["a.py", "b.py"], tokens_used=120, duration_ms=2600))
        assert text.startswith("### Iteration 2\n")
        assert "**Duration:** 3s" in text
        assert "**Tokens Used:** 120" in text
        assert "**Files Modified:** a.py, b.py" in text
        assert text.endswith("**Output:**\noutput 2")

    def test_format_summary_without_files(self):
        """変更ファイルがない場合は行を出さないことをテスト。"""
        assert "Files Modified" not in format_summary(_summary(1))

    def test_format_feedback(self):
        """フィードバックの整形をテスト。"""
        text = format_feedback(
            _feedback(1, specific_issues=["no tests"], suggested_improvements=["add tests"])
        )
        assert text.startswith("### Iteration 1 Review\n**Decision:** NEEDS_CHANGES")
        assert "**Specific Issues:**\n- no tests" in text
        assert "**Suggested Improvements:**\n- add tests" in text

    def test_empty_history(self, initializer):
        """履歴がない場合の固定文をテスト。"""
        assert initializer.format_summaries([]) == NO_SUMMARIES_TEXT
        assert initializer.format_feedback_history([]) == NO_FEEDBACK_TEXT

    def test_history_window(self, initializer):
        """直近 history_window 件のみ含まれることをテスト。"""
        text = initializer.format_summaries([_summary(n) for n in range(1, 6)])
        assert "### Iteration 1\n" not in text
        assert "### Iteration 2\n" not in text
        assert text.count(ENTRY_SEPARATOR) == 2
        assert text.index("### Iteration 3") < text.index("### Iteration 5")

    def test_window_has_minimum_of_one(self):
        """history_window は 1 未満にならないことをテスト。"""
        assert ContextInitializer(history_window=0, template_loader=TemplateLoader()).history_window == 1


class TestBuildWorkerContext:
    """Worker プロンプトのテスト。"""

    def test_first_iteration(self, initializer):
        """1回目はデフォルトテンプレートと固定文が使われることをテスト。"""
        context = initializer.build_worker_context(_state(1))
        assert "Add a login page" in context
        assert NO_SUMMARIES_TEXT in context
        assert NO_FEEDBACK_TEXT in context
        assert "${" not in context
        assert "IMPORTANT" not in context

    def test_latest_feedback_is_emphasized(self, initializer):
        """2回目以降は最新のフィードバックが強調されることをテスト。"""
        state = _state(
            2,
            summaries=[_summary(1)],
            feedback=[_feedback(1, specific_issues=["missing validation", "no tests"])],
        )
        context = initializer.build_worker_context(state)
        assert "## IMPORTANT: Address This Feedback First" in context
        assert "The reviewer's decision was: **NEEDS_CHANGES**" in context
        assert "1. missing validation\n2. no tests" in context
        assert "## Full Feedback History" in context
        assert context.index("IMPORTANT") < context.index("### Iteration 1 Review")

    def test_custom_template(self, initializer):
        """テンプレートの上書きと未知の変数の扱いをテスト。"""
        state = _state(1, worker_prompt_template="Task: ${task_description} / ${unknown}")
        assert initializer.build_worker_context(state) == "Task: Add a login page / ${unknown}"


class TestBuildReviewerContext:
    """Reviewer プロンプトのテスト。"""

    def test_includes_worker_output(self, initializer):
        """Worker の出力とタスクが含まれることをテスト。"""
        state = _state(1, summaries=[_summary(1)])
        context = initializer.build_reviewer_context(state, "I added login.html")
        assert "I added login.html" in context
        assert "Add a login page" in context
        assert '"decision"' in context

    def test_custom_template(self, initializer):
        """テンプレートの上書きをテスト。"""
        state = _state(1, reviewer_prompt_template="${worker_output}|${previous_feedback}")
        assert initializer.build_reviewer_context(state, "out") == f"out|{NO_FEEDBACK_TEXT}"
