"""データモデルモジュール。"""

from .agent import (
    AgentConfig,
    AgentMessage,
    AgentMode,
    AgentStatus,
    ContextUsage,
    FullStatus,
    ImageAttachment,
    MessageType,
    QueuedMessage,
    QueuedProject,
    ResourceStatus,
    ToolInfo,
    WaitingStatus,
)
from .loop import AgentLoopState, CompletionResponse, MilestoneRef
from .ralph_loop import (
    IterationSummary,
    RalphLoopConfig,
    RalphLoopFinalStatus,
    RalphLoopState,
    RalphLoopStatus,
    ReviewDecision,
    ReviewerFeedback,
)

__all__ = [
    "AgentConfig",
    "AgentLoopState",
    "AgentMessage",
    "AgentMode",
    "AgentStatus",
    "CompletionResponse",
    "ContextUsage",
    "FullStatus",
    "ImageAttachment",
    "IterationSummary",
    "MessageType",
    "MilestoneRef",
    "QueuedMessage",
    "QueuedProject",
    "RalphLoopConfig",
    "RalphLoopFinalStatus",
    "RalphLoopState",
    "RalphLoopStatus",
    "ResourceStatus",
    "ReviewDecision",
    "ReviewerFeedback",
    "ToolInfo",
    "WaitingStatus",
]
