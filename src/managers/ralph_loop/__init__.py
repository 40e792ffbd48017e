"""Ralph Loop（Worker/Reviewer の反復ループ）。"""

from .context_initializer import ContextInitializer
from .repository import RalphLoopRepository
from .reviewer_agent import ReviewerAgent, normalize_decision, parse_reviewer_output
from .service import RalphLoopEvent, RalphLoopService
from .worker_agent import AgentStoppedError, SingleTurnAgent, WorkerAgent

__all__ = [
    "AgentStoppedError",
    "ContextInitializer",
    "RalphLoopEvent",
    "RalphLoopRepository",
    "RalphLoopService",
    "ReviewerAgent",
    "SingleTurnAgent",
    "WorkerAgent",
    "normalize_decision",
    "parse_reviewer_output",
]
