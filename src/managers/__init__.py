"""マネージャーモジュール。"""

from .agent_manager import AgentManager
from .agent_queue import AgentQueue
from .autonomous_loop import AutonomousLoopDriver, LoopEvent
from .claude_agent import ClaudeAgent
from .event_channel import AgentEvent, EventChannel
from .one_off_manager import OneOffEvent, OneOffManager
from .pid_tracker import PidTracker
from .ralph_loop import RalphLoopEvent, RalphLoopService

__all__ = [
    "AgentEvent",
    "AgentManager",
    "AgentQueue",
    "AutonomousLoopDriver",
    "ClaudeAgent",
    "EventChannel",
    "LoopEvent",
    "OneOffEvent",
    "OneOffManager",
    "PidTracker",
    "RalphLoopEvent",
    "RalphLoopService",
]
