"""Conversation Orchestrator.

Coordinates the path from an inbound channel event to a dispatched reply:
- Conversation lookup/creation and participant tracking
- Context assembly from persisted history
- The bounded agentic loop (one extra completion after tool calls)
- Reply persistence and dispatch
"""

from .agent_loop import MAX_TOOL_ROUNDS, AgenticLoop, LoopOutcome
from .context_builder import ContextBuilder
from .conversation_manager import ConversationManager
from .locks import KeyedLocks
from .orchestrator import (
    ConversationOrchestrator,
    IncomingOutcome,
    IncomingResult,
    OrchestratorConfig,
)
from .tool_executor import ToolExecutor

__all__ = [
    # Main orchestrator
    "ConversationOrchestrator",
    "OrchestratorConfig",
    "IncomingOutcome",
    "IncomingResult",
    # Components
    "AgenticLoop",
    "LoopOutcome",
    "MAX_TOOL_ROUNDS",
    "ContextBuilder",
    "ConversationManager",
    "KeyedLocks",
    "ToolExecutor",
]
