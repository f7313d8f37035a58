"""agentloop: a terminal coding assistant with approval-gated tools."""

from .agent import Agent, AgentState, ApprovalDecision, ToolCallbacks
from .report import AgentError, ConfigError, ProviderAuthError
from .session import ChatSession
from .tools import ToolResult, execute_tool

__all__ = [
    "Agent",
    "AgentError",
    "AgentState",
    "ApprovalDecision",
    "ChatSession",
    "ConfigError",
    "ProviderAuthError",
    "ToolCallbacks",
    "ToolResult",
    "execute_tool",
]
