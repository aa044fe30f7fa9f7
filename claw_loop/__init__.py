"""
Claw Loop - 面向工具调用的 Agent 回合编排核心

包含功能:
- 多格式工具调用解析（容忍模型的各种写法）
- 安全闸门（自主级别、风险分类、路径与限速）
- 回合引擎（重试、确认、取消、迭代上限）
- 历史压缩
- 密钥脱敏
"""

__version__ = "0.1.0"

from claw_loop.core.types import (
    Role, LoopState, AutonomyLevel, RiskLevel, PolicyDecision, ToolCallFormat, TurnStatus,
    Message, ParsedToolCall, ParseResult, ToolResult, GateDecision, TurnResult,
    AgentEvent, EventType
)
from claw_loop.core.errors import ClawLoopError, ProviderError, ProviderExhaustedError, ConfigError
from claw_loop.core.scrubber import SecretScrubber, redact
from claw_loop.core.parser import ToolCallParser
from claw_loop.core.policy import SecurityGate, SecurityPolicy, ActionTracker
from claw_loop.core.llm_client import Provider, ProviderCapabilities, OpenAIProvider
from claw_loop.core.compressor import HistoryCompactor
from claw_loop.core.approval import (
    ApprovalChannel, ApprovalRequest, ApprovalResponse, ConfirmationManager, ConsoleApprovalChannel
)
from claw_loop.core.agent_loop import TurnEngine, AgentConfig, EventBus
from claw_loop.tools.base import Tool, FunctionTool, ToolRegistry, ToolSchema
from claw_loop.memory.manager import Memory, MemoryEntry, MarkdownMemory

__all__ = [
    # Core types
    "Role", "LoopState", "AutonomyLevel", "RiskLevel", "PolicyDecision",
    "ToolCallFormat", "TurnStatus",
    "Message", "ParsedToolCall", "ParseResult", "ToolResult", "GateDecision",
    "TurnResult", "AgentEvent", "EventType",
    # Errors
    "ClawLoopError", "ProviderError", "ProviderExhaustedError", "ConfigError",
    # Core components
    "SecretScrubber", "redact",
    "ToolCallParser",
    "SecurityGate", "SecurityPolicy", "ActionTracker",
    "Provider", "ProviderCapabilities", "OpenAIProvider",
    "HistoryCompactor",
    "ApprovalChannel", "ApprovalRequest", "ApprovalResponse",
    "ConfirmationManager", "ConsoleApprovalChannel",
    "TurnEngine", "AgentConfig", "EventBus",
    # Tools
    "Tool", "FunctionTool", "ToolRegistry", "ToolSchema",
    # Memory
    "Memory", "MemoryEntry", "MarkdownMemory",
]
