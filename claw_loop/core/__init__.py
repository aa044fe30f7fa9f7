"""Core components"""
from .types import *
from .errors import ClawLoopError, ProviderError, ProviderExhaustedError, ConfigError
from .scrubber import SecretScrubber, redact
from .parser import ToolCallParser, ParseStrategy, DEFAULT_STRATEGIES
from .policy import SecurityGate, SecurityPolicy, ActionTracker
from .llm_client import Provider, ProviderCapabilities, OpenAIProvider, sanitize_api_error
from .compressor import HistoryCompactor
from .approval import (
    ApprovalChannel, ApprovalRequest, ApprovalResponse, ConfirmationManager,
    ConsoleApprovalChannel, PendingApproval
)
from .agent_loop import TurnEngine, AgentConfig, EventBus
