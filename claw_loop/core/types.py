"""
核心类型定义 - 回合编排核心的数据模型
"""
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime
import uuid


class Role(str, Enum):
    """消息角色"""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class LoopState(Enum):
    """回合状态机"""
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    PARSING = "parsing"
    EXECUTING_TOOLS = "executing_tools"
    AWAITING_APPROVAL = "awaiting_approval"
    APPENDING_RESULTS = "appending_results"
    COMPACTING = "compacting"
    COMPLETED = "completed"
    TRUNCATED = "truncated"
    CANCELLED = "cancelled"
    ERROR = "error"


class AutonomyLevel(str, Enum):
    """自主级别 - 进程启动时确定"""
    READ_ONLY = "read_only"
    SUPERVISED = "supervised"
    FULL = "full"


class RiskLevel(str, Enum):
    """动作风险级别"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PolicyDecision(Enum):
    """安全闸门决策结果"""
    ALLOW = "allow"
    DENY = "deny"
    REQUIRE_APPROVAL = "require_approval"


class ToolCallFormat(str, Enum):
    """解析出工具调用时匹配到的编码格式"""
    JSON_OBJECT = "json_object"
    TAGGED = "tagged"
    FENCED = "fenced"
    VENDOR = "vendor"
    ENVELOPE = "envelope"
    ALIAS = "alias"
    RESULT_TAG = "result_tag"
    NONE = "none"


class TurnStatus(str, Enum):
    """回合结束方式"""
    COMPLETED = "completed"
    TRUNCATED = "truncated"
    CANCELLED = "cancelled"


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


@dataclass
class Message:
    """对话消息"""
    role: Role
    content: str = ""
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    tool_calls: Optional[List[str]] = None  # assistant消息发起的调用id
    is_summary: bool = False
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        data = {"role": self.role.value, "content": self.content or ""}
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.name:
            data["name"] = self.name
        return data


@dataclass
class ParsedToolCall:
    """从模型文本中解析出的工具调用请求"""
    name: str
    arguments: Dict[str, Any]
    format: ToolCallFormat
    id: str = field(default_factory=new_call_id, compare=False)


@dataclass
class ParseResult:
    """单次解析的完整结果"""
    text: str
    calls: List[ParsedToolCall] = field(default_factory=list)
    format: ToolCallFormat = ToolCallFormat.NONE


@dataclass
class ToolResult:
    """工具执行结果"""
    success: bool
    output: str = ""
    error: Optional[str] = None
    call_id: str = ""
    name: str = ""

    def render(self) -> str:
        """渲染为回灌给模型的文本"""
        if self.success:
            return self.output
        if self.output:
            return f"Error: {self.error}\n{self.output}"
        return f"Error: {self.error}"

    def to_message(self) -> Message:
        return Message(
            role=Role.TOOL,
            content=self.render(),
            tool_call_id=self.call_id or None,
            name=self.name or None
        )


@dataclass(frozen=True)
class GateDecision:
    """安全闸门的判定"""
    decision: PolicyDecision
    reason: str = ""
    risk: Optional[RiskLevel] = None

    @property
    def allowed(self) -> bool:
        return self.decision == PolicyDecision.ALLOW

    @property
    def denied(self) -> bool:
        return self.decision == PolicyDecision.DENY

    @property
    def needs_approval(self) -> bool:
        return self.decision == PolicyDecision.REQUIRE_APPROVAL

    @classmethod
    def allow(cls, risk: Optional[RiskLevel] = None, reason: str = "") -> "GateDecision":
        return cls(PolicyDecision.ALLOW, reason, risk)

    @classmethod
    def deny(cls, reason: str, risk: Optional[RiskLevel] = None) -> "GateDecision":
        return cls(PolicyDecision.DENY, reason, risk)

    @classmethod
    def require_approval(cls, reason: str, risk: Optional[RiskLevel] = None) -> "GateDecision":
        return cls(PolicyDecision.REQUIRE_APPROVAL, reason, risk)


@dataclass
class TurnResult:
    """一个回合的最终输出"""
    text: str
    status: TurnStatus = TurnStatus.COMPLETED
    iterations: int = 0
    tool_calls_made: int = 0

    @property
    def truncated(self) -> bool:
        return self.status == TurnStatus.TRUNCATED

    @property
    def cancelled(self) -> bool:
        return self.status == TurnStatus.CANCELLED


@dataclass
class AgentEvent:
    """Agent事件"""
    type: str
    data: Any
    timestamp: datetime = field(default_factory=datetime.now)


# 事件处理器类型
EventHandler = Callable[[AgentEvent], Coroutine[Any, Any, None]]


class EventType:
    """事件类型常量"""
    MESSAGE = "message"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    TOOL_CONFIRMATION_REQUEST = "tool_confirmation_request"
    TOOL_CONFIRMATION_RESPONSE = "tool_confirmation_response"
    STATE_CHANGE = "state_change"
    COMPACTION = "compaction"
    ERROR = "error"
    COMPLETION = "completion"
    THINKING = "thinking"
