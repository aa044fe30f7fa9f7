"""
人工确认 - HumanInTheLoop 的挂起点

引擎为每个 REQUIRE_APPROVAL 的调用创建一个 PendingApproval 句柄并等待它；
取消、超时都会把句柄确定地解析为拒绝。
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm

from .types import RiskLevel

logger = logging.getLogger(__name__)


class ApprovalResponse(Enum):
    """确认结果"""
    ALLOW = "allow"
    DENY = "deny"


@dataclass
class ApprovalRequest:
    """确认请求"""
    call_id: str
    tool_name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    description: str = ""
    risk: Optional[RiskLevel] = None


class ApprovalChannel(ABC):
    """人工确认通道"""

    @abstractmethod
    async def request_approval(self, request: ApprovalRequest) -> ApprovalResponse:
        """请求确认（可能长时间等待用户输入）"""


class PendingApproval:
    """等待中的确认句柄"""

    def __init__(self, request: ApprovalRequest):
        self.request = request
        self.outcome = ""
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def call_id(self) -> str:
        return self.request.call_id

    def done(self) -> bool:
        return self._future.done()

    def resolve(self, approved: bool, outcome: str = "") -> bool:
        """给出结果；已解析过时返回 False"""
        if self._future.done():
            return False
        self.outcome = outcome or ("approved" if approved else "denied")
        self._future.set_result(ApprovalResponse.ALLOW if approved else ApprovalResponse.DENY)
        return True

    async def wait(
        self,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None
    ) -> ApprovalResponse:
        """等待结果；取消或超时都解析为 DENY"""
        waiters = {self._future}
        cancel_task = None
        if cancel_event is not None:
            cancel_task = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_task)
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_task is not None:
                cancel_task.cancel()

        if not self._future.done():
            if cancel_event is not None and cancel_event.is_set():
                self.resolve(False, "cancelled")
            else:
                self.resolve(False, "timeout")
        return self._future.result()


class ConfirmationManager:
    """确认管理器"""

    def __init__(self):
        self._pending: Dict[str, PendingApproval] = {}

    def request_confirmation(self, request: ApprovalRequest) -> PendingApproval:
        """登记确认请求"""
        handle = PendingApproval(request)
        self._pending[request.call_id] = handle
        return handle

    def respond(self, call_id: str, approved: bool, outcome: str = "") -> bool:
        """响应确认请求"""
        handle = self._pending.pop(call_id, None)
        if handle is None:
            return False
        return handle.resolve(approved, outcome)

    def discard(self, call_id: str) -> None:
        self._pending.pop(call_id, None)

    def get_pending(self) -> Dict[str, ApprovalRequest]:
        """获取待处理的确认请求"""
        return {call_id: handle.request for call_id, handle in self._pending.items()}

    def cancel_all(self) -> None:
        """把所有待处理的确认解析为拒绝"""
        for handle in self._pending.values():
            handle.resolve(False, "cancelled")
        self._pending.clear()


class ConsoleApprovalChannel(ApprovalChannel):
    """在终端上询问用户"""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    async def request_approval(self, request: ApprovalRequest) -> ApprovalResponse:
        self.console.print(Panel(
            request.description or f"Run tool `{request.tool_name}`?",
            title=f"Confirm tool: {request.tool_name}",
            border_style="yellow"
        ))
        approved = await asyncio.to_thread(
            Confirm.ask, "Proceed?", console=self.console, default=False
        )
        return ApprovalResponse.ALLOW if approved else ApprovalResponse.DENY
