"""
Turn Engine - 回合编排循环

核心流程:
1. 接收用户输入
2. 构建上下文（系统提示词 + 上下文生成器 + 记忆）
3. 调用模型（可重试，可取消）
4. 解析响应中的工具调用
5. 逐个经过安全闸门 / 人工确认后执行
6. 按原始顺序回灌结果，必要时压缩历史，继续循环
7. 直到没有工具调用、达到迭代上限或被取消
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .approval import (
    ApprovalChannel, ApprovalRequest, ApprovalResponse, ConfirmationManager, PendingApproval
)
from .compressor import HistoryCompactor
from .errors import ProviderError, ProviderExhaustedError
from .llm_client import Provider, sanitize_api_error
from .parser import ToolCallParser
from .policy import SecurityGate
from .scrubber import SecretScrubber
from .types import (
    AgentEvent, EventHandler, EventType, GateDecision, LoopState, Message,
    ParsedToolCall, Role, ToolResult, TurnResult, TurnStatus
)
from claw_loop.memory.manager import Memory, format_for_system_prompt
from claw_loop.tools.base import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."

TRUNCATION_NOTICE = "[Turn truncated: reached the maximum of {limit} tool iterations.]"

TOOL_PROTOCOL_PROMPT = """## Tool Usage Guidelines

To use a tool, reply with one block per call:

<tool_call>
{{"name": "tool_name", "arguments": {{"param": "value"}}}}
</tool_call>

Wait for the tool result before proceeding. When no tool is needed, answer directly.

Available tools:
{tools}"""

_CANCELLED = object()


@dataclass
class AgentConfig:
    """回合引擎配置"""
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    tool_timeout: Optional[float] = 60.0
    parallel_tools: bool = False
    provider_max_retries: int = 3
    provider_backoff_base: float = 1.0
    provider_backoff_max: float = 30.0
    approval_timeout: Optional[float] = 300.0
    turn_timeout: Optional[float] = None
    memory_recall_limit: int = 5
    remember_turns: bool = True

    @property
    def iteration_limit(self) -> int:
        """0 表示使用默认上限"""
        return self.max_iterations if self.max_iterations > 0 else DEFAULT_MAX_ITERATIONS


class EventBus:
    """事件总线 - 解耦组件通信"""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = {}

    def on(self, event_type: str, handler: EventHandler) -> None:
        """订阅事件"""
        if event_type not in self._handlers:
            self._handlers[event_type] = []
        self._handlers[event_type].append(handler)

    def off(self, event_type: str, handler: EventHandler) -> None:
        """取消订阅"""
        if event_type in self._handlers:
            self._handlers[event_type].remove(handler)

    def has_handlers(self, event_type: str) -> bool:
        return bool(self._handlers.get(event_type))

    async def emit(self, event: AgentEvent) -> None:
        """发布事件"""
        handlers = self._handlers.get(event.type, [])
        for handler in list(handlers):
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"Error in event handler for '{event.type}': {e}")


class TurnEngine:
    """
    回合引擎

    一个引擎独占一份对话历史；同一引擎上的回合由锁串行化。
    解析失败、策略拒绝、工具异常都会变成回灌给模型的失败结果，
    只有耗尽重试的后端错误和外部取消会向上抛出。
    """

    def __init__(
        self,
        provider: Provider,
        tools: ToolRegistry,
        gate: SecurityGate,
        config: Optional[AgentConfig] = None,
        approval_channel: Optional[ApprovalChannel] = None,
        compactor: Optional[HistoryCompactor] = None,
        scrubber: Optional[SecretScrubber] = None,
        parser: Optional[ToolCallParser] = None,
        memory: Optional[Memory] = None,
        session_id: Optional[str] = None
    ):
        self.provider = provider
        self.tools = tools
        self.gate = gate
        self.config = config or AgentConfig()
        self.approval_channel = approval_channel
        self.compactor = compactor
        self.scrubber = scrubber or SecretScrubber()
        self.parser = parser or ToolCallParser()
        self.memory = memory
        self.session_id = session_id or uuid.uuid4().hex[:8]

        self.confirmation_manager = ConfirmationManager()
        self.event_bus = EventBus()

        # 状态
        self.state = LoopState.IDLE
        self.history: List[Message] = []

        # 锁和取消信号在事件循环内创建
        self._lock: Optional[asyncio.Lock] = None
        self._cancel_event: Optional[asyncio.Event] = None

        # 额外上下文生成器
        self._context_generators: List[Callable[[], str]] = []

    # ------------------------------------------------------------------
    # 公共接口
    # ------------------------------------------------------------------

    def add_context_generator(self, generator: Callable[[], str]) -> None:
        """添加上下文生成器（用于注入技能说明等）"""
        self._context_generators.append(generator)

    def on(self, event_type: str, handler: Callable[[AgentEvent], Awaitable[None]]) -> None:
        self.event_bus.on(event_type, handler)

    @property
    def is_running(self) -> bool:
        return self._cancel_event is not None

    def get_history(self) -> List[Message]:
        """获取历史副本"""
        return list(self.history)

    def clear_history(self) -> None:
        """清空历史"""
        self.history = []

    def cancel(self) -> bool:
        """取消正在进行的回合；没有回合在跑时返回 False"""
        if self._cancel_event is None:
            return False
        self._cancel_event.set()
        self.confirmation_manager.cancel_all()
        logger.info(f"Turn cancellation requested (session {self.session_id})")
        return True

    def respond_to_confirmation(self, call_id: str, approved: bool) -> bool:
        """响应确认请求（供 UI 在收到 TOOL_CONFIRMATION_REQUEST 后调用）"""
        return self.confirmation_manager.respond(call_id, approved)

    async def run_turn(self, user_input: str) -> TurnResult:
        """
        运行一个完整回合

        Returns:
            TurnResult: completed / truncated / cancelled

        Raises:
            ProviderError: 后端致命错误或重试耗尽
            asyncio.CancelledError: 外部取消（待确认请求会先被拒绝）
        """
        if self._lock is None:
            self._lock = asyncio.Lock()

        async with self._lock:
            self._cancel_event = asyncio.Event()
            timer = None
            if self.config.turn_timeout:
                timer = asyncio.get_running_loop().call_later(
                    self.config.turn_timeout, self._on_turn_timeout
                )
            logger.info(f"Turn started (session {self.session_id}, history {len(self.history)} messages)")
            try:
                result = await self._run(user_input)
            except asyncio.CancelledError:
                self.confirmation_manager.cancel_all()
                self.state = LoopState.CANCELLED
                raise
            except ProviderError as e:
                self.state = LoopState.ERROR
                logger.error(f"Turn failed: {e}")
                await self.event_bus.emit(AgentEvent(type=EventType.ERROR, data={"error": str(e)}))
                raise
            finally:
                if timer is not None:
                    timer.cancel()
                self._cancel_event = None

            logger.info(
                f"Turn {result.status.value} after {result.iterations} iterations "
                f"and {result.tool_calls_made} tool calls"
            )
            await self.event_bus.emit(AgentEvent(
                type=EventType.COMPLETION,
                data={"status": result.status.value, "text": result.text}
            ))
            return result

    # ------------------------------------------------------------------
    # 主循环
    # ------------------------------------------------------------------

    async def _run(self, user_input: str) -> TurnResult:
        self.history.append(Message(role=Role.USER, content=user_input))
        await self.event_bus.emit(AgentEvent(
            type=EventType.MESSAGE,
            data={"role": "user", "content": user_input}
        ))

        memory_context = await self._recall_memory(user_input)
        limit = self.config.iteration_limit
        iterations = 0
        calls_made = 0
        last_text = ""

        while True:
            if self._is_cancelled():
                return await self._cancelled(last_text, iterations, calls_made)

            # 上一轮结果全部回灌后才压缩
            await self._maybe_compact()

            await self._set_state(LoopState.AWAITING_MODEL)
            await self.event_bus.emit(AgentEvent(type=EventType.THINKING, data={"message": "Thinking..."}))
            response = await self._call_provider(self._build_system_prompt(memory_context))
            if response is _CANCELLED:
                return await self._cancelled(last_text, iterations, calls_made)

            await self._set_state(LoopState.PARSING)
            text, calls = self.parser.parse(response)
            if text:
                last_text = text
                await self.event_bus.emit(AgentEvent(
                    type=EventType.MESSAGE,
                    data={"role": "assistant", "content": text}
                ))

            if not calls:
                self.history.append(Message(role=Role.ASSISTANT, content=text))
                await self._set_state(LoopState.COMPLETED)
                await self._remember_turn(user_input, text)
                return TurnResult(text, TurnStatus.COMPLETED, iterations, calls_made)

            iterations += 1
            self.history.append(Message(
                role=Role.ASSISTANT,
                content=response,
                tool_calls=[call.id for call in calls]
            ))
            await self.event_bus.emit(AgentEvent(
                type=EventType.TOOL_CALL,
                data={"calls": [{"id": c.id, "name": c.name, "arguments": c.arguments} for c in calls]}
            ))

            results = await self._execute_calls(calls)
            calls_made += len(calls)

            await self._set_state(LoopState.APPENDING_RESULTS)
            for result in results:
                self.history.append(result.to_message())
                await self.event_bus.emit(AgentEvent(
                    type=EventType.TOOL_RESULT,
                    data={
                        "call_id": result.call_id,
                        "name": result.name,
                        "success": result.success,
                        "output": result.output,
                        "error": result.error
                    }
                ))

            if self._is_cancelled():
                return await self._cancelled(last_text, iterations, calls_made)

            if iterations >= limit:
                notice = TRUNCATION_NOTICE.format(limit=limit)
                final = f"{last_text}\n\n{notice}" if last_text else notice
                logger.warning(f"Turn truncated at {limit} tool iterations")
                self.history.append(Message(role=Role.ASSISTANT, content=final))
                await self._set_state(LoopState.TRUNCATED)
                await self._remember_turn(user_input, final)
                return TurnResult(final, TurnStatus.TRUNCATED, iterations, calls_made)

    def _build_system_prompt(self, memory_context: str = "") -> str:
        """构建完整系统提示词"""
        parts = [self.config.system_prompt]

        # 添加额外上下文
        for generator in self._context_generators:
            context = generator()
            if context:
                parts.append(context)

        if memory_context:
            parts.append(memory_context)

        # 不支持原生工具调用的后端需要文本协议说明
        if len(self.tools) and not self.provider.capabilities().supports_native_tools:
            listing = "\n".join(
                f"- {tool.name}: {tool.description}" for tool in self.tools.get_all()
            )
            parts.append(TOOL_PROTOCOL_PROMPT.format(tools=listing))

        return "\n\n".join(parts)

    async def _set_state(self, state: LoopState) -> None:
        self.state = state
        await self.event_bus.emit(AgentEvent(type=EventType.STATE_CHANGE, data={"state": state.value}))

    def _is_cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    def _on_turn_timeout(self) -> None:
        logger.warning(f"Turn timed out after {self.config.turn_timeout}s")
        self.cancel()

    async def _cancelled(self, text: str, iterations: int, calls_made: int) -> TurnResult:
        self.confirmation_manager.cancel_all()
        await self._set_state(LoopState.CANCELLED)
        return TurnResult(text, TurnStatus.CANCELLED, iterations, calls_made)

    # ------------------------------------------------------------------
    # 模型调用
    # ------------------------------------------------------------------

    async def _call_provider(self, system_prompt: str) -> Any:
        """带指数退避的模型调用；被取消时返回 _CANCELLED"""
        tools_spec = self.tools.specs() if len(self.tools) else None
        max_retries = max(0, self.config.provider_max_retries)
        attempt = 0

        while True:
            attempt += 1
            try:
                return await self._race_cancel(
                    self.provider.chat(list(self.history), system_prompt, tools_spec)
                )
            except ProviderError as e:
                if not e.retryable:
                    raise
                if attempt > max_retries:
                    raise ProviderExhaustedError(attempt, e) from e

                delay = min(
                    self.config.provider_backoff_base * (2 ** (attempt - 1)),
                    self.config.provider_backoff_max
                )
                logger.warning(
                    f"Provider call failed (attempt {attempt}/{max_retries + 1}): "
                    f"{sanitize_api_error(str(e))}; retrying in {delay:.1f}s"
                )
                if await self._sleep_unless_cancelled(delay):
                    return _CANCELLED

    async def _race_cancel(self, coro: Awaitable[Any]) -> Any:
        """等待协程，取消信号先到时放弃它"""
        task = asyncio.ensure_future(coro)
        cancel_wait = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
            if not task.done():
                task.cancel()
        if task.done() and not task.cancelled():
            return task.result()
        return _CANCELLED

    async def _sleep_unless_cancelled(self, delay: float) -> bool:
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # 工具执行
    # ------------------------------------------------------------------

    async def _execute_calls(self, calls: List[ParsedToolCall]) -> List[ToolResult]:
        """闸门和确认按顺序进行；结果始终按调用顺序返回"""
        await self._set_state(LoopState.EXECUTING_TOOLS)
        results: List[Optional[ToolResult]] = [None] * len(calls)
        runnable: List[Tuple[int, ParsedToolCall]] = []

        for index, call in enumerate(calls):
            if self._is_cancelled():
                results[index] = self._failed(call, "Cancelled before execution")
                continue

            rejection = await self._authorize(call)
            if rejection is not None:
                results[index] = rejection
                continue

            self.gate.record_action()
            if self.config.parallel_tools:
                runnable.append((index, call))
            else:
                results[index] = await self._run_tool(call)

        if runnable:
            outputs = await asyncio.gather(*(self._run_tool(call) for _, call in runnable))
            for (index, _), result in zip(runnable, outputs):
                results[index] = result

        return results

    async def _authorize(self, call: ParsedToolCall) -> Optional[ToolResult]:
        """通过时返回 None，否则返回失败结果"""
        if call.name not in self.tools:
            logger.warning(f"Model requested unknown tool '{call.name}'")
            return self._failed(call, f"Unknown tool: {call.name}")

        decision = self.gate.evaluate(call.name, call.arguments)
        if decision.denied:
            logger.warning(f"Denied '{call.name}': {decision.reason}")
            return self._failed(call, f"Action denied by security policy: {decision.reason}")

        if decision.needs_approval:
            approved, outcome = await self._request_approval(call, decision)
            if not approved:
                logger.warning(f"'{call.name}' was not approved ({outcome})")
                return self._failed(call, f"Action not approved by user ({outcome})")

        return None

    async def _request_approval(self, call: ParsedToolCall, decision: GateDecision) -> Tuple[bool, str]:
        if self.approval_channel is None and not self.event_bus.has_handlers(
            EventType.TOOL_CONFIRMATION_REQUEST
        ):
            return False, "no approval channel configured"

        request = ApprovalRequest(
            call_id=call.id,
            tool_name=call.name,
            arguments=call.arguments,
            description=self.gate.describe_action(call.name, call.arguments, decision),
            risk=decision.risk
        )
        await self._set_state(LoopState.AWAITING_APPROVAL)
        handle = self.confirmation_manager.request_confirmation(request)
        channel_task = None
        try:
            if self.approval_channel is not None:
                channel_task = asyncio.ensure_future(self._ask_channel(handle))
            await self.event_bus.emit(AgentEvent(
                type=EventType.TOOL_CONFIRMATION_REQUEST,
                data={
                    "call_id": call.id,
                    "tool_name": call.name,
                    "arguments": call.arguments,
                    "description": request.description,
                    "risk": decision.risk.value if decision.risk else None
                }
            ))
            response = await handle.wait(self._cancel_event, self.config.approval_timeout)
        finally:
            self.confirmation_manager.discard(call.id)
            if channel_task is not None and not channel_task.done():
                channel_task.cancel()

        approved = response == ApprovalResponse.ALLOW
        await self.event_bus.emit(AgentEvent(
            type=EventType.TOOL_CONFIRMATION_RESPONSE,
            data={"call_id": call.id, "approved": approved, "outcome": handle.outcome}
        ))
        await self._set_state(LoopState.EXECUTING_TOOLS)
        return approved, handle.outcome

    async def _ask_channel(self, handle: PendingApproval) -> None:
        try:
            response = await self.approval_channel.request_approval(handle.request)
        except Exception as e:
            logger.warning(f"Approval channel failed: {e}")
            handle.resolve(False, "approval channel error")
            return
        handle.resolve(response == ApprovalResponse.ALLOW)

    async def _run_tool(self, call: ParsedToolCall) -> ToolResult:
        tool = self.tools.get(call.name)
        timeout = self.config.tool_timeout
        try:
            if timeout:
                result = await asyncio.wait_for(tool.execute(call.arguments), timeout=timeout)
            else:
                result = await tool.execute(call.arguments)
        except asyncio.TimeoutError:
            logger.warning(f"Tool '{call.name}' timed out after {timeout}s")
            result = ToolResult(success=False, error=f"Tool '{call.name}' timed out after {timeout}s")
        except Exception as e:
            logger.warning(f"Tool '{call.name}' raised {type(e).__name__}: {e}")
            result = ToolResult(success=False, error=f"{type(e).__name__}: {e}")

        if not isinstance(result, ToolResult):
            result = ToolResult(success=True, output="" if result is None else str(result))

        result.call_id = call.id
        result.name = call.name
        result.output = self.scrubber.scrub(result.output or "")
        if result.error:
            result.error = self.scrubber.scrub(result.error)
        return result

    def _failed(self, call: ParsedToolCall, error: str) -> ToolResult:
        return ToolResult(success=False, error=error, call_id=call.id, name=call.name)

    # ------------------------------------------------------------------
    # 压缩与记忆
    # ------------------------------------------------------------------

    async def _maybe_compact(self) -> None:
        if self.compactor is None or not self.compactor.needs_compaction(self.history):
            return
        await self._set_state(LoopState.COMPACTING)
        before = len(self.history)
        self.history = await self.compactor.compact(self.history)
        logger.info(f"Compacted history from {before} to {len(self.history)} messages")
        await self.event_bus.emit(AgentEvent(
            type=EventType.COMPACTION,
            data={"before": before, "after": len(self.history)}
        ))

    async def _recall_memory(self, query: str) -> str:
        if self.memory is None or self.config.memory_recall_limit <= 0:
            return ""
        try:
            entries = await self.memory.recall(query, self.config.memory_recall_limit)
        except Exception as e:
            logger.warning(f"Memory recall failed: {e}")
            return ""
        return format_for_system_prompt(entries)

    async def _remember_turn(self, user_input: str, reply: str) -> None:
        if self.memory is None or not self.config.remember_turns:
            return
        key = f"turn_{self.session_id}_{uuid.uuid4().hex[:8]}"
        try:
            await self.memory.store(
                key,
                f"User: {user_input}\nAssistant: {reply}",
                category="conversation",
                session_id=self.session_id
            )
        except Exception as e:
            logger.warning(f"Failed to store turn in memory: {e}")
