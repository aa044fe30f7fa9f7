"""
测试用例 - 回合引擎
"""
import asyncio

import pytest

from claw_loop.core.agent_loop import AgentConfig, EventBus, TurnEngine
from claw_loop.core.approval import ApprovalChannel, ApprovalResponse
from claw_loop.core.compressor import HistoryCompactor
from claw_loop.core.errors import ProviderError, ProviderExhaustedError
from claw_loop.core.policy import SecurityGate, SecurityPolicy
from claw_loop.core.types import (
    AgentEvent, AutonomyLevel, EventType, LoopState, Role, TurnStatus
)
from claw_loop.memory.manager import MarkdownMemory
from claw_loop.tools.base import FunctionTool, ToolRegistry

from stubs import ScriptedProvider, tool_call


def make_engine(provider, tools, workspace, level=AutonomyLevel.FULL, config=None,
                policy_overrides=None, **kwargs):
    policy = SecurityPolicy(level=level, workspace_dir=str(workspace), **(policy_overrides or {}))
    config = config or AgentConfig(provider_backoff_base=0.001)
    return TurnEngine(provider, tools, SecurityGate(policy), config=config, **kwargs)


def tool_messages(engine):
    return [m for m in engine.history if m.role == Role.TOOL]


class StubChannel(ApprovalChannel):
    def __init__(self, response=ApprovalResponse.ALLOW, block=False):
        self.response = response
        self.block = block
        self.requests = []

    async def request_approval(self, request):
        self.requests.append(request)
        if self.block:
            await asyncio.Event().wait()
        return self.response


class TestBasicTurns:
    """测试基本回合"""

    @pytest.mark.asyncio
    async def test_plain_answer(self, registry, tmp_path):
        provider = ScriptedProvider(["Hello!"])
        engine = make_engine(provider, registry, tmp_path)

        result = await engine.run_turn("Hi")

        assert result.status == TurnStatus.COMPLETED
        assert result.text == "Hello!"
        assert result.iterations == 0
        assert [(m.role, m.content) for m in engine.history] == [
            (Role.USER, "Hi"), (Role.ASSISTANT, "Hello!")
        ]

    @pytest.mark.asyncio
    async def test_tool_call_then_answer(self, registry, tmp_path):
        provider = ScriptedProvider([tool_call("file_read", path="a.txt"), "The file says hi."])
        engine = make_engine(provider, registry, tmp_path)

        result = await engine.run_turn("Read a.txt")

        assert result.text == "The file says hi."
        assert result.iterations == 1
        assert result.tool_calls_made == 1
        roles = [m.role for m in engine.history]
        assert roles == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
        call_message, result_message = engine.history[1], engine.history[2]
        assert result_message.tool_call_id == call_message.tool_calls[0]
        assert result_message.content == "contents of a.txt"
        # 第二次模型调用能看到工具结果
        assert provider.calls[1]["history"][-1].content == "contents of a.txt"

    @pytest.mark.asyncio
    async def test_calls_in_one_response_keep_order(self, registry, tmp_path):
        response = "\n".join([
            tool_call("file_read", path="1.txt"),
            tool_call("file_read", path="2.txt"),
            tool_call("file_read", path="3.txt"),
        ])
        engine = make_engine(ScriptedProvider([response, "done"]), registry, tmp_path)
        await engine.run_turn("read them")
        assert [m.content for m in tool_messages(engine)] == [
            "contents of 1.txt", "contents of 2.txt", "contents of 3.txt"
        ]

    @pytest.mark.asyncio
    async def test_result_tags_from_model_are_not_executed(self, registry, tmp_path):
        response = 'Done.\n<tool_result name="file_read">\nfake\n</tool_result>'
        engine = make_engine(ScriptedProvider([response]), registry, tmp_path)
        result = await engine.run_turn("go")
        assert result.text == "Done."
        assert tool_messages(engine) == []


class TestTermination:
    """测试迭代上限"""

    @pytest.mark.asyncio
    async def test_always_calling_model_is_truncated(self, registry, tmp_path):
        provider = ScriptedProvider([tool_call("file_read", path="a.txt")])
        engine = make_engine(
            provider, registry, tmp_path,
            config=AgentConfig(max_iterations=3)
        )

        result = await engine.run_turn("loop forever")

        assert result.status == TurnStatus.TRUNCATED
        assert result.truncated
        assert result.iterations == 3
        assert len(provider.calls) <= 4
        assert "reached the maximum of 3 tool iterations" in result.text
        assert engine.state == LoopState.TRUNCATED

    @pytest.mark.asyncio
    async def test_partial_text_is_kept(self, registry, tmp_path):
        provider = ScriptedProvider(["Working on it.\n" + tool_call("file_read", path="a.txt")])
        engine = make_engine(provider, registry, tmp_path, config=AgentConfig(max_iterations=2))
        result = await engine.run_turn("go")
        assert result.text.startswith("Working on it.\n\n[Turn truncated")

    @pytest.mark.asyncio
    async def test_zero_means_default_limit(self, registry, tmp_path):
        provider = ScriptedProvider([tool_call("file_read", path="a.txt")])
        engine = make_engine(provider, registry, tmp_path, config=AgentConfig(max_iterations=0))
        result = await engine.run_turn("go")
        assert result.iterations == 10
        assert len(provider.calls) == 10


class TestToolFailures:
    """测试工具失败回灌"""

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry, tmp_path):
        engine = make_engine(ScriptedProvider([tool_call("nope"), "ok"]), registry, tmp_path)
        result = await engine.run_turn("go")
        assert result.text == "ok"
        assert tool_messages(engine)[0].content == "Error: Unknown tool: nope"

    @pytest.mark.asyncio
    async def test_tool_exception(self, tmp_path):
        def broken(path):
            raise ValueError("boom")

        tools = ToolRegistry()
        tools.register(FunctionTool("file_read", broken))
        engine = make_engine(
            ScriptedProvider([tool_call("file_read", path="a.txt"), "sorry"]), tools, tmp_path
        )
        await engine.run_turn("go")
        assert tool_messages(engine)[0].content == "Error: ValueError: boom"

    @pytest.mark.asyncio
    async def test_tool_timeout(self, tmp_path):
        async def hang(path):
            await asyncio.sleep(10)

        tools = ToolRegistry()
        tools.register(FunctionTool("file_read", hang))
        engine = make_engine(
            ScriptedProvider([tool_call("file_read", path="a.txt"), "gave up"]),
            tools, tmp_path,
            config=AgentConfig(tool_timeout=0.05)
        )
        result = await asyncio.wait_for(engine.run_turn("go"), timeout=5)
        assert result.text == "gave up"
        assert "timed out" in tool_messages(engine)[0].content

    @pytest.mark.asyncio
    async def test_tool_output_is_scrubbed_but_model_text_is_not(self, tmp_path):
        tools = ToolRegistry()
        tools.register(FunctionTool("file_read", lambda path: "api_key=abc123\nhost=db"))
        engine = make_engine(
            ScriptedProvider([tool_call("file_read", path=".env"), "Your token=xyz is set"]),
            tools, tmp_path
        )
        result = await engine.run_turn("show env")
        assert tool_messages(engine)[0].content == "api_key=[REDACTED]\nhost=db"
        assert result.text == "Your token=xyz is set"


class TestSecurity:
    """测试安全闸门接入"""

    @pytest.mark.asyncio
    async def test_denied_action_is_not_executed(self, tmp_path):
        executed = []
        tools = ToolRegistry()
        tools.register(FunctionTool("file_write", lambda path, content: executed.append(path)))
        engine = make_engine(
            ScriptedProvider([tool_call("file_write", path="a.txt", content="x"), "ok"]),
            tools, tmp_path, level=AutonomyLevel.READ_ONLY
        )

        await engine.run_turn("write it")

        assert executed == []
        assert tool_messages(engine)[0].content.startswith("Error: Action denied by security policy")

    @pytest.mark.asyncio
    async def test_injection_denied_even_in_full_mode(self, tmp_path):
        executed = []
        tools = ToolRegistry()
        tools.register(FunctionTool("shell", lambda command: executed.append(command)))
        engine = make_engine(
            ScriptedProvider([tool_call("shell", command="ls; rm -rf /"), "ok"]), tools, tmp_path
        )
        await engine.run_turn("list")
        assert executed == []

    @pytest.mark.asyncio
    async def test_rate_limit_applies_within_a_response(self, registry, tmp_path):
        response = tool_call("file_read", path="a.txt") + tool_call("file_read", path="b.txt")
        engine = make_engine(
            ScriptedProvider([response, "done"]), registry, tmp_path,
            policy_overrides={"max_actions_per_hour": 1}
        )
        await engine.run_turn("read both")
        first, second = tool_messages(engine)
        assert first.content == "contents of a.txt"
        assert "Rate limit exceeded" in second.content


class TestApproval:
    """测试人工确认"""

    def _engine(self, registry, tmp_path, **kwargs):
        provider = ScriptedProvider([tool_call("file_write", path="a.txt", content="hi"), "ok"])
        return make_engine(provider, registry, tmp_path, level=AutonomyLevel.SUPERVISED, **kwargs)

    @pytest.mark.asyncio
    async def test_channel_approves(self, registry, tmp_path):
        channel = StubChannel(ApprovalResponse.ALLOW)
        engine = self._engine(registry, tmp_path, approval_channel=channel)
        await engine.run_turn("write")
        assert channel.requests[0].tool_name == "file_write"
        assert "Risk level: MEDIUM" in channel.requests[0].description
        assert tool_messages(engine)[0].content == "wrote 2 bytes to a.txt"

    @pytest.mark.asyncio
    async def test_channel_denies(self, registry, tmp_path):
        engine = self._engine(registry, tmp_path, approval_channel=StubChannel(ApprovalResponse.DENY))
        await engine.run_turn("write")
        assert "not approved" in tool_messages(engine)[0].content

    @pytest.mark.asyncio
    async def test_no_channel_denies(self, registry, tmp_path):
        engine = self._engine(registry, tmp_path)
        await engine.run_turn("write")
        assert "no approval channel configured" in tool_messages(engine)[0].content

    @pytest.mark.asyncio
    async def test_event_subscriber_responds(self, registry, tmp_path):
        engine = self._engine(registry, tmp_path)
        seen = []

        async def approve(event):
            pending = event.data["call_id"] in engine.confirmation_manager.get_pending()
            seen.append((event.data["risk"], pending))
            engine.respond_to_confirmation(event.data["call_id"], True)

        engine.on(EventType.TOOL_CONFIRMATION_REQUEST, approve)
        await engine.run_turn("write")

        assert seen == [("medium", True)]
        assert tool_messages(engine)[0].content == "wrote 2 bytes to a.txt"
        assert engine.confirmation_manager.get_pending() == {}

    @pytest.mark.asyncio
    async def test_approval_timeout_denies(self, registry, tmp_path):
        engine = self._engine(
            registry, tmp_path,
            approval_channel=StubChannel(block=True),
            config=AgentConfig(approval_timeout=0.05)
        )
        result = await asyncio.wait_for(engine.run_turn("write"), timeout=5)
        assert result.status == TurnStatus.COMPLETED
        assert "timeout" in tool_messages(engine)[0].content


class TestCancellation:
    """测试取消"""

    @pytest.mark.asyncio
    async def test_cancel_during_model_call(self, registry, tmp_path):
        provider = ScriptedProvider(["never"], delay=10)
        engine = make_engine(provider, registry, tmp_path)

        task = asyncio.ensure_future(engine.run_turn("slow"))
        await asyncio.sleep(0.05)
        assert engine.is_running
        assert engine.cancel()

        result = await asyncio.wait_for(task, timeout=2)
        assert result.status == TurnStatus.CANCELLED
        assert result.cancelled
        assert engine.state == LoopState.CANCELLED
        assert not engine.is_running

    @pytest.mark.asyncio
    async def test_cancel_when_idle(self, registry, tmp_path):
        engine = make_engine(ScriptedProvider(["x"]), registry, tmp_path)
        assert engine.cancel() is False

    @pytest.mark.asyncio
    async def test_turn_timeout(self, registry, tmp_path):
        provider = ScriptedProvider(["never"], delay=10)
        engine = make_engine(provider, registry, tmp_path, config=AgentConfig(turn_timeout=0.05))
        result = await asyncio.wait_for(engine.run_turn("slow"), timeout=2)
        assert result.status == TurnStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_during_approval_denies(self, registry, tmp_path):
        executed = []
        tools = ToolRegistry()
        tools.register(FunctionTool("file_write", lambda path, content: executed.append(path)))
        provider = ScriptedProvider([tool_call("file_write", path="a.txt", content="x"), "ok"])
        engine = make_engine(provider, tools, tmp_path, level=AutonomyLevel.SUPERVISED)

        async def cancel_instead(event):
            engine.cancel()

        engine.on(EventType.TOOL_CONFIRMATION_REQUEST, cancel_instead)
        result = await engine.run_turn("write")

        assert result.status == TurnStatus.CANCELLED
        assert executed == []
        assert len(provider.calls) == 1
        assert "cancelled" in tool_messages(engine)[0].content

    @pytest.mark.asyncio
    async def test_external_task_cancellation_propagates(self, registry, tmp_path):
        engine = make_engine(ScriptedProvider(["never"], delay=10), registry, tmp_path)
        task = asyncio.ensure_future(engine.run_turn("slow"))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert engine.state == LoopState.CANCELLED
        assert not engine.is_running


class TestProviderErrors:
    """测试后端重试"""

    @pytest.mark.asyncio
    async def test_retryable_error_is_retried(self, registry, tmp_path):
        provider = ScriptedProvider([ProviderError("busy", retryable=True), "recovered"])
        engine = make_engine(provider, registry, tmp_path)
        result = await engine.run_turn("hi")
        assert result.text == "recovered"
        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, registry, tmp_path):
        provider = ScriptedProvider([ProviderError("busy", retryable=True)])
        engine = make_engine(
            provider, registry, tmp_path,
            config=AgentConfig(provider_max_retries=2, provider_backoff_base=0.001)
        )
        errors = []

        async def on_error(event):
            errors.append(event.data["error"])

        engine.on(EventType.ERROR, on_error)
        with pytest.raises(ProviderExhaustedError) as exc_info:
            await engine.run_turn("hi")

        assert exc_info.value.attempts == 3
        assert len(provider.calls) == 3
        assert engine.state == LoopState.ERROR
        assert errors

    @pytest.mark.asyncio
    async def test_fatal_error_not_retried(self, registry, tmp_path):
        provider = ScriptedProvider([ProviderError("invalid api key", retryable=False)])
        engine = make_engine(provider, registry, tmp_path)
        with pytest.raises(ProviderError):
            await engine.run_turn("hi")
        assert len(provider.calls) == 1


class TestParallelTools:
    """测试并行执行后的结果重排"""

    @pytest.mark.asyncio
    async def test_results_resequenced(self, tmp_path):
        finished = []

        async def slow(path):
            await asyncio.sleep(0.05)
            finished.append("slow")
            return "slow"

        async def fast(pattern):
            finished.append("fast")
            return "fast"

        tools = ToolRegistry()
        tools.register(FunctionTool("file_read", slow))
        tools.register(FunctionTool("glob", fast))
        response = tool_call("file_read", path="a.txt") + tool_call("glob", pattern="*")
        engine = make_engine(
            ScriptedProvider([response, "done"]), tools, tmp_path,
            config=AgentConfig(parallel_tools=True)
        )

        await engine.run_turn("go")

        assert finished == ["fast", "slow"]
        assert [m.content for m in tool_messages(engine)] == ["slow", "fast"]


class TestCompaction:
    """测试回合中的历史压缩"""

    @pytest.mark.asyncio
    async def test_compacts_between_iterations(self, registry, tmp_path):
        call = tool_call("file_read", path="a.txt")
        provider = ScriptedProvider([call, call, call, "All done."])
        compactor = HistoryCompactor(ScriptedProvider(["earlier reads"]), threshold=6, keep_recent=2)
        engine = make_engine(provider, registry, tmp_path, compactor=compactor)
        compactions = []

        async def on_compaction(event):
            compactions.append(event.data)

        engine.on(EventType.COMPACTION, on_compaction)
        result = await engine.run_turn("read three times")

        assert result.text == "All done."
        assert compactions == [{"before": 7, "after": 3}]
        assert engine.history[0].is_summary
        assert "earlier reads" in engine.history[0].content
        # 压缩后没有孤立的工具结果
        issued = {i for m in engine.history if m.tool_calls for i in m.tool_calls}
        assert {m.tool_call_id for m in tool_messages(engine)} <= issued
        assert provider.calls[3]["history"][0].is_summary


class TestContext:
    """测试系统提示词与记忆"""

    @pytest.mark.asyncio
    async def test_text_protocol_for_non_native_provider(self, registry, tmp_path):
        provider = ScriptedProvider(["ok"])
        engine = make_engine(provider, registry, tmp_path)
        engine.add_context_generator(lambda: "## Project\nclaw")
        await engine.run_turn("hi")

        prompt = provider.calls[0]["system_prompt"]
        assert "## Project\nclaw" in prompt
        assert "<tool_call>" in prompt
        assert "- file_read: Read a file" in prompt

    @pytest.mark.asyncio
    async def test_native_provider_gets_tool_specs(self, registry, tmp_path):
        provider = ScriptedProvider(["ok"], native_tools=True)
        engine = make_engine(provider, registry, tmp_path)
        await engine.run_turn("hi")

        assert "Tool Usage Guidelines" not in provider.calls[0]["system_prompt"]
        names = [spec["function"]["name"] for spec in provider.calls[0]["tools_spec"]]
        assert names == ["file_read", "file_write"]

    @pytest.mark.asyncio
    async def test_memory_recall_and_store(self, registry, tmp_path):
        memory = MarkdownMemory(str(tmp_path / "memory.md"))
        await memory.store("favorite_color", "blue")
        provider = ScriptedProvider(["Blue."])
        engine = make_engine(provider, registry, tmp_path, memory=memory, session_id="s1")

        await engine.run_turn("What is my favorite color?")

        assert "favorite_color: blue" in provider.calls[0]["system_prompt"]
        reloaded = MarkdownMemory(str(tmp_path / "memory.md"))
        entries = await reloaded.recall("favorite color", limit=10)
        records = [e for e in entries if e.category == "conversation"]
        assert records[0].session_id == "s1"
        assert "Assistant: Blue." in records[0].content


class TestEvents:
    """测试事件总线"""

    @pytest.mark.asyncio
    async def test_state_changes(self, registry, tmp_path):
        engine = make_engine(
            ScriptedProvider([tool_call("file_read", path="a.txt"), "ok"]), registry, tmp_path
        )
        states = []

        async def on_state(event):
            states.append(event.data["state"])

        engine.on(EventType.STATE_CHANGE, on_state)
        await engine.run_turn("go")

        assert states == [
            "awaiting_model", "parsing", "executing_tools", "appending_results",
            "awaiting_model", "parsing", "completed",
        ]

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_break_turn(self, registry, tmp_path):
        engine = make_engine(ScriptedProvider(["fine"]), registry, tmp_path)

        async def broken(event):
            raise RuntimeError("handler bug")

        engine.on(EventType.MESSAGE, broken)
        result = await engine.run_turn("hi")
        assert result.text == "fine"

    @pytest.mark.asyncio
    async def test_event_bus_off(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event.type)

        bus.on("x", handler)
        await bus.emit(AgentEvent(type="x", data=None))
        bus.off("x", handler)
        await bus.emit(AgentEvent(type="x", data=None))
        assert received == ["x"]
        assert not bus.has_handlers("x")


class TestSerialization:
    """测试同一引擎上的回合串行"""

    @pytest.mark.asyncio
    async def test_concurrent_turns_do_not_interleave(self, registry, tmp_path):
        provider = ScriptedProvider([lambda history: f"reply to {history[-1].content}"], delay=0.02)
        engine = make_engine(provider, registry, tmp_path)

        await asyncio.gather(engine.run_turn("a"), engine.run_turn("b"))

        assert [m.content for m in engine.history] == ["a", "reply to a", "b", "reply to b"]
