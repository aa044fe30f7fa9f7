"""
历史压缩器 - 用摘要替换最早的一段对话
"""
import logging
from typing import List, Optional, Set, Tuple

from .errors import ProviderError
from .llm_client import Provider
from .types import Message, Role

logger = logging.getLogger(__name__)

SUMMARY_HEADER = "## Previous Context Summary"

COMPACTION_SYSTEM_PROMPT = "You are a conversation compression assistant."

COMPACTION_PROMPT = """Summarize the conversation history concisely.

Please provide a concise summary maintaining:
- Key decisions made
- Important context
- Current task state
- Any errors or blockers encountered

Conversation to summarize:
"""

FALLBACK_CHARS_PER_MESSAGE = 200


class HistoryCompactor:
    """
    会话压缩器

    保留开头的活动系统消息和最近 keep_recent 条消息，
    把两者之间最早的连续片段交给模型做摘要。
    片段内不允许出现结果不在片段内（或尚无结果）的工具调用。
    """

    def __init__(
        self,
        summarizer: Provider,
        threshold: int = 50,
        keep_recent: int = 10,
        min_span: int = 2
    ):
        if keep_recent >= threshold - 2:
            raise ValueError("keep_recent must be smaller than threshold - 2")
        self.summarizer = summarizer
        self.threshold = threshold
        self.keep_recent = keep_recent
        self.min_span = min_span

    def needs_compaction(self, history: List[Message]) -> bool:
        """判断是否需要压缩"""
        return len(history) > self.threshold

    def select_span(self, history: List[Message]) -> Optional[Tuple[int, int]]:
        """选出可压缩的 [start, end) 区间，不存在时返回 None"""
        start = 0
        if history and history[0].role == Role.SYSTEM and not history[0].is_summary:
            start = 1
        end = len(history) - self.keep_recent

        while end - start >= self.min_span:
            if self._is_closed(history, start, end):
                return start, end
            end -= 1
        return None

    @staticmethod
    def _is_closed(history: List[Message], start: int, end: int) -> bool:
        """片段内发起的调用都在片段内得到结果，且片段内的结果都对应片段内的调用"""
        issued: Set[str] = set()
        answered: Set[str] = set()
        for msg in history[start:end]:
            if msg.tool_calls:
                issued.update(msg.tool_calls)
            if msg.role == Role.TOOL and msg.tool_call_id:
                answered.add(msg.tool_call_id)
        return issued == answered

    async def compact(self, history: List[Message]) -> List[Message]:
        """压缩历史记录，返回新的列表"""
        if not self.needs_compaction(history):
            return history

        span = self.select_span(history)
        if span is None:
            logger.info("History over threshold but no closed span is available for compaction")
            return history

        start, end = span
        summary = await self._summarize(history[start:end])
        summary_message = Message(
            role=Role.SYSTEM,
            content=f"{SUMMARY_HEADER}\n\n{summary}",
            is_summary=True
        )
        compacted = [*history[:start], summary_message, *history[end:]]
        logger.info(f"Compacted {end - start} messages into one summary ({len(history)} -> {len(compacted)})")
        return compacted

    async def _summarize(self, messages: List[Message]) -> str:
        transcript = self._transcript(messages)
        request = [Message(role=Role.USER, content=COMPACTION_PROMPT + transcript)]
        try:
            summary = await self.summarizer.chat(request, COMPACTION_SYSTEM_PROMPT, None)
        except ProviderError as e:
            logger.warning(f"Summarization failed, using truncated transcript: {e}")
            summary = ""
        if summary and summary.strip():
            return summary.strip()
        return self._fallback_summary(messages)

    @staticmethod
    def _transcript(messages: List[Message]) -> str:
        return "\n\n".join(
            f"{msg.role.value}: {msg.content}"
            for msg in messages
            if msg.content
        )

    @staticmethod
    def _fallback_summary(messages: List[Message]) -> str:
        lines = []
        for msg in messages:
            if not msg.content:
                continue
            text = msg.content.replace("\n", " ")
            if len(text) > FALLBACK_CHARS_PER_MESSAGE:
                text = text[:FALLBACK_CHARS_PER_MESSAGE] + "..."
            lines.append(f"- {msg.role.value}: {text}")
        return "\n".join(lines)
