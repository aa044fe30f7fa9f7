"""
记忆系统 - 键值记忆协作者
会话记录以 markdown 条目的形式持久化
"""
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

_ENTRY_RE = re.compile(r"^---\n(.*?)\n---\n(.*?)(?=^---\n|\Z)", re.MULTILINE | re.DOTALL)
_WORD_RE = re.compile(r"[\w\-]{3,}")


@dataclass
class MemoryEntry:
    """记忆条目"""
    key: str
    content: str
    category: str = "core"
    timestamp: float = field(default_factory=lambda: datetime.now().timestamp())
    session_id: Optional[str] = None


class Memory(ABC):
    """记忆协作者接口"""

    @abstractmethod
    async def store(
        self,
        key: str,
        content: str,
        category: str = "core",
        session_id: Optional[str] = None
    ) -> None:
        """写入（同键覆盖）"""

    @abstractmethod
    async def recall(self, query: str, limit: int = 5) -> List[MemoryEntry]:
        """按相关度检索"""

    @abstractmethod
    async def get(self, key: str) -> Optional[MemoryEntry]:
        """按键读取"""

    @abstractmethod
    async def forget(self, key: str) -> bool:
        """删除条目"""


class MarkdownMemory(Memory):
    """把条目追加保存在一个 markdown 文件里"""

    def __init__(self, path: str = ".claw_loop/memory.md"):
        self.path = Path(path).expanduser()
        self._entries: Dict[str, MemoryEntry] = {}
        self._loaded = False

    def _load(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self.path.exists():
            return
        text = self.path.read_text(encoding='utf-8')
        for match in _ENTRY_RE.finditer(text):
            try:
                header = yaml.safe_load(match.group(1)) or {}
            except yaml.YAMLError as e:
                logger.warning(f"Skipping malformed memory entry in {self.path}: {e}")
                continue
            if not isinstance(header, dict) or "key" not in header:
                continue
            entry = MemoryEntry(
                key=str(header["key"]),
                content=match.group(2).rstrip("\n"),
                category=str(header.get("category", "core")),
                timestamp=float(header.get("timestamp", 0.0)),
                session_id=header.get("session_id")
            )
            self._entries[entry.key] = entry

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        blocks = []
        for entry in self._entries.values():
            header = {
                "key": entry.key,
                "category": entry.category,
                "timestamp": entry.timestamp,
            }
            if entry.session_id:
                header["session_id"] = entry.session_id
            header_text = yaml.safe_dump(header, default_flow_style=False, allow_unicode=True).strip()
            blocks.append(f"---\n{header_text}\n---\n{entry.content}\n")
        self.path.write_text("".join(blocks), encoding='utf-8')

    async def store(
        self,
        key: str,
        content: str,
        category: str = "core",
        session_id: Optional[str] = None
    ) -> None:
        self._load()
        self._entries[key] = MemoryEntry(
            key=key,
            content=content,
            category=category,
            session_id=session_id
        )
        self._save()

    async def recall(self, query: str, limit: int = 5) -> List[MemoryEntry]:
        self._load()
        words = {w.lower() for w in _WORD_RE.findall(query)}
        if not words:
            return []

        scored = []
        for entry in self._entries.values():
            haystack = f"{entry.key} {entry.content}".lower()
            score = sum(haystack.count(word) for word in words)
            if score > 0:
                scored.append((score, entry.timestamp, entry))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [entry for _, _, entry in scored[:limit]]

    async def get(self, key: str) -> Optional[MemoryEntry]:
        self._load()
        return self._entries.get(key)

    async def forget(self, key: str) -> bool:
        self._load()
        if key not in self._entries:
            return False
        del self._entries[key]
        self._save()
        return True


def format_for_system_prompt(entries: List[MemoryEntry]) -> str:
    """格式化为系统提示词的一部分"""
    if not entries:
        return ""
    lines = [f"- [{entry.category}] {entry.key}: {entry.content}" for entry in entries]
    return "## Relevant Memory\n\n" + "\n".join(lines)
