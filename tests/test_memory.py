"""
测试用例 - 记忆系统
"""
import pytest

from claw_loop.memory.manager import MarkdownMemory, MemoryEntry, format_for_system_prompt


class TestMarkdownMemory:
    """测试 markdown 文件记忆"""

    @pytest.mark.asyncio
    async def test_store_and_get(self, tmp_path):
        memory = MarkdownMemory(str(tmp_path / "memory.md"))
        await memory.store("editor", "Prefers vim keybindings", category="preference")

        entry = await memory.get("editor")
        assert entry.content == "Prefers vim keybindings"
        assert entry.category == "preference"
        assert await memory.get("missing") is None

    @pytest.mark.asyncio
    async def test_persists_as_markdown(self, tmp_path):
        path = tmp_path / "nested" / "memory.md"
        memory = MarkdownMemory(str(path))
        await memory.store("project", "Line one\nLine two", session_id="abc")

        text = path.read_text(encoding='utf-8')
        assert text.startswith("---\n")
        assert "key: project" in text
        assert "Line one\nLine two" in text

        reloaded = MarkdownMemory(str(path))
        entry = await reloaded.get("project")
        assert entry.content == "Line one\nLine two"
        assert entry.session_id == "abc"

    @pytest.mark.asyncio
    async def test_store_overwrites_same_key(self, tmp_path):
        memory = MarkdownMemory(str(tmp_path / "memory.md"))
        await memory.store("lang", "python")
        await memory.store("lang", "rust")

        reloaded = MarkdownMemory(str(tmp_path / "memory.md"))
        assert (await reloaded.get("lang")).content == "rust"
        assert (tmp_path / "memory.md").read_text(encoding='utf-8').count("key: lang") == 1

    @pytest.mark.asyncio
    async def test_forget(self, tmp_path):
        memory = MarkdownMemory(str(tmp_path / "memory.md"))
        await memory.store("tmp", "x")
        assert await memory.forget("tmp")
        assert not await memory.forget("tmp")
        assert await MarkdownMemory(str(tmp_path / "memory.md")).get("tmp") is None

    @pytest.mark.asyncio
    async def test_recall_ranks_by_relevance(self, tmp_path):
        memory = MarkdownMemory(str(tmp_path / "memory.md"))
        await memory.store("deploy", "Deploy with docker compose; docker images live in registry")
        await memory.store("tests", "Run tests with pytest")
        await memory.store("docs", "Docs are built with mkdocs")

        entries = await memory.recall("how do I deploy docker?", limit=2)
        assert [e.key for e in entries] == ["deploy"]

        assert await memory.recall("a b", limit=5) == []

    @pytest.mark.asyncio
    async def test_recall_respects_limit(self, tmp_path):
        memory = MarkdownMemory(str(tmp_path / "memory.md"))
        for i in range(5):
            await memory.store(f"note{i}", "python tip")
        assert len(await memory.recall("python", limit=3)) == 3

    @pytest.mark.asyncio
    async def test_malformed_entries_are_skipped(self, tmp_path):
        path = tmp_path / "memory.md"
        path.write_text(
            "---\nkey: [unclosed\n---\nbroken\n"
            "---\ncategory: core\n---\nno key\n"
            "---\nkey: good\ncategory: core\n---\nkept\n",
            encoding='utf-8'
        )
        memory = MarkdownMemory(str(path))
        assert (await memory.get("good")).content == "kept"
        assert await memory.get("broken") is None


class TestFormatting:
    """测试提示词格式化"""

    def test_format_for_system_prompt(self):
        text = format_for_system_prompt([
            MemoryEntry(key="editor", content="vim", category="preference"),
        ])
        assert text == "## Relevant Memory\n\n- [preference] editor: vim"

    def test_empty(self):
        assert format_for_system_prompt([]) == ""
