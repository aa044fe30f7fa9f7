"""
测试公共夹具
"""
import pytest

from claw_loop.tools.base import FunctionTool, ToolRegistry


@pytest.fixture
def registry() -> ToolRegistry:
    reg = ToolRegistry()
    reg.register(FunctionTool(
        "file_read",
        lambda path: f"contents of {path}",
        "Read a file",
        {"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]}
    ))
    reg.register(FunctionTool(
        "file_write",
        lambda path, content="": f"wrote {len(content)} bytes to {path}",
        "Write a file"
    ))
    return reg
