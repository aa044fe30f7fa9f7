"""
工具基类 - 工具协作者接口与注册表
"""
import asyncio
import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from claw_loop.core.types import ToolResult


@dataclass
class ToolSchema:
    """工具JSON Schema定义"""
    name: str
    description: str
    parameters: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters
            }
        }


class Tool(ABC):
    """工具协作者"""

    name: str = ""
    description: str = ""

    def parameters_schema(self) -> Dict[str, Any]:
        return {"type": "object", "properties": {}}

    @abstractmethod
    async def execute(self, arguments: Dict[str, Any]) -> ToolResult:
        """执行工具调用（子类重写）"""

    def to_schema(self) -> ToolSchema:
        return ToolSchema(
            name=self.name,
            description=self.description,
            parameters=self.parameters_schema()
        )


class FunctionTool(Tool):
    """把普通函数（同步或异步）包装成工具"""

    def __init__(
        self,
        name: str,
        func: Callable[..., Any],
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None
    ):
        self.name = name
        self.func = func
        self.description = description or (inspect.getdoc(func) or "")
        self._parameters = parameters or {"type": "object", "properties": {}}

    def parameters_schema(self) -> Dict[str, Any]:
        return self._parameters

    async def execute(self, arguments: Dict[str, Any]) -> ToolResult:
        if inspect.iscoroutinefunction(self.func):
            value = await self.func(**arguments)
        else:
            value = await asyncio.to_thread(self.func, **arguments)
        if isinstance(value, ToolResult):
            return value
        return ToolResult(success=True, output="" if value is None else str(value))


class ToolRegistry:
    """工具注册表"""

    def __init__(self):
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """注册工具"""
        if not tool.name:
            raise ValueError("Tool must have a name")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        """注销工具"""
        self._tools.pop(name, None)

    def get(self, name: str) -> Optional[Tool]:
        """获取工具"""
        return self._tools.get(name)

    def get_all(self) -> List[Tool]:
        """获取所有工具"""
        return list(self._tools.values())

    def specs(self) -> List[Dict[str, Any]]:
        """所有工具的 OpenAI function 格式定义"""
        return [tool.to_schema().to_dict() for tool in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
