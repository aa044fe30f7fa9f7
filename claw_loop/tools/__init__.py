"""Tool collaborator interface"""

from .base import (
    Tool,
    FunctionTool,
    ToolRegistry,
    ToolSchema,
)

__all__ = [
    'Tool',
    'FunctionTool',
    'ToolRegistry',
    'ToolSchema',
]
