"""Memory collaborator"""

from .manager import Memory, MemoryEntry, MarkdownMemory, format_for_system_prompt

__all__ = ['Memory', 'MemoryEntry', 'MarkdownMemory', 'format_for_system_prompt']
