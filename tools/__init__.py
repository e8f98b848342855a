"""Tool system module - 工具定义、注册表与执行器"""

from .base import (
    ToolArgs,
    ToolContext,
    ToolDefinition,
    ToolRegistry,
)
from .executor import ToolExecutor, classify_error, REMOTE_TOOL_PREFIX

__all__ = [
    'ToolArgs',
    'ToolContext',
    'ToolDefinition',
    'ToolRegistry',
    'ToolExecutor',
    'classify_error',
    'REMOTE_TOOL_PREFIX',
]
