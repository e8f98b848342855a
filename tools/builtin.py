"""
内置工具 - Agent、交互、分析、记忆与线程检索
"""
from .agent import AGENT_TOOLS
from .analysis import ANALYSIS_TOOLS
from .interaction import INTERACTION_TOOLS
from .memory import MEMORY_TOOLS
from .thread_search import THREAD_TOOLS

BUILTIN_TOOLS = AGENT_TOOLS + INTERACTION_TOOLS + ANALYSIS_TOOLS + MEMORY_TOOLS + THREAD_TOOLS


def register_builtin_tools(registry):
    """注册所有内置工具"""
    for tool in BUILTIN_TOOLS:
        registry.register(tool)
    return registry
