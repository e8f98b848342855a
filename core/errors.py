"""
异常层次
"""
from typing import Optional

from .types import ErrorType, SessionStatus


class OrchestrationError(Exception):
    """编排引擎基础异常"""


class LLMError(OrchestrationError):
    """LLM调用失败"""


class SessionNotFoundError(OrchestrationError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class VersionConflictError(OrchestrationError):
    """乐观并发版本冲突 - 另一个激活已写入该 Session"""

    def __init__(self, session_id: str, expected: int, actual: int):
        super().__init__(
            f"Version conflict on session {session_id}: expected {expected}, found {actual}"
        )
        self.session_id = session_id
        self.expected = expected
        self.actual = actual


class InvalidTransitionError(OrchestrationError):
    def __init__(self, session_id: str, current: SessionStatus, target: SessionStatus):
        super().__init__(
            f"Invalid status transition for session {session_id}: {current.value} -> {target.value}"
        )
        self.current = current
        self.target = target


class ToolNotFoundError(OrchestrationError):
    def __init__(self, name: str):
        super().__init__(f"Tool not found: {name}")
        self.name = name


class ToolArgumentError(OrchestrationError):
    """工具参数未通过 schema 校验"""


class ToolDepthExceededError(OrchestrationError):
    def __init__(self, name: str, max_depth: int):
        super().__init__(
            f"Tool '{name}' rejected: maximum nested tool depth ({max_depth}) exceeded"
        )


class RemoteToolError(OrchestrationError):
    """远程集成工具失败，带分类"""

    def __init__(self, message: str, error_type: Optional[ErrorType] = None):
        super().__init__(message)
        self.error_type = error_type
