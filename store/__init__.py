"""Storage - Session 记录、事件日志、对话线程与集成注册表"""

from .base import (
    ActiveSessionIndex,
    EventLog,
    ExecutionLog,
    ExecutionLogEntry,
    IntegrationRegistry,
    OAuthToken,
    RemoteServer,
    RemoteTool,
    SessionStore,
    Thread,
    TranscriptMessage,
    TranscriptStore,
)
from .gateway import SessionGateway

__all__ = [
    'ActiveSessionIndex',
    'EventLog',
    'ExecutionLog',
    'ExecutionLogEntry',
    'IntegrationRegistry',
    'OAuthToken',
    'RemoteServer',
    'RemoteTool',
    'SessionStore',
    'Thread',
    'TranscriptMessage',
    'TranscriptStore',
    'SessionGateway',
]
