"""
存储接口 - Session、事件日志、对话线程、活跃索引、远程执行日志、集成注册表
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from core.errors import InvalidTransitionError, VersionConflictError
from core.types import (
    ALLOWED_TRANSITIONS, Message, OrchestrationEvent, Session, SessionStatus, utcnow,
)

SESSION_FIELDS = {
    "status", "messages", "tool_state", "execution_count", "final_response",
    "error", "started_at", "completed_at",
}


def apply_patch(current: Session, expected_version: int, patch: Dict[str, Any]) -> Session:
    """
    在当前记录上应用部分更新，返回新的 Session

    检查版本号与状态迁移，两种存储实现共用。
    """
    unknown = set(patch) - SESSION_FIELDS
    if unknown:
        raise ValueError(f"Unknown session fields: {sorted(unknown)}")
    if current.version != expected_version:
        raise VersionConflictError(current.id, expected_version, current.version)

    target = patch.get("status")
    if target is not None:
        target = SessionStatus(target)
        if target != current.status and target not in ALLOWED_TRANSITIONS[current.status]:
            raise InvalidTransitionError(current.id, current.status, target)
        patch = {**patch, "status": target}

    data = {
        "id": current.id,
        "user_id": current.user_id,
        "status": current.status,
        "messages": list(current.messages),
        "tool_state": dict(current.tool_state),
        "execution_count": current.execution_count,
        "final_response": current.final_response,
        "error": current.error,
        "created_at": current.created_at,
        "started_at": current.started_at,
        "completed_at": current.completed_at,
    }
    data.update(patch)
    data["messages"] = list(data["messages"])
    data["tool_state"] = dict(data["tool_state"])
    return Session(**data, version=current.version + 1, updated_at=utcnow())


class SessionStore(ABC):
    """Session 持久化，更新以版本号为条件"""

    @abstractmethod
    async def create(self, session: Session) -> Session:
        ...

    @abstractmethod
    async def load(self, session_id: str) -> Session:
        """加载 Session，不存在时抛出 SessionNotFoundError"""

    @abstractmethod
    async def update(self, session: Session, **patch: Any) -> Session:
        """以 session.version 为条件的部分更新，并刷新 updated_at"""

    @abstractmethod
    async def list_by_status(self, statuses: Iterable[SessionStatus], limit: int = 10) -> List[Session]:
        ...


class EventLog(ABC):
    """只追加的事件日志"""

    @abstractmethod
    async def append(self, event: OrchestrationEvent) -> None:
        ...

    @abstractmethod
    async def list(self, session_id: str) -> List[OrchestrationEvent]:
        ...


@dataclass
class TranscriptMessage:
    """面向用户的对话线程消息"""
    thread_id: str
    user_id: str
    role: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "threadId": self.thread_id,
            "userId": self.user_id,
            "role": self.role,
            "content": self.content,
            "metadata": self.metadata,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "TranscriptMessage":
        return cls(
            thread_id=data["threadId"],
            user_id=data["userId"],
            role=data["role"],
            content=data.get("content") or "",
            metadata=data.get("metadata") or {},
            created_at=datetime.fromisoformat(data["createdAt"]),
        )


@dataclass
class Thread:
    id: str
    user_id: str
    title: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    message_count: int = 0
    last_message_at: Optional[datetime] = None


class TranscriptStore(ABC):
    """对话线程存储"""

    @abstractmethod
    async def create_thread(self, user_id: str, title: str, metadata: Dict[str, Any]) -> Thread:
        ...

    @abstractmethod
    async def get_thread(self, thread_id: str) -> Optional[Thread]:
        ...

    @abstractmethod
    async def append(self, thread_id: str, messages: List[TranscriptMessage]) -> None:
        ...

    @abstractmethod
    async def messages(self, thread_id: str) -> List[TranscriptMessage]:
        ...


class ActiveSessionIndex(ABC):
    """"当前运行中"的临时索引，带TTL"""

    @abstractmethod
    async def track(self, session_id: str, user_id: str, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def remove(self, session_id: str) -> None:
        ...

    @abstractmethod
    async def active(self) -> List[str]:
        ...


@dataclass
class ExecutionLogEntry:
    """远程集成调用审计记录"""
    session_id: str
    server_id: str
    tool_name: str
    request: Any
    thread_id: Optional[str] = None
    response: Any = None
    status: str = "pending"  # pending | success | error
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "threadId": self.thread_id,
            "serverId": self.server_id,
            "toolName": self.tool_name,
            "request": self.request,
            "response": self.response,
            "status": self.status,
            "error": self.error,
            "durationMs": self.duration_ms,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ExecutionLogEntry":
        return cls(
            id=data.get("id"),
            session_id=data["sessionId"],
            thread_id=data.get("threadId"),
            server_id=data["serverId"],
            tool_name=data["toolName"],
            request=data.get("request"),
            response=data.get("response"),
            status=data.get("status", "pending"),
            error=data.get("error"),
            duration_ms=data.get("durationMs"),
            created_at=datetime.fromisoformat(data["createdAt"]),
        )


class ExecutionLog(ABC):
    """远程调用执行日志，独立于事件日志"""

    @abstractmethod
    async def start(self, entry: ExecutionLogEntry) -> str:
        ...

    @abstractmethod
    async def finish(self, entry_id: str, **fields: Any) -> None:
        ...

    @abstractmethod
    async def list(self, session_id: str) -> List[ExecutionLogEntry]:
        ...


@dataclass
class RemoteServer:
    """用户注册的远程集成端点"""
    id: str
    user_id: str
    name: str
    url: str
    transport: str = "streamable_http"
    headers: Dict[str, str] = field(default_factory=dict)
    is_oauth: bool = False
    is_active: bool = True


@dataclass
class RemoteTool:
    server_id: str
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    category: Optional[str] = None


@dataclass
class OAuthToken:
    access_token: str
    expires_at: Optional[datetime] = None


class IntegrationRegistry(ABC):
    """远程集成注册表"""

    @abstractmethod
    async def servers_for_user(self, user_id: str) -> List[RemoteServer]:
        """用户所有启用的服务器"""

    @abstractmethod
    async def get_server(self, server_id: str) -> Optional[RemoteServer]:
        ...

    @abstractmethod
    async def tools_for_servers(self, server_ids: List[str]) -> List[RemoteTool]:
        ...

    @abstractmethod
    async def find_tool(self, name: str, server_ids: Optional[List[str]] = None) -> Optional[RemoteTool]:
        ...

    @abstractmethod
    async def get_token(self, server_id: str) -> Optional[OAuthToken]:
        ...

    @abstractmethod
    async def set_tools(self, server_id: str, tools: List[RemoteTool]) -> None:
        ...


def messages_to_transcript(
    thread_id: str, user_id: str, messages: List[Message], feedback_prefix: str
) -> List[TranscriptMessage]:
    """把 Session 中的用户消息转换为线程消息（跳过验证反馈）"""
    return [
        TranscriptMessage(thread_id=thread_id, user_id=user_id, role="user", content=m.content or "")
        for m in messages
        if m.role == "user" and not (m.content or "").startswith(feedback_prefix)
    ]
