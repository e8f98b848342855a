"""
核心类型定义 - 编排引擎的数据模型
"""
from enum import Enum
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SessionStatus(str, Enum):
    """Session 状态机"""
    PENDING = "pending"
    RUNNING = "running"
    RESUMING = "resuming"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {SessionStatus.COMPLETED, SessionStatus.FAILED}

# 允许的状态迁移：pending→running→{resuming→running}*→{completed|failed}
ALLOWED_TRANSITIONS: Dict[SessionStatus, set] = {
    SessionStatus.PENDING: {SessionStatus.RUNNING, SessionStatus.FAILED},
    SessionStatus.RUNNING: {SessionStatus.RESUMING, SessionStatus.COMPLETED, SessionStatus.FAILED},
    SessionStatus.RESUMING: {SessionStatus.RUNNING, SessionStatus.FAILED},
    SessionStatus.COMPLETED: set(),
    SessionStatus.FAILED: set(),
}


class ErrorType(str, Enum):
    """工具错误分类"""
    NOT_FOUND = "NotFound"
    UNAUTHORIZED = "Unauthorized"
    RATE_LIMIT = "RateLimit"
    TIMEOUT = "Timeout"
    UNKNOWN = "Unknown"


class EventType:
    """事件类型常量"""
    STATUS_UPDATE = "status_update"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    VERIFICATION = "verification"
    RETRY = "retry"
    ERROR = "error"
    CONTEXT_COMPRESSION = "context_compression"


@dataclass(frozen=True)
class ToolCall:
    """LLM发出的工具调用，发出后不可变"""
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: Dict) -> "ToolCall":
        arguments = data.get("arguments") or {}
        if isinstance(arguments, str):
            arguments = json.loads(arguments or "{}")
        return cls(
            id=data.get("id") or f"call_{uuid.uuid4().hex[:12]}",
            name=data.get("name", ""),
            arguments=arguments,
        )


@dataclass
class Message:
    """对话消息"""
    role: str  # "system", "user", "assistant", "tool"
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["toolCalls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            data["toolCallId"] = self.tool_call_id
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "Message":
        tool_calls = data.get("toolCalls")
        return cls(
            role=data["role"],
            content=data.get("content"),
            tool_calls=[ToolCall.from_dict(tc) for tc in tool_calls] if tool_calls else None,
            tool_call_id=data.get("toolCallId"),
        )


@dataclass
class VerificationResult:
    """验证结论"""
    achieved: bool
    confidence: float
    issues: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "achieved": self.achieved,
            "confidence": self.confidence,
            "issues": list(self.issues),
            "suggestions": list(self.suggestions),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "VerificationResult":
        return cls(
            achieved=bool(data.get("achieved", False)),
            confidence=float(data.get("confidence", 0.0)),
            issues=list(data.get("issues") or []),
            suggestions=list(data.get("suggestions") or []),
        )


@dataclass
class ToolResult:
    """工具执行结果 - 失败时也总会生成"""
    call_id: str
    tool: str
    status: str  # "success" | "error"
    result: Any = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    suggestion: Optional[str] = None
    duration_ms: int = 0
    verification: Optional[VerificationResult] = None

    @property
    def success(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status, "tool": self.tool, "durationMs": self.duration_ms}
        if self.success:
            data["result"] = self.result
            if self.verification:
                data["verification"] = self.verification.to_dict()
        else:
            data["error"] = self.error
            data["errorType"] = self.error_type.value if self.error_type else ErrorType.UNKNOWN.value
            if self.suggestion:
                data["suggestion"] = self.suggestion
        return data

    def to_message(self) -> Message:
        """转换为 tool 角色消息"""
        return Message(
            role="tool",
            content=json.dumps(self.to_dict(), ensure_ascii=False, default=str),
            tool_call_id=self.call_id,
        )


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class LLMResponse:
    """LLM响应：内容或工具调用"""
    content: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Optional[Usage] = None


@dataclass
class ToolSchema:
    """工具JSON Schema定义"""
    name: str
    description: str
    parameters: Dict[str, Any]

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_anthropic(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters or {"type": "object", "properties": {}},
        }


@dataclass
class Session:
    """一次编排运行的持久记录"""
    id: str
    user_id: str
    status: SessionStatus = SessionStatus.PENDING
    messages: List[Message] = field(default_factory=list)
    tool_state: Dict[str, Any] = field(default_factory=dict)
    execution_count: int = 0
    final_response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def thread_id(self) -> Optional[str]:
        return self.tool_state.get("thread_id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "status": self.status.value,
            "messages": [m.to_dict() for m in self.messages],
            "toolState": self.tool_state,
            "executionCount": self.execution_count,
            "finalResponse": self.final_response,
            "error": self.error,
            "version": self.version,
            "createdAt": _iso(self.created_at),
            "startedAt": _iso(self.started_at),
            "updatedAt": _iso(self.updated_at),
            "completedAt": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Session":
        return cls(
            id=data["id"],
            user_id=data["userId"],
            status=SessionStatus(data.get("status", "pending")),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            tool_state=dict(data.get("toolState") or {}),
            execution_count=int(data.get("executionCount", 0)),
            final_response=data.get("finalResponse"),
            error=data.get("error"),
            version=int(data.get("version", 0)),
            created_at=_parse_dt(data.get("createdAt")) or utcnow(),
            started_at=_parse_dt(data.get("startedAt")),
            updated_at=_parse_dt(data.get("updatedAt")) or utcnow(),
            completed_at=_parse_dt(data.get("completedAt")),
        )


@dataclass
class OrchestrationEvent:
    """只追加的编排事件"""
    session_id: str
    type: str
    data: Dict[str, Any]
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "type": self.type,
            "data": self.data,
            "createdAt": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "OrchestrationEvent":
        return cls(
            session_id=data["sessionId"],
            type=data["type"],
            data=data.get("data") or {},
            created_at=_parse_dt(data.get("createdAt")) or utcnow(),
        )


@dataclass
class ContinuationMessage:
    """续跑队列消息"""
    session_id: str
    action: str  # "start" | "resume"
    user_id: str
    input: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"sessionId": self.session_id, "action": self.action, "userId": self.user_id}
        if self.input is not None:
            data["input"] = self.input
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def parse(cls, body: str) -> "ContinuationMessage":
        """
        解析队列消息体

        兼容两种形式：裸消息，或者 SNS Notification 信封（Message 字段内为消息体）
        """
        data = json.loads(body)
        if data.get("Type") == "Notification" and data.get("Message"):
            data = json.loads(data["Message"])
        action = data.get("action")
        if action not in ("start", "resume"):
            raise ValueError(f"Unsupported continuation action: {action!r}")
        return cls(
            session_id=data["sessionId"],
            action=action,
            user_id=data["userId"],
            input=data.get("input"),
        )
