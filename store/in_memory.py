"""
进程内存储实现 - 用于测试与单进程运行
"""
import asyncio
import copy
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional

from core.errors import SessionNotFoundError
from core.types import OrchestrationEvent, Session, SessionStatus, utcnow
from .base import (
    ActiveSessionIndex, EventLog, ExecutionLog, ExecutionLogEntry, IntegrationRegistry,
    OAuthToken, RemoteServer, RemoteTool, SessionStore, Thread, TranscriptMessage,
    TranscriptStore, apply_patch,
)


class InMemorySessionStore(SessionStore):

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def create(self, session: Session) -> Session:
        async with self._lock:
            if session.id in self._sessions:
                raise ValueError(f"Session already exists: {session.id}")
            self._sessions[session.id] = copy.deepcopy(session)
        return copy.deepcopy(session)

    async def load(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return copy.deepcopy(session)

    async def update(self, session: Session, **patch: Any) -> Session:
        async with self._lock:
            current = self._sessions.get(session.id)
            if current is None:
                raise SessionNotFoundError(session.id)
            updated = apply_patch(current, session.version, copy.deepcopy(patch))
            self._sessions[session.id] = updated
        return copy.deepcopy(updated)

    async def list_by_status(self, statuses: Iterable[SessionStatus], limit: int = 10) -> List[Session]:
        wanted = set(statuses)
        matches = sorted(
            (s for s in self._sessions.values() if s.status in wanted),
            key=lambda s: s.created_at,
        )
        return [copy.deepcopy(s) for s in matches[:limit]]


class InMemoryEventLog(EventLog):

    def __init__(self):
        self._events: Dict[str, List[OrchestrationEvent]] = {}

    async def append(self, event: OrchestrationEvent) -> None:
        self._events.setdefault(event.session_id, []).append(copy.deepcopy(event))

    async def list(self, session_id: str) -> List[OrchestrationEvent]:
        return list(self._events.get(session_id, []))


class InMemoryTranscriptStore(TranscriptStore):

    def __init__(self):
        self._threads: Dict[str, Thread] = {}
        self._messages: Dict[str, List[TranscriptMessage]] = {}

    async def create_thread(self, user_id: str, title: str, metadata: Dict[str, Any]) -> Thread:
        thread = Thread(id=new_thread_id(), user_id=user_id, title=title, metadata=dict(metadata))
        self._threads[thread.id] = thread
        self._messages[thread.id] = []
        return thread

    async def get_thread(self, thread_id: str) -> Optional[Thread]:
        return self._threads.get(thread_id)

    async def append(self, thread_id: str, messages: List[TranscriptMessage]) -> None:
        thread = self._threads.get(thread_id)
        if thread is None:
            raise KeyError(f"Thread not found: {thread_id}")
        self._messages[thread_id].extend(messages)
        thread.message_count += len(messages)
        thread.last_message_at = utcnow()

    async def messages(self, thread_id: str) -> List[TranscriptMessage]:
        return list(self._messages.get(thread_id, []))


class InMemoryActiveSessionIndex(ActiveSessionIndex):

    def __init__(self, clock=time.time):
        self._clock = clock
        self._entries: Dict[str, Dict[str, Any]] = {}

    async def track(self, session_id: str, user_id: str, ttl_seconds: int) -> None:
        now = self._clock()
        self._entries[session_id] = {"user_id": user_id, "start": now, "expires": now + ttl_seconds}

    async def remove(self, session_id: str) -> None:
        self._entries.pop(session_id, None)

    async def active(self) -> List[str]:
        now = self._clock()
        for session_id in [k for k, v in self._entries.items() if v["expires"] <= now]:
            del self._entries[session_id]
        return list(self._entries)


class InMemoryExecutionLog(ExecutionLog):

    def __init__(self):
        self._entries: Dict[str, ExecutionLogEntry] = {}

    async def start(self, entry: ExecutionLogEntry) -> str:
        entry.id = entry.id or uuid.uuid4().hex
        self._entries[entry.id] = copy.deepcopy(entry)
        return entry.id

    async def finish(self, entry_id: str, **fields: Any) -> None:
        entry = self._entries[entry_id]
        for key, value in fields.items():
            setattr(entry, key, value)

    async def list(self, session_id: str) -> List[ExecutionLogEntry]:
        entries = [e for e in self._entries.values() if e.session_id == session_id]
        return sorted(entries, key=lambda e: e.created_at)


class InMemoryIntegrationRegistry(IntegrationRegistry):

    def __init__(self):
        self._servers: Dict[str, RemoteServer] = {}
        self._tools: Dict[str, List[RemoteTool]] = {}
        self._tokens: Dict[str, OAuthToken] = {}

    def add_server(
        self,
        server: RemoteServer,
        tools: Optional[List[RemoteTool]] = None,
        token: Optional[OAuthToken] = None,
    ) -> None:
        self._servers[server.id] = server
        self._tools[server.id] = list(tools or [])
        if token:
            self._tokens[server.id] = token

    def servers(self) -> List[RemoteServer]:
        return list(self._servers.values())

    async def servers_for_user(self, user_id: str) -> List[RemoteServer]:
        return [s for s in self._servers.values() if s.user_id == user_id and s.is_active]

    async def get_server(self, server_id: str) -> Optional[RemoteServer]:
        return self._servers.get(server_id)

    async def tools_for_servers(self, server_ids: List[str]) -> List[RemoteTool]:
        return [tool for sid in server_ids for tool in self._tools.get(sid, [])]

    async def find_tool(self, name: str, server_ids: Optional[List[str]] = None) -> Optional[RemoteTool]:
        candidates = server_ids if server_ids is not None else list(self._tools)
        for sid in candidates:
            for tool in self._tools.get(sid, []):
                if tool.name == name:
                    return tool
        return None

    async def get_token(self, server_id: str) -> Optional[OAuthToken]:
        return self._tokens.get(server_id)

    async def set_tools(self, server_id: str, tools: List[RemoteTool]) -> None:
        self._tools[server_id] = list(tools)


def new_thread_id() -> str:
    return f"thread-{uuid.uuid4().hex[:12]}"
