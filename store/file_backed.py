"""
文件存储实现 - 每个 Session 一个 JSON 文件，事件日志为 JSONL

写入使用临时文件 + rename 保证原子性。
"""
import asyncio
import fcntl
import json
import logging
import os
import tempfile
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from core.errors import SessionNotFoundError
from core.types import OrchestrationEvent, Session, SessionStatus, utcnow
from .base import (
    EventLog, ExecutionLog, ExecutionLogEntry, SessionStore, Thread, TranscriptMessage,
    TranscriptStore, apply_patch,
)
from .in_memory import new_thread_id

logger = logging.getLogger(__name__)


def atomic_write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2, default=str)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def read_json(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


@contextmanager
def file_lock(path: Path):
    """进程间互斥：持有 path 上的排他 flock 直到退出"""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a") as f:
        fcntl.flock(f.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)


class FileSessionStore(SessionStore):
    """sessions/<id>.json"""

    def __init__(self, root: str):
        self.root = Path(root).expanduser() / "sessions"
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, session_id: str) -> Path:
        return self.root / f"{session_id}.json"

    def _lock_path(self, session_id: str) -> Path:
        return self.root.parent / "locks" / f"{session_id}.lock"

    async def create(self, session: Session) -> Session:
        async with self._lock:
            path = self._path(session.id)
            if path.exists():
                raise ValueError(f"Session already exists: {session.id}")
            atomic_write_json(path, session.to_dict())
        return session

    async def load(self, session_id: str) -> Session:
        path = self._path(session_id)
        if not path.exists():
            raise SessionNotFoundError(session_id)
        return Session.from_dict(read_json(path))

    async def update(self, session: Session, **patch: Any) -> Session:
        # 多个 worker 进程共享数据目录，版本比较与写入必须在同一把文件锁内完成
        async with self._lock:
            with file_lock(self._lock_path(session.id)):
                current = await self.load(session.id)
                updated = apply_patch(current, session.version, patch)
                atomic_write_json(self._path(session.id), updated.to_dict())
        return updated

    async def list_by_status(self, statuses: Iterable[SessionStatus], limit: int = 10) -> List[Session]:
        wanted = set(statuses)
        sessions = []
        for path in self.root.glob("*.json"):
            try:
                session = Session.from_dict(read_json(path))
            except (OSError, ValueError, KeyError) as e:
                logger.warning("Skipping unreadable session file %s: %s", path, e)
                continue
            if session.status in wanted:
                sessions.append(session)
        sessions.sort(key=lambda s: s.created_at)
        return sessions[:limit]


class FileEventLog(EventLog):
    """events/<session_id>.jsonl，只追加"""

    def __init__(self, root: str):
        self.root = Path(root).expanduser() / "events"
        self.root.mkdir(parents=True, exist_ok=True)

    async def append(self, event: OrchestrationEvent) -> None:
        line = json.dumps(event.to_dict(), ensure_ascii=False, default=str)
        with open(self.root / f"{event.session_id}.jsonl", "a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def list(self, session_id: str) -> List[OrchestrationEvent]:
        path = self.root / f"{session_id}.jsonl"
        if not path.exists():
            return []
        with open(path, "r", encoding="utf-8") as f:
            return [OrchestrationEvent.from_dict(json.loads(line)) for line in f if line.strip()]


class FileTranscriptStore(TranscriptStore):
    """threads/<thread_id>.json，线程元数据与消息存在同一个文件"""

    def __init__(self, root: str):
        self.root = Path(root).expanduser() / "threads"
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, thread_id: str) -> Path:
        return self.root / f"{thread_id}.json"

    async def create_thread(self, user_id: str, title: str, metadata: Dict[str, Any]) -> Thread:
        thread = Thread(id=new_thread_id(), user_id=user_id, title=title, metadata=dict(metadata))
        atomic_write_json(self._path(thread.id), {
            "id": thread.id,
            "userId": user_id,
            "title": title,
            "metadata": thread.metadata,
            "messages": [],
            "lastMessageAt": None,
        })
        return thread

    async def get_thread(self, thread_id: str) -> Optional[Thread]:
        path = self._path(thread_id)
        if not path.exists():
            return None
        data = read_json(path)
        last = data.get("lastMessageAt")
        return Thread(
            id=data["id"],
            user_id=data["userId"],
            title=data["title"],
            metadata=data.get("metadata") or {},
            message_count=len(data.get("messages", [])),
            last_message_at=datetime.fromisoformat(last) if last else None,
        )

    async def append(self, thread_id: str, messages: List[TranscriptMessage]) -> None:
        path = self._path(thread_id)
        if not path.exists():
            raise KeyError(f"Thread not found: {thread_id}")
        data = read_json(path)
        data["messages"].extend(m.to_dict() for m in messages)
        data["lastMessageAt"] = utcnow().isoformat()
        atomic_write_json(path, data)

    async def messages(self, thread_id: str) -> List[TranscriptMessage]:
        path = self._path(thread_id)
        if not path.exists():
            return []
        return [TranscriptMessage.from_dict(m) for m in read_json(path).get("messages", [])]


class FileExecutionLog(ExecutionLog):
    """execution_logs/<session_id>.json"""

    def __init__(self, root: str):
        self.root = Path(root).expanduser() / "execution_logs"
        self.root.mkdir(parents=True, exist_ok=True)
        self._index: Dict[str, str] = {}

    def _path(self, session_id: str) -> Path:
        return self.root / f"{session_id}.json"

    def _read(self, session_id: str) -> List[Dict[str, Any]]:
        path = self._path(session_id)
        return read_json(path) if path.exists() else []

    async def start(self, entry: ExecutionLogEntry) -> str:
        entry.id = entry.id or uuid.uuid4().hex
        entries = self._read(entry.session_id)
        entries.append(entry.to_dict())
        atomic_write_json(self._path(entry.session_id), entries)
        self._index[entry.id] = entry.session_id
        return entry.id

    async def finish(self, entry_id: str, **fields: Any) -> None:
        session_id = self._index.pop(entry_id)
        entries = self._read(session_id)
        for raw in entries:
            if raw["id"] == entry_id:
                updated = ExecutionLogEntry.from_dict(raw)
                for key, value in fields.items():
                    setattr(updated, key, value)
                raw.update(updated.to_dict())
        atomic_write_json(self._path(session_id), entries)

    async def list(self, session_id: str) -> List[ExecutionLogEntry]:
        return [ExecutionLogEntry.from_dict(e) for e in self._read(session_id)]
