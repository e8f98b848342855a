"""
记忆系统 - 按用户与记忆流(memory key)存储的 Agent 记忆

Agent 本身是临时的，跨会话的连续性靠记忆流实现；
指定 root 时每个用户一个 JSON 文件，否则只保存在进程内存中。
"""
import asyncio
import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.types import utcnow

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\w+")


@dataclass
class MemoryEntry:
    """记忆条目"""
    user_id: str
    memory_key: str
    content: Any
    metadata: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return json.dumps(self.content, ensure_ascii=False, default=str)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "memoryKey": self.memory_key,
            "content": self.content,
            "metadata": self.metadata,
            "sessionId": self.session_id,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "MemoryEntry":
        return cls(
            id=data["id"],
            user_id=data["userId"],
            memory_key=data["memoryKey"],
            content=data.get("content"),
            metadata=data.get("metadata") or {},
            session_id=data.get("sessionId"),
            created_at=datetime.fromisoformat(data["createdAt"]),
        )


def _score(query: str, text: str) -> float:
    """简单相关度：整句命中优先，其次按词重叠比例"""
    q = query.lower().strip()
    t = text.lower()
    if not q:
        return 0.0
    if q in t:
        return 1.0
    words = set(_WORD_RE.findall(q))
    if not words:
        return 0.0
    hits = sum(1 for w in words if w in t)
    return hits / len(words)


class MemoryManager:
    """记忆管理器"""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root).expanduser() / "memories" if root else None
        if self.root:
            self.root.mkdir(parents=True, exist_ok=True)
        self._cache: Dict[str, List[MemoryEntry]] = {}
        self._lock = asyncio.Lock()

    def _path(self, user_id: str) -> Path:
        return self.root / f"{user_id}.json"

    def _load(self, user_id: str) -> List[MemoryEntry]:
        if user_id in self._cache:
            return self._cache[user_id]
        entries: List[MemoryEntry] = []
        if self.root and self._path(user_id).exists():
            try:
                raw = json.loads(self._path(user_id).read_text(encoding="utf-8"))
                entries = [MemoryEntry.from_dict(e) for e in raw]
            except (OSError, ValueError, KeyError) as e:
                logger.error("Error loading memories for user %s: %s", user_id, e)
                raise
        self._cache[user_id] = entries
        return entries

    def _flush(self, user_id: str) -> None:
        if not self.root:
            return
        data = [e.to_dict() for e in self._cache.get(user_id, [])]
        tmp = self._path(user_id).with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
        tmp.replace(self._path(user_id))

    async def save(
        self,
        user_id: str,
        memory_key: str,
        content: Any,
        metadata: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> MemoryEntry:
        entry = MemoryEntry(
            user_id=user_id,
            memory_key=memory_key,
            content=content,
            metadata=dict(metadata or {}),
            session_id=session_id,
        )
        async with self._lock:
            self._load(user_id).append(entry)
            self._flush(user_id)
        logger.debug("Saved memory %s to stream %s", entry.id, memory_key)
        return entry

    async def fetch(self, user_id: str, memory_key: str, limit: Optional[int] = None) -> List[MemoryEntry]:
        """某个记忆流的条目，最新的在前"""
        entries = [e for e in self._load(user_id) if e.memory_key == memory_key]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries[:limit] if limit else entries

    async def search(
        self,
        user_id: str,
        query: str,
        memory_keys: Optional[List[str]] = None,
        limit: int = 10,
    ) -> List[MemoryEntry]:
        candidates = [
            e for e in self._load(user_id)
            if not memory_keys or e.memory_key in memory_keys
        ]
        scored = [(_score(query, e.text), e) for e in candidates]
        scored = [item for item in scored if item[0] > 0]
        scored.sort(key=lambda item: (item[0], item[1].created_at), reverse=True)
        return [e for _, e in scored[:limit]]

    async def list_streams(self, user_id: str, pattern: Optional[str] = None) -> List[Dict[str, Any]]:
        streams: Dict[str, Dict[str, Any]] = {}
        for entry in self._load(user_id):
            if pattern and pattern.lower() not in entry.memory_key.lower():
                continue
            stream = streams.setdefault(entry.memory_key, {
                "memory_key": entry.memory_key,
                "memory_count": 0,
                "last_saved_at": entry.created_at,
            })
            stream["memory_count"] += 1
            stream["last_saved_at"] = max(stream["last_saved_at"], entry.created_at)
        result = sorted(streams.values(), key=lambda s: s["memory_key"])
        for stream in result:
            stream["last_saved_at"] = stream["last_saved_at"].isoformat()
        return result

    async def forget(self, user_id: str, memory_key: str, before: Optional[datetime] = None) -> int:
        """删除记忆流（或其中早于 before 的条目），返回删除数量"""
        async with self._lock:
            entries = self._load(user_id)
            keep = [
                e for e in entries
                if e.memory_key != memory_key or (before is not None and e.created_at >= before)
            ]
            removed = len(entries) - len(keep)
            self._cache[user_id] = keep
            self._flush(user_id)
        logger.info("Forgot %d memories from stream %s", removed, memory_key)
        return removed
