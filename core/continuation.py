"""
续跑调度 - 持久队列、续跑调度器与队列消费者

队列至少投递一次：消息在编排循环处理结束后才确认，处理中途进程退出时消息会被重新投递，
由编排循环入口的终态检查保证幂等。
"""
import asyncio
import logging
import os
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from .types import ContinuationMessage, EventType, Message, Session, SessionStatus

logger = logging.getLogger(__name__)


@dataclass
class Delivery:
    """一次投递：原始消息体与确认句柄"""
    body: str
    receipt: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 1


class ContinuationQueue(ABC):
    """续跑消息队列"""

    async def publish(self, message: Union[ContinuationMessage, str]) -> None:
        body = message if isinstance(message, str) else message.to_json()
        await self.publish_body(body)

    @abstractmethod
    async def publish_body(self, body: str) -> None:
        ...

    @abstractmethod
    async def receive(self, timeout: float = 0.0) -> Optional[Delivery]:
        """取出一条消息并置为处理中；超时返回 None"""

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        ...

    @abstractmethod
    async def nack(self, delivery: Delivery) -> None:
        """放回队列以便重新投递"""


class InMemoryContinuationQueue(ContinuationQueue):

    def __init__(self):
        self._queue: "asyncio.Queue[Delivery]" = asyncio.Queue()
        self._inflight: Dict[str, Delivery] = {}

    async def publish_body(self, body: str) -> None:
        await self._queue.put(Delivery(body=body))

    async def receive(self, timeout: float = 0.0) -> Optional[Delivery]:
        try:
            if timeout > 0:
                delivery = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            else:
                delivery = self._queue.get_nowait()
        except (asyncio.TimeoutError, asyncio.QueueEmpty):
            return None
        self._inflight[delivery.receipt] = delivery
        return delivery

    async def ack(self, delivery: Delivery) -> None:
        self._inflight.pop(delivery.receipt, None)

    async def nack(self, delivery: Delivery) -> None:
        if self._inflight.pop(delivery.receipt, None) is not None:
            await self._queue.put(Delivery(body=delivery.body, attempts=delivery.attempts + 1))

    def pending(self) -> int:
        return self._queue.qsize()

    def drain(self) -> List[str]:
        """取出所有待处理的消息体（测试用）"""
        bodies = []
        while not self._queue.empty():
            bodies.append(self._queue.get_nowait().body)
        return bodies


class FileContinuationQueue(ContinuationQueue):
    """
    基于目录的持久队列

    pending/ 中每条消息一个文件，取出时 rename 到 inflight/ 完成认领；
    ack 删除文件，nack 与 recover() 把文件移回 pending/。
    """

    def __init__(self, spool_dir: str, poll_interval: float = 0.5):
        root = Path(spool_dir).expanduser()
        self.pending_dir = root / "pending"
        self.inflight_dir = root / "inflight"
        self.pending_dir.mkdir(parents=True, exist_ok=True)
        self.inflight_dir.mkdir(parents=True, exist_ok=True)
        self.poll_interval = poll_interval

    async def publish_body(self, body: str) -> None:
        name = f"{time.time_ns():020d}-{uuid.uuid4().hex[:8]}.json"
        tmp = self.pending_dir / f".{name}.tmp"
        tmp.write_text(body, encoding="utf-8")
        os.replace(tmp, self.pending_dir / name)

    def _claim(self) -> Optional[Delivery]:
        for path in sorted(self.pending_dir.glob("*.json")):
            target = self.inflight_dir / path.name
            try:
                os.rename(path, target)
            except FileNotFoundError:
                # 已被其他消费者认领
                continue
            return Delivery(body=target.read_text(encoding="utf-8"), receipt=path.name)
        return None

    async def receive(self, timeout: float = 0.0) -> Optional[Delivery]:
        deadline = time.monotonic() + timeout
        while True:
            delivery = self._claim()
            if delivery is not None or time.monotonic() >= deadline:
                return delivery
            await asyncio.sleep(self.poll_interval)

    async def ack(self, delivery: Delivery) -> None:
        try:
            os.unlink(self.inflight_dir / delivery.receipt)
        except FileNotFoundError:
            logger.warning("Continuation %s already acknowledged", delivery.receipt)

    async def nack(self, delivery: Delivery) -> None:
        path = self.inflight_dir / delivery.receipt
        if path.exists():
            os.replace(path, self.pending_dir / delivery.receipt)

    def recover(self) -> int:
        """把上次进程退出时未确认的消息放回 pending/"""
        count = 0
        for path in self.inflight_dir.glob("*.json"):
            os.replace(path, self.pending_dir / path.name)
            count += 1
        if count:
            logger.info("Recovered %d unacknowledged continuation messages", count)
        return count

    def pending(self) -> int:
        return len(list(self.pending_dir.glob("*.json")))


class ContinuationScheduler:
    """
    续跑调度器

    start() 创建 Session 并发布 start 消息；suspend() 持久化检查点、
    置为 resuming 并发布 resume 消息。
    """

    def __init__(self, gateway, queue: ContinuationQueue):
        self.gateway = gateway
        self.queue = queue

    async def start(
        self,
        user_id: str,
        input: str,
        thread_id: Optional[str] = None,
        provider: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Session:
        tool_state = {}
        if thread_id:
            tool_state["thread_id"] = thread_id
        if provider:
            tool_state["provider"] = provider

        session = await self.gateway.create_session(
            session_id or str(uuid.uuid4()),
            user_id,
            [Message(role="user", content=input)],
            tool_state,
        )
        await self.gateway.log_event(session.id, EventType.STATUS_UPDATE, {
            "to": SessionStatus.PENDING.value,
            "message": "Session created",
        })
        await self.queue.publish(ContinuationMessage(
            session_id=session.id, action="start", user_id=user_id, input=input,
        ))
        logger.info("Created session %s for user %s", session.id, user_id)
        return session

    async def suspend(self, session: Session) -> Session:
        session = await self.gateway.update_session(
            session,
            status=SessionStatus.RESUMING,
            messages=session.messages,
            tool_state=session.tool_state,
        )
        await self.gateway.log_event(session.id, EventType.STATUS_UPDATE, {
            "from": SessionStatus.RUNNING.value,
            "to": SessionStatus.RESUMING.value,
            "message": "Approaching time limit, scheduling continuation",
            "execution_count": session.execution_count,
        })
        await self.queue.publish(ContinuationMessage(
            session_id=session.id, action="resume", user_id=session.user_id,
        ))
        logger.info("Session %s suspended after activation %d", session.id, session.execution_count)
        return session

    async def requeue_stalled(self, limit: int = 10) -> int:
        """为 pending / resuming 的 Session 重新发布续跑消息"""
        sessions = await self.gateway.sessions.list_by_status(
            [SessionStatus.PENDING, SessionStatus.RESUMING], limit
        )
        for session in sessions:
            if session.status == SessionStatus.PENDING:
                first_user = next((m.content for m in session.messages if m.role == "user"), None)
                message = ContinuationMessage(session.id, "start", session.user_id, first_user)
            else:
                message = ContinuationMessage(session.id, "resume", session.user_id)
            await self.queue.publish(message)
            logger.info("Requeued %s for session %s", message.action, session.id)
        return len(sessions)


class ContinuationWorker:
    """队列消费者：每条消息对应一次编排循环激活"""

    def __init__(self, loop, queue: ContinuationQueue, poll_timeout: float = 5.0):
        self.loop = loop
        self.queue = queue
        self.poll_timeout = poll_timeout

    async def run_once(self, timeout: Optional[float] = None) -> Optional[Session]:
        delivery = await self.queue.receive(self.poll_timeout if timeout is None else timeout)
        if delivery is None:
            return None

        try:
            message = ContinuationMessage.parse(delivery.body)
        except (ValueError, KeyError, AttributeError) as e:
            logger.error("Discarding malformed continuation message: %s", e)
            await self.queue.ack(delivery)
            return None

        try:
            session = await self.loop.handle(message)
        except BaseException:
            await self.queue.nack(delivery)
            raise
        await self.queue.ack(delivery)
        return session

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        logger.info("Continuation worker started")
        while stop is None or not stop.is_set():
            await self.run_once()
        logger.info("Continuation worker stopped")
