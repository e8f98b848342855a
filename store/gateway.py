"""
Session 网关 - 编排循环使用的持久化操作

load/update/save/complete 写入 Session 记录（唯一的恢复依据）；
事件日志与活跃索引的写入是尽力而为的，失败只记日志，不影响编排正确性。
"""
import logging
from typing import Any, Dict, List, Optional

from core.types import (
    EventType, Message, OrchestrationEvent, Session, SessionStatus, VerificationResult, utcnow,
)
from .base import (
    ActiveSessionIndex, EventLog, SessionStore, TranscriptMessage, TranscriptStore,
    messages_to_transcript,
)

logger = logging.getLogger(__name__)

VERIFICATION_FEEDBACK_PREFIX = "Verification failed"
THREAD_TITLE_LIMIT = 50


def thread_title(messages: List[Message]) -> str:
    first = next((m.content for m in messages if m.role == "user" and m.content), None)
    title = first or "Untitled conversation"
    if len(title) > THREAD_TITLE_LIMIT:
        title = title[:THREAD_TITLE_LIMIT - 3] + "..."
    return title


class SessionGateway:
    """Session 存储与事件日志的访问入口"""

    def __init__(
        self,
        sessions: SessionStore,
        events: EventLog,
        transcripts: TranscriptStore,
        active_index: ActiveSessionIndex,
        active_ttl_seconds: int = 3600,
    ):
        self.sessions = sessions
        self.events = events
        self.transcripts = transcripts
        self.active_index = active_index
        self.active_ttl_seconds = active_ttl_seconds

    async def create_session(
        self,
        session_id: str,
        user_id: str,
        messages: List[Message],
        tool_state: Optional[Dict[str, Any]] = None,
    ) -> Session:
        session = Session(id=session_id, user_id=user_id, messages=list(messages), tool_state=dict(tool_state or {}))
        return await self.sessions.create(session)

    async def load_session(self, session_id: str) -> Session:
        return await self.sessions.load(session_id)

    async def update_session(self, session: Session, **patch: Any) -> Session:
        return await self.sessions.update(session, **patch)

    async def save_session(self, session: Session) -> Session:
        """保存消息与 tool_state"""
        return await self.sessions.update(
            session, messages=session.messages, tool_state=session.tool_state
        )

    async def log_event(self, session_id: str, event_type: str, data: Dict[str, Any]) -> None:
        try:
            await self.events.append(OrchestrationEvent(session_id=session_id, type=event_type, data=data))
        except Exception as e:
            logger.error("Failed to log %s event for session %s: %s", event_type, session_id, e)

    async def track_active(self, session: Session) -> None:
        try:
            await self.active_index.track(session.id, session.user_id, self.active_ttl_seconds)
        except Exception as e:
            logger.warning("Failed to track active session %s: %s", session.id, e)

    async def remove_from_active_index(self, session_id: str) -> None:
        try:
            await self.active_index.remove(session_id)
        except Exception as e:
            logger.warning("Failed to remove session %s from active index: %s", session_id, e)

    async def complete_session(
        self,
        session: Session,
        content: str,
        verification: VerificationResult,
    ) -> Session:
        """
        完成 Session：写入对话线程、final_response 与 completed 状态

        线程不存在时新建（标题取第一条用户消息），并复制非反馈的用户消息；
        已有线程只追加助手回复。
        """
        thread_id = session.thread_id
        if thread_id:
            thread_id = await self._append_response(session, thread_id, content, new_thread=False)
        else:
            thread = await self._create_thread(session)
            if thread:
                thread_id = await self._append_response(session, thread, content, new_thread=True)

        tool_state = dict(session.tool_state)
        if thread_id:
            tool_state["thread_id"] = thread_id

        now = utcnow()
        session = await self.sessions.update(
            session,
            status=SessionStatus.COMPLETED,
            messages=session.messages,
            tool_state=tool_state,
            completed_at=now,
            final_response={
                "content": content,
                "verification": verification.to_dict(),
                "threadId": thread_id,
            },
        )
        await self.remove_from_active_index(session.id)
        return session

    async def _create_thread(self, session: Session) -> Optional[str]:
        try:
            thread = await self.transcripts.create_thread(
                session.user_id,
                thread_title(session.messages),
                {"orchestration_session_id": session.id, "created_from": "orchestrator"},
            )
        except Exception as e:
            logger.error("Failed to create chat thread for session %s: %s", session.id, e)
            return None
        return thread.id

    async def _append_response(
        self, session: Session, thread_id: str, content: str, new_thread: bool
    ) -> str:
        messages: List[TranscriptMessage] = []
        if new_thread:
            messages.extend(messages_to_transcript(
                thread_id, session.user_id, session.messages, VERIFICATION_FEEDBACK_PREFIX
            ))
        messages.append(TranscriptMessage(
            thread_id=thread_id,
            user_id=session.user_id,
            role="assistant",
            content=content,
            metadata={"orchestration_session_id": session.id},
        ))
        try:
            await self.transcripts.append(thread_id, messages)
        except Exception as e:
            logger.error("Failed to write chat messages to thread %s: %s", thread_id, e)
        return thread_id

    async def fail_session(self, session_id: str, error: BaseException, partial_content: Optional[str] = None) -> None:
        """
        标记 Session 失败

        记录错误事件与错误文本，向对话线程追加一条用户可见的错误消息，并从活跃索引中移除。
        """
        message = str(error) or type(error).__name__
        logger.error("Error in orchestration for session %s: %s", session_id, message)
        await self.log_event(session_id, EventType.ERROR, {
            "error": message,
            "error_class": type(error).__name__,
            "timestamp": utcnow().isoformat(),
        })

        session: Optional[Session] = None
        try:
            session = await self.sessions.load(session_id)
            if not session.is_terminal:
                session = await self.sessions.update(session, status=SessionStatus.FAILED, error=message)
        except Exception as e:
            logger.error("Failed to update error status for session %s: %s", session_id, e)

        if session is not None:
            await self._notify_failure(session, message, partial_content)
        await self.remove_from_active_index(session_id)

    async def _notify_failure(self, session: Session, message: str, partial_content: Optional[str]) -> None:
        text = "Sorry, an error occurred while working on your request."
        if partial_content:
            text = f"{partial_content}\n\n---\n{text}"
        text += f" ({message})"
        try:
            thread_id = session.thread_id
            if not thread_id:
                thread_id = await self._create_thread(session)
                if not thread_id:
                    return
                await self.transcripts.append(thread_id, messages_to_transcript(
                    thread_id, session.user_id, session.messages, VERIFICATION_FEEDBACK_PREFIX
                ))
            await self.transcripts.append(thread_id, [TranscriptMessage(
                thread_id=thread_id,
                user_id=session.user_id,
                role="assistant",
                content=text,
                metadata={"orchestration_session_id": session.id, "error": True},
            )])
        except Exception as e:
            logger.error("Failed to write error message for session %s: %s", session.id, e)
