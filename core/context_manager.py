"""
上下文管理器 - 对话历史超出 token 预算时压缩发送给LLM的消息列表

压缩是有损的，只影响下一次LLM调用看到的内容；完整历史仍保存在 Session 记录中。
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from .types import Message

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "Previous conversation summary:"


def estimate_tokens(messages: List[Message]) -> int:
    """Token数量估算 (简单估算：每4个字符约1个token)"""
    return sum(len(m.content or "") for m in messages) // 4


@dataclass
class CompactionReport:
    """一次压缩的统计信息"""
    original_count: int
    compacted_count: int
    tokens_before: int
    tokens_after: int
    kept_system: bool
    kept_first_user: bool
    kept_recent: int
    summary_added: bool

    def to_dict(self) -> dict:
        return {
            "original_message_count": self.original_count,
            "compacted_message_count": self.compacted_count,
            "total_tokens_before": self.tokens_before,
            "total_tokens_after": self.tokens_after,
            "messages_kept": {
                "system": self.kept_system,
                "first_user": self.kept_first_user,
                "recent": self.kept_recent,
                "summary_added": self.summary_added,
            },
        }


class ContextManager:
    """会话压缩器"""

    def __init__(
        self,
        context_window_tokens: int = 100_000,
        compaction_ratio: float = 0.8,
        keep_recent: int = 10,
    ):
        self.context_window_tokens = context_window_tokens
        self.compaction_ratio = compaction_ratio
        self.keep_recent = keep_recent

    @property
    def threshold(self) -> int:
        return int(self.context_window_tokens * self.compaction_ratio)

    def should_compact(self, messages: List[Message]) -> bool:
        return estimate_tokens(messages) > self.threshold

    def _tail_start(self, messages: List[Message]) -> int:
        start = max(0, len(messages) - self.keep_recent)
        # 尾部不能以孤立的 tool 消息开头，向前扩展到发出该调用的 assistant 消息
        while start > 0 and messages[start].role == "tool":
            start -= 1
        return start

    def compact(self, messages: List[Message]) -> List[Message]:
        compacted, _ = self.prepare(messages)
        return compacted

    def prepare(self, messages: List[Message]) -> "tuple[List[Message], Optional[CompactionReport]]":
        """
        构建下一次LLM调用的消息列表

        Returns:
            (消息列表, 压缩报告)；未压缩时报告为 None，列表为原列表的浅拷贝
        """
        if not self.should_compact(messages):
            return list(messages), None

        tail_start = self._tail_start(messages)
        recent = messages[tail_start:]

        system_msg = next((m for m in messages if m.role == "system"), None)
        first_user = next((m for m in messages if m.role == "user"), None)
        include_system = system_msg is not None and not any(m is system_msg for m in recent)
        include_first_user = first_user is not None and not any(m is first_user for m in recent)

        kept_ids = {id(m) for m in recent}
        if include_system:
            kept_ids.add(id(system_msg))
        if include_first_user:
            kept_ids.add(id(first_user))
        dropped = [m for m in messages if id(m) not in kept_ids]

        if not dropped:
            return list(messages), None

        compacted: List[Message] = []
        if include_system:
            compacted.append(system_msg)
        if include_first_user:
            compacted.append(first_user)
        compacted.append(Message(role="system", content=self._summarize(dropped)))
        compacted.extend(recent)

        tokens_before = estimate_tokens(messages)
        tokens_after = estimate_tokens(compacted)
        if tokens_after >= tokens_before:
            return list(messages), None

        logger.info(
            "Compacted %d messages to %d (~%d -> ~%d tokens)",
            len(messages), len(compacted), tokens_before, tokens_after,
        )
        return compacted, CompactionReport(
            original_count=len(messages),
            compacted_count=len(compacted),
            tokens_before=tokens_before,
            tokens_after=tokens_after,
            kept_system=system_msg is not None,
            kept_first_user=include_first_user,
            kept_recent=len(recent),
            summary_added=True,
        )

    def _summarize(self, dropped: List[Message]) -> str:
        tool_names = sorted({tc.name for m in dropped for tc in (m.tool_calls or [])})
        summary = (
            f"{SUMMARY_PREFIX} {len(dropped)} earlier messages were compacted to stay within "
            f"the context budget."
        )
        if tool_names:
            summary += f" Tools used earlier: {', '.join(tool_names)}."
        return summary + " Use searchThreadHistory to look up earlier details if needed."
