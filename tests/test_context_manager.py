"""
测试用例 - 上下文压缩
"""
from core.context_manager import SUMMARY_PREFIX, ContextManager, estimate_tokens
from core.types import Message, ToolCall


def big(role, i, size=4000, **kwargs):
    return Message(role=role, content=f"{i}:" + "y" * size, **kwargs)


class TestContextManager:
    """测试会话压缩"""

    def setup_method(self):
        # 阈值 800 tokens ≈ 3200 字符
        self.manager = ContextManager(context_window_tokens=1000, compaction_ratio=0.8, keep_recent=10)

    def test_small_history_untouched(self):
        messages = [Message(role="system", content="sys"), Message(role="user", content="hi")]
        compacted, report = self.manager.prepare(messages)

        assert report is None
        assert compacted == messages
        assert compacted is not messages

    def test_compaction_keeps_system_first_user_and_tail(self):
        messages = [Message(role="system", content="sys"), Message(role="user", content="first")]
        messages += [big("user" if i % 2 else "assistant", i) for i in range(20)]

        compacted, report = self.manager.prepare(messages)

        assert compacted[0].content == "sys"
        assert compacted[1].content == "first"
        assert compacted[2].role == "system"
        assert compacted[2].content.startswith(SUMMARY_PREFIX)
        assert compacted[3:] == messages[-10:]
        assert estimate_tokens(compacted) < estimate_tokens(messages)
        assert report.original_count == 22
        assert report.compacted_count == 13
        assert report.kept_recent == 10

    def test_tail_never_starts_with_tool_message(self):
        messages = [Message(role="user", content="first")]
        for i in range(8):
            call = ToolCall(id=f"c{i}", name="createAgent", arguments={})
            messages.append(Message(role="assistant", tool_calls=[call]))
            messages.append(big("tool", i, tool_call_id=f"c{i}"))
        messages.append(big("assistant", 99))

        compacted, report = self.manager.prepare(messages)

        tail = compacted[2:]
        assert tail[0].role == "assistant"
        assert len(tail) >= 10
        assert "createAgent" in compacted[1].content

    def test_original_list_not_mutated(self):
        messages = [Message(role="user", content="first")] + [big("assistant", i) for i in range(15)]
        before = list(messages)

        self.manager.compact(messages)

        assert messages == before

    def test_estimate_tokens(self):
        assert estimate_tokens([Message(role="user", content="a" * 400)]) == 100
        assert estimate_tokens([Message(role="assistant", content=None)]) == 0
