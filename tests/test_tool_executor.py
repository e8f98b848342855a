"""
测试用例 - 工具执行器与错误分类
"""
import asyncio

import pytest
from pydantic import Field

from conftest import ScriptedLLM, fail_verdict
from core.errors import RemoteToolError, ToolDepthExceededError
from core.types import ErrorType, ToolCall
from core.verifier import Verifier
from tools.base import ToolArgs, ToolContext, ToolDefinition, ToolRegistry
from tools.executor import ToolExecutor, classify_error


class EchoArgs(ToolArgs):
    text: str = Field(description="Text to echo")


async def echo(args: EchoArgs, ctx: ToolContext):
    return {"echo": args.text}


async def sleepy(args: ToolArgs, ctx: ToolContext):
    await asyncio.sleep(2)
    return "too late"


async def broken(args: ToolArgs, ctx: ToolContext):
    raise RuntimeError("Rate limit exceeded for this tool")


async def nested(args: ToolArgs, ctx: ToolContext):
    return await ctx.invoke("nested", {})


class FakeProxy:

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def execute(self, user_id, tool_name, arguments, session_id=None, thread_id=None):
        self.calls.append((user_id, tool_name, arguments, session_id, thread_id))
        if self.error:
            raise self.error
        return self.result


def make_registry():
    registry = ToolRegistry()
    registry.register(ToolDefinition("echo", "Echo text", EchoArgs, echo, verification_type="response"))
    registry.register(ToolDefinition("sleepy", "Sleeps for two seconds", ToolArgs, sleepy))
    registry.register(ToolDefinition("broken", "Always fails", ToolArgs, broken))
    registry.register(ToolDefinition("nested", "Calls itself", ToolArgs, nested))
    return registry


class TestClassifyError:

    @pytest.mark.parametrize("message,expected", [
        ("Tool not found: x", ErrorType.NOT_FOUND),
        ("Unauthorized: token expired", ErrorType.UNAUTHORIZED),
        ("HTTP 401 returned", ErrorType.UNAUTHORIZED),
        ("Rate limit hit", ErrorType.RATE_LIMIT),
        ("Request timeout after 15000ms", ErrorType.TIMEOUT),
        ("Something else broke", ErrorType.UNKNOWN),
    ])
    def test_taxonomy(self, message, expected):
        assert classify_error(message) == expected


class TestToolExecutor:
    """测试工具执行器"""

    def setup_method(self):
        self.llm = ScriptedLLM()
        self.registry = make_registry()
        self.context = ToolContext(
            session_id="s1", user_id="u1", llm=self.llm, registry=self.registry,
            tool_state={"thread_id": "t1"},
        )

    @pytest.mark.asyncio
    async def test_success_is_verified(self):
        executor = ToolExecutor(self.registry, verifier=Verifier(self.llm))
        result = await executor.execute(ToolCall("c1", "echo", {"text": "hi"}), 30, self.context)

        assert result.success
        assert result.result == {"echo": "hi"}
        assert result.verification.achieved is True
        prompt = self.llm.verification_prompts[0]
        assert 'Execute echo with arguments: {"text": "hi"}' in prompt
        assert "Did all agents respond to the prompt?" in prompt

    @pytest.mark.asyncio
    async def test_failed_verification_kept_in_result(self):
        self.llm.verdicts.append(fail_verdict("wrong echo"))
        executor = ToolExecutor(self.registry, verifier=Verifier(self.llm))
        result = await executor.execute(ToolCall("c1", "echo", {"text": "hi"}), 30, self.context)

        assert result.success
        assert result.verification.achieved is False
        assert result.to_dict()["verification"]["issues"] == ["wrong echo"]

    @pytest.mark.asyncio
    async def test_deadline_exceeded(self):
        executor = ToolExecutor(self.registry)
        result = await executor.execute(ToolCall("c2", "sleepy", {}), 0.5, self.context)

        assert result.status == "error"
        assert result.error_type == ErrorType.TIMEOUT
        assert result.suggestion.endswith("consider breaking the task into smaller steps.")
        assert result.to_dict()["errorType"] == "Timeout"
        assert result.duration_ms < 2000

    @pytest.mark.asyncio
    async def test_no_budget_left(self):
        executor = ToolExecutor(self.registry)
        result = await executor.execute(ToolCall("c2", "echo", {"text": "x"}), 0, self.context)

        assert result.error_type == ErrorType.TIMEOUT

    @pytest.mark.asyncio
    async def test_error_classified_with_suggestion(self):
        executor = ToolExecutor(self.registry)
        result = await executor.execute(ToolCall("c3", "broken", {}), 30, self.context)

        assert result.error_type == ErrorType.RATE_LIMIT
        assert "rate limiting" in result.suggestion
        message = result.to_message()
        assert message.role == "tool"
        assert message.tool_call_id == "c3"

    @pytest.mark.asyncio
    async def test_depth_bound(self):
        executor = ToolExecutor(self.registry)
        result = await executor.execute(ToolCall("c4", "nested", {}), 30, self.context)

        assert result.status == "error"
        assert "maximum nested tool depth (3) exceeded" in result.error

    @pytest.mark.asyncio
    async def test_invoke_rejects_beyond_max_depth(self):
        deep = ToolContext(
            session_id="s1", user_id="u1", llm=self.llm, registry=self.registry, depth=3,
        )
        with pytest.raises(ToolDepthExceededError):
            await deep.invoke("echo", {"text": "x"})

    @pytest.mark.asyncio
    async def test_remote_tool_routed_to_proxy(self):
        proxy = FakeProxy(result={"content": [{"type": "text", "text": "ok"}]})
        executor = ToolExecutor(self.registry, verifier=Verifier(self.llm), remote_proxy=proxy)
        result = await executor.execute(ToolCall("c5", "mcp_list_issues", {"repo": "a/b"}), 30, self.context)

        assert result.success
        assert proxy.calls == [("u1", "list_issues", {"repo": "a/b"}, "s1", "t1")]
        # 远程工具使用 response 评分标准
        assert "Did all agents respond to the prompt?" in self.llm.verification_prompts[0]

    @pytest.mark.asyncio
    async def test_remote_error_type_preserved(self):
        proxy = FakeProxy(error=RemoteToolError("OAuth token not found", ErrorType.NOT_FOUND))
        executor = ToolExecutor(self.registry, remote_proxy=proxy)
        result = await executor.execute(ToolCall("c6", "mcp_create_issue", {}), 30, self.context)

        assert result.error_type == ErrorType.NOT_FOUND
        assert result.error == "OAuth token not found"

    @pytest.mark.asyncio
    async def test_remote_tool_without_proxy(self):
        executor = ToolExecutor(self.registry)
        result = await executor.execute(ToolCall("c7", "mcp_anything", {}), 30, self.context)

        assert result.error_type == ErrorType.NOT_FOUND


class TestToolRegistry:

    def test_schema_exported_from_args_model(self):
        registry = make_registry()
        schema = registry.get("echo").to_schema()

        assert schema.parameters["properties"]["text"]["type"] == "string"
        assert schema.parameters["required"] == ["text"]
        assert schema.to_openai()["function"]["name"] == "echo"
        assert schema.to_anthropic()["input_schema"] == schema.parameters

    def test_duplicate_registration_rejected(self):
        registry = make_registry()
        with pytest.raises(ValueError):
            registry.register(ToolDefinition("echo", "again", EchoArgs, echo))
