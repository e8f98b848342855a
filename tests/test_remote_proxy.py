"""
测试用例 - 远程集成代理
"""
import asyncio
from datetime import timedelta

import aiohttp
import pytest

from conftest import ScriptedLLM
from core.errors import RemoteToolError
from core.types import ErrorType, ToolCall, utcnow
from mcp_client.client import sync_integrations
from mcp_client.proxy import HttpResponse, RemoteToolProxy, ResponseCache, _parse_body, cache_ttl, is_read_call
from store.base import OAuthToken, RemoteServer, RemoteTool
from store.in_memory import InMemoryExecutionLog, InMemoryIntegrationRegistry
from tools.base import ToolContext, ToolRegistry
from tools.executor import ToolExecutor


def ok(result, headers=None, request_id=1):
    return HttpResponse(200, {"jsonrpc": "2.0", "id": request_id, "result": result}, headers or {})


class FakeTransport:
    """按顺序返回预设响应或抛出预设异常"""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.requests = []

    async def post_json(self, url, payload, headers, timeout):
        self.requests.append({"url": url, "payload": payload, "headers": headers, "timeout": timeout})
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply


class SlowTransport:
    """远程服务器响应慢于调用截止时间"""

    async def post_json(self, url, payload, headers, timeout):
        await asyncio.sleep(2)
        return ok({"content": []})


class FakeTime:

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)


def make_registry(oauth=None, owner="u1"):
    registry = InMemoryIntegrationRegistry()
    server = RemoteServer(
        id="gh", user_id=owner, name="GitHub", url="https://mcp.example.com/mcp",
        is_oauth=oauth is not None,
    )
    registry.add_server(server, [
        RemoteTool(server_id="gh", name="list_issues", description="List issues"),
        RemoteTool(server_id="gh", name="create_issue"),
    ], oauth)
    return registry


class TestCacheTtl:

    def test_default(self):
        assert cache_ttl({}) == 60

    def test_max_age_clamped(self):
        assert cache_ttl({"cache-control": "public, max-age=120"}) == 120
        assert cache_ttl({"cache-control": "max-age=2"}) == 10
        assert cache_ttl({"cache-control": "max-age=999999"}) == 3600

    def test_no_store(self):
        assert cache_ttl({"cache-control": "no-store"}) == 0
        assert cache_ttl({"cache-control": "max-age=0"}) == 0

    def test_expires(self):
        headers = {"expires": "Thu, 01 Jan 2026 00:05:00 GMT"}
        now = 1767225600.0  # 2026-01-01 00:00:00 UTC
        assert cache_ttl(headers, now) == 300

    def test_read_patterns(self):
        assert is_read_call("list_issues")
        assert is_read_call("get_user")
        assert is_read_call("repo_search_code")
        assert not is_read_call("create_issue")

    def test_expired_entries_dropped_on_set(self):
        time = FakeTime()
        cache = ResponseCache(clock=time)
        cache.set(("gh", "list_issues", "{}"), ["a"], 10)

        time.now += 11
        cache.set(("gh", "get_user", "{}"), {"login": "x"}, 10)

        assert len(cache) == 1
        assert cache.get(("gh", "get_user", "{}")) == {"login": "x"}

    def test_sse_body(self):
        body = 'event: message\ndata: {"jsonrpc": "2.0", "id": 1, "result": {"content": []}}\n\n'
        assert _parse_body(body, "text/event-stream")["result"] == {"content": []}


class TestRemoteToolProxy:
    """测试远程工具代理"""

    def setup_method(self):
        self.time = FakeTime()
        self.log = InMemoryExecutionLog()

    def proxy(self, registry, transport):
        return RemoteToolProxy(
            registry, self.log, transport=transport,
            cache=ResponseCache(clock=self.time), sleep=self.time.sleep,
        )

    @pytest.mark.asyncio
    async def test_list_tools_prefixed(self):
        proxy = self.proxy(make_registry(), FakeTransport())
        tools = await proxy.list_tools("u1")

        assert [t.name for t in tools] == ["mcp_list_issues", "mcp_create_issue"]
        assert tools[1].description == "MCP tool: create_issue"
        assert await proxy.list_tools("someone-else") == []

    @pytest.mark.asyncio
    async def test_json_rpc_call_and_log(self):
        transport = FakeTransport(ok({"content": [{"type": "text", "text": "3 issues"}]}))
        proxy = self.proxy(make_registry(), transport)

        result = await proxy.execute("u1", "create_issue", {"title": "bug"}, session_id="s1", thread_id="t1")

        assert result["content"][0]["text"] == "3 issues"
        payload = transport.requests[0]["payload"]
        assert payload["jsonrpc"] == "2.0"
        assert payload["method"] == "tools/call"
        assert payload["params"] == {"name": "create_issue", "arguments": {"title": "bug"}}
        assert transport.requests[0]["timeout"] == 15.0

        history = await proxy.execution_history("s1")
        assert len(history) == 1
        assert history[0].status == "success"
        assert history[0].thread_id == "t1"
        assert history[0].request == {"title": "bug"}
        assert history[0].duration_ms is not None

    @pytest.mark.asyncio
    async def test_oauth_header(self):
        token = OAuthToken("secret", utcnow() + timedelta(hours=1))
        transport = FakeTransport(ok({"content": []}))
        proxy = self.proxy(make_registry(oauth=token), transport)

        await proxy.execute("u1", "create_issue", {})

        assert transport.requests[0]["headers"]["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_expired_token_rejected_before_call(self):
        token = OAuthToken("secret", utcnow() - timedelta(minutes=1))
        transport = FakeTransport()
        proxy = self.proxy(make_registry(oauth=token), transport)

        with pytest.raises(RemoteToolError) as exc:
            await proxy.execute("u1", "create_issue", {}, session_id="s1")

        assert exc.value.error_type == ErrorType.UNAUTHORIZED
        assert transport.requests == []
        history = await proxy.execution_history("s1")
        assert history[0].status == "error"

    @pytest.mark.asyncio
    async def test_missing_tool(self):
        proxy = self.proxy(make_registry(), FakeTransport())
        with pytest.raises(RemoteToolError) as exc:
            await proxy.execute("u1", "delete_repo", {})
        assert exc.value.error_type == ErrorType.NOT_FOUND

    @pytest.mark.asyncio
    async def test_other_users_server_unauthorized(self):
        proxy = self.proxy(make_registry(owner="u2"), FakeTransport())
        with pytest.raises(RemoteToolError) as exc:
            await proxy.execute("u1", "create_issue", {})
        assert exc.value.error_type == ErrorType.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_read_calls_cached(self):
        transport = FakeTransport(ok({"content": ["a"]}, {"cache-control": "max-age=30"}))
        proxy = self.proxy(make_registry(), transport)

        first = await proxy.execute("u1", "list_issues", {"state": "open", "repo": "x"}, session_id="s1")
        second = await proxy.execute("u1", "list_issues", {"repo": "x", "state": "open"}, session_id="s1")

        assert first == second
        assert len(transport.requests) == 1
        assert len(await proxy.execution_history("s1")) == 2

        self.time.now += 31
        transport.replies.append(ok({"content": ["b"]}))
        third = await proxy.execute("u1", "list_issues", {"repo": "x", "state": "open"})
        assert third == {"content": ["b"]}

    @pytest.mark.asyncio
    async def test_write_calls_not_cached(self):
        transport = FakeTransport(ok({"content": []}), ok({"content": []}))
        proxy = self.proxy(make_registry(), transport)

        await proxy.execute("u1", "create_issue", {"title": "a"})
        await proxy.execute("u1", "create_issue", {"title": "a"})

        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_retry_with_backoff(self):
        transport = FakeTransport(
            HttpResponse(503, None),
            asyncio.TimeoutError(),
            aiohttp.ClientConnectionError("connection reset"),
            ok({"content": []}),
        )
        proxy = self.proxy(make_registry(), transport)

        await proxy.execute("u1", "create_issue", {})

        assert len(transport.requests) == 4
        assert self.time.sleeps == [1, 2, 4]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        transport = FakeTransport(*[HttpResponse(429, None, {"retry-after": "7"}) for _ in range(4)])
        proxy = self.proxy(make_registry(), transport)

        with pytest.raises(RemoteToolError) as exc:
            await proxy.execute("u1", "create_issue", {})

        assert exc.value.error_type == ErrorType.RATE_LIMIT
        assert str(exc.value) == "Rate limited. Retry after 7 seconds"
        assert len(transport.requests) == 4

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error_type", [
        (401, ErrorType.UNAUTHORIZED),
        (403, ErrorType.UNAUTHORIZED),
        (404, ErrorType.NOT_FOUND),
    ])
    async def test_not_retried(self, status, error_type):
        transport = FakeTransport(HttpResponse(status, None))
        proxy = self.proxy(make_registry(), transport)

        with pytest.raises(RemoteToolError) as exc:
            await proxy.execute("u1", "create_issue", {})

        assert exc.value.error_type == error_type
        assert len(transport.requests) == 1
        assert self.time.sleeps == []

    @pytest.mark.asyncio
    async def test_timeout_message(self):
        transport = FakeTransport(*[asyncio.TimeoutError() for _ in range(4)])
        proxy = self.proxy(make_registry(), transport)

        with pytest.raises(RemoteToolError) as exc:
            await proxy.execute("u1", "create_issue", {})

        assert str(exc.value) == "Request timeout after 15000ms"
        assert exc.value.error_type == ErrorType.TIMEOUT

    @pytest.mark.asyncio
    async def test_json_rpc_error_mapped(self):
        error = {"jsonrpc": "2.0", "id": 1, "error": {"code": -32601, "message": "Unknown tool"}}
        transport = FakeTransport(HttpResponse(200, error))
        proxy = self.proxy(make_registry(), transport)

        with pytest.raises(RemoteToolError) as exc:
            await proxy.execute("u1", "create_issue", {})

        assert exc.value.error_type == ErrorType.NOT_FOUND
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_tool_reported_error(self):
        result = {"isError": True, "content": [{"type": "text", "text": "Rate limit on upstream API"}]}
        proxy = self.proxy(make_registry(), FakeTransport(ok(result)))

        with pytest.raises(RemoteToolError) as exc:
            await proxy.execute("u1", "create_issue", {})

        assert exc.value.error_type == ErrorType.RATE_LIMIT
        assert "Rate limit on upstream API" in str(exc.value)

    @pytest.mark.asyncio
    async def test_deadline_cancellation_logged(self):
        proxy = RemoteToolProxy(make_registry(), self.log, transport=SlowTransport())
        context = ToolContext(
            session_id="s1", user_id="u1", llm=ScriptedLLM(), registry=ToolRegistry(),
        )
        executor = ToolExecutor(context.registry, remote_proxy=proxy)

        result = await executor.execute(ToolCall("c1", "mcp_create_issue", {}), 0.3, context)

        assert result.error_type == ErrorType.TIMEOUT
        history = await proxy.execution_history("s1")
        assert history[0].status == "error"
        assert history[0].error == "Request cancelled: tool deadline exceeded"
        assert history[0].duration_ms is not None


class TestSyncIntegrations:

    @pytest.mark.asyncio
    async def test_discovered_tools_stored(self):
        registry = make_registry(oauth=OAuthToken("tok"))
        seen = {}

        async def discover(server, headers=None):
            seen["headers"] = headers
            return [RemoteTool(server_id=server.id, name="search_code")]

        summary = await sync_integrations(registry, "u1", discover=discover)

        assert summary == {"GitHub": {"tools": ["search_code"]}}
        assert seen["headers"] == {"Authorization": "Bearer tok"}
        assert [t.name for t in await registry.tools_for_servers(["gh"])] == ["search_code"]

    @pytest.mark.asyncio
    async def test_failure_reported_per_server(self):
        registry = make_registry()

        async def discover(server, headers=None):
            raise ConnectionError("refused")

        summary = await sync_integrations(registry, "u1", discover=discover)

        assert summary == {"GitHub": {"error": "refused"}}
        assert len(await registry.tools_for_servers(["gh"])) == 2
