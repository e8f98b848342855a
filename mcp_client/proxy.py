"""
远程集成代理 - 把用户注册的 MCP 服务器工具暴露为普通工具

通过 JSON-RPC tools/call 调用远程工具：附加 OAuth 凭证、缓存读类调用、
网络错误按指数退避重试，每次调用都写入执行日志。
"""
import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp
from mcp.types import JSONRPCError, JSONRPCRequest, JSONRPCResponse
from pydantic import ValidationError

from core.errors import RemoteToolError
from core.types import ErrorType, ToolSchema, utcnow
from store.base import ExecutionLog, ExecutionLogEntry, IntegrationRegistry, RemoteServer
from tools.executor import REMOTE_TOOL_PREFIX, classify_error

logger = logging.getLogger(__name__)

READ_PATTERNS = ("get_", "list_", "search_")
DEFAULT_CACHE_TTL = 60.0
MIN_CACHE_TTL = 10.0
MAX_CACHE_TTL = 3600.0
NON_RETRYABLE = {ErrorType.NOT_FOUND, ErrorType.UNAUTHORIZED}
METHOD_NOT_FOUND = -32601

_MAX_AGE_RE = re.compile(r"max-age=(\d+)")


def is_read_call(tool_name: str) -> bool:
    return any(pattern in tool_name for pattern in READ_PATTERNS)


def cache_ttl(headers: Dict[str, str], now: Optional[float] = None) -> float:
    """
    根据响应头计算缓存时长（秒），0 表示不缓存

    Cache-Control 优先于 Expires；结果限制在 [10s, 1h]。
    """
    now = time.time() if now is None else now
    ttl = DEFAULT_CACHE_TTL
    cache_control = headers.get("cache-control")
    if cache_control:
        match = _MAX_AGE_RE.search(cache_control)
        if match:
            ttl = float(match.group(1))
        elif "no-cache" in cache_control or "no-store" in cache_control:
            ttl = 0.0
    elif headers.get("expires"):
        try:
            expires = parsedate_to_datetime(headers["expires"]).timestamp()
        except (TypeError, ValueError):
            expires = None
        if expires and expires > now:
            ttl = expires - now

    if ttl <= 0:
        return 0.0
    return max(MIN_CACHE_TTL, min(ttl, MAX_CACHE_TTL))


class ResponseCache:
    """进程内 TTL 缓存"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._items: Dict[Tuple, Tuple[Any, float]] = {}

    def get(self, key: Tuple) -> Optional[Any]:
        item = self._items.get(key)
        if item is None:
            return None
        data, expires = item
        if self._clock() > expires:
            del self._items[key]
            return None
        return data

    def set(self, key: Tuple, data: Any, ttl: float) -> None:
        now = self._clock()
        for stale in [k for k, (_, expires) in self._items.items() if now > expires]:
            del self._items[stale]
        self._items[key] = (data, now + ttl)

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class HttpResponse:
    status: int
    data: Any
    headers: Dict[str, str] = field(default_factory=dict)


def _parse_body(text: str, content_type: str) -> Any:
    if not text:
        return None
    if content_type.startswith("text/event-stream"):
        # streamable HTTP 服务器可能以 SSE 返回单条 JSON-RPC 响应
        payloads = [line[5:].strip() for line in text.splitlines() if line.startswith("data:")]
        text = payloads[-1] if payloads else ""
    try:
        return json.loads(text)
    except ValueError:
        raise RemoteToolError(f"Failed to parse response: {text[:200]}")


class AiohttpTransport:
    """基于 aiohttp 的 HTTP 传输"""

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self._session = session

    async def post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        timeout: float,
    ) -> HttpResponse:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        async with self._session.post(
            url,
            json=payload,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            text = await resp.text()
            response_headers = {k.lower(): v for k, v in resp.headers.items()}
            data = _parse_body(text, response_headers.get("content-type", ""))
            return HttpResponse(status=resp.status, data=data, headers=response_headers)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


class RemoteToolProxy:
    """
    远程工具代理

    transport 需提供 post_json(url, payload, headers, timeout) -> HttpResponse；
    sleep 可注入以便测试重试退避。
    """

    def __init__(
        self,
        registry: IntegrationRegistry,
        execution_log: ExecutionLog,
        transport=None,
        request_timeout: float = 15.0,
        max_retries: int = 3,
        cache: Optional[ResponseCache] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.registry = registry
        self.execution_log = execution_log
        self.transport = transport or AiohttpTransport()
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.cache = cache or ResponseCache()
        self._sleep = sleep
        self._request_ids = 0

    async def list_tools(self, user_id: str) -> List[ToolSchema]:
        servers = await self.registry.servers_for_user(user_id)
        if not servers:
            return []
        tools = await self.registry.tools_for_servers([s.id for s in servers])
        return [
            ToolSchema(
                name=f"{REMOTE_TOOL_PREFIX}{tool.name}",
                description=tool.description or f"MCP tool: {tool.name}",
                parameters=tool.input_schema or {"type": "object", "properties": {}},
            )
            for tool in tools
        ]

    async def _resolve(self, user_id: str, tool_name: str) -> RemoteServer:
        own = [s.id for s in await self.registry.servers_for_user(user_id)]
        tool = await self.registry.find_tool(tool_name, own) or await self.registry.find_tool(tool_name)
        if tool is None:
            raise RemoteToolError(f"MCP tool not found: {tool_name}", ErrorType.NOT_FOUND)
        server = await self.registry.get_server(tool.server_id)
        if server is None:
            raise RemoteToolError(f"MCP server not found for tool: {tool_name}", ErrorType.NOT_FOUND)
        if server.user_id != user_id:
            raise RemoteToolError("Unauthorized access to MCP tool", ErrorType.UNAUTHORIZED)
        return server

    async def _headers(self, server: RemoteServer) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            **server.headers,
        }
        if server.is_oauth:
            token = await self.registry.get_token(server.id)
            if token is None:
                raise RemoteToolError("OAuth token not found", ErrorType.NOT_FOUND)
            if token.expires_at is not None and token.expires_at < utcnow():
                raise RemoteToolError("Unauthorized: OAuth token expired", ErrorType.UNAUTHORIZED)
            headers["Authorization"] = f"Bearer {token.access_token}"
        return headers

    async def execute(
        self,
        user_id: str,
        tool_name: str,
        arguments: Dict[str, Any],
        session_id: Optional[str] = None,
        thread_id: Optional[str] = None,
    ) -> Any:
        started = time.monotonic()
        server = await self._resolve(user_id, tool_name)

        entry = ExecutionLogEntry(
            session_id=session_id or "",
            thread_id=thread_id,
            server_id=server.id,
            tool_name=tool_name,
            request=arguments,
        )
        entry_id = await self.execution_log.start(entry)

        cache_key = (server.id, tool_name, json.dumps(arguments, sort_keys=True, default=str))
        readable = is_read_call(tool_name)
        if readable:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.info("Cache hit for %s", tool_name)
                await self._finish(entry_id, started, status="success", response=cached)
                return cached

        try:
            headers = await self._headers(server)
            response = await self._call_with_retry(server, tool_name, arguments, headers)
            result = self._unwrap(response)
        except asyncio.CancelledError:
            # 调用截止时间到达，wait_for 取消了本次调用
            await self._finish(
                entry_id, started, status="error", error="Request cancelled: tool deadline exceeded"
            )
            logger.warning("MCP tool %s cancelled at the tool deadline", tool_name)
            raise
        except Exception as e:
            await self._finish(entry_id, started, status="error", error=str(e))
            logger.error("MCP tool %s failed: %s", tool_name, e)
            raise

        await self._finish(entry_id, started, status="success", response=result)
        if readable:
            ttl = cache_ttl(response.headers)
            if ttl > 0:
                self.cache.set(cache_key, result, ttl)
                logger.debug("Cached %s for %.0fs", tool_name, ttl)
        return result

    async def _finish(self, entry_id: str, started: float, **fields: Any) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        try:
            await self.execution_log.finish(entry_id, duration_ms=duration_ms, **fields)
        except Exception as e:
            logger.error("Failed to update execution log %s: %s", entry_id, e)

    def _request(self, tool_name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        self._request_ids += 1
        request = JSONRPCRequest(
            jsonrpc="2.0",
            id=self._request_ids,
            method="tools/call",
            params={"name": tool_name, "arguments": arguments},
        )
        return request.model_dump(by_alias=True, exclude_none=True)

    async def _call_with_retry(
        self,
        server: RemoteServer,
        tool_name: str,
        arguments: Dict[str, Any],
        headers: Dict[str, str],
    ) -> HttpResponse:
        payload = self._request(tool_name, arguments)
        last_error: Optional[RemoteToolError] = None
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                delay = 2 ** (attempt - 1)
                logger.info(
                    "Retrying %s after %ss (attempt %d/%d)",
                    tool_name, delay, attempt + 1, self.max_retries + 1,
                )
                await self._sleep(delay)
            try:
                return await self._post(server, payload, headers)
            except RemoteToolError as e:
                last_error = e
                logger.warning("Attempt %d for %s failed: %s", attempt + 1, tool_name, e)
                if e.error_type in NON_RETRYABLE:
                    raise
        raise last_error

    async def _post(self, server: RemoteServer, payload: Dict[str, Any], headers: Dict[str, str]) -> HttpResponse:
        timeout_ms = int(self.request_timeout * 1000)
        try:
            response = await self.transport.post_json(server.url, payload, headers, self.request_timeout)
        except asyncio.TimeoutError:
            raise RemoteToolError(f"Request timeout after {timeout_ms}ms", ErrorType.TIMEOUT)
        except aiohttp.ClientError as e:
            message = str(e) or type(e).__name__
            raise RemoteToolError(message, classify_error(message))

        if response.status == 429:
            retry_after = response.headers.get("retry-after", "5")
            raise RemoteToolError(
                f"Rate limited. Retry after {retry_after} seconds", ErrorType.RATE_LIMIT
            )
        if response.status in (401, 403):
            raise RemoteToolError(f"Unauthorized (HTTP {response.status})", ErrorType.UNAUTHORIZED)
        if response.status == 404:
            raise RemoteToolError(f"MCP endpoint not found: {server.url}", ErrorType.NOT_FOUND)
        if response.status >= 500:
            raise RemoteToolError(f"MCP server error (HTTP {response.status})", ErrorType.UNKNOWN)
        return response

    def _unwrap(self, response: HttpResponse) -> Any:
        """从 JSON-RPC 响应中取出结果，错误映射到统一分类"""
        data = response.data
        if isinstance(data, dict) and "error" in data:
            try:
                error = JSONRPCError.model_validate(data).error
                message, code = error.message, error.code
            except ValidationError:
                message, code = str(data["error"]), None
            error_type = ErrorType.NOT_FOUND if code == METHOD_NOT_FOUND else classify_error(message)
            raise RemoteToolError(f"MCP tool error: {message}", error_type)
        try:
            result = JSONRPCResponse.model_validate(data).result
        except ValidationError:
            raise RemoteToolError(f"Invalid JSON-RPC response: {str(data)[:200]}", ErrorType.UNKNOWN)

        if result.get("isError"):
            text = " ".join(
                item.get("text", "") for item in result.get("content", []) if isinstance(item, dict)
            ).strip() or "Remote tool reported an error"
            raise RemoteToolError(f"MCP tool error: {text}", classify_error(text))
        return result

    async def execution_history(self, session_id: str) -> List[ExecutionLogEntry]:
        """当前 Session 的远程调用记录"""
        try:
            return await self.execution_log.list(session_id)
        except Exception as e:
            logger.error("Failed to fetch execution history: %s", e)
            return []

    async def close(self) -> None:
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()
