"""
MCP 工具发现 - 使用官方 mcp 库连接远程服务器并列出工具
"""
import logging
import os
from contextlib import AsyncExitStack
from typing import Any, Dict, List

from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client

from store.base import IntegrationRegistry, RemoteServer, RemoteTool

logger = logging.getLogger(__name__)


def _resolve_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """解析字符串值中的环境变量占位符，例如 ${TOKEN}"""
    return {
        key: os.path.expandvars(value) if isinstance(value, str) else value
        for key, value in (data or {}).items()
    }


def _normalize_transport(transport: str) -> str:
    transport = (transport or "streamable_http").lower()
    if transport in ("streamable-http", "streamablehttp", "http"):
        return "streamable_http"
    return transport


async def discover_tools(
    server: RemoteServer,
    headers: Dict[str, str] = None,
    timeout: float = 30.0,
    sse_read_timeout: float = 300.0,
) -> List[RemoteTool]:
    """连接服务器、初始化会话并列出工具"""
    url = os.path.expandvars(server.url)
    request_headers = _resolve_dict({**server.headers, **(headers or {})}) or None
    transport = _normalize_transport(server.transport)

    async with AsyncExitStack() as stack:
        if transport == "streamable_http":
            read, write, _ = await stack.enter_async_context(streamablehttp_client(
                url=url,
                headers=request_headers,
                timeout=timeout,
                sse_read_timeout=sse_read_timeout,
            ))
        elif transport == "sse":
            read, write = await stack.enter_async_context(sse_client(
                url=url,
                headers=request_headers,
                timeout=timeout,
                sse_read_timeout=sse_read_timeout,
            ))
        else:
            raise ValueError(f"Unsupported MCP transport '{server.transport}' for server '{server.name}'")

        session = await stack.enter_async_context(ClientSession(read, write))
        await session.initialize()
        result = await session.list_tools()

    tools = [
        RemoteTool(
            server_id=server.id,
            name=tool.name,
            description=tool.description or "",
            input_schema=tool.inputSchema or {"type": "object", "properties": {}},
        )
        for tool in result.tools
    ]
    logger.info("Discovered %d tools on MCP server '%s'", len(tools), server.name)
    return tools


async def sync_integrations(registry: IntegrationRegistry, user_id: str, discover=discover_tools) -> Dict[str, Any]:
    """
    重新发现用户所有启用服务器的工具并写回注册表

    单个服务器失败只记录错误，不影响其他服务器。
    """
    summary: Dict[str, Any] = {}
    for server in await registry.servers_for_user(user_id):
        headers = {}
        if server.is_oauth:
            token = await registry.get_token(server.id)
            if token is not None:
                headers["Authorization"] = f"Bearer {token.access_token}"
        try:
            tools = await discover(server, headers=headers)
        except Exception as e:
            logger.error("MCP discovery failed for '%s': %s", server.name, e)
            summary[server.name] = {"error": str(e)}
            continue
        await registry.set_tools(server.id, tools)
        summary[server.name] = {"tools": [t.name for t in tools]}
    return summary
