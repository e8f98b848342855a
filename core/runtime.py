"""
运行时装配 - 根据配置构建编排引擎的所有组件
"""
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .context_manager import ContextManager
from .continuation import (
    ContinuationQueue, ContinuationScheduler, ContinuationWorker, FileContinuationQueue,
    InMemoryContinuationQueue,
)
from .llm_client import LLMClient
from .orchestrator import OrchestrationLoop, OrchestratorConfig
from .verifier import Verifier
from mcp_client.proxy import RemoteToolProxy
from memory.manager import MemoryManager
from store.base import OAuthToken, RemoteServer, RemoteTool
from store.file_backed import (
    FileEventLog, FileExecutionLog, FileSessionStore, FileTranscriptStore, atomic_write_json, read_json,
)
from store.gateway import SessionGateway
from store.in_memory import (
    InMemoryActiveSessionIndex, InMemoryEventLog, InMemoryExecutionLog, InMemoryIntegrationRegistry,
    InMemorySessionStore, InMemoryTranscriptStore,
)
from tools.base import ToolRegistry
from tools.builtin import register_builtin_tools
from tools.executor import ToolExecutor

logger = logging.getLogger(__name__)

DISCOVERED_TOOLS_FILE = "integration_tools.json"


@dataclass
class Runtime:
    """装配好的组件集合"""
    config: Dict[str, Any]
    llm: Any
    gateway: SessionGateway
    registry: ToolRegistry
    integrations: InMemoryIntegrationRegistry
    proxy: Optional[RemoteToolProxy]
    queue: ContinuationQueue
    scheduler: ContinuationScheduler
    loop: OrchestrationLoop
    worker: ContinuationWorker
    memory: MemoryManager

    @property
    def discovered_tools_path(self) -> Optional[Path]:
        if self.config['storage']['backend'] != 'file':
            return None
        return Path(self.config['storage']['data_dir']) / DISCOVERED_TOOLS_FILE

    async def save_discovered_tools(self) -> None:
        """把发现的远程工具写入数据目录，供后续进程加载"""
        path = self.discovered_tools_path
        if path is None:
            return
        data = {}
        for server in self.integrations.servers():
            tools = await self.integrations.tools_for_servers([server.id])
            data[server.id] = [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema}
                for t in tools
            ]
        atomic_write_json(path, data)

    async def close(self) -> None:
        if self.proxy is not None:
            await self.proxy.close()


def build_llm(config: Dict[str, Any]) -> LLMClient:
    llm_config = config['llm']
    providers = ('claude', 'openai', 'gemini')
    return LLMClient(
        provider=llm_config['provider'],
        api_keys={p: llm_config.get(p, {}).get('api_key') for p in providers},
        models={p: llm_config[p]['model'] for p in providers if llm_config.get(p, {}).get('model')},
        base_urls={p: llm_config.get(p, {}).get('base_url') for p in providers},
        max_tokens=llm_config.get('max_tokens', 4096),
        temperature=llm_config.get('temperature', 0.7),
    )


def _parse_expiry(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def load_integrations(config: Dict[str, Any]) -> InMemoryIntegrationRegistry:
    """从配置加载声明式的远程集成；已发现的工具从数据目录读取"""
    registry = InMemoryIntegrationRegistry()
    discovered: Dict[str, List[Dict[str, Any]]] = {}
    if config['storage']['backend'] == 'file':
        path = Path(config['storage']['data_dir']) / DISCOVERED_TOOLS_FILE
        if path.exists():
            discovered = read_json(path)

    for item in config['mcp'].get('servers') or []:
        server = RemoteServer(
            id=item['id'],
            user_id=item['user_id'],
            name=item.get('name', item['id']),
            url=item['url'],
            transport=item.get('transport', 'streamable_http'),
            headers=item.get('headers') or {},
            is_oauth=bool(item.get('oauth')),
            is_active=item.get('enabled', True),
        )
        declared = item.get('tools') or discovered.get(server.id) or []
        tools = [
            RemoteTool(
                server_id=server.id,
                name=t['name'],
                description=t.get('description', ''),
                input_schema=t.get('input_schema') or {"type": "object", "properties": {}},
                category=t.get('category'),
            )
            for t in declared
        ]
        token = None
        oauth = item.get('oauth')
        if oauth:
            token = OAuthToken(
                access_token=os.path.expandvars(oauth['access_token']),
                expires_at=_parse_expiry(oauth.get('expires_at')),
            )
        registry.add_server(server, tools, token)
    return registry


def build_runtime(
    config: Dict[str, Any],
    llm=None,
    transport=None,
    clock=None,
) -> Runtime:
    """
    构建运行时

    Args:
        llm: 可选的LLM客户端（测试中注入脚本化实现）
        transport: 可选的远程代理HTTP传输
        clock: 可选的单调时钟，用于调用截止时间
    """
    orch = config['orchestrator']
    storage = config['storage']
    llm = llm or build_llm(config)

    if storage['backend'] == 'file':
        data_dir = storage['data_dir']
        sessions = FileSessionStore(data_dir)
        events = FileEventLog(data_dir)
        transcripts = FileTranscriptStore(data_dir)
        execution_log = FileExecutionLog(data_dir)
        memory = MemoryManager(data_dir)
    elif storage['backend'] == 'memory':
        sessions = InMemorySessionStore()
        events = InMemoryEventLog()
        transcripts = InMemoryTranscriptStore()
        execution_log = InMemoryExecutionLog()
        memory = MemoryManager()
    else:
        raise ValueError(f"Unsupported storage backend: {storage['backend']}")

    gateway = SessionGateway(
        sessions, events, transcripts, InMemoryActiveSessionIndex(),
        active_ttl_seconds=orch['active_session_ttl_seconds'],
    )

    if config['queue']['backend'] == 'file':
        queue = FileContinuationQueue(config['queue']['spool_dir'])
        queue.recover()
    elif config['queue']['backend'] == 'memory':
        queue = InMemoryContinuationQueue()
    else:
        raise ValueError(f"Unsupported queue backend: {config['queue']['backend']}")

    registry = register_builtin_tools(ToolRegistry())
    integrations = load_integrations(config)
    proxy = None
    if config['mcp'].get('enabled'):
        proxy = RemoteToolProxy(
            integrations,
            execution_log,
            transport=transport,
            request_timeout=config['mcp']['request_timeout_seconds'],
            max_retries=config['mcp']['max_retries'],
        )

    verifier = Verifier(llm)
    executor = ToolExecutor(
        registry,
        verifier=verifier,
        remote_proxy=proxy,
        verify_results=orch['verify_tool_results'],
    )
    scheduler = ContinuationScheduler(gateway, queue)
    loop = OrchestrationLoop(
        gateway=gateway,
        llm=llm,
        registry=registry,
        executor=executor,
        verifier=verifier,
        context_manager=ContextManager(
            context_window_tokens=orch['context_window_tokens'],
            compaction_ratio=orch['compaction_ratio'],
            keep_recent=orch['keep_recent_messages'],
        ),
        scheduler=scheduler,
        remote_proxy=proxy,
        memory=memory,
        config=OrchestratorConfig.from_dict(orch),
        clock=clock,
    )
    logger.debug(
        "Runtime ready: storage=%s queue=%s tools=%d",
        storage['backend'], config['queue']['backend'], len(registry),
    )
    return Runtime(
        config=config,
        llm=llm,
        gateway=gateway,
        registry=registry,
        integrations=integrations,
        proxy=proxy,
        queue=queue,
        scheduler=scheduler,
        loop=loop,
        worker=ContinuationWorker(loop, queue),
        memory=memory,
    )
