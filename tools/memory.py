"""
记忆工具 - 让 Agent 跨交互保持记忆

记忆是可选的，由编排LLM决定何时读写。
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator

from core.errors import OrchestrationError
from core.types import utcnow
from .agent import AgentProfile
from .base import ToolArgs, ToolContext, ToolDefinition

logger = logging.getLogger(__name__)


class GiveAgentMemoryArgs(ToolArgs):
    agent: AgentProfile = Field(description="The agent to give memory to")
    memoryKey: str = Field(
        description='Unique identifier for this memory stream (e.g., "sarah-analyst-project-alpha")'
    )
    scope: str = Field(default="all", description="What memories to include (recent, all, specific-topic)")


class SaveAgentMemoryArgs(ToolArgs):
    memoryKey: str = Field(description='Where to store this memory (e.g., "project-alpha-discussions")')
    content: Any = Field(description="What to remember (discussion, insights, decisions, etc)")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Optional metadata about this memory")


class SearchMemoriesArgs(ToolArgs):
    query: str = Field(description="What to search for")
    memoryKeys: Optional[List[str]] = Field(
        default=None, description="Optional: search only specific memory streams"
    )
    limit: int = Field(default=10, ge=1, le=100, description="Maximum results to return")


class ListMemoryStreamsArgs(ToolArgs):
    pattern: Optional[str] = Field(default=None, description="Optional pattern to filter streams")


class ForgetMemoryArgs(ToolArgs):
    memoryKey: str = Field(description="Memory stream to forget")
    beforeDate: Optional[datetime] = Field(
        default=None, description="Optional: only forget memories before this date"
    )

    @field_validator("beforeDate")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def _memory(ctx: ToolContext):
    if ctx.memory is None:
        raise OrchestrationError("Memory store not found for this runtime")
    return ctx.memory


async def give_agent_memory(args: GiveAgentMemoryArgs, ctx: ToolContext) -> Dict[str, Any]:
    memory = _memory(ctx)
    if args.scope == "recent":
        limit = 10
    elif args.scope == "all":
        limit = None
    else:
        limit = 20
    entries = await memory.fetch(ctx.user_id, args.memoryKey, limit=limit)

    memory_context: Dict[str, Any] = {
        "memoryKey": args.memoryKey,
        "scope": args.scope,
        "memories": [e.to_dict() for e in entries],
        "instruction": (
            f"You have access to {len(entries)} previous interactions. "
            "Use this context to maintain continuity and build on past discussions."
        ),
    }
    if entries:
        memory_context["summary"] = await ctx.ask(
            "Summarize these memories into key points the agent should remember.",
            f"Memories for {args.agent.label}:\n"
            + json.dumps([e.content for e in entries], indent=2, ensure_ascii=False, default=str),
        )

    return {**args.agent.model_dump(exclude_none=True), "memoryContext": memory_context, "hasMemory": True}


async def save_agent_memory(args: SaveAgentMemoryArgs, ctx: ToolContext) -> Dict[str, Any]:
    entry = await _memory(ctx).save(
        ctx.user_id, args.memoryKey, args.content, args.metadata, session_id=ctx.session_id
    )
    return {
        "success": True,
        "memoryId": entry.id,
        "memoryKey": args.memoryKey,
        "savedAt": entry.created_at.isoformat(),
    }


async def search_memories(args: SearchMemoriesArgs, ctx: ToolContext) -> Dict[str, Any]:
    entries = await _memory(ctx).search(ctx.user_id, args.query, args.memoryKeys, args.limit)
    return {
        "query": args.query,
        "results": [e.to_dict() for e in entries],
        "count": len(entries),
        "searchedAt": utcnow().isoformat(),
    }


async def list_memory_streams(args: ListMemoryStreamsArgs, ctx: ToolContext) -> Dict[str, Any]:
    streams = await _memory(ctx).list_streams(ctx.user_id, args.pattern)
    return {"streams": streams, "count": len(streams), "pattern": args.pattern}


async def forget_memory(args: ForgetMemoryArgs, ctx: ToolContext) -> Dict[str, Any]:
    deleted = await _memory(ctx).forget(ctx.user_id, args.memoryKey, before=args.beforeDate)
    return {
        "success": True,
        "memoryKey": args.memoryKey,
        "deletedCount": deleted,
        "beforeDate": args.beforeDate.isoformat() if args.beforeDate else None,
    }


MEMORY_TOOLS = [
    ToolDefinition(
        name="giveAgentMemory",
        description=(
            "Give an agent memory of previous interactions. "
            "The agent will have context from past conversations."
        ),
        args_model=GiveAgentMemoryArgs,
        executor=give_agent_memory,
        verification_type="agent",
    ),
    ToolDefinition(
        name="saveAgentMemory",
        description="Save an interaction or insight for future recall",
        args_model=SaveAgentMemoryArgs,
        executor=save_agent_memory,
        verification_type="response",
    ),
    ToolDefinition(
        name="searchMemories",
        description="Search across all saved memories",
        args_model=SearchMemoriesArgs,
        executor=search_memories,
        verification_type="response",
    ),
    ToolDefinition(
        name="listMemoryStreams",
        description="List all available memory streams/conversations",
        args_model=ListMemoryStreamsArgs,
        executor=list_memory_streams,
        verification_type="response",
    ),
    ToolDefinition(
        name="forgetMemory",
        description="Delete specific memories or entire memory streams",
        args_model=ForgetMemoryArgs,
        executor=forget_memory,
        verification_type="response",
    ),
]
