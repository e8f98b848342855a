"""
线程检索工具 - 搜索当前对话线程的完整历史

上下文被压缩后，LLM 可通过这些工具找回被移出上下文的内容。
"""
from typing import Any, Dict, Literal

from pydantic import Field

from core.errors import OrchestrationError
from .base import ToolArgs, ToolContext, ToolDefinition

EXCERPT_CONTEXT = 100


class SearchThreadHistoryArgs(ToolArgs):
    query: str = Field(description="Search query to find in thread history (searches message content)")
    messageRole: Literal["user", "assistant", "all"] = Field(default="all", description="Filter by message role")
    limit: int = Field(default=10, ge=1, le=100, description="Maximum number of results to return")


class GetThreadSummaryArgs(ToolArgs):
    pass


def excerpt(content: str, query: str, context_length: int = EXCERPT_CONTEXT) -> str:
    """截取命中位置前后的片段"""
    index = content.lower().find(query.lower())
    if index == -1:
        return content[:200] + ("..." if len(content) > 200 else "")
    start = max(0, index - context_length)
    end = min(len(content), index + len(query) + context_length)
    text = content[start:end]
    if start > 0:
        text = "..." + text
    if end < len(content):
        text = text + "..."
    return text


async def _thread(ctx: ToolContext):
    thread_id = ctx.thread_id
    if not thread_id or ctx.transcripts is None:
        raise OrchestrationError("Conversation thread not found for this session")
    thread = await ctx.transcripts.get_thread(thread_id)
    if thread is None:
        raise OrchestrationError(f"Conversation thread not found: {thread_id}")
    return thread


async def search_thread_history(args: SearchThreadHistoryArgs, ctx: ToolContext) -> Dict[str, Any]:
    thread = await _thread(ctx)
    needle = args.query.lower()
    matches = [
        m for m in await ctx.transcripts.messages(thread.id)
        if needle in m.content.lower() and (args.messageRole == "all" or m.role == args.messageRole)
    ]
    matches.sort(key=lambda m: m.created_at, reverse=True)
    matches = matches[:args.limit]
    return {
        "threadId": thread.id,
        "query": args.query,
        "resultCount": len(matches),
        "messages": [
            {
                "role": m.role,
                "content": m.content,
                "timestamp": m.created_at.isoformat(),
                "excerpt": excerpt(m.content, args.query),
            }
            for m in matches
        ],
    }


async def get_thread_summary(args: GetThreadSummaryArgs, ctx: ToolContext) -> Dict[str, Any]:
    thread = await _thread(ctx)
    messages = sorted(await ctx.transcripts.messages(thread.id), key=lambda m: m.created_at)
    duration = "Unknown"
    if messages:
        minutes = (messages[-1].created_at - messages[0].created_at).total_seconds() / 60
        duration = f"{round(minutes)} minutes"
    return {
        "threadId": thread.id,
        "title": thread.title,
        "totalMessages": len(messages),
        "userMessages": sum(1 for m in messages if m.role == "user"),
        "assistantMessages": sum(1 for m in messages if m.role == "assistant"),
        "conversationDuration": duration,
        "metadata": thread.metadata,
    }


THREAD_TOOLS = [
    ToolDefinition(
        name="searchThreadHistory",
        description=(
            "Search through the complete history of the current thread, including messages "
            "that may have been compressed or removed from the active context"
        ),
        args_model=SearchThreadHistoryArgs,
        executor=search_thread_history,
        verification_type="response",
    ),
    ToolDefinition(
        name="getThreadSummary",
        description="Get a summary of the entire thread conversation, including message count and key topics",
        args_model=GetThreadSummaryArgs,
        executor=get_thread_summary,
        verification_type="response",
    ),
]
