"""
工具执行器 - 在截止时间内执行单个工具调用，产出带类型的结果或错误
"""
import asyncio
import json
import logging
import time
from typing import Any, Optional

from core.errors import RemoteToolError
from core.types import ErrorType, ToolCall, ToolResult, VerificationResult
from .base import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

REMOTE_TOOL_PREFIX = "mcp_"

SUGGESTIONS = {
    ErrorType.NOT_FOUND: (
        "The requested tool or resource was not found. Check the name and arguments, "
        "or list the available items before retrying."
    ),
    ErrorType.UNAUTHORIZED: (
        "Access was denied. The integration may need to be re-authorized; "
        "do not retry the same call, try a different approach instead."
    ),
    ErrorType.RATE_LIMIT: (
        "The service is rate limiting requests. Reduce the number of calls or wait before retrying."
    ),
    ErrorType.TIMEOUT: (
        "The tool did not finish within the remaining time budget; "
        "consider breaking the task into smaller steps."
    ),
    ErrorType.UNKNOWN: (
        "An unexpected error occurred. Review the error message and retry with different arguments."
    ),
}


def classify_error(message: str) -> ErrorType:
    """按错误文本分类"""
    text = (message or "").lower()
    if "not found" in text:
        return ErrorType.NOT_FOUND
    if "unauthorized" in text or "401" in text:
        return ErrorType.UNAUTHORIZED
    if "rate limit" in text:
        return ErrorType.RATE_LIMIT
    if "timeout" in text or "timed out" in text:
        return ErrorType.TIMEOUT
    return ErrorType.UNKNOWN


def is_remote_tool(name: str) -> bool:
    return name.startswith(REMOTE_TOOL_PREFIX)


class ToolExecutor:
    """
    工具执行器

    将工具的实际执行与剩余预算的计时器赛跑，先完成者胜出；
    成功时调用验证器并把结论放进结果，失败时分类并附上建议，供LLM自我纠正。
    以 mcp_ 为前缀的工具走远程集成代理而不是本地注册表。
    """

    def __init__(
        self,
        registry: ToolRegistry,
        verifier=None,
        remote_proxy=None,
        verify_results: bool = True,
    ):
        self.registry = registry
        self.verifier = verifier
        self.remote_proxy = remote_proxy
        self.verify_results = verify_results

    async def execute(
        self,
        call: ToolCall,
        remaining_budget: float,
        context: ToolContext,
    ) -> ToolResult:
        logger.info("Executing tool %s with %.1fs remaining", call.name, remaining_budget)
        started = time.monotonic()

        try:
            if remaining_budget <= 0:
                raise asyncio.TimeoutError()
            result = await asyncio.wait_for(self._run(call, context), timeout=remaining_budget)
        except asyncio.TimeoutError:
            message = f"Tool '{call.name}' timeout after {int(remaining_budget * 1000)}ms"
            return self._error(call, message, ErrorType.TIMEOUT, started)
        except Exception as e:
            error_type = getattr(e, "error_type", None) or classify_error(str(e))
            logger.warning("Tool %s failed (%s): %s", call.name, error_type.value, e)
            return self._error(call, str(e) or type(e).__name__, error_type, started)

        duration_ms = int((time.monotonic() - started) * 1000)
        verification = await self._verify(call, result, context)
        return ToolResult(
            call_id=call.id,
            tool=call.name,
            status="success",
            result=result,
            duration_ms=duration_ms,
            verification=verification,
        )

    async def _run(self, call: ToolCall, context: ToolContext) -> Any:
        if is_remote_tool(call.name):
            if self.remote_proxy is None:
                raise RemoteToolError(
                    f"Remote integration tool not found: {call.name}", ErrorType.NOT_FOUND
                )
            original_name = call.name[len(REMOTE_TOOL_PREFIX):]
            return await self.remote_proxy.execute(
                context.user_id,
                original_name,
                call.arguments,
                session_id=context.session_id,
                thread_id=context.thread_id,
            )
        return await self.registry.dispatch(call.name, call.arguments, context)

    async def _verify(
        self,
        call: ToolCall,
        result: Any,
        context: ToolContext,
    ) -> Optional[VerificationResult]:
        if not (self.verify_results and self.verifier):
            return None

        definition = self.registry.get(call.name)
        result_type = definition.verification_type if definition else "response"
        goal = f"Execute {call.name} with arguments: {json.dumps(call.arguments, default=str)}"
        try:
            return await self.verifier.verify(result, goal, result_type, context.provider)
        except Exception as e:
            logger.warning("Verification of %s could not run: %s", call.name, e)
            return VerificationResult(
                achieved=False,
                confidence=0.0,
                issues=[f"Verification could not run: {e}"],
            )

    def _error(self, call: ToolCall, message: str, error_type: ErrorType, started: float) -> ToolResult:
        return ToolResult(
            call_id=call.id,
            tool=call.name,
            status="error",
            error=message,
            error_type=error_type,
            suggestion=SUGGESTIONS[error_type],
            duration_ms=int((time.monotonic() - started) * 1000),
        )
