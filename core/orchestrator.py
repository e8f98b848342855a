"""
编排循环 - 驱动 LLM 与工具之间的循环，直到完成、失败或在计算预算耗尽前挂起

核心流程 (每次激活):
1. 加载 Session，终态直接返回（重复投递的幂等保证）
2. 检查剩余预算，低于安全余量时检查点并挂起
3. 构建发送给LLM的消息（必要时压缩）并调用LLM
4. 工具调用逐个执行，每个调用后保存 Session
5. 最终回复经过验证，置信度不足时带反馈重试（有上限）
6. 完成 Session 并写入对话线程
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .context_manager import CompactionReport, ContextManager
from .deadline import Deadline
from .errors import OrchestrationError, SessionNotFoundError, VersionConflictError
from .types import (
    ContinuationMessage, EventType, LLMResponse, Message, Session, SessionStatus, ToolCall,
    ToolSchema, VerificationResult, utcnow,
)
from .verifier import Verifier
from tools.base import ToolContext, ToolRegistry
from tools.executor import ToolExecutor

logger = logging.getLogger(__name__)

ORCHESTRATOR_SYSTEM_PROMPT = """You are an orchestrator helping the user with their request.

You have access to tools for:
- Creating agents with any persona
- Running discussions and interactions
- Analyzing responses and finding consensus
- Managing agent memory
- Searching earlier conversation history
- Calling the user's connected integrations (tools prefixed with mcp_)

Use tools as needed to accomplish the user's goal.
Be creative in how you combine tools.
Verify your work achieves the intended outcome."""

FEEDBACK_TEMPLATE = (
    "Verification failed. The previous response did not fully achieve the user's goal. "
    "Issues: {issues}. Please address these issues and provide a correct response."
)


@dataclass
class OrchestratorConfig:
    """编排循环配置"""
    system_prompt: str = ORCHESTRATOR_SYSTEM_PROMPT
    max_execution_seconds: float = 840.0
    safety_margin_seconds: float = 60.0
    verification_threshold: float = 0.6
    max_verification_retries: int = 3
    max_tool_depth: int = 3

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrchestratorConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class Activation:
    """一次激活的运行状态"""
    session: Session
    deadline: Deadline
    context: Optional[ToolContext] = None
    catalog: List[ToolSchema] = field(default_factory=list)
    partial_content: Optional[str] = None


class OrchestrationLoop:
    """
    编排主循环

    Session 是唯一的恢复依据；事件日志只写不读。
    所有 Session 写入都以版本号为条件，版本冲突说明另一个激活接管了该 Session，
    当前激活直接退出而不标记失败。
    """

    def __init__(
        self,
        gateway,
        llm,
        registry: ToolRegistry,
        executor: ToolExecutor,
        verifier: Verifier,
        context_manager: Optional[ContextManager] = None,
        scheduler=None,
        remote_proxy=None,
        memory=None,
        config: Optional[OrchestratorConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.gateway = gateway
        self.llm = llm
        self.registry = registry
        self.executor = executor
        self.verifier = verifier
        self.context_manager = context_manager or ContextManager()
        self.scheduler = scheduler
        self.remote_proxy = remote_proxy
        self.memory = memory
        self.config = config or OrchestratorConfig()
        self.clock = clock

    async def handle(self, message: ContinuationMessage) -> Optional[Session]:
        """
        处理一条续跑消息

        Returns:
            激活结束时的 Session；Session 不存在或被其他激活接管时返回 None
        """
        deadline = Deadline(
            self.config.max_execution_seconds,
            self.config.safety_margin_seconds,
            clock=self.clock,
        )
        try:
            session = await self.gateway.load_session(message.session_id)
        except SessionNotFoundError:
            logger.error("Session %s not found, dropping %s message", message.session_id, message.action)
            return None

        if session.is_terminal:
            logger.info(
                "Session %s already %s, ignoring %s message",
                session.id, session.status.value, message.action,
            )
            return session

        activation = Activation(session=session, deadline=deadline)
        try:
            return await self._run(activation, message)
        except VersionConflictError as e:
            logger.warning("Abandoning activation of session %s: %s", session.id, e)
            return None
        except Exception as e:
            await self.gateway.fail_session(session.id, e, activation.partial_content)
            try:
                return await self.gateway.load_session(session.id)
            except SessionNotFoundError:
                return None

    async def _run(self, act: Activation, message: ContinuationMessage) -> Session:
        await self._activate(act, message)
        session = act.session

        act.catalog = await self._build_catalog(session.user_id)
        act.context = ToolContext(
            session_id=session.id,
            user_id=session.user_id,
            llm=self.llm,
            registry=self.registry,
            tool_state=session.tool_state,
            catalog=act.catalog,
            provider=session.tool_state.get("provider"),
            memory=self.memory,
            transcripts=self.gateway.transcripts,
            max_depth=self.config.max_tool_depth,
        )

        while True:
            if act.deadline.should_yield():
                return await self._suspend(act)

            response = await self._call_llm(act)

            if response.tool_calls:
                for index, call in enumerate(response.tool_calls):
                    await self._execute_tool(act, call, response.content if index == 0 else None)
                    if act.deadline.should_yield():
                        return await self._suspend(act)
                continue

            if response.content:
                act.partial_content = response.content
                completed = await self._finish(act, response.content)
                if completed is not None:
                    return completed
                continue

            raise OrchestrationError("No response from LLM")

    async def _activate(self, act: Activation, message: ContinuationMessage) -> None:
        session = act.session
        previous = session.status
        patch: Dict[str, Any] = {"execution_count": session.execution_count + 1}
        if previous != SessionStatus.RUNNING:
            patch["status"] = SessionStatus.RUNNING
        else:
            # 上一次激活中途崩溃，重复投递直接接管
            logger.warning("Session %s was still running, taking over", session.id)
        if session.started_at is None:
            patch["started_at"] = utcnow()
        if message.input and not any(m.role == "user" for m in session.messages):
            patch["messages"] = session.messages + [Message(role="user", content=message.input)]

        act.session = await self.gateway.update_session(session, **patch)
        logger.info(
            "Activation %d of session %s (%s)",
            act.session.execution_count, act.session.id, message.action,
        )
        await self.gateway.log_event(act.session.id, EventType.STATUS_UPDATE, {
            "from": previous.value,
            "to": SessionStatus.RUNNING.value,
            "message": "Starting orchestration..." if message.action == "start" else "Resuming orchestration...",
            "execution_count": act.session.execution_count,
        })
        await self.gateway.track_active(act.session)

    async def _build_catalog(self, user_id: str) -> List[ToolSchema]:
        catalog = self.registry.get_all_schemas()
        remote: List[ToolSchema] = []
        if self.remote_proxy is not None:
            try:
                remote = await self.remote_proxy.list_tools(user_id)
            except Exception as e:
                logger.warning("Could not load integration tools for user %s: %s", user_id, e)
        logger.info("Available tools: %d local, %d remote", len(catalog), len(remote))
        return catalog + remote

    def _effective_messages(self, messages: List[Message]) -> Tuple[List[Message], Optional[CompactionReport]]:
        effective, report = self.context_manager.prepare(messages)
        has_prompt = any(
            m.role == "system" and "orchestrator" in (m.content or "") for m in effective
        )
        if not has_prompt:
            effective.insert(0, Message(role="system", content=self.config.system_prompt))
        return effective, report

    async def _call_llm(self, act: Activation) -> LLMResponse:
        session = act.session
        effective, report = self._effective_messages(session.messages)
        if report is not None:
            data = report.to_dict()
            data["total_tokens_recorded"] = act.context.tool_state.get("total_tokens", 0)
            await self.gateway.log_event(session.id, EventType.CONTEXT_COMPRESSION, data)

        logger.info(
            "Calling LLM for session %s with %d messages and %d tools",
            session.id, len(effective), len(act.catalog),
        )
        response = await self.llm.complete(effective, act.catalog, provider=act.context.provider)
        if response.usage is not None:
            state = act.context.tool_state
            state["total_tokens"] = state.get("total_tokens", 0) + response.usage.total_tokens
        return response

    async def _execute_tool(self, act: Activation, call: ToolCall, content: Optional[str]) -> None:
        session = act.session
        await self.gateway.log_event(session.id, EventType.TOOL_CALL, {
            "tool": call.name,
            "arguments": call.arguments,
            "tool_call_id": call.id,
            "timestamp": utcnow().isoformat(),
        })

        result = await self.executor.execute(call, act.deadline.remaining(), act.context)

        await self.gateway.log_event(session.id, EventType.TOOL_RESULT, {
            "tool": call.name,
            "tool_call_id": call.id,
            "success": result.success,
            "result": result.to_dict(),
            "duration_ms": result.duration_ms,
        })

        session.messages.append(Message(role="assistant", content=content, tool_calls=[call]))
        session.messages.append(result.to_message())
        await self._checkpoint(act)

    async def _checkpoint(self, act: Activation) -> None:
        """保存消息与 tool_state；工具对 tool_state 的修改通过上下文写回"""
        act.session.tool_state = act.context.tool_state
        act.session = await self.gateway.save_session(act.session)
        act.context.tool_state = act.session.tool_state

    async def _suspend(self, act: Activation) -> Session:
        logger.info(
            "Session %s yielding with %.1fs remaining",
            act.session.id, act.deadline.remaining(),
        )
        if act.context is not None:
            act.session.tool_state = act.context.tool_state
        if self.scheduler is None:
            raise OrchestrationError("Invocation deadline reached and no continuation scheduler is configured")
        return await self.scheduler.suspend(act.session)

    def _verification_input(self, messages: List[Message], content: str) -> Dict[str, Any]:
        user_messages = [
            m for m in messages
            if m.role == "user" and not (m.content or "").startswith("Verification failed")
        ]
        user_input = user_messages[-1].content if user_messages else ""
        tool_calls = [tc.to_dict() for m in messages for tc in (m.tool_calls or [])]
        return {"userInput": user_input or "", "toolCalls": tool_calls, "finalResponse": content}

    async def _finish(self, act: Activation, content: str) -> Optional[Session]:
        """
        验证最终回复

        Returns:
            完成后的 Session；需要带反馈重试时返回 None
        """
        session = act.session
        session.messages.append(Message(role="assistant", content=content))

        artifact = self._verification_input(session.messages, content)
        goal = f"Fulfill user request: {artifact['userInput']}"
        verification = await self.verifier.verify(artifact, goal, "orchestrator", act.context.provider)

        await self.gateway.log_event(session.id, EventType.VERIFICATION, {
            "goal": goal,
            "achieved": verification.achieved,
            "confidence": verification.confidence,
            "issues": verification.issues,
            "user_input": artifact["userInput"],
            "response_preview": content[:200],
        })

        state = act.context.tool_state
        retries = state.get("verification_retries", 0)
        failed = not verification.achieved and verification.confidence < self.config.verification_threshold
        if failed and retries < self.config.max_verification_retries:
            feedback = FEEDBACK_TEMPLATE.format(issues=", ".join(verification.issues))
            state["verification_retries"] = retries + 1
            logger.info(
                "Verification failed for session %s (confidence %.2f), retry %d/%d",
                session.id, verification.confidence, retries + 1, self.config.max_verification_retries,
            )
            await self.gateway.log_event(session.id, EventType.RETRY, {
                "reason": "Verification failed",
                "attempt": retries + 1,
                "confidence": verification.confidence,
                "issues": verification.issues,
                "retry_message": feedback,
            })
            session.messages.append(Message(role="system", content=feedback))
            await self._checkpoint(act)
            return None

        if failed:
            logger.warning(
                "Session %s completing after %d verification retries without passing",
                session.id, retries,
            )
        return await self._complete(act, content, verification)

    async def _complete(self, act: Activation, content: str, verification: VerificationResult) -> Session:
        act.session.tool_state = act.context.tool_state
        await self.gateway.log_event(act.session.id, EventType.STATUS_UPDATE, {
            "from": SessionStatus.RUNNING.value,
            "to": SessionStatus.COMPLETED.value,
            "message": "Orchestration completed successfully",
            "verification": verification.to_dict(),
        })
        session = await self.gateway.complete_session(act.session, content, verification)
        logger.info("Session %s completed after %d activations", session.id, session.execution_count)
        return session
