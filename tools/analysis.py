"""
分析工具 - 从 Agent 的回答中提取模式、共识与校验结论
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import Field

from core.types import utcnow
from core.verifier import Verifier
from .agent import AgentProfile
from .base import ToolArgs, ToolContext, ToolDefinition

logger = logging.getLogger(__name__)

ANALYSIS_RETRY_CONFIDENCE = 0.7


class AnalyzeResponsesArgs(ToolArgs):
    responses: List[Any] = Field(min_length=1, description="Responses to analyze")
    focusAreas: List[str] = Field(
        default_factory=lambda: ["sentiment", "key themes", "patterns"],
        description="What to look for in analysis (sentiment, demographics, key concerns, consensus)",
    )
    groupBy: Optional[str] = Field(
        default=None, description="How to group analysis (e.g., agent.demographics.age)"
    )


class FindConsensusArgs(ToolArgs):
    discussion: Any = Field(description="Discussion or responses to analyze")
    threshold: float = Field(default=0.7, ge=0, le=1, description="Agreement threshold (0-1)")


class ValidateResultsArgs(ToolArgs):
    results: Any = Field(description="Results to validate")
    expectations: Optional[str] = Field(default=None, description="What valid results should look like")
    withAgents: Optional[List[AgentProfile]] = Field(
        default=None, description="Optional agents to help validate"
    )


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def _as_json(text: str, fallback: Dict[str, Any]) -> Any:
    """LLM 返回 JSON 时直接使用，否则包装成结构化结果"""
    try:
        return json.loads(text or "")
    except ValueError:
        return fallback


async def analyze_responses(args: AnalyzeResponsesArgs, ctx: ToolContext) -> Dict[str, Any]:
    focus = args.focusAreas
    sections = "\n".join(f"{i + 2}. Analysis of {area}" for i, area in enumerate(focus))
    prompt = (
        f"Analyze these {len(args.responses)} responses:\n{_dump(args.responses)}\n\n"
        f"Focus on: {', '.join(focus)}\n"
        + (f"Group analysis by: {args.groupBy}\n" if args.groupBy else "")
        + "\nProvide a comprehensive analysis including:\n"
        "1. Overall patterns and themes\n"
        f"{sections}\n"
        + ("- Breakdown by groups\n" if args.groupBy else "")
        + "- Key insights and takeaways\n"
        "- Any outliers or notable individual responses\n\n"
        "Return a structured analysis."
    )
    system = "You are an expert analyst. Provide thorough, data-driven analysis of responses."
    text = await ctx.ask(system, prompt)
    analysis = _as_json(text, {
        "summary": text,
        "responseCount": len(args.responses),
        "focusAreas": focus,
        "timestamp": utcnow().isoformat(),
    })

    goal = f"Analyze {len(args.responses)} responses focusing on {', '.join(focus)}"
    verification = await Verifier(ctx.llm).verify(analysis, goal, "analysis", ctx.provider)
    if not verification.achieved and verification.confidence < ANALYSIS_RETRY_CONFIDENCE:
        logger.info("Analysis incomplete (confidence %.2f), requesting a revision", verification.confidence)
        revised = await ctx.ask(
            "You are an expert analyst. The previous analysis was incomplete. "
            "Please provide a more thorough analysis.",
            f"{prompt}\n\nThe previous analysis had these issues: {', '.join(verification.issues)}\n\n"
            "Please address these issues.",
        )
        if not isinstance(analysis, dict):
            analysis = {"summary": analysis}
        analysis = {**analysis, "revised": revised, "retryReason": verification.issues}

    return {
        "analysis": analysis,
        "metadata": {
            "responseCount": len(args.responses),
            "focusAreas": focus,
            "groupBy": args.groupBy,
            "verification": verification.to_dict(),
            "analyzedAt": utcnow().isoformat(),
        },
    }


def _participant_count(discussion: Any) -> Any:
    if isinstance(discussion, list):
        return len(discussion)
    if isinstance(discussion, dict) and isinstance(discussion.get("participants"), list):
        return len(discussion["participants"])
    return "unknown"


async def find_consensus(args: FindConsensusArgs, ctx: ToolContext) -> Dict[str, Any]:
    prompt = (
        "Analyze this discussion/responses to find consensus and disagreement:\n"
        f"{_dump(args.discussion)}\n\n"
        f"Agreement threshold: {args.threshold} ({args.threshold * 100:g}% agreement needed for consensus)\n\n"
        "Identify:\n"
        "1. Strong consensus points (where most/all agree)\n"
        "2. Partial consensus (where many but not all agree)\n"
        "3. Points of disagreement\n"
        "4. Nuanced positions that don't fit clear agreement/disagreement\n"
        "5. Key insights from the diversity of views\n\n"
        "Structure your response as JSON with these sections."
    )
    text = await ctx.ask(
        "You are an expert at identifying consensus and synthesizing diverse viewpoints.", prompt
    )
    consensus = _as_json(text, {
        "summary": text,
        "threshold": args.threshold,
        "analyzedAt": utcnow().isoformat(),
    })
    return {
        "consensus": consensus,
        "metadata": {
            "threshold": args.threshold,
            "participantCount": _participant_count(args.discussion),
            "analyzedAt": utcnow().isoformat(),
        },
    }


async def validate_results(args: ValidateResultsArgs, ctx: ToolContext) -> Dict[str, Any]:
    expectations = (
        f"Expected characteristics: {args.expectations}"
        if args.expectations else "Check for general validity and coherence"
    )
    prompt = (
        "Validate these results for accuracy and sensibility:\n\n"
        f"Results: {_dump(args.results)}\n\n"
        f"{expectations}\n\n"
        "Perform thorough validation:\n"
        "1. Check for internal consistency\n"
        "2. Identify any logical errors or contradictions\n"
        "3. Verify completeness\n"
        "4. Flag any suspicious or unusual patterns\n"
        "5. Assess overall quality and reliability\n\n"
        "Provide a detailed validation report."
    )

    validators = args.withAgents or []
    if validators:
        async def agent_validation(agent: AgentProfile) -> Dict[str, Any]:
            text = await ctx.ask(
                f"You are {agent.label} with expertise: {agent.specification or agent.description}. "
                "Validate these results from your perspective.",
                prompt,
            )
            return {"agent": agent.label, "validation": text}

        opinions = await asyncio.gather(*(agent_validation(a) for a in validators))
        prompt += f"\n\nAgent validations:\n{_dump(list(opinions))}"

    text = await ctx.ask("You are a thorough validation system. Be skeptical but fair.", prompt)
    validation = _as_json(text, {"report": text, "validatedAt": utcnow().isoformat()})
    return {
        "validation": validation,
        "metadata": {
            "hasExpectations": bool(args.expectations),
            "agentValidators": len(validators),
            "validatedAt": utcnow().isoformat(),
        },
    }


ANALYSIS_TOOLS = [
    ToolDefinition(
        name="analyzeResponses",
        description="Analyze patterns, sentiment, and insights from agent responses",
        args_model=AnalyzeResponsesArgs,
        executor=analyze_responses,
        verification_type="analysis",
    ),
    ToolDefinition(
        name="findConsensus",
        description="Find areas of agreement and disagreement among agents",
        args_model=FindConsensusArgs,
        executor=find_consensus,
        verification_type="consensus",
    ),
    ToolDefinition(
        name="validateResults",
        description="Validate that results make sense and are accurate",
        args_model=ValidateResultsArgs,
        executor=validate_results,
        verification_type="validation",
    ),
]
