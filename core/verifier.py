"""
验证器 - 让LLM判断一个产出是否达成了既定目标
"""
import json
import logging
import re
from typing import Any, Optional

from .types import VerificationResult

logger = logging.getLogger(__name__)

VERIFIER_SYSTEM_PROMPT = """You are a verification system. Your job is to determine if the output successfully achieves the stated goal.

Be thorough but fair. Look for:
1. Direct achievement of the goal
2. Completeness and accuracy
3. Any errors or omissions
4. Quality of the output

Return only a JSON object with:
{
  "goalAchieved": true/false,
  "confidence": 0.0-1.0,
  "issues": ["issue1", "issue2"] or [],
  "suggestions": ["suggestion1", "suggestion2"] or []
}"""

RUBRICS = {
    "agent": """Verify this agent creation:
- Does the agent match the requested specification?
- Is the persona rich and detailed enough?
- Would this agent be useful for the intended purpose?""",
    "analysis": """Verify this analysis:
- Does it cover all requested focus areas?
- Are the insights meaningful and data-driven?
- Is the analysis comprehensive and well-structured?""",
    "consensus": """Verify this consensus finding:
- Are agreements and disagreements clearly identified?
- Is the threshold properly applied?
- Are nuanced positions captured?""",
    "discussion": """Verify this discussion:
- Did all agents participate meaningfully?
- Is the discussion on-topic and productive?
- Does the style match what was requested?""",
    "response": """Verify these responses:
- Did all agents respond to the prompt?
- Are responses authentic to each agent's persona?
- Is the requested structure followed (if any)?""",
    "validation": """Verify this validation:
- Are all aspects thoroughly checked?
- Are issues clearly identified?
- Is the validation report comprehensive?""",
    "orchestrator": """Verify this orchestrator response:
- Was the user's intent understood correctly?
- Were appropriate tools used effectively?
- Does the response fully satisfy the request?
- Are there any signs of hallucination or error?""",
}

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def build_prompt(artifact: Any, goal: str, result_type: str) -> str:
    """按结果类型构建验证提示词"""
    rubric = RUBRICS.get(result_type, "Verify this output achieves its goal.")
    rendered = json.dumps(artifact, indent=2, ensure_ascii=False, default=str)
    return f"Goal: {goal}\n\nResult to verify:\n{rendered}\n\n{rubric}"


def parse_verdict(text: Optional[str]) -> VerificationResult:
    """
    解析LLM返回的结论

    格式错误的结论视为 achieved=False, confidence=0，不向上抛出解析异常。
    """
    candidate = (text or "").strip()
    fenced = _FENCE_RE.search(candidate)
    if fenced:
        candidate = fenced.group(1).strip()
    elif "{" in candidate:
        candidate = candidate[candidate.find("{"):candidate.rfind("}") + 1]

    try:
        data = json.loads(candidate)
        if not isinstance(data, dict):
            raise ValueError("verdict is not an object")
        achieved = data.get("goalAchieved", data.get("achieved"))
        confidence = float(data.get("confidence", 0))
        if not isinstance(achieved, bool):
            raise ValueError("goalAchieved missing or not a boolean")
    except (TypeError, ValueError) as e:
        logger.warning("Malformed verification verdict: %s", e)
        return VerificationResult(
            achieved=False,
            confidence=0.0,
            issues=["Verification response could not be parsed"],
            suggestions=["Ensure verification returns valid JSON"],
        )

    return VerificationResult(
        achieved=achieved,
        confidence=min(1.0, max(0.0, confidence)),
        issues=[str(i) for i in data.get("issues") or []],
        suggestions=[str(s) for s in data.get("suggestions") or []],
    )


class Verifier:
    """LLM 验证器"""

    def __init__(self, llm, provider: Optional[str] = None):
        self.llm = llm
        self.provider = provider

    async def verify(
        self,
        artifact: Any,
        goal: str,
        result_type: str,
        provider: Optional[str] = None,
    ) -> VerificationResult:
        prompt = build_prompt(artifact, goal, result_type)
        text = await self.llm.ask(VERIFIER_SYSTEM_PROMPT, prompt, provider or self.provider)
        verdict = parse_verdict(text)
        logger.debug(
            "Verification type=%s achieved=%s confidence=%.2f",
            result_type, verdict.achieved, verdict.confidence,
        )
        return verdict
