"""
Agent 工具 - 创建任意人设、专长或视角的 Agent

Agent 是临时的，需要跨会话的连续性时使用记忆工具。
"""
import json
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from pydantic import Field

from core.types import utcnow
from .base import ToolArgs, ToolContext, ToolDefinition

logger = logging.getLogger(__name__)

PERSONA_PROMPT = """You are creating an agent persona. Expand the specification into a rich, detailed persona that includes:
- Background and experience
- Personality traits
- Areas of expertise
- Communication style
- Biases and perspectives
- How they approach problems

Return a detailed persona description."""


class AgentProfile(ToolArgs):
    """工具之间传递的 Agent（createAgent 的返回值）"""
    id: Optional[str] = None
    name: Optional[str] = None
    specification: Optional[str] = None
    persona: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or self.id or "Agent"

    @property
    def description(self) -> str:
        return self.persona or self.specification or ""


class CreateAgentArgs(ToolArgs):
    specification: str = Field(
        description="Natural language description of who this agent is, what they know, and how they think"
    )
    name: Optional[str] = Field(default=None, description="Optional name for the agent")


class CreateMultipleAgentsArgs(ToolArgs):
    count: int = Field(ge=1, le=50, description="How many agents to create")
    populationDescription: str = Field(description="Description of the population to create")
    variations: Optional[List[str]] = Field(default=None, description="Optional specific variations to ensure")


def new_agent_id() -> str:
    return f"agent_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


async def create_agent(args: CreateAgentArgs, ctx: ToolContext) -> Dict[str, Any]:
    persona = await ctx.ask(PERSONA_PROMPT, f"Create a detailed persona for: {args.specification}")
    return {
        "id": new_agent_id(),
        "name": args.name,
        "specification": args.specification,
        "persona": persona,
        "created": utcnow().isoformat(),
    }


def _parse_specifications(text: str, args: CreateMultipleAgentsArgs) -> List[str]:
    try:
        specs = json.loads(text or "[]")
        if not isinstance(specs, list) or not specs:
            raise ValueError("expected a non-empty JSON array")
        return [s if isinstance(s, str) else json.dumps(s, ensure_ascii=False) for s in specs][:args.count]
    except ValueError:
        logger.info("Population specifications were not a JSON array, using numbered individuals")
        return [
            f"{args.populationDescription} - Individual {i + 1} of {args.count}"
            for i in range(args.count)
        ]


async def create_multiple_agents(args: CreateMultipleAgentsArgs, ctx: ToolContext) -> Dict[str, Any]:
    variation = f"\nEnsure variation in: {', '.join(args.variations)}" if args.variations else ""
    text = await ctx.ask(
        f"You are creating a diverse population of agents. Generate {args.count} unique agent "
        f"specifications based on the population description.\n\n"
        f"Each agent should be distinct and represent different perspectives within the population."
        f"{variation}\n\nReturn a JSON array of specifications.",
        f"Create {args.count} diverse agents for: {args.populationDescription}",
    )

    agents = []
    for spec in _parse_specifications(text, args):
        agents.append(await ctx.invoke("createAgent", {"specification": spec}))

    return {
        "agents": agents,
        "count": len(agents),
        "populationDescription": args.populationDescription,
        "variations": args.variations,
    }


AGENT_TOOLS = [
    ToolDefinition(
        name="createAgent",
        description=(
            "Create an agent with any persona, expertise, or perspective. "
            "The agent can think, respond, and participate in interactions."
        ),
        args_model=CreateAgentArgs,
        executor=create_agent,
        verification_type="agent",
    ),
    ToolDefinition(
        name="createMultipleAgents",
        description="Create multiple agents at once, useful for simulations or diverse panels",
        args_model=CreateMultipleAgentsArgs,
        executor=create_multiple_agents,
        verification_type="agent",
    ),
]
