"""
交互工具 - 讨论、独立回答与访谈
"""
import asyncio
from typing import Any, Dict, List

from pydantic import Field

from core.types import utcnow
from .agent import AgentProfile
from .base import ToolArgs, ToolContext, ToolDefinition


class RunDiscussionArgs(ToolArgs):
    agents: List[AgentProfile] = Field(min_length=1, description="Array of agents who will participate")
    topic: str = Field(description="What they should discuss")
    style: str = Field(
        default="collaborative",
        description="Discussion style (debate, brainstorm, analysis, negotiation)",
    )
    rounds: int = Field(default=3, ge=1, le=10, description="How many rounds of discussion")


class GatherResponsesArgs(ToolArgs):
    agents: List[AgentProfile] = Field(min_length=1, description="Array of agents to respond")
    prompt: str = Field(description="What each agent should respond to")
    structured: bool = Field(default=False, description="Whether to ask for structured responses")


class ConductInterviewArgs(ToolArgs):
    interviewer: AgentProfile = Field(description="Agent conducting the interview")
    interviewee: AgentProfile = Field(description="Agent being interviewed")
    topic: str = Field(description="Interview topic")
    depth: int = Field(default=3, ge=0, le=10, description="How many follow-up questions")


def _transcript(lines: List[str]) -> str:
    return "\n".join(lines) if lines else "(nothing has been said yet)"


async def run_discussion(args: RunDiscussionArgs, ctx: ToolContext) -> Dict[str, Any]:
    roster = "\n".join(
        f"{i + 1}. {agent.label}: {agent.description}" for i, agent in enumerate(args.agents)
    )
    system = (
        f"You are facilitating a {args.style} discussion about: {args.topic}\n\n"
        f"The following agents are participating:\n{roster}\n\n"
        "Generate realistic responses for each agent based on their persona.\n"
        "Make the discussion dynamic and engaging."
    )

    discussion = []
    said: List[str] = []
    for round_no in range(1, args.rounds + 1):
        for agent in args.agents:
            content = await ctx.ask(
                system,
                f"Discussion so far:\n{_transcript(said)}\n\n"
                f"What does {agent.label} say next in this {args.style} discussion?\n"
                f"Consider their persona: {agent.description}\n"
                f"This is round {round_no} of {args.rounds}.",
            )
            discussion.append({
                "agent": agent.label,
                "content": content,
                "round": round_no,
                "timestamp": utcnow().isoformat(),
            })
            said.append(f"{agent.label}: {content}")

    return {
        "topic": args.topic,
        "style": args.style,
        "participants": [{"id": a.id, "name": a.name} for a in args.agents],
        "discussion": discussion,
        "rounds": args.rounds,
        "completedAt": utcnow().isoformat(),
    }


async def gather_independent_responses(args: GatherResponsesArgs, ctx: ToolContext) -> Dict[str, Any]:
    async def respond(agent: AgentProfile) -> Dict[str, Any]:
        if args.structured:
            system = (
                f"You are {agent.label} with persona: {agent.description}\n"
                "Respond to the prompt with a structured analysis including:\n"
                "- Initial reaction\n- Key points\n- Concerns or risks\n- Recommendation"
            )
        else:
            system = (
                f"You are {agent.label} with persona: {agent.description}\n"
                "Respond naturally and authentically to the prompt."
            )
        response = await ctx.ask(system, args.prompt)
        return {
            "agent": agent.label,
            "agentId": agent.id,
            "response": response,
            "timestamp": utcnow().isoformat(),
        }

    # 各 Agent 互不可见，并发收集
    responses = await asyncio.gather(*(respond(agent) for agent in args.agents))

    return {
        "prompt": args.prompt,
        "structured": args.structured,
        "participantCount": len(args.agents),
        "responses": list(responses),
        "gatheredAt": utcnow().isoformat(),
    }


async def conduct_interview(args: ConductInterviewArgs, ctx: ToolContext) -> Dict[str, Any]:
    interviewer, interviewee = args.interviewer, args.interviewee
    system = (
        "You are conducting an interview between:\n"
        f"Interviewer: {interviewer.label} - {interviewer.description}\n"
        f"Interviewee: {interviewee.label} - {interviewee.description}\n\n"
        f"Topic: {args.topic}\n\n"
        "Generate realistic questions and answers based on their personas."
    )
    interview: List[Dict[str, Any]] = []
    said: List[str] = []

    def record(speaker: AgentProfile, kind: str, content: str, prefix: str) -> None:
        interview.append({
            "speaker": speaker.label,
            "type": kind,
            "content": content,
            "timestamp": utcnow().isoformat(),
        })
        said.append(f"{prefix}: {content}")

    question = await ctx.ask(system, f"What question does {interviewer.label} ask about {args.topic}?")
    record(interviewer, "question", question, "Interviewer")

    for i in range(args.depth + 1):
        answer = await ctx.ask(
            system,
            f"Interview so far:\n{_transcript(said)}\n\n"
            f"How does {interviewee.label} respond to this question?",
        )
        record(interviewee, "answer", answer, "Interviewee")

        if i < args.depth:
            follow_up = await ctx.ask(
                system,
                f"Interview so far:\n{_transcript(said)}\n\n"
                f"Based on that answer, what follow-up question does {interviewer.label} ask?",
            )
            record(interviewer, "follow-up", follow_up, "Interviewer")

    return {
        "topic": args.topic,
        "interviewer": {"id": interviewer.id, "name": interviewer.name},
        "interviewee": {"id": interviewee.id, "name": interviewee.name},
        "transcript": interview,
        "questionCount": sum(1 for item in interview if item["type"] != "answer"),
        "completedAt": utcnow().isoformat(),
    }


INTERACTION_TOOLS = [
    ToolDefinition(
        name="runDiscussion",
        description=(
            "Have agents discuss a topic together. "
            "They take turns speaking and can respond to each other."
        ),
        args_model=RunDiscussionArgs,
        executor=run_discussion,
        verification_type="discussion",
    ),
    ToolDefinition(
        name="gatherIndependentResponses",
        description="Get responses from many agents independently (they don't see each other's responses)",
        args_model=GatherResponsesArgs,
        executor=gather_independent_responses,
        verification_type="response",
    ),
    ToolDefinition(
        name="conductInterview",
        description="Have one agent interview another with follow-up questions",
        args_model=ConductInterviewArgs,
        executor=conduct_interview,
        verification_type="response",
    ),
]
