"""
测试用例 - 内置工具
"""
import json

import pytest

from conftest import ScriptedLLM, fail_verdict
from core.errors import OrchestrationError, ToolArgumentError
from memory.manager import MemoryManager
from store.base import TranscriptMessage
from store.in_memory import InMemoryTranscriptStore
from tools.base import ToolContext, ToolRegistry
from tools.builtin import BUILTIN_TOOLS, register_builtin_tools
from tools.thread_search import excerpt

EXPERT = {"id": "agent_1", "name": "Dana", "specification": "security expert", "persona": "Careful and precise"}
NOVICE = {"id": "agent_2", "name": "Sam", "specification": "new user", "persona": "Curious"}


class TestBuiltinTools:
    """测试内置工具"""

    def setup_method(self):
        self.llm = ScriptedLLM()
        self.registry = register_builtin_tools(ToolRegistry())
        self.memory = MemoryManager()
        self.transcripts = InMemoryTranscriptStore()
        self.ctx = ToolContext(
            session_id="s1", user_id="u1", llm=self.llm, registry=self.registry,
            memory=self.memory, transcripts=self.transcripts,
        )

    async def call(self, name, /, **arguments):
        return await self.registry.dispatch(name, arguments, self.ctx)

    def test_catalog(self):
        names = [t.name for t in BUILTIN_TOOLS]
        assert names == [
            "createAgent", "createMultipleAgents",
            "runDiscussion", "gatherIndependentResponses", "conductInterview",
            "analyzeResponses", "findConsensus", "validateResults",
            "giveAgentMemory", "saveAgentMemory", "searchMemories", "listMemoryStreams", "forgetMemory",
            "searchThreadHistory", "getThreadSummary",
        ]
        for schema in self.registry.get_all_schemas():
            assert schema.parameters["type"] == "object"

    @pytest.mark.asyncio
    async def test_create_agent(self):
        self.llm.answers.append("A seasoned penetration tester")
        agent = await self.call("createAgent", specification="a cybersecurity expert", name="Dana")

        assert agent["id"].startswith("agent_")
        assert agent["persona"] == "A seasoned penetration tester"
        assert agent["name"] == "Dana"
        assert "a cybersecurity expert" in self.llm.ask_calls[0]["prompt"]

    @pytest.mark.asyncio
    async def test_create_multiple_agents_nests_create_agent(self):
        self.llm.answers.append(json.dumps(["young renter", "retired homeowner"]))
        result = await self.call("createMultipleAgents", count=2, populationDescription="city residents")

        assert result["count"] == 2
        assert [a["specification"] for a in result["agents"]] == ["young renter", "retired homeowner"]
        assert len({a["id"] for a in result["agents"]}) == 2

    @pytest.mark.asyncio
    async def test_create_multiple_agents_fallback(self):
        self.llm.answers.append("Sure! Here are some ideas...")
        result = await self.call("createMultipleAgents", count=3, populationDescription="voters")

        assert result["agents"][2]["specification"] == "voters - Individual 3 of 3"

    @pytest.mark.asyncio
    async def test_count_bounds_validated(self):
        with pytest.raises(ToolArgumentError):
            await self.call("createMultipleAgents", count=0, populationDescription="x")

    @pytest.mark.asyncio
    async def test_run_discussion(self):
        result = await self.call("runDiscussion", agents=[EXPERT, NOVICE], topic="passwords", rounds=2)

        assert result["style"] == "collaborative"
        assert [d["agent"] for d in result["discussion"]] == ["Dana", "Sam", "Dana", "Sam"]
        assert [d["round"] for d in result["discussion"]] == [1, 1, 2, 2]
        # 后发言者能看到前面的发言
        assert "Dana: A thoughtful answer." in self.llm.ask_calls[1]["prompt"]

    @pytest.mark.asyncio
    async def test_gather_independent_responses(self):
        result = await self.call(
            "gatherIndependentResponses", agents=[EXPERT, NOVICE], prompt="Thoughts?", structured=True,
        )

        assert result["participantCount"] == 2
        assert {r["agentId"] for r in result["responses"]} == {"agent_1", "agent_2"}
        assert all("structured analysis" in c["system"] for c in self.llm.ask_calls)

    @pytest.mark.asyncio
    async def test_conduct_interview(self):
        result = await self.call(
            "conductInterview", interviewer=EXPERT, interviewee=NOVICE, topic="habits", depth=1,
        )

        assert [t["type"] for t in result["transcript"]] == ["question", "answer", "follow-up", "answer"]
        assert result["questionCount"] == 2

    @pytest.mark.asyncio
    async def test_analyze_responses_revises_on_low_confidence(self):
        self.llm.verdicts.append(fail_verdict("no sentiment section", confidence=0.3))
        self.llm.answers.extend(["Mostly positive", "Revised: positive, with concerns about cost"])

        result = await self.call("analyzeResponses", responses=["good", "too expensive"])

        assert result["analysis"]["summary"] == "Mostly positive"
        assert result["analysis"]["revised"].startswith("Revised")
        assert result["analysis"]["retryReason"] == ["no sentiment section"]
        assert result["metadata"]["verification"]["achieved"] is False

    @pytest.mark.asyncio
    async def test_find_consensus_json(self):
        self.llm.answers.append('{"strongConsensus": ["use a manager"]}')
        result = await self.call("findConsensus", discussion={"participants": [EXPERT, NOVICE]})

        assert result["consensus"] == {"strongConsensus": ["use a manager"]}
        assert result["metadata"]["participantCount"] == 2
        assert result["metadata"]["threshold"] == 0.7

    @pytest.mark.asyncio
    async def test_validate_results_with_agents(self):
        result = await self.call("validateResults", results={"score": 3}, withAgents=[EXPERT])

        assert result["metadata"]["agentValidators"] == 1
        assert "Agent validations" in self.llm.ask_calls[-1]["prompt"]

    @pytest.mark.asyncio
    async def test_memory_lifecycle(self):
        await self.call("saveAgentMemory", memoryKey="dana-project", content="Prefers hardware keys")
        await self.call("saveAgentMemory", memoryKey="sam-project", content="Reuses passwords")

        found = await self.call("searchMemories", query="hardware keys")
        assert found["count"] == 1
        assert found["results"][0]["memoryKey"] == "dana-project"

        streams = await self.call("listMemoryStreams", pattern="dana")
        assert [s["memory_key"] for s in streams["streams"]] == ["dana-project"]

        self.llm.answers.append("Dana likes hardware keys")
        agent = await self.call("giveAgentMemory", agent=EXPERT, memoryKey="dana-project", scope="recent")
        assert agent["hasMemory"] is True
        assert agent["name"] == "Dana"
        assert agent["memoryContext"]["summary"] == "Dana likes hardware keys"
        assert len(agent["memoryContext"]["memories"]) == 1

        forgotten = await self.call("forgetMemory", memoryKey="dana-project")
        assert forgotten["deletedCount"] == 1
        assert (await self.call("listMemoryStreams"))["count"] == 1

    @pytest.mark.asyncio
    async def test_memory_tools_need_store(self):
        self.ctx.memory = None
        with pytest.raises(OrchestrationError):
            await self.call("listMemoryStreams")

    @pytest.mark.asyncio
    async def test_thread_search(self):
        thread = await self.transcripts.create_thread("u1", "Passwords", {"created_from": "orchestrator"})
        await self.transcripts.append(thread.id, [
            TranscriptMessage(thread_id=thread.id, user_id="u1", role="user", content="Which password manager?"),
            TranscriptMessage(thread_id=thread.id, user_id="u1", role="assistant", content="Try a password manager with 2FA"),
        ])
        self.ctx.tool_state["thread_id"] = thread.id

        result = await self.call("searchThreadHistory", query="password manager", messageRole="assistant")
        assert result["resultCount"] == 1
        assert result["messages"][0]["role"] == "assistant"

        summary = await self.call("getThreadSummary")
        assert summary["totalMessages"] == 2
        assert summary["userMessages"] == 1
        assert summary["title"] == "Passwords"

    @pytest.mark.asyncio
    async def test_thread_search_without_thread(self):
        with pytest.raises(OrchestrationError, match="Conversation thread not found"):
            await self.call("searchThreadHistory", query="x")


class TestExcerpt:

    def test_context_window(self):
        content = "a" * 300 + "needle" + "b" * 300
        text = excerpt(content, "NEEDLE")
        assert text == "..." + "a" * 100 + "needle" + "b" * 100 + "..."

    def test_no_match(self):
        assert excerpt("short", "zzz") == "short"
