"""
测试公共设施 - 脚本化LLM、可控时钟与内存运行时
"""
import inspect
import json
import uuid
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from config_loader import get_default_config
from core.runtime import build_runtime
from core.types import LLMResponse, ToolCall, Usage
from core.verifier import VERIFIER_SYSTEM_PROMPT

PASS_VERDICT = json.dumps({"goalAchieved": True, "confidence": 0.9, "issues": [], "suggestions": []})


def fail_verdict(*issues: str, confidence: float = 0.2) -> str:
    return json.dumps({
        "goalAchieved": False,
        "confidence": confidence,
        "issues": list(issues),
        "suggestions": [],
    })


def text(content: str, tokens: int = 0) -> LLMResponse:
    return LLMResponse(content=content, usage=Usage(tokens, 0) if tokens else None)


def calls(*items, content: Optional[str] = None) -> LLMResponse:
    """calls(("createAgent", {...}), ...) 构造工具调用响应"""
    return LLMResponse(
        content=content,
        tool_calls=[
            ToolCall(id=f"call_{uuid.uuid4().hex[:8]}", name=name, arguments=args)
            for name, args in items
        ],
    )


ScriptItem = Union[LLMResponse, Exception, Callable[[List[Any]], LLMResponse]]


class ScriptedLLM:
    """
    按脚本返回的LLM

    complete() 依次返回 responses；ask() 对验证请求返回 verdicts（耗尽后返回通过），
    其他请求返回 answers（耗尽后返回 default_answer）。
    """

    def __init__(
        self,
        responses: Optional[List[ScriptItem]] = None,
        verdicts: Optional[List[str]] = None,
        answers: Optional[List[str]] = None,
        default_answer: str = "A thoughtful answer.",
    ):
        self.responses = list(responses or [])
        self.verdicts = list(verdicts or [])
        self.answers = list(answers or [])
        self.default_answer = default_answer
        self.complete_calls: List[Dict[str, Any]] = []
        self.ask_calls: List[Dict[str, Any]] = []

    async def complete(self, messages, tools=None, provider=None) -> LLMResponse:
        self.complete_calls.append({
            "messages": list(messages),
            "tools": list(tools or []),
            "provider": provider,
        })
        if not self.responses:
            raise AssertionError("Unexpected LLM call")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            item = item(messages)
            if inspect.isawaitable(item):
                item = await item
        return item

    async def ask(self, system: str, prompt: str, provider: Optional[str] = None) -> str:
        self.ask_calls.append({"system": system, "prompt": prompt, "provider": provider})
        if system == VERIFIER_SYSTEM_PROMPT:
            return self.verdicts.pop(0) if self.verdicts else PASS_VERDICT
        return self.answers.pop(0) if self.answers else self.default_answer

    @property
    def verification_prompts(self) -> List[str]:
        return [c["prompt"] for c in self.ask_calls if c["system"] == VERIFIER_SYSTEM_PROMPT]


class FakeClock:
    """可手动推进的单调时钟"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def memory_config(**orchestrator) -> Dict[str, Any]:
    config = get_default_config()
    config['storage']['backend'] = 'memory'
    config['queue']['backend'] = 'memory'
    config['orchestrator'].update(orchestrator)
    return config


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_runtime(clock):
    """构建使用内存存储、内存队列与脚本化LLM的运行时"""

    def factory(llm: ScriptedLLM, config: Optional[Dict[str, Any]] = None, transport=None):
        return build_runtime(config or memory_config(), llm=llm, transport=transport, clock=clock)

    return factory


async def run_until_idle(runtime, max_messages: int = 20):
    """消费队列直到为空，返回最后处理的 Session"""
    session = None
    for _ in range(max_messages):
        if runtime.queue.pending() == 0:
            break
        session = await runtime.worker.run_once(timeout=0)
    return session
