"""
工具基类 - 工具定义、注册表与执行上下文
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

from core.errors import ToolArgumentError, ToolDepthExceededError, ToolNotFoundError
from core.types import ToolSchema

logger = logging.getLogger(__name__)

ToolExecutorFn = Callable[[Any, "ToolContext"], Awaitable[Any]]


class ToolArgs(BaseModel):
    """工具参数模型基类"""

    model_config = {"extra": "allow"}


@dataclass(frozen=True)
class ToolDefinition:
    """
    工具定义，进程启动时注册一次，之后不可变

    args_model 为该工具的 pydantic 参数模型，参数在注册表边界校验；
    verification_type 决定成功结果使用的验证评分标准。
    """
    name: str
    description: str
    args_model: Type[BaseModel]
    executor: ToolExecutorFn
    verification_type: str = "agent"

    @property
    def parameter_schema(self) -> Dict[str, Any]:
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        for prop in schema.get("properties", {}).values():
            prop.pop("title", None)
        schema.setdefault("properties", {})
        return schema

    def to_schema(self) -> ToolSchema:
        return ToolSchema(
            name=self.name,
            description=self.description,
            parameters=self.parameter_schema,
        )


class ToolRegistry:
    """工具注册表 - 纯查找/分发，无状态"""

    def __init__(self):
        self._tools: Dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def require(self, name: str) -> ToolDefinition:
        tool = self._tools.get(name)
        if not tool:
            raise ToolNotFoundError(name)
        return tool

    def get_all(self) -> List[ToolDefinition]:
        return list(self._tools.values())

    def get_all_schemas(self) -> List[ToolSchema]:
        return [tool.to_schema() for tool in self._tools.values()]

    def validate(self, name: str, arguments: Dict[str, Any]) -> BaseModel:
        """按工具的参数模型校验LLM给出的参数"""
        tool = self.require(name)
        try:
            return tool.args_model.model_validate(arguments or {})
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in e.errors()
            )
            raise ToolArgumentError(f"Invalid arguments for {name}: {problems}") from e

    async def dispatch(self, name: str, arguments: Dict[str, Any], context: "ToolContext") -> Any:
        """校验参数并执行本地工具"""
        tool = self.require(name)
        args = self.validate(name, arguments)
        return await tool.executor(args, context)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


@dataclass
class ToolContext:
    """
    工具执行上下文

    每次激活由编排循环构建一次，显式传给每个工具和嵌套工具调用；
    depth 记录嵌套深度，超过 max_depth 的调用会被拒绝。
    """
    session_id: str
    user_id: str
    llm: Any
    registry: ToolRegistry
    tool_state: Dict[str, Any] = field(default_factory=dict)
    catalog: List[ToolSchema] = field(default_factory=list)
    provider: Optional[str] = None
    memory: Any = None
    transcripts: Any = None
    depth: int = 0
    max_depth: int = 3

    @property
    def thread_id(self) -> Optional[str]:
        return self.tool_state.get("thread_id")

    def child(self) -> "ToolContext":
        return ToolContext(
            session_id=self.session_id,
            user_id=self.user_id,
            llm=self.llm,
            registry=self.registry,
            tool_state=self.tool_state,
            catalog=self.catalog,
            provider=self.provider,
            memory=self.memory,
            transcripts=self.transcripts,
            depth=self.depth + 1,
            max_depth=self.max_depth,
        )

    async def invoke(self, name: str, arguments: Dict[str, Any]) -> Any:
        """从工具内部调用另一个本地工具"""
        nested = self.child()
        if nested.depth > self.max_depth:
            raise ToolDepthExceededError(name, self.max_depth)
        logger.debug("Nested tool call %s at depth %d", name, nested.depth)
        return await self.registry.dispatch(name, arguments, nested)

    async def ask(self, system: str, prompt: str) -> str:
        return await self.llm.ask(system, prompt, self.provider)
