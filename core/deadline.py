"""
调用期限 - 每次激活的硬截止时间
"""
import time
from typing import Callable, Optional


class Deadline:
    """
    一次激活的计算预算

    remaining() 返回距离硬截止的秒数；should_yield() 在剩余时间低于安全余量时为真，
    此时编排循环需要检查点并挂起。
    """

    def __init__(
        self,
        budget_seconds: float,
        safety_margin_seconds: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._clock = clock or time.monotonic
        self.started = self._clock()
        self.budget_seconds = budget_seconds
        self.safety_margin_seconds = safety_margin_seconds

    @property
    def expires_at(self) -> float:
        return self.started + self.budget_seconds

    def elapsed(self) -> float:
        return self._clock() - self.started

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def should_yield(self) -> bool:
        return self.remaining() < self.safety_margin_seconds
