"""
scheduler.py - 轮询调度器

职责：
- 为页面观察器提供固定节奏的周期回调
- LoopPollScheduler：基于 asyncio 事件循环的真实计时器
- VirtualClock：手动推进的虚拟时钟（测试用，确定性驱动）

所有回调都是同步函数，在所属上下文的单线程内依次执行。
"""

import asyncio
import heapq
import itertools
from typing import Callable, List, Optional, Tuple


class PollHandle:
    """周期任务句柄"""

    def __init__(self):
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class PollScheduler:
    """轮询调度器接口"""

    def now(self) -> float:
        raise NotImplementedError

    def call_every(self, interval: float, callback: Callable[[], None]) -> PollHandle:
        raise NotImplementedError


# ================= 事件循环实现 =================

class _LoopPollHandle(PollHandle):

    def __init__(self):
        super().__init__()
        self.timer: Optional[asyncio.TimerHandle] = None

    def cancel(self):
        super().cancel()
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class LoopPollScheduler(PollScheduler):
    """基于 loop.call_later 的调度器"""

    def __init__(self, loop: asyncio.AbstractEventLoop = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def call_every(self, interval: float, callback: Callable[[], None]) -> PollHandle:
        handle = _LoopPollHandle()

        def fire():
            if handle.cancelled:
                return
            # 先排下一次，回调内部可以随时 cancel
            handle.timer = self.loop.call_later(interval, fire)
            callback()

        handle.timer = self.loop.call_later(interval, fire)
        return handle


# ================= 虚拟时钟 =================

class VirtualClock(PollScheduler):
    """
    虚拟时钟

    advance() 按时间顺序触发到期回调，同一时刻按注册顺序执行。
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._seq = itertools.count()
        self._timers: List[Tuple[float, int, float, PollHandle, Callable[[], None]]] = []

    def now(self) -> float:
        return self._now

    def call_every(self, interval: float, callback: Callable[[], None]) -> PollHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = PollHandle()
        heapq.heappush(self._timers, (self._now + interval, next(self._seq), interval, handle, callback))
        return handle

    @property
    def active_timers(self) -> int:
        return sum(1 for timer in self._timers if not timer[3].cancelled)

    def advance(self, seconds: float):
        """推进时间并触发期间所有到期回调"""
        target = self._now + seconds

        while self._timers and self._timers[0][0] <= target + 1e-9:
            due, _, interval, handle, callback = heapq.heappop(self._timers)
            if handle.cancelled:
                continue
            self._now = due
            heapq.heappush(self._timers, (due + interval, next(self._seq), interval, handle, callback))
            callback()

        self._now = target

    def advance_to(self, timestamp: float):
        if timestamp > self._now:
            self.advance(timestamp - self._now)
