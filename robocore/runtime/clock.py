"""
时钟与频率控制

- Clock: 单调时间 + 墙上时间 + 异步睡眠
- Rate: 固定频率定时器，按绝对截止时间推进，避免累计漂移
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from robocore.runtime.cancellation import CancellationToken


class Clock:
    """
    系统时钟

    now() 返回单调秒数，用于消息时间戳与调度；
    wall_time() 返回 UTC 墙上时间，仅用于展示。
    """

    def now(self) -> float:
        """单调时间（秒）"""
        return time.monotonic()

    def wall_time(self) -> datetime:
        """墙上时间（UTC）"""
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        """异步睡眠"""
        await asyncio.sleep(max(0.0, seconds))


class ManualClock(Clock):
    """
    手动推进的时钟

    用于测试时间戳与超时逻辑；sleep() 只让出事件循环，不真正等待。
    """

    def __init__(self, start: float = 0.0):
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        """推进时间并返回新的时间"""
        self._now += seconds
        return self._now

    async def sleep(self, seconds: float) -> None:
        self._now += max(0.0, seconds)
        await asyncio.sleep(0)


@dataclass(frozen=True)
class Tick:
    """一次周期回调的上下文"""
    index: int            # 从 1 开始的回调序号
    stamp: float          # 本次回调的单调时间
    dt: float             # 距上次回调的时间（首次为周期）
    overrun: bool = False  # 上个周期是否超时


class Rate:
    """
    频率定时器

    用法:
        rate = Rate(10.0)
        while running:
            do_work()
            await rate.sleep(token)
    """

    def __init__(self, frequency: float, clock: Optional[Clock] = None):
        """
        Args:
            frequency: 频率（Hz），必须为正数
            clock: 时钟，默认系统时钟
        """
        if frequency <= 0:
            raise ValueError(f"频率必须为正数: {frequency}")
        self.clock = clock or Clock()
        self._period = 1.0 / frequency
        self._next_deadline: Optional[float] = None
        self._last_stamp: Optional[float] = None
        self._index = 0
        self._overruns = 0

    @classmethod
    def with_period(cls, period: float, clock: Optional[Clock] = None) -> Rate:
        """按周期（秒）创建"""
        if period <= 0:
            raise ValueError(f"周期必须为正数: {period}")
        return cls(1.0 / period, clock)

    @property
    def period(self) -> float:
        return self._period

    @property
    def frequency(self) -> float:
        return 1.0 / self._period

    @property
    def overruns(self) -> int:
        """错过截止时间的次数"""
        return self._overruns

    def reset(self) -> None:
        """重置计时起点"""
        self._next_deadline = None
        self._last_stamp = None
        self._index = 0

    def tick(self) -> Tick:
        """
        生成本次回调的 Tick，并推进下一次截止时间

        如果已经落后一个以上周期，直接跳到当前时间之后的下一个周期，不补发。
        """
        now = self.clock.now()
        overrun = False
        if self._next_deadline is None:
            self._next_deadline = now + self._period
        else:
            if now - self._next_deadline > self._period:
                overrun = True
                self._overruns += 1
                missed = int((now - self._next_deadline) // self._period)
                self._next_deadline += missed * self._period
            self._next_deadline += self._period

        dt = self._period if self._last_stamp is None else now - self._last_stamp
        self._last_stamp = now
        self._index += 1
        return Tick(index=self._index, stamp=now, dt=dt, overrun=overrun)

    def remaining(self) -> float:
        """距离下一次截止时间的秒数"""
        if self._next_deadline is None:
            return 0.0
        return max(0.0, self._next_deadline - self.clock.now())

    async def sleep(self, token: Optional[CancellationToken] = None) -> bool:
        """
        睡眠到下一次截止时间

        Args:
            token: 取消令牌，触发时提前返回

        Returns:
            False 表示因取消提前返回
        """
        delay = self.remaining()
        if token is None:
            await self.clock.sleep(delay)
            return True
        return not await token.wait(timeout=delay)
