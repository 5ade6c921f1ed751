"""
运行时 (Runtime)

- 时钟与频率控制 (clock)
- 协作式取消 (cancellation)
- 节点 (node) 与执行器 (executor)，按需从子模块导入
"""

from robocore.runtime.clock import Clock, ManualClock, Rate, Tick
from robocore.runtime.cancellation import CancellationToken, wait_cancellable

__all__ = [
    "Clock",
    "ManualClock",
    "Rate",
    "Tick",
    "CancellationToken",
    "wait_cancellable",
]
