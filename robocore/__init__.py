"""
robocore - 机器人节点运行时

进程内的发布/订阅、请求/响应与长时 Action 通信，以及节点生命周期调度。

组件（自底向上）：
- 运行时 (runtime): 时钟、取消令牌、节点与执行器
- 中间件 (middleware): 消息总线、服务、Action
- 系统服务 (system.services): 日志、配置中心、参数服务器、系统监控

快速开始：
    from robocore import RoboCore, BaseNode

    class Talker(BaseNode):
        async def on_start(self, context):
            await super().on_start(context)
            self.pub = context.create_publisher("/chatter", str)

        async def on_update(self, tick):
            await self.pub.publish(f"hello {tick.index}")

    system = RoboCore("configs/system.yaml")
    await system.add_node(Talker(), rate_hz=10)
    report = await system.run(duration=5)

CLI使用：
    robocore start -c configs/system.yaml
"""

__version__ = "0.1.0"
__author__ = "robocore Team"

from robocore.core import RoboCore
from robocore.runtime.node import BaseNode, NodeContext, NodeState
from robocore.runtime.executor import Executor, ShutdownReport

__all__ = [
    "RoboCore",
    "BaseNode",
    "NodeContext",
    "NodeState",
    "Executor",
    "ShutdownReport",
    "__version__",
]
