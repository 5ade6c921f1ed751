"""
示例节点

TalkerNode 按频率发布传感器读数，ListenerNode 订阅并记录最近的读数。
"""

from __future__ import annotations

from typing import List, Optional

from robocore.middleware.message_bus import Publisher
from robocore.middleware.messages import SensorDataMessage, SensorKind
from robocore.runtime.clock import Tick
from robocore.runtime.node import BaseNode, NodeContext

DEFAULT_TOPIC = "/sensors/demo"


class TalkerNode(BaseNode):
    """发布递增的标量读数"""

    def __init__(self, name: Optional[str] = None, rate_hz: Optional[float] = None):
        super().__init__(name=name, rate_hz=rate_hz)
        self.publisher: Optional[Publisher] = None
        self.sent = 0

    async def on_start(self, context: NodeContext) -> None:
        await super().on_start(context)
        topic = context.get_parameter("topic", DEFAULT_TOPIC)
        self.sensor_id = context.get_parameter("sensor_id", "demo_0")
        self.publisher = context.create_publisher(topic, SensorDataMessage)
        context.logger.info(f"发布到 {topic}")

    async def on_update(self, tick: Tick) -> None:
        await self.publisher.publish(
            SensorDataMessage(
                source=self.context.full_name,
                sensor_type="counter",
                sensor_id=self.sensor_id,
                kind=SensorKind.SCALAR,
                data=float(tick.index),
            ),
            token=self.context.token,
        )
        self.sent += 1


class ListenerNode(BaseNode):
    """订阅读数并保留最近 history 条"""

    def __init__(self, name: Optional[str] = None, history: int = 100):
        super().__init__(name=name)
        self.history = history
        self.received: List[SensorDataMessage] = []

    async def on_start(self, context: NodeContext) -> None:
        await super().on_start(context)
        topic = context.get_parameter("topic", DEFAULT_TOPIC)
        context.create_subscription(topic, SensorDataMessage, callback=self.on_reading)

    def on_reading(self, message: SensorDataMessage) -> None:
        self.received.append(message)
        if len(self.received) > self.history:
            del self.received[0]
