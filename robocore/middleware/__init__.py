"""
中间件层 (Middleware Layer)

进程内通信原语：
- 消息总线 (message_bus): 类型化话题，发布/订阅，背压策略
- 消息定义 (messages): 常用机器人消息
- 服务 (services): 请求/响应，带截止时间
- Action (actions): 可取消、带反馈的长时 Goal
"""

from robocore.middleware.message_bus import (
    MessageBus,
    MessageEnvelope,
    Publisher,
    QoSPolicy,
    Subscription,
)
from robocore.middleware.services import ServiceClient, ServiceRegistry, ServiceServer
from robocore.middleware.actions import (
    ActionClient,
    ActionCoordinator,
    ActionServer,
    ClientGoalHandle,
    GoalPolicy,
    GoalResult,
    GoalState,
    ServerGoalHandle,
)

__all__ = [
    # 消息总线
    "MessageBus",
    "MessageEnvelope",
    "Publisher",
    "QoSPolicy",
    "Subscription",
    # 服务
    "ServiceClient",
    "ServiceRegistry",
    "ServiceServer",
    # Action
    "ActionClient",
    "ActionCoordinator",
    "ActionServer",
    "ClientGoalHandle",
    "GoalPolicy",
    "GoalResult",
    "GoalState",
    "ServerGoalHandle",
]
