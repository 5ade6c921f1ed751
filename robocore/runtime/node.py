"""
节点

节点是执行器调度的基本单元。任何具备 on_start / on_update / on_stop
（同步或异步，均可缺省）的对象都可以注册为节点；BaseNode 提供空实现。

节点通过 NodeContext 获取发布者、订阅、服务和 Action 句柄，
这些句柄归节点所有，节点结束时统一释放。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Type, Union, TYPE_CHECKING

from robocore.middleware.actions import (
    AcceptCallback,
    ActionClient,
    ActionServer,
    ExecuteCallback,
    GoalPolicy,
)
from robocore.middleware.message_bus import Publisher, QoSPolicy, Subscription
from robocore.middleware.services import ServiceClient, ServiceHandler, ServiceServer
from robocore.runtime.cancellation import CancellationToken
from robocore.runtime.clock import Clock, Tick
from robocore.system.services.logger import LoggerMixin, get_logger

if TYPE_CHECKING:
    from robocore.runtime.executor import Executor, NodeRecord


class NodeState(Enum):
    """节点生命周期状态"""
    UNCONFIGURED = "unconfigured"
    INACTIVE = "inactive"
    ACTIVE = "active"
    FINALIZED = "finalized"


@dataclass
class NodeStats:
    """节点统计"""
    update_count: int = 0
    callback_count: int = 0
    callback_errors: int = 0
    last_callback_ms: float = 0.0
    avg_callback_ms: float = 0.0
    messages_sent: int = 0
    messages_received: int = 0

    def record_callback(self, duration_ms: float) -> None:
        self.callback_count += 1
        self.last_callback_ms = duration_ms
        # 增量平均
        self.avg_callback_ms += (duration_ms - self.avg_callback_ms) / self.callback_count


def join_name(namespace: str, name: str) -> str:
    """拼接完整名称: ("/robot", "arm") -> "/robot/arm" """
    namespace = "/" + namespace.strip("/") if namespace.strip("/") else ""
    return f"{namespace}/{name.strip('/')}"


@dataclass
class NodeInfo:
    """节点信息"""
    node_id: str
    name: str
    namespace: str = "/"
    state: NodeState = NodeState.UNCONFIGURED
    rate_hz: Optional[float] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    error: Optional[str] = None
    stats: NodeStats = field(default_factory=NodeStats)

    @property
    def full_name(self) -> str:
        return join_name(self.namespace, self.name)


class NodeCallbacks(Protocol):
    """节点回调接口"""

    def on_start(self, context: NodeContext) -> Union[None, Awaitable[None]]: ...

    def on_update(self, tick: Tick) -> Union[None, Awaitable[None]]: ...

    def on_stop(self) -> Union[None, Awaitable[None]]: ...


class BaseNode(LoggerMixin):
    """
    节点基类

    子类按需覆盖回调；on_start 收到的 context 保存在 self.context。
    """

    name: Optional[str] = None
    rate_hz: Optional[float] = None

    def __init__(self, name: Optional[str] = None, rate_hz: Optional[float] = None):
        if name is not None:
            self.name = name
        if rate_hz is not None:
            self.rate_hz = rate_hz
        self.context: Optional[NodeContext] = None

    async def on_start(self, context: NodeContext) -> None:
        self.context = context

    async def on_update(self, tick: Tick) -> None:
        pass

    async def on_stop(self) -> None:
        pass


# 订阅回调：接收消息负载
MessageCallback = Callable[[Any], Union[None, Awaitable[None]]]


class NodeContext:
    """
    节点上下文

    节点访问系统设施的唯一入口。通过它创建的句柄都记在节点名下。
    """

    def __init__(self, executor: Executor, record: NodeRecord):
        self._executor = executor
        self._record = record
        self._publishers: List[Publisher] = []
        self._subscriptions: List[Subscription] = []
        self._service_servers: List[ServiceServer] = []
        self._action_servers: List[ActionServer] = []
        self._released = False
        self._logger = get_logger(f"robocore.node.{record.info.name}")

    # ---------- 身份 ----------

    @property
    def node_id(self) -> str:
        return self._record.info.node_id

    @property
    def name(self) -> str:
        return self._record.info.name

    @property
    def full_name(self) -> str:
        return self._record.info.full_name

    @property
    def token(self) -> CancellationToken:
        """节点停止时触发"""
        return self._record.token

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    @property
    def clock(self) -> Clock:
        return self._executor.clock

    @property
    def released(self) -> bool:
        return self._released

    # ---------- 话题 ----------

    def create_publisher(self, topic_name: str, msg_type: Type[Any]) -> Publisher:
        """
        创建发布者

        Raises:
            TypeMismatch: 话题已存在且类型不同
        """
        publisher = self._executor.bus.create_publisher(
            topic_name, msg_type, owner=self.node_id, source=self.full_name
        )
        self._publishers.append(publisher)
        return publisher

    def create_subscription(
        self,
        topic_name: str,
        msg_type: Type[Any],
        callback: Optional[MessageCallback] = None,
        policy: Optional[QoSPolicy] = None,
        capacity: Optional[int] = None,
    ) -> Subscription:
        """
        订阅话题

        指定 callback 时由执行器取出消息并在节点回调锁内调用 callback(payload)；
        否则由节点自行 recv()。
        """
        subscription = self._executor.bus.subscribe(
            topic_name, msg_type, policy=policy, capacity=capacity, owner=self.node_id
        )
        self._subscriptions.append(subscription)
        if callback is not None:
            self._executor._spawn_dispatcher(self._record, subscription, callback)
        return subscription

    # ---------- 服务 ----------

    def create_service(
        self,
        service_name: str,
        handler: ServiceHandler,
        request_type: Optional[Type[Any]] = None,
        response_type: Optional[Type[Any]] = None,
    ) -> ServiceServer:
        server = self._executor.services.register(
            service_name,
            handler,
            request_type=request_type,
            response_type=response_type,
            owner=self.node_id,
        )
        self._service_servers.append(server)
        return server

    def create_client(self, service_name: str) -> ServiceClient:
        return self._executor.services.create_client(service_name, owner=self.node_id)

    # ---------- Action ----------

    def create_action_server(
        self,
        action_name: str,
        execute: ExecuteCallback,
        goal_type: Optional[Type[Any]] = None,
        accept: Optional[AcceptCallback] = None,
        policy: GoalPolicy = GoalPolicy.QUEUE,
        cancel_grace: Optional[float] = None,
    ) -> ActionServer:
        server = self._executor.actions.register_action(
            action_name,
            execute,
            goal_type=goal_type,
            accept=accept,
            policy=policy,
            cancel_grace=cancel_grace,
            owner=self.node_id,
        )
        self._action_servers.append(server)
        return server

    def create_action_client(self, action_name: str) -> ActionClient:
        return self._executor.actions.create_client(action_name, owner=self.node_id)

    # ---------- 参数 ----------

    def get_parameter(self, name: str, default: Any = None) -> Any:
        """读取参数：先查节点参数，再查全局参数"""
        parameter_server = self._executor.parameter_server
        if parameter_server is not None:
            return parameter_server.get(name, node=self.full_name, default=default)
        return self._record.info.parameters.get(name, default)

    def set_parameter(self, name: str, value: Any) -> None:
        """写入节点参数"""
        self._record.info.parameters[name] = value
        parameter_server = self._executor.parameter_server
        if parameter_server is not None:
            parameter_server.set(name, value, node=self.full_name)

    # ---------- 统计与释放 ----------

    @property
    def messages_sent(self) -> int:
        return sum(p.sequence for p in self._publishers)

    async def release(self) -> None:
        """释放节点持有的全部句柄"""
        if self._released:
            return
        self._released = True

        for publisher in self._publishers:
            publisher.close()
        for subscription in self._subscriptions:
            subscription.close()
        for server in self._service_servers:
            await server.close(grace=0)
        for server in self._action_servers:
            await server.close()

    def __repr__(self) -> str:
        return f"<NodeContext {self.full_name}>"
