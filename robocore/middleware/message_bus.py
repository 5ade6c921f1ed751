"""
消息总线

进程内的类型化发布-订阅总线。

- 话题在首次发布或订阅时惰性创建，负载类型在话题生命周期内固定
- 每个订阅拥有独立的有界队列和背压策略（阻塞 / 丢弃最旧 / 丢弃最新）
- 同一发布者的消息在每个订阅者处保持发布顺序；不同发布者之间不保证顺序
- 没有订阅者的话题照常接受发布，消息直接丢弃
"""

from __future__ import annotations

import asyncio
import fnmatch
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Type, TYPE_CHECKING
from uuid import uuid4

from robocore.errors import ChannelClosed, TypeMismatch
from robocore.runtime.cancellation import CancellationToken, wait_cancellable
from robocore.runtime.clock import Clock
from robocore.system.services.logger import LoggerMixin

if TYPE_CHECKING:
    from robocore.system.services.config_center import ConfigCenter, TopicConfig


# 默认配置
DEFAULT_QUEUE_MAXSIZE = 1000  # 默认订阅队列容量


class QoSPolicy(Enum):
    """订阅队列满时的背压策略"""
    BLOCK = "block"               # 挂起发布者直到有空间
    DROP_OLDEST = "drop_oldest"   # 丢弃队首最旧的消息
    DROP_NEWEST = "drop_newest"   # 丢弃新到达的消息


@dataclass(frozen=True)
class MessageEnvelope:
    """投递到订阅队列中的消息信封"""
    topic: str
    payload: Any
    stamp: float          # 发布时的单调时间
    sequence: int         # 发布者内单调递增序号，从 1 开始
    publisher_id: str
    source: str = ""      # 发布节点名称


@dataclass
class TopicInfo:
    """话题信息"""
    name: str
    msg_type: Type[Any]
    publisher_count: int = 0
    subscriber_count: int = 0
    message_count: int = 0
    dropped_count: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    last_message_time: Optional[datetime] = None


class Subscription:
    """
    订阅句柄

    持有一个有界队列。可以通过 recv() / 异步迭代消费消息。
    也可以脱离总线单独作为有界通道使用（Action 反馈流即如此）。
    """

    def __init__(
        self,
        topic_name: str,
        msg_type: Type[Any],
        policy: QoSPolicy = QoSPolicy.DROP_OLDEST,
        capacity: int = DEFAULT_QUEUE_MAXSIZE,
        owner: Optional[str] = None,
        on_close: Optional[Callable[[Subscription], None]] = None,
    ):
        """
        Args:
            topic_name: 话题名称
            msg_type: 负载类型
            policy: 背压策略
            capacity: 队列容量
            owner: 所属节点 ID
            on_close: 关闭时的回调（总线用于释放引用计数）
        """
        if capacity < 1:
            raise ValueError(f"队列容量必须 >= 1: {capacity}")
        self.subscription_id = uuid4().hex[:12]
        self.topic_name = topic_name
        self.msg_type = msg_type
        self.policy = policy
        self.capacity = capacity
        self.owner = owner
        self._on_close = on_close

        self._queue: Deque[MessageEnvelope] = deque()
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()
        self._writable.set()
        self._closed = False

        # 统计
        self._delivered = 0
        self._dropped = 0

    # ---------- 状态 ----------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def size(self) -> int:
        return len(self._queue)

    @property
    def full(self) -> bool:
        return len(self._queue) >= self.capacity

    @property
    def dropped(self) -> int:
        """按丢弃策略丢失的消息数"""
        return self._dropped

    @property
    def delivered(self) -> int:
        """进入队列的消息数"""
        return self._delivered

    # ---------- 生产侧 ----------

    def _append(self, envelope: MessageEnvelope) -> None:
        self._queue.append(envelope)
        self._delivered += 1
        self._readable.set()
        if len(self._queue) >= self.capacity:
            self._writable.clear()

    def offer(self, envelope: MessageEnvelope) -> bool:
        """
        非阻塞投递（丢弃策略）

        Returns:
            新消息是否进入队列
        """
        if self._closed:
            return False
        if len(self._queue) < self.capacity:
            self._append(envelope)
            return True

        self._dropped += 1
        if self.policy is QoSPolicy.DROP_NEWEST:
            return False

        # DROP_OLDEST；BLOCK 策略走 put()，这里只在被误用时兜底
        self._queue.popleft()
        self._append(envelope)
        return True

    async def put(
        self,
        envelope: MessageEnvelope,
        token: Optional[CancellationToken] = None,
    ) -> None:
        """
        阻塞投递：等待队列有空间

        Raises:
            ChannelClosed: 等待期间订阅被关闭
            OperationCanceled: 令牌触发
        """
        while len(self._queue) >= self.capacity and not self._closed:
            self._writable.clear()
            await wait_cancellable(self._writable.wait(), token)

        if self._closed:
            raise ChannelClosed(f"订阅已关闭: {self.topic_name} ({self.subscription_id})")
        self._append(envelope)

    # ---------- 消费侧 ----------

    def _pop(self) -> MessageEnvelope:
        envelope = self._queue.popleft()
        self._writable.set()
        if not self._queue:
            self._readable.clear()
        return envelope

    def try_recv(self) -> Optional[MessageEnvelope]:
        """非阻塞读取，队列为空返回 None"""
        if self._queue:
            return self._pop()
        return None

    async def recv(
        self,
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> Optional[MessageEnvelope]:
        """
        读取一条消息

        Args:
            timeout: 超时时间，None 表示一直等待
            token: 取消令牌

        Returns:
            消息信封，超时返回 None

        Raises:
            ChannelClosed: 订阅已关闭且队列已空
            OperationCanceled: 令牌触发
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while not self._queue:
            if self._closed:
                raise ChannelClosed(f"订阅已关闭: {self.topic_name} ({self.subscription_id})")
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return None
            self._readable.clear()
            try:
                await wait_cancellable(self._readable.wait(), token, remaining)
            except asyncio.TimeoutError:
                if not self._queue:
                    return None

        return self._pop()

    def drain(self) -> List[MessageEnvelope]:
        """取出队列中全部消息"""
        items = list(self._queue)
        self._queue.clear()
        self._readable.clear()
        self._writable.set()
        return items

    def pending(self) -> List[MessageEnvelope]:
        """队列快照（不消费）"""
        return list(self._queue)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> MessageEnvelope:
        try:
            envelope = await self.recv()
        except ChannelClosed:
            raise StopAsyncIteration
        assert envelope is not None
        return envelope

    # ---------- 生命周期 ----------

    def close(self) -> None:
        """关闭订阅；阻塞中的发布者收到 ChannelClosed，剩余消息仍可读取"""
        if self._closed:
            return
        self._closed = True
        self._readable.set()
        self._writable.set()
        if self._on_close is not None:
            callback, self._on_close = self._on_close, None
            callback(self)

    def __repr__(self) -> str:
        return (
            f"<Subscription {self.topic_name} policy={self.policy.value} "
            f"size={len(self._queue)}/{self.capacity}{' closed' if self._closed else ''}>"
        )


class Topic:
    """话题表条目"""

    def __init__(self, name: str, msg_type: Type[Any]):
        self.name = name
        self.msg_type = msg_type
        # 写时复制：发布路径只读取这个元组快照
        self.subscriptions: Tuple[Subscription, ...] = ()
        self.publisher_count = 0
        self.message_count = 0
        self.created_at = datetime.now()
        self.last_message_time: Optional[datetime] = None
        self.default_publisher: Optional[Publisher] = None

    @property
    def refcount(self) -> int:
        return self.publisher_count + len(self.subscriptions)

    def accepts(self, payload: Any) -> bool:
        return isinstance(payload, self.msg_type)

    def info(self) -> TopicInfo:
        return TopicInfo(
            name=self.name,
            msg_type=self.msg_type,
            publisher_count=self.publisher_count,
            subscriber_count=len(self.subscriptions),
            message_count=self.message_count,
            dropped_count=sum(s.dropped for s in self.subscriptions),
            created_at=self.created_at,
            last_message_time=self.last_message_time,
        )


class Publisher:
    """
    发布者句柄

    同一发布者的 publish 调用串行执行，保证所有订阅者按发布顺序收到消息。
    """

    def __init__(
        self,
        bus: MessageBus,
        topic: Topic,
        owner: Optional[str] = None,
        source: str = "",
        counted: bool = True,
    ):
        self.publisher_id = uuid4().hex[:12]
        self.owner = owner
        self.source = source
        self._bus = bus
        self._topic = topic
        self._counted = counted
        self._sequence = 0
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def topic_name(self) -> str:
        return self._topic.name

    @property
    def msg_type(self) -> Type[Any]:
        return self._topic.msg_type

    @property
    def sequence(self) -> int:
        """最近一次发布的序号"""
        return self._sequence

    @property
    def closed(self) -> bool:
        return self._closed

    async def publish(
        self,
        payload: Any,
        token: Optional[CancellationToken] = None,
    ) -> MessageEnvelope:
        """
        发布消息

        Args:
            payload: 消息负载，必须是话题类型的实例
            token: 取消令牌（阻塞策略下等待队列空间时观察）

        Returns:
            已投递的消息信封

        Raises:
            TypeMismatch: 负载类型不符
            ChannelClosed: 发布者已关闭，或阻塞等待期间订阅被关闭
            OperationCanceled: 令牌触发
        """
        if self._closed:
            raise ChannelClosed(f"发布者已关闭: {self._topic.name}")
        if not self._topic.accepts(payload):
            raise TypeMismatch(self._topic.name, self._topic.msg_type, type(payload))

        async with self._lock:
            self._sequence += 1
            envelope = MessageEnvelope(
                topic=self._topic.name,
                payload=payload,
                stamp=self._bus.clock.now(),
                sequence=self._sequence,
                publisher_id=self.publisher_id,
                source=self.source,
            )
            await self._bus._deliver(self._topic, envelope, token)
        return envelope

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._counted:
            self._bus._release_publisher(self._topic)

    def __repr__(self) -> str:
        return f"<Publisher {self._topic.name} seq={self._sequence}>"


class MessageBus(LoggerMixin):
    """
    消息总线

    话题表只在不含 await 的代码段内修改；发布路径读取订阅元组快照，
    因此不会被无关话题的注册/注销阻塞。
    """

    def __init__(
        self,
        config: Optional[ConfigCenter] = None,
        default_capacity: int = DEFAULT_QUEUE_MAXSIZE,
        default_policy: QoSPolicy = QoSPolicy.DROP_OLDEST,
        clock: Optional[Clock] = None,
        topic_config: Optional[Dict[str, TopicConfig]] = None,
    ):
        """
        初始化消息总线

        Args:
            config: 配置中心（提供 message_buffer_size 与话题 QoS）
            default_capacity: 订阅队列默认容量
            default_policy: 默认背压策略
            clock: 时钟，用于消息时间戳
            topic_config: 按话题名的 QoS 覆盖配置
        """
        self.config = config
        self.clock = clock or Clock()
        self._default_capacity = default_capacity
        self._default_policy = default_policy
        self._topic_config: Dict[str, TopicConfig] = dict(topic_config or {})

        if config is not None:
            self._default_capacity = config.config.system.message_buffer_size
            self._topic_config.update(config.config.topics)

        self._topics: Dict[str, Topic] = {}

    # ---------- 话题表 ----------

    def _get_or_create_topic(self, name: str, msg_type: Type[Any]) -> Topic:
        topic = self._topics.get(name)
        if topic is None:
            topic = Topic(name, msg_type)
            self._topics[name] = topic
            self.logger.debug(f"创建话题: {name} [{getattr(msg_type, '__qualname__', msg_type)}]")
        elif topic.msg_type is not msg_type:
            raise TypeMismatch(name, topic.msg_type, msg_type)
        return topic

    def _maybe_drop_topic(self, topic: Topic) -> None:
        if topic.refcount == 0 and self._topics.get(topic.name) is topic:
            del self._topics[topic.name]
            self.logger.debug(f"移除话题: {topic.name}")

    def _release_publisher(self, topic: Topic) -> None:
        topic.publisher_count -= 1
        self._maybe_drop_topic(topic)

    def _release_subscription(self, subscription: Subscription) -> None:
        topic = self._topics.get(subscription.topic_name)
        if topic is None:
            return
        topic.subscriptions = tuple(s for s in topic.subscriptions if s is not subscription)
        self._maybe_drop_topic(topic)

    def _resolve_qos(
        self,
        name: str,
        policy: Optional[QoSPolicy],
        capacity: Optional[int],
    ) -> Tuple[QoSPolicy, int]:
        topic_cfg = self._topic_config.get(name)
        if policy is None:
            policy = QoSPolicy(topic_cfg.policy) if topic_cfg else self._default_policy
        if capacity is None:
            capacity = (topic_cfg.capacity if topic_cfg else None) or self._default_capacity
        return policy, capacity

    # ---------- 句柄 ----------

    def create_publisher(
        self,
        topic_name: str,
        msg_type: Type[Any],
        owner: Optional[str] = None,
        source: str = "",
    ) -> Publisher:
        """
        创建发布者

        Args:
            topic_name: 话题名称
            msg_type: 负载类型
            owner: 所属节点 ID
            source: 发布节点名称（写入消息信封）

        Raises:
            TypeMismatch: 话题已存在且类型不同
        """
        topic = self._get_or_create_topic(topic_name, msg_type)
        topic.publisher_count += 1
        self.logger.debug(f"注册发布者: {topic_name} (owner={owner})")
        return Publisher(self, topic, owner=owner, source=source)

    def subscribe(
        self,
        topic_name: str,
        msg_type: Type[Any],
        policy: Optional[QoSPolicy] = None,
        capacity: Optional[int] = None,
        owner: Optional[str] = None,
    ) -> Subscription:
        """
        订阅话题

        Args:
            topic_name: 话题名称
            msg_type: 负载类型
            policy: 背压策略，默认取话题配置或总线默认值
            capacity: 队列容量，默认取话题配置或 message_buffer_size
            owner: 所属节点 ID

        Raises:
            TypeMismatch: 话题已存在且类型不同（话题状态不变）
        """
        policy, capacity = self._resolve_qos(topic_name, policy, capacity)
        topic = self._get_or_create_topic(topic_name, msg_type)
        subscription = Subscription(
            topic_name=topic_name,
            msg_type=msg_type,
            policy=policy,
            capacity=capacity,
            owner=owner,
            on_close=self._release_subscription,
        )
        topic.subscriptions = topic.subscriptions + (subscription,)
        self.logger.debug(
            f"注册订阅者: {topic_name} (policy={policy.value}, capacity={capacity}, owner={owner})"
        )
        return subscription

    async def publish(
        self,
        topic_name: str,
        payload: Any,
        token: Optional[CancellationToken] = None,
    ) -> MessageEnvelope:
        """
        直接向话题发布（使用话题自带的默认发布者）

        话题不存在时按 type(payload) 创建。

        Raises:
            TypeMismatch: 负载不是话题类型的实例
        """
        topic = self._topics.get(topic_name)
        if topic is None:
            topic = self._get_or_create_topic(topic_name, type(payload))
        if topic.default_publisher is None:
            topic.default_publisher = Publisher(self, topic, counted=False)
        return await topic.default_publisher.publish(payload, token)

    async def _deliver(
        self,
        topic: Topic,
        envelope: MessageEnvelope,
        token: Optional[CancellationToken],
    ) -> None:
        """按订阅快照投递一条消息"""
        topic.message_count += 1
        topic.last_message_time = datetime.now()

        closed_error: Optional[ChannelClosed] = None
        for subscription in topic.subscriptions:
            if subscription.closed:
                continue
            if subscription.policy is QoSPolicy.BLOCK:
                try:
                    await subscription.put(envelope, token)
                except ChannelClosed as e:
                    closed_error = e
            else:
                dropped_before = subscription.dropped
                subscription.offer(envelope)
                if subscription.dropped != dropped_before:
                    self.logger.debug(
                        f"订阅队列已满，按 {subscription.policy.value} 丢弃: {topic.name} "
                        f"(dropped={subscription.dropped})"
                    )

        if closed_error is not None:
            raise closed_error

    # ---------- 查询 ----------

    def list_topics(self, pattern: str = "*") -> List[str]:
        """列出话题名称，支持 * 通配符"""
        return [name for name in self._topics if fnmatch.fnmatchcase(name, pattern)]

    def get_topic_info(self, topic_name: str) -> Optional[TopicInfo]:
        """获取话题信息"""
        topic = self._topics.get(topic_name)
        return topic.info() if topic else None

    def subscriber_count(self, topic_name: str) -> int:
        """获取话题的订阅者数量"""
        topic = self._topics.get(topic_name)
        return len(topic.subscriptions) if topic else 0

    def get_stats(self) -> Dict[str, Any]:
        """
        获取消息总线统计信息

        Returns:
            包含各项统计的字典
        """
        topics_info = {name: topic.info() for name, topic in self._topics.items()}
        return {
            "total_topics": len(topics_info),
            "total_subscribers": sum(i.subscriber_count for i in topics_info.values()),
            "total_messages": sum(i.message_count for i in topics_info.values()),
            "total_dropped": sum(i.dropped_count for i in topics_info.values()),
            "topics": {
                name: {
                    "type": getattr(info.msg_type, "__qualname__", str(info.msg_type)),
                    "publishers": info.publisher_count,
                    "subscribers": info.subscriber_count,
                    "messages": info.message_count,
                    "dropped": info.dropped_count,
                }
                for name, info in topics_info.items()
            },
            "config": {
                "default_capacity": self._default_capacity,
                "default_policy": self._default_policy.value,
            },
        }

    def close(self) -> None:
        """关闭总线上所有订阅"""
        for topic in list(self._topics.values()):
            for subscription in topic.subscriptions:
                subscription.close()
        self._topics.clear()
        self.logger.info("消息总线已关闭")
