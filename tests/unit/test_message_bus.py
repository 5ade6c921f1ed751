"""
消息总线单元测试

覆盖：
- 话题按需创建、类型固定、引用计数
- 单发布者顺序保证
- 三种背压策略
- 订阅通道的关闭与超时
"""

import asyncio
import pytest

from robocore.errors import ChannelClosed, OperationCanceled, TypeMismatch
from robocore.middleware.message_bus import (
    DEFAULT_QUEUE_MAXSIZE,
    MessageBus,
    QoSPolicy,
)
from robocore.middleware.messages import RobotActionMessage, SensorDataMessage
from robocore.runtime.cancellation import CancellationToken


def reading(value: float) -> SensorDataMessage:
    return SensorDataMessage(source="test", sensor_type="range", sensor_id="r0", data=value)


class TestMessageBusInit:
    """MessageBus 初始化测试"""

    def test_default_capacity(self):
        """测试默认队列容量"""
        bus = MessageBus()
        sub = bus.subscribe("/t", int)
        assert sub.capacity == DEFAULT_QUEUE_MAXSIZE
        assert sub.policy is QoSPolicy.DROP_OLDEST

    def test_config_overrides_capacity_and_topic_qos(self, make_config_center):
        """测试配置覆盖队列容量和话题 QoS"""
        center = make_config_center({
            "system": {"message_buffer_size": 2},
            "topics": {"/cmd": {"policy": "block", "capacity": 5}},
        })
        bus = MessageBus(config=center)

        default_sub = bus.subscribe("/other", int)
        assert default_sub.capacity == 2

        cmd_sub = bus.subscribe("/cmd", int)
        assert cmd_sub.policy is QoSPolicy.BLOCK
        assert cmd_sub.capacity == 5

    def test_explicit_qos_wins(self):
        """测试显式参数优先于默认值"""
        bus = MessageBus(default_capacity=4)
        sub = bus.subscribe("/t", int, policy=QoSPolicy.DROP_NEWEST, capacity=1)
        assert sub.policy is QoSPolicy.DROP_NEWEST
        assert sub.capacity == 1


class TestTopicRegistry:
    """话题表测试"""

    def test_topic_created_lazily(self, bus):
        """测试首次订阅时创建话题"""
        assert bus.list_topics() == []
        bus.subscribe("/sensors/range", SensorDataMessage)
        assert bus.list_topics() == ["/sensors/range"]
        assert bus.get_topic_info("/sensors/range").msg_type is SensorDataMessage

    def test_type_mismatch_leaves_topic_unchanged(self, bus):
        """测试类型不一致时失败且话题不变"""
        bus.subscribe("/sensors/range", SensorDataMessage)

        with pytest.raises(TypeMismatch) as exc_info:
            bus.subscribe("/sensors/range", RobotActionMessage)
        assert exc_info.value.expected is SensorDataMessage
        assert exc_info.value.actual is RobotActionMessage

        with pytest.raises(TypeMismatch):
            bus.create_publisher("/sensors/range", RobotActionMessage)

        info = bus.get_topic_info("/sensors/range")
        assert info.msg_type is SensorDataMessage
        assert info.subscriber_count == 1
        assert info.publisher_count == 0

    @pytest.mark.asyncio
    async def test_publish_wrong_payload_type(self, bus):
        """测试发布错误类型的负载"""
        pub = bus.create_publisher("/sensors/range", SensorDataMessage)
        sub = bus.subscribe("/sensors/range", SensorDataMessage)

        with pytest.raises(TypeMismatch):
            await pub.publish(RobotActionMessage(source="x", action_type="move"))

        assert sub.size == 0
        assert pub.sequence == 0
        assert bus.get_topic_info("/sensors/range").message_count == 0

    def test_topic_dropped_when_last_handle_closes(self, bus):
        """测试最后一个句柄关闭后移除话题"""
        pub = bus.create_publisher("/t", int)
        sub = bus.subscribe("/t", int)

        pub.close()
        assert "/t" in bus.list_topics()

        sub.close()
        assert "/t" not in bus.list_topics()

        # 移除后可以用新类型重建
        bus.subscribe("/t", str)
        assert bus.get_topic_info("/t").msg_type is str

    def test_close_is_idempotent(self, bus):
        """测试重复关闭不会重复释放引用"""
        pub1 = bus.create_publisher("/t", int)
        bus.create_publisher("/t", int)
        pub1.close()
        pub1.close()
        assert bus.get_topic_info("/t").publisher_count == 1

    def test_list_topics_pattern(self, bus):
        """测试通配符过滤"""
        bus.subscribe("/sensors/a", int)
        bus.subscribe("/sensors/b", int)
        bus.subscribe("/cmd/vel", int)
        assert sorted(bus.list_topics("/sensors/*")) == ["/sensors/a", "/sensors/b"]


class TestPublishOrdering:
    """发布顺序测试"""

    @pytest.mark.asyncio
    async def test_single_publisher_order_at_every_subscriber(self):
        """测试单发布者的消息在每个订阅者处保持顺序"""
        bus = MessageBus(default_capacity=200)
        pub = bus.create_publisher("/seq", int, source="/talker")
        subs = [bus.subscribe("/seq", int) for _ in range(3)]

        for i in range(100):
            await pub.publish(i)

        for sub in subs:
            envelopes = sub.drain()
            assert [e.payload for e in envelopes] == list(range(100))
            assert [e.sequence for e in envelopes] == list(range(1, 101))
            assert all(e.publisher_id == pub.publisher_id for e in envelopes)
            assert all(e.source == "/talker" for e in envelopes)

    @pytest.mark.asyncio
    async def test_concurrent_publishes_keep_order(self):
        """测试同一发布者并发调用时仍按调用顺序投递"""
        bus = MessageBus(default_capacity=100)
        pub = bus.create_publisher("/seq", int)
        sub = bus.subscribe("/seq", int)

        await asyncio.gather(*(pub.publish(i) for i in range(50)))

        envelopes = sub.drain()
        assert [e.sequence for e in envelopes] == list(range(1, 51))
        assert [e.payload for e in envelopes] == list(range(50))

    @pytest.mark.asyncio
    async def test_stamp_uses_bus_clock(self, manual_clock):
        """测试时间戳来自总线时钟"""
        bus = MessageBus(clock=manual_clock)
        pub = bus.create_publisher("/t", int)
        sub = bus.subscribe("/t", int)

        await pub.publish(1)
        manual_clock.advance(2.5)
        await pub.publish(2)

        first, second = sub.drain()
        assert first.stamp == 100.0
        assert second.stamp == 102.5

    @pytest.mark.asyncio
    async def test_bus_publish_creates_topic(self, bus):
        """测试直接发布按负载类型创建话题"""
        sub = bus.subscribe("/t", int)
        envelope = await bus.publish("/t", 7)
        assert envelope.sequence == 1
        assert sub.try_recv().payload == 7

        await bus.publish("/new", "hello")
        assert bus.get_topic_info("/new").msg_type is str

        with pytest.raises(TypeMismatch):
            await bus.publish("/new", 3)


class TestBackpressure:
    """背压策略测试"""

    @pytest.mark.asyncio
    async def test_drop_oldest_keeps_latest(self, make_config_center):
        """测试 message_buffer_size=2 + DROP_OLDEST：P1,P2,P3 -> [P2,P3]"""
        bus = MessageBus(config=make_config_center({"system": {"message_buffer_size": 2}}))
        sub = bus.subscribe("/t", str, policy=QoSPolicy.DROP_OLDEST)
        pub = bus.create_publisher("/t", str)

        for payload in ("P1", "P2", "P3"):
            await pub.publish(payload)

        assert [e.payload for e in sub.drain()] == ["P2", "P3"]
        assert sub.dropped == 1
        assert bus.get_stats()["total_dropped"] == 1

    @pytest.mark.asyncio
    async def test_drop_newest_keeps_earliest(self, bus):
        """测试 DROP_NEWEST 丢弃新消息"""
        sub = bus.subscribe("/t", str, policy=QoSPolicy.DROP_NEWEST, capacity=2)
        pub = bus.create_publisher("/t", str)

        for payload in ("P1", "P2", "P3"):
            await pub.publish(payload)

        assert [e.payload for e in sub.drain()] == ["P1", "P2"]
        assert sub.dropped == 1

    @pytest.mark.asyncio
    async def test_slow_subscriber_does_not_affect_others(self, bus):
        """测试一个订阅队列满不影响其它订阅者"""
        slow = bus.subscribe("/t", int, capacity=1)
        fast = bus.subscribe("/t", int, capacity=10)
        pub = bus.create_publisher("/t", int)

        for i in range(5):
            await pub.publish(i)

        assert [e.payload for e in fast.drain()] == [0, 1, 2, 3, 4]
        assert [e.payload for e in slow.drain()] == [4]

    @pytest.mark.asyncio
    async def test_block_waits_for_space(self, bus):
        """测试 BLOCK 策略挂起发布者直到有空间"""
        sub = bus.subscribe("/t", int, policy=QoSPolicy.BLOCK, capacity=1)
        pub = bus.create_publisher("/t", int)

        await pub.publish(1)
        pending = asyncio.create_task(pub.publish(2))
        await asyncio.sleep(0.01)
        assert not pending.done()

        first = await sub.recv(timeout=1.0)
        assert first.payload == 1

        await asyncio.wait_for(pending, timeout=1.0)
        second = await sub.recv(timeout=1.0)
        assert second.payload == 2
        assert sub.dropped == 0

    @pytest.mark.asyncio
    async def test_block_channel_closed_while_waiting(self, bus):
        """测试阻塞期间订阅关闭，发布者收到 ChannelClosed"""
        sub = bus.subscribe("/t", int, policy=QoSPolicy.BLOCK, capacity=1)
        other = bus.subscribe("/t", int, capacity=10)
        pub = bus.create_publisher("/t", int)

        await pub.publish(1)
        pending = asyncio.create_task(pub.publish(2))
        await asyncio.sleep(0.01)
        sub.close()

        with pytest.raises(ChannelClosed):
            await asyncio.wait_for(pending, timeout=1.0)
        # 其它订阅者照常收到
        assert [e.payload for e in other.drain()] == [1, 2]

    @pytest.mark.asyncio
    async def test_block_cancelled_by_token(self, bus):
        """测试阻塞期间令牌触发"""
        bus.subscribe("/t", int, policy=QoSPolicy.BLOCK, capacity=1)
        pub = bus.create_publisher("/t", int)
        token = CancellationToken()

        await pub.publish(1)
        pending = asyncio.create_task(pub.publish(2, token=token))
        await asyncio.sleep(0.01)
        token.cancel("shutdown")

        with pytest.raises(OperationCanceled) as exc_info:
            await asyncio.wait_for(pending, timeout=1.0)
        assert exc_info.value.reason == "shutdown"


class TestSubscription:
    """订阅通道测试"""

    @pytest.mark.asyncio
    async def test_recv_timeout_returns_none(self, bus):
        """测试接收超时返回 None"""
        sub = bus.subscribe("/t", int)
        assert await sub.recv(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_recv_wakes_on_publish(self, bus):
        """测试等待中的接收被发布唤醒"""
        sub = bus.subscribe("/t", int)
        pub = bus.create_publisher("/t", int)

        receiver = asyncio.create_task(sub.recv(timeout=1.0))
        await asyncio.sleep(0)
        await pub.publish(42)

        envelope = await receiver
        assert envelope.payload == 42

    @pytest.mark.asyncio
    async def test_closed_subscription_drains_then_raises(self, bus):
        """测试关闭后剩余消息仍可读取，读完后抛出 ChannelClosed"""
        sub = bus.subscribe("/t", int)
        pub = bus.create_publisher("/t", int)
        await pub.publish(1)
        sub.close()

        assert (await sub.recv()).payload == 1
        with pytest.raises(ChannelClosed):
            await sub.recv()

    @pytest.mark.asyncio
    async def test_async_iteration_stops_on_close(self, bus):
        """测试异步迭代在关闭后结束"""
        sub = bus.subscribe("/t", int)
        pub = bus.create_publisher("/t", int)
        for i in range(3):
            await pub.publish(i)
        sub.close()

        received = [envelope.payload async for envelope in sub]
        assert received == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_closed_publisher_rejects_publish(self, bus):
        """测试关闭的发布者不能再发布"""
        pub = bus.create_publisher("/t", int)
        pub.close()
        with pytest.raises(ChannelClosed):
            await pub.publish(1)

    @pytest.mark.asyncio
    async def test_closed_subscription_not_delivered(self, bus):
        """测试关闭的订阅不再接收消息"""
        sub = bus.subscribe("/t", int)
        keep = bus.subscribe("/t", int)
        pub = bus.create_publisher("/t", int)
        sub.close()

        await pub.publish(1)
        assert sub.size == 0
        assert keep.size == 1
        assert bus.subscriber_count("/t") == 1


class TestMessageBusStats:
    """统计测试"""

    @pytest.mark.asyncio
    async def test_stats(self, bus):
        pub = bus.create_publisher("/sensors/range", SensorDataMessage)
        bus.subscribe("/sensors/range", SensorDataMessage)
        await pub.publish(reading(1.0))
        await pub.publish(reading(2.0))

        stats = bus.get_stats()
        assert stats["total_topics"] == 1
        assert stats["total_messages"] == 2
        topic_stats = stats["topics"]["/sensors/range"]
        assert topic_stats["type"] == "SensorDataMessage"
        assert topic_stats["publishers"] == 1
        assert topic_stats["subscribers"] == 1

    def test_close_closes_all_subscriptions(self, bus):
        subs = [bus.subscribe("/a", int), bus.subscribe("/b", int)]
        bus.close()
        assert all(s.closed for s in subs)
        assert bus.list_topics() == []
