"""
执行器

管理节点的注册、启动、周期调度和关闭。

- 每个节点一个驱动任务，按节点频率调用 on_update
- 订阅回调由独立的分发任务取出消息后调用
- 每个节点一把回调锁：同一节点不会同时执行两个回调，不同节点并行
- 回调异常只影响该节点：节点进入 FINALIZED，其句柄被释放
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, TYPE_CHECKING
from uuid import uuid4

from robocore.errors import ChannelClosed, DuplicateId, NotFound, OperationCanceled, RegistryFull
from robocore.middleware.actions import ActionCoordinator
from robocore.middleware.message_bus import MessageBus, Subscription
from robocore.middleware.services import ServiceRegistry
from robocore.runtime.cancellation import CancellationToken
from robocore.runtime.clock import Clock, Rate
from robocore.runtime.node import MessageCallback, NodeContext, NodeInfo, NodeState
from robocore.system.services.logger import LoggerMixin, NodeLogContext

if TYPE_CHECKING:
    from robocore.system.services.config_center import ConfigCenter
    from robocore.system.services.monitor import SystemMonitor
    from robocore.system.services.parameter_server import ParameterServer


DEFAULT_MAX_NODES = 1000
DEFAULT_NODE_TIMEOUT = 5.0  # 关闭时等待每个节点的时间（秒）


@dataclass
class NodeRecord:
    """注册表中的节点条目（节点本身可以是任意实现了回调的对象）"""
    info: NodeInfo
    node: Any
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    token: CancellationToken = field(default_factory=CancellationToken)
    context: Optional[NodeContext] = None
    driver: Optional[asyncio.Task] = None
    dispatchers: Set[asyncio.Task] = field(default_factory=set)

    @property
    def tasks(self) -> List[asyncio.Task]:
        tasks = list(self.dispatchers)
        if self.driver is not None:
            tasks.append(self.driver)
        return [t for t in tasks if not t.done()]


@dataclass
class ShutdownReport:
    """关闭报告"""
    clean: List[str] = field(default_factory=list)     # 在宽限期内正常结束
    unclean: List[str] = field(default_factory=list)   # 超时被强制结束
    failed: List[str] = field(default_factory=list)    # 关闭前已因错误结束

    @property
    def ok(self) -> bool:
        return not self.unclean


@dataclass
class SystemStats:
    """系统统计"""
    running: bool = False
    total_nodes: int = 0
    active_nodes: int = 0
    inactive_nodes: int = 0
    finalized_nodes: int = 0
    failed_nodes: int = 0
    total_callbacks: int = 0
    total_errors: int = 0
    messages_sent: int = 0
    messages_received: int = 0
    uptime_s: float = 0.0
    errors: List[str] = field(default_factory=list)


class NodeRegistry(LoggerMixin):
    """
    节点注册表

    按节点 ID 和完整名称双向索引，节点数量有上限。
    """

    def __init__(self, max_nodes: int = DEFAULT_MAX_NODES):
        self.max_nodes = max_nodes
        self._records: Dict[str, NodeRecord] = {}
        self._names: Dict[str, str] = {}  # full_name -> node_id

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._records

    def add(self, record: NodeRecord) -> None:
        """
        Raises:
            RegistryFull: 达到上限
            DuplicateId: 节点 ID 或完整名称重复
        """
        info = record.info
        if len(self._records) >= self.max_nodes:
            raise RegistryFull(f"节点数量已达上限: {self.max_nodes}")
        if info.node_id in self._records:
            raise DuplicateId(f"节点 ID 已存在: {info.node_id}")
        if info.full_name in self._names:
            raise DuplicateId(f"节点名称已存在: {info.full_name}")
        self._records[info.node_id] = record
        self._names[info.full_name] = info.node_id

    def remove(self, node_id: str) -> NodeRecord:
        record = self._records.pop(node_id, None)
        if record is None:
            raise NotFound(f"节点不存在: {node_id}")
        self._names.pop(record.info.full_name, None)
        return record

    def get(self, node_id: str) -> Optional[NodeRecord]:
        return self._records.get(node_id)

    def find(self, full_name: str) -> Optional[NodeRecord]:
        node_id = self._names.get(full_name)
        return self._records.get(node_id) if node_id else None

    def records(self) -> List[NodeRecord]:
        return list(self._records.values())


class Executor(LoggerMixin):
    """
    执行器

    用法:
        executor = Executor(bus=bus, services=services, actions=actions)
        node_id = await executor.add_node(MyNode(), rate_hz=10)
        await executor.start()
        ...
        report = await executor.stop()
    """

    def __init__(
        self,
        bus: Optional[MessageBus] = None,
        services: Optional[ServiceRegistry] = None,
        actions: Optional[ActionCoordinator] = None,
        config: Optional[ConfigCenter] = None,
        clock: Optional[Clock] = None,
        parameter_server: Optional[ParameterServer] = None,
        max_nodes: int = DEFAULT_MAX_NODES,
        node_timeout: float = DEFAULT_NODE_TIMEOUT,
        max_concurrent_callbacks: Optional[int] = None,
        heartbeat_interval: float = 0.0,
    ):
        """
        初始化执行器

        Args:
            bus: 消息总线，默认新建
            services: 服务注册表，默认新建
            actions: Action 协调器，默认新建
            config: 配置中心，提供时覆盖下列数值参数
            clock: 时钟
            parameter_server: 参数服务器
            max_nodes: 节点数量上限
            node_timeout: 关闭时等待每个节点的时间（秒）
            max_concurrent_callbacks: 同时执行的回调数量上限，None 表示不限制
            heartbeat_interval: 心跳间隔（秒），0 表示不发布心跳
        """
        self.config = config
        self.clock = clock or (bus.clock if bus is not None else Clock())
        self.bus = bus or MessageBus(config=config, clock=self.clock)
        self.services = services or ServiceRegistry(config=config)
        self.actions = actions or ActionCoordinator(bus=self.bus, config=config, clock=self.clock)
        self.parameter_server = parameter_server

        if config is not None:
            system = config.config.system
            max_nodes = system.max_nodes
            node_timeout = system.node_timeout_ms / 1000.0
            max_concurrent_callbacks = system.max_concurrent_callbacks
            heartbeat_interval = system.heartbeat_interval_ms / 1000.0

        self.node_timeout = node_timeout
        self.registry = NodeRegistry(max_nodes=max_nodes)
        self._semaphore = (
            asyncio.Semaphore(max_concurrent_callbacks) if max_concurrent_callbacks else None
        )

        self.monitor: Optional[SystemMonitor] = None
        if heartbeat_interval > 0:
            from robocore.system.services.monitor import SystemMonitor
            self.monitor = SystemMonitor(self, interval=heartbeat_interval)

        self._root_token = CancellationToken()
        self._running = False
        self._started_at: Optional[float] = None
        self._stopped = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def uptime(self) -> float:
        if self._started_at is None:
            return 0.0
        return self.clock.now() - self._started_at

    # ============== 节点注册 ==============

    async def add_node(
        self,
        node: Any,
        name: Optional[str] = None,
        namespace: Optional[str] = None,
        rate_hz: Optional[float] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        注册节点

        执行器运行中注册的节点会立即启动。

        Args:
            node: 节点对象
            name: 节点名称，默认取 node.name 或类名
            namespace: 命名空间，默认 "/"
            rate_hz: on_update 频率，默认取 node.rate_hz；None 表示只响应事件
            parameters: 节点参数

        Returns:
            节点 ID

        Raises:
            RegistryFull: 节点数量已达上限
            DuplicateId: 完整名称已注册
        """
        name = name or getattr(node, "name", None) or type(node).__name__
        if rate_hz is None:
            rate_hz = getattr(node, "rate_hz", None)
        if rate_hz is not None and rate_hz <= 0:
            raise ValueError(f"节点频率必须为正数: {rate_hz}")

        info = NodeInfo(
            node_id=f"{name}_{uuid4().hex[:8]}",
            name=name,
            namespace=namespace or "/",
            state=NodeState.INACTIVE,
            rate_hz=rate_hz,
            parameters=dict(parameters or {}),
        )
        record = NodeRecord(info=info, node=node, token=self._root_token.child())
        self.registry.add(record)

        if self.parameter_server is not None:
            self.parameter_server.declare_node(info.full_name, info.parameters)

        self.logger.info(f"注册节点: {info.full_name} ({info.node_id})")

        if self._running:
            await self._activate(record)
        return info.node_id

    async def remove_node(self, node_id: str) -> bool:
        """
        停止并注销节点

        Returns:
            是否在宽限期内正常停止

        Raises:
            NotFound: 节点不存在
        """
        record = self.registry.get(node_id)
        if record is None:
            raise NotFound(f"节点不存在: {node_id}")

        outcome = await self._stop_node(record)
        self.registry.remove(node_id)
        if self.parameter_server is not None:
            self.parameter_server.remove_node(record.info.full_name)

        self.logger.info(f"注销节点: {record.info.full_name} ({outcome})")
        return outcome == "clean"

    def get_node_info(self, node_id: str) -> Optional[NodeInfo]:
        """获取节点信息"""
        record = self.registry.get(node_id)
        if record is None:
            return None
        if record.context is not None:
            record.info.stats.messages_sent = record.context.messages_sent
        return record.info

    def find_node(self, full_name: str) -> Optional[NodeInfo]:
        record = self.registry.find(full_name)
        return self.get_node_info(record.info.node_id) if record else None

    def list_nodes(self, state: Optional[NodeState] = None) -> List[NodeInfo]:
        """列出节点"""
        infos = [self.get_node_info(r.info.node_id) for r in self.registry.records()]
        if state is not None:
            infos = [i for i in infos if i.state == state]
        return infos

    def get_system_stats(self) -> SystemStats:
        """获取系统统计"""
        infos = self.list_nodes()
        stats = SystemStats(running=self._running, total_nodes=len(infos), uptime_s=self.uptime)
        for info in infos:
            if info.state == NodeState.ACTIVE:
                stats.active_nodes += 1
            elif info.state == NodeState.INACTIVE:
                stats.inactive_nodes += 1
            elif info.state == NodeState.FINALIZED:
                stats.finalized_nodes += 1
                if info.error:
                    stats.failed_nodes += 1
                    stats.errors.append(f"{info.full_name}: {info.error}")
            stats.total_callbacks += info.stats.callback_count
            stats.total_errors += info.stats.callback_errors
            stats.messages_sent += info.stats.messages_sent
            stats.messages_received += info.stats.messages_received
        return stats

    # ============== 生命周期 ==============

    async def start(self) -> None:
        """启动所有未启动的节点、心跳和 Action 清理循环"""
        if self._running:
            return

        self.logger.info("启动执行器...")
        if self._root_token.cancelled:
            # 停止后重新启动
            self._root_token = CancellationToken()
        self._running = True
        self._stopped.clear()
        self._started_at = self.clock.now()

        await self.actions.start()

        for record in self.registry.records():
            if record.info.state == NodeState.INACTIVE:
                await self._activate(record)

        if self.monitor is not None:
            await self.monitor.start()

        self.logger.info(f"执行器已启动: {len(self.registry)} 个节点")

    async def stop(self) -> ShutdownReport:
        """
        停止执行器

        通知所有节点取消，每个节点在 node_timeout 内完成进行中的回调和 on_stop，
        超时的节点被强制结束并记为 unclean。

        Returns:
            ShutdownReport
        """
        report = ShutdownReport()
        if not self._running:
            return report

        self.logger.info("停止执行器...")
        self._running = False

        if self.monitor is not None:
            await self.monitor.stop()

        self._root_token.cancel("执行器停止")

        records = self.registry.records()
        outcomes = await asyncio.gather(*(self._stop_node(r) for r in records))
        for record, outcome in zip(records, outcomes):
            getattr(report, outcome).append(record.info.node_id)

        await self.actions.shutdown()
        self._stopped.set()

        if report.unclean:
            self.logger.warning(f"以下节点未在宽限期内结束: {report.unclean}")
        self.logger.info(
            f"执行器已停止: clean={len(report.clean)} unclean={len(report.unclean)} "
            f"failed={len(report.failed)}"
        )
        return report

    async def run_until_stopped(
        self,
        stop_event: Optional[asyncio.Event] = None,
        duration: Optional[float] = None,
    ) -> ShutdownReport:
        """
        启动并运行，直到 stop_event 被设置或超过 duration 秒

        两者都未提供时一直运行到任务被取消。
        """
        await self.start()
        waiter = stop_event.wait() if stop_event is not None else asyncio.Event().wait()
        try:
            await asyncio.wait_for(waiter, timeout=duration)
        except asyncio.TimeoutError:
            pass
        finally:
            report = await self.stop()
        return report

    # ============== 节点调度 ==============

    async def _activate(self, record: NodeRecord) -> None:
        info = record.info
        if record.token.cancelled:
            record.token = self._root_token.child()

        info.state = NodeState.ACTIVE
        info.started_at = datetime.now()
        record.context = NodeContext(self, record)

        on_start = getattr(record.node, "on_start", None)
        if on_start is not None:
            # on_start 超过 node_timeout 视为节点错误
            ok = await self._run_callback(
                record,
                on_start,
                record.context,
                check_token=False,
                timeout=self.node_timeout or None,
            )
            if not ok:
                return

        if info.rate_hz:
            record.driver = asyncio.create_task(
                self._drive(record), name=f"robocore-node-{info.full_name}"
            )
        self.logger.info(f"节点已启动: {info.full_name}")

    async def _drive(self, record: NodeRecord) -> None:
        """周期驱动循环"""
        on_update = getattr(record.node, "on_update", None)
        if on_update is None:
            return
        rate = Rate(record.info.rate_hz, clock=self.clock)
        while not record.token.cancelled:
            tick = rate.tick()
            if tick.overrun:
                self.logger.debug(f"节点回调超时，跳过周期: {record.info.full_name}")
            if not await self._run_callback(record, on_update, tick, is_update=True):
                return
            if not await rate.sleep(record.token):
                return

    def _spawn_dispatcher(
        self,
        record: NodeRecord,
        subscription: Subscription,
        callback: MessageCallback,
    ) -> None:
        task = asyncio.create_task(
            self._dispatch(record, subscription, callback),
            name=f"robocore-sub-{record.info.full_name}-{subscription.topic_name}",
        )
        record.dispatchers.add(task)
        task.add_done_callback(record.dispatchers.discard)

    async def _dispatch(
        self,
        record: NodeRecord,
        subscription: Subscription,
        callback: MessageCallback,
    ) -> None:
        """订阅分发循环"""
        while True:
            try:
                envelope = await subscription.recv(token=record.token)
            except (ChannelClosed, OperationCanceled):
                return
            record.info.stats.messages_received += 1
            if not await self._run_callback(record, callback, envelope.payload):
                return

    async def _run_callback(
        self,
        record: NodeRecord,
        callback: Callable[..., Any],
        *args: Any,
        is_update: bool = False,
        check_token: bool = True,
        timeout: Optional[float] = None,
    ) -> bool:
        """
        在节点回调锁内执行回调

        Args:
            timeout: 异步回调的截止时间（秒），None 表示不限制

        Returns:
            False 表示节点已停止或已因错误结束，调用方应退出循环
        """
        async with record.lock:
            if record.info.state != NodeState.ACTIVE:
                return False
            if check_token and record.token.cancelled:
                return False
            if self._semaphore is not None:
                async with self._semaphore:
                    return await self._invoke(record, callback, args, is_update, timeout)
            return await self._invoke(record, callback, args, is_update, timeout)

    async def _invoke(
        self,
        record: NodeRecord,
        callback: Callable[..., Any],
        args: tuple,
        is_update: bool,
        timeout: Optional[float] = None,
    ) -> bool:
        stats = record.info.stats
        started = time.perf_counter()
        try:
            with NodeLogContext(record.info.full_name):
                result = callback(*args)
                if inspect.isawaitable(result):
                    if timeout is not None:
                        await asyncio.wait_for(result, timeout)
                    else:
                        await result
        except OperationCanceled as e:
            if record.token.cancelled:
                # 节点正在停止
                return False
            # 来自其他令牌（调用截止、Goal 令牌等）的取消按回调错误处理
            stats.callback_errors += 1
            await self._fail(record, e)
            return False
        except asyncio.TimeoutError as e:
            stats.callback_errors += 1
            error = TimeoutError(f"回调超过 {timeout:.3f}s 未完成") if timeout is not None else e
            await self._fail(record, error)
            return False
        except Exception as e:
            stats.callback_errors += 1
            await self._fail(record, e)
            return False
        finally:
            stats.record_callback((time.perf_counter() - started) * 1000.0)
        if is_update:
            stats.update_count += 1
        return True

    async def _fail(self, record: NodeRecord, error: BaseException) -> None:
        """回调异常：只结束出错的节点"""
        info = record.info
        info.error = f"{type(error).__name__}: {error}"
        info.state = NodeState.FINALIZED
        info.stopped_at = datetime.now()
        self.logger.error(f"节点回调异常，节点结束: {info.full_name} - {error}", exc_info=error)

        record.token.cancel(f"节点错误: {info.error}")
        current = asyncio.current_task()
        for task in record.tasks:
            if task is not current:
                task.cancel()
        if record.context is not None:
            await record.context.release()

    async def _stop_node(self, record: NodeRecord) -> str:
        """
        停止单个节点

        Returns:
            "clean" / "unclean" / "failed"
        """
        info = record.info
        if info.state == NodeState.FINALIZED:
            return "failed" if info.error else "clean"
        if info.state != NodeState.ACTIVE:
            info.state = NodeState.FINALIZED
            info.stopped_at = datetime.now()
            return "clean"

        task = asyncio.ensure_future(self._graceful_stop(record))
        done, _ = await asyncio.wait({task}, timeout=self.node_timeout)
        if task in done:
            return task.result()

        # 强制结束
        task.cancel()
        for straggler in record.tasks:
            straggler.cancel()
        info.state = NodeState.FINALIZED
        info.stopped_at = datetime.now()
        info.error = f"停止超时 ({self.node_timeout:.3f}s)"
        self.logger.warning(f"节点未在宽限期内结束，强制终止: {info.full_name}")
        if record.context is not None:
            await record.context.release()
        return "unclean"

    async def _graceful_stop(self, record: NodeRecord) -> str:
        info = record.info
        record.token.cancel("节点停止")
        pending = record.tasks
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        outcome = "clean"
        async with record.lock:
            if info.state == NodeState.FINALIZED:
                # 等待期间回调出错
                return "failed"
            on_stop = getattr(record.node, "on_stop", None)
            if on_stop is not None:
                try:
                    with NodeLogContext(info.full_name):
                        result = on_stop()
                        if inspect.isawaitable(result):
                            await result
                except Exception as e:
                    info.error = f"{type(e).__name__}: {e}"
                    info.stats.callback_errors += 1
                    self.logger.error(f"节点 on_stop 异常: {info.full_name} - {e}", exc_info=True)
                    outcome = "failed"
            info.state = NodeState.FINALIZED
            info.stopped_at = datetime.now()

        if record.context is not None:
            await record.context.release()
        self.logger.info(f"节点已停止: {info.full_name}")
        return outcome
