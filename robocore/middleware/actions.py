"""
Action 管理

长时间运行、可取消、带反馈的 Goal。

Goal 状态机:
    PENDING → EXECUTING → {SUCCEEDED, ABORTED, CANCELING → CANCELED}
    PENDING → CANCELED（排队中被取消）

状态只前进不回退。每次状态变更都会发布到 `<action>/_action/status` 话题；
反馈通过每个 Goal 独立的有界通道（DROP_OLDEST）传递。
"""

from __future__ import annotations

import asyncio
import inspect
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Deque,
    Dict,
    List,
    Optional,
    Set,
    Type,
    Union,
    TYPE_CHECKING,
)
from uuid import uuid4

from robocore.errors import (
    ActionError,
    ActionServerNotFound,
    CancelTimeout,
    ChannelClosed,
    DuplicateService,
    GoalAlreadyFinished,
    GoalRejected,
    NotFound,
    OperationCanceled,
    ResultTimeout,
    TypeMismatch,
)
from robocore.middleware.message_bus import MessageEnvelope, QoSPolicy, Subscription
from robocore.middleware.messages import GoalStatusMessage
from robocore.runtime.cancellation import CancellationToken, wait_cancellable
from robocore.runtime.clock import Clock
from robocore.system.services.logger import LoggerMixin

if TYPE_CHECKING:
    from robocore.middleware.message_bus import MessageBus, Publisher
    from robocore.system.services.config_center import ConfigCenter


DEFAULT_CANCEL_GRACE = 2.0      # 取消确认宽限期（秒）
DEFAULT_GOAL_RETENTION = 60.0   # 已结束 Goal 的保留时间（秒）
DEFAULT_FEEDBACK_CAPACITY = 16  # 每个 Goal 的反馈队列容量
MAX_FINISHED_IDS = 10000        # 记住的已移除 Goal ID 数量上限


class GoalState(Enum):
    """Goal 状态"""
    PENDING = "pending"
    EXECUTING = "executing"
    CANCELING = "canceling"
    SUCCEEDED = "succeeded"
    ABORTED = "aborted"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({GoalState.SUCCEEDED, GoalState.ABORTED, GoalState.CANCELED})

_TRANSITIONS: Dict[GoalState, frozenset] = {
    GoalState.PENDING: frozenset({GoalState.EXECUTING, GoalState.CANCELED}),
    GoalState.EXECUTING: frozenset({GoalState.SUCCEEDED, GoalState.ABORTED, GoalState.CANCELING}),
    GoalState.CANCELING: frozenset({GoalState.CANCELED}),
    GoalState.SUCCEEDED: frozenset(),
    GoalState.ABORTED: frozenset(),
    GoalState.CANCELED: frozenset(),
}


class GoalPolicy(Enum):
    """同一 Action 上多个 Goal 的并发策略"""
    QUEUE = "queue"       # 一次执行一个，后来的 Goal 按 FIFO 排队
    PREEMPT = "preempt"   # 新 Goal 取消正在执行的 Goal，待其结束后开始


# 执行函数：接收 ServerGoalHandle，返回结果（可以是协程函数）
ExecuteCallback = Callable[["ServerGoalHandle"], Union[Any, Awaitable[Any]]]
AcceptCallback = Callable[[Any], Union[bool, Awaitable[bool]]]


@dataclass
class GoalResult:
    """Goal 最终结果（只写一次）"""
    goal_id: str
    state: GoalState
    result: Any = None
    reason: Optional[str] = None
    forced: bool = False  # 服务端未在宽限期内确认取消，由协调器强制结束

    @property
    def succeeded(self) -> bool:
        return self.state is GoalState.SUCCEEDED


@dataclass
class ActionGoal:
    """Action 目标"""
    goal_id: str
    action_name: str
    request: Any = None
    state: GoalState = GoalState.PENDING
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Optional[GoalResult] = None
    cancel_reason: Optional[str] = None
    last_feedback: Any = None

    # 运行时
    token: CancellationToken = field(default_factory=CancellationToken, repr=False, compare=False)
    feedback: Optional[Subscription] = field(default=None, repr=False, compare=False)
    finished_stamp: Optional[float] = field(default=None, repr=False, compare=False)
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)
    _task: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)
    _watchdog: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)
    _server: Optional[ActionServer] = field(default=None, repr=False, compare=False)
    _feedback_seq: int = field(default=0, repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return self.state not in TERMINAL_STATES


class ServerGoalHandle:
    """服务端 Goal 句柄，传给执行函数"""

    def __init__(self, coordinator: ActionCoordinator, goal: ActionGoal):
        self._coordinator = coordinator
        self._goal = goal

    @property
    def goal_id(self) -> str:
        return self._goal.goal_id

    @property
    def request(self) -> Any:
        return self._goal.request

    @property
    def token(self) -> CancellationToken:
        """取消请求到达时触发"""
        return self._goal.token

    @property
    def state(self) -> GoalState:
        return self._goal.state

    @property
    def cancel_requested(self) -> bool:
        return self._goal.state is GoalState.CANCELING

    def _ensure_active(self) -> None:
        if self._goal.state in TERMINAL_STATES:
            raise GoalAlreadyFinished(
                f"Goal 已结束: {self.goal_id} ({self._goal.state.value})"
            )

    def publish_feedback(self, feedback: Any) -> bool:
        """
        发布反馈

        Raises:
            GoalAlreadyFinished: Goal 已结束
        """
        self._ensure_active()
        return self._coordinator._publish_feedback(self._goal, feedback)

    def succeed(self, result: Any = None) -> bool:
        """
        Raises:
            GoalAlreadyFinished: Goal 已结束
        """
        self._ensure_active()
        return self._coordinator._finalize(self._goal, GoalState.SUCCEEDED, result=result)

    def abort(self, reason: str, result: Any = None) -> bool:
        self._ensure_active()
        return self._coordinator._finalize(
            self._goal, GoalState.ABORTED, result=result, reason=reason
        )

    def canceled(self, result: Any = None) -> bool:
        """确认取消"""
        self._ensure_active()
        return self._coordinator._finalize(
            self._goal, GoalState.CANCELED, result=result, reason=self._goal.cancel_reason
        )

    def __repr__(self) -> str:
        return f"<ServerGoalHandle {self._goal.action_name}/{self.goal_id} {self.state.value}>"


class ClientGoalHandle:
    """客户端 Goal 句柄"""

    def __init__(self, coordinator: ActionCoordinator, goal: ActionGoal):
        self._coordinator = coordinator
        self._goal = goal

    @property
    def goal_id(self) -> str:
        return self._goal.goal_id

    @property
    def action_name(self) -> str:
        return self._goal.action_name

    @property
    def state(self) -> GoalState:
        return self._goal.state

    @property
    def done(self) -> bool:
        return self._goal.state in TERMINAL_STATES

    async def next_feedback(
        self,
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> Any:
        """
        读取下一条反馈

        Returns:
            反馈负载；超时或 Goal 结束且反馈已读完时返回 None
        """
        try:
            envelope = await self._goal.feedback.recv(timeout=timeout, token=token)
        except ChannelClosed:
            return None
        return envelope.payload if envelope is not None else None

    async def feedback(self) -> AsyncIterator[Any]:
        """异步迭代反馈，Goal 结束后停止"""
        async for envelope in self._goal.feedback:
            yield envelope.payload

    async def get_result(
        self,
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
        acknowledge: bool = True,
    ) -> GoalResult:
        """
        等待 Goal 结果

        Args:
            timeout: 超时时间（秒），None 表示一直等待
            token: 取消令牌
            acknowledge: 取得结果后通知协调器移除该 Goal

        Raises:
            ResultTimeout: 超时
            OperationCanceled: 令牌触发
        """
        try:
            await wait_cancellable(self._goal._done.wait(), token, timeout)
        except asyncio.TimeoutError:
            raise ResultTimeout(f"等待 Goal 结果超时: {self.goal_id}") from None

        if acknowledge:
            self._coordinator.acknowledge(self.goal_id)
        return self._goal.result

    async def cancel(self, wait: bool = False, timeout: Optional[float] = None) -> GoalState:
        """
        请求取消

        Args:
            wait: 是否等待 Goal 进入终止状态
            timeout: 等待时间（秒），None 表示一直等待（强制结束保证有限时间内返回）

        Raises:
            GoalAlreadyFinished: Goal 已结束
            CancelTimeout: 等待超时
        """
        state = self._coordinator.cancel_goal(self.goal_id)
        if wait and state not in TERMINAL_STATES:
            try:
                await wait_cancellable(self._goal._done.wait(), None, timeout)
            except asyncio.TimeoutError:
                raise CancelTimeout(f"取消等待超时: {self.goal_id}") from None
        return self._goal.state

    def __repr__(self) -> str:
        return f"<ClientGoalHandle {self.action_name}/{self.goal_id} {self.state.value}>"


class ActionServer:
    """Action 服务端"""

    def __init__(
        self,
        coordinator: ActionCoordinator,
        name: str,
        execute: ExecuteCallback,
        goal_type: Optional[Type[Any]] = None,
        accept: Optional[AcceptCallback] = None,
        policy: GoalPolicy = GoalPolicy.QUEUE,
        cancel_grace: float = DEFAULT_CANCEL_GRACE,
        owner: Optional[str] = None,
    ):
        self._coordinator = coordinator
        self.name = name
        self.execute = execute
        self.goal_type = goal_type
        self.accept = accept
        self.policy = policy
        self.cancel_grace = cancel_grace
        self.owner = owner
        self.created_at = datetime.now()

        self._queue: Deque[ActionGoal] = deque()
        self._current: Optional[ActionGoal] = None
        self._status_pub: Optional[Publisher] = None
        self._closed = False

    @property
    def status_topic(self) -> str:
        return f"{self.name}/_action/status"

    @property
    def current_goal(self) -> Optional[ActionGoal]:
        return self._current

    @property
    def queued(self) -> int:
        return len(self._queue)

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """注销 Action；排队中的 Goal 取消，执行中的 Goal 请求取消并等待结束"""
        if not self._closed:
            await self._coordinator.unregister_action(self.name)

    def __repr__(self) -> str:
        return f"<ActionServer {self.name} policy={self.policy.value}>"


class ActionClient:
    """Action 客户端，只按名称引用服务端"""

    def __init__(self, coordinator: ActionCoordinator, action_name: str, owner: Optional[str] = None):
        self._coordinator = coordinator
        self.action_name = action_name
        self.owner = owner

    def is_available(self) -> bool:
        return self._coordinator.action_exists(self.action_name)

    async def wait_for_server(self, timeout: Optional[float] = None, poll_interval: float = 0.05) -> bool:
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while not self.is_available():
            if deadline is not None and loop.time() >= deadline:
                return False
            await asyncio.sleep(poll_interval)
        return True

    async def send_goal(self, request: Any) -> ClientGoalHandle:
        return await self._coordinator.submit_goal(self.action_name, request)

    def __repr__(self) -> str:
        return f"<ActionClient {self.action_name}>"


class ActionCoordinator(LoggerMixin):
    """
    Action 协调器

    管理 Action 服务端注册、Goal 提交、取消以及结果保留。
    Goal 表只在不含 await 的代码段内修改。
    """

    def __init__(
        self,
        bus: Optional[MessageBus] = None,
        config: Optional[ConfigCenter] = None,
        cancel_grace: float = DEFAULT_CANCEL_GRACE,
        goal_retention: float = DEFAULT_GOAL_RETENTION,
        feedback_capacity: int = DEFAULT_FEEDBACK_CAPACITY,
        clock: Optional[Clock] = None,
    ):
        """
        初始化 Action 协调器

        Args:
            bus: 消息总线（发布 Goal 状态），None 时不发布
            config: 配置中心（提供 action_cancel_grace_ms / goal_retention_s）
            cancel_grace: 默认取消宽限期（秒）
            goal_retention: 已结束 Goal 未被确认时的保留时间（秒）
            feedback_capacity: 每个 Goal 的反馈队列容量
            clock: 时钟
        """
        self.bus = bus
        self.config = config
        self.clock = clock or (bus.clock if bus is not None else Clock())
        self._cancel_grace = cancel_grace
        self._goal_retention = goal_retention
        self._feedback_capacity = feedback_capacity
        if config is not None:
            system = config.config.system
            self._cancel_grace = system.action_cancel_grace_ms / 1000.0
            self._goal_retention = system.goal_retention_s

        self._servers: Dict[str, ActionServer] = {}
        self._goals: Dict[str, ActionGoal] = {}
        self._finished: "OrderedDict[str, GoalState]" = OrderedDict()
        self._status_tasks: Set[asyncio.Task] = set()
        self._sweeper_task: Optional[asyncio.Task] = None
        self._running = False

        self._stats: Dict[str, int] = {
            "submitted": 0,
            "rejected": 0,
            "succeeded": 0,
            "aborted": 0,
            "canceled": 0,
            "forced": 0,
        }

    @property
    def cancel_grace(self) -> float:
        return self._cancel_grace

    @property
    def goal_retention(self) -> float:
        return self._goal_retention

    # ============== 生命周期 ==============

    async def start(self) -> None:
        """启动保留期清理循环"""
        if self._running:
            return
        self._running = True
        self._sweeper_task = asyncio.create_task(self._sweep_loop())
        self.logger.info("Action 协调器已启动")

    async def shutdown(self) -> None:
        """停止清理循环并取消所有未结束的 Goal"""
        self._running = False
        if self._sweeper_task:
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
            self._sweeper_task = None

        tasks: List[asyncio.Task] = []
        for goal in list(self._goals.values()):
            if goal.is_active:
                goal.cancel_reason = goal.cancel_reason or "协调器关闭"
                self._finalize(goal, GoalState.CANCELED, reason=goal.cancel_reason)
            goal.token.cancel("协调器关闭")
            if goal._task is not None and not goal._task.done():
                goal._task.cancel()
                tasks.append(goal._task)
        if tasks:
            await asyncio.wait(tasks, timeout=1.0)

        if self._status_tasks:
            await asyncio.wait(set(self._status_tasks), timeout=1.0)

        for server in self._servers.values():
            server._closed = True
            if server._status_pub is not None:
                server._status_pub.close()
        self._servers.clear()
        self.logger.info("Action 协调器已关闭")

    async def _sweep_loop(self) -> None:
        interval = min(1.0, self._goal_retention / 2)
        while self._running:
            await asyncio.sleep(interval)
            self.sweep()

    def sweep(self, now: Optional[float] = None) -> int:
        """
        移除超过保留期仍未被确认的已结束 Goal

        Returns:
            移除数量
        """
        now = self.clock.now() if now is None else now
        expired = [
            goal_id
            for goal_id, goal in self._goals.items()
            if goal.finished_stamp is not None
            and now - goal.finished_stamp >= self._goal_retention
        ]
        for goal_id in expired:
            self._forget(goal_id)
        if expired:
            self.logger.debug(f"清理过期 Goal: {len(expired)}")
        return len(expired)

    # ============== 服务端 ==============

    def register_action(
        self,
        action_name: str,
        execute: ExecuteCallback,
        goal_type: Optional[Type[Any]] = None,
        accept: Optional[AcceptCallback] = None,
        policy: GoalPolicy = GoalPolicy.QUEUE,
        cancel_grace: Optional[float] = None,
        owner: Optional[str] = None,
    ) -> ActionServer:
        """
        注册 Action 服务端

        Args:
            action_name: Action 名称
            execute: 执行函数
            goal_type: 请求类型，None 表示不校验
            accept: 接受判定函数，返回 False 拒绝 Goal
            policy: 并发策略
            cancel_grace: 取消宽限期（秒），默认 action_cancel_grace_ms
            owner: 所属节点 ID

        Raises:
            DuplicateService: 同名 Action 已注册
        """
        if action_name in self._servers:
            raise DuplicateService(f"Action 已存在: {action_name}")

        server = ActionServer(
            self,
            action_name,
            execute,
            goal_type=goal_type,
            accept=accept,
            policy=policy,
            cancel_grace=self._cancel_grace if cancel_grace is None else cancel_grace,
            owner=owner,
        )
        if self.bus is not None:
            server._status_pub = self.bus.create_publisher(
                server.status_topic, GoalStatusMessage, owner=owner
            )
        self._servers[action_name] = server

        self.logger.info(f"注册 Action 服务端: {action_name} (policy={policy.value})")
        return server

    async def unregister_action(self, action_name: str) -> None:
        """
        注销 Action 服务端

        Raises:
            ActionServerNotFound: 未注册
        """
        server = self._servers.pop(action_name, None)
        if server is None:
            raise ActionServerNotFound(f"Action 不存在: {action_name}")
        server._closed = True

        while server._queue:
            goal = server._queue.popleft()
            if goal.state is GoalState.PENDING:
                self._finalize(goal, GoalState.CANCELED, reason="Action 服务端注销")

        current = server._current
        if current is not None and current.is_active:
            if current.state is GoalState.EXECUTING:
                self._request_cancel(current, "Action 服务端注销")
            await current._done.wait()

        if server._status_pub is not None:
            server._status_pub.close()
        self.logger.info(f"注销 Action 服务端: {action_name}")

    def action_exists(self, action_name: str) -> bool:
        return action_name in self._servers

    def list_actions(self) -> List[str]:
        return list(self._servers.keys())

    def create_client(self, action_name: str, owner: Optional[str] = None) -> ActionClient:
        return ActionClient(self, action_name, owner=owner)

    # ============== Goal ==============

    async def submit_goal(self, action_name: str, request: Any) -> ClientGoalHandle:
        """
        提交 Goal

        Raises:
            ActionServerNotFound: Action 未注册
            TypeMismatch: 请求类型不符
            GoalRejected: 服务端拒绝
        """
        server = self._servers.get(action_name)
        if server is None or server.closed:
            raise ActionServerNotFound(f"Action 不存在: {action_name}")
        if server.goal_type is not None and not isinstance(request, server.goal_type):
            raise TypeMismatch(action_name, server.goal_type, type(request))

        if server.accept is not None:
            accepted = server.accept(request)
            if inspect.isawaitable(accepted):
                accepted = await accepted
            if not accepted:
                self._stats["rejected"] += 1
                self.logger.info(f"Goal 被拒绝: {action_name}")
                raise GoalRejected(f"Goal 被拒绝: {action_name}")
            # accept 期间服务端可能已注销
            if self._servers.get(action_name) is not server:
                raise ActionServerNotFound(f"Action 不存在: {action_name}")

        goal_id = uuid4().hex
        goal = ActionGoal(goal_id=goal_id, action_name=action_name, request=request)
        goal.feedback = Subscription(
            f"{action_name}/_action/feedback",
            object,
            policy=QoSPolicy.DROP_OLDEST,
            capacity=self._feedback_capacity,
            owner=server.owner,
        )
        goal._server = server
        self._goals[goal_id] = goal
        self._stats["submitted"] += 1
        self._publish_status(goal)

        if server.policy is GoalPolicy.PREEMPT:
            while server._queue:
                queued = server._queue.popleft()
                if queued.state is GoalState.PENDING:
                    self._finalize(queued, GoalState.CANCELED, reason="被新 Goal 抢占")
            current = server._current
            if current is not None and current.state is GoalState.EXECUTING:
                self._request_cancel(current, "被新 Goal 抢占")

        server._queue.append(goal)
        self.logger.debug(f"提交 Goal: {action_name}/{goal_id}")
        self._dispatch(server)
        return ClientGoalHandle(self, goal)

    def cancel_goal(self, goal_id: str) -> GoalState:
        """
        取消 Goal

        Returns:
            取消请求后的状态（CANCELED 或 CANCELING）

        Raises:
            GoalAlreadyFinished: Goal 已结束
            NotFound: Goal 不存在
        """
        goal = self._goals.get(goal_id)
        if goal is None:
            if goal_id in self._finished:
                raise GoalAlreadyFinished(f"Goal 已结束: {goal_id}")
            raise NotFound(f"Goal 不存在: {goal_id}")

        if goal.state in TERMINAL_STATES:
            raise GoalAlreadyFinished(f"Goal 已结束: {goal_id} ({goal.state.value})")

        if goal.state is GoalState.PENDING:
            server = goal._server
            if server is not None and goal in server._queue:
                server._queue.remove(goal)
            goal.cancel_reason = "取消请求"
            self._finalize(goal, GoalState.CANCELED, reason=goal.cancel_reason)
        elif goal.state is GoalState.EXECUTING:
            self._request_cancel(goal, "取消请求")

        return goal.state

    def acknowledge(self, goal_id: str) -> bool:
        """
        确认已取走结果，移除已结束的 Goal

        Returns:
            是否移除
        """
        goal = self._goals.get(goal_id)
        if goal is None or goal.is_active:
            return False
        self._forget(goal_id)
        return True

    def get_goal(self, goal_id: str) -> Optional[ActionGoal]:
        return self._goals.get(goal_id)

    def get_goal_state(self, goal_id: str) -> Optional[GoalState]:
        """Goal 状态（包括已移除的 Goal）"""
        goal = self._goals.get(goal_id)
        if goal is not None:
            return goal.state
        return self._finished.get(goal_id)

    def list_goals(self, action_name: Optional[str] = None, active_only: bool = False) -> List[ActionGoal]:
        goals = list(self._goals.values())
        if action_name:
            goals = [g for g in goals if g.action_name == action_name]
        if active_only:
            goals = [g for g in goals if g.is_active]
        return goals

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "actions": len(self._servers),
            "goals": len(self._goals),
            "active_goals": sum(1 for g in self._goals.values() if g.is_active),
        }

    # ============== 内部 ==============

    def _forget(self, goal_id: str) -> None:
        goal = self._goals.pop(goal_id, None)
        if goal is None:
            return
        self._finished[goal_id] = goal.state
        while len(self._finished) > MAX_FINISHED_IDS:
            self._finished.popitem(last=False)

    def _transition(self, goal: ActionGoal, new_state: GoalState, reason: Optional[str] = None) -> None:
        if new_state not in _TRANSITIONS[goal.state]:
            raise ActionError(
                f"非法的 Goal 状态转换: {goal.goal_id} {goal.state.value} -> {new_state.value}"
            )
        goal.state = new_state
        self._publish_status(goal, reason)

    def _publish_status(self, goal: ActionGoal, reason: Optional[str] = None) -> None:
        server = goal._server
        if server is None or server._status_pub is None or server._status_pub.closed:
            return
        message = GoalStatusMessage(
            action_name=goal.action_name,
            goal_id=goal.goal_id,
            state=goal.state.value,
            reason=reason,
        )
        task = asyncio.ensure_future(server._status_pub.publish(message))
        self._status_tasks.add(task)
        task.add_done_callback(self._on_status_published)

    def _on_status_published(self, task: asyncio.Task) -> None:
        self._status_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.debug(f"Goal 状态发布失败: {error}")

    def _publish_feedback(self, goal: ActionGoal, feedback: Any) -> bool:
        if not goal.is_active or goal.feedback is None:
            return False
        goal._feedback_seq += 1
        goal.last_feedback = feedback
        envelope = MessageEnvelope(
            topic=goal.feedback.topic_name,
            payload=feedback,
            stamp=self.clock.now(),
            sequence=goal._feedback_seq,
            publisher_id=goal.goal_id,
            source=(goal._server.owner or "") if goal._server else "",
        )
        goal.feedback.offer(envelope)
        return True

    def _finalize(
        self,
        goal: ActionGoal,
        state: GoalState,
        result: Any = None,
        reason: Optional[str] = None,
        forced: bool = False,
    ) -> bool:
        """
        写入最终结果

        进入 CANCELING 后的任何结束方式都记为 CANCELED。

        Returns:
            False 表示 Goal 已经结束
        """
        if goal.state in TERMINAL_STATES:
            return False

        if goal.state is GoalState.CANCELING:
            state = GoalState.CANCELED
            reason = reason or goal.cancel_reason
        elif goal.state is GoalState.EXECUTING and state is GoalState.CANCELED:
            self._transition(goal, GoalState.CANCELING, reason)

        self._transition(goal, state, reason)
        goal.finished_at = datetime.now()
        goal.finished_stamp = self.clock.now()
        goal.result = GoalResult(
            goal_id=goal.goal_id,
            state=state,
            result=result,
            reason=reason,
            forced=forced,
        )
        goal._done.set()
        if goal.feedback is not None:
            goal.feedback.close()
        if goal._watchdog is not None and goal._watchdog is not asyncio.current_task():
            goal._watchdog.cancel()

        self._stats[state.value] += 1
        if forced:
            self._stats["forced"] += 1
        self.logger.info(f"Goal 结束: {goal.action_name}/{goal.goal_id} -> {state.value}")
        return True

    def _request_cancel(self, goal: ActionGoal, reason: str) -> None:
        goal.cancel_reason = reason
        self._transition(goal, GoalState.CANCELING, reason)
        goal.token.cancel(reason)
        grace = goal._server.cancel_grace if goal._server else self._cancel_grace
        goal._watchdog = asyncio.ensure_future(self._cancel_watchdog(goal, grace))

    async def _cancel_watchdog(self, goal: ActionGoal, grace: float) -> None:
        """宽限期内未确认取消则强制结束"""
        try:
            await asyncio.wait_for(goal._done.wait(), timeout=grace)
            return
        except asyncio.TimeoutError:
            pass
        if goal.state is not GoalState.CANCELING:
            return

        self.logger.warning(f"Goal 未在 {grace:.3f}s 内确认取消，强制结束: {goal.goal_id}")
        self._finalize(goal, GoalState.CANCELED, reason=goal.cancel_reason, forced=True)
        if goal._task is not None and not goal._task.done():
            goal._task.cancel()
        server = goal._server
        if server is not None and server._current is goal:
            server._current = None
            self._dispatch(server)

    def _dispatch(self, server: ActionServer) -> None:
        """空闲时启动队首的 Goal"""
        if server._current is not None or server.closed:
            return
        while server._queue:
            goal = server._queue.popleft()
            if goal.state is not GoalState.PENDING:
                continue
            self._transition(goal, GoalState.EXECUTING)
            goal.started_at = datetime.now()
            server._current = goal
            goal._task = asyncio.ensure_future(self._run_goal(server, goal))
            return

    async def _run_goal(self, server: ActionServer, goal: ActionGoal) -> None:
        handle = ServerGoalHandle(self, goal)
        try:
            outcome = server.execute(handle)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except OperationCanceled as e:
            self._finalize(goal, GoalState.CANCELED, reason=e.reason or goal.cancel_reason)
        except asyncio.CancelledError:
            self._finalize(goal, GoalState.CANCELED, reason="执行任务被终止", forced=True)
            raise
        except Exception as e:
            self.logger.error(f"Goal 执行失败 [{goal.action_name}/{goal.goal_id}]: {e}", exc_info=True)
            self._finalize(goal, GoalState.ABORTED, reason=str(e) or type(e).__name__)
        else:
            if goal.state is GoalState.CANCELING:
                self._finalize(goal, GoalState.CANCELED, result=outcome)
            else:
                self._finalize(goal, GoalState.SUCCEEDED, result=outcome)
        finally:
            if server._current is goal:
                server._current = None
                self._dispatch(server)
