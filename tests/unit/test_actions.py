"""
Action 协调器单元测试

覆盖 Goal 状态机、取消（确认 / 强制）、排队与抢占策略、反馈和结果保留。
"""

import asyncio
from dataclasses import dataclass

import pytest

from robocore.errors import (
    ActionServerNotFound,
    CancelTimeout,
    DuplicateService,
    GoalAlreadyFinished,
    GoalRejected,
    NotFound,
    OperationCanceled,
    ResultTimeout,
    TypeMismatch,
)
from robocore.middleware.actions import ActionCoordinator, GoalPolicy, GoalState
from robocore.middleware.messages import GoalStatusMessage
from robocore.runtime.cancellation import wait_cancellable


@dataclass
class MoveGoal:
    distance: float


async def move(handle):
    """按 0.25 步长反馈进度"""
    progress = 0.0
    while progress < handle.request.distance:
        progress += 0.25
        handle.publish_feedback(progress)
        await asyncio.sleep(0)
    return {"travelled": progress}


class TestActionRegistration:
    """Action 注册测试"""

    def test_duplicate_action(self, actions):
        actions.register_action("/move", move)
        with pytest.raises(DuplicateService):
            actions.register_action("/move", move)
        assert actions.list_actions() == ["/move"]

    @pytest.mark.asyncio
    async def test_submit_to_unknown_action(self, actions):
        with pytest.raises(ActionServerNotFound):
            await actions.submit_goal("/missing", MoveGoal(1.0))

    @pytest.mark.asyncio
    async def test_goal_type_mismatch(self, actions):
        actions.register_action("/move", move, goal_type=MoveGoal)
        with pytest.raises(TypeMismatch):
            await actions.submit_goal("/move", {"distance": 1.0})
        assert actions.list_goals() == []

    @pytest.mark.asyncio
    async def test_goal_rejected(self, actions):
        """测试拒绝的 Goal 被丢弃"""
        actions.register_action("/move", move, accept=lambda goal: goal.distance > 0)
        with pytest.raises(GoalRejected):
            await actions.submit_goal("/move", MoveGoal(-1.0))
        assert actions.list_goals() == []
        assert actions.get_stats()["rejected"] == 1

    @pytest.mark.asyncio
    async def test_async_accept(self, actions):
        async def accept(goal):
            await asyncio.sleep(0)
            return True

        actions.register_action("/move", move, accept=accept)
        handle = await actions.submit_goal("/move", MoveGoal(0.5))
        result = await handle.get_result(timeout=1.0)
        assert result.succeeded


class TestGoalLifecycle:
    """Goal 生命周期测试"""

    @pytest.mark.asyncio
    async def test_succeed_with_feedback(self, actions):
        """测试执行成功并收到全部反馈"""
        actions.register_action("/move", move, goal_type=MoveGoal)
        handle = await actions.submit_goal("/move", MoveGoal(1.0))

        result = await handle.get_result(timeout=1.0)
        assert result.state is GoalState.SUCCEEDED
        assert result.result == {"travelled": 1.0}
        assert not result.forced

        feedback = [value async for value in handle.feedback()]
        assert feedback == [0.25, 0.5, 0.75, 1.0]

    @pytest.mark.asyncio
    async def test_sync_execute(self, actions):
        actions.register_action("/ping", lambda handle: "pong")
        handle = await actions.submit_goal("/ping", None)
        result = await handle.get_result(timeout=1.0)
        assert result.result == "pong"

    @pytest.mark.asyncio
    async def test_next_feedback(self, actions):
        release = asyncio.Event()

        async def execute(handle):
            handle.publish_feedback(0.5)
            await release.wait()
            return "ok"

        actions.register_action("/job", execute)
        handle = await actions.submit_goal("/job", None)

        assert await handle.next_feedback(timeout=1.0) == 0.5
        assert await handle.next_feedback(timeout=0.01) is None

        release.set()
        await handle.get_result(timeout=1.0)
        assert await handle.next_feedback(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_exception_aborts(self, actions):
        """测试执行函数异常时 Goal 进入 ABORTED"""
        async def execute(handle):
            raise RuntimeError("motor fault")

        actions.register_action("/job", execute)
        handle = await actions.submit_goal("/job", None)
        result = await handle.get_result(timeout=1.0)
        assert result.state is GoalState.ABORTED
        assert result.reason == "motor fault"

    @pytest.mark.asyncio
    async def test_explicit_abort(self, actions):
        """测试服务端显式 abort，返回值被忽略"""
        async def execute(handle):
            assert handle.abort("path blocked", result={"stopped_at": 0.3}) is True
            return "ignored"

        actions.register_action("/job", execute)
        handle = await actions.submit_goal("/job", None)
        result = await handle.get_result(timeout=1.0)
        assert result.state is GoalState.ABORTED
        assert result.reason == "path blocked"
        assert result.result == {"stopped_at": 0.3}

    @pytest.mark.asyncio
    async def test_server_handle_rejects_after_finish(self, actions):
        """测试 Goal 结束后服务端句柄上的操作报 GoalAlreadyFinished"""
        captured = []

        def execute(handle):
            captured.append(handle)
            handle.succeed(1)
            return "ignored"

        actions.register_action("/job", execute)
        client = await actions.submit_goal("/job", None)
        result = await client.get_result(timeout=1.0, acknowledge=False)
        assert result.state is GoalState.SUCCEEDED
        assert result.result == 1

        handle = captured[0]
        with pytest.raises(GoalAlreadyFinished):
            handle.succeed(2)
        with pytest.raises(GoalAlreadyFinished):
            handle.publish_feedback(3)
        with pytest.raises(GoalAlreadyFinished):
            handle.abort("late")
        with pytest.raises(GoalAlreadyFinished):
            handle.canceled()
        assert actions.get_goal(client.goal_id).result.result == 1

    @pytest.mark.asyncio
    async def test_result_timeout(self, actions):
        async def execute(handle):
            await handle.token.wait()

        actions.register_action("/job", execute)
        handle = await actions.submit_goal("/job", None)
        with pytest.raises(ResultTimeout):
            await handle.get_result(timeout=0.02)
        assert handle.state is GoalState.EXECUTING

    @pytest.mark.asyncio
    async def test_acknowledge_removes_goal_and_remembers_id(self, actions):
        """测试取走结果后移除 Goal，之后的取消仍报 GoalAlreadyFinished"""
        actions.register_action("/move", move)
        handle = await actions.submit_goal("/move", MoveGoal(0.25))
        await handle.get_result(timeout=1.0)

        assert actions.get_goal(handle.goal_id) is None
        assert actions.get_goal_state(handle.goal_id) is GoalState.SUCCEEDED
        with pytest.raises(GoalAlreadyFinished):
            actions.cancel_goal(handle.goal_id)

    @pytest.mark.asyncio
    async def test_cancel_unknown_goal(self, actions):
        with pytest.raises(NotFound):
            actions.cancel_goal("no-such-goal")

    @pytest.mark.asyncio
    async def test_status_published_in_order(self, bus, actions):
        """测试状态变更按顺序发布到状态话题"""
        actions.register_action("/move", move)
        status = bus.subscribe("/move/_action/status", GoalStatusMessage, capacity=16)

        handle = await actions.submit_goal("/move", MoveGoal(0.25))
        await handle.get_result(timeout=1.0)
        await asyncio.sleep(0.01)

        messages = [envelope.payload for envelope in status.drain()]
        assert [m.state for m in messages] == ["pending", "executing", "succeeded"]
        assert all(m.goal_id == handle.goal_id for m in messages)


class TestGoalCancel:
    """Goal 取消测试"""

    @pytest.mark.asyncio
    async def test_cancel_acknowledged_by_server(self, actions):
        """测试服务端观察令牌并确认取消"""
        async def execute(handle):
            await wait_cancellable(asyncio.sleep(10), handle.token)

        actions.register_action("/job", execute)
        handle = await actions.submit_goal("/job", None)
        await asyncio.sleep(0.01)

        state = await handle.cancel()
        assert state is GoalState.CANCELING

        result = await handle.get_result(timeout=1.0)
        assert result.state is GoalState.CANCELED
        assert not result.forced

    @pytest.mark.asyncio
    async def test_return_while_canceling_is_canceled(self, actions):
        """测试取消中正常返回也记为 CANCELED"""
        async def execute(handle):
            await handle.token.wait()
            assert handle.cancel_requested
            return "partial"

        actions.register_action("/job", execute)
        handle = await actions.submit_goal("/job", None)
        await asyncio.sleep(0.01)
        await handle.cancel()

        result = await handle.get_result(timeout=1.0)
        assert result.state is GoalState.CANCELED
        assert result.result == "partial"

    @pytest.mark.asyncio
    async def test_cancel_forced_after_grace(self, actions):
        """测试服务端不响应时在宽限期后强制结束"""
        async def stubborn(handle):
            await asyncio.sleep(10)

        actions.register_action("/job", stubborn, cancel_grace=0.05)
        handle = await actions.submit_goal("/job", None)
        await asyncio.sleep(0.01)

        await handle.cancel()
        result = await handle.get_result(timeout=1.0)
        assert result.state is GoalState.CANCELED
        assert result.forced
        assert actions.get_stats()["forced"] == 1

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent_while_canceling(self, actions):
        async def stubborn(handle):
            await asyncio.sleep(10)

        actions.register_action("/job", stubborn, cancel_grace=1.0)
        handle = await actions.submit_goal("/job", None)
        await asyncio.sleep(0.01)

        assert actions.cancel_goal(handle.goal_id) is GoalState.CANCELING
        assert actions.cancel_goal(handle.goal_id) is GoalState.CANCELING

    @pytest.mark.asyncio
    async def test_cancel_wait_timeout(self, actions):
        """测试等待取消超时"""
        async def stubborn(handle):
            await asyncio.sleep(10)

        actions.register_action("/job", stubborn, cancel_grace=1.0)
        handle = await actions.submit_goal("/job", None)
        await asyncio.sleep(0.01)

        with pytest.raises(CancelTimeout):
            await handle.cancel(wait=True, timeout=0.02)

    @pytest.mark.asyncio
    async def test_cancel_wait_returns_terminal_state(self, actions):
        async def execute(handle):
            await wait_cancellable(asyncio.sleep(10), handle.token)

        actions.register_action("/job", execute)
        handle = await actions.submit_goal("/job", None)
        await asyncio.sleep(0.01)

        assert await handle.cancel(wait=True, timeout=1.0) is GoalState.CANCELED

    @pytest.mark.asyncio
    async def test_cancel_finished_goal(self, actions):
        actions.register_action("/ping", lambda handle: "pong")
        handle = await actions.submit_goal("/ping", None)
        await handle.get_result(timeout=1.0, acknowledge=False)

        with pytest.raises(GoalAlreadyFinished):
            actions.cancel_goal(handle.goal_id)

    @pytest.mark.asyncio
    async def test_operation_canceled_without_request(self, actions):
        """测试执行函数自行抛出 OperationCanceled 记为 CANCELED"""
        async def execute(handle):
            raise OperationCanceled("lost localization")

        actions.register_action("/job", execute)
        handle = await actions.submit_goal("/job", None)
        result = await handle.get_result(timeout=1.0)
        assert result.state is GoalState.CANCELED
        assert result.reason == "lost localization"


class TestGoalPolicy:
    """并发策略测试"""

    @pytest.mark.asyncio
    async def test_queue_runs_goals_in_order(self, actions):
        """测试 QUEUE 策略一次执行一个 Goal"""
        release = asyncio.Event()
        order = []

        async def execute(handle):
            order.append(handle.request)
            if handle.request == "first":
                await release.wait()
            return handle.request

        actions.register_action("/job", execute)
        first = await actions.submit_goal("/job", "first")
        second = await actions.submit_goal("/job", "second")
        await asyncio.sleep(0.01)

        assert first.state is GoalState.EXECUTING
        assert second.state is GoalState.PENDING

        release.set()
        result = await second.get_result(timeout=1.0)
        assert result.result == "second"
        assert order == ["first", "second"]

    @pytest.mark.asyncio
    async def test_cancel_pending_goal(self, actions):
        """测试排队中的 Goal 直接取消，不会执行"""
        release = asyncio.Event()
        order = []

        async def execute(handle):
            order.append(handle.request)
            await release.wait()

        actions.register_action("/job", execute)
        first = await actions.submit_goal("/job", "first")
        second = await actions.submit_goal("/job", "second")

        assert actions.cancel_goal(second.goal_id) is GoalState.CANCELED

        release.set()
        await first.get_result(timeout=1.0)
        assert order == ["first"]

    @pytest.mark.asyncio
    async def test_preempt_cancels_executing_goal(self, actions):
        """测试 PREEMPT 策略新 Goal 取消正在执行的 Goal"""
        async def execute(handle):
            if handle.request == "first":
                await handle.token.wait()
                return "interrupted"
            return "done"

        actions.register_action("/job", execute, policy=GoalPolicy.PREEMPT)
        first = await actions.submit_goal("/job", "first")
        await asyncio.sleep(0.01)
        second = await actions.submit_goal("/job", "second")

        first_result = await first.get_result(timeout=1.0)
        assert first_result.state is GoalState.CANCELED
        assert first_result.result == "interrupted"

        second_result = await second.get_result(timeout=1.0)
        assert second_result.state is GoalState.SUCCEEDED


class TestGoalRetention:
    """结果保留测试"""

    @pytest.mark.asyncio
    async def test_sweep_removes_expired_goals(self, manual_clock):
        coordinator = ActionCoordinator(clock=manual_clock, goal_retention=10.0)
        coordinator.register_action("/ping", lambda handle: "pong")

        handle = await coordinator.submit_goal("/ping", None)
        await handle.get_result(timeout=1.0, acknowledge=False)

        assert coordinator.sweep() == 0
        assert coordinator.get_goal(handle.goal_id) is not None

        manual_clock.advance(10.0)
        assert coordinator.sweep() == 1
        assert coordinator.get_goal(handle.goal_id) is None
        with pytest.raises(GoalAlreadyFinished):
            coordinator.cancel_goal(handle.goal_id)

        await coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_config_values(self, bus, config_center):
        coordinator = ActionCoordinator(bus=bus, config=config_center)
        assert coordinator.cancel_grace == pytest.approx(0.2)
        assert coordinator.goal_retention == pytest.approx(5.0)


class TestCoordinatorShutdown:
    """关闭测试"""

    @pytest.mark.asyncio
    async def test_shutdown_cancels_active_goals(self, bus):
        coordinator = ActionCoordinator(bus=bus, cancel_grace=0.2)
        await coordinator.start()

        async def execute(handle):
            await asyncio.sleep(10)

        coordinator.register_action("/job", execute)
        running = await coordinator.submit_goal("/job", "a")
        queued = await coordinator.submit_goal("/job", "b")
        await asyncio.sleep(0.01)

        await coordinator.shutdown()
        assert running.state is GoalState.CANCELED
        assert queued.state is GoalState.CANCELED
        assert coordinator.list_actions() == []

    @pytest.mark.asyncio
    async def test_unregister_action(self, actions):
        async def execute(handle):
            await wait_cancellable(asyncio.sleep(10), handle.token)

        server = actions.register_action("/job", execute)
        running = await actions.submit_goal("/job", "a")
        queued = await actions.submit_goal("/job", "b")
        await asyncio.sleep(0.01)

        await server.close()
        assert running.state is GoalState.CANCELED
        assert queued.state is GoalState.CANCELED
        assert not actions.action_exists("/job")
        with pytest.raises(ActionServerNotFound):
            await actions.submit_goal("/job", "c")
