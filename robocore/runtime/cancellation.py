"""
协作式取消

CancellationToken 是显式传递的取消信号：执行器关闭、Action 取消都通过它通知。
回调在挂起点（队列等待、服务响应、Goal 结果）观察令牌并尽快退出。
"""

from __future__ import annotations

import asyncio
import inspect
import weakref
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from robocore.errors import OperationCanceled

T = TypeVar("T")


class CancellationToken:
    """
    取消令牌

    - cancel() 只生效一次，并级联取消所有子令牌
    - child() 创建随父令牌一起取消的子令牌
    """

    def __init__(self, parent: Optional[CancellationToken] = None):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._children: "weakref.WeakSet[CancellationToken]" = weakref.WeakSet()
        self._callbacks: List[Callable[[Optional[str]], Any]] = []
        if parent is not None:
            parent._children.add(self)
            if parent.cancelled:
                self.cancel(parent.reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def child(self) -> CancellationToken:
        """创建子令牌"""
        return CancellationToken(parent=self)

    def cancel(self, reason: Optional[str] = None) -> bool:
        """
        触发取消

        Returns:
            是否为首次触发
        """
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        for child in list(self._children):
            child.cancel(reason)
        for callback in self._callbacks:
            callback(reason)
        self._callbacks.clear()
        return True

    def add_callback(self, callback: Callable[[Optional[str]], Any]) -> None:
        """注册取消回调；已取消时立即调用"""
        if self.cancelled:
            callback(self._reason)
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCanceled(self._reason)

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """
        等待取消

        Args:
            timeout: 最长等待时间，None 表示一直等待

        Returns:
            True 表示已取消，False 表示超时
        """
        if self.cancelled:
            return True
        if timeout is None:
            await self._event.wait()
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, timeout))
            return True
        except asyncio.TimeoutError:
            return self.cancelled

    def __repr__(self) -> str:
        state = f"cancelled({self._reason!r})" if self.cancelled else "active"
        return f"<CancellationToken {state}>"


def _consume_result(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


def discard(aw: Awaitable[Any]) -> None:
    """放弃一个不再等待的可等待对象，并吞掉其最终异常，避免未取回告警"""
    if inspect.iscoroutine(aw):
        aw.close()
        return
    future = asyncio.ensure_future(aw)
    future.cancel()
    future.add_done_callback(_consume_result)


async def wait_cancellable(
    aw: Awaitable[T],
    token: Optional[CancellationToken] = None,
    timeout: Optional[float] = None,
) -> T:
    """
    等待 aw 完成，同时观察取消令牌与截止时间

    Args:
        aw: 可等待对象
        token: 取消令牌
        timeout: 超时时间（秒）

    Returns:
        aw 的结果

    Raises:
        OperationCanceled: 令牌先触发
        asyncio.TimeoutError: 超过截止时间
    """
    if token is not None and token.cancelled:
        discard(aw)
        raise OperationCanceled(token.reason)

    task = asyncio.ensure_future(aw)
    waiters = {task}
    cancel_waiter: Optional[asyncio.Task] = None
    if token is not None:
        cancel_waiter = asyncio.ensure_future(token._event.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(
            waiters,
            timeout=None if timeout is None else max(0.0, timeout),
            return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        discard(task)
        raise
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    discard(task)
    if cancel_waiter is not None and cancel_waiter in done:
        raise OperationCanceled(token.reason)
    raise asyncio.TimeoutError()
