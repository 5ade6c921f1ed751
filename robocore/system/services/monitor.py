"""
系统监控服务

按 heartbeat_interval_ms 周期向 /system/status 发布 SystemStatusMessage：
节点数量、进程 CPU 与内存占用、已出错节点的错误信息。
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional, TYPE_CHECKING

import psutil

from robocore.middleware.messages import SystemStatus, SystemStatusMessage
from robocore.runtime.cancellation import CancellationToken
from robocore.runtime.clock import Rate
from robocore.system.services.logger import LoggerMixin

if TYPE_CHECKING:
    from robocore.middleware.message_bus import Publisher
    from robocore.runtime.executor import Executor

STATUS_TOPIC = "/system/status"


class SystemMonitor(LoggerMixin):
    """
    系统监控（心跳）

    CPU/内存超过阈值时状态降级为 WARNING / CRITICAL，有节点出错时为 ERROR。
    """

    def __init__(self, executor: Executor, interval: float = 1.0, name: str = "system_monitor"):
        if interval <= 0:
            raise ValueError(f"心跳间隔必须为正数: {interval}")
        self.executor = executor
        self.interval = interval
        self.name = name
        self._process = psutil.Process()
        self._publisher: Optional[Publisher] = None
        self._task: Optional[asyncio.Task] = None
        self._token: Optional[CancellationToken] = None
        self.heartbeats = 0

        # 指标阈值
        self._thresholds: Dict[str, Dict[str, float]] = {
            "cpu_usage": {"warning": 80.0, "critical": 95.0},
            "memory_percent": {"warning": 85.0, "critical": 95.0},
        }

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def collect(self) -> SystemStatusMessage:
        """采集一次系统状态"""
        stats = self.executor.get_system_stats()
        cpu = self._process.cpu_percent(interval=None)
        memory_mb = self._process.memory_info().rss / (1024 * 1024)
        memory_percent = self._process.memory_percent()

        warnings = []
        status = SystemStatus.HEALTHY
        for metric, value in (("cpu_usage", cpu), ("memory_percent", memory_percent)):
            thresholds = self._thresholds[metric]
            if value >= thresholds["critical"]:
                status = SystemStatus.CRITICAL
                warnings.append(f"{metric} 达到危险水平: {value:.1f}")
            elif value >= thresholds["warning"]:
                if status is SystemStatus.HEALTHY:
                    status = SystemStatus.WARNING
                warnings.append(f"{metric} 达到警告水平: {value:.1f}")
        if stats.errors and status is not SystemStatus.CRITICAL:
            status = SystemStatus.ERROR

        return SystemStatusMessage(
            source=self.name,
            node_name=self.executor.config.config.system.name if self.executor.config else "robocore",
            status=status,
            cpu_usage=cpu,
            memory_usage=memory_mb,
            total_nodes=stats.total_nodes,
            active_nodes=stats.active_nodes,
            finalized_nodes=stats.finalized_nodes,
            uptime_s=stats.uptime_s,
            errors=list(stats.errors),
            warnings=warnings,
        )

    async def publish_once(self) -> SystemStatusMessage:
        if self._publisher is None:
            self._publisher = self.executor.bus.create_publisher(
                STATUS_TOPIC, SystemStatusMessage, source=self.name
            )
        message = self.collect()
        await self._publisher.publish(message, token=self._token)
        self.heartbeats += 1
        return message

    async def _loop(self) -> None:
        rate = Rate.with_period(self.interval, clock=self.executor.clock)
        # 首次调用 cpu_percent 只建立基线
        self._process.cpu_percent(interval=None)
        while not self._token.cancelled:
            rate.tick()
            try:
                await self.publish_once()
            except Exception as e:
                self.logger.warning(f"心跳发布失败: {e}")
            if not await rate.sleep(self._token):
                return

    async def start(self) -> None:
        if self.running:
            return
        self._token = CancellationToken()
        self._task = asyncio.create_task(self._loop(), name="robocore-heartbeat")
        self.logger.info(f"系统监控已启动: {STATUS_TOPIC} 每 {self.interval:.3f}s")

    async def stop(self) -> None:
        if self._token is not None:
            self._token.cancel("监控停止")
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=1.0)
            except asyncio.TimeoutError:
                self.logger.warning("心跳循环未在 1.0s 内结束，已强制取消")
            self._task = None
        if self._publisher is not None:
            self._publisher.close()
            self._publisher = None
        self.logger.info("系统监控已停止")
