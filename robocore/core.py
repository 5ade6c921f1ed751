"""
robocore 核心入口

提供系统的统一入口和生命周期管理：
按配置构建消息总线、服务注册表、Action 协调器、参数服务器和执行器，
实例化配置中启用的节点，并在收到停止信号后优雅关闭。
"""

from __future__ import annotations

import asyncio
import importlib
import signal
from typing import Any, Dict, Optional

from robocore.errors import ConfigError
from robocore.system.services.config_center import ConfigCenter, RoboCoreConfig
from robocore.system.services.logger import get_logger, set_log_level
from robocore.middleware.message_bus import MessageBus
from robocore.middleware.services import ServiceRegistry
from robocore.middleware.actions import ActionCoordinator
from robocore.runtime.clock import Clock
from robocore.runtime.executor import Executor, ShutdownReport
from robocore.system.services.parameter_server import ParameterServer

logger = get_logger(__name__)


def load_node_class(path: str) -> type:
    """
    按 "package.module:ClassName" 导入节点类

    Raises:
        ConfigError: 格式错误或导入失败
    """
    module_name, sep, class_name = path.partition(":")
    if not sep or not module_name or not class_name:
        raise ConfigError(f"node_class 格式应为 'package.module:ClassName': {path}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"无法导入节点模块 {module_name}: {e}") from e
    node_class = getattr(module, class_name, None)
    if node_class is None or not isinstance(node_class, type):
        raise ConfigError(f"节点类不存在: {path}")
    return node_class


class RoboCore:
    """
    robocore 系统主类

    负责整个系统的初始化、启动和关闭。
    没有全局单例：所有组件在这里构建一次并显式传递。
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        config: Optional[RoboCoreConfig] = None,
        clock: Optional[Clock] = None,
    ):
        """
        初始化 robocore 系统

        Args:
            config_path: 配置文件路径；指定时文件必须存在，默认尝试 configs/system.yaml
            config: 已构造的配置对象（优先于 config_path）
            clock: 时钟
        """
        self.config_path = config_path or "configs/system.yaml"
        self._config_required = config_path is not None
        self._initial_config = config
        self.clock = clock or Clock()

        self.config: Optional[ConfigCenter] = None
        self.bus: Optional[MessageBus] = None
        self.services: Optional[ServiceRegistry] = None
        self.actions: Optional[ActionCoordinator] = None
        self.parameters: Optional[ParameterServer] = None
        self.executor: Optional[Executor] = None
        self.node_ids: Dict[str, str] = {}  # 配置中的节点键 -> 节点 ID

        self._stop_event: Optional[asyncio.Event] = None
        self._initialized = False
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def initialize(self) -> None:
        """
        初始化系统所有组件

        Raises:
            ConfigError: 配置缺失或无效，节点类无法加载
        """
        if self._initialized:
            return
        logger.info("正在初始化 robocore 系统...")

        # 1. 加载配置
        if self._initial_config is not None:
            self.config = ConfigCenter.from_config(self._initial_config)
        else:
            self.config = ConfigCenter(self.config_path, required=self._config_required)
            await self.config.load()
        system = self.config.config.system
        set_log_level(system.log_level)
        logger.info(f"配置加载完成: {system.name}")

        # 2. 通信设施
        self.bus = MessageBus(config=self.config, clock=self.clock)
        self.services = ServiceRegistry(config=self.config)
        self.actions = ActionCoordinator(bus=self.bus, config=self.config, clock=self.clock)
        self.parameters = ParameterServer(self.services, self.config.config.parameters)
        await self.parameters.start()

        # 3. 执行器
        self.executor = Executor(
            bus=self.bus,
            services=self.services,
            actions=self.actions,
            config=self.config,
            clock=self.clock,
            parameter_server=self.parameters,
        )

        # 4. 配置中的节点
        for key, node_config in self.config.config.nodes.items():
            if not node_config.enabled:
                logger.info(f"节点已禁用，跳过: {key}")
                continue
            if not node_config.node_class:
                raise ConfigError(f"节点缺少 node_class: {key}")
            node_class = load_node_class(node_config.node_class)
            try:
                node = node_class()
            except Exception as e:
                raise ConfigError(f"节点实例化失败 {key}: {e}") from e
            self.node_ids[key] = await self.executor.add_node(
                node,
                name=key,
                namespace=node_config.namespace,
                rate_hz=node_config.rate_hz,
                parameters=node_config.parameters,
            )

        self._initialized = True
        logger.info(f"robocore 系统初始化完成: {len(self.node_ids)} 个节点")

    async def add_node(self, node: Any, **kwargs: Any) -> str:
        """注册节点（参数同 Executor.add_node）"""
        if not self._initialized:
            await self.initialize()
        return await self.executor.add_node(node, **kwargs)

    async def start(self) -> None:
        """启动系统"""
        if self._running:
            logger.warning("系统已在运行中")
            return
        if not self._initialized:
            await self.initialize()

        logger.info("正在启动 robocore 系统...")
        self._stop_event = asyncio.Event()
        await self.executor.start()
        self._running = True
        logger.info("robocore 系统启动完成")

    async def stop(self) -> ShutdownReport:
        """停止系统"""
        if not self._running:
            return ShutdownReport()

        logger.info("正在停止 robocore 系统...")
        self._running = False
        report = await self.executor.stop()
        await self.parameters.stop()
        await self.services.shutdown()
        self.bus.close()
        logger.info("robocore 系统已停止")
        return report

    def request_stop(self) -> None:
        """请求停止（可在信号处理函数中调用）"""
        if self._stop_event is not None:
            self._stop_event.set()

    def _install_signal_handlers(self) -> bool:
        loop = asyncio.get_running_loop()
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self.request_stop)
        except (NotImplementedError, RuntimeError):
            # 非主线程或不支持的平台
            return False
        return True

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    async def run(
        self,
        duration: Optional[float] = None,
        install_signal_handlers: bool = True,
    ) -> ShutdownReport:
        """
        运行系统（阻塞直到收到 SIGINT/SIGTERM、request_stop() 或超过 duration 秒）

        Returns:
            ShutdownReport
        """
        await self.start()
        installed = install_signal_handlers and self._install_signal_handlers()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=duration)
        except asyncio.TimeoutError:
            logger.info(f"运行时长已到: {duration}s")
        finally:
            if installed:
                self._remove_signal_handlers()
            report = await self.stop()
        return report
