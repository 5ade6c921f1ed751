"""
服务管理

命名的请求-响应端点。每个服务名最多绑定一个处理函数；
每次调用都有截止时间，超时以错误形式返回，不会无限挂起。
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Type, Union, TYPE_CHECKING

from robocore.errors import (
    DuplicateService,
    HandlerError,
    NoServer,
    ServiceTimeout,
    TypeMismatch,
)
from robocore.runtime.cancellation import CancellationToken, wait_cancellable
from robocore.system.services.logger import LoggerMixin

if TYPE_CHECKING:
    from robocore.system.services.config_center import ConfigCenter


# 服务处理函数：接收请求，返回响应（可以是协程函数）
ServiceHandler = Callable[[Any], Union[Any, Awaitable[Any]]]

DEFAULT_SERVICE_TIMEOUT = 5.0  # 默认调用截止时间（秒）


@dataclass
class ServiceInfo:
    """服务信息"""
    name: str
    request_type: Optional[Type[Any]] = None
    response_type: Optional[Type[Any]] = None
    owner: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    call_count: int = 0
    error_count: int = 0
    timeout_count: int = 0
    last_call_time: Optional[datetime] = None


class _Endpoint:
    """服务表条目"""

    def __init__(self, info: ServiceInfo, handler: ServiceHandler):
        self.info = info
        self.handler = handler
        self.in_flight: Set[asyncio.Task] = set()
        self.evicted = False  # 注销时被强制终止的调用改为 NoServer


class ServiceServer:
    """服务端句柄，关闭即注销"""

    def __init__(self, registry: ServiceRegistry, endpoint: _Endpoint):
        self._registry = registry
        self._endpoint = endpoint

    @property
    def name(self) -> str:
        return self._endpoint.info.name

    @property
    def info(self) -> ServiceInfo:
        return self._endpoint.info

    @property
    def in_flight(self) -> int:
        """正在处理的调用数"""
        return len(self._endpoint.in_flight)

    @property
    def active(self) -> bool:
        return self._registry._servers.get(self.name) is self._endpoint

    async def close(self, grace: Optional[float] = None) -> None:
        """注销服务，进行中的调用在宽限期内完成"""
        if self.active:
            await self._registry.unregister(self.name, grace=grace)

    def __repr__(self) -> str:
        return f"<ServiceServer {self.name}{'' if self.active else ' closed'}>"


class ServiceClient:
    """
    服务客户端

    只按名称引用服务，每次调用时重新查找处理函数。
    """

    def __init__(self, registry: ServiceRegistry, service_name: str, owner: Optional[str] = None):
        self._registry = registry
        self.service_name = service_name
        self.owner = owner

    def is_available(self) -> bool:
        return self._registry.service_exists(self.service_name)

    async def wait_for_service(
        self,
        timeout: Optional[float] = None,
        poll_interval: float = 0.05,
        token: Optional[CancellationToken] = None,
    ) -> bool:
        """
        等待服务上线

        Returns:
            服务是否可用
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while not self.is_available():
            if deadline is not None and loop.time() >= deadline:
                return False
            if token is not None:
                if await token.wait(timeout=poll_interval):
                    return False
            else:
                await asyncio.sleep(poll_interval)
        return True

    async def call(
        self,
        request: Any,
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> Any:
        """调用服务，语义同 ServiceRegistry.call"""
        return await self._registry.call(self.service_name, request, timeout=timeout, token=token)

    def __repr__(self) -> str:
        return f"<ServiceClient {self.service_name}>"


class ServiceRegistry(LoggerMixin):
    """
    服务注册表

    管理服务的注册、调用和注销。
    并发调用会同时分派给同一个处理函数，串行化由处理函数自行负责。
    """

    def __init__(
        self,
        config: Optional[ConfigCenter] = None,
        default_timeout: float = DEFAULT_SERVICE_TIMEOUT,
    ):
        """
        初始化服务注册表

        Args:
            config: 配置中心（提供 service_timeout_ms）
            default_timeout: 默认调用截止时间（秒）
        """
        self.config = config
        self._default_timeout = default_timeout
        if config is not None:
            self._default_timeout = config.config.system.service_timeout_ms / 1000.0

        self._servers: Dict[str, _Endpoint] = {}

    @property
    def default_timeout(self) -> float:
        return self._default_timeout

    def register(
        self,
        service_name: str,
        handler: ServiceHandler,
        request_type: Optional[Type[Any]] = None,
        response_type: Optional[Type[Any]] = None,
        owner: Optional[str] = None,
    ) -> ServiceServer:
        """
        注册服务（作为服务端）

        Args:
            service_name: 服务名称
            handler: 服务处理函数
            request_type: 请求类型，None 表示不校验
            response_type: 响应类型，None 表示不校验
            owner: 所属节点 ID

        Returns:
            ServiceServer

        Raises:
            DuplicateService: 同名服务已注册
        """
        if service_name in self._servers:
            raise DuplicateService(f"服务已存在: {service_name}")

        info = ServiceInfo(
            name=service_name,
            request_type=request_type,
            response_type=response_type,
            owner=owner,
        )
        endpoint = _Endpoint(info, handler)
        self._servers[service_name] = endpoint

        self.logger.info(f"注册服务: {service_name}")
        return ServiceServer(self, endpoint)

    async def unregister(self, service_name: str, grace: Optional[float] = None) -> bool:
        """
        注销服务

        新的调用立即得到 NoServer；进行中的调用在宽限期内完成，
        超过宽限期的调用被终止，其调用方得到 NoServer。

        Args:
            service_name: 服务名称
            grace: 宽限期（秒），默认等于默认调用截止时间

        Returns:
            服务是否存在
        """
        endpoint = self._servers.pop(service_name, None)
        if endpoint is None:
            return False

        pending = set(endpoint.in_flight)
        if pending:
            grace = self._default_timeout if grace is None else grace
            self.logger.info(f"注销服务，等待 {len(pending)} 个进行中的调用: {service_name}")
            _, still_running = await asyncio.wait(pending, timeout=grace)
            if still_running:
                endpoint.evicted = True
                for task in still_running:
                    task.cancel()
                await asyncio.wait(still_running)
                self.logger.warning(
                    f"服务注销时终止了 {len(still_running)} 个未完成的调用: {service_name}"
                )

        self.logger.info(f"注销服务: {service_name}")
        return True

    async def _invoke(self, endpoint: _Endpoint, request: Any) -> Any:
        """在独立任务中执行处理函数，并把异常转换为服务错误"""
        name = endpoint.info.name
        try:
            response = endpoint.handler(request)
            if inspect.isawaitable(response):
                response = await response
        except asyncio.CancelledError:
            if endpoint.evicted:
                raise NoServer(f"服务在调用期间被注销: {name}") from None
            raise
        except Exception as e:
            endpoint.info.error_count += 1
            self.logger.error(f"服务处理错误 [{name}]: {e}")
            raise HandlerError(name, str(e) or type(e).__name__) from e

        response_type = endpoint.info.response_type
        if response_type is not None and not isinstance(response, response_type):
            endpoint.info.error_count += 1
            raise HandlerError(
                name,
                f"响应类型不符: 期望 {response_type.__qualname__}, 实际 {type(response).__qualname__}",
            )
        return response

    async def call(
        self,
        service_name: str,
        request: Any,
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> Any:
        """
        调用服务

        Args:
            service_name: 服务名称
            request: 请求
            timeout: 截止时间（秒），默认 service_timeout_ms
            token: 取消令牌

        Returns:
            响应

        Raises:
            NoServer: 服务未注册，或调用期间被注销
            TypeMismatch: 请求类型不符
            ServiceTimeout: 处理超过截止时间
            HandlerError: 处理函数抛出异常
            OperationCanceled: 令牌触发
        """
        endpoint = self._servers.get(service_name)
        if endpoint is None:
            raise NoServer(f"服务不存在: {service_name}")

        request_type = endpoint.info.request_type
        if request_type is not None and not isinstance(request, request_type):
            raise TypeMismatch(service_name, request_type, type(request))

        timeout = self._default_timeout if timeout is None else timeout

        endpoint.info.call_count += 1
        endpoint.info.last_call_time = datetime.now()

        task = asyncio.ensure_future(self._invoke(endpoint, request))
        endpoint.in_flight.add(task)
        task.add_done_callback(endpoint.in_flight.discard)

        try:
            return await wait_cancellable(task, token, timeout)
        except asyncio.TimeoutError:
            endpoint.info.timeout_count += 1
            self.logger.warning(f"服务调用超时: {service_name} ({timeout:.3f}s)")
            raise ServiceTimeout(f"服务调用超时: {service_name} ({timeout:.3f}s)") from None

    def create_client(self, service_name: str, owner: Optional[str] = None) -> ServiceClient:
        """创建服务客户端（服务可以尚未注册）"""
        return ServiceClient(self, service_name, owner=owner)

    def service_exists(self, service_name: str) -> bool:
        return service_name in self._servers

    def get_service_info(self, service_name: str) -> Optional[ServiceInfo]:
        """获取服务信息"""
        endpoint = self._servers.get(service_name)
        return endpoint.info if endpoint else None

    def list_services(self) -> List[str]:
        """列出所有服务"""
        return list(self._servers.keys())

    def get_stats(self) -> Dict[str, Any]:
        """获取服务统计信息"""
        return {
            "total_services": len(self._servers),
            "services": {
                name: {
                    "owner": ep.info.owner,
                    "calls": ep.info.call_count,
                    "errors": ep.info.error_count,
                    "timeouts": ep.info.timeout_count,
                    "in_flight": len(ep.in_flight),
                }
                for name, ep in self._servers.items()
            },
        }

    async def shutdown(self, grace: float = 0.0) -> None:
        """注销全部服务"""
        for name in list(self._servers):
            await self.unregister(name, grace=grace)
