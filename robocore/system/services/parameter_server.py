"""
参数服务器

保存全局参数和节点参数，并以服务形式对外提供读写:
- /parameters/get
- /parameters/set
- /parameters/list

节点参数优先于全局参数；键支持点号分隔的嵌套访问。
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, TYPE_CHECKING

from robocore.middleware.messages import (
    GetParameterRequest,
    GetParameterResponse,
    ListParametersRequest,
    ListParametersResponse,
    SetParameterRequest,
    SetParameterResponse,
)
from robocore.system.services.logger import LoggerMixin

if TYPE_CHECKING:
    from robocore.middleware.services import ServiceRegistry, ServiceServer

GET_SERVICE = "/parameters/get"
SET_SERVICE = "/parameters/set"
LIST_SERVICE = "/parameters/list"

_MISSING = object()


def _lookup(values: Dict[str, Any], key: str) -> Any:
    """按点号分隔的键查找，找不到返回 _MISSING"""
    if key in values:
        return values[key]
    value: Any = values
    for k in key.split("."):
        if isinstance(value, dict) and k in value:
            value = value[k]
        else:
            return _MISSING
    return value


def _flatten(values: Dict[str, Any], prefix: str = "") -> List[str]:
    names = []
    for key, value in values.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict) and value:
            names.extend(_flatten(value, f"{name}."))
        else:
            names.append(name)
    return names


class ParameterServer(LoggerMixin):
    """参数服务器"""

    def __init__(
        self,
        services: Optional[ServiceRegistry] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ):
        """
        Args:
            services: 服务注册表，提供时 start() 注册参数服务
            parameters: 初始全局参数
        """
        self.services = services
        self._global: Dict[str, Any] = dict(parameters or {})
        self._nodes: Dict[str, Dict[str, Any]] = {}
        self._servers: List[ServiceServer] = []

    # ============== 直接访问 ==============

    def declare_node(self, node: str, parameters: Optional[Dict[str, Any]] = None) -> None:
        """登记节点参数（node 为节点完整名称）"""
        self._nodes[node] = dict(parameters or {})

    def remove_node(self, node: str) -> None:
        self._nodes.pop(node, None)

    def has(self, name: str, node: Optional[str] = None) -> bool:
        return self._resolve(name, node) is not _MISSING

    def _resolve(self, name: str, node: Optional[str]) -> Any:
        if node is not None and node in self._nodes:
            value = _lookup(self._nodes[node], name)
            if value is not _MISSING:
                return value
        return _lookup(self._global, name)

    def get(self, name: str, node: Optional[str] = None, default: Any = None) -> Any:
        """读取参数：节点参数 → 全局参数 → default"""
        value = self._resolve(name, node)
        return default if value is _MISSING else value

    def set(self, name: str, value: Any, node: Optional[str] = None) -> None:
        """
        写入参数

        Raises:
            KeyError: 节点未登记
        """
        if node is None:
            self._global[name] = value
        else:
            if node not in self._nodes:
                raise KeyError(f"节点未登记: {node}")
            self._nodes[node][name] = value
        self.logger.debug(f"参数更新: {node or '<global>'} {name}={value!r}")

    def list(self, node: Optional[str] = None, prefix: str = "") -> List[str]:
        """列出参数名（嵌套字典展开为点号路径）"""
        values = self._global if node is None else self._nodes.get(node, {})
        return sorted(n for n in _flatten(values) if n.startswith(prefix))

    # ============== 服务 ==============

    def _handle_get(self, request: GetParameterRequest) -> GetParameterResponse:
        value = self._resolve(request.name, request.node)
        if value is _MISSING:
            return GetParameterResponse(success=False, error_message=f"参数不存在: {request.name}")
        return GetParameterResponse(success=True, value=value)

    def _handle_set(self, request: SetParameterRequest) -> SetParameterResponse:
        try:
            self.set(request.name, request.value, node=request.node)
        except KeyError as e:
            return SetParameterResponse(success=False, error_message=str(e.args[0]))
        return SetParameterResponse(success=True)

    def _handle_list(self, request: ListParametersRequest) -> ListParametersResponse:
        return ListParametersResponse(names=self.list(node=request.node, prefix=request.prefix))

    async def start(self) -> None:
        """注册参数服务"""
        if self.services is None or self._servers:
            return
        self._servers = [
            self.services.register(
                GET_SERVICE, self._handle_get, GetParameterRequest, GetParameterResponse
            ),
            self.services.register(
                SET_SERVICE, self._handle_set, SetParameterRequest, SetParameterResponse
            ),
            self.services.register(
                LIST_SERVICE, self._handle_list, ListParametersRequest, ListParametersResponse
            ),
        ]
        self.logger.info("参数服务已启动")

    async def stop(self) -> None:
        for server in self._servers:
            await server.close(grace=0)
        self._servers = []
