"""
错误类型

robocore 所有可预期错误的统一层级：

    RoboCoreError
    ├── RegistryError      {DuplicateId, NotFound, RegistryFull}
    ├── BusError           {TypeMismatch, ChannelClosed}
    ├── ServiceError       {NoServer, DuplicateService, ServiceTimeout, HandlerError}
    ├── ActionError        {GoalRejected, GoalAlreadyFinished, CancelTimeout,
    │                       ActionServerNotFound, ResultTimeout}
    ├── OperationCanceled
    └── ConfigError

注册/查询类错误同步抛给调用方；丢弃策略下的消息丢失不是错误。
"""

from __future__ import annotations

from typing import Any, Optional


class RoboCoreError(Exception):
    """robocore 错误基类"""


# ============== 节点注册 ==============

class RegistryError(RoboCoreError):
    """节点注册表错误"""


class DuplicateId(RegistryError):
    """节点 ID 或完整名称重复"""


class NotFound(RegistryError):
    """查找的对象不存在"""


class RegistryFull(RegistryError):
    """节点数量达到上限"""


# ============== 消息总线 ==============

class BusError(RoboCoreError):
    """消息总线错误"""


class TypeMismatch(BusError):
    """负载类型与话题（或端点）声明的类型不一致"""

    def __init__(self, name: str, expected: Any, actual: Any):
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"类型不匹配 [{name}]: 期望 {_type_name(expected)}, 实际 {_type_name(actual)}"
        )


class ChannelClosed(BusError):
    """订阅通道已关闭"""


# ============== 服务 ==============

class ServiceError(RoboCoreError):
    """服务调用错误"""


class NoServer(ServiceError):
    """服务未注册（或在调用期间被注销）"""


class DuplicateService(ServiceError):
    """同名服务已存在"""


class ServiceTimeout(ServiceError):
    """服务处理超过截止时间"""


class HandlerError(ServiceError):
    """服务处理函数抛出的异常"""

    def __init__(self, service_name: str, reason: str):
        self.service_name = service_name
        self.reason = reason
        super().__init__(f"服务处理错误 [{service_name}]: {reason}")


# ============== Action ==============

class ActionError(RoboCoreError):
    """Action 错误"""


class GoalRejected(ActionError):
    """Goal 被服务端拒绝"""


class GoalAlreadyFinished(ActionError):
    """Goal 已处于终止状态"""


class CancelTimeout(ActionError):
    """取消请求在等待时间内未到达终止状态"""


class ActionServerNotFound(ActionError):
    """Action 服务端未注册"""


class ResultTimeout(ActionError):
    """等待 Goal 结果超时"""


# ============== 其它 ==============

class OperationCanceled(RoboCoreError):
    """等待中的操作因取消令牌触发而终止"""

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason
        super().__init__(f"操作已取消: {reason}" if reason else "操作已取消")


class ConfigError(RoboCoreError):
    """配置文件缺失或无效"""


def _type_name(value: Any) -> str:
    if isinstance(value, type):
        return value.__qualname__
    return repr(value)
