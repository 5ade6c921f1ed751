"""
消息定义

常用机器人消息的负载结构。消息总线只按类型（类本身）做路由匹配，
不关心字段内容；这里的定义是节点之间约定的数据契约。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4


# ============== 基础几何类型 ==============

@dataclass
class Pose3D:
    """三维位姿（位置 + 四元数姿态 w, x, y, z）"""
    position: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    orientation: Tuple[float, float, float, float] = (1.0, 0.0, 0.0, 0.0)


@dataclass
class Twist3D:
    """三维速度（线速度 + 角速度）"""
    linear: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    angular: Tuple[float, float, float] = (0.0, 0.0, 0.0)


# ============== 机器人消息 ==============

@dataclass
class RobotActionMessage:
    """机器人动作指令"""
    source: str
    action_type: str
    parameters: Dict[str, str] = field(default_factory=dict)
    target_pose: Optional[Pose3D] = None
    target_velocity: Optional[Twist3D] = None
    duration_ms: Optional[int] = None
    priority: int = 5
    message_id: str = field(default_factory=lambda: uuid4().hex)


class SensorKind(Enum):
    """传感器数据种类"""
    SCALAR = "scalar"
    VECTOR3 = "vector3"
    POSE = "pose"
    IMAGE = "image"
    POINT_CLOUD = "point_cloud"
    LASER_SCAN = "laser_scan"
    CUSTOM = "custom"


@dataclass
class SensorDataMessage:
    """传感器数据"""
    source: str
    sensor_type: str
    sensor_id: str
    kind: SensorKind = SensorKind.SCALAR
    data: Union[float, Tuple[float, ...], Pose3D, bytes, List[Any], None] = None
    quality: float = 1.0
    confidence: float = 1.0
    message_id: str = field(default_factory=lambda: uuid4().hex)


class SystemStatus(Enum):
    """系统健康状态"""
    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


@dataclass
class SystemStatusMessage:
    """系统状态（心跳）"""
    source: str
    node_name: str
    status: SystemStatus = SystemStatus.UNKNOWN
    cpu_usage: float = 0.0
    memory_usage: float = 0.0  # 进程常驻内存（MB）
    total_nodes: int = 0
    active_nodes: int = 0
    finalized_nodes: int = 0
    uptime_s: float = 0.0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    message_id: str = field(default_factory=lambda: uuid4().hex)


@dataclass
class NavigationGoalMessage:
    """导航目标"""
    source: str
    goal_id: str
    target_pose: Pose3D = field(default_factory=Pose3D)
    tolerance: float = 0.1
    max_velocity: Optional[Twist3D] = None
    path_constraints: List[str] = field(default_factory=list)
    timeout_ms: Optional[int] = None
    message_id: str = field(default_factory=lambda: uuid4().hex)


# ============== Action 状态广播 ==============

@dataclass
class GoalStatusMessage:
    """Goal 状态变更通知"""
    action_name: str
    goal_id: str
    state: str
    reason: Optional[str] = None


# ============== 参数服务 ==============

@dataclass
class GetParameterRequest:
    """读取参数"""
    name: str
    node: Optional[str] = None  # 节点完整名称，None 表示全局参数


@dataclass
class GetParameterResponse:
    success: bool
    value: Any = None
    error_message: Optional[str] = None


@dataclass
class SetParameterRequest:
    """写入参数"""
    name: str
    value: Any
    node: Optional[str] = None


@dataclass
class SetParameterResponse:
    success: bool
    error_message: Optional[str] = None


@dataclass
class ListParametersRequest:
    """列出参数"""
    node: Optional[str] = None
    prefix: str = ""


@dataclass
class ListParametersResponse:
    names: List[str] = field(default_factory=list)
