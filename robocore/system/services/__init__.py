"""
系统层核心服务

包含：
- 日志服务 (logger)
- 配置中心 (config_center)
- 参数服务器 (parameter_server)
- 系统监控 (monitor)

参数服务器和系统监控依赖中间件层，按需从子模块导入。
"""

from robocore.system.services.logger import (
    get_logger,
    setup_logging,
    set_log_level,
    LoggerMixin,
    NodeLogContext,
    set_node_context,
    get_node_context,
)
from robocore.system.services.config_center import (
    ConfigCenter,
    RoboCoreConfig,
    SystemConfig,
    NodeConfig,
    TopicConfig,
    load_config,
)

__all__ = [
    # 日志服务
    "get_logger",
    "setup_logging",
    "set_log_level",
    "LoggerMixin",
    "NodeLogContext",
    "set_node_context",
    "get_node_context",
    # 配置中心
    "ConfigCenter",
    "RoboCoreConfig",
    "SystemConfig",
    "NodeConfig",
    "TopicConfig",
    "load_config",
]
