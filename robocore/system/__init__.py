"""
系统层 (System Layer)

核心服务：日志、配置中心、参数服务器、系统监控
"""

from robocore.system.services.config_center import ConfigCenter
from robocore.system.services.logger import get_logger

__all__ = ["ConfigCenter", "get_logger"]
