"""
日志服务

提供统一的日志初始化、分级和节点上下文标识。
节点回调内输出的日志会自动带上当前节点名称。
"""

import contextvars
import logging
import sys
from typing import Optional, Union

# 日志格式 - 增强版，包含节点名称和组件
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(node)s | %(name)s | %(message)s"
LOG_FORMAT_SIMPLE = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# 全局日志级别
_log_level = logging.INFO
_initialized = False

# 上下文变量 - 当前正在执行回调的节点
_node_var: contextvars.ContextVar[str] = contextvars.ContextVar("node", default="-")


class NodeContextFilter(logging.Filter):
    """添加节点名称到日志记录的过滤器"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.node = _node_var.get()
        return True


def set_node_context(node_name: Optional[str]) -> contextvars.Token:
    """
    设置当前上下文的节点名称

    Args:
        node_name: 节点完整名称，None 表示清除

    Returns:
        用于恢复的上下文令牌
    """
    return _node_var.set(node_name or "-")


def get_node_context() -> str:
    """获取当前上下文的节点名称"""
    return _node_var.get()


class NodeLogContext:
    """
    节点日志上下文管理器

    用法:
        with NodeLogContext("/sensors/imu"):
            logger.info("处理中...")
    """

    def __init__(self, node_name: Optional[str]):
        self.node_name = node_name
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> "NodeLogContext":
        self._token = set_node_context(self.node_name)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._token is not None:
            _node_var.reset(self._token)
            self._token = None


def parse_level(level: Union[int, str]) -> int:
    """将 "info" / "DEBUG" / 20 等形式统一转换为 logging 级别"""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.strip().upper())
    if isinstance(value, int):
        return value
    # "warn" 之类的别名
    if level.strip().lower() == "warn":
        return logging.WARNING
    return logging.INFO


def setup_logging(
    level: Union[int, str] = logging.INFO,
    use_enhanced_format: bool = True,
    force: bool = False,
) -> None:
    """
    初始化日志系统

    Args:
        level: 日志级别（整数或名称，如 "info"）
        use_enhanced_format: 是否使用增强格式（包含节点名称）
        force: 已初始化时是否重新配置
    """
    global _log_level, _initialized

    if _initialized and not force:
        return

    _log_level = parse_level(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(_log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(_log_level)

    log_format = LOG_FORMAT if use_enhanced_format else LOG_FORMAT_SIMPLE
    console_handler.setFormatter(logging.Formatter(log_format, DATE_FORMAT))
    console_handler.addFilter(NodeContextFilter())

    root_logger.addHandler(console_handler)
    _initialized = True


def set_log_level(level: Union[int, str]) -> None:
    """调整已初始化日志系统的级别（配置加载后调用）"""
    global _log_level

    if not _initialized:
        setup_logging(level)
        return

    _log_level = parse_level(level)
    root_logger = logging.getLogger()
    root_logger.setLevel(_log_level)
    for handler in root_logger.handlers:
        if isinstance(handler, logging.StreamHandler) and any(
            isinstance(f, NodeContextFilter) for f in handler.filters
        ):
            handler.setLevel(_log_level)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    获取日志器

    Args:
        name: 日志器名称，通常使用 __name__

    Returns:
        Logger 实例
    """
    if not _initialized:
        setup_logging()

    return logging.getLogger(name or "robocore")


class LoggerMixin:
    """日志器混入类，为类提供 self.logger 属性"""

    @property
    def logger(self) -> logging.Logger:
        if not hasattr(self, "_logger"):
            self._logger = get_logger(f"robocore.{self.__class__.__name__}")
        return self._logger
