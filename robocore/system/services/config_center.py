"""
配置中心

提供集中式配置管理和热重载。
支持 YAML / JSON / TOML 三种配置文件格式，并展开配置中的环境变量引用。
"""

from __future__ import annotations

import json
import os
import re
import tomllib
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from robocore.errors import ConfigError
from robocore.system.services.logger import get_logger

logger = get_logger(__name__)

QoSPolicyName = Literal["block", "drop_oldest", "drop_newest"]


def expand_env_vars(value: Any) -> Any:
    """
    展开字符串中的环境变量引用

    支持格式:
    - ${VAR_NAME}
    - $VAR_NAME

    Args:
        value: 要处理的值

    Returns:
        展开后的值
    """
    if isinstance(value, str):
        pattern = r'\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)'

        def replace(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        return re.sub(pattern, replace, value)
    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    else:
        return value


class SystemConfig(BaseModel):
    """系统配置模型"""
    name: str = "robocore"
    max_nodes: int = Field(default=1000, ge=1)
    message_buffer_size: int = Field(default=1000, ge=1)  # 订阅队列默认容量
    heartbeat_interval_ms: int = Field(default=1000, ge=0)  # 0 表示关闭心跳
    node_timeout_ms: int = Field(default=5000, ge=0)  # 关闭时等待节点的宽限期
    log_level: str = "INFO"
    service_timeout_ms: int = Field(default=5000, gt=0)
    action_cancel_grace_ms: int = Field(default=2000, ge=0)
    goal_retention_s: float = Field(default=60.0, gt=0)
    max_concurrent_callbacks: Optional[int] = Field(default=None, ge=1)

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        return value.strip().upper()


class NodeConfig(BaseModel):
    """节点配置"""
    enabled: bool = True
    namespace: str = "/"
    rate_hz: Optional[float] = Field(default=None, gt=0)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    node_class: Optional[str] = None  # "package.module:ClassName"


class TopicConfig(BaseModel):
    """话题 QoS 配置"""
    policy: QoSPolicyName = "drop_oldest"
    capacity: Optional[int] = Field(default=None, ge=1)


class RoboCoreConfig(BaseModel):
    """robocore 完整配置"""
    system: SystemConfig = Field(default_factory=SystemConfig)
    nodes: Dict[str, NodeConfig] = Field(default_factory=dict)
    topics: Dict[str, TopicConfig] = Field(default_factory=dict)
    parameters: Dict[str, Any] = Field(default_factory=dict)


def _read_raw(path: Path) -> Dict[str, Any]:
    """按文件后缀解析配置文件"""
    suffix = path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        elif suffix == ".json":
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        elif suffix == ".toml":
            with open(path, "rb") as f:
                data = tomllib.load(f)
        else:
            raise ConfigError(f"不支持的配置文件格式: {path}（请使用 .yaml / .json / .toml）")
    except (yaml.YAMLError, json.JSONDecodeError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"配置文件解析失败 {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"配置文件顶层必须是映射: {path}")
    return data


def parse_config(raw: Dict[str, Any]) -> RoboCoreConfig:
    """将原始字典解析为配置对象"""
    try:
        return RoboCoreConfig(**expand_env_vars(raw))
    except ValidationError as e:
        raise ConfigError(f"配置校验失败: {e}") from e


def load_config(config_path: str | Path) -> RoboCoreConfig:
    """
    同步加载配置文件

    Args:
        config_path: 配置文件路径

    Returns:
        RoboCoreConfig 实例

    Raises:
        ConfigError: 文件不存在、格式不支持或校验失败
    """
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"配置文件不存在: {path}")
    return parse_config(_read_raw(path))


class ConfigCenter:
    """
    配置中心

    负责加载、管理和热重载配置。
    """

    def __init__(self, config_path: str = "configs/system.yaml", required: bool = False):
        """
        初始化配置中心

        Args:
            config_path: 配置文件路径
            required: 文件不存在时是否报错（否则使用默认配置）
        """
        self.config_path = Path(config_path)
        self.required = required
        self._config: Optional[RoboCoreConfig] = None
        self._raw_config: Dict[str, Any] = {}

    async def load(self) -> RoboCoreConfig:
        """
        加载配置文件

        Returns:
            RoboCoreConfig 实例
        """
        if self.config_path.exists():
            logger.info(f"加载配置文件: {self.config_path}")
            raw = _read_raw(self.config_path)
        elif self.required:
            raise ConfigError(f"配置文件不存在: {self.config_path}")
        else:
            logger.warning(f"配置文件不存在，使用默认配置: {self.config_path}")
            raw = {}

        self._config = parse_config(raw)
        # 包含默认值的完整字典，供 get() 使用
        self._raw_config = self._config.model_dump()
        return self._config

    async def reload(self) -> RoboCoreConfig:
        """热重载配置"""
        logger.info("重新加载配置...")
        return await self.load()

    @classmethod
    def from_config(cls, config: RoboCoreConfig) -> ConfigCenter:
        """使用已构造的配置对象创建配置中心（测试与嵌入场景）"""
        center = cls.__new__(cls)
        center.config_path = Path("<memory>")
        center.required = False
        center._config = config
        center._raw_config = config.model_dump()
        return center

    @property
    def config(self) -> RoboCoreConfig:
        """获取当前配置"""
        if self._config is None:
            raise RuntimeError("配置尚未加载，请先调用 load()")
        return self._config

    def get(self, key: str, default: Any = None) -> Any:
        """
        获取配置值

        Args:
            key: 配置键，支持点号分隔的嵌套键
            default: 默认值

        Returns:
            配置值
        """
        keys = key.split(".")
        value = self._raw_config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value
