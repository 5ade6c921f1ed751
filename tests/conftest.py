"""
Pytest 配置和公共 fixtures

robocore 测试配置。
"""

import sys
from pathlib import Path
from typing import AsyncGenerator, Callable

import pytest

# 添加项目根目录到路径
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from robocore.middleware.actions import ActionCoordinator
from robocore.middleware.message_bus import MessageBus
from robocore.middleware.services import ServiceRegistry
from robocore.runtime.clock import ManualClock
from robocore.runtime.executor import Executor
from robocore.system.services.config_center import ConfigCenter, parse_config


# ============== 配置 Fixtures ==============

@pytest.fixture
def test_config() -> dict:
    """测试配置（较短的超时）"""
    return {
        "system": {
            "name": "robocore-test",
            "max_nodes": 16,
            "message_buffer_size": 8,
            "heartbeat_interval_ms": 0,
            "node_timeout_ms": 300,
            "log_level": "DEBUG",
            "service_timeout_ms": 500,
            "action_cancel_grace_ms": 200,
            "goal_retention_s": 5,
        },
    }


@pytest.fixture
def make_config_center() -> Callable[..., ConfigCenter]:
    """由字典构造 ConfigCenter"""
    def _make(raw: dict) -> ConfigCenter:
        return ConfigCenter.from_config(parse_config(raw))
    return _make


@pytest.fixture
def config_center(test_config, make_config_center) -> ConfigCenter:
    return make_config_center(test_config)


@pytest.fixture
def config_file(tmp_path: Path) -> Callable[[str, str], Path]:
    """写入临时配置文件"""
    def _write(content: str, name: str = "system.yaml") -> Path:
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        return path
    return _write


# ============== 组件 Fixtures ==============

@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock(start=100.0)


@pytest.fixture
def bus() -> MessageBus:
    return MessageBus(default_capacity=8)


@pytest.fixture
def services() -> ServiceRegistry:
    return ServiceRegistry(default_timeout=0.5)


@pytest.fixture
async def actions(bus) -> AsyncGenerator[ActionCoordinator, None]:
    coordinator = ActionCoordinator(bus=bus, cancel_grace=0.2, goal_retention=5.0)
    yield coordinator
    await coordinator.shutdown()


@pytest.fixture
async def executor(config_center) -> AsyncGenerator[Executor, None]:
    executor = Executor(config=config_center)
    yield executor
    if executor.is_running:
        await executor.stop()


# ============== 环境变量 ==============

@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """清理测试环境变量"""
    monkeypatch.setenv("ROBOCORE_ENV", "test")
