"""
配置中心单元测试
"""

import pytest

from robocore.errors import ConfigError
from robocore.system.services.config_center import (
    ConfigCenter,
    expand_env_vars,
    load_config,
    parse_config,
)


YAML_CONFIG = """
system:
  name: test-robot
  max_nodes: 8
  log_level: debug
nodes:
  talker:
    namespace: /demo
    rate_hz: 10
    node_class: robocore.nodes.demo:TalkerNode
    parameters:
      topic: /sensors/demo
topics:
  /sensors/demo:
    policy: block
    capacity: 4
parameters:
  robot:
    name: ${ROBOT_NAME}
"""


class TestConfigFormats:
    """配置文件格式测试"""

    @pytest.mark.asyncio
    async def test_load_yaml(self, config_file, monkeypatch):
        monkeypatch.setenv("ROBOT_NAME", "robot_07")
        center = ConfigCenter(str(config_file(YAML_CONFIG)))
        config = await center.load()

        assert config.system.name == "test-robot"
        assert config.system.max_nodes == 8
        assert config.system.log_level == "DEBUG"
        assert config.nodes["talker"].rate_hz == 10
        assert config.topics["/sensors/demo"].policy == "block"
        assert config.parameters["robot"]["name"] == "robot_07"

    def test_load_json(self, config_file):
        path = config_file('{"system": {"name": "json-robot", "node_timeout_ms": 100}}', "system.json")
        config = load_config(path)
        assert config.system.name == "json-robot"
        assert config.system.node_timeout_ms == 100

    def test_load_toml(self, config_file):
        path = config_file('[system]\nname = "toml-robot"\nmax_nodes = 3\n', "system.toml")
        config = load_config(path)
        assert config.system.name == "toml-robot"
        assert config.system.max_nodes == 3

    def test_empty_file_uses_defaults(self, config_file):
        config = load_config(config_file(""))
        assert config.system.max_nodes == 1000
        assert config.system.heartbeat_interval_ms == 1000
        assert config.nodes == {}


class TestConfigErrors:
    """配置错误测试"""

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "missing.yaml")

    @pytest.mark.asyncio
    async def test_missing_file_required(self, tmp_path):
        center = ConfigCenter(str(tmp_path / "missing.yaml"), required=True)
        with pytest.raises(ConfigError):
            await center.load()

    @pytest.mark.asyncio
    async def test_missing_file_optional(self, tmp_path):
        """测试非必需配置文件缺失时使用默认配置"""
        center = ConfigCenter(str(tmp_path / "missing.yaml"))
        config = await center.load()
        assert config.system.name == "robocore"

    def test_invalid_yaml(self, config_file):
        with pytest.raises(ConfigError):
            load_config(config_file("system: [unclosed"))

    def test_unsupported_suffix(self, config_file):
        with pytest.raises(ConfigError):
            load_config(config_file("name = 1", "system.ini"))

    def test_top_level_must_be_mapping(self, config_file):
        with pytest.raises(ConfigError):
            load_config(config_file("- a\n- b\n"))

    def test_validation_error(self):
        """测试字段校验失败"""
        with pytest.raises(ConfigError):
            parse_config({"system": {"max_nodes": 0}})
        with pytest.raises(ConfigError):
            parse_config({"topics": {"/x": {"policy": "lossy"}}})
        with pytest.raises(ConfigError):
            parse_config({"nodes": {"n": {"rate_hz": -1}}})

    def test_config_before_load(self):
        with pytest.raises(RuntimeError):
            ConfigCenter("unused.yaml").config


class TestConfigAccess:
    """配置读取测试"""

    def test_dotted_get(self, config_center):
        assert config_center.get("system.name") == "robocore-test"
        assert config_center.get("system.node_timeout_ms") == 300
        assert config_center.get("system.missing", "fallback") == "fallback"
        assert config_center.get("nodes.talker.rate_hz") is None

    @pytest.mark.asyncio
    async def test_reload(self, config_file):
        path = config_file("system:\n  name: first\n")
        center = ConfigCenter(str(path))
        await center.load()

        path.write_text("system:\n  name: second\n", encoding="utf-8")
        config = await center.reload()
        assert config.system.name == "second"
        assert center.get("system.name") == "second"


class TestEnvExpansion:
    """环境变量展开测试"""

    def test_expand_both_forms(self, monkeypatch):
        monkeypatch.setenv("ROBOT_HOST", "10.0.0.2")
        monkeypatch.setenv("ROBOT_PORT", "9000")
        assert expand_env_vars("${ROBOT_HOST}:$ROBOT_PORT") == "10.0.0.2:9000"

    def test_unknown_variable_kept(self, monkeypatch):
        monkeypatch.delenv("ROBOCORE_UNSET_VAR", raising=False)
        assert expand_env_vars("${ROBOCORE_UNSET_VAR}") == "${ROBOCORE_UNSET_VAR}"

    def test_nested_structures(self, monkeypatch):
        monkeypatch.setenv("ARM_NAME", "left")
        value = expand_env_vars({"arms": ["$ARM_NAME", {"id": "${ARM_NAME}_1"}], "count": 2})
        assert value == {"arms": ["left", {"id": "left_1"}], "count": 2}
