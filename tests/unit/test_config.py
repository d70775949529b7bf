"""Tests for YAML configuration loading and allow-list evaluation."""

from pathlib import Path

import pytest

from toolchat.core.config import infer_transport, load_config, parse_config, parse_server
from toolchat.errors import ConfigError
from toolchat.types.config import AppConfig, TransportKind

SAMPLE = """\
log_level: debug
ai:
  provider: openai
  base_url: https://api.deepseek.com/v1
  api_key: ${TOOLCHAT_TEST_API_KEY}
  model: deepseek-chat
  default_prompt: You are a friendly bot.
proxy:
  url: http://127.0.0.1:7890
mcpServers:
  bing:
    command: npx
    args: ["bing-cn-mcp"]
    env:
      REGION: cn
  amap:
    type: sse
    url: https://mcp.amap.com/sse
    headers:
      Authorization: Bearer ${AMAP_KEY}
    use_proxy: true
  fetch:
    url: https://fetch.test/mcp
push:
  enabled: true
  time: "07:30"
  targets: ["Telegram:123", "QQ:Group:456"]
  prompt: Get hot news
platform_prompts:
  QQ: No markdown.
personas:
  "QQ:abc":
    name: Bea
    prompt: You are Bea.
allowed_users: [42]
allowed_telegram: ["100"]
allowed:
  qq: ["*"]
"""


@pytest.fixture
def config_file(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.setenv("TOOLCHAT_TEST_API_KEY", "sk-from-env")
    path = tmp_path / "config.yaml"
    path.write_text(SAMPLE)
    return path


class TestLoadConfig:
    def test_full_file(self, config_file: Path):
        config = load_config(config_file)

        assert config.log_level == "DEBUG"
        assert config.ai.base_url == "https://api.deepseek.com/v1"
        assert config.ai.api_key == "sk-from-env"
        assert config.ai.model == "deepseek-chat"
        assert config.proxy.url == "http://127.0.0.1:7890"

        bing = config.mcp_servers["bing"]
        assert bing.transport is TransportKind.STDIO
        assert bing.command == "npx"
        assert bing.args == ("bing-cn-mcp",)
        assert bing.env == {"REGION": "cn"}

        amap = config.mcp_servers["amap"]
        assert amap.transport is TransportKind.SSE
        assert amap.headers == {"Authorization": "Bearer ${AMAP_KEY}"}
        assert amap.use_proxy is True

        assert config.mcp_servers["fetch"].transport is TransportKind.STREAMABLE_HTTP
        assert config.mcp_servers["fetch"].use_proxy is False

        assert config.broadcast.enabled is True
        assert config.broadcast.time == "07:30"
        assert config.broadcast.targets == ("Telegram:123", "QQ:Group:456")
        assert config.broadcast.prompt == "Get hot news"

        assert config.platform_prompt("qq") == "No markdown."
        assert config.persona_for("qq:abc").name == "Bea"

    def test_env_var_names_default_path(self, config_file: Path, monkeypatch):
        monkeypatch.setenv("TOOLCHAT_CONFIG", str(config_file))
        assert load_config().ai.model == "deepseek-chat"

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="cannot read"):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "bad.yaml"
        path.write_text("ai: [unclosed")
        with pytest.raises(ConfigError, match="invalid YAML"):
            load_config(path)

    def test_empty_file_gives_defaults(self, tmp_path: Path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        config = load_config(path)
        assert config.mcp_servers == {}
        assert config.ai.model == "gpt-4o-mini"
        assert config.max_iterations == 5


class TestParsing:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ({"command": "npx"}, TransportKind.STDIO),
            ({"type": "stdio"}, TransportKind.STDIO),
            ({"type": "sse", "url": "u"}, TransportKind.SSE),
            ({"type": "SSE", "url": "u"}, TransportKind.SSE),
            ({"type": "streamable_http", "url": "u"}, TransportKind.STREAMABLE_HTTP),
            ({"url": "u"}, TransportKind.STREAMABLE_HTTP),
            ({"type": "sse", "command": "npx"}, TransportKind.STDIO),
        ],
    )
    def test_infer_transport(self, raw, expected):
        assert infer_transport(raw) is expected

    def test_bad_server_entry(self):
        with pytest.raises(ConfigError, match="must be a mapping"):
            parse_server("x", ["not", "a", "mapping"])
        with pytest.raises(ConfigError, match="args must be a list"):
            parse_server("x", {"command": "npx", "args": "one-string"})

    def test_bad_persona_key(self):
        with pytest.raises(ConfigError, match="platform:user_id"):
            parse_config({"personas": {"nocolon": {"prompt": "p"}}})

    def test_bad_numbers(self):
        with pytest.raises(ConfigError, match="max_iterations"):
            parse_config({"max_iterations": "many"})

    def test_section_type_checked(self):
        with pytest.raises(ConfigError, match="ai must be a mapping"):
            parse_config({"ai": "gpt-4o"})


class TestAllowLists:
    def test_platform_list_then_global_fallback(self, config_file: Path):
        config = load_config(config_file)
        assert config.is_allowed("Telegram", "100")
        assert config.is_allowed("telegram", "42")
        assert not config.is_allowed("telegram", "7")

    def test_wildcard(self, config_file: Path):
        config = load_config(config_file)
        assert config.is_allowed("QQ", "anyone")

    def test_nobody_by_default(self):
        assert not AppConfig().is_allowed("telegram", "1")


class TestBroadcastTime:
    def test_unquoted_time_survives_yaml_base60(self, tmp_path: Path):
        path = tmp_path / "c.yaml"
        path.write_text("push:\n  enabled: true\n  time: 08:05\n")
        assert load_config(path).broadcast.time == "08:05"

    def test_midnight(self):
        assert parse_config({"broadcast": {"time": 0}}).broadcast.time == "00:00"
