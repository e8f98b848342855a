"""
测试用例 - 配置加载与运行时装配
"""
import pytest
import yaml

from config_loader import get_default_config, load_config, save_config
from conftest import ScriptedLLM
from core.runtime import build_runtime, load_integrations
from core.types import utcnow


class TestConfig:

    def test_defaults(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        monkeypatch.setenv("HOME", str(tmp_path))
        config = load_config(str(tmp_path / "missing.yaml"))

        assert config['orchestrator']['max_execution_seconds'] == 840
        assert config['orchestrator']['verification_threshold'] == 0.6
        assert config['llm']['claude']['api_key'] == "sk-test"
        assert config['storage']['data_dir'] == str(tmp_path / ".relay")
        assert config['queue']['spool_dir'] == str(tmp_path / ".relay" / "queue")

    def test_file_merged_over_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({
            'llm': {'provider': 'openai', 'openai': {'api_key': 'from-file'}},
            'orchestrator': {'max_verification_retries': 5},
            'storage': {'data_dir': str(tmp_path / "data")},
        }))

        config = load_config(str(path))

        assert config['llm']['provider'] == 'openai'
        assert config['llm']['openai']['api_key'] == 'from-file'
        assert config['llm']['openai']['model'] == 'gpt-4o-mini'
        assert config['orchestrator']['max_verification_retries'] == 5
        assert config['orchestrator']['safety_margin_seconds'] == 60

    def test_save_round_trip(self, tmp_path):
        path = tmp_path / "out.yaml"
        save_config(get_default_config(), str(path))
        assert yaml.safe_load(path.read_text())['storage']['backend'] == 'file'


class TestIntegrationsFromConfig:

    @pytest.mark.asyncio
    async def test_servers_loaded(self, monkeypatch):
        monkeypatch.setenv("GH_TOKEN", "abc")
        config = get_default_config()
        config['storage']['backend'] = 'memory'
        config['mcp']['servers'] = [{
            'id': 'gh',
            'user_id': 'u1',
            'url': 'https://mcp.example.com/mcp',
            'oauth': {'access_token': '${GH_TOKEN}', 'expires_at': '2099-01-01T00:00:00+00:00'},
            'tools': [{'name': 'list_issues', 'description': 'List issues'}],
        }]

        registry = load_integrations(config)

        server = registry.servers()[0]
        assert server.name == 'gh'
        assert server.is_oauth
        token = await registry.get_token('gh')
        assert token.access_token == 'abc'
        assert token.expires_at > utcnow()

    def test_runtime_wiring(self):
        config = get_default_config()
        config['storage']['backend'] = 'memory'
        config['queue']['backend'] = 'memory'
        config['mcp']['enabled'] = False

        runtime = build_runtime(config, llm=ScriptedLLM())

        assert runtime.proxy is None
        assert len(runtime.registry) == 15
        assert runtime.loop.config.max_verification_retries == 3
        assert runtime.discovered_tools_path is None
