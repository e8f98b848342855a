"""
配置加载器 - 支持YAML配置文件
"""
import os
import yaml
from typing import Dict, Any


API_KEY_ENV = {
    'claude': 'ANTHROPIC_API_KEY',
    'openai': 'OPENAI_API_KEY',
    'gemini': 'GEMINI_API_KEY',
}


def load_config(config_path: str = "config.yaml") -> Dict[str, Any]:
    """加载配置文件"""
    config = get_default_config()

    if config_path and os.path.exists(config_path):
        with open(config_path, 'r', encoding='utf-8') as f:
            user_config = yaml.safe_load(f)
            if user_config:
                # 合并配置
                config = deep_merge(config, user_config)

    # 从环境变量读取API密钥（启动时解析一次）
    for provider, env in API_KEY_ENV.items():
        section = config['llm'].setdefault(provider, {})
        if not section.get('api_key'):
            section['api_key'] = os.getenv(env)

    # 展开路径中的 ~
    config['storage']['data_dir'] = os.path.expanduser(config['storage']['data_dir'])
    spool_dir = config['queue'].get('spool_dir') or os.path.join(config['storage']['data_dir'], 'queue')
    config['queue']['spool_dir'] = os.path.expanduser(spool_dir)

    return config


def get_default_config() -> Dict[str, Any]:
    """获取默认配置"""
    return {
        'llm': {
            'provider': 'claude',
            'max_tokens': 4096,
            'temperature': 0.7,
            'claude': {
                'model': 'claude-opus-4-20250514',
                'base_url': None,
                'api_key': None,
            },
            'openai': {
                'model': 'gpt-4o-mini',
                'base_url': None,
                'api_key': None,
            },
            'gemini': {
                'model': 'gemini-2.0-flash',
                'base_url': 'https://generativelanguage.googleapis.com/v1beta/openai/',
                'api_key': None,
            },
        },
        'orchestrator': {
            'max_execution_seconds': 840,
            'safety_margin_seconds': 60,
            'verification_threshold': 0.6,
            'max_verification_retries': 3,
            'verify_tool_results': True,
            'max_tool_depth': 3,
            'context_window_tokens': 100000,
            'compaction_ratio': 0.8,
            'keep_recent_messages': 10,
            'active_session_ttl_seconds': 3600,
        },
        'storage': {
            'backend': 'file',
            'data_dir': '~/.relay',
        },
        'queue': {
            'backend': 'file',
            'spool_dir': None,
        },
        'mcp': {
            'enabled': True,
            'request_timeout_seconds': 15,
            'max_retries': 3,
            'servers': [],
        },
    }


def deep_merge(base: Dict, update: Dict) -> Dict:
    """深度合并两个字典"""
    result = base.copy()
    for key, value in update.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def save_config(config: Dict[str, Any], config_path: str = "config.yaml") -> None:
    """保存配置到文件"""
    with open(config_path, 'w', encoding='utf-8') as f:
        yaml.dump(config, f, default_flow_style=False, allow_unicode=True)
