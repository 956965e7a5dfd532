"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供各厂商的具体实现 (anthropic_client、openai_client)。
"""

from typing import Dict, Optional, Type

from prompt_expert.config.settings import settings
from prompt_expert.providers.base import ProviderClient
from prompt_expert.providers.anthropic_client import AnthropicClient
from prompt_expert.providers.openai_client import OpenAICompatibleClient
from prompt_expert.providers.registry import get_provider_config

_CLIENTS: Dict[str, Type[ProviderClient]] = {
    "anthropic": AnthropicClient,
    "openai": OpenAICompatibleClient,
}


def create_provider(name: Optional[str] = None, cfg=None) -> ProviderClient:
    """根据名称创建 Provider 实例，默认取配置中的 provider。未注册的名称抛 KeyError。"""

    cfg = cfg or settings
    provider_cfg = get_provider_config(name or getattr(cfg, "default_provider", "anthropic"))
    return _CLIENTS[provider_cfg.name](cfg)
