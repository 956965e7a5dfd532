"""Provider 与模型配置。

本模块将“逻辑模型名”与“具体厂商模型名”解耦：

- 逻辑名（logical_name）：在代码里使用的统一名称，例如 "expert-chat"。
- provider_model：厂商实际提供的模型 ID，例如 "claude-sonnet-4-20250514"。

上层只关心逻辑名，具体用哪个底层模型由这里集中配置，便于后续升级或切换。"""

from dataclasses import dataclass
from typing import Dict, Mapping


@dataclass
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str
    max_tokens: int
    default_temperature: float


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig]

    def model(self, logical_name: str) -> ModelConfig:
        try:
            return self.models[logical_name]
        except KeyError:
            raise KeyError(f"Unknown model {logical_name!r} for provider {self.name!r}") from None


# Anthropic 配置：会话使用 8000 max_tokens，单轮评测/评审使用 4000
ANTHROPIC_CONFIG = ProviderConfig(
    name="anthropic",
    base_url="https://api.anthropic.com",
    models={
        "expert-chat": ModelConfig(
            logical_name="expert-chat",
            provider_model="claude-sonnet-4-20250514",
            max_tokens=8000,
            default_temperature=0.3,
        ),
        "expert-judge": ModelConfig(
            logical_name="expert-judge",
            provider_model="claude-sonnet-4-20250514",
            max_tokens=4000,
            default_temperature=0.2,
        ),
    },
)

# OpenAI 兼容接口（chat/completions），也可指向其他兼容网关
OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    models={
        "expert-chat": ModelConfig(
            logical_name="expert-chat",
            provider_model="gpt-4o",
            max_tokens=8000,
            default_temperature=0.3,
        ),
        "expert-judge": ModelConfig(
            logical_name="expert-judge",
            provider_model="gpt-4o",
            max_tokens=4000,
            default_temperature=0.2,
        ),
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "anthropic": ANTHROPIC_CONFIG,
    "openai": OPENAI_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
