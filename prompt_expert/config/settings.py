"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
优先级：初始化参数 > 环境变量 > .env > config.yaml。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("PROMPT_EXPERT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class PydanticSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="anthropic",
        description="默认使用的 Provider 名称，例如 anthropic、openai",
    )
    default_model: str = Field(
        default="expert-chat",
        description="逻辑模型名，由 registry 映射为具体厂商模型",
    )
    judge_model: str = Field(
        default="expert-judge",
        description="评审线程（Thread C）使用的逻辑模型名",
    )

    # Anthropic
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API 密钥")
    anthropic_base_url: str = Field(
        default="https://api.anthropic.com",
        description="Anthropic API 基础URL",
    )
    anthropic_version: str = Field(default="2023-06-01", description="anthropic-version 请求头")
    # OpenAI 兼容接口（chat/completions）
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI 兼容接口密钥")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI 兼容接口基础URL",
    )
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 会话编排 ----
    max_iterations: int = Field(default=10, ge=1, le=50, description="单次会话最多调用模型的次数")
    history_cap: int = Field(default=20, ge=2, description="历史消息超过该条数时触发裁剪")
    history_keep_recent: int = Field(default=15, ge=1, description="裁剪后保留的最近消息条数（首条指令另计）")
    tool_concurrency: int = Field(default=4, ge=1, le=32, description="同一轮内并发执行的工具数")
    tool_max_attempts: int = Field(default=3, ge=1, le=10, description="瞬时错误的最大尝试次数")
    retry_base_delay: float = Field(default=1.0, ge=0.0, description="指数退避的初始等待（秒）")
    retry_max_delay: float = Field(default=30.0, ge=0.0, description="单次退避的最大等待（秒）")

    # ---- 工作区 / 工具 ----
    workspace_root: str = Field(
        default_factory=lambda: str(Path.cwd()),
        description="工具可访问的项目根目录",
    )
    allow_tool_absolute_path: bool = Field(
        default=False,
        description="是否允许工具访问任意绝对路径（默认禁止）",
    )

    # ---- 内容缓存 ----
    cache_ttl_days: float = Field(default=14.0, gt=0, description="缓存条目的存活天数")

    # ---- 体积预算 ----
    budget_max_total_mb: float = Field(default=50.0, gt=0, description="单次评测的上下文总大小上限（MB）")
    budget_max_items: int = Field(default=100, ge=1, description="单次评测最多加载的条目数")
    budget_max_tokens: int = Field(default=200_000, ge=1, description="单次评测的 token 估算上限")
    budget_critical_ratio: float = Field(default=0.9, gt=0, le=1.0, description="达到该比例后拒绝新的预留")
    budget_max_item_chars: int = Field(default=50_000, ge=1000, description="单个条目超过该字符数时截断")

    # ---- 评测判定 ----
    merge_threshold: float = Field(default=8.5, ge=0, le=10, description="score_b 达到该值判定 MERGE")
    suggest_threshold: float = Field(default=6.0, ge=0, le=10, description="score_b 低于该值判定 REJECT")
    leniency_after_cycles: Optional[int] = Field(
        default=None,
        ge=1,
        description="连续 SUGGEST 达到该轮数后放宽 MERGE 阈值（未设置则关闭）",
    )
    leniency_merge_threshold: Optional[float] = Field(
        default=None,
        ge=0,
        le=10,
        description="放宽后的 MERGE 阈值",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("anthropic_api_key", "openai_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @model_validator(mode="after")
    def check_thresholds(self) -> "PydanticSettings":
        if self.suggest_threshold > self.merge_threshold:
            raise ValueError("suggest_threshold must not exceed merge_threshold")
        if self.history_keep_recent >= self.history_cap:
            raise ValueError("history_keep_recent must be smaller than history_cap")
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = PydanticSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = PydanticSettings
