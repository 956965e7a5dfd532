"""提示词模板加载工具。

按语言(locale) 从 prompts/<locale> 目录读取模板文本：

- expert_session_system.md: 专家会话的 system prompt。
- thread_prime.md: Thread A/B 的单轮生成模板。
- judge_framework.md: Thread C（评审）的评估框架。
"""

from functools import lru_cache
from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent

_SYSTEM_PROMPTS = {
    "prompt-expert": "expert_session_system.md",
}


@lru_cache(maxsize=None)
def load_prompt(name: str, locale: str = "en") -> str:
    fname = PROMPTS_DIR / locale / name
    return fname.read_text(encoding="utf-8")


def load_system_prompt(agent_type: str = "prompt-expert", locale: str = "en") -> str:
    """根据 Agent 类型和语言加载系统提示词文本。"""

    try:
        fname = _SYSTEM_PROMPTS[agent_type]
    except KeyError:
        raise KeyError(f"No system prompt for agent type {agent_type!r}") from None
    return load_prompt(fname, locale)
