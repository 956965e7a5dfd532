"""Prompt Expert 顶层包。

该包提供 prompt 评测机器人的核心实现：
多轮工具调用会话编排、三线程 A/B 评测、内容寻址缓存与上下文体积预算。
"""

from prompt_expert.api.service import Runtime, create_runtime, evaluate_prompts, run_command
from prompt_expert.domain.models import Command

__all__ = ["Command", "Runtime", "create_runtime", "evaluate_prompts", "run_command"]
