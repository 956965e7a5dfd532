"""State definition for the LangGraph conversation loop."""

from __future__ import annotations

from typing import List, Optional, TypedDict

from prompt_expert.domain.models import ChatMessage, SessionStatus
from prompt_expert.tools.definitions import ToolCall, ToolExecution


class OrchestratorState(TypedDict, total=False):
    """State shared across LangGraph nodes.

    Nodes never mutate the lists in place; they return new lists so each
    step's output is a plain partial update.
    """

    session_id: str
    messages: List[ChatMessage]
    iteration_count: int
    max_iterations: int
    status: SessionStatus
    pending_calls: List[ToolCall]
    tool_executions: List[ToolExecution]
    final_text: Optional[str]
    error: Optional[str]
