"""History compaction for long tool-calling sessions."""

from typing import List, Tuple

from prompt_expert.domain.models import ChatMessage

_RESULT_ROLES = ("tool_result", "tool")


def compact_history(messages: List[ChatMessage], cap: int, keep_recent: int) -> Tuple[List[ChatMessage], int]:
    """Keep the first entry plus the most recent ``keep_recent`` entries once ``cap`` is exceeded.

    The window is widened backwards while it would start on a tool-result turn,
    so a result is never kept without the assistant turn that requested it.
    Returns the compacted list and the number of dropped entries.
    """

    if len(messages) <= cap:
        return list(messages), 0
    start = max(1, len(messages) - keep_recent)
    while start > 1 and messages[start].role in _RESULT_ROLES:
        start -= 1
    kept = [messages[0]] + list(messages[start:])
    return kept, len(messages) - len(kept)
