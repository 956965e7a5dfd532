from prompt_expert.domain.models import ChatMessage
from prompt_expert.flows.history import compact_history
from prompt_expert.tools.definitions import ToolCall, ToolResult


def _session(rounds):
    msgs = [ChatMessage(role="user", content="instruction")]
    for i in range(rounds):
        msgs.append(
            ChatMessage(
                role="assistant",
                content=f"round {i}",
                tool_calls=[ToolCall(id=f"c{i}", name="read_file", arguments={"path": "a.md"})],
            )
        )
        msgs.append(
            ChatMessage(
                role="tool_result",
                content="",
                tool_results=[ToolResult(call_id=f"c{i}", success=True, payload="x")],
            )
        )
    return msgs


def test_short_history_untouched():
    msgs = _session(3)
    kept, trimmed = compact_history(msgs, cap=20, keep_recent=15)
    assert trimmed == 0
    assert kept == msgs


def test_compaction_keeps_first_and_pairs():
    msgs = _session(12)  # 25 entries
    kept, trimmed = compact_history(msgs, cap=20, keep_recent=15)
    assert kept[0].content == "instruction"
    assert trimmed == len(msgs) - len(kept)
    assert len(kept) <= 17
    # 第二条一定是 assistant，不会出现孤立的 tool_result
    assert kept[1].role == "assistant"
    call_ids = {c.id for m in kept if m.tool_calls for c in m.tool_calls}
    for m in kept:
        for r in m.tool_results or []:
            assert r.call_id in call_ids


def test_compaction_when_window_starts_on_assistant():
    msgs = _session(12)[:-1]  # 24 entries, ends on assistant
    kept, _ = compact_history(msgs, cap=20, keep_recent=15)
    assert kept[0].content == "instruction"
    assert kept[1].role == "assistant"
    assert len(kept) == 16
