import asyncio

from prompt_expert.api.service import create_runtime, evaluate_prompts, run_command
from prompt_expert.config.settings import PydanticSettings
from prompt_expert.domain.models import ChatChoice, ChatMessage, ChatResult, Command
from prompt_expert.tools.definitions import ToolCall

JUDGE_REPLY = """Variant is safer.

=== EVALUATION RESULT ===
DECISION: MERGE
WINNER: B
SCORE_A: 5/10
SCORE_B: 9/10
CONFIDENCE: high
IMPROVEMENTS NEEDED:
=== END RESULT ===
"""


class ScriptedProvider:
    """会话按脚本回复；评测线程与评审按提示内容回复。"""

    name = "fake"

    def __init__(self, session_replies):
        self.session_replies = list(session_replies)
        self.session_requests = []
        self.eval_requests = []

    async def chat(self, req):
        if req.model == "expert-chat":
            self.session_requests.append(req)
            message = self.session_replies.pop(0)
        else:
            self.eval_requests.append(req)
            content = req.messages[0].content
            text = JUDGE_REPLY if "EVALUATION FRAMEWORK" in content else "thread answer"
            message = ChatMessage(role="assistant", content=text)
        return ChatResult(provider="fake", model=req.model, choices=[ChatChoice(index=0, message=message)])


def _workspace(tmp_path):
    (tmp_path / "experts").mkdir()
    (tmp_path / "experts" / "programming-expert.md").write_text("# Programming expert", encoding="utf-8")
    (tmp_path / "prompts").mkdir()
    (tmp_path / "prompts" / "base.md").write_text("Base prompt", encoding="utf-8")
    (tmp_path / "prompts" / "new.md").write_text("New prompt", encoding="utf-8")
    return PydanticSettings(workspace_root=str(tmp_path), retry_base_delay=0.0, max_iterations=5)


def test_run_command_with_ab_test_tool(tmp_path):
    cfg = _workspace(tmp_path)
    provider = ScriptedProvider([
        ChatMessage(
            role="assistant",
            content="Comparing prompts",
            tool_calls=[
                ToolCall(
                    id="ab1",
                    name="ab_test",
                    arguments={
                        "rubric": "experts/programming-expert.md",
                        "baseline": "prompts/base.md",
                        "variant": "prompts/new.md",
                    },
                ),
                ToolCall(id="r1", name="read_file", arguments={"path": "prompts/new.md"}),
            ],
        ),
        ChatMessage(role="assistant", content="Variant should be merged."),
    ])
    runtime = create_runtime(cfg, provider_client=provider)

    result = asyncio.run(run_command(runtime, Command(expert_id="programming", instruction_text="compare")))

    assert result["status"] == "completed"
    assert result["final_text"] == "Variant should be merged."
    assert result["iterations"] == 2
    assert [e["tool"] for e in result["tool_executions"]] == ["ab_test", "read_file"]
    assert all(e["success"] for e in result["tool_executions"])
    # 两个生成线程 + 一个评审
    assert len(provider.eval_requests) == 3
    tool_msg = provider.session_requests[1].messages[-1]
    assert '"decision": "MERGE"' in tool_msg.tool_results[0].content
    assert tool_msg.tool_results[1].content == "New prompt"
    # rubric 与两个候选各一个条目，read_file 命中缓存
    assert len(runtime.cache) == 3
    assert runtime.cache.stats.hits >= 1


def test_evaluate_prompts_reports_failures(tmp_path):
    cfg = _workspace(tmp_path)
    runtime = create_runtime(cfg, provider_client=ScriptedProvider([]))

    out = asyncio.run(
        evaluate_prompts(
            runtime,
            rubric="experts/programming-expert.md",
            baseline="prompts/base.md",
            variant="prompts/new.md",
            scenarios=["delete old logs"],
            context_paths=["docs/absent.md"],
        )
    )

    assert out["run_id"].startswith("eval-")
    assert out["verdict"]["decision"] == "MERGE"
    assert out["verdict"]["degraded"] is True
    assert out["fetch_failures"][0]["ref"] == "docs/absent.md"
    assert out["fetch_failures"][0]["error_kind"] == "permanent"
    assert out["size_report"]["summary"]["total_items"] == 4
