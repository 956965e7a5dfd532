"""Minimal demonstration: run an expert session and a direct A/B evaluation."""

import asyncio
import json

from prompt_expert import Command, create_runtime, evaluate_prompts, run_command


async def main():
    runtime = create_runtime()
    command = Command(
        expert_id="programming",
        instruction_text="请比较 prompts/base.md 与 prompts/new.md，并给出是否合并的建议",
        context_paths=["experts/programming-expert.md"],
    )
    reply = await run_command(runtime, command)
    print("Status:", reply["status"])
    print("Expert:", reply["final_text"])

    verdict = await evaluate_prompts(
        runtime,
        rubric="experts/programming-expert.md",
        baseline="prompts/base.md",
        variant="prompts/new.md",
    )
    print(json.dumps(verdict, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    asyncio.run(main())
