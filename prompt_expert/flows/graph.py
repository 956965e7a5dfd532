"""LangGraph construction for the conversation loop.

    model ──(tool calls pending)──> tools ──> model
      └──(completed / max_iterations / fatal_error)──> END
"""

from __future__ import annotations

from typing import Awaitable, Callable, Dict

from langgraph.graph import END, StateGraph
from langgraph.graph.state import CompiledStateGraph

from prompt_expert.flows.state import OrchestratorState

Node = Callable[[OrchestratorState], Awaitable[Dict]]


def model_router(state: OrchestratorState) -> str:
    if state.get("status") == "running" and state.get("pending_calls"):
        return "tools"
    return "end"


def tools_router(state: OrchestratorState) -> str:
    if state.get("status") == "running":
        return "model"
    return "end"


def build_graph(model_node: Node, tools_node: Node) -> CompiledStateGraph:
    graph = StateGraph(OrchestratorState)
    graph.add_node("model", model_node)
    graph.add_node("tools", tools_node)
    graph.set_entry_point("model")
    graph.add_conditional_edges("model", model_router, {"tools": "tools", "end": END})
    graph.add_conditional_edges("tools", tools_router, {"model": "model", "end": END})
    return graph.compile()


def recursion_limit(max_iterations: int) -> int:
    # 每轮 model + tools 两步，外加最后一次 model 判定
    return max_iterations * 2 + 5
