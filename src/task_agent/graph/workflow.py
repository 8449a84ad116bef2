"""LangGraph workflow assembly for one agent run invocation."""

from langgraph.graph import END, StateGraph

from task_agent.graph.nodes import execute, finalize, plan, resume
from task_agent.graph.runtime import AgentRuntime
from task_agent.graph.state import MAX_STORED_PLAN_STEPS, AgentGraphState

# resume + plan + one pass per step + finalize, with headroom.
RECURSION_LIMIT = MAX_STORED_PLAN_STEPS + 10

_ROUTES = {"plan": "plan", "execute": "execute", "finalize": "finalize", "done": END}


def next_node(state: AgentGraphState) -> str:
    if state.get("outcome"):
        return "done"
    run_state = state["run_state"]
    if not run_state.plan_steps:
        return "plan"
    if run_state.step_index < len(run_state.plan_steps):
        return "execute"
    return "finalize"


def build_graph(runtime: AgentRuntime):
    graph = StateGraph(AgentGraphState)

    graph.add_node("resume", lambda state: resume.run(state, runtime))
    graph.add_node("plan", lambda state: plan.run(state, runtime))
    graph.add_node("execute", lambda state: execute.run(state, runtime))
    graph.add_node("finalize", lambda state: finalize.run(state, runtime))

    graph.set_entry_point("resume")
    graph.add_conditional_edges("resume", next_node, _ROUTES)
    graph.add_conditional_edges("plan", next_node, _ROUTES)
    graph.add_conditional_edges("execute", next_node, _ROUTES)
    graph.add_edge("finalize", END)

    return graph.compile()
