"""
Grafo de LangGraph del análisis estratégico.

START -> (risks | jurisprudence) -> scenarios -> (timeline | recommendations) -> END

Riesgos y jurisprudencia corren en paralelo; los escenarios esperan a ambos.
Timeline y recomendación también corren en paralelo. Un paso que falla
levanta ``ModelStepFailed`` y cancela el análisis completo.
"""

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, START, StateGraph

from lexia.agents.estratega.state import EstrategaState
from lexia.agents.estratega.steps import EstrategaSteps, start_date_for, timeline_scenario


def _steps(config: RunnableConfig) -> EstrategaSteps:
    return config["configurable"]["steps"]


async def risks_node(state: EstrategaState, config: RunnableConfig) -> EstrategaState:
    matrix = await _steps(config).analyze_risks(state["params"], state.get("trace_id", ""))
    return {"risk_matrix": matrix}


async def jurisprudence_node(state: EstrategaState, config: RunnableConfig) -> EstrategaState:
    results = await _steps(config).search_jurisprudence(state["params"], state.get("trace_id", ""))
    return {"jurisprudence": results}


async def scenarios_node(state: EstrategaState, config: RunnableConfig) -> EstrategaState:
    scenarios = await _steps(config).generate_scenarios(
        state["params"], state["risk_matrix"], state.get("trace_id", "")
    )
    return {"scenarios": scenarios}


async def timeline_node(state: EstrategaState, config: RunnableConfig) -> EstrategaState:
    params = state["params"]
    timeline = await _steps(config).generate_timeline(
        params, timeline_scenario(state["scenarios"]), start_date_for(params), state.get("trace_id", "")
    )
    return {"timeline": timeline}


async def recommendations_node(state: EstrategaState, config: RunnableConfig) -> EstrategaState:
    recommendations = await _steps(config).build_recommendations(
        state["params"],
        state["risk_matrix"],
        state["scenarios"],
        state["jurisprudence"],
        state.get("trace_id", ""),
    )
    return {"recommendations": recommendations}


workflow = StateGraph(EstrategaState)

workflow.add_node("risks", risks_node)
workflow.add_node("jurisprudence", jurisprudence_node)
workflow.add_node("scenarios", scenarios_node)
workflow.add_node("timeline", timeline_node)
workflow.add_node("recommendations", recommendations_node)

workflow.add_edge(START, "risks")
workflow.add_edge(START, "jurisprudence")
# Los escenarios necesitan la matriz de riesgos y la jurisprudencia.
workflow.add_edge(["risks", "jurisprudence"], "scenarios")
workflow.add_edge("scenarios", "timeline")
workflow.add_edge("scenarios", "recommendations")
workflow.add_edge("timeline", END)
workflow.add_edge("recommendations", END)

estratega_graph = workflow.compile()
