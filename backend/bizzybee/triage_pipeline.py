"""
LangGraph triage for a single incoming email (webhook fast path).

Flow: START -> match_sender_rule -> (rule hit) finalize
                                 -> (no hit)  classify -> apply_policies -> finalize -> END

Sender rules short-circuit the model entirely; model verdicts go through the
same reply/review policy as the bulk classifier.
"""
import logging
from typing import Any, List, Optional
from typing_extensions import TypedDict

from langgraph.graph import StateGraph, START, END

from .llm_client import call_llm, extract_json_object
from .sender_rules import rule_matches
from .services.classification_service import EMAIL_CATEGORIES, apply_triage_policy

logger = logging.getLogger(__name__)


class TriageState(TypedDict, total=False):
    """State that flows through the triage graph."""
    # Input fields
    from_email: str
    subject: str
    body: str
    direction: str
    sender_rules: List[dict]  # [{"pattern", "category", "requires_reply"}], most specific first

    # Raw model verdict
    raw_category: Optional[str]
    raw_requires_reply: Any
    raw_confidence: Any
    reasoning: str

    # Final verdict
    category: str
    requires_reply: bool
    confidence: float
    needs_review: bool
    triage_source: str  # sender_rule | llm

    processing_status: str
    errors: List[str]


def _call_llm(prompt: str, max_tokens: int = 300) -> str:
    return call_llm(prompt, max_tokens=max_tokens, force_json=True)


def match_sender_rule_node(state: TriageState) -> dict:
    sender = state.get("from_email") or ""
    for rule in state.get("sender_rules") or []:
        if rule_matches(rule.get("pattern"), sender):
            requires_reply = bool(rule.get("requires_reply")) and state.get("direction") != "outbound"
            return {
                "category": rule.get("category"),
                "requires_reply": requires_reply,
                "confidence": 1.0,
                "needs_review": False,
                "triage_source": "sender_rule",
            }
    return {}


def classify_node(state: TriageState) -> dict:
    categories = "\n".join(f"- {k}: {v}" for k, v in EMAIL_CATEGORIES.items())
    prompt = f"""Triage this email for a small service business.

Categories:
{categories}

From: {state.get("from_email", "")}
Subject: {(state.get("subject") or "")[:200]}
Body:
{(state.get("body") or "")[:3000]}

Return JSON: {{"category": "...", "requires_reply": true/false, "confidence": 0.0-1.0, "reasoning": "one sentence"}}"""
    try:
        data = extract_json_object(_call_llm(prompt))
    except Exception as e:
        logger.error(f"Triage LLM call failed: {e}")
        return {"errors": list(state.get("errors") or []) + [f"classify: {e}"], "triage_source": "llm"}
    return {
        "raw_category": data.get("category"),
        "raw_requires_reply": data.get("requires_reply"),
        "raw_confidence": data.get("confidence"),
        "reasoning": (data.get("reasoning") or "")[:500],
        "triage_source": "llm",
    }


def apply_policies_node(state: TriageState) -> dict:
    return apply_triage_policy(
        state.get("raw_category"),
        state.get("raw_requires_reply"),
        state.get("raw_confidence"),
        direction=state.get("direction") or "inbound",
    )


def finalize_node(state: TriageState) -> dict:
    return {"processing_status": "failed" if state.get("errors") else "completed"}


def _route_after_rules(state: TriageState) -> str:
    return "finalize" if state.get("triage_source") == "sender_rule" else "classify"


def create_triage_graph() -> Any:
    graph = StateGraph(TriageState)

    graph.add_node("match_sender_rule", match_sender_rule_node)
    graph.add_node("classify", classify_node)
    graph.add_node("apply_policies", apply_policies_node)
    graph.add_node("finalize", finalize_node)

    graph.add_edge(START, "match_sender_rule")
    graph.add_conditional_edges(
        "match_sender_rule",
        _route_after_rules,
        {"finalize": "finalize", "classify": "classify"},
    )
    graph.add_edge("classify", "apply_policies")
    graph.add_edge("apply_policies", "finalize")
    graph.add_edge("finalize", END)

    return graph.compile()


triage_graph = create_triage_graph()


def triage_email(
    from_email: str,
    subject: str,
    body: str,
    direction: str = "inbound",
    sender_rules: Optional[List[dict]] = None,
) -> TriageState:
    initial_state: TriageState = {
        "from_email": (from_email or "").lower(),
        "subject": subject or "",
        "body": body or "",
        "direction": direction,
        "sender_rules": sender_rules or [],
        "errors": [],
    }
    return triage_graph.invoke(initial_state)
