# infrastructure/agents/prompts.py
import json
from typing import Optional, Sequence

from domain.models.agent_context import AgentAnalysis, AnalysisContext, AnalyzerKind
from domain.models.verdict import verdict_to_dict

PERSPECTIVE_MARKER = "PERSPECTIVE:"
MESSAGE_START = "<message>"
MESSAGE_END = "</message>"

PERSPECTIVES = {
    AnalyzerKind.SALES: (
        "You are the sales analyst. Decide whether the email signals buying intent "
        "(quotes, bulk orders, purchases, contracts) and estimate the opportunity stage."
    ),
    AnalyzerKind.SUPPORT: (
        "You are the customer support analyst. Decide whether the email is a product "
        "inquiry (price, stock, specifications of named products) or a general support request."
    ),
    AnalyzerKind.DISPUTE_BILLING: (
        "You are the billing dispute analyst. Look for refunds, chargebacks, double charges "
        "and invoice disagreements. Disputes must always set escalate=true."
    ),
    AnalyzerKind.RELATIONSHIP: (
        "You are the relationship analyst. Judge the sender's sentiment (-1..1) and the "
        "warmth of the relationship (0..1)."
    ),
    AnalyzerKind.OPPORTUNITY: (
        "You are the account growth analyst. Look for upsell and cross-sell openings "
        "such as upgrades, accessories and bundles."
    ),
}

RESPONSE_FORMAT = """Respond with one JSON object:
{
  "category": one of "support/product-inquiry", "support/general", "sales",
              "dispute/billing", "relationship", "opportunity",
  "confidence": number between 0 and 1,
  "urgency": one of "low", "medium", "high", "urgent",
  "recommended_action": short instruction for the team,
  "escalate": true or false,
  "rationale": one sentence,
  ...any fields specific to the category (products, needs_live_data, topic,
  opportunity_stage, estimated_value, dispute_type, amount, sentiment, warmth,
  upsell_products)
}"""


def build_prompt(kind: AnalyzerKind, context: AnalysisContext,
                 peers: Sequence[AgentAnalysis] = (),
                 extra_guidance: Optional[str] = None) -> str:
    """Render the analyzer prompt for one message"""
    message = context.message
    lines = [
        f"{PERSPECTIVE_MARKER} {kind.value}",
        PERSPECTIVES[kind],
    ]
    if extra_guidance:
        lines.append(extra_guidance)

    if context.external_systems:
        lines.append(
            "The email references live business data ("
            + ", ".join(context.external_systems)
            + "). Set needs_live_data=true where relevant; do not invent figures."
        )

    if context.recent_turns:
        lines.append("Earlier messages in this thread:")
        for turn in context.recent_turns[-3:]:
            lines.append(f"- {turn.text[:300]}")

    for peer in peers:
        lines.append(
            f"Peer {peer.analyzer_kind.value} analysis: category={peer.verdict.category} "
            f"confidence={peer.confidence:.2f} details={json.dumps(verdict_to_dict(peer.verdict))}"
        )

    lines.extend([
        MESSAGE_START,
        f"From: {message.sender}",
        f"Subject: {message.subject}",
        "",
        message.body,
        MESSAGE_END,
        RESPONSE_FORMAT,
    ])
    return "\n".join(lines)
