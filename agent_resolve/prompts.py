"""Prompt templates for the AI arbitrator.

The system prompt establishes the arbitrator's role, ruling options and
response format; calibration notes derived from past outcomes are appended
to it. The user prompt injects the dispute and its evidence.
"""

from __future__ import annotations

import json

from agent_resolve.schemas import DisputeContext, EvidenceItem

SYSTEM_PROMPT = """\
You are an impartial AI arbitrator for Agent Resolve, a dispute resolution \
service for transactions between autonomous software agents. Your role is to \
weigh the claim, the response and the submitted evidence, and render a fair \
ruling.

## Ruling Options

- **CLAIMANT** — The evidence supports the claim. The claimant prevails.
- **RESPONDENT** — The claim is unsubstantiated or the respondent's defence \
  is stronger. The respondent prevails.
- **SPLIT** — Both parties share responsibility for the outcome.
- **DISMISSED** — The claim is frivolous or plainly without merit. Use sparingly.

## Evaluation Criteria

1. **Transaction Terms** — What did the parties agree to? Were the terms clear?
2. **Performance** — Was the agreed work or service delivered as specified?
3. **Evidence Quality** — Which party offers more specific, credible evidence?
4. **Track Record** — Trust scores (0–100) reflect each party's history; \
   treat them as a prior, never as a substitute for evidence.
5. **Proportionality** — Is the requested resolution proportionate to the harm?

## Confidence Scoring

Rate your confidence from 0.0 to 1.0:
- **0.90–1.00**: Clear-cut. Overwhelming evidence for one outcome.
- **0.70–0.89**: Strong case with some ambiguity.
- **0.50–0.69**: Significant ambiguity. Human review likely.
- **Below 0.50**: Insufficient evidence. The ruling will be escalated.

## Response Format

You MUST respond with ONLY a JSON object (no markdown fences, no preamble):

{
  "ruling": "CLAIMANT" | "RESPONDENT" | "SPLIT" | "DISMISSED",
  "reasoning": "2-4 sentence explanation of the ruling",
  "details": {
    "confidence": 0.0 to 1.0,
    "key_factors": ["factor1", "factor2"],
    "mitigating_factors": ["factor1"],
    "recommendation": "Concrete recommendation for resolving the matter"
  }
}
"""


def build_system_prompt(calibration_context: str = "") -> str:
    """System prompt with any calibration notes appended."""
    if not calibration_context:
        return SYSTEM_PROMPT
    return SYSTEM_PROMPT + calibration_context


def _format_value(cents: int | None) -> str:
    if cents is None:
        return "Not stated"
    return f"${cents / 100:,.2f}"


def _format_evidence(evidence: list[EvidenceItem]) -> str:
    if not evidence:
        return "No evidence submitted."
    blocks = []
    for i, item in enumerate(evidence, start=1):
        blocks.append(
            f"### Evidence {i} ({item.submitted_by})\n"
            f"Type: {item.evidence_type}\n"
            f"Title: {item.title}\n"
            f"Content:\n{item.content}"
        )
    return "\n\n".join(blocks)


def build_arbitration_prompt(context: DisputeContext, evidence: list[EvidenceItem]) -> str:
    """Build the user-turn prompt for one dispute."""
    if context.response_summary:
        response = (
            f"Summary: {context.response_summary}\n"
            f"Details: {context.response_details or 'Not provided'}"
        )
    else:
        response = "No response submitted by the respondent."

    return f"""\
Arbitrate the following dispute and render a ruling.

## Transaction

Title: {context.transaction_title}
Description: {context.transaction_description or 'Not provided'}
Stated value: {_format_value(context.stated_value)}
Terms:
{json.dumps(context.transaction_terms, indent=2, sort_keys=True)}

## Claim

Type: {context.claim_type.value}
Summary: {context.claim_summary}
Details: {context.claim_details or 'Not provided'}
Requested resolution: {context.requested_resolution}
Claimant trust score: {context.claimant_trust_score}/100

## Response

{response}
Respondent trust score: {context.respondent_trust_score}/100

## Evidence (in submission order)

{_format_evidence(evidence)}

## Instructions

1. Compare what was agreed with what was delivered.
2. Weigh each party's evidence; note evidence that is missing or unverifiable.
3. Respond with ONLY the JSON ruling object.
"""
