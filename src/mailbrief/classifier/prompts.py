"""Tool definitions and prompt assembly for the Claude classifier and summarizer.

Both calls use forced tool_choice so the response is always structured:
classify_email returns one of the two category tokens, summarize_thread
returns the entry text for one briefing item.

Usage:
    from mailbrief.classifier.prompts import CLASSIFY_EMAIL_TOOL, build_classify_message

    message = build_classify_message(latest, body, earlier=cluster.members[:-1])
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from mailbrief.classifier.base import Category

if TYPE_CHECKING:
    from mailbrief.mail.models import Envelope

# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

CLASSIFY_EMAIL_TOOL: dict[str, Any] = {
    "name": "classify_email",
    "description": "Decide whether an email needs a personal response or belongs in the daily brief",
    "input_schema": {
        "type": "object",
        "properties": {
            "category": {
                "type": "string",
                "enum": [c.value for c in Category],
            },
            "confidence": {
                "type": "number",
                "minimum": 0.0,
                "maximum": 1.0,
                "description": "Classification confidence score",
            },
            "reasoning": {
                "type": "string",
                "description": "One sentence explaining the classification",
            },
        },
        "required": ["category", "confidence", "reasoning"],
    },
}

VALID_CATEGORIES = frozenset(CLASSIFY_EMAIL_TOOL["input_schema"]["properties"]["category"]["enum"])

SUMMARIZE_THREAD_TOOL: dict[str, Any] = {
    "name": "summarize_thread",
    "description": "Summarize an email or conversation for a daily briefing",
    "input_schema": {
        "type": "object",
        "properties": {
            "summary": {
                "type": "string",
                "description": "Two to four sentences of markdown covering what matters",
            },
        },
        "required": ["summary"],
    },
}


# ---------------------------------------------------------------------------
# System prompts
# ---------------------------------------------------------------------------

CLASSIFY_SYSTEM_PROMPT = """\
You triage a personal inbox. For each email, call the classify_email tool \
with exactly one category:

- needs_response: A person wrote to the user and expects a reply, a decision, \
or an action from them. Direct questions, requests, meeting negotiations, \
anything a human is waiting on.
- daily_brief: Everything the user only needs to know about. Newsletters, \
notifications, receipts, automated reports, announcements, mailing list \
traffic, FYI messages.

HINTS:
- When the email is part of a conversation, judge the latest message; the \
earlier messages are context.
- When unsure whether a human is waiting on the user, prefer needs_response. \
Hiding a message that needed a reply costs more than leaving a newsletter \
in the inbox.\
"""

SUMMARIZE_SYSTEM_PROMPT = """\
You write entries for a daily email briefing. Call the summarize_thread tool \
with a short markdown summary of the email or conversation: who wants what, \
key facts, dates and amounts, and anything that looks time-sensitive. Do not \
add greetings, headings or commentary about the briefing itself.\
"""


# ---------------------------------------------------------------------------
# User messages
# ---------------------------------------------------------------------------


def _header_lines(envelope: Envelope) -> list[str]:
    return [
        f"From: {envelope.sender}",
        f"Subject: {envelope.subject}",
        f"Received: {envelope.received_at.isoformat()}",
    ]


def build_classify_message(
    latest: Envelope,
    body: str,
    earlier: Sequence[Envelope] = (),
) -> str:
    """Assemble the classification user message.

    Args:
        latest: Envelope being classified (newest of its conversation)
        body: Prepared body of the latest message
        earlier: Older members of the same conversation, oldest first

    Returns:
        User message string
    """
    parts = ["Classify this email:", ""]
    parts.extend(_header_lines(latest))
    parts.append("")
    parts.append(f"Body:\n{body or '(empty)'}")

    if earlier:
        parts.append("")
        parts.append(f"Earlier messages in this conversation ({len(earlier)}, newest first):")
        for i, env in enumerate(reversed(earlier), 1):
            when = env.received_at.strftime("%Y-%m-%d %H:%M")
            parts.append(f"  [{i}] {when} From: {env.sender} Subject: {env.subject}")

    return "\n".join(parts)


def build_summary_message(
    members: Sequence[Envelope],
    body: str,
) -> str:
    """Assemble the summarization user message for one cluster.

    Args:
        members: Cluster members, oldest first
        body: Prepared body of the latest member, quoted replies kept

    Returns:
        User message string
    """
    latest = members[-1]
    if len(members) == 1:
        parts = ["Summarize this email:", ""]
    else:
        parts = [f"Summarize this conversation of {len(members)} messages:", ""]
        for env in members[:-1]:
            when = env.received_at.strftime("%Y-%m-%d %H:%M")
            parts.append(f"- {when} {env.sender}: {env.subject}")
        parts.append("")
        parts.append("Latest message:")

    parts.extend(_header_lines(latest))
    parts.append("")
    parts.append(body or "(empty)")
    return "\n".join(parts)
