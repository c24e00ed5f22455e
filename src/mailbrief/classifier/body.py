"""Message body preparation for classifier and summarizer prompts.

Strips the parts of a plain-text body that add tokens but not meaning:
HTML tags, quoted reply blocks, signatures and mobile footers. Quoted
reply blocks are only dropped for classification; the summarizer keeps
them because they carry the earlier turns of the conversation.

All patterns run with a timeout (ReDoS guard against hostile mail).

Usage:
    from mailbrief.classifier.body import prepare_body

    text = prepare_body(content.body, max_chars=4000)
"""

from __future__ import annotations

import html

import regex

from mailbrief.core.logging import get_logger

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0

HTML_TAG_PATTERN = regex.compile(r"<[^>]+>")

QUOTED_REPLY_PATTERNS = [
    # "On <date>, <name> wrote:" and everything after it
    regex.compile(r"^On .{1,200}? wrote:\s*$.*", regex.MULTILINE | regex.DOTALL),
    # "> " quoted lines
    regex.compile(r"^>.*$\n?", regex.MULTILINE),
]

SIGNATURE_PATTERNS = [
    regex.compile(r"^--\s*\n.*", regex.MULTILINE | regex.DOTALL),
    regex.compile(
        r"^Sent from my (iPhone|iPad|Android|Galaxy|Pixel|mobile).*$",
        regex.MULTILINE | regex.IGNORECASE,
    ),
]

EXCESSIVE_NEWLINES = regex.compile(r"\n{3,}")
EXCESSIVE_SPACES = regex.compile(r"[ \t]{2,}")


def _safe_sub(pattern: regex.Pattern, repl: str, text: str) -> str:
    try:
        return pattern.sub(repl, text, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("body_regex_timeout", pattern=pattern.pattern[:50])
        return text


def looks_like_html(text: str) -> bool:
    head = text[:500].lower()
    return "<html" in head or "<body" in head or "<div" in head or "<p>" in head


def prepare_body(text: str | None, max_chars: int, keep_quoted: bool = False) -> str:
    """Clean and truncate a message body for a prompt.

    Args:
        text: Raw body (plain text, or HTML when the message has no text part)
        max_chars: Maximum characters returned
        keep_quoted: Keep quoted earlier messages (used for summaries)

    Returns:
        Cleaned body, possibly empty
    """
    if not text:
        return ""

    current = text.replace("\r\n", "\n")
    if looks_like_html(current):
        current = html.unescape(_safe_sub(HTML_TAG_PATTERN, " ", current))

    if not keep_quoted:
        for pattern in QUOTED_REPLY_PATTERNS:
            current = _safe_sub(pattern, "", current)

    for pattern in SIGNATURE_PATTERNS:
        current = _safe_sub(pattern, "", current)

    current = _safe_sub(EXCESSIVE_NEWLINES, "\n\n", current)
    current = _safe_sub(EXCESSIVE_SPACES, " ", current).strip()

    if len(current) > max_chars:
        current = current[:max_chars].rstrip() + "\n[truncated]"
    return current
