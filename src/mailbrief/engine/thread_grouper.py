"""Conversation grouping for a single cycle's batch of envelopes.

Groups envelopes by normalized subject, so "Lunch?" and "Re: Lunch?" land in
one cluster and produce one briefing entry instead of two. Threading headers
(In-Reply-To / References), when the transport provides them, can link
further envelopes into a cluster; they never split one.

There is no memory across cycles: only envelopes in the same input batch are
compared.

Known limitation: two unrelated conversations whose subjects normalize to the
same string are merged. Subject matching is kept deliberately exact because
threading headers are often unavailable from the mail transport.

Usage:
    from mailbrief.engine.thread_grouper import group, normalize_subject

    clusters = group(envelopes)
    for cluster in clusters:
        print(cluster.key, len(cluster.members), cluster.latest.id)
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import regex

from mailbrief.core.logging import get_logger
from mailbrief.mail.models import Envelope

logger = get_logger(__name__)

# Regex timeout for security (used in match operations)
REGEX_TIMEOUT = 1.0

# One leading reply/forward marker: "Re:", "FW:", "Fwd:", "Re[2]:"
# Note: timeout is passed at match time (sub), not compile time
SUBJECT_PREFIX_PATTERN = regex.compile(r"^(?:re|fwd?|fw)\s*(?:\[\d+\])?\s*:\s*", regex.IGNORECASE)
WHITESPACE_PATTERN = regex.compile(r"\s+")


@dataclass(frozen=True, slots=True)
class ThreadCluster:
    """Envelopes believed to belong to one conversation.

    Attributes:
        key: Normalized subject of the oldest member
        members: Envelopes ordered oldest first
    """

    key: str
    members: tuple[Envelope, ...]

    def __post_init__(self) -> None:
        if not self.members:
            raise ValueError("ThreadCluster needs at least one member")

    @property
    def latest(self) -> Envelope:
        """Most recently received member."""
        return self.members[-1]

    @property
    def is_conversation(self) -> bool:
        return len(self.members) > 1

    @property
    def envelope_ids(self) -> tuple[str, ...]:
        return tuple(m.id for m in self.members)


def normalize_subject(subject: str) -> str:
    """Normalize a subject line for thread matching.

    Collapses whitespace, strips any number of leading Re:/Fwd: markers
    (case-insensitive) and lowercases. Idempotent.

    Args:
        subject: Email subject

    Returns:
        Normalized subject, or "" for an empty/marker-only subject
    """
    if not subject:
        return ""

    try:
        normalized = WHITESPACE_PATTERN.sub(" ", subject, timeout=REGEX_TIMEOUT).strip()
        while True:
            stripped = SUBJECT_PREFIX_PATTERN.sub("", normalized, count=1, timeout=REGEX_TIMEOUT)
            if stripped == normalized:
                break
            normalized = stripped
        return normalized.lower()
    except TimeoutError:
        logger.warning("subject_normalize_timeout", subject_length=len(subject))
        return " ".join(subject.split()).lower()


def group(envelopes: Sequence[Envelope]) -> list[ThreadCluster]:
    """Group one batch of envelopes into conversation clusters.

    Every input envelope appears in exactly one output cluster. Clusters are
    returned in order of their first member's position in the input.

    Args:
        envelopes: Envelopes from a single listing

    Returns:
        List of ThreadCluster, members ordered by received_at ascending
        (ties keep input order)
    """
    parent = list(range(len(envelopes)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    def union(a: int, b: int) -> None:
        root_a, root_b = find(a), find(b)
        if root_a != root_b:
            # Lowest index wins so cluster order follows input order
            parent[max(root_a, root_b)] = min(root_a, root_b)

    keys = [normalize_subject(env.subject) for env in envelopes]

    # Subject matching; empty subjects are never merged on subject alone
    first_by_key: dict[str, int] = {}
    for index, key in enumerate(keys):
        if not key:
            continue
        if key in first_by_key:
            union(first_by_key[key], index)
        else:
            first_by_key[key] = index

    # Header matching, limited to messages present in this batch
    index_by_message_id: dict[str, int] = {}
    for index, env in enumerate(envelopes):
        if env.threading and env.threading.message_id:
            index_by_message_id.setdefault(env.threading.message_id, index)
    for index, env in enumerate(envelopes):
        if not env.threading:
            continue
        for linked in env.threading.linked_ids():
            target = index_by_message_id.get(linked)
            if target is not None:
                union(target, index)

    members_by_root: dict[int, list[int]] = {}
    for index in range(len(envelopes)):
        members_by_root.setdefault(find(index), []).append(index)

    clusters: list[ThreadCluster] = []
    for root in sorted(members_by_root):
        indices = sorted(members_by_root[root], key=lambda i: (envelopes[i].received_at, i))
        clusters.append(
            ThreadCluster(
                key=keys[indices[0]],
                members=tuple(envelopes[i] for i in indices),
            )
        )

    logger.debug("envelopes_grouped", envelopes=len(envelopes), clusters=len(clusters))
    return clusters
