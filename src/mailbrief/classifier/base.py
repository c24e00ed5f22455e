"""Classifier and Summarizer capability contracts.

The reasoning service behind these contracts is a black box. The engine only
relies on:
- classify() returning exactly one of two categories, or raising
  ClassificationError (never guessing a default)
- summarize() returning entry text, or raising SummarizationError
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from mailbrief.engine.thread_grouper import ThreadCluster
    from mailbrief.mail.models import Envelope, MessageContent


class Category(StrEnum):
    """Classification outcome. Values are the wire tokens."""

    NEEDS_RESPONSE = "needs_response"
    DAILY_BRIEF = "daily_brief"


@dataclass(frozen=True, slots=True)
class ClassificationDecision:
    """Classifier output for one envelope or cluster.

    Attributes:
        category: Which way the message goes
        confidence: Optional confidence score (0.0-1.0)
        reasoning: Optional one-sentence explanation, for logs only
    """

    category: Category
    confidence: float | None = None
    reasoning: str | None = None

    def __post_init__(self) -> None:
        if self.confidence is not None and not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")


@runtime_checkable
class Classifier(Protocol):
    async def classify(self, target: Envelope | ThreadCluster) -> ClassificationDecision:
        """Classify a single envelope or a whole conversation.

        Raises:
            ClassificationError: Service unavailable or unparseable response
        """
        ...


@runtime_checkable
class Summarizer(Protocol):
    async def summarize(self, cluster: ThreadCluster, latest: MessageContent) -> str:
        """Summarize a cluster for the briefing.

        `latest` is the content of the newest member; its body normally quotes
        the earlier messages of the conversation.

        Raises:
            SummarizationError: Summary could not be produced
        """
        ...
