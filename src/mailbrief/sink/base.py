"""IssueSink capability: where composed briefings are published."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class PublishResult:
    """Outcome of publishing one briefing.

    Attributes:
        accepted: Whether the sink durably accepted the briefing
        reference: Sink-side reference (e.g., issue URL), empty if rejected
    """

    accepted: bool
    reference: str = ""


@runtime_checkable
class IssueSink(Protocol):
    async def publish(self, title: str, body: str) -> PublishResult:
        """Publish a briefing with a markdown body.

        Raises:
            TransientIOError: Retryable failure (timeouts, 429/5xx)
            SinkPublishError: The sink refused the briefing
            AuthenticationError: Credentials were rejected
        """
        ...
