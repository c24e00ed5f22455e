"""Briefing aggregation and rendering.

Turns the conversations currently labelled ReadyForBriefing into one report:
one entry per cluster, newest conversation first. Each entry's text comes
from the Summarizer; when reading or summarizing fails the entry falls back
to a plain headline so a message is never silently left out of a briefing.

Usage:
    from mailbrief.engine.briefing import BriefingAggregator, render_markdown

    aggregator = BriefingAggregator(store, summarizer, ready_label, policy)
    report = await aggregator.aggregate(clusters)
    title, body = render_markdown(report, config.briefing)
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from mailbrief.core.errors import MailStoreError, SummarizationError, TransientIOError
from mailbrief.core.logging import get_logger
from mailbrief.core.rate_limiter import get_bucket
from mailbrief.core.retry import RetryPolicy, call_with_retry

if TYPE_CHECKING:
    from mailbrief.classifier.base import Summarizer
    from mailbrief.config_schema import BriefingConfig
    from mailbrief.engine.thread_grouper import ThreadCluster
    from mailbrief.mail.models import MessageContent
    from mailbrief.mail.store import MailStore

logger = get_logger(__name__)

# Characters of body kept in a fallback entry
FALLBACK_SNIPPET_CHARS = 280


class EntryKind(StrEnum):
    MESSAGE = "message"
    CONVERSATION = "conversation"


@dataclass(frozen=True, slots=True)
class BriefingEntry:
    """One briefing line item, covering a single message or a conversation.

    Attributes:
        cluster_key: Normalized subject of the cluster
        subject: Subject of the latest message, as received
        kind: MESSAGE for one member, CONVERSATION for more
        member_count: Number of messages covered
        senders: Distinct senders, oldest first
        latest_at: When the latest message arrived
        summary: Summary text (markdown)
        envelope_ids: Ids of every covered message
        fallback: True when the summary is a plain headline
    """

    cluster_key: str
    subject: str
    kind: EntryKind
    member_count: int
    senders: tuple[str, ...]
    latest_at: datetime
    summary: str
    envelope_ids: tuple[str, ...]
    fallback: bool = False


@dataclass(frozen=True)
class BriefingReport:
    """One cycle's briefing.

    Attributes:
        generated_at: When aggregation finished
        entries: Entries ordered newest conversation first
        source_envelope_ids: Ids committed to BriefingDone once published
    """

    generated_at: datetime
    entries: tuple[BriefingEntry, ...] = ()
    source_envelope_ids: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_empty(self) -> bool:
        return not self.entries

    @property
    def message_count(self) -> int:
        return len(self.source_envelope_ids)


class BriefingAggregator:
    """Composes a BriefingReport from ready clusters."""

    def __init__(
        self,
        store: MailStore,
        summarizer: Summarizer,
        ready_label: str,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._summarizer = summarizer
        self._ready_label = ready_label
        self._policy = policy or RetryPolicy()

    async def aggregate(self, clusters: Sequence[ThreadCluster]) -> BriefingReport:
        """Build the briefing for the given clusters.

        Only clusters whose latest member carries the ReadyForBriefing label
        are included. Entries are sorted by latest received time, descending;
        ties keep input order.

        Args:
            clusters: Clusters from ThreadGrouper, in input order

        Returns:
            BriefingReport (possibly empty)
        """
        ready = [c for c in clusters if c.latest.has_label(self._ready_label)]
        skipped = len(clusters) - len(ready)
        if skipped:
            logger.debug("clusters_not_ready_skipped", count=skipped)

        entries = [await self._build_entry(cluster) for cluster in ready]
        # sorted() is stable, so equal timestamps keep input order
        entries = sorted(entries, key=lambda e: e.latest_at, reverse=True)

        source_ids = frozenset(i for entry in entries for i in entry.envelope_ids)
        report = BriefingReport(
            generated_at=datetime.now(UTC),
            entries=tuple(entries),
            source_envelope_ids=source_ids,
        )
        logger.info(
            "briefing_aggregated",
            entries=len(report.entries),
            messages=report.message_count,
            fallback_entries=sum(1 for e in entries if e.fallback),
        )
        return report

    async def _build_entry(self, cluster: ThreadCluster) -> BriefingEntry:
        latest = cluster.latest
        summary: str | None = None
        content: MessageContent | None = None

        try:
            content = await call_with_retry(
                lambda: self._store.read_message(latest.id),
                policy=self._policy,
                operation="read_message",
                bucket=get_bucket("mail_store"),
                envelope_id=latest.id,
            )
            summary = await call_with_retry(
                lambda: self._summarizer.summarize(cluster, content),
                policy=self._policy,
                operation="summarize",
                bucket=get_bucket("classifier"),
                envelope_id=latest.id,
            )
        except (MailStoreError, TransientIOError, SummarizationError) as e:
            logger.warning(
                "briefing_entry_fallback",
                envelope_id=latest.id,
                members=len(cluster.members),
                error=str(e),
                error_type=type(e).__name__,
            )

        senders = tuple(dict.fromkeys(m.sender for m in cluster.members))
        fallback = not summary or not summary.strip()
        if fallback:
            summary = _fallback_summary(cluster, content)

        return BriefingEntry(
            cluster_key=cluster.key,
            subject=latest.subject or "(No Subject)",
            kind=EntryKind.CONVERSATION if cluster.is_conversation else EntryKind.MESSAGE,
            member_count=len(cluster.members),
            senders=senders,
            latest_at=latest.received_at,
            summary=summary.strip(),
            envelope_ids=cluster.envelope_ids,
            fallback=fallback,
        )


def _fallback_summary(cluster: ThreadCluster, content: MessageContent | None) -> str:
    """Plain headline used when the Summarizer is unavailable."""
    latest = cluster.latest
    if cluster.is_conversation:
        headline = f"{len(cluster.members)} messages, latest from {latest.sender}."
    else:
        headline = f"From {latest.sender}."

    if content and content.body.strip():
        snippet = " ".join(content.body.split())
        if len(snippet) > FALLBACK_SNIPPET_CHARS:
            snippet = snippet[: FALLBACK_SNIPPET_CHARS - 3].rstrip() + "..."
        return f"{headline} {snippet}"
    return headline


def render_markdown(report: BriefingReport, config: BriefingConfig) -> tuple[str, str]:
    """Render a report as an issue title and markdown body.

    Args:
        report: Aggregated report
        config: Briefing settings (title template, mention tags)

    Returns:
        Tuple of (title, body)
    """
    local_time = report.generated_at.astimezone()
    title = config.title_template.format(
        date=local_time.strftime("%Y-%m-%d"),
        count=report.message_count,
    )

    lines: list[str] = []
    if config.mention_tags:
        lines.append(" ".join(config.mention_tags))
        lines.append("")

    if report.is_empty:
        lines.append("Nothing new since the last briefing.")
    else:
        for entry in report.entries:
            when = entry.latest_at.astimezone().strftime("%Y-%m-%d %H:%M")
            if entry.kind is EntryKind.CONVERSATION:
                heading = f"### {entry.subject} ({entry.member_count} messages)"
            else:
                heading = f"### {entry.subject}"
            lines.append(heading)
            lines.append(f"*{', '.join(entry.senders)} · {when}*")
            lines.append("")
            lines.append(entry.summary)
            lines.append("")

    lines.append("---")
    lines.append(
        f"{report.message_count} message(s) in {len(report.entries)} entr"
        f"{'y' if len(report.entries) == 1 else 'ies'}, "
        f"generated {local_time.strftime('%Y-%m-%d %H:%M %Z')}."
    )
    return title, "\n".join(lines)
