"""Classification and briefing cycles.

Each cycle is one stateless batch invocation. Nothing carries over between
cycles except the labels on the mailbox, so either cycle can be retried,
skipped, or overlap with the other and still converge.

Classification cycle:
1. Ensure state labels exist (fatal on failure)
2. List unread inbox envelopes, up to max_envelopes_per_cycle (fatal on failure)
3. Skip envelopes already carrying a state label
4. Group into conversations and classify them with bounded concurrency
5. Apply decisions serially, one envelope at a time
6. Envelopes left over at the deadline stay Pending for the next cycle

Briefing cycle:
1. Ensure state labels exist
2. List envelopes labelled ReadyForBriefing and group them
3. Aggregate into a report and publish it to the issue sink
4. Only after the sink accepts: mark exactly the report's envelopes done

Usage:
    from mailbrief.engine.cycles import BriefingCycle, ClassificationCycle

    result = await ClassificationCycle(store, classifier, config).run()
    result = await BriefingCycle(store, summarizer, sink, config).run()
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from mailbrief.core.errors import (
    AuthenticationError,
    ClassificationError,
    ConfigurationError,
    LabelMutationError,
    MailStoreError,
    SinkPublishError,
    TransientIOError,
)
from mailbrief.core.logging import bind_cycle_id, clear_cycle_id, get_logger
from mailbrief.core.rate_limiter import get_bucket
from mailbrief.core.retry import Deadline, RetryPolicy, call_with_retry
from mailbrief.engine.briefing import BriefingAggregator, BriefingReport, render_markdown
from mailbrief.engine.labels import LabelState, LabelStateMachine, TransitionOutcome
from mailbrief.engine.thread_grouper import ThreadCluster, group
from mailbrief.mail.models import EnvelopeFilter

if TYPE_CHECKING:
    from mailbrief.classifier.base import ClassificationDecision, Classifier, Summarizer
    from mailbrief.config_schema import AppConfig
    from mailbrief.mail.models import Envelope
    from mailbrief.mail.store import MailStore
    from mailbrief.sink.base import IssueSink

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EnvelopeFailure:
    """One contained per-envelope failure.

    Attributes:
        envelope_id: Envelope that failed
        category: 'classification', 'label_mutation' or 'mark_done'
        message: Error message
    """

    envelope_id: str
    category: str
    message: str


@dataclass
class ClassificationCycleResult:
    """Summary of one classification cycle."""

    cycle_id: str
    duration_ms: int = 0
    envelopes_fetched: int = 0
    clusters: int = 0
    moved_to_ready: int = 0
    left_in_inbox: int = 0
    already_applied: int = 0
    classification_failed: int = 0
    label_failed: int = 0
    abandoned: int = 0
    fatal_error: str | None = None
    failures: list[EnvelopeFailure] = field(default_factory=list)

    @property
    def zero_progress(self) -> bool:
        """True when the cycle changed nothing on the mailbox."""
        return self.moved_to_ready == 0


@dataclass
class BriefingCycleResult:
    """Summary of one briefing cycle."""

    cycle_id: str
    duration_ms: int = 0
    envelopes_fetched: int = 0
    entries: int = 0
    published: bool = False
    reference: str | None = None
    skipped_empty: bool = False
    dry_run: bool = False
    marked_done: int = 0
    mark_done_failed: int = 0
    abandoned: bool = False
    publish_error: str | None = None
    fatal_error: str | None = None
    failures: list[EnvelopeFailure] = field(default_factory=list)
    report: BriefingReport | None = None
    title: str | None = None
    body: str | None = None

    @property
    def zero_progress(self) -> bool:
        return self.marked_done == 0


@dataclass
class _ClusterDecision:
    """Internal result of classifying one cluster."""

    cluster: ThreadCluster
    members: list[Envelope]
    decision: ClassificationDecision | None = None
    error: str | None = None
    abandoned: bool = False


def retry_policy_from(config: AppConfig) -> RetryPolicy:
    """Build the collaborator retry policy from configuration."""
    return RetryPolicy(
        max_retries=config.retry.max_retries,
        delays=tuple(config.retry.delays_seconds),
        timeout=config.limits.request_timeout_seconds,
    )


# ---------------------------------------------------------------------------
# Classification cycle
# ---------------------------------------------------------------------------


class ClassificationCycle:
    """Classifies unread inbox mail and files DailyBrief mail for the briefing.

    Attributes:
        _store: MailStore for listing and mutations
        _classifier: Classifier capability
        _config: Application configuration
        _machine: LabelStateMachine applying decisions
        _policy: Retry policy for collaborator calls
    """

    def __init__(
        self,
        store: MailStore,
        classifier: Classifier,
        config: AppConfig,
        machine: LabelStateMachine | None = None,
    ):
        self._store = store
        self._classifier = classifier
        self._config = config
        self._policy = retry_policy_from(config)
        self._machine = machine or LabelStateMachine(store, config.labels, self._policy)

    async def run(self) -> ClassificationCycleResult:
        """Execute a single classification cycle.

        Returns:
            ClassificationCycleResult with counts, contained failures and,
            for setup failures, fatal_error
        """
        cycle_id = str(uuid.uuid4())
        bind_cycle_id(cycle_id)
        start_time = time.monotonic()
        deadline = Deadline(self._config.limits.cycle_deadline_seconds)
        result = ClassificationCycleResult(cycle_id=cycle_id)

        logger.info(
            "classification_cycle_start",
            max_envelopes=self._config.limits.max_envelopes_per_cycle,
            classify_threads=self._config.classifier.classify_threads,
        )

        try:
            await self._machine.ensure_labels()

            envelopes = await call_with_retry(
                lambda: self._store.list_envelopes(
                    EnvelopeFilter(
                        unread_only=True,
                        limit=self._config.limits.max_envelopes_per_cycle,
                    )
                ),
                policy=self._policy,
                operation="list_envelopes",
                bucket=get_bucket("mail_store"),
            )
            result.envelopes_fetched = len(envelopes)

            pending = []
            for envelope in envelopes:
                if self._machine.state_of(envelope) is LabelState.PENDING:
                    pending.append(envelope)
                else:
                    result.already_applied += 1

            if not pending:
                logger.info("classification_cycle_nothing_pending")
                return result

            clusters = self._cluster(pending)
            result.clusters = len(clusters)

            decisions = await self._classify_all(clusters, deadline)

            auth_failures = [d for d in decisions if d.error and d.error.startswith("auth:")]
            if auth_failures:
                raise AuthenticationError(auth_failures[0].error.removeprefix("auth:"))

            await self._apply_all(decisions, deadline, result)

        except (
            ConfigurationError,
            LabelMutationError,
            MailStoreError,
            TransientIOError,
            AuthenticationError,
        ) as e:
            result.fatal_error = f"{type(e).__name__}: {e}"
            logger.error("classification_cycle_error", error=str(e), error_type=type(e).__name__)
        finally:
            result.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "classification_cycle_complete",
                duration_ms=result.duration_ms,
                envelopes_fetched=result.envelopes_fetched,
                clusters=result.clusters,
                moved_to_ready=result.moved_to_ready,
                left_in_inbox=result.left_in_inbox,
                already_applied=result.already_applied,
                classification_failed=result.classification_failed,
                label_failed=result.label_failed,
                abandoned=result.abandoned,
                zero_progress=result.zero_progress,
                fatal_error=result.fatal_error,
            )
            clear_cycle_id()

        return result

    def _cluster(self, envelopes: list[Envelope]) -> list[ThreadCluster]:
        if self._config.classifier.classify_threads:
            return group(envelopes)
        return [ThreadCluster(key=env.subject, members=(env,)) for env in envelopes]

    async def _classify_all(
        self,
        clusters: list[ThreadCluster],
        deadline: Deadline,
    ) -> list[_ClusterDecision]:
        """Classify clusters concurrently, bounded by classification_concurrency.

        Results keep cluster order regardless of completion order. An
        unexpected error cancels the classifications still in flight.
        """
        semaphore = asyncio.Semaphore(self._config.limits.classification_concurrency)

        async def classify_one(cluster: ThreadCluster) -> _ClusterDecision:
            outcome = _ClusterDecision(cluster=cluster, members=list(cluster.members))
            async with semaphore:
                if deadline.expired:
                    outcome.abandoned = True
                    return outcome

                target = cluster if cluster.is_conversation else cluster.latest
                policy = RetryPolicy(
                    max_retries=self._policy.max_retries,
                    delays=self._policy.delays,
                    timeout=deadline.clamp(self._policy.timeout),
                )
                try:
                    outcome.decision = await call_with_retry(
                        lambda: self._classifier.classify(target),
                        policy=policy,
                        operation="classify",
                        bucket=get_bucket("classifier"),
                        envelope_id=cluster.latest.id,
                    )
                except (ClassificationError, TransientIOError) as e:
                    outcome.error = str(e)
                    logger.warning(
                        "classification_failed_left_pending",
                        envelope_id=cluster.latest.id,
                        members=len(cluster.members),
                        error=str(e),
                    )
                except AuthenticationError as e:
                    outcome.error = f"auth:{e}"
            return outcome

        try:
            async with asyncio.TaskGroup() as tg:
                tasks = [tg.create_task(classify_one(c)) for c in clusters]
        except ExceptionGroup as eg:
            # Siblings are cancelled by now; surface the first failure unwrapped
            raise eg.exceptions[0] from None
        return [task.result() for task in tasks]

    async def _apply_all(
        self,
        decisions: list[_ClusterDecision],
        deadline: Deadline,
        result: ClassificationCycleResult,
    ) -> None:
        """Apply decisions one envelope at a time, in cluster order."""
        for item in decisions:
            if item.abandoned:
                result.abandoned += len(item.members)
                continue

            if item.decision is None:
                result.classification_failed += len(item.members)
                for envelope in item.members:
                    result.failures.append(
                        EnvelopeFailure(envelope.id, "classification", item.error or "unknown")
                    )
                continue

            for envelope in item.members:
                if deadline.expired:
                    result.abandoned += 1
                    logger.warning("cycle_deadline_envelope_abandoned", envelope_id=envelope.id)
                    continue
                try:
                    outcome = await self._machine.apply_decision(envelope, item.decision)
                except LabelMutationError as e:
                    result.label_failed += 1
                    result.failures.append(EnvelopeFailure(envelope.id, "label_mutation", str(e)))
                    logger.error(
                        "envelope_transition_failed",
                        envelope_id=envelope.id,
                        operation=e.operation,
                        error=str(e),
                    )
                    continue

                if outcome is TransitionOutcome.MOVED_TO_READY:
                    result.moved_to_ready += 1
                elif outcome is TransitionOutcome.LEFT_IN_INBOX:
                    result.left_in_inbox += 1
                else:
                    result.already_applied += 1


# ---------------------------------------------------------------------------
# Briefing cycle
# ---------------------------------------------------------------------------


class BriefingCycle:
    """Publishes one briefing of ready mail and commits it as done.

    Publish-then-commit: a crash between publishing and mark_done leaves the
    messages ReadyForBriefing, so they are briefed again next cycle
    (at-least-once, occasional duplicates).
    """

    def __init__(
        self,
        store: MailStore,
        summarizer: Summarizer,
        sink: IssueSink | None,
        config: AppConfig,
        machine: LabelStateMachine | None = None,
    ):
        self._store = store
        self._sink = sink
        self._config = config
        self._policy = retry_policy_from(config)
        self._machine = machine or LabelStateMachine(store, config.labels, self._policy)
        self._aggregator = BriefingAggregator(
            store=store,
            summarizer=summarizer,
            ready_label=config.labels.ready_label,
            policy=self._policy,
        )

    async def run(self, dry_run: bool = False) -> BriefingCycleResult:
        """Execute a single briefing cycle.

        Args:
            dry_run: Aggregate and render, but neither publish nor mark done

        Returns:
            BriefingCycleResult with publish and commit outcome
        """
        cycle_id = str(uuid.uuid4())
        bind_cycle_id(cycle_id)
        start_time = time.monotonic()
        deadline = Deadline(self._config.limits.cycle_deadline_seconds)
        result = BriefingCycleResult(cycle_id=cycle_id, dry_run=dry_run)

        logger.info("briefing_cycle_start", dry_run=dry_run, repo=self._config.sink.repo)

        try:
            await self._machine.ensure_labels()

            envelopes = await call_with_retry(
                lambda: self._store.list_envelopes(
                    EnvelopeFilter(
                        label=self._machine.ready_label,
                        limit=self._config.limits.max_envelopes_per_cycle,
                    )
                ),
                policy=self._policy,
                operation="list_envelopes",
                bucket=get_bucket("mail_store"),
            )
            envelopes = [
                e for e in envelopes if self._machine.state_of(e) is LabelState.READY_FOR_BRIEFING
            ]
            result.envelopes_fetched = len(envelopes)

            report = await self._aggregator.aggregate(group(envelopes))
            result.report = report
            result.entries = len(report.entries)

            if report.is_empty and not self._config.briefing.publish_empty:
                result.skipped_empty = True
                logger.info("briefing_cycle_nothing_ready")
                return result

            result.title, result.body = render_markdown(report, self._config.briefing)

            if dry_run:
                logger.info("briefing_dry_run_rendered", entries=result.entries)
                return result

            if deadline.expired:
                # Nothing published yet, so nothing to commit
                result.abandoned = True
                logger.warning("briefing_cycle_deadline_before_publish")
                return result

            if not await self._publish(result):
                return result

            if report.source_envelope_ids:
                done = await self._machine.mark_done(sorted(report.source_envelope_ids))
                result.marked_done = len(done.succeeded)
                result.mark_done_failed = len(done.failed)
                for envelope_id, message in done.failed.items():
                    result.failures.append(EnvelopeFailure(envelope_id, "mark_done", message))

        except (
            ConfigurationError,
            LabelMutationError,
            MailStoreError,
            TransientIOError,
            AuthenticationError,
        ) as e:
            result.fatal_error = f"{type(e).__name__}: {e}"
            logger.error("briefing_cycle_error", error=str(e), error_type=type(e).__name__)
        finally:
            result.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "briefing_cycle_complete",
                duration_ms=result.duration_ms,
                envelopes_fetched=result.envelopes_fetched,
                entries=result.entries,
                published=result.published,
                reference=result.reference,
                marked_done=result.marked_done,
                mark_done_failed=result.mark_done_failed,
                skipped_empty=result.skipped_empty,
                publish_error=result.publish_error,
                fatal_error=result.fatal_error,
            )
            clear_cycle_id()

        return result

    async def _publish(self, result: BriefingCycleResult) -> bool:
        """Publish the rendered briefing. Returns True only if the sink accepted it."""
        if self._sink is None:
            raise ConfigurationError("No issue sink configured; only dry runs are possible")
        try:
            published = await call_with_retry(
                lambda: self._sink.publish(result.title, result.body),
                policy=self._policy,
                operation="publish",
                bucket=get_bucket("issue_sink"),
            )
        except (SinkPublishError, TransientIOError, AuthenticationError) as e:
            result.publish_error = f"{type(e).__name__}: {e}"
            logger.error("briefing_publish_failed_no_commit", error=str(e))
            return False

        if not published.accepted:
            result.publish_error = "Issue sink did not accept the briefing"
            logger.error("briefing_publish_rejected_no_commit", reference=published.reference)
            return False

        result.published = True
        result.reference = published.reference
        logger.info("briefing_published", reference=published.reference)
        return True
