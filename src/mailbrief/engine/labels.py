"""Label state machine: classification decisions become mailbox state.

The mailbox labels are the system's only durable state:

    Pending ──needs_response──> (left in inbox, untouched)
       │
       └──daily_brief──> ReadyForBriefing ──mark_done──> BriefingDone

Pending is implicit (neither state label present). An envelope carries at most
one of the two state labels at any time; ReadyForBriefing -> BriefingDone is
done with the store's atomic relabel so both are never present together.

Every transition inspects the envelope's labels before mutating, which is
what lets overlapping or retried cycles converge instead of double-processing.

Usage:
    from mailbrief.engine.labels import LabelStateMachine

    machine = LabelStateMachine(store, config.labels, retry_policy)
    await machine.ensure_labels()
    outcome = await machine.apply_decision(envelope, decision)
    result = await machine.mark_done(report.source_envelope_ids)
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from mailbrief.classifier.base import Category
from mailbrief.core.errors import LabelMutationError, MailStoreError, TransientIOError
from mailbrief.core.logging import get_logger
from mailbrief.core.rate_limiter import get_bucket
from mailbrief.core.retry import RetryPolicy, call_with_retry

if TYPE_CHECKING:
    from mailbrief.classifier.base import ClassificationDecision
    from mailbrief.config_schema import LabelsConfig
    from mailbrief.mail.models import Envelope
    from mailbrief.mail.store import MailStore

logger = get_logger(__name__)


class LabelState(StrEnum):
    PENDING = "pending"
    READY_FOR_BRIEFING = "ready_for_briefing"
    BRIEFING_DONE = "briefing_done"


class TransitionOutcome(StrEnum):
    """What apply_decision did to one envelope."""

    LEFT_IN_INBOX = "left_in_inbox"
    MOVED_TO_READY = "moved_to_ready"
    ALREADY_APPLIED = "already_applied"


@dataclass
class MarkDoneResult:
    """Per-id outcome of a mark_done call.

    Attributes:
        succeeded: Ids now labelled BriefingDone
        failed: Id -> error message for ids whose relabel failed
    """

    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failed


class LabelStateMachine:
    """Drives envelopes through the label states on the remote mailbox.

    Attributes:
        _store: MailStore the labels live on
        _labels: Label names from configuration
        _policy: Retry policy for store mutations
    """

    def __init__(
        self,
        store: MailStore,
        labels: LabelsConfig,
        policy: RetryPolicy | None = None,
    ):
        self._store = store
        self._labels = labels
        self._policy = policy or RetryPolicy()
        self._bucket = get_bucket("mail_store")

    @property
    def ready_label(self) -> str:
        return self._labels.ready_label

    @property
    def done_label(self) -> str:
        return self._labels.done_label

    def state_of(self, envelope: Envelope) -> LabelState:
        """Derive an envelope's state from its labels.

        If an envelope somehow carries both labels (e.g., a user copied it by
        hand), BriefingDone wins: it has already been briefed.
        """
        if envelope.has_label(self.done_label):
            return LabelState.BRIEFING_DONE
        if envelope.has_label(self.ready_label):
            return LabelState.READY_FOR_BRIEFING
        return LabelState.PENDING

    async def ensure_labels(self) -> None:
        """Find-or-create both state labels.

        Raises:
            LabelMutationError: A label could not be created. This is a cycle
                setup failure; callers must stop before any envelope mutation.
        """
        for name in (self.ready_label, self.done_label):
            try:
                created = await call_with_retry(
                    lambda name=name: self._store.create_label_if_absent(name),
                    policy=self._policy,
                    operation="create_label_if_absent",
                    bucket=self._bucket,
                    label=name,
                )
            except (MailStoreError, TransientIOError) as e:
                raise LabelMutationError(
                    f"Cannot create required label '{name}': {e}. "
                    "Check mailbox permissions and the labels section of config.yaml.",
                    operation="create_label_if_absent",
                ) from e
            if created:
                logger.info("label_created", label=name)

    async def apply_decision(
        self,
        envelope: Envelope,
        decision: ClassificationDecision,
    ) -> TransitionOutcome:
        """Apply one classification decision to one envelope.

        NeedsResponse: nothing to do, the message already sits unread in the
        inbox. DailyBrief: label ReadyForBriefing, then archive. Envelopes
        already carrying a state label are left alone.

        Args:
            envelope: Envelope as listed this cycle
            decision: Classifier output for the envelope (or its cluster)

        Returns:
            TransitionOutcome describing what happened

        Raises:
            LabelMutationError: The label or archive mutation failed
        """
        if decision.category is Category.NEEDS_RESPONSE:
            logger.debug("envelope_left_in_inbox", envelope_id=envelope.id)
            return TransitionOutcome.LEFT_IN_INBOX

        state = self.state_of(envelope)
        if state is not LabelState.PENDING:
            logger.debug("envelope_already_labelled", envelope_id=envelope.id, state=state.value)
            return TransitionOutcome.ALREADY_APPLIED

        # Label before archiving: a failure in between leaves the message
        # visible in the inbox instead of hidden and unlabelled
        await self._mutate(
            "apply_label",
            envelope.id,
            lambda: self._store.apply_label(envelope.id, self.ready_label),
        )
        await self._mutate(
            "remove_from_inbox",
            envelope.id,
            lambda: self._store.remove_from_inbox(envelope.id),
        )

        logger.info(
            "envelope_ready_for_briefing",
            envelope_id=envelope.id,
            confidence=decision.confidence,
        )
        return TransitionOutcome.MOVED_TO_READY

    async def mark_done(self, envelope_ids: Iterable[str]) -> MarkDoneResult:
        """Move exactly the given envelopes from ReadyForBriefing to BriefingDone.

        Partial-failure tolerant: an id whose relabel fails is logged, left
        out of `succeeded` and recorded in `failed`; the others proceed.

        Args:
            envelope_ids: Ids committed by a published briefing

        Returns:
            MarkDoneResult with per-id outcome
        """
        result = MarkDoneResult()
        seen: set[str] = set()

        for envelope_id in envelope_ids:
            if envelope_id in seen:
                continue
            seen.add(envelope_id)
            try:
                await self._mutate(
                    "relabel",
                    envelope_id,
                    lambda envelope_id=envelope_id: self._store.relabel(
                        envelope_id, self.ready_label, self.done_label
                    ),
                )
            except LabelMutationError as e:
                logger.error("mark_done_failed", envelope_id=envelope_id, error=str(e))
                result.failed[envelope_id] = str(e)
                continue
            result.succeeded.append(envelope_id)

        logger.info(
            "mark_done_complete",
            succeeded=len(result.succeeded),
            failed=len(result.failed),
        )
        return result

    async def _mutate(self, operation: str, envelope_id: str, func) -> None:
        """Run one store mutation with retries, normalizing failures."""
        try:
            await call_with_retry(
                func,
                policy=self._policy,
                operation=operation,
                bucket=self._bucket,
                envelope_id=envelope_id,
            )
        except (MailStoreError, TransientIOError) as e:
            raise LabelMutationError(
                f"{operation} failed for envelope {envelope_id}: {e}",
                envelope_id=envelope_id,
                operation=operation,
            ) from e
