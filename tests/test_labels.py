"""Tests for the label state machine.

Tests state derivation, label setup, decision application (ordering,
idempotence, failure handling) and mark_done partial-failure tolerance.
"""

import pytest

from conftest import DONE, READY, FakeMailStore, make_envelope
from mailbrief.classifier.base import Category, ClassificationDecision
from mailbrief.config_schema import LabelsConfig
from mailbrief.core.errors import LabelMutationError, MailStoreError, TransientIOError
from mailbrief.core.retry import RetryPolicy
from mailbrief.engine.labels import LabelState, LabelStateMachine, TransitionOutcome

DAILY = ClassificationDecision(category=Category.DAILY_BRIEF, confidence=0.9)
NEEDS = ClassificationDecision(category=Category.NEEDS_RESPONSE, confidence=0.8)


@pytest.fixture
def machine(mail_store: FakeMailStore) -> LabelStateMachine:
    policy = RetryPolicy(max_retries=2, delays=(0.0,), timeout=5.0)
    return LabelStateMachine(mail_store, LabelsConfig(), policy)


class TestStateOf:
    """Tests for state derivation from labels."""

    def test_pending_without_state_labels(self, machine: LabelStateMachine):
        assert machine.state_of(make_envelope(labels={"INBOX"})) is LabelState.PENDING

    def test_ready(self, machine: LabelStateMachine):
        assert machine.state_of(make_envelope(labels={READY})) is LabelState.READY_FOR_BRIEFING

    def test_done(self, machine: LabelStateMachine):
        assert machine.state_of(make_envelope(labels={DONE})) is LabelState.BRIEFING_DONE

    def test_done_wins_when_both_present(self, machine: LabelStateMachine):
        env = make_envelope(labels={READY, DONE})
        assert machine.state_of(env) is LabelState.BRIEFING_DONE


class TestEnsureLabels:
    """Tests for ensure_labels()."""

    async def test_creates_missing_labels(self, machine, mail_store):
        await machine.ensure_labels()

        assert {READY, DONE} <= mail_store.existing_labels

    async def test_is_idempotent(self, machine, mail_store):
        await machine.ensure_labels()
        await machine.ensure_labels()

        assert len(mail_store.ops("create_label_if_absent")) == 4
        assert sorted(mail_store.existing_labels) == sorted({"INBOX", READY, DONE})

    async def test_failure_is_label_mutation_error(self, machine, mail_store):
        mail_store.fail("create_label_if_absent", READY, MailStoreError("permission denied"))

        with pytest.raises(LabelMutationError, match="Cannot create required label"):
            await machine.ensure_labels()


class TestApplyDecision:
    """Tests for apply_decision()."""

    async def test_needs_response_mutates_nothing(self, machine, mail_store):
        env = mail_store.add(make_envelope("m1"))

        outcome = await machine.apply_decision(env, NEEDS)

        assert outcome is TransitionOutcome.LEFT_IN_INBOX
        assert mail_store.labels_of("m1") == frozenset({"INBOX"})
        assert mail_store.ops("apply_label") == []
        assert mail_store.ops("remove_from_inbox") == []

    async def test_daily_brief_labels_then_archives(self, machine, mail_store):
        env = mail_store.add(make_envelope("m1"))

        outcome = await machine.apply_decision(env, DAILY)

        assert outcome is TransitionOutcome.MOVED_TO_READY
        assert mail_store.labels_of("m1") == frozenset({READY})
        mutations = [op for op, _ in mail_store.calls if op in ("apply_label", "remove_from_inbox")]
        assert mutations == ["apply_label", "remove_from_inbox"]

    async def test_already_labelled_is_noop(self, machine, mail_store):
        env = mail_store.add(make_envelope("m1", labels={READY}))

        outcome = await machine.apply_decision(env, DAILY)

        assert outcome is TransitionOutcome.ALREADY_APPLIED
        assert mail_store.ops("apply_label") == []

    async def test_briefed_envelope_never_reverts(self, machine, mail_store):
        env = mail_store.add(make_envelope("m1", labels={DONE}))

        outcome = await machine.apply_decision(env, DAILY)

        assert outcome is TransitionOutcome.ALREADY_APPLIED
        assert READY not in mail_store.labels_of("m1")

    async def test_label_failure_leaves_message_in_inbox(self, machine, mail_store):
        env = mail_store.add(make_envelope("m1"))
        mail_store.fail("apply_label", "m1")

        with pytest.raises(LabelMutationError) as exc_info:
            await machine.apply_decision(env, DAILY)

        assert exc_info.value.envelope_id == "m1"
        assert exc_info.value.operation == "apply_label"
        assert mail_store.labels_of("m1") == frozenset({"INBOX"})
        assert mail_store.ops("remove_from_inbox") == []

    async def test_archive_failure_keeps_label(self, machine, mail_store):
        env = mail_store.add(make_envelope("m1"))
        mail_store.fail("remove_from_inbox", "m1")

        with pytest.raises(LabelMutationError):
            await machine.apply_decision(env, DAILY)

        # Labelled but still visible; next cycle sees it as already applied
        assert mail_store.labels_of("m1") == frozenset({"INBOX", READY})

    async def test_transient_failure_is_retried(self, machine, mail_store):
        env = mail_store.add(make_envelope("m1"))
        attempts = {"n": 0}

        def flaky():
            attempts["n"] += 1
            if attempts["n"] == 1:
                return TransientIOError("connection reset")
            mail_store.failures.pop(("apply_label", "m1"))
            return TransientIOError("connection reset")

        mail_store.fail("apply_label", "m1", flaky)

        outcome = await machine.apply_decision(env, DAILY)

        assert outcome is TransitionOutcome.MOVED_TO_READY
        assert len(mail_store.ops("apply_label")) == 3


class TestMarkDone:
    """Tests for mark_done()."""

    async def test_moves_exactly_given_ids(self, machine, mail_store):
        for i in range(3):
            mail_store.add(make_envelope(f"m{i}", labels={READY}), in_inbox=False)

        result = await machine.mark_done(["m0", "m2"])

        assert result.succeeded == ["m0", "m2"]
        assert result.complete
        assert mail_store.labels_of("m0") == frozenset({DONE})
        assert mail_store.labels_of("m1") == frozenset({READY})
        assert mail_store.labels_of("m2") == frozenset({DONE})

    async def test_never_both_labels(self, machine, mail_store):
        mail_store.add(make_envelope("m1", labels={READY}), in_inbox=False)

        await machine.mark_done(["m1"])

        labels = mail_store.labels_of("m1")
        assert not (READY in labels and DONE in labels)

    async def test_partial_failure_continues(self, machine, mail_store):
        for i in range(3):
            mail_store.add(make_envelope(f"m{i}", labels={READY}), in_inbox=False)
        mail_store.fail("relabel", "m1")

        result = await machine.mark_done(["m0", "m1", "m2"])

        assert result.succeeded == ["m0", "m2"]
        assert set(result.failed) == {"m1"}
        assert not result.complete
        assert mail_store.labels_of("m1") == frozenset({READY})

    async def test_duplicate_ids_relabelled_once(self, machine, mail_store):
        mail_store.add(make_envelope("m1", labels={READY}), in_inbox=False)

        result = await machine.mark_done(["m1", "m1"])

        assert result.succeeded == ["m1"]
        assert len(mail_store.ops("relabel")) == 1

    async def test_empty_input(self, machine, mail_store):
        result = await machine.mark_done([])

        assert result.succeeded == []
        assert result.complete
        assert mail_store.calls == []
