"""Pytest fixtures and configuration for mailbrief tests.

Provides common fixtures for configuration, an in-memory mailbox, and fake
classifier, summarizer and issue sink collaborators.
"""

import os
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Generator

import pytest

from mailbrief.classifier.base import Category, ClassificationDecision
from mailbrief.config import reset_config
from mailbrief.config_schema import AppConfig
from mailbrief.core.errors import MailStoreError, TransientIOError
from mailbrief.core.rate_limiter import DEFAULT_RATES, get_bucket, reset_buckets
from mailbrief.mail.models import Envelope, EnvelopeFilter, MessageContent, ThreadingHints
from mailbrief.sink.base import PublishResult

READY = "mailbrief/daily-brief"
DONE = "mailbrief/daily-brief-done"
BASE_TIME = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture(autouse=True)
def fast_rate_limits() -> Generator[None, None, None]:
    """Replace the standard buckets with effectively unlimited ones."""
    reset_buckets()
    for name in DEFAULT_RATES:
        get_bucket(name, rate=100000.0, capacity=100000)
    yield
    reset_buckets()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

schedule:
  classification: "*/15 * * * *"
  briefing: "0 8 * * *"
  timezone: "America/New_York"

labels:
  prefix: "mailbrief"

sink:
  repo: "octocat/briefings"
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a valid config as a dictionary, tuned for fast tests."""
    return {
        "schema_version": 1,
        "schedule": {"timezone": "UTC"},
        "labels": {"prefix": "mailbrief", "ready": "daily-brief", "done": "daily-brief-done"},
        "limits": {
            "max_envelopes_per_cycle": 50,
            "classification_concurrency": 4,
            "cycle_deadline_seconds": None,
            "request_timeout_seconds": 5,
        },
        "retry": {"max_retries": 2, "delays_seconds": [0]},
        "briefing": {"mention_tags": ["octocat"]},
        "sink": {"repo": "octocat/briefings"},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the MAILBRIEF_CONFIG_PATH environment variable."""
    old_value = os.environ.get("MAILBRIEF_CONFIG_PATH")
    os.environ["MAILBRIEF_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["MAILBRIEF_CONFIG_PATH"]
    else:
        os.environ["MAILBRIEF_CONFIG_PATH"] = old_value


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------


def make_envelope(
    envelope_id: str = "m1",
    subject: str = "Weekly digest",
    sender: str = "news@example.com",
    minutes: int = 0,
    read: bool = False,
    labels: Iterable[str] = (),
    threading: ThreadingHints | None = None,
) -> Envelope:
    """Create an Envelope received `minutes` after BASE_TIME."""
    return Envelope(
        id=envelope_id,
        subject=subject,
        sender=sender,
        received_at=BASE_TIME + timedelta(minutes=minutes),
        read=read,
        labels=frozenset(labels),
        threading=threading,
    )


# ---------------------------------------------------------------------------
# In-memory mailbox
# ---------------------------------------------------------------------------


class FakeMailStore:
    """In-memory MailStore with Gmail-like label semantics.

    Each message has a set of labels; "INBOX" is a label like any other.
    Failures can be injected per (operation, envelope_id).

    Attributes:
        envelopes: Current envelope per id
        bodies: Body text per id
        existing_labels: Labels that exist on the mailbox
        calls: Every call made, as (operation, args) tuples
        failures: (operation, envelope_id or None) -> exception or factory
    """

    def __init__(self) -> None:
        self.envelopes: dict[str, Envelope] = {}
        self.bodies: dict[str, str] = {}
        self.existing_labels: set[str] = {"INBOX"}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.failures: dict[tuple[str, str | None], Any] = {}

    def add(self, envelope: Envelope, body: str = "", in_inbox: bool = True) -> Envelope:
        labels = set(envelope.labels)
        if in_inbox:
            labels.add("INBOX")
        stored = Envelope(
            id=envelope.id,
            subject=envelope.subject,
            sender=envelope.sender,
            received_at=envelope.received_at,
            read=envelope.read,
            labels=frozenset(labels),
            threading=envelope.threading,
        )
        self.envelopes[envelope.id] = stored
        self.bodies[envelope.id] = body or f"Body of {envelope.subject}"
        return stored

    def fail(self, operation: str, envelope_id: str | None = None, error: Any = None) -> None:
        """Inject a failure. `error` may be an exception or a zero-arg factory."""
        self.failures[(operation, envelope_id)] = error or MailStoreError(f"{operation} failed")

    def labels_of(self, envelope_id: str) -> frozenset[str]:
        return self.envelopes[envelope_id].labels

    def ops(self, operation: str) -> list[tuple[Any, ...]]:
        return [args for op, args in self.calls if op == operation]

    def _check(self, operation: str, envelope_id: str | None = None) -> None:
        error = self.failures.get((operation, envelope_id)) or self.failures.get((operation, None))
        if error is None:
            return
        if isinstance(error, BaseException):
            raise error
        raise error()

    def _set_labels(self, envelope_id: str, labels: set[str]) -> None:
        env = self.envelopes[envelope_id]
        self.envelopes[envelope_id] = Envelope(
            id=env.id,
            subject=env.subject,
            sender=env.sender,
            received_at=env.received_at,
            read=env.read,
            labels=frozenset(labels),
            threading=env.threading,
        )

    async def list_envelopes(self, envelope_filter: EnvelopeFilter) -> list[Envelope]:
        self.calls.append(("list_envelopes", (envelope_filter,)))
        self._check("list_envelopes")
        label = envelope_filter.label or envelope_filter.folder or "INBOX"
        found = [e for e in self.envelopes.values() if label in e.labels]
        if envelope_filter.unread_only:
            found = [e for e in found if not e.read]
        found.sort(key=lambda e: e.received_at, reverse=True)
        if envelope_filter.limit:
            found = found[: envelope_filter.limit]
        return found

    async def read_message(self, envelope_id: str) -> MessageContent:
        self.calls.append(("read_message", (envelope_id,)))
        self._check("read_message", envelope_id)
        return MessageContent(id=envelope_id, headers={}, body=self.bodies[envelope_id])

    async def apply_label(self, envelope_id: str, label: str) -> None:
        self.calls.append(("apply_label", (envelope_id, label)))
        self._check("apply_label", envelope_id)
        self._set_labels(envelope_id, set(self.labels_of(envelope_id)) | {label})

    async def relabel(self, envelope_id: str, from_label: str, to_label: str) -> None:
        self.calls.append(("relabel", (envelope_id, from_label, to_label)))
        self._check("relabel", envelope_id)
        labels = set(self.labels_of(envelope_id))
        labels.discard(from_label)
        labels.add(to_label)
        self._set_labels(envelope_id, labels)

    async def remove_from_inbox(self, envelope_id: str) -> None:
        self.calls.append(("remove_from_inbox", (envelope_id,)))
        self._check("remove_from_inbox", envelope_id)
        self._set_labels(envelope_id, set(self.labels_of(envelope_id)) - {"INBOX"})

    async def create_label_if_absent(self, name: str) -> bool:
        self.calls.append(("create_label_if_absent", (name,)))
        self._check("create_label_if_absent", name)
        if name in self.existing_labels:
            return False
        self.existing_labels.add(name)
        return True


class FakeClassifier:
    """Classifier returning a fixed category per envelope id (default DailyBrief).

    Attributes:
        decisions: envelope id -> Category, or an exception to raise
        seen: Latest envelope id of every classified target
    """

    def __init__(self, decisions: dict[str, Any] | None = None) -> None:
        self.decisions = decisions or {}
        self.seen: list[str] = []

    async def classify(self, target: Any) -> ClassificationDecision:
        latest = target.latest if hasattr(target, "latest") else target
        self.seen.append(latest.id)
        outcome = self.decisions.get(latest.id, Category.DAILY_BRIEF)
        if isinstance(outcome, BaseException):
            raise outcome
        return ClassificationDecision(category=outcome, confidence=0.9)


class FakeSummarizer:
    """Summarizer producing a predictable summary, or raising for chosen keys."""

    def __init__(self, failing_keys: Iterable[str] = (), error: Exception | None = None) -> None:
        self.failing_keys = set(failing_keys)
        self.error = error
        self.calls: list[str] = []

    async def summarize(self, cluster: Any, latest: MessageContent) -> str:
        self.calls.append(cluster.key)
        if cluster.key in self.failing_keys and self.error is not None:
            raise self.error
        return f"Summary of {cluster.key} ({len(cluster.members)})"


class FakeSink:
    """IssueSink that records publishes; behaviour is a result or exception factory."""

    def __init__(self, behaviour: Callable[[], Any] | None = None) -> None:
        self.published: list[tuple[str, str]] = []
        self.attempts = 0
        self._behaviour = behaviour

    async def publish(self, title: str, body: str) -> PublishResult:
        self.attempts += 1
        if self._behaviour is not None:
            outcome = self._behaviour()
            if isinstance(outcome, BaseException):
                raise outcome
            if isinstance(outcome, PublishResult):
                if outcome.accepted:
                    self.published.append((title, body))
                return outcome
        self.published.append((title, body))
        return PublishResult(accepted=True, reference=f"https://github.com/octocat/briefings/issues/{self.attempts}")


def transient(message: str = "connection reset") -> Callable[[], TransientIOError]:
    return lambda: TransientIOError(message)


@pytest.fixture
def mail_store() -> FakeMailStore:
    return FakeMailStore()


@pytest.fixture
def classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture
def summarizer() -> FakeSummarizer:
    return FakeSummarizer()


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()
