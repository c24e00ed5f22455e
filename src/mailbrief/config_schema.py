"""Pydantic configuration schema for mailbrief.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from mailbrief.config_schema import AppConfig

    config = AppConfig(**yaml_data)
    print(config.labels.ready_label)  # "mailbrief/daily-brief"
"""

from typing import Literal

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, Field, field_validator, model_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


def _validate_crontab(value: str) -> str:
    try:
        CronTrigger.from_crontab(value)
    except ValueError as e:
        raise ValueError(
            f"Invalid cron expression '{value}': {e}. "
            "Use five fields: minute hour day month day_of_week (e.g., '*/30 * * * *')"
        ) from e
    return value


class ScheduleConfig(BaseModel):
    """Independent cadences for the two cycle types."""

    classification: str = Field(
        default="*/30 * * * *",
        description="Cron expression for the classification cycle",
    )
    briefing: str = Field(
        default="0 8,17 * * *",
        description="Cron expression for the briefing cycle",
    )
    timezone: str = Field(
        default="UTC",
        description="Timezone the cron expressions are evaluated in",
    )

    @field_validator("classification", "briefing")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        """Ensure the expression parses as a standard crontab line."""
        return _validate_crontab(v)


class LabelsConfig(BaseModel):
    """Names of the state labels kept on the mailbox.

    Labels are namespaced under a prefix so they never collide with
    user-created folders.
    """

    prefix: str = Field(default="mailbrief", description="Namespace for state labels")
    separator: str = Field(default="/", description="Hierarchy separator used by the mailbox")
    ready: str = Field(default="daily-brief", description="Label for messages awaiting a briefing")
    done: str = Field(
        default="daily-brief-done",
        description="Label for messages already included in a published briefing",
    )

    @field_validator("ready", "done")
    @classmethod
    def validate_label_name(cls, v: str) -> str:
        """Ensure label names are usable as folder names."""
        if not v or not v.strip():
            raise ValueError("Label name cannot be empty")
        if ".." in v:
            raise ValueError("Label name cannot contain '..' (path traversal)")
        return v.strip()

    @model_validator(mode="after")
    def validate_distinct(self) -> "LabelsConfig":
        """Ready and done labels must differ or the state machine cannot tell them apart."""
        if self.ready == self.done:
            raise ValueError(f"Ready and done labels must differ (both are '{self.ready}')")
        return self

    @property
    def ready_label(self) -> str:
        return self._qualify(self.ready)

    @property
    def done_label(self) -> str:
        return self._qualify(self.done)

    def _qualify(self, name: str) -> str:
        if not self.prefix:
            return name
        return f"{self.prefix}{self.separator}{name}"


class MailStoreConfig(BaseModel):
    """Mail transport configuration (Himalaya CLI)."""

    backend: Literal["himalaya"] = Field(default="himalaya", description="Mail transport adapter")
    himalaya_binary: str = Field(default="himalaya", description="Path to the himalaya executable")
    himalaya_config: str | None = Field(
        default="config.toml",
        description="Himalaya config file passed with -c (None for himalaya's default)",
    )
    account: str | None = Field(default=None, description="Himalaya account name (-a)")
    inbox_folder: str = Field(default="INBOX", description="Folder watched for new mail")
    archive_folder: str = Field(
        default="[Gmail]/All Mail",
        description="Folder messages are moved to when removed from the inbox",
    )
    page_size: int = Field(default=100, ge=1, le=1000, description="Envelopes per listing page")


class LimitsConfig(BaseModel):
    """Per-cycle resource limits."""

    max_envelopes_per_cycle: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Max envelopes considered by one cycle",
    )
    classification_concurrency: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Max classification calls in flight at once",
    )
    cycle_deadline_seconds: float | None = Field(
        default=600.0,
        gt=0,
        description="Overall cycle budget; remaining envelopes are left Pending when exceeded",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Timeout for a single collaborator call",
    )


class RetryConfig(BaseModel):
    """Retry policy for transient collaborator failures."""

    max_retries: int = Field(default=3, ge=0, le=10, description="Retries after the first attempt")
    delays_seconds: list[float] = Field(
        default=[1.0, 2.0, 4.0],
        description="Exponential backoff delays; the last one repeats",
    )

    @field_validator("delays_seconds")
    @classmethod
    def validate_delays(cls, v: list[float]) -> list[float]:
        """Ensure delays are non-negative and present."""
        if not v:
            raise ValueError("At least one retry delay is required")
        if any(d < 0 for d in v):
            raise ValueError("Retry delays cannot be negative")
        return v


class ClassifierConfig(BaseModel):
    """Claude classifier and summarizer settings."""

    model: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model for message classification",
    )
    summary_model: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model for briefing entry summaries",
    )
    classify_threads: bool = Field(
        default=True,
        description="Classify each conversation once (by its latest message) instead of per message",
    )
    max_body_chars: int = Field(
        default=4000,
        ge=200,
        le=50000,
        description="Characters of message body sent to the model",
    )


class BriefingConfig(BaseModel):
    """Briefing composition settings."""

    title_template: str = Field(
        default="Daily Brief: {date}",
        description="Issue title; {date} and {count} are substituted",
    )
    mention_tags: list[str] = Field(
        default_factory=list,
        description="Handles mentioned at the top of each briefing (e.g., '@octocat')",
    )
    publish_empty: bool = Field(
        default=False,
        description="Publish a briefing even when no messages are ready",
    )

    @field_validator("title_template")
    @classmethod
    def validate_title_template(cls, v: str) -> str:
        """Ensure the template only uses the supported placeholders."""
        try:
            v.format(date="2000-01-01", count=0)
        except (KeyError, IndexError, ValueError) as e:
            raise ValueError(
                f"Invalid title template '{v}': only {{date}} and {{count}} are supported"
            ) from e
        return v

    @field_validator("mention_tags")
    @classmethod
    def validate_mentions(cls, v: list[str]) -> list[str]:
        """Normalize handles to start with '@'."""
        return [tag if tag.startswith("@") else f"@{tag}" for tag in (t.strip() for t in v) if tag]


class SinkConfig(BaseModel):
    """GitHub issue sink settings."""

    repo: str | None = Field(
        default=None,
        description="Repository receiving briefings, in 'owner/repo' format",
    )
    token_env: str = Field(default="GITHUB_TOKEN", description="Environment variable holding the token")
    api_url: str = Field(default="https://api.github.com", description="GitHub REST API base URL")
    issue_labels: list[str] = Field(
        default_factory=list,
        description="Labels applied to each created issue",
    )

    @field_validator("repo")
    @classmethod
    def validate_repo(cls, v: str | None) -> str | None:
        """Ensure repo is in owner/repo format."""
        if v is None:
            return v
        owner, _, name = v.partition("/")
        if not owner or not name or "/" in name:
            raise ValueError(f"Invalid repo format: '{v}'. Expected 'owner/repo'")
        return v


class AppConfig(BaseModel):
    """Root configuration schema for mailbrief.

    If validation fails on startup, the cycle aborts before any mutation.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    labels: LabelsConfig = Field(default_factory=LabelsConfig)
    mailstore: MailStoreConfig = Field(default_factory=MailStoreConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    briefing: BriefingConfig = Field(default_factory=BriefingConfig)
    sink: SinkConfig = Field(default_factory=SinkConfig)
