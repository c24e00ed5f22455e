"""Custom exception types for mailbrief.

Error messages state what failed, where it failed, why, and how to fix it.

Propagation policy:
- Per-envelope errors (ClassificationError, LabelMutationError) are contained
  by the cycle and reported in its result.
- Cycle-level errors (ConfigurationError, AuthenticationError, MailStoreError
  raised while listing) stop the cycle before any mutation.
- TransientIOError is retried by core.retry and only escapes once retries
  are exhausted.
"""


class MailbriefError(Exception):
    """Base exception for all mailbrief errors."""

    pass


class ConfigurationError(MailbriefError):
    """Raised when configuration is missing or invalid. Always fatal for a cycle."""

    pass


class ConfigValidationError(ConfigurationError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(ConfigurationError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class AuthenticationError(MailbriefError):
    """Raised when a collaborator rejects our credentials. Never retried."""

    pass


class TransientIOError(MailbriefError):
    """Raised for failures that may succeed on retry.

    Covers network timeouts, connection resets and 429/5xx-class responses.

    Attributes:
        status_code: HTTP-like status code, if the collaborator reported one
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitExceeded(TransientIOError):
    """Raised when a rate limit is hit and cannot be waited out locally.

    The token bucket raises this instead of blocking for longer than 20 seconds.
    """

    def __init__(self, message: str):
        super().__init__(message, status_code=429)


class MailStoreError(MailbriefError):
    """Raised when the mail transport fails in a non-transient way.

    Attributes:
        operation: Store operation that failed (e.g., 'apply_label')
        envelope_id: Envelope the operation targeted, if any
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        envelope_id: str | None = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.envelope_id = envelope_id


class ClassificationError(MailbriefError):
    """Raised when the classifier is unavailable or returns an unparseable result.

    The affected envelope is left Pending and retried next cycle.

    Attributes:
        envelope_id: Envelope that failed classification
        attempts: Number of classification attempts made
    """

    def __init__(self, message: str, envelope_id: str | None = None, attempts: int = 0):
        super().__init__(message)
        self.envelope_id = envelope_id
        self.attempts = attempts


class SummarizationError(MailbriefError):
    """Raised when a briefing entry summary cannot be produced.

    Non-fatal: the aggregator falls back to a plain headline entry.
    """

    pass


class LabelMutationError(MailbriefError):
    """Raised when a label or inbox mutation fails for one envelope.

    Attributes:
        envelope_id: Envelope whose transition failed
        operation: Store operation that failed
    """

    def __init__(self, message: str, envelope_id: str | None = None, operation: str | None = None):
        super().__init__(message)
        self.envelope_id = envelope_id
        self.operation = operation


class SinkPublishError(MailbriefError):
    """Raised when the issue sink rejects or fails to accept a briefing.

    No envelope is marked done when this is raised.

    Attributes:
        status_code: HTTP status code from the sink, if available
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
