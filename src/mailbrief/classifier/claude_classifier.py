"""Claude-backed Classifier and Summarizer using forced tool use.

Error handling strategy:
- Transient errors (429, 5xx, network, timeouts): raised as TransientIOError
  and retried by core.retry (the SDK client is built with max_retries=0)
- Rejected credentials: AuthenticationError, never retried
- Logical errors (no tool call, bad enum, missing fields): retried in-process
  up to MAX_CLASSIFICATION_ATTEMPTS, then ClassificationError
- Nothing here ever guesses a default category

Usage:
    from mailbrief.classifier.claude_classifier import ClaudeClassifier, ClaudeSummarizer

    client = anthropic.AsyncAnthropic(max_retries=0)
    classifier = ClaudeClassifier(client, store, config.classifier)
    decision = await classifier.classify(cluster)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import anthropic

from mailbrief.classifier.base import Category, ClassificationDecision
from mailbrief.classifier.body import prepare_body
from mailbrief.classifier.prompts import (
    CLASSIFY_EMAIL_TOOL,
    CLASSIFY_SYSTEM_PROMPT,
    SUMMARIZE_SYSTEM_PROMPT,
    SUMMARIZE_THREAD_TOOL,
    VALID_CATEGORIES,
    build_classify_message,
    build_summary_message,
)
from mailbrief.core.errors import (
    AuthenticationError,
    ClassificationError,
    MailStoreError,
    SummarizationError,
    TransientIOError,
)
from mailbrief.core.logging import get_logger
from mailbrief.engine.thread_grouper import ThreadCluster

if TYPE_CHECKING:
    from mailbrief.config_schema import ClassifierConfig
    from mailbrief.mail.models import Envelope, MessageContent
    from mailbrief.mail.store import MailStore

logger = get_logger(__name__)

# Max attempts for logically invalid responses
MAX_CLASSIFICATION_ATTEMPTS = 3


async def _create_message(
    client: anthropic.AsyncAnthropic,
    *,
    model: str,
    system: str,
    user_message: str,
    tool: dict[str, Any],
    max_tokens: int,
) -> anthropic.types.Message:
    """Call the Messages API with a forced tool, mapping SDK errors.

    Raises:
        AuthenticationError: API key rejected
        TransientIOError: Rate limit, overload, 5xx, connection error or timeout
        anthropic.APIStatusError: Any other API rejection (caller decides)
    """
    try:
        return await client.messages.create(
            model=model,
            max_tokens=max_tokens,
            system=system,
            messages=[{"role": "user", "content": user_message}],
            tools=[tool],
            tool_choice={"type": "tool", "name": tool["name"]},
        )
    except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as e:
        raise AuthenticationError(
            f"Anthropic API rejected credentials ({e.status_code}). "
            "Check ANTHROPIC_API_KEY."
        ) from e
    except anthropic.RateLimitError as e:
        raise TransientIOError(f"Anthropic rate limit: {e}", status_code=429) from e
    except anthropic.APIStatusError as e:
        # 5xx and 529 overloaded
        if e.status_code >= 500:
            raise TransientIOError(
                f"Anthropic server error {e.status_code}: {e}", status_code=e.status_code
            ) from e
        raise
    except anthropic.APIConnectionError as e:
        # Includes APITimeoutError
        raise TransientIOError(f"Anthropic connection error: {e}") from e


def _extract_tool_call(response: anthropic.types.Message, name: str) -> dict[str, Any] | None:
    for block in response.content:
        if block.type == "tool_use" and block.name == name:
            return block.input
    return None


def _validate_tool_call(data: dict[str, Any]) -> str | None:
    """Validate a classify_email tool call.

    Returns:
        Error message if invalid, None if valid
    """
    required = ("category", "confidence", "reasoning")
    missing = [f for f in required if f not in data]
    if missing:
        return f"Missing required fields: {', '.join(missing)}"

    if data["category"] not in VALID_CATEGORIES:
        return (
            f"Invalid category: '{data['category']}'. "
            f"Must be one of: {', '.join(sorted(VALID_CATEGORIES))}"
        )

    confidence = data.get("confidence")
    if not isinstance(confidence, int | float) or confidence < 0.0 or confidence > 1.0:
        return f"Invalid confidence: {confidence}. Must be a number between 0.0 and 1.0"

    return None


class ClaudeClassifier:
    """Classifies a message or conversation as NeedsResponse or DailyBrief.

    A conversation is judged by its latest member; earlier members are sent
    as headers-only context.

    Attributes:
        _client: Async Anthropic client
        _store: MailStore used to read the latest body
        _config: Classifier settings
    """

    def __init__(
        self,
        anthropic_client: anthropic.AsyncAnthropic,
        store: MailStore,
        config: ClassifierConfig,
    ):
        self._client = anthropic_client
        self._store = store
        self._config = config

    async def classify(self, target: Envelope | ThreadCluster) -> ClassificationDecision:
        """Classify one envelope or cluster.

        Raises:
            ClassificationError: Unreadable message, API rejection or invalid
                responses on every attempt
            TransientIOError: Retryable failure, for the caller's retry policy
            AuthenticationError: Credentials rejected
        """
        if isinstance(target, ThreadCluster):
            latest = target.latest
            earlier = target.members[:-1]
        else:
            latest = target
            earlier = ()

        try:
            content = await self._store.read_message(latest.id)
        except MailStoreError as e:
            raise ClassificationError(
                f"Cannot read message {latest.id} for classification: {e}",
                envelope_id=latest.id,
            ) from e

        body = prepare_body(content.body, max_chars=self._config.max_body_chars)
        user_message = build_classify_message(latest, body, earlier)

        last_error: str | None = None
        for attempt in range(1, MAX_CLASSIFICATION_ATTEMPTS + 1):
            try:
                response = await _create_message(
                    self._client,
                    model=self._config.model,
                    system=CLASSIFY_SYSTEM_PROMPT,
                    user_message=user_message,
                    tool=CLASSIFY_EMAIL_TOOL,
                    max_tokens=512,
                )
            except anthropic.APIStatusError as e:
                last_error = f"API status error {e.status_code}: {e.message}"
                logger.error(
                    "classification_api_error",
                    envelope_id=latest.id,
                    status_code=e.status_code,
                    error=str(e),
                )
                # Other 4xx are not retryable
                break

            tool_call = _extract_tool_call(response, CLASSIFY_EMAIL_TOOL["name"])
            if tool_call is None:
                last_error = "No tool call in response (unexpected with forced tool_choice)"
                logger.warning("classification_no_tool_call", envelope_id=latest.id, attempt=attempt)
                continue

            validation_error = _validate_tool_call(tool_call)
            if validation_error:
                last_error = validation_error
                logger.warning(
                    "classification_invalid_response",
                    envelope_id=latest.id,
                    attempt=attempt,
                    error=validation_error,
                )
                continue

            decision = ClassificationDecision(
                category=Category(tool_call["category"]),
                confidence=float(tool_call["confidence"]),
                reasoning=str(tool_call["reasoning"]),
            )
            logger.info(
                "envelope_classified",
                envelope_id=latest.id,
                category=decision.category.value,
                confidence=decision.confidence,
                conversation_size=len(earlier) + 1,
            )
            return decision

        raise ClassificationError(
            f"Classification failed for envelope {latest.id}. Last error: {last_error}",
            envelope_id=latest.id,
            attempts=attempt,
        )


class ClaudeSummarizer:
    """Writes briefing entry text for a message or conversation."""

    def __init__(self, anthropic_client: anthropic.AsyncAnthropic, config: ClassifierConfig):
        self._client = anthropic_client
        self._config = config

    async def summarize(self, cluster: ThreadCluster, latest: MessageContent) -> str:
        """Summarize one cluster from its envelopes and the latest body.

        Raises:
            SummarizationError: API rejection or no usable summary
            TransientIOError: Retryable failure
            AuthenticationError: Credentials rejected
        """
        body = prepare_body(latest.body, max_chars=self._config.max_body_chars, keep_quoted=True)
        user_message = build_summary_message(cluster.members, body)

        try:
            response = await _create_message(
                self._client,
                model=self._config.summary_model,
                system=SUMMARIZE_SYSTEM_PROMPT,
                user_message=user_message,
                tool=SUMMARIZE_THREAD_TOOL,
                max_tokens=1024,
            )
        except anthropic.APIStatusError as e:
            raise SummarizationError(f"API status error {e.status_code}: {e.message}") from e

        tool_call = _extract_tool_call(response, SUMMARIZE_THREAD_TOOL["name"])
        summary = tool_call.get("summary") if tool_call else None
        if not isinstance(summary, str) or not summary.strip():
            raise SummarizationError(f"No summary returned for '{cluster.key}'")
        return summary.strip()
