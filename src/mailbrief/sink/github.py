"""GitHub issue sink: publishes each briefing as a new issue.

Uses the GitHub REST API (POST /repos/{owner}/{repo}/issues) through a
requests Session. Retries are not done here: failures are classified and
raised so core.retry can decide.

- 2xx: PublishResult(accepted=True, reference=<issue html_url>)
- 401/403: AuthenticationError
- 429, 5xx, timeouts, connection errors: TransientIOError
- Other 4xx (bad repo, validation failure): SinkPublishError

Usage:
    from mailbrief.sink.github import GitHubIssueSink

    sink = GitHubIssueSink(config.sink)
    result = await sink.publish("Daily Brief: 2026-01-05", body)
    print(result.reference)
"""

import asyncio
import os
from typing import Any

import requests

from mailbrief.config_schema import SinkConfig
from mailbrief.core.errors import (
    AuthenticationError,
    ConfigurationError,
    RateLimitExceeded,
    SinkPublishError,
    TransientIOError,
)
from mailbrief.core.logging import get_logger
from mailbrief.sink.base import PublishResult

logger = get_logger(__name__)

GITHUB_API_VERSION = "2022-11-28"
DEFAULT_TIMEOUT = 30.0


class GitHubIssueSink:
    """Creates one GitHub issue per briefing.

    Attributes:
        repo: Target repository as 'owner/repo'
        api_url: GitHub REST API base URL
        session: requests Session for connection pooling
    """

    def __init__(self, config: SinkConfig, timeout: float = DEFAULT_TIMEOUT):
        """Initialize the sink.

        Raises:
            ConfigurationError: repo is not configured or the token
                environment variable is unset
        """
        if not config.repo:
            raise ConfigurationError(
                "sink.repo is not set in config.yaml. "
                "Set it to the 'owner/repo' that should receive briefings."
            )
        token = os.environ.get(config.token_env)
        if not token:
            raise ConfigurationError(
                f"Environment variable {config.token_env} is not set. "
                "Create a GitHub token with issue write access and export it (or add it to .env)."
            )

        self.repo = config.repo
        self.api_url = config.api_url.rstrip("/")
        self.timeout = timeout
        self._issue_labels = list(config.issue_labels)
        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": GITHUB_API_VERSION,
            }
        )

    async def publish(self, title: str, body: str) -> PublishResult:
        """Create an issue with the rendered briefing.

        The blocking HTTP call runs in a worker thread so it can be cancelled
        by the caller's timeout without stalling the event loop.
        """
        return await asyncio.to_thread(self._create_issue, title, body)

    def _create_issue(self, title: str, body: str) -> PublishResult:
        url = f"{self.api_url}/repos/{self.repo}/issues"
        payload: dict[str, Any] = {"title": title, "body": body}
        if self._issue_labels:
            payload["labels"] = self._issue_labels

        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise TransientIOError(f"GitHub issue creation timed out after {self.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            raise TransientIOError(f"Cannot reach GitHub at {self.api_url}: {e}") from e

        if response.status_code < 400:
            data = response.json()
            reference = data.get("html_url") or data.get("url") or ""
            logger.info(
                "github_issue_created",
                repo=self.repo,
                number=data.get("number"),
                url=reference,
            )
            return PublishResult(accepted=True, reference=reference)

        self._handle_error_response(response)
        # _handle_error_response always raises
        raise AssertionError("unreachable")

    def _handle_error_response(self, response: requests.Response) -> None:
        """Raise the error matching a failed response."""
        try:
            message = response.json().get("message", response.text)
        except ValueError:
            message = response.text or f"HTTP {response.status_code}"

        status = response.status_code
        logger.error(
            "github_api_error",
            repo=self.repo,
            status_code=status,
            error_message=message[:200],
        )

        # GitHub reports secondary rate limits as 403 with a rate-limit message
        if status == 429 or (status == 403 and "rate limit" in message.lower()):
            retry_after = response.headers.get("Retry-After", "unknown")
            raise RateLimitExceeded(
                f"GitHub rate limit exceeded ({status}). Retry after: {retry_after} seconds."
            )
        if status in (401, 403):
            raise AuthenticationError(
                f"GitHub rejected the token ({status}): {message}. "
                "Check that the token is valid and can create issues in "
                f"'{self.repo}'."
            )
        if status >= 500:
            raise TransientIOError(f"GitHub server error ({status}): {message}", status_code=status)
        raise SinkPublishError(
            f"GitHub refused the briefing issue ({status}): {message}",
            status_code=status,
        )
