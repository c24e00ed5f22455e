"""Briefing publication targets."""

from mailbrief.sink.base import IssueSink, PublishResult
from mailbrief.sink.github import GitHubIssueSink

__all__ = ["GitHubIssueSink", "IssueSink", "PublishResult"]
