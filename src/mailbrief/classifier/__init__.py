"""Message classification and summarization.

This package provides:
- Classifier and Summarizer contracts with the two-way Category
- Body preparation for prompts
- Claude classifier and summarizer using forced tool use
"""

from mailbrief.classifier.base import Category, ClassificationDecision, Classifier, Summarizer
from mailbrief.classifier.body import prepare_body
from mailbrief.classifier.claude_classifier import ClaudeClassifier, ClaudeSummarizer

__all__ = [
    "Category",
    "ClassificationDecision",
    "Classifier",
    "Summarizer",
    "prepare_body",
    "ClaudeClassifier",
    "ClaudeSummarizer",
]
