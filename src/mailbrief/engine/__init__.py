"""Mail processing engines.

This package provides the core processing engines:
- Thread grouping of a cycle's envelopes into conversations
- Label state machine driving envelopes through the mailbox labels
- Briefing aggregation and markdown rendering
- Classification and briefing cycles
"""

from mailbrief.engine.briefing import (
    BriefingAggregator,
    BriefingEntry,
    BriefingReport,
    EntryKind,
    render_markdown,
)
from mailbrief.engine.cycles import (
    BriefingCycle,
    BriefingCycleResult,
    ClassificationCycle,
    ClassificationCycleResult,
    EnvelopeFailure,
)
from mailbrief.engine.labels import (
    LabelState,
    LabelStateMachine,
    MarkDoneResult,
    TransitionOutcome,
)
from mailbrief.engine.thread_grouper import ThreadCluster, group, normalize_subject

__all__ = [
    # Briefing
    "BriefingAggregator",
    "BriefingEntry",
    "BriefingReport",
    "EntryKind",
    "render_markdown",
    # Cycles
    "BriefingCycle",
    "BriefingCycleResult",
    "ClassificationCycle",
    "ClassificationCycleResult",
    "EnvelopeFailure",
    # Labels
    "LabelState",
    "LabelStateMachine",
    "MarkDoneResult",
    "TransitionOutcome",
    # Thread grouping
    "ThreadCluster",
    "group",
    "normalize_subject",
]
