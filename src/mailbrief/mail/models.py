"""Mailbox-side data types shared by the engine and the mail transport.

An Envelope is the metadata of one remote message. The engine never holds
an exclusive copy: envelopes are re-listed every cycle and may have been
changed by the user (read, archived, relabelled) since the last one.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True, slots=True)
class ThreadingHints:
    """Optional RFC 5322 threading headers.

    Attributes:
        message_id: Message-ID of this message
        in_reply_to: Message-ID this message replies to
        references: Message-IDs of earlier messages in the thread
    """

    message_id: str | None = None
    in_reply_to: str | None = None
    references: tuple[str, ...] = ()

    def linked_ids(self) -> set[str]:
        """Message-IDs this message points back to."""
        linked = set(self.references)
        if self.in_reply_to:
            linked.add(self.in_reply_to)
        return linked


@dataclass(frozen=True, slots=True)
class Envelope:
    """Metadata record for one remote message.

    Attributes:
        id: Opaque message ID, stable within the mailbox
        subject: Subject line as received
        sender: Sender address or display string
        received_at: When the message arrived (timezone-aware)
        read: Whether the message carries the Seen flag
        labels: Label names currently applied to the message
        threading: Threading headers, when the transport exposes them
    """

    id: str
    subject: str
    sender: str
    received_at: datetime
    read: bool = False
    labels: frozenset[str] = field(default_factory=frozenset)
    threading: ThreadingHints | None = None

    def has_label(self, label: str) -> bool:
        return label in self.labels


@dataclass(frozen=True, slots=True)
class MessageContent:
    """Headers and plain-text body of one message."""

    id: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: str = ""


@dataclass(frozen=True, slots=True)
class EnvelopeFilter:
    """Selection of envelopes to list.

    Exactly one of folder or label should be set. When neither is set the
    store lists its inbox.

    Attributes:
        folder: Folder to list (e.g., 'INBOX')
        label: Label whose messages should be listed
        unread_only: Skip messages carrying the Seen flag
        limit: Maximum envelopes to return (None for all)
    """

    folder: str | None = None
    label: str | None = None
    unread_only: bool = False
    limit: int | None = None

    def __post_init__(self) -> None:
        if self.folder and self.label:
            raise ValueError("EnvelopeFilter takes a folder or a label, not both")
        if self.limit is not None and self.limit < 1:
            raise ValueError(f"EnvelopeFilter limit must be positive, got {self.limit}")
