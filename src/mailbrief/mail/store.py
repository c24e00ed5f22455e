"""MailStore capability: the engine's only view of the remote mailbox.

The mailbox is the system's only datastore. Implementations must make every
mutation safe to repeat:
- apply_label on a message that already carries the label succeeds
- relabel on a message already in `to_label` and not in `from_label` succeeds
- remove_from_inbox on a message no longer in the inbox succeeds
- create_label_if_absent on an existing label succeeds

Transient failures (timeouts, throttling) are raised as TransientIOError so the
engine can retry them; everything else as MailStoreError.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from mailbrief.mail.models import Envelope, EnvelopeFilter, MessageContent


@runtime_checkable
class MailStore(Protocol):
    """Narrow async capability interface over a remote mailbox."""

    async def list_envelopes(self, envelope_filter: EnvelopeFilter) -> list[Envelope]:
        """List envelopes matching the filter, newest first."""
        ...

    async def read_message(self, envelope_id: str) -> MessageContent:
        """Read headers and plain-text body of one message."""
        ...

    async def apply_label(self, envelope_id: str, label: str) -> None:
        """Add a label to a message."""
        ...

    async def relabel(self, envelope_id: str, from_label: str, to_label: str) -> None:
        """Atomically replace one label with another on a message."""
        ...

    async def remove_from_inbox(self, envelope_id: str) -> None:
        """Archive a message (remove it from the inbox view)."""
        ...

    async def create_label_if_absent(self, name: str) -> bool:
        """Create a label unless it exists.

        Returns:
            True if the label was created, False if it already existed
        """
        ...
