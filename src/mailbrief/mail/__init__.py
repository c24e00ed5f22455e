"""Mail transport layer.

Provides the MailStore contract the engine depends on, the envelope data
types, and the Himalaya CLI implementation.

Usage:
    from mailbrief.mail import EnvelopeFilter, HimalayaMailStore

    store = HimalayaMailStore(config.mailstore)
    envelopes = await store.list_envelopes(EnvelopeFilter(unread_only=True))
"""

from mailbrief.mail.himalaya import HimalayaMailStore
from mailbrief.mail.models import Envelope, EnvelopeFilter, MessageContent, ThreadingHints
from mailbrief.mail.store import MailStore

__all__ = [
    "Envelope",
    "EnvelopeFilter",
    "HimalayaMailStore",
    "MailStore",
    "MessageContent",
    "ThreadingHints",
]
