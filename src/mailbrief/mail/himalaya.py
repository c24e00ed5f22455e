"""MailStore implementation backed by the Himalaya CLI.

Each operation runs one `himalaya` subprocess against the configured
account and parses its JSON output. Gmail exposes labels as IMAP folders,
so label operations are folder operations here:

- apply_label: copy the message into the label's folder
- relabel: move the message from one label folder to the other
- remove_from_inbox: move the message from INBOX to the archive folder
- create_label_if_absent: `folder list`, then `folder add` when missing

Envelope ids are encoded as "<folder>|<uid>" because Himalaya ids are only
unique within a folder. IMAP folder listings do not expose Gmail labels,
so envelopes listed by label carry that label and inbox envelopes are
matched against the state-label folders by (subject, sender, date).

Usage:
    from mailbrief.mail.himalaya import HimalayaMailStore

    store = HimalayaMailStore(config.mailstore)
    envelopes = await store.list_envelopes(EnvelopeFilter(unread_only=True, limit=50))
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from mailbrief.config_schema import MailStoreConfig
from mailbrief.core.errors import (
    AuthenticationError,
    ConfigurationError,
    MailStoreError,
    TransientIOError,
)
from mailbrief.core.logging import get_logger
from mailbrief.mail.models import Envelope, EnvelopeFilter, MessageContent

logger = get_logger(__name__)

ID_SEPARATOR = "|"
DEFAULT_COMMAND_TIMEOUT = 60.0

# Headers requested when reading a message
READ_HEADERS = ("From", "Subject", "Date", "Message-ID", "In-Reply-To", "References")

# stderr fragments that indicate a retryable failure
TRANSIENT_MARKERS = (
    "timed out",
    "timeout",
    "connection reset",
    "connection refused",
    "broken pipe",
    "temporarily unavailable",
    "try again",
    "network",
)
AUTH_MARKERS = ("authenticationfailed", "invalid credentials", "authentication failed")

DATE_FORMATS = ("%Y-%m-%d %H:%M%z", "%Y-%m-%d %H:%M:%S%z")


def encode_id(folder: str, uid: str) -> str:
    return f"{folder}{ID_SEPARATOR}{uid}"


def decode_id(envelope_id: str) -> tuple[str, str]:
    """Split an envelope id into (folder, uid).

    Raises:
        MailStoreError: Id was not produced by this store
    """
    folder, sep, uid = envelope_id.rpartition(ID_SEPARATOR)
    if not sep or not folder or not uid:
        raise MailStoreError(
            f"Malformed envelope id '{envelope_id}' (expected 'folder{ID_SEPARATOR}uid')",
            envelope_id=envelope_id,
        )
    return folder, uid


def parse_date(value: str | None) -> datetime:
    """Parse a Himalaya envelope date, falling back to the epoch."""
    if value:
        for fmt in DATE_FORMATS:
            try:
                return datetime.strptime(value, fmt)
            except ValueError:
                continue
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            logger.warning("envelope_date_unparseable", value=value)
        else:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return datetime.fromtimestamp(0, tz=UTC)


def format_sender(sender: Any) -> str:
    if isinstance(sender, dict):
        name = sender.get("name")
        addr = sender.get("addr") or ""
        return f"{name} <{addr}>" if name else addr
    if isinstance(sender, list) and sender:
        return format_sender(sender[0])
    return str(sender or "")


def parse_message_output(envelope_id: str, output: str) -> MessageContent:
    """Split `message read` output into headers and body."""
    headers: dict[str, str] = {}
    lines = output.replace("\r\n", "\n").split("\n")
    body_start = 0
    last_key: str | None = None

    for i, line in enumerate(lines):
        if not line.strip():
            body_start = i + 1
            break
        if line[0] in " \t" and last_key:
            # Folded header continuation
            headers[last_key] += " " + line.strip()
            continue
        key, sep, value = line.partition(":")
        if not sep:
            # Not a header block at all
            body_start = 0
            headers = {}
            break
        last_key = key.strip()
        headers[last_key] = value.strip()
    else:
        body_start = len(lines)

    return MessageContent(
        id=envelope_id,
        headers=headers,
        body="\n".join(lines[body_start:]).strip(),
    )


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            # Exited between the check and the kill
            pass
    await proc.wait()


def envelope_key(item: dict[str, Any]) -> tuple[str, str, str]:
    """Identity of a listed message across folders (Gmail copies keep headers)."""
    return (item.get("subject") or "", format_sender(item.get("from")), item.get("date") or "")


class HimalayaMailStore:
    """Mail transport adapter driving the `himalaya` CLI.

    Attributes:
        _config: Mail store configuration
        _timeout: Per-command timeout in seconds
        _state_labels: Label folders cross-checked when listing the inbox
    """

    def __init__(
        self,
        config: MailStoreConfig,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        state_labels: Sequence[str] = (),
    ):
        self._config = config
        self._timeout = timeout
        self._state_labels = tuple(state_labels)

    def _base_args(self) -> list[str]:
        args = [self._config.himalaya_binary]
        if self._config.himalaya_config:
            args += ["-c", self._config.himalaya_config]
        return args

    def _account_args(self) -> list[str]:
        return ["-a", self._config.account] if self._config.account else []

    async def _run(
        self,
        operation: str,
        *args: str,
        envelope_id: str | None = None,
    ) -> str:
        """Run one himalaya command and return its stdout.

        Raises:
            ConfigurationError: himalaya binary not found
            TransientIOError: Timeout or connection-like failure
            AuthenticationError: IMAP login rejected
            MailStoreError: Any other non-zero exit
        """
        cmd = [*self._base_args(), *args]
        logger.debug("himalaya_command", operation=operation, args=list(args))

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ConfigurationError(
                f"himalaya executable '{self._config.himalaya_binary}' not found. "
                "Install himalaya or set mailstore.himalaya_binary in config.yaml."
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.CancelledError:
            # The caller gave up (e.g. call_with_retry timed out); a late
            # mutation would be reported as failed and then retried
            await _terminate(proc)
            raise
        except TimeoutError as e:
            await _terminate(proc)
            raise TransientIOError(
                f"himalaya {operation} timed out after {self._timeout}s"
            ) from e

        if proc.returncode != 0:
            error = stderr.decode("utf-8", errors="replace").strip()
            lowered = error.lower()
            if any(marker in lowered for marker in AUTH_MARKERS):
                raise AuthenticationError(
                    f"IMAP login rejected during {operation}: {error}. "
                    f"Check the account in {self._config.himalaya_config or 'the himalaya config'}."
                )
            if any(marker in lowered for marker in TRANSIENT_MARKERS):
                raise TransientIOError(f"himalaya {operation} failed: {error}")
            raise MailStoreError(
                f"himalaya {operation} exited with {proc.returncode}: {error}",
                operation=operation,
                envelope_id=envelope_id,
            )

        return stdout.decode("utf-8", errors="replace")

    async def _run_json(self, operation: str, *args: str) -> Any:
        output = await self._run(operation, *args)
        try:
            return json.loads(output or "null")
        except json.JSONDecodeError as e:
            raise MailStoreError(
                f"himalaya {operation} returned invalid JSON: {e}",
                operation=operation,
            ) from e

    async def _list_page(self, folder: str, page_size: int, page: int) -> list[dict[str, Any]]:
        items = await self._run_json(
            "envelope_list",
            "envelope",
            "list",
            *self._account_args(),
            "-f",
            folder,
            "-s",
            str(page_size),
            "-p",
            str(page),
            "-o",
            "json",
        )
        return items or []

    async def _state_label_keys(self) -> dict[str, set[tuple[str, str, str]]]:
        """Envelope keys of everything filed under each state label."""
        keys: dict[str, set[tuple[str, str, str]]] = {}
        page_size = self._config.page_size
        for label in self._state_labels:
            found: set[tuple[str, str, str]] = set()
            page = 1
            while True:
                items = await self._list_page(label, page_size, page)
                found.update(envelope_key(item) for item in items)
                if len(items) < page_size:
                    break
                page += 1
            keys[label] = found
        return keys

    async def list_envelopes(self, envelope_filter: EnvelopeFilter) -> list[Envelope]:
        """List envelopes from a folder or label, newest first, paging as needed.

        Inbox envelopes get whichever state labels hold a copy of them.
        """
        folder = envelope_filter.label or envelope_filter.folder or self._config.inbox_folder
        labels = frozenset({envelope_filter.label}) if envelope_filter.label else frozenset()
        page_size = self._config.page_size
        if envelope_filter.limit and not envelope_filter.unread_only:
            page_size = min(page_size, envelope_filter.limit)

        label_keys: dict[str, set[tuple[str, str, str]]] = {}
        if not envelope_filter.label and self._state_labels:
            label_keys = await self._state_label_keys()

        envelopes: list[Envelope] = []
        page = 1
        while True:
            items = await self._list_page(folder, page_size, page)
            for item in items:
                flags = {str(f).lower() for f in item.get("flags") or []}
                read = "seen" in flags
                if envelope_filter.unread_only and read:
                    continue
                item_labels = labels
                if label_keys:
                    key = envelope_key(item)
                    item_labels = frozenset(
                        name for name, found in label_keys.items() if key in found
                    )
                envelopes.append(
                    Envelope(
                        id=encode_id(folder, str(item["id"])),
                        subject=item.get("subject") or "",
                        sender=format_sender(item.get("from")),
                        received_at=parse_date(item.get("date")),
                        read=read,
                        labels=item_labels,
                    )
                )
                if envelope_filter.limit and len(envelopes) >= envelope_filter.limit:
                    break

            if envelope_filter.limit and len(envelopes) >= envelope_filter.limit:
                break
            if len(items) < page_size:
                break
            page += 1

        logger.debug("envelopes_listed", folder=folder, count=len(envelopes), pages=page)
        return envelopes

    async def read_message(self, envelope_id: str) -> MessageContent:
        """Read headers and plain-text body without setting the Seen flag."""
        folder, uid = decode_id(envelope_id)
        header_args = [arg for name in READ_HEADERS for arg in ("-H", name)]
        output = await self._run(
            "message_read",
            "message",
            "read",
            *self._account_args(),
            "--preview",
            "-f",
            folder,
            *header_args,
            uid,
            envelope_id=envelope_id,
        )
        return parse_message_output(envelope_id, output)

    async def apply_label(self, envelope_id: str, label: str) -> None:
        folder, uid = decode_id(envelope_id)
        if folder == label:
            return
        await self._run(
            "apply_label",
            "message",
            "copy",
            *self._account_args(),
            "-f",
            folder,
            label,
            uid,
            envelope_id=envelope_id,
        )

    async def relabel(self, envelope_id: str, from_label: str, to_label: str) -> None:
        """Swap labels with a single IMAP MOVE out of the from_label folder."""
        folder, uid = decode_id(envelope_id)
        if folder != from_label:
            raise MailStoreError(
                f"Envelope {envelope_id} was not listed from '{from_label}'; cannot relabel",
                operation="relabel",
                envelope_id=envelope_id,
            )
        await self._run(
            "relabel",
            "message",
            "move",
            *self._account_args(),
            "-f",
            from_label,
            to_label,
            uid,
            envelope_id=envelope_id,
        )

    async def remove_from_inbox(self, envelope_id: str) -> None:
        folder, uid = decode_id(envelope_id)
        if folder != self._config.inbox_folder:
            # Listed from elsewhere, so it is not in the inbox listing we own
            return
        await self._run(
            "remove_from_inbox",
            "message",
            "move",
            *self._account_args(),
            "-f",
            folder,
            self._config.archive_folder,
            uid,
            envelope_id=envelope_id,
        )

    async def create_label_if_absent(self, name: str) -> bool:
        folders = await self._run_json("folder_list", "folder", "list", *self._account_args(), "-o", "json")
        names = {f.get("name") for f in folders or [] if isinstance(f, dict)}
        if name in names:
            return False
        await self._run("folder_add", "folder", "add", *self._account_args(), name)
        return True
