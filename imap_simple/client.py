import asyncio
import re
from collections.abc import Iterable, Sequence
from datetime import date, datetime
from typing import Any

import aioimaplib
from imapclient import imap_utf7
from imapclient.response_parser import parse_response

from imap_simple.config import ImapServer, get_settings
from imap_simple.errors import ArityError, ConnectionClosedError, ConnectionTimeoutError, ImapCommandError
from imap_simple.log import logger
from imap_simple.messages.assembler import assemble_message
from imap_simple.messages.decoder import decode_message_part
from imap_simple.messages.fetch import FetchedMessageSource, parse_fetch_lines
from imap_simple.messages.models import BoxStatus, FetchOptions, Mailbox, Message, PartDescriptor

IMAP_ID = {"name": "imap-simple", "version": "1.0.0"}

SYSTEM_FLAGS = {"SEEN", "ANSWERED", "FLAGGED", "DELETED", "DRAFT", "RECENT"}

MessageSource = int | str | Iterable[int | str]


def _quote_mailbox(mailbox: str) -> str:
    """Quote and encode a mailbox name for use as a command argument.

    Names are encoded to modified UTF-7 (RFC 3501 5.1.3). Some servers
    (notably Proton Mail Bridge) require mailbox names to be quoted, so the
    name is always sent as a quoted string with backslashes and double quotes
    escaped.
    """
    encoded = imap_utf7.encode(mailbox).decode("ascii")
    escaped = encoded.replace("\\", "\\\\").replace('"', r"\"")
    return f'"{escaped}"'


def _message_set(source: MessageSource) -> str:
    if isinstance(source, int | str):
        return str(source)
    return ",".join(str(uid) for uid in source)


def _flag_list(flags: str | Iterable[str]) -> str:
    """Build a parenthesized flag list, prefixing system flags given without a backslash."""
    if isinstance(flags, str):
        flags = [flags]
    normalized = []
    for flag in flags:
        if not flag.startswith("\\") and flag.upper() in SYSTEM_FLAGS:
            flag = "\\" + flag.capitalize()
        normalized.append(flag)
    return f"({' '.join(normalized)})"


def _label_list(labels: str | Iterable[str]) -> str:
    if isinstance(labels, str):
        labels = [labels]
    quoted = [label if label.startswith("\\") else _quote_mailbox(label) for label in labels]
    return f"({' '.join(quoted)})"


def _flatten_criteria(criteria: Iterable[Any]) -> list[str]:
    flat: list[str] = []
    for criterion in criteria:
        if isinstance(criterion, datetime | date):
            flat.append(criterion.strftime("%d-%b-%Y").upper())
        elif isinstance(criterion, str):
            flat.append(criterion)
        elif isinstance(criterion, Iterable):
            flat.extend(_flatten_criteria(criterion))
        else:
            flat.append(str(criterion))
    return flat


def build_search_criteria(criteria: Sequence[Any] | None) -> list[str]:
    """Flatten nested search criteria into SEARCH arguments.

    ``["UNSEEN", ["SINCE", datetime(2024, 1, 1)]]`` becomes
    ``["UNSEEN", "SINCE", "01-JAN-2024"]``. No criteria means ``["ALL"]``.
    """
    search_criteria = _flatten_criteria(criteria or [])
    if not search_criteria:
        search_criteria = ["ALL"]
    return search_criteria


def _ensure_ok(response: Any, command: str) -> list:
    status, lines = response if isinstance(response, tuple) else (response, [])
    if str(status).upper() != "OK":
        logger.error(f"{command} failed: {status} {lines}")
        raise ImapCommandError(command, str(status), list(lines or []))
    return list(lines or [])


def _has_capability(imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL, capability: str) -> bool:
    try:
        return capability in imap.protocol.capabilities
    except Exception:
        return False


async def _send_imap_id(imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL) -> None:
    """Send IMAP ID command with fallback for strict servers like 163.com.

    aioimaplib's id() method sends ID command with spaces between parentheses
    and content (e.g., 'ID ( "name" "value" )'), which some strict IMAP servers
    like 163.com reject with 'BAD Parse command error'. If that happens the
    command is sent again in raw form with the correct format.
    """
    try:
        response = await imap.id(**IMAP_ID)
        if response.result != "OK":
            fields = " ".join(f'"{key}" "{value}"' for key, value in IMAP_ID.items())
            await imap.protocol.execute(aioimaplib.Command("ID", imap.protocol.new_tag(), f"({fields})"))
    except Exception as e:
        logger.warning(f"IMAP ID command failed: {e!s}")


def _parse_list_line(line: bytes) -> tuple[list[str], str | None, str] | None:
    """Parse one LIST response line: ``(flags) "delimiter" name``."""
    try:
        flags, delimiter, name = parse_response([bytes(line)])
    except Exception as e:
        logger.debug(f"Error parsing LIST response '{line!r}': {e}")
        return None

    if isinstance(name, bytes):
        name = imap_utf7.decode(name)
    else:
        name = str(name)
    return (
        [flag.decode("utf-8") if isinstance(flag, bytes) else str(flag) for flag in flags],
        delimiter.decode("utf-8") if isinstance(delimiter, bytes) else delimiter,
        name,
    )


def _build_mailbox_tree(entries: list[tuple[list[str], str | None, str]]) -> dict[str, Mailbox]:
    boxes: dict[str, Mailbox] = {}
    by_path: dict[str, Mailbox] = {}

    for flags, delimiter, path in sorted(entries, key=lambda entry: entry[2]):
        segments = path.split(delimiter) if delimiter else [path]
        mailbox = Mailbox(name=segments[-1], path=path, delimiter=delimiter, attributes=flags)
        by_path[path] = mailbox

        parent = by_path.get(delimiter.join(segments[:-1])) if delimiter and len(segments) > 1 else None
        if parent is not None:
            parent.children[mailbox.name] = mailbox
        else:
            boxes[path] = mailbox
    return boxes


_EXISTS = re.compile(rb"^(\d+) EXISTS", re.IGNORECASE)
_RECENT = re.compile(rb"^(\d+) RECENT", re.IGNORECASE)
_UIDVALIDITY = re.compile(rb"\[UIDVALIDITY (\d+)\]", re.IGNORECASE)
_UIDNEXT = re.compile(rb"\[UIDNEXT (\d+)\]", re.IGNORECASE)
_FLAGS = re.compile(rb"^FLAGS \(([^)]*)\)", re.IGNORECASE)
_PERMANENTFLAGS = re.compile(rb"\[PERMANENTFLAGS \(([^)]*)\)\]", re.IGNORECASE)


def _parse_box_status(name: str, lines: list, read_only: bool) -> BoxStatus:
    status = BoxStatus(name=name, read_only=read_only)
    for line in lines:
        if not isinstance(line, bytes | bytearray):
            continue
        line = bytes(line).strip()
        if match := _EXISTS.match(line):
            status.messages_total = int(match.group(1))
        elif match := _RECENT.match(line):
            status.messages_new = int(match.group(1))
        elif match := _FLAGS.match(line):
            status.flags = match.group(1).decode("utf-8").split()
        elif match := _PERMANENTFLAGS.search(line):
            status.permanent_flags = match.group(1).decode("utf-8").split()
        elif match := _UIDVALIDITY.search(line):
            status.uidvalidity = int(match.group(1))
        elif match := _UIDNEXT.search(line):
            status.uidnext = int(match.group(1))
        elif b"[READ-ONLY]" in line.upper():
            status.read_only = True
    return status


class ImapSimple:
    """Coroutine API over a logged-in aioimaplib connection"""

    def __init__(
        self,
        imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL,
        fetch_timeout: float | None = None,
    ):
        self.imap = imap
        self.fetch_timeout = fetch_timeout
        self.current_box: str | None = None
        self.ending = False

    async def __aenter__(self) -> "ImapSimple":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.end()

    async def end(self) -> None:
        """Log out and close the connection."""
        self.ending = True
        try:
            await self.imap.logout()
        except Exception as e:
            # Connection resets while logging out are expected with some servers
            logger.info(f"Error during logout: {e}")
        finally:
            self.current_box = None

    async def open_box(self, box_name: str, read_only: bool = False) -> BoxStatus:
        if read_only:
            response = await self.imap.examine(_quote_mailbox(box_name))
        else:
            response = await self.imap.select(_quote_mailbox(box_name))
        lines = _ensure_ok(response, f"open_box {box_name}")
        self.current_box = box_name
        status = _parse_box_status(box_name, lines, read_only)
        logger.debug(f"Opened mailbox '{box_name}' ({status.messages_total} messages)")
        return status

    async def close_box(self, auto_expunge: bool = True) -> None:
        """Close the open mailbox, expunging messages marked \\Deleted if ``auto_expunge``."""
        if auto_expunge:
            response = await self.imap.close()
        elif _has_capability(self.imap, "UNSELECT"):
            response = await self.imap.protocol.execute(aioimaplib.Command("UNSELECT", self.imap.protocol.new_tag()))
        else:
            # CLOSE does not expunge a mailbox opened with EXAMINE
            if self.current_box is not None:
                _ensure_ok(await self.imap.examine(_quote_mailbox(self.current_box)), "examine")
            response = await self.imap.close()
            logger.debug("Closed mailbox using EXAMINE+CLOSE")
        _ensure_ok(response, "close_box")
        self.current_box = None

    async def _assemble_numbered(self, source: FetchedMessageSource) -> Message:
        message = await assemble_message(source, timeout=self.fetch_timeout)
        message.seq_no = source.seq_no
        return message

    async def fetch(self, source: MessageSource, fetch_options: FetchOptions | None = None) -> list[Message]:
        """Fetch messages by UID, ordered by sequence number."""
        fetch_options = fetch_options or FetchOptions()
        response = await self.imap.uid("fetch", _message_set(source), fetch_options.to_query())
        lines = _ensure_ok(response, "fetch")

        sources = parse_fetch_lines(lines)
        if not sources:
            return []

        # Messages finish assembling in any order; buffer them by sequence
        # number and only build the result once every one has arrived.
        buffered: dict[int, Message] = {}
        for future in asyncio.as_completed([self._assemble_numbered(s) for s in sources]):
            message = await future
            buffered[message.seq_no] = message
        return [buffered[seq_no] for seq_no in sorted(buffered)]

    async def search(
        self,
        search_criteria: Sequence[Any] | None = None,
        fetch_options: FetchOptions | None = None,
    ) -> list[Message]:
        """Search the open mailbox and fetch every match.

        Each result carries its attributes and the requested parts; parts
        whose ``which`` starts with HEADER have their body parsed into
        ``{field: [values]}``. Look parts up by ``which`` rather than position.
        """
        criteria = build_search_criteria(search_criteria)
        logger.info(f"Search criteria: {criteria}")
        response = await self.imap.uid_search(*criteria)
        lines = _ensure_ok(response, "search")

        uids = lines[0].split() if lines and lines[0] else []
        if not uids:
            return []

        uid_list = [uid.decode("utf-8") if isinstance(uid, bytes | bytearray) else str(uid) for uid in uids]
        return await self.fetch(uid_list, fetch_options)

    async def get_part_data(self, message: Message, part: PartDescriptor) -> bytes | str:
        """Download and decode one part (a body section or an attachment) of ``message``."""
        if message.attributes is None or message.attributes.uid is None:
            raise ValueError("message has no UID; fetch it with its attributes first")
        if not part.part_id:
            raise ValueError(f"{part.type}/{part.subtype} container has no part ID to fetch")

        fetched = await self.fetch(
            message.attributes.uid,
            FetchOptions(bodies=[part.part_id], struct=True),
        )
        if len(fetched) != 1:
            logger.error(f"Expected one message for UID {message.attributes.uid}, got {len(fetched)}")
            raise ArityError(len(fetched))
        return decode_message_part(fetched[0], part)

    async def move_message(self, source: MessageSource, box_name: str) -> None:
        """Move messages of the open mailbox to ``box_name``.

        Uses MOVE (RFC 6851) when the server has it, COPY + \\Deleted + EXPUNGE otherwise.
        """
        message_set = _message_set(source)
        if _has_capability(self.imap, "MOVE"):
            response = await self.imap.uid("move", message_set, _quote_mailbox(box_name))
            _ensure_ok(response, "move")
            logger.debug(f"Moved {message_set} to {box_name} using MOVE")
            return

        response = await self.imap.uid("copy", message_set, _quote_mailbox(box_name))
        _ensure_ok(response, "copy")
        response = await self.imap.uid("store", message_set, "+FLAGS.SILENT", r"(\Deleted)")
        _ensure_ok(response, "store")
        _ensure_ok(await self.imap.expunge(), "expunge")
        logger.debug(f"Moved {message_set} to {box_name} using COPY+DELETE")

    async def add_message_label(self, source: MessageSource, labels: str | Iterable[str]) -> None:
        """Add Gmail labels (X-GM-EXT-1) to messages."""
        response = await self.imap.uid("store", _message_set(source), "+X-GM-LABELS", _label_list(labels))
        _ensure_ok(response, "add_message_label")

    async def remove_message_label(self, source: MessageSource, labels: str | Iterable[str]) -> None:
        """Remove Gmail labels (X-GM-EXT-1) from messages."""
        response = await self.imap.uid("store", _message_set(source), "-X-GM-LABELS", _label_list(labels))
        _ensure_ok(response, "remove_message_label")

    async def add_flags(self, source: MessageSource, flags: str | Iterable[str]) -> None:
        response = await self.imap.uid("store", _message_set(source), "+FLAGS", _flag_list(flags))
        _ensure_ok(response, "add_flags")

    async def del_flags(self, source: MessageSource, flags: str | Iterable[str]) -> None:
        response = await self.imap.uid("store", _message_set(source), "-FLAGS", _flag_list(flags))
        _ensure_ok(response, "del_flags")

    async def delete_message(self, source: MessageSource) -> None:
        """Flag messages \\Deleted and expunge the open mailbox."""
        response = await self.imap.uid("store", _message_set(source), "+FLAGS", r"(\Deleted)")
        _ensure_ok(response, "delete_message")
        _ensure_ok(await self.imap.expunge(), "expunge")

    async def append(
        self,
        message: str | bytes,
        mailbox: str | None = None,
        flags: str | Iterable[str] | None = None,
        date: datetime | None = None,
    ) -> None:
        """Append a MIME message to ``mailbox``, the open mailbox by default."""
        mailbox = mailbox or self.current_box
        if not mailbox:
            raise ValueError("No mailbox specified and no mailbox is open")

        message_bytes = message.encode("utf-8") if isinstance(message, str) else message
        response = await self.imap.append(
            message_bytes,
            mailbox=_quote_mailbox(mailbox),
            flags=_flag_list(flags) if flags else None,
            date=date,
        )
        _ensure_ok(response, "append")
        logger.debug(f"Appended {len(message_bytes)} bytes to '{mailbox}'")

    async def get_boxes(self) -> dict[str, Mailbox]:
        """List all mailboxes as a tree keyed by top-level name."""
        response = await self.imap.list('""', "*")
        lines = _ensure_ok(response, "list")

        entries = []
        for line in lines:
            if not isinstance(line, bytes | bytearray) or not line.startswith(b"("):
                continue
            entry = _parse_list_line(line)
            if entry:
                entries.append(entry)

        logger.info(f"Found {len(entries)} mailboxes")
        return _build_mailbox_tree(entries)

    async def add_box(self, box_name: str) -> str:
        response = await self.imap.create(_quote_mailbox(box_name))
        _ensure_ok(response, f"add_box {box_name}")
        logger.info(f"Created mailbox: {box_name}")
        return box_name

    async def del_box(self, box_name: str) -> str:
        response = await self.imap.delete(_quote_mailbox(box_name))
        _ensure_ok(response, f"del_box {box_name}")
        logger.info(f"Deleted mailbox: {box_name}")
        return box_name


def _close_transport(imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL) -> None:
    """Drop the socket of a client that never finished logging in."""
    transport = getattr(imap.protocol, "transport", None)
    if transport is not None:
        transport.close()


async def _open_session(imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL, server: ImapServer) -> None:
    await imap._client_task
    await imap.wait_hello_from_server()
    response = await imap.login(server.user_name, server.password)
    _ensure_ok(response, "login")


async def connect(server: ImapServer | None = None, fetch_timeout: float | None = None) -> ImapSimple:
    """Connect and log in, returning an ImapSimple wrapper.

    Settings from the environment are used when ``server`` is not given.
    Raises ConnectionTimeoutError if the greeting and login take longer than
    ``server.auth_timeout``.
    """
    settings = get_settings()
    server = server or settings.server
    if server is None:
        raise ValueError("No IMAP server configured")
    if fetch_timeout is None:
        fetch_timeout = settings.fetch_timeout

    imap_class = aioimaplib.IMAP4_SSL if server.use_ssl else aioimaplib.IMAP4
    imap = imap_class(server.host, server.port, timeout=server.timeout)

    try:
        await asyncio.wait_for(_open_session(imap, server), timeout=server.auth_timeout)
    except asyncio.TimeoutError as e:
        logger.error(f"Timed out connecting to {server.host}:{server.port}")
        _close_transport(imap)
        raise ConnectionTimeoutError(server.auth_timeout) from e
    except OSError as e:
        logger.error(f"Connection to {server.host}:{server.port} failed: {e}")
        _close_transport(imap)
        raise ConnectionClosedError() from e
    except Exception:
        _close_transport(imap)
        raise

    await _send_imap_id(imap)
    logger.info(f"Connected to {server.host}:{server.port} as {server.user_name}")
    return ImapSimple(imap, fetch_timeout=fetch_timeout)
