import asyncio
import re
from collections.abc import AsyncIterator
from typing import Any

from imapclient.response_parser import parse_fetch_response

from imap_simple.log import logger
from imap_simple.messages import AttributesEvent, BodyEvent, EndEvent, MessageEvent, MessageEventSource
from imap_simple.messages.models import BodyInfo, MessageAttributes
from imap_simple.messages.structure import body_structure_to_descriptor

_FETCH_START = re.compile(rb"^(\d+) FETCH ", re.IGNORECASE)

_SECTION_ALIASES = {
    b"RFC822": "",
    b"RFC822.HEADER": "HEADER",
    b"RFC822.TEXT": "TEXT",
}


def _decode(value: Any) -> str:
    if isinstance(value, bytes | bytearray):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def section_name(key: bytes) -> str | None:
    """Return the ``which`` of a FETCH data item, or None if it is not a body section.

    ``BODY[HEADER.FIELDS (SUBJECT)]`` gives ``HEADER.FIELDS (SUBJECT)``,
    ``BODY[1.2]<0>`` gives ``1.2``.
    """
    key = key.upper()
    if key in _SECTION_ALIASES:
        return _SECTION_ALIASES[key]
    if key.startswith(b"BODY[") and b"]" in key:
        return _decode(key[5 : key.index(b"]")])
    return None


class FetchedMessageSource(MessageEventSource):
    """Replays one message of a parsed FETCH response as message events"""

    def __init__(self, seq_no: int, data: dict[bytes, Any]):
        self.seq_no = seq_no
        self.data = data

    @property
    def attributes(self) -> MessageAttributes:
        data = self.data
        struct = data.get(b"BODYSTRUCTURE", data.get(b"BODY"))
        modseq = data.get(b"MODSEQ")
        if isinstance(modseq, tuple):
            modseq = modseq[0] if modseq else None
        return MessageAttributes(
            uid=data.get(b"UID"),
            flags=[_decode(flag) for flag in data.get(b"FLAGS", ())],
            date=data.get(b"INTERNALDATE"),
            size=data.get(b"RFC822.SIZE"),
            struct=body_structure_to_descriptor(struct) if struct else None,
            labels=[_decode(label) for label in data.get(b"X-GM-LABELS", ())],
            modseq=modseq,
        )

    def sections(self) -> list[tuple[str, bytes]]:
        found = []
        for key, value in self.data.items():
            which = section_name(key)
            if which is None:
                continue
            found.append((which, bytes(value) if value is not None else b""))
        return found

    async def __aiter__(self) -> AsyncIterator[MessageEvent]:
        yield AttributesEvent(self.attributes)
        for which, literal in self.sections():
            stream = asyncio.StreamReader()
            stream.feed_data(literal)
            stream.feed_eof()
            yield BodyEvent(stream, BodyInfo(which=which, size=len(literal)))
        yield EndEvent()


def _group_records(lines: list) -> list[list]:
    """Convert aioimaplib response lines into imaplib-style records, one group per message.

    aioimaplib hands back literals as separate ``bytearray`` items following
    the line that announced them, and keeps the ``FETCH`` keyword that the
    imapclient parser does not expect. Lines outside any FETCH response
    (such as the tagged completion text) are dropped.
    """
    groups: list[list] = []
    pending: bytes | None = None

    for line in lines:
        if isinstance(line, bytearray):
            if pending is None:
                logger.debug("Skipping literal without a preceding literal marker")
                continue
            groups[-1].append((pending, bytes(line)))
            pending = None
            continue

        if pending is not None:
            groups[-1].append(pending)
            pending = None

        line = bytes(line)
        start = _FETCH_START.match(line)
        if start:
            groups.append([])
            line = _FETCH_START.sub(rb"\1 ", line, count=1)
        elif not groups or not line.startswith((b" ", b")")):
            logger.debug(f"Skipping non-FETCH line: {line!r}")
            continue

        if line.endswith(b"}"):
            pending = line
        else:
            groups[-1].append(line)

    if pending is not None:
        groups[-1].append(pending)
    return groups


def parse_fetch_lines(lines: list) -> list[FetchedMessageSource]:
    """Split a FETCH response into one event source per message, in response order."""
    sources = []
    for records in _group_records(lines):
        parsed = parse_fetch_response(records, normalise_times=False, uid_is_key=False)
        for seq_no, data in parsed.items():
            sources.append(FetchedMessageSource(seq_no, data))
    return sources
