import asyncio
from collections.abc import AsyncIterable
from email.parser import BytesParser
from email.policy import default

from imap_simple.errors import FetchTimeoutError, IncompleteMessageError
from imap_simple.log import logger
from imap_simple.messages import AttributesEvent, BodyEvent, EndEvent, MessageEvent
from imap_simple.messages.models import BodyInfo, Message, MessageAttributes, MessagePart

_CHUNK_SIZE = 64 * 1024


def parse_header(raw_header: str | bytes) -> dict[str, list[str]]:
    """Parse a header block into ``{lowercased-field-name: [values...]}``.

    Folded lines are unfolded and RFC 2047 encoded words are decoded. Values
    keep the order in which their fields appear.
    """
    if isinstance(raw_header, str):
        raw_header = raw_header.encode("utf-8")
    parsed = BytesParser(policy=default).parsebytes(raw_header, headersonly=True)

    fields: dict[str, list[str]] = {}
    for name, value in parsed.items():
        fields.setdefault(name.lower(), []).append(str(value))
    return fields


async def _drain(stream: asyncio.StreamReader) -> bytes:
    chunks = []
    while True:
        chunk = await stream.read(_CHUNK_SIZE)
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks)


def _build_part(info: BodyInfo, raw: bytes) -> MessagePart:
    body: str | dict[str, list[str]]
    if info.which.startswith("HEADER"):
        body = parse_header(raw)
    else:
        body = raw.decode("utf-8", errors="replace")
    return MessagePart(which=info.which, size=info.size, body=body, raw=raw)


async def _assemble(source: AsyncIterable[MessageEvent]) -> Message:
    parts: list[MessagePart] = []
    attributes: MessageAttributes | None = None
    drains: list[asyncio.Task] = []

    async def collect(event: BodyEvent) -> None:
        raw = await _drain(event.stream)
        # Appended in completion order, which may differ from arrival order
        parts.append(_build_part(event.info, raw))

    events = aiter(source)
    try:
        ended = False
        async for event in events:
            if isinstance(event, BodyEvent):
                drains.append(asyncio.ensure_future(collect(event)))
            elif isinstance(event, AttributesEvent):
                if attributes is None:
                    attributes = event.attributes
                else:
                    logger.debug("Ignoring repeated attributes event")
            elif isinstance(event, EndEvent):
                ended = True
                break

        if not ended:
            raise IncompleteMessageError("Message event source ended before the end of the message")

        await asyncio.gather(*drains)
    except BaseException:
        for task in drains:
            task.cancel()
        await asyncio.gather(*drains, return_exceptions=True)
        raise
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()

    return Message(attributes=attributes, parts=parts)


async def assemble_message(source: AsyncIterable[MessageEvent], timeout: float | None = None) -> Message:
    """Collect the body sections and attributes of one fetched message.

    Events that follow the end event are never consumed. Raises
    IncompleteMessageError when the source runs dry without an end event and
    FetchTimeoutError when ``timeout`` seconds pass first.
    """
    if timeout is None:
        return await _assemble(source)

    try:
        return await asyncio.wait_for(_assemble(source), timeout)
    except asyncio.TimeoutError as e:
        logger.error(f"Assembling message timed out after {timeout}s")
        raise FetchTimeoutError(timeout) from e
