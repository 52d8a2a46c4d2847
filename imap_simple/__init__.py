from imap_simple.client import ImapSimple, build_search_criteria, connect
from imap_simple.errors import (
    ArityError,
    ConnectionClosedError,
    ConnectionTimeoutError,
    FetchTimeoutError,
    ImapCommandError,
    ImapSimpleError,
    IncompleteMessageError,
    UnsupportedEncodingError,
)
from imap_simple.messages import AttributesEvent, BodyEvent, EndEvent, MessageEventSource
from imap_simple.messages.assembler import assemble_message, parse_header
from imap_simple.messages.decoder import TransferEncoding, decode_message_part, decode_part
from imap_simple.messages.models import (
    BodyInfo,
    BoxStatus,
    Disposition,
    FetchOptions,
    Mailbox,
    Message,
    MessageAttributes,
    MessagePart,
    PartDescriptor,
)
from imap_simple.messages.structure import get_parts

__all__ = [
    "ArityError",
    "AttributesEvent",
    "BodyEvent",
    "BodyInfo",
    "BoxStatus",
    "ConnectionClosedError",
    "ConnectionTimeoutError",
    "Disposition",
    "EndEvent",
    "FetchOptions",
    "FetchTimeoutError",
    "ImapCommandError",
    "ImapSimple",
    "ImapSimpleError",
    "IncompleteMessageError",
    "Mailbox",
    "Message",
    "MessageAttributes",
    "MessageEventSource",
    "MessagePart",
    "PartDescriptor",
    "TransferEncoding",
    "UnsupportedEncodingError",
    "assemble_message",
    "build_search_criteria",
    "connect",
    "decode_message_part",
    "decode_part",
    "get_parts",
    "parse_header",
]
