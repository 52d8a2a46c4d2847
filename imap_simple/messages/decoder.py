"""Content-transfer-encoding decoding for single fetched parts.

The encoding and charset always come from the server's BODYSTRUCTURE; the
content itself is never sniffed.
"""

import base64
import binascii
import codecs
import quopri
from collections.abc import Callable
from enum import Enum

from imap_simple.errors import ArityError, UnsupportedEncodingError
from imap_simple.log import logger
from imap_simple.messages.models import Message, PartDescriptor


class TransferEncoding(Enum):
    BASE64 = "BASE64"
    QUOTED_PRINTABLE = "QUOTED-PRINTABLE"
    SEVEN_BIT = "7BIT"
    EIGHT_BIT = "8BIT"
    BINARY = "BINARY"
    UUENCODE = "UUENCODE"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_declared(cls, encoding: str | None) -> "TransferEncoding":
        # RFC 2045: no Content-Transfer-Encoding means 7bit
        if not encoding:
            return cls.SEVEN_BIT
        try:
            encoding_type = cls(encoding.strip().upper())
        except ValueError:
            return cls.UNKNOWN
        return encoding_type


def _decode_text(data: bytes, charset: str | None) -> str:
    """Decode bytes with the declared charset, falling back to UTF-8."""
    charset = charset or "utf-8"
    try:
        codecs.lookup(charset)
    except LookupError:
        logger.debug(f"Unknown charset '{charset}', decoding as utf-8")
        charset = "utf-8"
    try:
        return data.decode(charset)
    except UnicodeDecodeError:
        return data.decode("utf-8", errors="replace")


def _decode_base64(data: bytes, charset: str | None) -> bytes:
    payload = b"".join(data.split())
    payload += b"=" * (-len(payload) % 4)
    return base64.b64decode(payload)


def _decode_quoted_printable(data: bytes, charset: str | None) -> str:
    decoded = quopri.decodestring(data)
    if charset and charset.upper() == "UTF-8":
        return decoded.decode("utf-8", errors="replace")
    return _decode_text(decoded, charset)


def _decode_seven_bit(data: bytes, charset: str | None) -> str:
    return data.decode("ascii", errors="replace")


def _decode_eight_bit(data: bytes, charset: str | None) -> str:
    return _decode_text(data, charset or "utf-8")


def _decode_uu_line(line: bytes) -> bytes:
    try:
        return binascii.a2b_uu(line)
    except binascii.Error:
        pass
    # Some encoders pad lines with garbage; keep only the bytes the length character covers
    nbytes = (((line[0] - 32) & 63) * 4 + 5) // 3
    try:
        return binascii.a2b_uu(line[:nbytes])
    except binascii.Error:
        logger.debug(f"Skipping malformed uuencoded line: {line[:20]!r}")
        return b""


def _decode_uuencode(data: bytes, charset: str | None) -> bytes:
    # Legacy framing: one "begin" line up front, then "`", "end" and a trailing newline
    lines = data.split(b"\n")
    payload = lines[1 : len(lines) - 3]
    return b"".join(_decode_uu_line(line.rstrip(b"\r")) for line in payload if line.strip())


_DECODERS: dict[TransferEncoding, Callable[[bytes, str | None], bytes | str]] = {
    TransferEncoding.BASE64: _decode_base64,
    TransferEncoding.QUOTED_PRINTABLE: _decode_quoted_printable,
    TransferEncoding.SEVEN_BIT: _decode_seven_bit,
    TransferEncoding.EIGHT_BIT: _decode_eight_bit,
    TransferEncoding.BINARY: _decode_eight_bit,
    TransferEncoding.UUENCODE: _decode_uuencode,
}


def decode_part(raw_body: str | bytes, descriptor: PartDescriptor) -> bytes | str:
    """Decode one part's fetched body according to its BODYSTRUCTURE entry.

    BASE64 and UUENCODE parts come back as bytes, every other encoding as text.
    Raises UnsupportedEncodingError for encodings outside the known set.
    """
    encoding = TransferEncoding.from_declared(descriptor.encoding)
    decoder = _DECODERS.get(encoding)
    if decoder is None:
        raise UnsupportedEncodingError(descriptor.encoding)

    data = raw_body.encode("utf-8") if isinstance(raw_body, str) else bytes(raw_body)
    return decoder(data, descriptor.charset)


def decode_message_part(message: Message, descriptor: PartDescriptor) -> bytes | str:
    """Decode the single part fetched for ``descriptor``.

    Raises ArityError when ``message`` does not hold exactly one part.
    """
    if len(message.parts) != 1:
        raise ArityError(len(message.parts))

    part = message.parts[0]
    if part.raw:
        return decode_part(part.raw, descriptor)
    if isinstance(part.body, dict):
        raise TypeError(f"Part '{part.which}' was parsed as a header and has no raw body")
    return decode_part(part.body, descriptor)
