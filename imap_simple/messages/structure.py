from collections.abc import Iterable, Sequence
from typing import Any

from imap_simple.messages.models import Disposition, PartDescriptor


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes | bytearray):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def _int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _params(value: Any) -> dict[str, str]:
    """Turn a flat ``(key, value, key, value...)`` parameter list into a dict."""
    if not isinstance(value, Sequence) or isinstance(value, bytes | str):
        return {}
    params = {}
    for i in range(0, len(value) - 1, 2):
        key = _text(value[i])
        if key:
            params[key.lower()] = _text(value[i + 1]) or ""
    return params


def _disposition(value: Any) -> Disposition | None:
    if not isinstance(value, Sequence) or isinstance(value, bytes | str) or not value:
        return None
    kind = _text(value[0]) or ""
    params = _params(value[1]) if len(value) > 1 else {}
    return Disposition(type=kind.lower(), params=params)


def _language(value: Any) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, Sequence) and not isinstance(value, bytes | str):
        return [_text(v) for v in value if v is not None]
    return [_text(value)]


def _get(body: Sequence, index: int) -> Any:
    return body[index] if len(body) > index else None


def _child_id(prefix: str, position: int) -> str:
    return f"{prefix}.{position}" if prefix else str(position)


def body_structure_to_descriptor(body: Sequence, part_id: str = "") -> PartDescriptor:
    """Convert a parsed BODYSTRUCTURE (``imapclient.response_types.BodyData``) into a descriptor tree.

    Parts are numbered the IMAP way: a single-part message is part "1", the
    children of a multipart are "1", "2"... and nested ones "2.1", "2.2"...
    """
    if isinstance(body[0], list):
        children = [
            body_structure_to_descriptor(child, _child_id(part_id, position))
            for position, child in enumerate(body[0], start=1)
        ]
        return PartDescriptor(
            type="multipart",
            subtype=(_text(body[1]) or "mixed").lower(),
            params=_params(_get(body, 2)),
            disposition=_disposition(_get(body, 3)),
            language=_language(_get(body, 4)),
            location=_text(_get(body, 5)),
            children=children,
        )

    media_type = (_text(body[0]) or "text").lower()
    subtype = (_text(body[1]) or "plain").lower()

    lines = None
    extension = 7
    if media_type == "text":
        lines = _int(_get(body, 7))
        extension = 8
    elif media_type == "message" and subtype == "rfc822":
        lines = _int(_get(body, 9))
        extension = 10

    return PartDescriptor(
        part_id=part_id or "1",
        type=media_type,
        subtype=subtype,
        params=_params(_get(body, 2)),
        id=_text(_get(body, 3)),
        description=_text(_get(body, 4)),
        encoding=_text(_get(body, 5)),
        size=_int(_get(body, 6)),
        lines=lines,
        md5=_text(_get(body, extension)),
        disposition=_disposition(_get(body, extension + 1)),
        language=_language(_get(body, extension + 2)),
        location=_text(_get(body, extension + 3)),
    )


def get_parts(
    struct: PartDescriptor | Iterable[PartDescriptor] | None,
    parts: list[PartDescriptor] | None = None,
) -> list[PartDescriptor]:
    """Flatten a structure tree into its addressable parts, in document order.

    Useful for iterating over a message's parts, for example to find its
    attachments.
    """
    if parts is None:
        parts = []
    if struct is None:
        return parts
    nodes = [struct] if isinstance(struct, PartDescriptor) else struct
    for node in nodes:
        if node.part_id:
            parts.append(node)
        get_parts(node.children, parts)
    return parts
