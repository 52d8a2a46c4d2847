from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class Disposition(BaseModel):
    """Content-Disposition as reported in BODYSTRUCTURE"""

    type: str  # lowercased, e.g. "attachment" or "inline"
    params: dict[str, str] = Field(default_factory=dict)


class PartDescriptor(BaseModel):
    """One node of a message's MIME structure tree"""

    part_id: str | None = None  # None for multipart containers
    type: str
    subtype: str
    params: dict[str, str] = Field(default_factory=dict)  # keys lowercased
    id: str | None = None
    description: str | None = None
    encoding: str | None = None
    size: int | None = None
    lines: int | None = None
    md5: str | None = None
    disposition: Disposition | None = None
    language: list[str] | None = None
    location: str | None = None
    children: list["PartDescriptor"] = Field(default_factory=list)

    @property
    def charset(self) -> str | None:
        return self.params.get("charset")

    @property
    def filename(self) -> str | None:
        if self.disposition and "filename" in self.disposition.params:
            return self.disposition.params["filename"]
        return self.params.get("name")

    @property
    def is_attachment(self) -> bool:
        return self.disposition is not None and self.disposition.type == "attachment"


class MessageAttributes(BaseModel):
    """Server-reported metadata for one fetched message"""

    model_config = ConfigDict(extra="allow")

    uid: int | None = None
    flags: list[str] = Field(default_factory=list)
    date: datetime | None = None  # INTERNALDATE
    size: int | None = None  # RFC822.SIZE
    struct: PartDescriptor | None = None
    labels: list[str] = Field(default_factory=list)  # Gmail X-GM-LABELS
    modseq: int | None = None


class BodyInfo(BaseModel):
    which: str
    size: int


class MessagePart(BaseModel):
    """One fetched body section"""

    which: str
    size: int
    body: str | dict[str, list[str]]
    raw: bytes = Field(default=b"", repr=False)  # bytes exactly as received

    @property
    def is_header(self) -> bool:
        return self.which.startswith("HEADER")


class Message(BaseModel):
    """A fetched message: its attributes plus the parts in drain-completion order"""

    attributes: MessageAttributes | None = None
    parts: list[MessagePart] = Field(default_factory=list)
    seq_no: int | None = None

    def get_part(self, which: str) -> MessagePart | None:
        for part in self.parts:
            if part.which == which:
                return part
        return None


class FetchOptions(BaseModel):
    """What to fetch for each message matched by a search"""

    bodies: list[str] = Field(default_factory=list)  # e.g. ["HEADER", "TEXT", "1.2"]; "" is the whole message
    mark_seen: bool = False
    struct: bool = False
    envelope: bool = False
    size: bool = False
    extra: list[str] = Field(default_factory=list)  # additional FETCH items, e.g. "X-GM-LABELS"

    def to_query(self) -> str:
        items = ["UID", "FLAGS", "INTERNALDATE"]
        if self.struct:
            items.append("BODYSTRUCTURE")
        if self.envelope:
            items.append("ENVELOPE")
        if self.size:
            items.append("RFC822.SIZE")
        items.extend(self.extra)
        section = "BODY" if self.mark_seen else "BODY.PEEK"
        items.extend(f"{section}[{which}]" for which in self.bodies)
        return f"({' '.join(items)})"


class BoxStatus(BaseModel):
    """State of a mailbox right after it was opened"""

    name: str
    read_only: bool = False
    uidvalidity: int | None = None
    uidnext: int | None = None
    flags: list[str] = Field(default_factory=list)
    permanent_flags: list[str] = Field(default_factory=list)
    messages_total: int = 0
    messages_new: int = 0


class Mailbox(BaseModel):
    """One node of the mailbox (folder) hierarchy"""

    name: str  # last path segment
    path: str  # full IMAP name, e.g. "INBOX/Receipts"
    delimiter: str | None = None
    attributes: list[str] = Field(default_factory=list)
    children: dict[str, "Mailbox"] = Field(default_factory=dict)
