import abc
import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from imap_simple.messages.models import BodyInfo, MessageAttributes


@dataclass
class BodyEvent:
    """One body section of the message, readable from ``stream``"""

    stream: asyncio.StreamReader
    info: "BodyInfo"


@dataclass
class AttributesEvent:
    attributes: "MessageAttributes"


@dataclass
class EndEvent:
    pass


MessageEvent = BodyEvent | AttributesEvent | EndEvent


class MessageEventSource(abc.ABC):
    @abc.abstractmethod
    def __aiter__(self) -> AsyncIterator[MessageEvent]:
        """
        Yield the events of a single fetched message.

        Zero or more BodyEvent and exactly one AttributesEvent, in any order,
        followed by exactly one EndEvent.
        """
