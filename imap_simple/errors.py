class ImapSimpleError(Exception):
    """Base class for errors raised by imap_simple"""


class ConnectionTimeoutError(ImapSimpleError):
    """The server greeting or login did not complete in time"""

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout
        message = "connection timed out"
        if timeout:
            message += f". timeout = {timeout} s"
        super().__init__(message)


class ConnectionClosedError(ImapSimpleError):
    def __init__(self, message: str = "Connection closed unexpectedly"):
        super().__init__(message)


class ImapCommandError(ImapSimpleError):
    """The server answered a command with something other than OK"""

    def __init__(self, command: str, result: str, lines: list | None = None):
        self.command = command
        self.result = result
        self.lines = lines or []
        detail = ""
        if self.lines:
            last = self.lines[-1]
            detail = f": {last.decode('utf-8', errors='replace') if isinstance(last, bytes | bytearray) else last}"
        super().__init__(f"{command} failed with {result}{detail}")


class ArityError(ImapSimpleError):
    """A single-part fetch did not produce exactly one part"""

    def __init__(self, count: int):
        self.count = count
        super().__init__(f"Got {count} parts, should get 1")


class UnsupportedEncodingError(ImapSimpleError):
    def __init__(self, encoding: str | None):
        self.encoding = encoding
        super().__init__(f"Unknown encoding {encoding}")


class IncompleteMessageError(ImapSimpleError):
    """The message event source stopped before signalling the end of the message"""


class FetchTimeoutError(ImapSimpleError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"message fetch timed out after {timeout} s")
