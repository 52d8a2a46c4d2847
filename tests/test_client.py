import asyncio
from datetime import date, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from imap_simple.client import ImapSimple, build_search_criteria, connect
from imap_simple.config import ImapServer
from imap_simple.errors import ArityError, ConnectionClosedError, ConnectionTimeoutError, ImapCommandError
from imap_simple.messages.models import FetchOptions, Message, MessageAttributes, PartDescriptor

HEADER = b"Subject: first\r\n\r\n"


@pytest.fixture
def imap_server():
    return ImapServer(
        user_name="test_user",
        password="test_password",
        host="imap.example.com",
        port=993,
        use_ssl=True,
        auth_timeout=0.5,
    )


@pytest.fixture
def mock_imap():
    mock_imap = AsyncMock()
    mock_imap.protocol = MagicMock()
    mock_imap.protocol.capabilities = {"IMAP4rev1"}
    mock_imap.protocol.execute = AsyncMock(return_value=("OK", []))
    return mock_imap


def fetch_response(*messages):
    """Build aioimaplib FETCH lines for (seq, uid, header) triples."""
    lines = []
    for seq, uid, header in messages:
        lines.append(b"%d FETCH (UID %d FLAGS () BODY[HEADER] {%d}" % (seq, uid, len(header)))
        lines.append(bytearray(header))
        lines.append(b")")
    lines.append(b"FETCH completed.")
    return ("OK", lines)


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_logs_in(self, imap_server):
        """Test connect waits for the greeting, logs in and sends ID."""
        mock_imap = AsyncMock()
        mock_imap._client_task = asyncio.Future()
        mock_imap._client_task.set_result(None)
        mock_imap.wait_hello_from_server = AsyncMock()
        mock_imap.login = AsyncMock(return_value=("OK", [b"LOGIN completed"]))
        mock_imap.id = AsyncMock(return_value=MagicMock(result="OK"))

        with patch("imap_simple.client.aioimaplib.IMAP4_SSL", return_value=mock_imap) as mock_class:
            connection = await connect(imap_server, fetch_timeout=5.0)

        mock_class.assert_called_once_with("imap.example.com", 993, timeout=10.0)
        mock_imap.wait_hello_from_server.assert_awaited_once()
        mock_imap.login.assert_awaited_once_with("test_user", "test_password")
        mock_imap.id.assert_awaited_once()
        assert isinstance(connection, ImapSimple)
        assert connection.imap is mock_imap
        assert connection.fetch_timeout == 5.0

    @pytest.mark.asyncio
    async def test_connect_plain_imap(self, imap_server):
        mock_imap = AsyncMock()
        mock_imap._client_task = asyncio.Future()
        mock_imap._client_task.set_result(None)
        mock_imap.login = AsyncMock(return_value=("OK", []))
        mock_imap.id = AsyncMock(return_value=MagicMock(result="OK"))
        server = imap_server.model_copy(update={"use_ssl": False, "port": 143})

        with patch("imap_simple.client.aioimaplib.IMAP4", return_value=mock_imap) as mock_class:
            await connect(server)

        mock_class.assert_called_once_with("imap.example.com", 143, timeout=10.0)

    @pytest.mark.asyncio
    async def test_connect_login_rejected(self, imap_server):
        mock_imap = AsyncMock()
        mock_imap._client_task = asyncio.Future()
        mock_imap._client_task.set_result(None)
        mock_imap.login = AsyncMock(return_value=("NO", [b"Invalid credentials"]))
        mock_imap.protocol = MagicMock()

        with patch("imap_simple.client.aioimaplib.IMAP4_SSL", return_value=mock_imap):
            with pytest.raises(ImapCommandError) as exc_info:
                await connect(imap_server)

        assert exc_info.value.result == "NO"
        assert "Invalid credentials" in str(exc_info.value)
        mock_imap.protocol.transport.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_connect_timeout(self, imap_server):
        """Test a server that never greets trips the auth timeout."""
        mock_imap = AsyncMock()
        mock_imap._client_task = asyncio.Future()
        mock_imap._client_task.set_result(None)

        async def no_greeting():
            await asyncio.sleep(10)

        mock_imap.wait_hello_from_server = no_greeting
        mock_imap.protocol = MagicMock()
        server = imap_server.model_copy(update={"auth_timeout": 0.05})

        with patch("imap_simple.client.aioimaplib.IMAP4_SSL", return_value=mock_imap):
            with pytest.raises(ConnectionTimeoutError) as exc_info:
                await connect(server)

        assert exc_info.value.timeout == 0.05
        assert str(exc_info.value) == "connection timed out. timeout = 0.05 s"
        mock_imap.protocol.transport.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_connect_refused(self, imap_server):
        mock_imap = AsyncMock()
        mock_imap._client_task = asyncio.Future()
        mock_imap._client_task.set_exception(ConnectionRefusedError("refused"))
        mock_imap.protocol = MagicMock()
        mock_imap.protocol.transport = None

        with patch("imap_simple.client.aioimaplib.IMAP4_SSL", return_value=mock_imap):
            with pytest.raises(ConnectionClosedError):
                await connect(imap_server)

    @pytest.mark.asyncio
    async def test_successful_connect_keeps_socket_open(self, imap_server):
        mock_imap = AsyncMock()
        mock_imap._client_task = asyncio.Future()
        mock_imap._client_task.set_result(None)
        mock_imap.login = AsyncMock(return_value=("OK", []))
        mock_imap.id = AsyncMock(return_value=MagicMock(result="OK"))
        mock_imap.protocol = MagicMock()

        with patch("imap_simple.client.aioimaplib.IMAP4_SSL", return_value=mock_imap):
            await connect(imap_server)

        mock_imap.protocol.transport.close.assert_not_called()

    @pytest.mark.asyncio
    async def test_connect_without_server(self):
        mock_settings = MagicMock()
        mock_settings.server = None

        with patch("imap_simple.client.get_settings", return_value=mock_settings):
            with pytest.raises(ValueError, match="No IMAP server configured"):
                await connect()

    @pytest.mark.asyncio
    async def test_connect_uses_settings(self, imap_server):
        mock_settings = MagicMock()
        mock_settings.server = imap_server
        mock_settings.fetch_timeout = 30.0
        mock_imap = AsyncMock()
        mock_imap._client_task = asyncio.Future()
        mock_imap._client_task.set_result(None)
        mock_imap.login = AsyncMock(return_value=("OK", []))
        mock_imap.id = AsyncMock(return_value=MagicMock(result="OK"))

        with patch("imap_simple.client.get_settings", return_value=mock_settings):
            with patch("imap_simple.client.aioimaplib.IMAP4_SSL", return_value=mock_imap):
                connection = await connect()

        assert connection.fetch_timeout == 30.0

    @pytest.mark.asyncio
    async def test_id_falls_back_to_raw_command(self, imap_server):
        """Test a rejected ID command is resent in raw form."""
        mock_imap = AsyncMock()
        mock_imap._client_task = asyncio.Future()
        mock_imap._client_task.set_result(None)
        mock_imap.login = AsyncMock(return_value=("OK", []))
        mock_imap.id = AsyncMock(return_value=MagicMock(result="BAD"))
        mock_imap.protocol = MagicMock()
        mock_imap.protocol.execute = AsyncMock()

        with patch("imap_simple.client.aioimaplib.IMAP4_SSL", return_value=mock_imap):
            await connect(imap_server)

        command = mock_imap.protocol.execute.call_args.args[0]
        assert command.name == "ID"


class TestEnd:
    @pytest.mark.asyncio
    async def test_end_logs_out(self, mock_imap):
        connection = ImapSimple(mock_imap)
        connection.current_box = "INBOX"

        await connection.end()

        mock_imap.logout.assert_awaited_once()
        assert connection.ending is True
        assert connection.current_box is None

    @pytest.mark.asyncio
    async def test_end_ignores_logout_errors(self, mock_imap):
        """Test a connection reset while logging out is not raised."""
        mock_imap.logout = AsyncMock(side_effect=ConnectionResetError("reset"))
        connection = ImapSimple(mock_imap)

        await connection.end()

        assert connection.ending is True

    @pytest.mark.asyncio
    async def test_context_manager(self, mock_imap):
        async with ImapSimple(mock_imap) as connection:
            assert connection.imap is mock_imap

        mock_imap.logout.assert_awaited_once()


class TestBuildSearchCriteria:
    def test_empty_means_all(self):
        assert build_search_criteria(None) == ["ALL"]
        assert build_search_criteria([]) == ["ALL"]

    def test_nested_criteria_are_flattened(self):
        criteria = ["UNSEEN", ["SINCE", datetime(2024, 1, 5)], ["FROM", "alice@example.com"]]

        assert build_search_criteria(criteria) == ["UNSEEN", "SINCE", "05-JAN-2024", "FROM", "alice@example.com"]

    def test_dates_and_numbers(self):
        criteria = [["BEFORE", date(2023, 12, 25)], ["LARGER", 1024]]

        assert build_search_criteria(criteria) == ["BEFORE", "25-DEC-2023", "LARGER", "1024"]


class TestSearch:
    @pytest.mark.asyncio
    async def test_search_fetches_matches_in_sequence_order(self, mock_imap):
        """Test results come back ordered by sequence number whatever the response order."""
        mock_imap.uid_search = AsyncMock(return_value=("OK", [b"42 43", b"SEARCH completed"]))
        mock_imap.uid = AsyncMock(
            return_value=fetch_response((2, 43, b"Subject: second\r\n\r\n"), (1, 42, HEADER)),
        )
        connection = ImapSimple(mock_imap)

        messages = await connection.search(["UNSEEN"], FetchOptions(bodies=["HEADER"]))

        mock_imap.uid_search.assert_awaited_once_with("UNSEEN")
        mock_imap.uid.assert_awaited_once_with("fetch", "42,43", "(UID FLAGS INTERNALDATE BODY.PEEK[HEADER])")
        assert [message.seq_no for message in messages] == [1, 2]
        assert [message.attributes.uid for message in messages] == [42, 43]
        assert messages[0].get_part("HEADER").body == {"subject": ["first"]}

    @pytest.mark.asyncio
    async def test_search_without_matches(self, mock_imap):
        mock_imap.uid_search = AsyncMock(return_value=("OK", [b"", b"SEARCH completed"]))
        connection = ImapSimple(mock_imap)

        messages = await connection.search(["FROM", "nobody@example.com"])

        assert messages == []
        mock_imap.uid.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_search_failure(self, mock_imap):
        mock_imap.uid_search = AsyncMock(return_value=("BAD", [b"Unknown search key"]))
        connection = ImapSimple(mock_imap)

        with pytest.raises(ImapCommandError) as exc_info:
            await connection.search(["BOGUS"])

        assert exc_info.value.command == "search"

    @pytest.mark.asyncio
    async def test_fetch_default_options(self, mock_imap):
        mock_imap.uid = AsyncMock(return_value=("OK", [b"1 FETCH (UID 7 FLAGS (\\Seen))", b"FETCH completed."]))
        connection = ImapSimple(mock_imap)

        messages = await connection.fetch(7)

        mock_imap.uid.assert_awaited_once_with("fetch", "7", "(UID FLAGS INTERNALDATE)")
        assert messages[0].attributes.flags == ["\\Seen"]
        assert messages[0].parts == []


class TestGetPartData:
    @pytest.mark.asyncio
    async def test_fetches_and_decodes_part(self, mock_imap):
        """Test a BASE64 attachment is fetched by its part ID and decoded."""
        body = b"aGVsbG8="
        mock_imap.uid = AsyncMock(
            return_value=(
                "OK",
                [b"1 FETCH (UID 42 FLAGS () BODY[2] {%d}" % len(body), bytearray(body), b")", b"FETCH completed."],
            )
        )
        connection = ImapSimple(mock_imap)
        message = Message(attributes=MessageAttributes(uid=42))
        part = PartDescriptor(part_id="2", type="application", subtype="octet-stream", encoding="BASE64")

        data = await connection.get_part_data(message, part)

        assert data == b"hello"
        mock_imap.uid.assert_awaited_once_with("fetch", "42", "(UID FLAGS INTERNALDATE BODYSTRUCTURE BODY.PEEK[2])")

    @pytest.mark.asyncio
    async def test_text_part_uses_charset(self, mock_imap):
        body = "caf=E9".encode("ascii")
        mock_imap.uid = AsyncMock(
            return_value=("OK", [b"1 FETCH (UID 5 BODY[1] {%d}" % len(body), bytearray(body), b")"]),
        )
        connection = ImapSimple(mock_imap)
        part = PartDescriptor(
            part_id="1",
            type="text",
            subtype="plain",
            params={"charset": "ISO-8859-1"},
            encoding="QUOTED-PRINTABLE",
        )

        data = await connection.get_part_data(Message(attributes=MessageAttributes(uid=5)), part)

        assert data == "café"

    @pytest.mark.asyncio
    async def test_message_without_uid(self, mock_imap):
        connection = ImapSimple(mock_imap)
        part = PartDescriptor(part_id="1", type="text", subtype="plain")

        with pytest.raises(ValueError):
            await connection.get_part_data(Message(), part)

    @pytest.mark.asyncio
    async def test_container_part(self, mock_imap):
        connection = ImapSimple(mock_imap)
        part = PartDescriptor(type="multipart", subtype="mixed")

        with pytest.raises(ValueError, match="multipart/mixed"):
            await connection.get_part_data(Message(attributes=MessageAttributes(uid=1)), part)

    @pytest.mark.asyncio
    async def test_vanished_message(self, mock_imap):
        """Test a fetch that returns no message is an arity error."""
        mock_imap.uid = AsyncMock(return_value=("OK", [b"FETCH completed."]))
        connection = ImapSimple(mock_imap)
        part = PartDescriptor(part_id="1", type="text", subtype="plain")

        with pytest.raises(ArityError) as exc_info:
            await connection.get_part_data(Message(attributes=MessageAttributes(uid=1)), part)

        assert exc_info.value.count == 0
